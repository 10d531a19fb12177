"""
Simulators for running the acquisition service without hardware.
"""

from .virtual_sensor_bus import FaultInjection, VirtualTemperatureSensor

__all__ = ["FaultInjection", "VirtualTemperatureSensor"]
