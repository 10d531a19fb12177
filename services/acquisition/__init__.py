"""
Acquisition Service - Modbus RTU Temperature Polling

Responsibilities:
- Build and parse FC03 frames (CRC16)
- Poll the sensor bus at a fixed cadence, one transaction at a time
- Convert raw register values to temperatures (builtin or user formula)
- Generate synthetic readings in test mode
- Retain a memory-bounded reading series
"""

from .service import AcquisitionService

__all__ = ["AcquisitionService"]
