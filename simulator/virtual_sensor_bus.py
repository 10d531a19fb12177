"""
Virtual Temperature Sensor (multi-channel RTU module)

Simulates a Modbus RTU temperature acquisition module on the serial bus.
This is used for running the acquisition service without physical hardware.

Register Map:
- base_address + n: channel n+1 temperature, signed tenths of a degree C
  (e.g. 253 = 25.3 C, 65436 = -10.0 C)

Implements the engine's Transport protocol (async write/read), so it can
be attached in place of a SerialTransport. Faults can be injected to
exercise timeout and malformed-frame handling.
"""

import asyncio
import random
from dataclasses import dataclass

from common.exceptions import FrameError, TransportIOError
from common.logging_setup import get_service_logger
from services.acquisition.frame_codec import (
    READ_HOLDING_REGISTERS,
    MAX_QUANTITY,
    build_exception_response,
    build_read_response,
    parse_read_request,
)

logger = get_service_logger("simulator.sensor")

# Modbus exception codes
ILLEGAL_FUNCTION = 0x01
ILLEGAL_DATA_VALUE = 0x03


@dataclass
class FaultInjection:
    """Faults applied to the next responses"""
    response_delay_s: float = 0.0     # Delay before the response is readable
    truncate_to: int | None = None    # Cut the response to this many bytes
    corrupt_crc: bool = False         # Flip the CRC low byte
    drop_response: bool = False       # Never answer
    fail_writes: bool = False         # write() raises TransportIOError
    wrong_slave: bool = False         # Answer with slave id + 1


class VirtualTemperatureSensor:
    """
    Simulates a multi-channel temperature module.

    This class manages the register memory and answers FC03 requests.
    """

    def __init__(
        self,
        slave_id: int = 1,
        base_address: int = 0,
        channel_count: int = 10,
        auto_drift: bool = False,
        rng: random.Random | None = None,
    ):
        """
        Initialize the virtual sensor.

        Args:
            slave_id: Modbus slave ID
            base_address: Register of channel 1
            channel_count: Number of temperature channels
            auto_drift: Random-walk temperatures on every request
            rng: Random source for drift
        """
        self.slave_id = slave_id
        self.base_address = base_address
        self.channel_count = channel_count
        self.auto_drift = auto_drift
        self.rng = rng or random.Random()
        self.faults = FaultInjection()

        # Register memory (address -> 16-bit value)
        self._registers: dict[int, int] = {}
        self._pending: bytes | None = None
        self._requests_handled = 0

        # Staggered starting temperatures: 20.0, 22.5, 25.0, ...
        for channel in range(1, channel_count + 1):
            self.set_temperature(channel, 20.0 + 2.5 * (channel - 1))

        logger.info(
            f"Virtual sensor initialized (slave ID: {slave_id}, "
            f"{channel_count} channels at {base_address})"
        )

    # =========================================================================
    # Register memory
    # =========================================================================

    @staticmethod
    def encode_temperature(celsius: float) -> int:
        """Signed tenths of a degree as a 16-bit register value"""
        return round(celsius * 10) & 0xFFFF

    @staticmethod
    def decode_temperature(raw: int) -> float:
        if raw > 32767:
            return (raw - 65536) / 10
        return raw / 10

    def set_temperature(self, channel: int, celsius: float) -> None:
        if not 1 <= channel <= self.channel_count:
            raise ValueError(f"channel must be 1-{self.channel_count}, got {channel}")
        self._registers[self.base_address + channel - 1] = self.encode_temperature(celsius)

    def get_temperature(self, channel: int) -> float:
        return self.decode_temperature(self._registers.get(self.base_address + channel - 1, 0))

    def set_register(self, address: int, value: int) -> None:
        self._registers[address] = value & 0xFFFF

    def read_registers(self, start_address: int, count: int) -> list[int]:
        """
        Read register values (for Modbus responses).

        Unmapped registers read as 0.
        """
        return [self._registers.get(addr, 0) for addr in range(start_address, start_address + count)]

    def drift(self, max_step: float = 0.2) -> None:
        """Random-walk every channel by up to max_step degrees"""
        for channel in range(1, self.channel_count + 1):
            current = self.get_temperature(channel)
            self.set_temperature(channel, current + self.rng.uniform(-max_step, max_step))

    # =========================================================================
    # Modbus slave
    # =========================================================================

    def handle_request(self, frame: bytes) -> bytes | None:
        """
        Answer one request frame.

        Returns:
            Response bytes, or None when the request is not for this slave
            or cannot be decoded (a real slave stays silent)
        """
        try:
            request = parse_read_request(frame)
        except FrameError as e:
            logger.debug(f"Ignoring undecodable request: {e.message}")
            return None

        if request.slave_id != self.slave_id:
            return None

        self._requests_handled += 1

        if request.function_code != READ_HOLDING_REGISTERS:
            return build_exception_response(self.slave_id, request.function_code, ILLEGAL_FUNCTION)
        if not 1 <= request.quantity <= MAX_QUANTITY:
            return build_exception_response(self.slave_id, request.function_code, ILLEGAL_DATA_VALUE)

        if self.auto_drift:
            self.drift()

        values = self.read_registers(request.start_address, request.quantity)
        return build_read_response(self.slave_id, values)

    def _apply_faults(self, response: bytes) -> bytes | None:
        faults = self.faults
        if faults.drop_response:
            return None

        if faults.wrong_slave:
            response = bytes([(response[0] + 1) & 0xFF]) + response[1:]
        if faults.corrupt_crc:
            response = response[:-2] + bytes([response[-2] ^ 0xFF]) + response[-1:]
        if faults.truncate_to is not None:
            response = response[: faults.truncate_to]
        return response

    # =========================================================================
    # Transport protocol
    # =========================================================================

    async def write(self, data: bytes) -> None:
        if self.faults.fail_writes:
            raise TransportIOError("simulated write failure", "virtual")

        response = self.handle_request(data)
        # A new request always replaces an unread response
        self._pending = self._apply_faults(response) if response is not None else None

    async def read(self) -> bytes:
        if self.faults.response_delay_s > 0:
            await asyncio.sleep(self.faults.response_delay_s)

        if self._pending is None:
            # Silent slave: wait until the caller's timeout cancels us
            await asyncio.get_running_loop().create_future()

        response, self._pending = self._pending, None
        return response

    @property
    def requests_handled(self) -> int:
        return self._requests_handled

    def __repr__(self) -> str:
        return (f"VirtualTemperatureSensor(slave_id={self.slave_id}, "
                f"channels={self.channel_count}, base={self.base_address})")
