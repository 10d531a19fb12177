"""
Serial Transport

The polling engine only needs an async byte-stream duplex:

    await transport.write(frame)
    response = await transport.read()

SerialTransport provides that over a pyserial port. The port is opened and
closed by the entry point; the engine never owns it.

Port I/O runs in worker threads. A cancelled await does not stop its
thread, so every blocking call holds one port lock, and a cancelled call
is abandoned: a pending read is interrupted with cancel_read() and a queued
write is dropped. Two threads never touch the port at once.
"""

import asyncio
import threading
from typing import Protocol, runtime_checkable

import serial

from common.exceptions import TransportIOError, TransportTimeout
from common.logging_setup import get_service_logger

from .frame_codec import EXCEPTION_FLAG

logger = get_service_logger("acquisition.transport")

_PARITY = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
}

# slave | fc | byteCount (or exception code)
_HEADER_LENGTH = 3
_CRC_LENGTH = 2


@runtime_checkable
class Transport(Protocol):
    """Async byte-stream duplex consumed by the polling engine"""

    async def write(self, data: bytes) -> None:
        ...

    async def read(self) -> bytes:
        ...


class SerialTransport:
    """
    pyserial-backed transport for Modbus RTU.

    read() returns one response frame, using the header to know how many
    bytes follow; a short read returns whatever arrived. A read that gets
    no byte at all before the port timeout raises TransportTimeout.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        parity: str = "N",
        stopbits: int = 1,
        bytesize: int = 8,
        timeout: float = 2.0,
    ):
        self.port = port
        self.baudrate = baudrate
        self.parity = parity
        self.stopbits = stopbits
        self.bytesize = bytesize
        self.timeout = timeout

        self._serial: serial.Serial | None = None

        # Held by whichever worker thread is using the port
        self._io_lock = threading.Lock()
        # Bumped when an await is cancelled; older calls give up
        self._generation = 0
        self._reading = False
        self._abandoned = 0

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def abandoned_count(self) -> int:
        return self._abandoned

    def open(self) -> None:
        """Open the serial port"""
        if self.is_open:
            return
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                parity=_PARITY.get(self.parity, serial.PARITY_NONE),
                stopbits=self.stopbits,
                bytesize=self.bytesize,
                timeout=self.timeout,
            )
        except (serial.SerialException, OSError) as e:
            raise TransportIOError(f"cannot open port: {e}", self.port)
        logger.info(
            f"Opened {self.port} at {self.baudrate} baud "
            f"({self.bytesize}{self.parity}{self.stopbits})"
        )

    def close(self) -> None:
        """Close the serial port"""
        if self._serial is not None:
            self._abandon()
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                logger.warning(f"Error closing {self.port}: {e}")
            self._serial = None
            logger.info(f"Closed {self.port}")

    def _require_open(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            raise TransportIOError("port is not open", self.port)
        return self._serial

    def _abandon(self) -> None:
        """Invalidate in-flight calls and wake a blocked read."""
        self._generation += 1
        port = self._serial
        if self._reading and port is not None:
            try:
                port.cancel_read()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"cancel_read on {self.port} failed: {e}")

    def _write_blocking(self, data: bytes, generation: int) -> None:
        with self._io_lock:
            if generation != self._generation:
                return
            port = self._require_open()
            try:
                # Stale bytes from an abandoned transaction must not prefix the reply
                port.reset_input_buffer()
                port.write(data)
                port.flush()
            except (serial.SerialException, OSError) as e:
                raise TransportIOError(f"write failed: {e}", self.port)

    def _read_blocking(self, generation: int) -> bytes:
        with self._io_lock:
            if generation != self._generation:
                return b""
            port = self._require_open()
            self._reading = True
            try:
                header = bytes(port.read(_HEADER_LENGTH))
                if generation != self._generation:
                    return b""
                if not header:
                    raise TransportTimeout(self.timeout, self.port)
                if len(header) < _HEADER_LENGTH:
                    return header

                if header[1] & EXCEPTION_FLAG:
                    # Exception reply: header already holds the code
                    remaining = _CRC_LENGTH
                else:
                    remaining = header[2] + _CRC_LENGTH

                return header + bytes(port.read(remaining))
            except (serial.SerialException, OSError) as e:
                raise TransportIOError(f"read failed: {e}", self.port)
            finally:
                self._reading = False

    async def write(self, data: bytes) -> None:
        generation = self._generation
        try:
            await asyncio.to_thread(self._write_blocking, data, generation)
        except asyncio.CancelledError:
            self._abandoned += 1
            self._abandon()
            raise

    async def read(self) -> bytes:
        generation = self._generation
        try:
            return await asyncio.to_thread(self._read_blocking, generation)
        except asyncio.CancelledError:
            self._abandoned += 1
            self._abandon()
            raise

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"SerialTransport({self.port}, {self.baudrate}, {state})"
