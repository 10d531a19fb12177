"""
Custom Exception Classes for thermopoll

Hierarchical exception structure for the acquisition pipeline.
Every error carries a `recoverable` flag; nothing raised on the polling
path is fatal to the process.
"""


class ThermopollError(Exception):
    """Base exception for all thermopoll errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(ThermopollError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class FormulaError(ConfigError):
    """User conversion formula rejected at compile time"""

    def __init__(self, message: str, formula: str | None = None):
        self.formula = formula
        super().__init__(f"Formula: {message}")


# =============================================================================
# Frame errors (codec parsing) - drop the tick
# =============================================================================

class FrameError(ThermopollError):
    """Response frame could not be accepted"""

    def __init__(self, message: str, frame: bytes | None = None):
        self.frame = frame
        super().__init__(f"Frame Error: {message}", recoverable=True)


class FrameTooShort(FrameError):
    """Response shorter than the 5-byte minimum"""

    def __init__(self, length: int, frame: bytes | None = None):
        self.length = length
        super().__init__(f"response too short ({length} bytes)", frame)


class UnexpectedSlave(FrameError):
    """Response came from a different slave id"""

    def __init__(self, expected: int, actual: int, frame: bytes | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected slave {expected}, got {actual}", frame)


class UnexpectedFunction(FrameError):
    """Response carries a different function code (or a Modbus exception)"""

    def __init__(
        self,
        expected: int,
        actual: int,
        exception_code: int | None = None,
        frame: bytes | None = None,
    ):
        self.expected = expected
        self.actual = actual
        self.exception_code = exception_code
        if exception_code is not None:
            message = (
                f"expected function 0x{expected:02X}, got exception reply "
                f"0x{actual:02X} (code {exception_code})"
            )
        else:
            message = f"expected function 0x{expected:02X}, got 0x{actual:02X}"
        super().__init__(message, frame)


class FrameIncomplete(FrameError):
    """Response shorter than its byte count announces"""

    def __init__(self, required: int, length: int, frame: bytes | None = None):
        self.required = required
        self.length = length
        super().__init__(f"frame incomplete ({length} of {required} bytes)", frame)


class CrcMismatch(FrameError):
    """Trailing CRC does not match the frame contents"""

    def __init__(self, expected: int, actual: int, frame: bytes | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(f"CRC mismatch (computed 0x{expected:04X}, got 0x{actual:04X})", frame)


# =============================================================================
# Transport errors - drop the tick, retry next cadence
# =============================================================================

class TransportError(ThermopollError):
    """Serial transport errors"""

    def __init__(self, message: str, port: str | None = None):
        self.port = port
        super().__init__(f"Transport Error: {message}", recoverable=True)


class TransportTimeout(TransportError):
    """No response before the transaction deadline"""

    def __init__(self, timeout_s: float, port: str | None = None):
        self.timeout_s = timeout_s
        super().__init__(f"no response within {timeout_s:.3f}s", port)


class TransportIOError(TransportError):
    """Write or read failed at the transport level"""


# =============================================================================
# Conversion errors - drop one channel's sample
# =============================================================================

class ConversionError(ThermopollError):
    """Per-sample conversion errors"""

    def __init__(self, message: str, raw_value: int | None = None):
        self.raw_value = raw_value
        super().__init__(f"Conversion Error: {message}", recoverable=True)


class ConversionFailure(ConversionError):
    """Custom formula raised or returned a non-numeric result"""


class InvalidTemperature(ConversionError):
    """Converted value is non-finite or physically implausible"""

    def __init__(self, temperature: object, raw_value: int | None = None):
        self.temperature = temperature
        super().__init__(f"invalid temperature {temperature!r}", raw_value)


class ServiceError(ThermopollError):
    """Service lifecycle errors"""

    def __init__(self, message: str, service_name: str, recoverable: bool = True):
        self.service_name = service_name
        super().__init__(f"Service [{service_name}]: {message}", recoverable)
