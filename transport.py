"""pyserial backed serial transport."""

from __future__ import annotations

from typing import Any, Dict, Optional

from errors import TRANSPORT_CONFIG_FAILED, TRANSPORT_OPEN_FAILED, TransportError
from log_setup import get_logger
from models import BaudCandidate

try:
    import serial
except Exception:  # pragma: no cover
    serial = None  # type: ignore

logger = get_logger(__name__)

READ_TIMEOUT_S = 0.1


class PySerialTransport:
    """Serial port access for the detector.

    ``open`` snapshots the port settings so ``restore`` can put them back
    exactly as they were before ``configure`` changed anything.
    """

    def __init__(self, read_timeout_s: float = READ_TIMEOUT_S) -> None:
        self.read_timeout_s = read_timeout_s
        self._saved: Dict[int, Dict[str, Any]] = {}

    def open(self, path: str) -> Any:
        if serial is None:
            raise TransportError(TRANSPORT_OPEN_FAILED, "pyserial is not installed")
        try:
            handle = serial.Serial(port=path, timeout=self.read_timeout_s)
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(TRANSPORT_OPEN_FAILED, f"{path}: {exc}") from exc
        self._saved[id(handle)] = handle.get_settings()
        logger.debug("Opened %s", path, extra={"port": path})
        return handle

    def configure(self, handle: Any) -> None:
        try:
            handle.apply_settings(
                {
                    "bytesize": serial.EIGHTBITS,
                    "parity": serial.PARITY_NONE,
                    "stopbits": serial.STOPBITS_ONE,
                    "xonxoff": False,
                    "rtscts": False,
                    "dsrdtr": False,
                    "timeout": self.read_timeout_s,
                }
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(TRANSPORT_CONFIG_FAILED, str(exc)) from exc

    def set_baud(self, handle: Any, candidate: BaudCandidate) -> None:
        try:
            handle.baudrate = candidate.rate
            # Anything already buffered was sampled at the previous rate.
            handle.reset_input_buffer()
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(TRANSPORT_CONFIG_FAILED, f"baud {candidate.label}: {exc}") from exc
        logger.debug("Baud rate set to %s", candidate.label, extra={"baud": candidate.rate})

    def read_byte(self, handle: Any, timeout: float) -> Optional[int]:
        try:
            if handle.timeout != timeout:
                handle.timeout = timeout
            data = handle.read(1)
        except (serial.SerialException, OSError, TypeError) as exc:
            logger.debug("Read failed: %s", exc)
            return None
        if not data:
            return None
        return data[0]

    def restore(self, handle: Any) -> None:
        saved = self._saved.pop(id(handle), None)
        if saved is None:
            return
        try:
            handle.apply_settings(saved)
        except (serial.SerialException, OSError, ValueError) as exc:
            logger.warning("Failed to restore serial settings: %s", exc)

    def close(self, handle: Any) -> None:
        try:
            handle.close()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Failed to close serial port: %s", exc)
