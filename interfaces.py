"""Protocol interfaces used by ControlLoop and the entrypoint."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from models import BaudCandidate


class SerialTransport(Protocol):
    def open(self, path: str) -> Any: ...

    def configure(self, handle: Any) -> None: ...

    def set_baud(self, handle: Any, candidate: BaudCandidate) -> None: ...

    def read_byte(self, handle: Any, timeout: float) -> Optional[int]: ...

    def restore(self, handle: Any) -> None: ...

    def close(self, handle: Any) -> None: ...


class TerminalIO(Protocol):
    def enter_raw_mode(self) -> Any: ...

    def restore(self, saved: Any) -> None: ...

    def read_key(self, timeout: float) -> Optional[int]: ...


class ConfigWriter(Protocol):
    def write(self, port: str, candidate: BaudCandidate, name: str = "") -> Optional[Path]: ...

    def launch(self, name: str) -> int: ...


class ConfigStore(Protocol):
    def get_port(self) -> str: ...

    def get_threshold(self) -> int: ...

    def get_wait_period(self) -> float: ...

    def get_mode(self) -> str: ...

    def get_minicom_dir(self) -> str: ...


TimerFactory = Callable[[float, Callable[[], None]], Any]
