"""Session configuration and the JSON preference store."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from models import Mode

DEFAULT_PORT = "/dev/ttyUSB0"
DEFAULT_THRESHOLD = 25
DEFAULT_WAIT_PERIOD_S = 5.0
DEFAULT_READ_TIMEOUT_S = 0.1
DEFAULT_MINICOM_DIR = "/etc/minicom"


@dataclass
class SessionConfig:
    mode: Mode = Mode.AUTO
    threshold: int = DEFAULT_THRESHOLD
    wait_period: float = DEFAULT_WAIT_PERIOD_S
    start_index: Optional[int] = None
    read_timeout: float = DEFAULT_READ_TIMEOUT_S

    def __post_init__(self) -> None:
        self.mode = Mode(self.mode)
        if self.threshold < 1:
            raise ValueError("threshold must be >= 1")
        if self.wait_period < 1:
            raise ValueError("wait period must be at least 1 second")
        if self.read_timeout <= 0:
            raise ValueError("read timeout must be positive")


class JsonConfigStore:
    """Operator defaults read from a hand-edited JSON file."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "baudrate" / "config.json"

    def get_port(self) -> str:
        return str(self._read_all().get("port", DEFAULT_PORT))

    def get_threshold(self) -> int:
        value = self._read_all().get("threshold", DEFAULT_THRESHOLD)
        try:
            return max(int(value), 1)
        except (TypeError, ValueError):
            return DEFAULT_THRESHOLD

    def get_wait_period(self) -> float:
        value = self._read_all().get("wait_period", DEFAULT_WAIT_PERIOD_S)
        try:
            return max(float(value), 1.0)
        except (TypeError, ValueError):
            return DEFAULT_WAIT_PERIOD_S

    def get_mode(self) -> str:
        value = str(self._read_all().get("mode", Mode.AUTO.value)).upper()
        if value not in Mode.__members__:
            return Mode.AUTO.value
        return value

    def get_minicom_dir(self) -> str:
        return str(self._read_all().get("minicom_dir", DEFAULT_MINICOM_DIR))

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}
