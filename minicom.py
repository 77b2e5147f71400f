"""Minicom configuration output for the selected baud rate."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Optional, TextIO

from config import DEFAULT_MINICOM_DIR
from errors import CONFIG_WRITE_FAILED, ConfigWriteError
from log_setup import get_logger
from models import BaudCandidate

logger = get_logger(__name__)

MINICOM_BIN = "minicom"
CONFIG_PREFIX = "minirc."
RULE = "#" * 72


def render(port: str, candidate: BaudCandidate) -> str:
    lines = [
        RULE,
        '# Minicom configuration file - use "minicom -s" to change parameters.',
        f"pu port             {port}",
        f"pu baudrate         {candidate.label}",
        "pu bits             8",
        "pu parity           N",
        "pu stopbits         1",
        "pu rtscts           No",
        RULE,
    ]
    return "\n".join(lines) + "\n"


class MinicomConfigWriter:
    def __init__(self, config_dir: str | Path = DEFAULT_MINICOM_DIR, stdout: Optional[TextIO] = None) -> None:
        self.config_dir = Path(config_dir)
        self._stdout = stdout

    def save(self, port: str, candidate: BaudCandidate, name: str) -> Path:
        if not name or "/" in name:
            raise ConfigWriteError(CONFIG_WRITE_FAILED, f"invalid configuration name: {name!r}")
        path = self.config_dir / f"{CONFIG_PREFIX}{name}"
        try:
            path.write_text(render(port, candidate), encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteError(CONFIG_WRITE_FAILED, f"{path}: {exc}") from exc
        logger.info("Minicom configuration saved to %s", path, extra={"port": port, "baud": candidate.rate})
        return path

    def write(self, port: str, candidate: BaudCandidate, name: str = "") -> Optional[Path]:
        """Save the configuration as ``name``, or print it when that is not possible.

        Returns the saved path, or None if the configuration went to stdout.
        """
        if name:
            try:
                return self.save(port, candidate, name)
            except ConfigWriteError as exc:
                logger.error("%s", exc, extra={"error_code": exc.code})
        out = self._stdout or sys.stdout
        out.write(render(port, candidate))
        out.flush()
        return None

    def launch(self, name: str) -> int:
        return subprocess.call([MINICOM_BIN, name])
