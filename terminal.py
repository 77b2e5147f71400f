"""Keyboard input from the controlling terminal."""

from __future__ import annotations

import os
import select
import sys
from typing import Any, Optional

from errors import TERMINAL_UNAVAILABLE, BaudrateError

try:
    import termios
    import tty
except Exception:  # pragma: no cover
    termios = None  # type: ignore
    tty = None  # type: ignore


class PosixTerminalIO:
    """Unbuffered, non-echoing key reads from stdin.

    Only canonical mode and echo are turned off, signal generation stays on
    so Ctrl+C still raises KeyboardInterrupt in the main thread.
    """

    def __init__(self, fd: Optional[int] = None) -> None:
        self._fd = fd

    @property
    def fd(self) -> int:
        if self._fd is None:
            self._fd = sys.stdin.fileno()
        return self._fd

    @property
    def interactive(self) -> bool:
        if termios is None:
            return False
        try:
            return os.isatty(self.fd)
        except (OSError, ValueError):
            return False

    def enter_raw_mode(self) -> Any:
        if not self.interactive:
            raise BaudrateError(TERMINAL_UNAVAILABLE)
        saved = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd, termios.TCSANOW)
        return saved

    def restore(self, saved: Any) -> None:
        if saved is None or termios is None:
            return
        termios.tcsetattr(self.fd, termios.TCSADRAIN, saved)

    def read_key(self, timeout: float) -> Optional[int]:
        readable, _, _ = select.select([self.fd], [], [], timeout)
        if not readable:
            return None
        data = os.read(self.fd, 1)
        if not data:
            return None
        return data[0]
