"""Shared error codes, user-facing messages and exceptions."""

from __future__ import annotations

TRANSPORT_OPEN_FAILED = "TRANSPORT_OPEN_FAILED"
TRANSPORT_CONFIG_FAILED = "TRANSPORT_CONFIG_FAILED"
TIMER_FAILED = "TIMER_FAILED"
CONFIG_WRITE_FAILED = "CONFIG_WRITE_FAILED"
TERMINAL_UNAVAILABLE = "TERMINAL_UNAVAILABLE"

ERROR_MESSAGES = {
    TRANSPORT_OPEN_FAILED: "Failed to open serial port.",
    TRANSPORT_CONFIG_FAILED: "Failed to configure serial port.",
    TIMER_FAILED: "Auto detection timer failed, switching to manual mode.",
    CONFIG_WRITE_FAILED: "Failed to save minicom configuration.",
    TERMINAL_UNAVAILABLE: "Standard input is not a terminal, keyboard control disabled.",
}


class BaudrateError(Exception):
    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code


class TransportError(BaudrateError):
    pass


class ConfigWriteError(BaudrateError):
    pass
