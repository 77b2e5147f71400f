"""State-machine based detection session orchestration."""

from __future__ import annotations

import threading
from queue import Empty, Queue
from typing import Any, Callable, Optional

from auto_cycler import AutoCycler
from baud_table import BaudTable
from classifier import DetectionClassifier
from config import SessionConfig
from errors import TIMER_FAILED, BaudrateError, TransportError
from interfaces import SerialTransport, TerminalIO, TimerFactory
from log_setup import get_logger
from models import (
    BaudCandidate,
    EventKind,
    LoopEvent,
    Mode,
    SessionPhase,
    SessionResult,
    SessionState,
    TerminationReason,
)

logger = get_logger(__name__)

StateCallback = Callable[[SessionPhase, SessionPhase], None]
BaudCallback = Callable[[BaudCandidate], None]
DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[str, str], None]

# Up/down arrows arrive as ESC [ A and ESC [ B.
ESC = 0x1B
CSI_BRACKET = 0x5B
ARROW_UP = ord("A")
ARROW_DOWN = ord("B")
CTRL_C = 0x03
UP_KEYS = frozenset(b"uU")
DOWN_KEYS = frozenset(b"dD")


class ControlLoop:
    """Runs one detection session against a single serial port.

    A background reader thread pulls bytes off the transport and, in auto
    mode, feeds them to the classifier. The thread calling ``run()`` owns
    the session: it reads keys in manual mode and applies timer ticks,
    detections and interrupts posted to its event queue. All access to the
    session state goes through ``self._lock``.
    """

    def __init__(
        self,
        port: str,
        transport: SerialTransport,
        config: Optional[SessionConfig] = None,
        table: Optional[BaudTable] = None,
        terminal: Optional[TerminalIO] = None,
        timer_factory: Optional[TimerFactory] = None,
        poll_interval_s: float = 0.1,
        on_state_change: Optional[StateCallback] = None,
        on_baud_change: Optional[BaudCallback] = None,
        on_data: Optional[DataCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._port = port
        self._transport = transport
        self._config = config or SessionConfig()
        self._table = table or BaudTable()
        self._terminal = terminal
        self._poll_interval_s = poll_interval_s
        self._on_state_change = on_state_change
        self._on_baud_change = on_baud_change
        self._on_data = on_data
        self._on_error = on_error

        start = self._config.start_index
        if start is None:
            start = self._table.default_index
        if not 0 <= start < len(self._table):
            raise ValueError(f"start index {start} outside baud table")

        self._lock = threading.RLock()
        self._events: Queue[LoopEvent] = Queue()
        self._state = SessionState(
            index=start,
            mode=self._config.mode,
            threshold=self._config.threshold,
            wait_period=self._config.wait_period,
        )
        self._classifier = DetectionClassifier(self._config.threshold, self._state.window)
        cycler_kwargs = {"timer_factory": timer_factory} if timer_factory is not None else {}
        self._cycler = AutoCycler(self._config.wait_period, self._post_tick, **cycler_kwargs)
        self._handle: Any = None
        self._reader: Optional[threading.Thread] = None
        self._keys_enabled = False
        self._escape_seen = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    def run(self) -> SessionResult:
        """Run the session until detection or interrupt.

        Raises TransportError if the port cannot be opened or configured.
        The port and terminal are restored on every exit path.
        """
        saved_terminal = None
        try:
            self._initialize()
            saved_terminal = self._enter_terminal()
            self._loop()
        except KeyboardInterrupt:
            self._request_termination(TerminationReason.INTERRUPTED)
        finally:
            self._teardown(saved_terminal)

        with self._lock:
            return SessionResult(
                port=self._port,
                candidate=self._table.get(self._state.index),
                reason=self._state.reason or TerminationReason.INTERRUPTED,
                cycle_count=self._state.cycle_count,
            )

    def request_stop(self) -> None:
        """Ask the session to terminate. Safe to call from any thread."""
        self._events.put(LoopEvent(kind=EventKind.INTERRUPT.value))

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _initialize(self) -> None:
        try:
            self._handle = self._transport.open(self._port)
            self._transport.configure(self._handle)
        except TransportError as exc:
            logger.error("Serial setup failed: %s", exc, extra={"port": self._port, "error_code": exc.code})
            self._emit_error(exc.code, str(exc))
            raise

        with self._lock:
            self._state.running = True
            self._apply_baud()
            if self._state.mode is Mode.AUTO:
                self._transition(SessionPhase.AUTO_DETECTING)
                self._arm_cycler()
            else:
                self._transition(SessionPhase.MANUAL_ADJUSTING)

        self._reader = threading.Thread(target=self._reader_loop, name="serial-reader", daemon=True)
        self._reader.start()

    def _enter_terminal(self) -> Any:
        if self._terminal is None:
            return None
        try:
            saved = self._terminal.enter_raw_mode()
        except BaudrateError as exc:
            logger.warning("Keyboard control disabled: %s", exc)
            with self._lock:
                if self._state.mode is Mode.MANUAL:
                    self._emit_error(exc.code, str(exc))
            return None
        self._keys_enabled = True
        return saved

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    def _reader_loop(self) -> None:
        timeout = self._config.read_timeout
        while self._state.running:
            byte = self._transport.read_byte(self._handle, timeout)
            if byte is None:
                continue
            if self._on_data:
                self._on_data(bytes((byte,)))
            with self._lock:
                if not self._state.running or self._state.mode is not Mode.AUTO:
                    continue
                if not self._classifier.feed(byte):
                    continue
                # Any tick already queued now carries a stale generation.
                self._cycler.disarm()
                self._state.reason = TerminationReason.DETECTED
                index = self._state.index
            logger.info("Text detected", extra={"index": index})
            self._events.put(LoopEvent(kind=EventKind.DETECTED.value))
            return

    def _loop(self) -> None:
        while True:
            with self._lock:
                if not self._state.running:
                    return
                manual = self._state.mode is Mode.MANUAL
            timeout = self._poll_interval_s
            if manual and self._keys_enabled:
                key = self._terminal.read_key(self._poll_interval_s)
                if key is not None:
                    self._handle_key(key)
                timeout = 0
            try:
                event = self._events.get(timeout=timeout)
            except Empty:
                continue
            self._dispatch(event)

    def _dispatch(self, event: LoopEvent) -> None:
        if event.kind == EventKind.TICK.value:
            self._apply_tick(event.generation)
        elif event.kind == EventKind.DETECTED.value:
            self._request_termination(TerminationReason.DETECTED)
        elif event.kind == EventKind.INTERRUPT.value:
            self._request_termination(TerminationReason.INTERRUPTED)

    # ------------------------------------------------------------------
    # Auto mode
    # ------------------------------------------------------------------

    def _post_tick(self, generation: int) -> None:
        self._events.put(LoopEvent(kind=EventKind.TICK.value, generation=generation))

    def _apply_tick(self, generation: int) -> None:
        with self._lock:
            state = self._state
            if not state.running or state.mode is not Mode.AUTO or state.reason is not None:
                return
            if not self._cycler.is_current(generation):
                return
            state.index = self._table.prev(state.index)
            state.cycle_count += 1
            self._apply_baud()
            # A run spanning a rate change says nothing about the new rate.
            self._classifier.reset()
            self._arm_cycler()

    def _arm_cycler(self) -> None:
        try:
            self._cycler.arm()
        except RuntimeError as exc:
            logger.error("Failed to arm auto detection timer: %s", exc, extra={"error_code": TIMER_FAILED})
            self._emit_error(TIMER_FAILED, str(exc))
            self._fall_back_to_manual()

    def _fall_back_to_manual(self) -> None:
        with self._lock:
            self._cycler.disarm()
            self._state.mode = Mode.MANUAL
            self._classifier.reset()
            self._transition(SessionPhase.MANUAL_ADJUSTING)

    # ------------------------------------------------------------------
    # Manual mode
    # ------------------------------------------------------------------

    def _handle_key(self, key: int) -> None:
        if self._escape_seen == 2:
            self._escape_seen = 0
            if key == ARROW_UP:
                self._step(up=True)
            elif key == ARROW_DOWN:
                self._step(up=False)
            return
        if self._escape_seen == 1:
            self._escape_seen = 2 if key == CSI_BRACKET else 0
            if self._escape_seen:
                return

        if key == ESC:
            self._escape_seen = 1
        elif key in UP_KEYS:
            self._step(up=True)
        elif key in DOWN_KEYS:
            self._step(up=False)
        elif key == CTRL_C:
            self._request_termination(TerminationReason.INTERRUPTED)

    def _step(self, up: bool) -> None:
        with self._lock:
            state = self._state
            if not state.running or state.mode is not Mode.MANUAL:
                return
            index = self._table.clamp_up(state.index) if up else self._table.clamp_down(state.index)
            if index == state.index:
                return
            state.index = index
            self._apply_baud()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _request_termination(self, reason: TerminationReason) -> None:
        with self._lock:
            if self._state.reason is None:
                self._state.reason = reason
            self._state.running = False
            self._cycler.disarm()
            self._transition(SessionPhase.TERMINATING)

    def _teardown(self, saved_terminal: Any) -> None:
        with self._lock:
            if self._state.reason is None and self._handle is not None:
                self._state.reason = TerminationReason.INTERRUPTED
            self._state.running = False
            self._transition(SessionPhase.TERMINATING)

        self._stop_reader()
        self._cycler.disarm()
        try:
            if saved_terminal is not None:
                self._terminal.restore(saved_terminal)
        finally:
            self._keys_enabled = False
            if self._handle is not None:
                try:
                    self._transport.restore(self._handle)
                finally:
                    self._transport.close(self._handle)
                    self._handle = None
            with self._lock:
                self._transition(SessionPhase.TERMINATED)

    def _stop_reader(self) -> None:
        reader = self._reader
        if reader is None:
            return
        if reader is not threading.current_thread():
            # The port is closed only after the reader has left read_byte.
            reader.join(timeout=self._config.read_timeout * 10)
            if reader.is_alive():
                logger.warning("Serial reader still inside a read, waiting for it to return")
                reader.join()
        self._reader = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_baud(self) -> None:
        candidate = self._table.get(self._state.index)
        try:
            self._transport.set_baud(self._handle, candidate)
        except TransportError as exc:
            logger.error("Failed to set baud rate %s: %s", candidate.label, exc, extra={"baud": candidate.rate})
            self._emit_error(exc.code, str(exc))
            return
        logger.info(
            "Serial baud rate set to %s",
            candidate.label,
            extra={"port": self._port, "baud": candidate.rate, "index": self._state.index},
        )
        if self._on_baud_change:
            self._on_baud_change(candidate)

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _transition(self, to_phase: SessionPhase) -> None:
        from_phase = self._state.phase
        if from_phase == to_phase:
            return
        self._state.phase = to_phase
        logger.debug("Session %s -> %s", from_phase.value, to_phase.value)
        if self._on_state_change:
            self._on_state_change(from_phase, to_phase)
