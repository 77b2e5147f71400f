from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Iterable, Optional

import pytest

from baud_table import BaudTable
from config import SessionConfig
from control_loop import ControlLoop
from errors import TERMINAL_UNAVAILABLE, TIMER_FAILED, TRANSPORT_OPEN_FAILED, BaudrateError, TransportError
from models import BaudCandidate, Mode, SessionPhase, TerminationReason


class FakeHandle:
    def __init__(self, path: str) -> None:
        self.path = path
        self.closed = False


class FakeTransport:
    def __init__(
        self,
        data: bytes = b"",
        repeat: Optional[int] = None,
        fail_open: bool = False,
    ) -> None:
        self._data = deque(data)
        self._repeat = repeat
        self._fail_open = fail_open
        self._saved: Optional[dict] = None
        self._wake = threading.Event()
        self.settings = {"baudrate": 9600, "bytesize": 7, "parity": "E", "rtscts": True}
        self.handle: Optional[FakeHandle] = None
        self.baud_calls: list[int] = []
        self.calls: list[str] = []
        self.reads_after_close = 0

    def open(self, path: str) -> FakeHandle:
        self.calls.append("open")
        if self._fail_open:
            raise TransportError(TRANSPORT_OPEN_FAILED, f"{path}: no such device")
        self._saved = dict(self.settings)
        self.handle = FakeHandle(path)
        return self.handle

    def configure(self, handle: FakeHandle) -> None:
        self.calls.append("configure")
        self.settings.update({"bytesize": 8, "parity": "N", "rtscts": False})

    def set_baud(self, handle: FakeHandle, candidate: BaudCandidate) -> None:
        self.baud_calls.append(candidate.rate)
        self.settings["baudrate"] = candidate.rate

    def read_byte(self, handle: FakeHandle, timeout: float) -> Optional[int]:
        if handle.closed:
            self.reads_after_close += 1
            return None
        if self._data:
            return self._data.popleft()
        if self._repeat is not None:
            time.sleep(0.001)
            return self._repeat
        self._wake.wait(timeout)
        return None

    def restore(self, handle: FakeHandle) -> None:
        self.calls.append("restore")
        if self._saved is not None:
            self.settings = dict(self._saved)

    def close(self, handle: FakeHandle) -> None:
        self.calls.append("close")
        handle.closed = True

    @property
    def remaining(self) -> int:
        return len(self._data)


class FakeTerminal:
    def __init__(self, keys: Iterable[int] = (), interactive: bool = True) -> None:
        self._keys = deque(keys)
        self._interactive = interactive
        self.entered = False
        self.restored = False

    def enter_raw_mode(self) -> str:
        if not self._interactive:
            raise BaudrateError(TERMINAL_UNAVAILABLE)
        self.entered = True
        return "saved"

    def restore(self, saved: str) -> None:
        assert saved == "saved"
        self.restored = True

    def read_key(self, timeout: float) -> Optional[int]:
        if self._keys:
            return self._keys.popleft()
        time.sleep(timeout)
        return None


class FakeTimer:
    def __init__(self, interval: float, function: Callable[[], None], factory: "FakeTimerFactory") -> None:
        self.interval = interval
        self.function = function
        self._factory = factory
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        if self._factory.fail:
            raise RuntimeError("can't start new thread")
        with self._factory.cond:
            self.started = True
            self._factory.cond.notify_all()

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fired = True
        self.function()


class FakeTimerFactory:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.timers: list[FakeTimer] = []
        self.cond = threading.Condition()

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, function, self)
        with self.cond:
            self.timers.append(timer)
        return timer

    def wait_for(self, count: int, timeout: float = 2.0) -> FakeTimer:
        """Block until the count-th timer has been started."""

        def ready() -> bool:
            return len(self.timers) >= count and self.timers[count - 1].started

        with self.cond:
            assert self.cond.wait_for(ready, timeout=timeout)
            return self.timers[count - 1]

    def pending(self) -> list[FakeTimer]:
        with self.cond:
            return [t for t in self.timers if t.started and not t.cancelled and not t.fired]


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _make_loop(
    transport: FakeTransport,
    mode: Mode = Mode.AUTO,
    threshold: int = 25,
    wait_period: float = 5.0,
    start_index: Optional[int] = None,
    terminal: Optional[FakeTerminal] = None,
    timers: Optional[FakeTimerFactory] = None,
    **callbacks,
) -> ControlLoop:
    config = SessionConfig(
        mode=mode,
        threshold=threshold,
        wait_period=wait_period,
        start_index=start_index,
        read_timeout=0.05,
    )
    return ControlLoop(
        port="/dev/ttyFAKE0",
        transport=transport,
        config=config,
        terminal=terminal,
        timer_factory=timers or FakeTimerFactory(),
        poll_interval_s=0.01,
        **callbacks,
    )


class _Runner:
    def __init__(self, loop: ControlLoop) -> None:
        self.loop = loop
        self.result = None
        self.error: Optional[BaseException] = None
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        try:
            self.result = self.loop.run()
        except BaseException as exc:  # noqa: BLE001
            self.error = exc

    def start(self) -> "_Runner":
        self.thread.start()
        return self

    def join(self, timeout: float = 2.0) -> None:
        self.thread.join(timeout=timeout)
        assert not self.thread.is_alive()


def test_detects_text_before_stream_is_exhausted() -> None:
    transport = FakeTransport(data=b"Hello, world! How are you?\n")
    phases: list[tuple[SessionPhase, SessionPhase]] = []
    loop = _make_loop(transport, threshold=10, on_state_change=lambda f, t: phases.append((f, t)))

    result = loop.run()

    assert result.reason == TerminationReason.DETECTED
    assert result.candidate.rate == 115200
    assert transport.remaining > 0
    assert loop.phase == SessionPhase.TERMINATED
    assert (SessionPhase.AUTO_DETECTING, SessionPhase.TERMINATING) in phases
    assert (SessionPhase.TERMINATING, SessionPhase.TERMINATED) in phases


def test_detection_leaves_window_intact() -> None:
    transport = FakeTransport(data=b"Hello, world!")
    loop = _make_loop(transport, threshold=10)

    loop.run()

    window = loop.state.window
    assert window.run_length == 10
    assert window.punctuation_seen == 1
    assert window.whitespace_seen == 1


def test_tick_racing_detection_keeps_detected_rate() -> None:
    transport = FakeTransport(data=b"Hello, world! How are you?\n")
    timers = FakeTimerFactory()
    bauds: list[BaudCandidate] = []
    loop = _make_loop(transport, threshold=10, timers=timers, on_baud_change=bauds.append)
    feed = loop._classifier.feed

    def feed_and_tick(byte: int) -> bool:
        matched = feed(byte)
        if matched:
            timers.wait_for(1).fire()
        return matched

    loop._classifier.feed = feed_and_tick

    result = loop.run()

    assert timers.timers[0].fired is True
    assert result.reason == TerminationReason.DETECTED
    assert result.candidate.rate == 115200
    assert result.cycle_count == 0
    assert [c.rate for c in bauds] == [115200]
    assert len(timers.timers) == 1


def test_ticks_walk_table_downwards_and_wrap() -> None:
    table = BaudTable()
    n = len(table)
    start = 1
    ticks = 5
    transport = FakeTransport()
    timers = FakeTimerFactory()
    loop = _make_loop(transport, start_index=start, timers=timers)
    runner = _Runner(loop).start()

    for i in range(1, ticks + 1):
        timers.wait_for(i).fire()
    timers.wait_for(ticks + 1)

    assert loop.state.index == (start - ticks) % n
    assert loop.state.cycle_count == ticks

    loop.request_stop()
    runner.join()
    assert runner.result.reason == TerminationReason.INTERRUPTED
    assert runner.result.cycle_count == ticks
    expected = [table.get((start - k) % n).rate for k in range(ticks + 1)]
    assert transport.baud_calls == expected


def test_noise_never_detects_and_ticks_once_per_period() -> None:
    transport = FakeTransport(repeat=0xFF)
    timers = FakeTimerFactory()
    bauds: list[BaudCandidate] = []
    loop = _make_loop(
        transport,
        threshold=25,
        wait_period=5,
        timers=timers,
        on_baud_change=bauds.append,
    )
    runner = _Runner(loop).start()

    for i in range(1, 4):
        timer = timers.wait_for(i)
        assert len(timers.pending()) == 1
        timer.fire()
    timers.wait_for(4)

    assert all(t.interval == 5 for t in timers.timers)
    assert loop.state.cycle_count == 3
    assert [c.rate for c in bauds] == [115200, 57600, 38400, 19200]
    assert loop.phase == SessionPhase.AUTO_DETECTING

    loop.request_stop()
    runner.join()
    assert runner.result.reason == TerminationReason.INTERRUPTED
    assert timers.pending() == []


def test_tick_resets_partial_run() -> None:
    transport = FakeTransport(data=b"Hello, wo")
    timers = FakeTimerFactory()
    loop = _make_loop(transport, threshold=10, timers=timers)
    runner = _Runner(loop).start()

    assert _wait_until(lambda: loop.state.window.run_length == 9)
    timers.wait_for(1).fire()
    timers.wait_for(2)

    assert loop.state.window.run_length == 0
    assert loop.state.window.vowel_seen == 0

    loop.request_stop()
    runner.join()


def test_manual_decrement_at_bottom_is_clamped() -> None:
    transport = FakeTransport()
    terminal = FakeTerminal(keys=[ord("d"), ord("D"), 0x1B, 0x5B, ord("B"), 0x03])
    loop = _make_loop(transport, mode=Mode.MANUAL, start_index=0, terminal=terminal)

    result = loop.run()

    assert loop.state.index == 0
    assert transport.baud_calls == [2400]
    assert result.reason == TerminationReason.INTERRUPTED
    assert terminal.entered is True
    assert terminal.restored is True


def test_manual_increment_at_top_is_clamped() -> None:
    transport = FakeTransport()
    table = BaudTable()
    top = len(table) - 1
    terminal = FakeTerminal(keys=[ord("u"), 0x1B, 0x5B, ord("A"), ord("U"), 0x03])
    loop = _make_loop(transport, mode=Mode.MANUAL, start_index=top, terminal=terminal)

    loop.run()

    assert loop.state.index == top
    assert transport.baud_calls == [115200]


def test_manual_keys_move_index_and_ignore_other_bytes() -> None:
    transport = FakeTransport()
    keys = [ord("u"), ord("x"), 0x1B, 0x5B, ord("A"), ord("d"), 0x1B, ord("q"), 0x03]
    terminal = FakeTerminal(keys=keys)
    loop = _make_loop(transport, mode=Mode.MANUAL, start_index=2, terminal=terminal)

    loop.run()

    assert loop.state.index == 3
    assert transport.baud_calls == [9600, 19200, 38400, 19200]


def test_manual_mode_does_not_arm_timer_or_classify() -> None:
    transport = FakeTransport(data=b"Hello, world! How are you?\n")
    timers = FakeTimerFactory()
    data: list[bytes] = []
    loop = _make_loop(transport, mode=Mode.MANUAL, threshold=10, timers=timers, on_data=data.append)
    runner = _Runner(loop).start()

    assert _wait_until(lambda: transport.remaining == 0)
    assert _wait_until(lambda: len(data) == len(b"Hello, world! How are you?\n"))
    assert timers.timers == []
    assert loop.state.window.run_length == 0

    loop.request_stop()
    runner.join()
    assert b"".join(data) == b"Hello, world! How are you?\n"


def test_stop_during_timed_out_read_restores_transport() -> None:
    transport = FakeTransport()
    before = dict(transport.settings)
    loop = _make_loop(transport)
    runner = _Runner(loop).start()
    assert _wait_until(lambda: loop.phase == SessionPhase.AUTO_DETECTING)
    time.sleep(0.02)

    started = time.monotonic()
    loop.request_stop()
    runner.join()
    elapsed = time.monotonic() - started

    assert elapsed < 0.5
    assert transport.settings == before
    assert transport.calls[-2:] == ["restore", "close"]
    assert transport.reads_after_close == 0
    assert loop.phase == SessionPhase.TERMINATED


class SlowReadTransport(FakeTransport):
    """Every read blocks for ``delay`` seconds, longer than the join grace."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self._delay = delay
        self.reading = False
        self.closed_during_read = False

    def read_byte(self, handle: FakeHandle, timeout: float) -> Optional[int]:
        self.reading = True
        try:
            time.sleep(self._delay)
            return super().read_byte(handle, 0)
        finally:
            self.reading = False

    def close(self, handle: FakeHandle) -> None:
        if self.reading:
            self.closed_during_read = True
        super().close(handle)


def test_port_is_not_closed_while_a_slow_read_is_in_flight() -> None:
    transport = SlowReadTransport(delay=0.8)
    loop = _make_loop(transport)
    runner = _Runner(loop).start()
    assert _wait_until(lambda: transport.reading)

    loop.request_stop()
    runner.join(timeout=3.0)

    assert transport.closed_during_read is False
    assert transport.reads_after_close == 0
    assert transport.calls[-2:] == ["restore", "close"]
    assert loop.phase == SessionPhase.TERMINATED


def test_open_failure_is_fatal_and_reported() -> None:
    transport = FakeTransport(fail_open=True)
    terminal = FakeTerminal()
    errors: list[tuple[str, str]] = []
    loop = _make_loop(transport, terminal=terminal, on_error=lambda c, m: errors.append((c, m)))

    with pytest.raises(TransportError):
        loop.run()

    assert errors and errors[0][0] == TRANSPORT_OPEN_FAILED
    assert terminal.entered is False
    assert transport.calls == ["open"]
    assert loop.phase == SessionPhase.TERMINATED


def test_timer_failure_falls_back_to_manual() -> None:
    transport = FakeTransport()
    errors: list[tuple[str, str]] = []
    loop = _make_loop(
        transport,
        timers=FakeTimerFactory(fail=True),
        on_error=lambda c, m: errors.append((c, m)),
    )
    runner = _Runner(loop).start()

    assert _wait_until(lambda: loop.phase == SessionPhase.MANUAL_ADJUSTING)
    assert loop.state.mode == Mode.MANUAL
    assert errors[0][0] == TIMER_FAILED

    loop.request_stop()
    runner.join()
    assert runner.error is None


def test_non_interactive_terminal_in_manual_mode_reports_and_continues() -> None:
    transport = FakeTransport()
    terminal = FakeTerminal(interactive=False)
    errors: list[tuple[str, str]] = []
    loop = _make_loop(
        transport,
        mode=Mode.MANUAL,
        terminal=terminal,
        on_error=lambda c, m: errors.append((c, m)),
    )
    runner = _Runner(loop).start()

    assert _wait_until(lambda: bool(errors))
    assert errors[0][0] == TERMINAL_UNAVAILABLE
    assert loop.phase == SessionPhase.MANUAL_ADJUSTING

    loop.request_stop()
    runner.join()
    assert terminal.restored is False


def test_stale_tick_after_stop_is_ignored() -> None:
    transport = FakeTransport()
    timers = FakeTimerFactory()
    loop = _make_loop(transport, timers=timers)
    runner = _Runner(loop).start()
    first = timers.wait_for(1)

    loop.request_stop()
    runner.join()
    first.fire()

    assert first.cancelled is True
    assert loop.state.cycle_count == 0
    assert len(timers.timers) == 1


def test_start_index_outside_table_is_rejected() -> None:
    with pytest.raises(ValueError):
        _make_loop(FakeTransport(), start_index=42)
