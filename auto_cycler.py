"""Periodic baud rotation timer for auto detection."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from interfaces import TimerFactory
from log_setup import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[int], None]


def _daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


class AutoCycler:
    """One-shot timer that posts a tick after every ``wait_period``.

    The cycler never mutates session state itself. Each firing calls
    ``on_tick`` with the generation it was armed under; the owner applies
    the tick and calls ``arm()`` again, so at most one tick is ever
    outstanding. ``disarm()`` bumps the generation, which lets the owner
    discard a tick that raced with it.
    """

    def __init__(
        self,
        wait_period: float,
        on_tick: TickCallback,
        timer_factory: TimerFactory = _daemon_timer,
    ) -> None:
        if wait_period <= 0:
            raise ValueError("wait_period must be positive")
        self.wait_period = wait_period
        self._on_tick = on_tick
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Optional[Any] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self) -> None:
        """Schedule the next tick. Raises if the timer cannot be started."""
        with self._lock:
            self._cancel_locked()
            generation = self._generation
            timer = self._timer_factory(self.wait_period, lambda: self._fire(generation))
            timer.start()
            self._timer = timer

    def disarm(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
        logger.debug("Tick fired (generation %d)", generation)
        self._on_tick(generation)

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
