"""Ordered table of candidate baud rates."""

from __future__ import annotations

from typing import Iterable, Iterator, Sequence

from models import BaudCandidate

# Only the most common console rates, to keep the number of guesses small.
DEFAULT_RATES: tuple[int, ...] = (2400, 4800, 9600, 19200, 38400, 57600, 115200)


class BaudTable:
    """Immutable, ascending list of candidates addressed by index.

    ``next``/``prev`` wrap around and are used while auto cycling;
    ``clamp_up``/``clamp_down`` saturate at the ends and are used for manual
    adjustment.
    """

    def __init__(self, rates: Iterable[int] = DEFAULT_RATES) -> None:
        ordered = sorted(set(int(rate) for rate in rates))
        if not ordered:
            raise ValueError("baud table needs at least one rate")
        if ordered[0] <= 0:
            raise ValueError("baud rates must be positive")
        self._candidates: Sequence[BaudCandidate] = tuple(
            BaudCandidate(rate=rate, label=str(rate)) for rate in ordered
        )

    def __len__(self) -> int:
        return len(self._candidates)

    def __iter__(self) -> Iterator[BaudCandidate]:
        return iter(self._candidates)

    @property
    def default_index(self) -> int:
        return len(self._candidates) - 1

    def get(self, index: int) -> BaudCandidate:
        return self._candidates[index]

    def next(self, index: int) -> int:
        return (index + 1) % len(self._candidates)

    def prev(self, index: int) -> int:
        n = len(self._candidates)
        return (index - 1 + n) % n

    def clamp_up(self, index: int) -> int:
        return min(index + 1, len(self._candidates) - 1)

    def clamp_down(self, index: int) -> int:
        return max(index - 1, 0)

    def index_of(self, rate: int) -> int:
        for i, candidate in enumerate(self._candidates):
            if candidate.rate == rate:
                return i
        raise ValueError(f"unsupported baud rate: {rate}")
