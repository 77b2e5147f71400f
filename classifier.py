"""Heuristic that decides whether a byte stream looks like readable text.

Garbage from a mismatched baud rate rarely produces a long contiguous run
of printable characters, and almost never one that contains whitespace,
sentence punctuation and vowels at the same time. A run that does is taken
as evidence that the current rate is correct.
"""

from __future__ import annotations

from models import ClassifierWindow

WHITESPACE = frozenset(b" \r\n")
PUNCTUATION = frozenset(b".,;:!?")
VOWELS = frozenset(b"aeiouAEIOU")


def is_qualifying(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E or byte in (0x0A, 0x0D)


class DetectionClassifier:
    def __init__(self, threshold: int, window: ClassifierWindow | None = None) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.window = window if window is not None else ClassifierWindow()

    def feed(self, byte: int) -> bool:
        """Consume one byte and return True when the run qualifies as text.

        The window is left untouched after a match.
        """
        window = self.window
        if not is_qualifying(byte):
            window.clear()
            return False

        window.run_length += 1
        if byte in WHITESPACE:
            window.whitespace_seen += 1
        elif byte in PUNCTUATION:
            window.punctuation_seen += 1
        elif byte in VOWELS:
            window.vowel_seen += 1
        return self.matched()

    def matched(self) -> bool:
        window = self.window
        return (
            window.run_length >= self.threshold
            and window.whitespace_seen > 0
            and window.punctuation_seen > 0
            and window.vowel_seen > 0
        )

    def reset(self) -> None:
        self.window.clear()
