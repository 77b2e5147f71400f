"""Core data models for the baud rate detector."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Mode(str, Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"


class SessionPhase(str, Enum):
    INITIALIZING = "INITIALIZING"
    AUTO_DETECTING = "AUTO_DETECTING"
    MANUAL_ADJUSTING = "MANUAL_ADJUSTING"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"


class TerminationReason(str, Enum):
    DETECTED = "DETECTED"
    INTERRUPTED = "INTERRUPTED"


class EventKind(str, Enum):
    TICK = "tick"
    DETECTED = "detected"
    INTERRUPT = "interrupt"


@dataclass(frozen=True)
class BaudCandidate:
    rate: int
    label: str

    def __str__(self) -> str:
        return self.label


@dataclass
class ClassifierWindow:
    run_length: int = 0
    whitespace_seen: int = 0
    punctuation_seen: int = 0
    vowel_seen: int = 0

    def clear(self) -> None:
        self.run_length = 0
        self.whitespace_seen = 0
        self.punctuation_seen = 0
        self.vowel_seen = 0


@dataclass
class SessionState:
    index: int
    mode: Mode
    threshold: int
    wait_period: float
    cycle_count: int = 0
    window: ClassifierWindow = field(default_factory=ClassifierWindow)
    running: bool = False
    phase: SessionPhase = SessionPhase.INITIALIZING
    reason: TerminationReason | None = None


@dataclass
class LoopEvent:
    kind: str
    generation: int = 0


@dataclass
class SessionResult:
    port: str
    candidate: BaudCandidate
    reason: TerminationReason
    cycle_count: int = 0
