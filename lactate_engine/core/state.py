"""Test state tagged union and the allowed transitions between modes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

TestMode = Literal["idle", "running", "paused", "completed"]
Phase = Literal["work", "recovery", "countdown"]

# mode -> modes reachable from it through a single operator/timer event
ALLOWED_TRANSITIONS: dict[TestMode, frozenset[TestMode]] = {
    "idle": frozenset({"running"}),
    "running": frozenset({"running", "paused", "completed"}),
    "paused": frozenset({"running", "completed"}),
    "completed": frozenset({"idle"}),
}


@dataclass(frozen=True)
class TestState:
    """Single source of truth for the engine.

    ``phase`` is only set while running; ``resume_phase`` only while paused.
    """

    mode: TestMode = "idle"
    phase: Optional[Phase] = None
    current_step: int = 0
    countdown_value: int = 0
    resume_phase: Optional[Phase] = None

    @property
    def is_running(self) -> bool:
        return self.mode == "running"

    @property
    def in_progress(self) -> bool:
        return self.mode in ("running", "paused")


IDLE = TestState()


def running(phase: Phase, current_step: int, countdown_value: int = 0) -> TestState:
    return TestState(
        mode="running",
        phase=phase,
        current_step=current_step,
        countdown_value=countdown_value,
    )


def paused(previous: TestState) -> TestState:
    return TestState(
        mode="paused",
        current_step=previous.current_step,
        countdown_value=previous.countdown_value,
        resume_phase=previous.phase,
    )


def completed(previous: TestState) -> TestState:
    return TestState(mode="completed", current_step=previous.current_step)


def validate_transition(current: TestState, new: TestState) -> None:
    if new.mode not in ALLOWED_TRANSITIONS[current.mode]:
        raise RuntimeError(f"Illegal transition {current.mode} -> {new.mode}")
    if new.mode == "running" and new.phase is None:
        raise RuntimeError("Running state requires a phase")
    if (
        current.mode == "running"
        and new.mode == "running"
        and new.current_step < current.current_step
    ):
        raise RuntimeError("current_step may only increase while running")
