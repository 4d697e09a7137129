"""Interval protocol domain models."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProtocolParams:
    work_duration_sec: int = 360
    recovery_duration_sec: int = 60
    start_power_watts: int = 100
    power_increment_watts: int = 20
    max_steps: int = 8


@dataclass(frozen=True)
class Step:
    step_number: int
    target_power_watts: int
    duration_sec: int
    recovery_duration_sec: int


@dataclass(frozen=True)
class Protocol:
    work_duration_sec: int
    recovery_duration_sec: int
    start_power_watts: int
    power_increment_watts: int
    max_steps: int
    steps: tuple[Step, ...]

    @property
    def last_step_index(self) -> int:
        return len(self.steps) - 1

    @property
    def total_duration_sec(self) -> int:
        return sum(step.duration_sec + step.recovery_duration_sec for step in self.steps)
