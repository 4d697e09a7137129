"""Engine timing and recording configuration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    tick_sec: float = 1.0
    countdown_sec: int = 3
    erg_grace_delay_sec: float = 2.0
    # Heart rate in recorded samples is raw unless this is enabled.
    record_smoothed_heart_rate: bool = False
    heart_rate_smoothing: float = 0.3

    def __post_init__(self) -> None:
        if self.tick_sec <= 0:
            raise ValueError("tick_sec must be > 0")
        if self.countdown_sec <= 0:
            raise ValueError("countdown_sec must be > 0")
        if self.erg_grace_delay_sec < 0:
            raise ValueError("erg_grace_delay_sec must be >= 0")
        if not 0.0 < self.heart_rate_smoothing <= 1.0:
            raise ValueError("heart_rate_smoothing must be in (0, 1]")
