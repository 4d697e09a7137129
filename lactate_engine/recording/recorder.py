"""Per-second sample series correlated to protocol step and phase."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from lactate_engine.core.state import Phase, TestState
from lactate_engine.telemetry.hub import TelemetryHub


@dataclass(frozen=True)
class Sample:
    power: Optional[float]
    cadence: Optional[float]
    speed: Optional[float]
    heart_rate: Optional[float]
    smo2: Optional[float]
    thb: Optional[float]
    core_temp: Optional[float]
    vo2: Optional[float]
    vco2: Optional[float]
    ventilation: Optional[float]
    step: int
    phase: Optional[Phase]
    interval_time: int
    total_time: int
    timestamp: Optional[float]


class SampleRecorder:
    """Append-only series of samples; nothing is ever mutated or removed mid-run."""

    def __init__(self) -> None:
        self._samples: list[Sample] = []

    @property
    def samples(self) -> tuple[Sample, ...]:
        return tuple(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def tick(
        self,
        hub: TelemetryHub,
        state: TestState,
        *,
        interval_time: int,
        total_time: int,
    ) -> Sample:
        snapshot = hub.snapshot()
        sample = Sample(
            **snapshot.metrics(),
            step=state.current_step,
            phase=state.phase,
            interval_time=interval_time,
            total_time=total_time,
            timestamp=snapshot.timestamp,
        )
        self._samples.append(sample)
        return sample

    def samples_for_step(self, step_index: int) -> list[Sample]:
        return [sample for sample in self._samples if sample.step == step_index]

    def mean_power(self, step_index: int) -> Optional[float]:
        powers = [
            sample.power
            for sample in self._samples
            if sample.step == step_index and sample.power is not None
        ]
        if not powers:
            return None
        return sum(powers) / len(powers)

    def clear(self) -> None:
        self._samples = []
