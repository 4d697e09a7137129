from __future__ import annotations

import math

import pytest

from lactate_engine.core.errors import InvalidLactateValue
from lactate_engine.core.state import running
from lactate_engine.protocol.model import Step
from lactate_engine.recording.lactate import LactateAnnotationStore
from lactate_engine.recording.recorder import SampleRecorder
from lactate_engine.telemetry.hub import TelemetryHub

STEP_1 = Step(step_number=1, target_power_watts=100, duration_sec=360, recovery_duration_sec=60)
STEP_2 = Step(step_number=2, target_power_watts=120, duration_sec=360, recovery_duration_sec=60)


def _store_with_power(powers: list[float]) -> LactateAnnotationStore:
    hub = TelemetryHub(clock=lambda: 0.0)
    recorder = SampleRecorder()
    for power in powers:
        hub.apply_update("bike_trainer", {"power": power})
        recorder.tick(hub, running("work", 0), interval_time=0, total_time=0)
    return LactateAnnotationStore(recorder)


def test_power_defaults_to_mean_recorded_power_of_the_step() -> None:
    store = _store_with_power([98, 101, 103])

    entry = store.add(STEP_1, 1.4, borg=11, time=420)

    assert entry.step == 1
    assert entry.power == 100.7
    assert entry.lactate == 1.4
    assert entry.borg == 11
    assert entry.time == 420
    assert store.entries == (entry,)


def test_power_falls_back_to_target_without_samples() -> None:
    store = _store_with_power([98, 101])

    assert store.add(STEP_2, 2.1).power == 120.0


def test_manual_power_wins() -> None:
    store = _store_with_power([98, 101])

    assert store.add(STEP_1, 1.2, manual_power=95).power == 95.0


def test_numeric_strings_are_accepted() -> None:
    store = _store_with_power([])

    entry = store.add(STEP_1, "2.4", borg="13")  # type: ignore[arg-type]

    assert entry.lactate == 2.4
    assert entry.borg == 13.0


@pytest.mark.parametrize("lactate", [-2, 0, math.nan, math.inf, "abc", None, True])
def test_invalid_lactate_is_rejected_without_appending(lactate: object) -> None:
    store = _store_with_power([100])

    with pytest.raises(InvalidLactateValue):
        store.add(STEP_1, lactate)  # type: ignore[arg-type]
    assert store.entries == ()


@pytest.mark.parametrize("borg", [5, 21, math.nan])
def test_borg_outside_scale_is_rejected(borg: float) -> None:
    store = _store_with_power([100])

    with pytest.raises(InvalidLactateValue):
        store.add(STEP_1, 2.0, borg=borg)
    assert store.entries == ()


def test_entries_per_step_and_clear() -> None:
    store = _store_with_power([])
    store.add(STEP_1, 1.1)
    store.add(STEP_2, 1.8)
    store.add(STEP_2, 1.9)

    assert [e.lactate for e in store.for_step(2)] == [1.8, 1.9]

    store.clear()
    assert store.entries == ()
