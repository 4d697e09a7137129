from __future__ import annotations

import asyncio
import math
from typing import Callable, Optional

from lactate_engine.telemetry.hub import LiveSnapshot, TelemetryHub
from lactate_engine.telemetry.simulated import SimulatedSensor


def _hub(**kwargs: object) -> TelemetryHub:
    return TelemetryHub(clock=lambda: 1000.0, **kwargs)  # type: ignore[arg-type]


def test_update_merges_only_present_fields() -> None:
    hub = _hub()
    hub.apply_update("bike_trainer", {"power": 200, "cadence": 90})
    hub.apply_update("heart_rate", {"heart_rate": 150})

    snapshot = hub.snapshot()
    assert snapshot.power == 200
    assert snapshot.cadence == 90
    assert snapshot.heart_rate == 150
    assert snapshot.smo2 is None
    assert snapshot.timestamp == 1000.0


def test_applying_the_same_update_twice_is_idempotent() -> None:
    hub = _hub()
    once = hub.apply_update("moxy", {"smo2": 64.2, "thb": 12.1})
    twice = hub.apply_update("moxy", {"smo2": 64.2, "thb": 12.1})

    assert once == twice


def test_updates_on_disjoint_fields_commute() -> None:
    a = {"power": 210}
    b = {"heart_rate": 155, "core_temp": 37.8}

    first = _hub()
    first.apply_update("bike_trainer", a)
    first.apply_update("heart_rate", b)
    second = _hub()
    second.apply_update("heart_rate", b)
    second.apply_update("bike_trainer", a)

    assert first.snapshot() == second.snapshot()


def test_unknown_and_invalid_fields_are_ignored() -> None:
    hub = _hub()
    hub.apply_update("bike_trainer", {"power": 200})
    hub.apply_update("bike_trainer", {"torque": 55, "power": math.nan, "cadence": True})

    snapshot = hub.snapshot()
    assert snapshot.power == 200
    assert snapshot.cadence is None


def test_recovery_zeroes_power_cadence_and_speed() -> None:
    hub = _hub()
    hub.apply_update("bike_trainer", {"power": 250, "cadence": 92, "speed": 33.0})
    hub.apply_update("heart_rate", {"heart_rate": 160})

    hub.set_phase("recovery")
    snapshot = hub.snapshot()
    assert (snapshot.power, snapshot.cadence, snapshot.speed) == (0, 0, 0)
    assert snapshot.heart_rate == 160

    # Trainer keeps streaming while the athlete soft-pedals.
    hub.apply_update("bike_trainer", {"power": 45, "cadence": 60})
    assert hub.snapshot().power == 0
    assert hub.snapshot().cadence == 0

    hub.set_phase("work")
    hub.apply_update("bike_trainer", {"power": 270})
    assert hub.snapshot().power == 270


def test_display_snapshot_smooths_heart_rate_but_recording_stays_raw() -> None:
    hub = _hub(heart_rate_smoothing=0.5)
    hub.apply_update("heart_rate", {"heart_rate": 100})
    hub.apply_update("heart_rate", {"heart_rate": 120})

    assert hub.snapshot().heart_rate == 120
    assert hub.display_snapshot().heart_rate == 110.0


def test_recording_smoothed_heart_rate_when_enabled() -> None:
    hub = _hub(heart_rate_smoothing=0.5, record_smoothed_heart_rate=True)
    hub.apply_update("heart_rate", {"heart_rate": 100})
    hub.apply_update("heart_rate", {"heart_rate": 120})

    assert hub.snapshot().heart_rate == 110.0


def test_device_status_tracks_updates_and_disconnects() -> None:
    hub = _hub()
    hub.apply_update("core_temp", {"core_temp": 37.6})

    status = hub.devices["core_temp"]
    assert status.connected is True
    assert status.last_update == 1000.0
    assert status.fields == {"core_temp": 37.6}

    hub.mark_disconnected("core_temp", "link lost")
    assert hub.devices["core_temp"].connected is False
    assert hub.devices["core_temp"].last_error == "link lost"


def test_reset_clears_the_snapshot() -> None:
    hub = _hub()
    hub.apply_update("bike_trainer", {"power": 200})
    hub.reset()

    assert hub.snapshot() == LiveSnapshot()


def test_connect_all_reports_failures_and_keeps_other_devices() -> None:
    async def _run() -> None:
        hub = _hub()
        hub.register_adapter("heart_rate", SimulatedSensor("heart_rate", interval_sec=0.01))
        hub.register_adapter("moxy", SimulatedSensor("moxy", fail_connect=True))

        failures = await hub.connect_all()
        assert [failure.device_type for failure in failures] == ["moxy"]
        assert hub.devices["heart_rate"].connected is True
        assert hub.devices["moxy"].connected is False

        await asyncio.sleep(0.05)
        assert hub.snapshot().heart_rate is not None
        assert hub.snapshot().smo2 is None

        assert await hub.disconnect_all() == []

    asyncio.run(_run())


class _LinkEmitter:
    def __init__(self) -> None:
        self.lost: Optional[Callable[[str], None]] = None

    async def connect(self) -> None:
        return None

    def on_update(self, callback: Callable[..., None]) -> None:
        return None

    def on_link_lost(self, callback: Callable[[str], None]) -> None:
        self.lost = callback

    async def disconnect(self) -> None:
        return None


def test_link_loss_reported_by_an_adapter_marks_the_device() -> None:
    async def _run() -> None:
        lost: list[tuple[str, Optional[str]]] = []
        hub = _hub(on_device_lost=lambda device, reason: lost.append((device, reason)))
        emitter = _LinkEmitter()
        hub.register_adapter("bike_trainer", emitter)
        await hub.connect_all()
        assert hub.devices["bike_trainer"].connected is True

        assert emitter.lost is not None
        emitter.lost("link lost")

        assert hub.devices["bike_trainer"].connected is False
        assert hub.devices["bike_trainer"].last_error == "link lost"
        assert lost == [("bike_trainer", "link lost")]

    asyncio.run(_run())
