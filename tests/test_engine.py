from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

from lactate_engine.core.config import EngineConfig
from lactate_engine.core.engine import TestEngine, TestProgress
from lactate_engine.core.errors import ControllerCommandError
from lactate_engine.core.scheduler import ManualScheduler
from lactate_engine.core.trainer import TrainerStatus
from lactate_engine.protocol.manager import create_protocol
from lactate_engine.protocol.model import Protocol, ProtocolParams, Step
from lactate_engine.session.store import TestSession
from lactate_engine.telemetry.hub import TelemetryHub


class FakeTrainer:
    def __init__(self, fail: bool = False) -> None:
        self.status: TrainerStatus = "ready"
        self.fail = fail
        self.commands: list[int] = []

    async def request_control(self) -> None:
        self.status = "controlled"

    async def start(self) -> None:
        return None

    async def set_erg_watts(self, watts: int) -> None:
        self.commands.append(watts)
        if self.fail:
            raise ControllerCommandError("Control point opcode 0x05: operation failed")


class SlowTrainer(FakeTrainer):
    """Holds every ERG write until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def set_erg_watts(self, watts: int) -> None:
        self.commands.append(watts)
        await self.release.wait()


def _protocol(work: int = 5, recovery: int = 3, steps: int = 3) -> Protocol:
    return create_protocol(
        ProtocolParams(
            work_duration_sec=work,
            recovery_duration_sec=recovery,
            start_power_watts=100,
            power_increment_watts=20,
            max_steps=steps,
        )
    )


def _engine(protocol: Protocol | None = None, **kwargs: Any) -> tuple[TestEngine, ManualScheduler, TelemetryHub]:
    scheduler = ManualScheduler()
    hub = TelemetryHub(clock=scheduler.time)
    engine = TestEngine(protocol or _protocol(), hub, scheduler=scheduler, **kwargs)
    return engine, scheduler, hub


def test_paused_time_is_not_counted_or_sampled() -> None:
    engine, scheduler, _ = _engine(_protocol(work=60))

    assert engine.start() is True
    scheduler.advance(5)
    assert engine.pause() is True
    scheduler.advance(10)
    assert engine.resume() is True
    scheduler.advance(5)

    assert engine.total_elapsed_sec == 10
    assert len(engine.samples) == 10
    assert engine.phase_elapsed_sec == 10
    assert engine.state.phase == "work"


def test_one_sample_per_running_second_without_gaps() -> None:
    engine, scheduler, _ = _engine()
    engine.start()
    scheduler.advance(14)

    assert engine.total_elapsed_sec == 14
    assert [s.total_time for s in engine.samples] == list(range(1, 15))


def test_phases_follow_work_recovery_countdown_work() -> None:
    progress: list[TestProgress] = []
    prompts: list[Step] = []
    engine, scheduler, _ = _engine(on_progress=progress.append, on_lactate_prompt=prompts.append)
    engine.start()

    scheduler.advance(4)
    assert engine.state.phase == "work"
    scheduler.advance(1)
    assert engine.state.phase == "recovery"
    assert [p.step_number for p in prompts] == [1]

    scheduler.advance(3)
    assert engine.state.phase == "countdown"
    assert engine.state.countdown_value == 3
    scheduler.advance(1)
    assert engine.state.countdown_value == 2
    scheduler.advance(1)
    assert engine.state.countdown_value == 1
    scheduler.advance(1)

    assert engine.state.phase == "work"
    assert engine.state.current_step == 1
    assert engine.current_step.target_power_watts == 120
    assert engine.phase_elapsed_sec == 0
    assert progress[-1].step_number == 2
    assert progress[-1].phase_remaining_sec == 5


def test_last_step_repeats_until_stopped() -> None:
    engine, scheduler, _ = _engine(_protocol(steps=1))
    engine.start()
    scheduler.advance(5 + 3 + 3)

    assert engine.state.phase == "work"
    assert engine.state.current_step == 0
    assert engine.state.is_running


def test_exactly_one_phase_timer_while_running() -> None:
    engine, scheduler, _ = _engine(config=EngineConfig(erg_grace_delay_sec=0.5))
    engine.start()
    assert engine.armed_timers == ["erg_grace", "phase", "sampling", "total"]

    for _ in range(12):
        scheduler.advance(1)
        assert engine.armed_timers == ["phase", "sampling", "total"]
        assert scheduler.pending == 3

    engine.pause()
    assert engine.armed_timers == []
    assert scheduler.pending == 0


def test_recovery_samples_have_zero_power() -> None:
    engine, scheduler, hub = _engine()
    hub.apply_update("bike_trainer", {"power": 100, "cadence": 90, "speed": 30.0})
    hub.apply_update("heart_rate", {"heart_rate": 140})
    engine.start()

    scheduler.advance(5)
    hub.apply_update("bike_trainer", {"power": 40, "cadence": 55})
    scheduler.advance(1)

    work, first_recovery, second_recovery = engine.samples[3], engine.samples[4], engine.samples[5]
    assert (work.phase, work.power) == ("work", 100)
    assert (first_recovery.phase, first_recovery.power, first_recovery.cadence) == ("recovery", 0, 0)
    assert (second_recovery.power, second_recovery.speed) == (0, 0)
    assert second_recovery.heart_rate == 140


def test_skip_interval_and_start_interval() -> None:
    engine, scheduler, _ = _engine(_protocol(work=60, recovery=60))
    engine.start()
    scheduler.advance(10)

    assert engine.start_interval() is False
    assert engine.skip_interval() is True
    assert engine.state.phase == "recovery"
    assert engine.skip_interval() is False

    scheduler.advance(4)
    assert engine.start_interval() is True
    assert engine.state.countdown_value == 3
    scheduler.advance(3)

    assert engine.state.phase == "work"
    assert engine.state.current_step == 1
    assert engine.total_elapsed_sec == 17


def test_erg_commands_follow_the_phases() -> None:
    async def _run() -> None:
        trainer = FakeTrainer()
        engine, scheduler, _ = _engine(trainer=trainer)
        assert await engine.take_control() is True

        engine.start()
        scheduler.advance(1)
        await scheduler.drain()
        assert trainer.commands == []

        scheduler.advance(1)
        await scheduler.drain()
        assert trainer.commands == [100]

        scheduler.advance(3)
        await scheduler.drain()
        assert trainer.commands == [100, 0]

        engine.start_interval()
        for _ in range(3):
            scheduler.advance(1)
            await scheduler.drain()

        assert trainer.commands == [100, 0, 120]
        assert engine.trainer_target_watts == 120

    asyncio.run(_run())


def test_resume_recommands_the_phase_target() -> None:
    async def _run() -> None:
        trainer = FakeTrainer()
        engine, scheduler, _ = _engine(_protocol(work=60), trainer=trainer)
        await engine.take_control()
        engine.start()
        scheduler.advance(3)
        await scheduler.drain()
        assert trainer.commands == [100]

        engine.pause()
        engine.resume()
        await scheduler.drain()

        assert trainer.commands == [100, 100]

    asyncio.run(_run())


def test_erg_target_superseded_while_a_write_is_in_flight() -> None:
    async def _run() -> None:
        trainer = SlowTrainer()
        engine, scheduler, _ = _engine(_protocol(work=60), trainer=trainer)
        await engine.take_control()
        engine.start()
        scheduler.advance(2)
        await asyncio.sleep(0)
        assert trainer.commands == [100]

        engine.skip_interval()
        engine.stop()
        trainer.release.set()
        await scheduler.drain()

        assert trainer.commands == [100, 0]
        assert engine.trainer_target_watts == 0

    asyncio.run(_run())


def test_only_the_latest_erg_target_is_sent() -> None:
    async def _run() -> None:
        trainer = FakeTrainer()
        engine, scheduler, _ = _engine(_protocol(work=60), trainer=trainer)
        await engine.take_control()
        engine.start()
        scheduler.advance(2)
        engine.skip_interval()
        await scheduler.drain()

        assert trainer.commands == [0]
        assert engine.trainer_target_watts == 0

    asyncio.run(_run())


def test_grace_command_is_dropped_after_pause() -> None:
    async def _run() -> None:
        trainer = FakeTrainer()
        engine, scheduler, _ = _engine(_protocol(work=60), trainer=trainer)
        await engine.take_control()
        engine.start()
        scheduler.advance(1)
        engine.pause()
        scheduler.advance(5)
        await scheduler.drain()

        assert trainer.commands == []

    asyncio.run(_run())


def test_uncontrolled_trainer_is_not_commanded() -> None:
    async def _run() -> None:
        trainer = FakeTrainer()
        engine, scheduler, _ = _engine(trainer=trainer)
        engine.start()
        scheduler.advance(6)
        await scheduler.drain()

        assert trainer.commands == []
        assert engine.state.is_running

    asyncio.run(_run())


def test_controller_failure_does_not_abort_the_test() -> None:
    async def _run() -> None:
        notes: list[tuple[str, str]] = []
        trainer = FakeTrainer(fail=True)
        engine, scheduler, _ = _engine(
            trainer=trainer, on_notify=lambda message, level: notes.append((level, message))
        )
        await engine.take_control()
        engine.start()
        scheduler.advance(2)
        await scheduler.drain()

        assert trainer.commands == [100]
        assert engine.trainer_target_watts is None
        assert any(level == "warning" for level, _ in notes)

        scheduler.advance(10)
        await scheduler.drain()
        assert engine.state.is_running
        assert engine.total_elapsed_sec == 12

    asyncio.run(_run())


def test_stop_hands_the_session_off_and_clear_resets() -> None:
    sessions: list[TestSession] = []
    engine, scheduler, _ = _engine(on_complete=sessions.append)
    engine.start()
    scheduler.advance(6)
    engine.add_lactate(1.6, borg=12)

    assert engine.stop() is True
    assert engine.state.mode == "completed"
    assert engine.armed_timers == []
    assert len(sessions) == 1
    session = sessions[0]
    assert session is engine.session
    assert session.test_duration == 6
    assert len(session.samples) == 6
    assert [e.lactate for e in session.lactate_entries] == [1.6]

    scheduler.advance(10)
    assert len(engine.samples) == 6

    assert engine.clear() is True
    assert engine.state.mode == "idle"
    assert engine.samples == ()
    assert engine.lactate_entries == ()
    assert engine.session is None
    assert engine.total_elapsed_sec == 0


def test_stop_from_pause() -> None:
    sessions: list[TestSession] = []
    engine, scheduler, _ = _engine(on_complete=sessions.append)
    engine.start()
    scheduler.advance(3)
    engine.pause()

    assert engine.stop() is True
    assert sessions[0].test_duration == 3


def test_failing_session_sink_is_reported() -> None:
    notes: list[tuple[str, str]] = []

    def _sink(_session: TestSession) -> None:
        raise OSError("disk full")

    engine, scheduler, _ = _engine(
        on_complete=_sink, on_notify=lambda message, level: notes.append((level, message))
    )
    engine.start()
    scheduler.advance(2)

    assert engine.stop() is True
    assert engine.state.mode == "completed"
    assert notes[-1][0] == "error"


def test_invalid_commands_are_rejected() -> None:
    engine, scheduler, _ = _engine()

    assert engine.pause() is False
    assert engine.resume() is False
    assert engine.stop() is False
    assert engine.clear() is False
    assert engine.skip_interval() is False
    assert engine.start_interval() is False

    engine.start()
    assert engine.start() is False
    assert engine.resume() is False
    assert engine.clear() is False

    engine.pause()
    assert engine.pause() is False
    assert engine.skip_interval() is False
    assert engine.start_interval() is False

    engine.stop()
    assert engine.start() is False
    assert engine.pause() is False
    assert engine.stop() is False
    assert engine.state.mode == "completed"


def test_edit_protocol_mid_test() -> None:
    engine, scheduler, _ = _engine()
    engine.start()
    scheduler.advance(5 + 3 + 3)
    assert engine.state.current_step == 1

    steps = list(engine.protocol.steps)
    locked = list(steps)
    locked[0] = replace(locked[0], target_power_watts=999)
    before = engine.protocol
    assert engine.edit_protocol(locked) is before

    steps[1] = replace(steps[1], target_power_watts=500)
    steps[2] = replace(steps[2], target_power_watts=300)
    edited = engine.edit_protocol(steps)
    assert [s.target_power_watts for s in edited.steps] == [100, 500, 300]
    # The interval in progress keeps the step it started with.
    assert engine.current_step.target_power_watts == 120

    scheduler.advance(5 + 3 + 3)
    assert engine.state.current_step == 2
    assert engine.current_step.target_power_watts == 300


def test_add_lactate_uses_the_current_step() -> None:
    engine, scheduler, hub = _engine()
    hub.apply_update("bike_trainer", {"power": 104})
    engine.start()
    scheduler.advance(4)

    entry = engine.add_lactate(2.2)

    assert entry.step == 1
    assert entry.power == 104.0
    assert entry.time == 4
