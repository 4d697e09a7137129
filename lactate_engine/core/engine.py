"""Real-time execution of an interval lactate test.

The engine owns the test state and every timer. Operator commands and timer
callbacks all run on one event loop, so state is mutated without locks; the
only site that changes ``TestState`` is ``_transition``.

Timers armed while running:

* total timer: counts whole seconds of running time
* sampling timer: records one ``Sample`` per tick
* exactly one phase timer (work, recovery or countdown)

Every timer callback carries the token it was armed with and is ignored once
that token has been replaced, so a late callback can never act on a state the
engine has already left.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional, Sequence

from loguru import logger

from lactate_engine.core.config import EngineConfig
from lactate_engine.core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from lactate_engine.core.state import (
    IDLE,
    Phase,
    TestState,
    completed,
    paused,
    running,
    validate_transition,
)
from lactate_engine.core.trainer import TrainerController
from lactate_engine.protocol.manager import edit_protocol
from lactate_engine.protocol.model import Protocol, Step
from lactate_engine.recording.lactate import LactateAnnotationStore, LactateEntry
from lactate_engine.recording.recorder import Sample, SampleRecorder
from lactate_engine.session.store import TestSession, now_utc_iso
from lactate_engine.telemetry.hub import TelemetryHub


@dataclass(frozen=True)
class TestProgress:
    state: TestState
    step_number: int
    step_total: int
    target_power_watts: int
    phase_elapsed_sec: int
    phase_duration_sec: int
    phase_remaining_sec: int
    total_elapsed_sec: int


ProgressCallback = Callable[[TestProgress], None]
NotifyCallback = Callable[[str, str], None]
LactatePromptCallback = Callable[[Step], None]
SessionSink = Callable[[TestSession], None]


class TestEngine:
    def __init__(
        self,
        protocol: Protocol,
        hub: TelemetryHub,
        *,
        trainer: TrainerController | None = None,
        scheduler: Scheduler | None = None,
        config: EngineConfig | None = None,
        on_progress: ProgressCallback | None = None,
        on_notify: NotifyCallback | None = None,
        on_lactate_prompt: LactatePromptCallback | None = None,
        on_complete: SessionSink | None = None,
    ) -> None:
        self._protocol = protocol
        self._hub = hub
        self._trainer = trainer
        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self._config = config or EngineConfig()
        self._on_progress = on_progress
        self._on_notify = on_notify
        self._on_lactate_prompt = on_lactate_prompt
        self._on_complete = on_complete

        self._state: TestState = IDLE
        self.recorder = SampleRecorder()
        self.lactate = LactateAnnotationStore(self.recorder)
        self._total_elapsed = 0
        self._phase_elapsed = 0
        # Step executed by the current phase, captured when work starts.
        self._active_step: Optional[Step] = None
        self._started_at_utc: Optional[str] = None
        self._session: Optional[TestSession] = None
        self._trainer_target_watts: Optional[int] = None
        # Latest ERG target not yet sent; older ones are superseded.
        self._pending_erg_watts: Optional[int] = None
        self._erg_sender_running = False

        self._clock_token: Optional[object] = None
        self._phase_token: Optional[object] = None
        self._timers: dict[str, TimerHandle] = {}

    # -- read-only views -------------------------------------------------

    @property
    def state(self) -> TestState:
        return self._state

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    @property
    def total_elapsed_sec(self) -> int:
        return self._total_elapsed

    @property
    def phase_elapsed_sec(self) -> int:
        return self._phase_elapsed

    @property
    def current_step(self) -> Step:
        if self._active_step is not None and self._state.in_progress:
            return self._active_step
        return self._protocol.steps[min(self._state.current_step, self._protocol.last_step_index)]

    @property
    def samples(self) -> tuple[Sample, ...]:
        return self.recorder.samples

    @property
    def lactate_entries(self) -> tuple[LactateEntry, ...]:
        return self.lactate.entries

    @property
    def session(self) -> Optional[TestSession]:
        return self._session

    @property
    def trainer_target_watts(self) -> Optional[int]:
        return self._trainer_target_watts

    @property
    def armed_timers(self) -> list[str]:
        return sorted(name for name, handle in self._timers.items() if not handle.cancelled)

    # -- operator commands ------------------------------------------------

    def start(self) -> bool:
        if self._state.mode != "idle":
            logger.debug("start() ignored in mode {}", self._state.mode)
            return False

        self._reset_run()
        self._started_at_utc = now_utc_iso()
        first = self._protocol.steps[0]
        self._active_step = first
        self._transition(running("work", 0))
        self._arm_running_timers()
        self._timers["erg_grace"] = self._scheduler.call_later(
            self._config.erg_grace_delay_sec,
            partial(self._on_erg_grace, self._clock_token, first.target_power_watts),
        )
        self._notify("Test started", "success")
        return True

    def pause(self) -> bool:
        if not self._state.is_running:
            logger.debug("pause() ignored in mode {}", self._state.mode)
            return False
        self._cancel_all_timers()
        self._transition(paused(self._state))
        self._notify("Test paused", "info")
        return True

    def resume(self) -> bool:
        if self._state.mode != "paused" or self._state.resume_phase is None:
            logger.debug("resume() ignored in mode {}", self._state.mode)
            return False
        phase = self._state.resume_phase
        self._transition(running(phase, self._state.current_step, self._state.countdown_value))
        self._arm_running_timers()
        self._command_erg(self._phase_target_watts(phase))
        self._notify("Test resumed", "success")
        return True

    def stop(self) -> bool:
        if not self._state.in_progress:
            logger.debug("stop() ignored in mode {}", self._state.mode)
            return False
        self._cancel_all_timers()
        self._transition(completed(self._state))
        self._command_erg(0)
        self._session = TestSession(
            samples=self.recorder.samples,
            lactate_entries=self.lactate.entries,
            protocol=self._protocol,
            test_duration=self._total_elapsed,
            started_at_utc=self._started_at_utc or now_utc_iso(),
            ended_at_utc=now_utc_iso(),
        )
        self._notify("Test completed", "success")
        self._hand_off(self._session)
        return True

    def clear(self) -> bool:
        if self._state.mode != "completed":
            logger.debug("clear() ignored in mode {}", self._state.mode)
            return False
        self._reset_run()
        self._session = None
        self._started_at_utc = None
        self._transition(IDLE)
        return True

    def skip_interval(self) -> bool:
        """End the current work interval early."""
        if not self._state.is_running or self._state.phase != "work":
            logger.debug("skip_interval() ignored in {}", self._state)
            return False
        self._enter_recovery("Interval ended. Enter lactate value.")
        return True

    def start_interval(self) -> bool:
        """Cut recovery short and count down into the next interval."""
        if not self._state.is_running or self._state.phase != "recovery":
            logger.debug("start_interval() ignored in {}", self._state)
            return False
        self._enter_countdown()
        return True

    def edit_protocol(self, new_steps: Sequence[Step]) -> Protocol:
        """Replace the protocol's steps; executed steps stay locked.

        The phase in progress keeps the step it captured; edits to the current
        step take effect at the next transition.
        """
        self._protocol = edit_protocol(
            self._protocol, new_steps, self._state.current_step, self._state.mode
        )
        return self._protocol

    def add_lactate(
        self,
        lactate: float,
        borg: float | None = None,
        manual_power: float | None = None,
    ) -> LactateEntry:
        entry = self.lactate.add(
            self.current_step,
            lactate,
            borg,
            manual_power=manual_power,
            time=self._total_elapsed,
        )
        self._notify("Lactate value and BORG added", "success")
        return entry

    async def take_control(self) -> bool:
        """Request trainer control and start it; failures leave the test uncontrolled."""
        if self._trainer is None:
            return False
        try:
            await self._trainer.request_control()
            await self._trainer.start()
        except Exception as exc:
            logger.warning("Trainer control unavailable ({}). Continuing uncontrolled.", exc)
            self._notify(f"Trainer control unavailable: {exc}", "warning")
            return False
        logger.info("Trainer control granted")
        return True

    # -- transitions ------------------------------------------------------

    def _transition(self, new_state: TestState) -> None:
        validate_transition(self._state, new_state)
        previous = self._state
        self._state = new_state
        self._hub.set_phase(new_state.phase if new_state.is_running else None)
        if (previous.mode, previous.phase) != (new_state.mode, new_state.phase):
            logger.info(
                "Test {}{} -> {}{} (step {})",
                previous.mode,
                f"/{previous.phase}" if previous.phase else "",
                new_state.mode,
                f"/{new_state.phase}" if new_state.phase else "",
                new_state.current_step + 1,
            )
        self._emit_progress()

    def _enter_work(self, step_index: int) -> None:
        step = self._protocol.steps[step_index]
        self._active_step = step
        self._phase_elapsed = 0
        self._transition(running("work", step_index))
        self._arm_phase_timer()
        self._command_erg(step.target_power_watts)
        self._notify(f"Step {step.step_number} started at {step.target_power_watts} W", "info")

    def _enter_recovery(self, message: str) -> None:
        self._phase_elapsed = 0
        self._transition(running("recovery", self._state.current_step))
        self._arm_phase_timer()
        self._command_erg(0)
        self._notify(message, "info")
        if self._on_lactate_prompt is not None:
            self._on_lactate_prompt(self.current_step)

    def _enter_countdown(self) -> None:
        self._phase_elapsed = 0
        self._transition(
            running("countdown", self._state.current_step, self._config.countdown_sec)
        )
        self._arm_phase_timer()
        self._notify(
            f"Starting interval in {self._config.countdown_sec} seconds...", "info"
        )

    # -- timers -----------------------------------------------------------

    def _arm_running_timers(self) -> None:
        token = object()
        self._clock_token = token
        tick = self._config.tick_sec
        self._timers["total"] = self._scheduler.call_every(
            tick, partial(self._on_total_tick, token)
        )
        self._arm_phase_timer()
        self._timers["sampling"] = self._scheduler.call_every(
            tick, partial(self._on_sampling_tick, token)
        )

    def _arm_phase_timer(self) -> None:
        self._disarm_phase_timer()
        token = object()
        self._phase_token = token
        self._timers["phase"] = self._scheduler.call_every(
            self._config.tick_sec, partial(self._on_phase_tick, token)
        )

    def _disarm_phase_timer(self) -> None:
        handle = self._timers.pop("phase", None)
        if handle is not None:
            handle.cancel()
        self._phase_token = None

    def _cancel_all_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._clock_token = None
        self._phase_token = None

    def _on_total_tick(self, token: object) -> None:
        if token is not self._clock_token or not self._state.is_running:
            return
        self._total_elapsed += 1
        self._emit_progress()

    def _on_sampling_tick(self, token: object) -> None:
        if token is not self._clock_token or not self._state.is_running:
            return
        self.recorder.tick(
            self._hub,
            self._state,
            interval_time=self._phase_elapsed,
            total_time=self._total_elapsed,
        )

    def _on_phase_tick(self, token: object) -> None:
        if token is not self._phase_token or not self._state.is_running:
            return
        step = self._active_step
        if step is None:
            return
        self._phase_elapsed += 1
        phase = self._state.phase

        if phase == "work":
            if self._phase_elapsed >= step.duration_sec:
                self._enter_recovery("Interval completed. Ready for recovery.")
        elif phase == "recovery":
            if self._phase_elapsed >= step.recovery_duration_sec:
                self._enter_countdown()
        elif phase == "countdown":
            remaining = self._state.countdown_value - 1
            if remaining > 0:
                self._transition(running("countdown", self._state.current_step, remaining))
                return
            self._disarm_phase_timer()
            next_index = min(self._state.current_step + 1, self._protocol.last_step_index)
            self._enter_work(next_index)

    def _on_erg_grace(self, token: object, watts: int) -> None:
        self._timers.pop("erg_grace", None)
        if token is not self._clock_token or not self._state.is_running:
            return
        if self._state.phase == "work":
            self._command_erg(watts)

    # -- trainer ----------------------------------------------------------

    def _phase_target_watts(self, phase: Phase) -> int:
        if phase == "work" and self._active_step is not None:
            return self._active_step.target_power_watts
        return 0

    def _command_erg(self, watts: int) -> None:
        if self._trainer is None:
            return
        if self._trainer.status != "controlled":
            logger.debug(
                "Skipping ERG {}W: trainer status is {}", watts, self._trainer.status
            )
            return
        self._pending_erg_watts = watts
        if not self._erg_sender_running:
            self._scheduler.spawn(self._send_pending_erg())
            self._erg_sender_running = True

    async def _send_pending_erg(self) -> None:
        """Send ERG targets one at a time, skipping any superseded while waiting."""
        try:
            while self._pending_erg_watts is not None and self._trainer is not None:
                watts = self._pending_erg_watts
                self._pending_erg_watts = None
                try:
                    await self._trainer.set_erg_watts(watts)
                except Exception as exc:
                    logger.warning(
                        "ERG target {}W refused by trainer ({}). Continuing without ERG control.",
                        watts,
                        exc,
                    )
                    self._notify(f"Trainer did not accept {watts} W: {exc}", "warning")
                    continue
                self._trainer_target_watts = watts
                logger.info("ERG target set to {}W", watts)
        finally:
            self._erg_sender_running = False

    # -- helpers ----------------------------------------------------------

    def _reset_run(self) -> None:
        self._cancel_all_timers()
        self.recorder.clear()
        self.lactate.clear()
        self._total_elapsed = 0
        self._phase_elapsed = 0
        self._active_step = None

    def _hand_off(self, session: TestSession) -> None:
        if self._on_complete is None:
            return
        try:
            self._on_complete(session)
        except Exception as exc:
            logger.opt(exception=exc).error("Failed to hand off completed session")
            self._notify(f"Failed to save test session: {exc}", "error")

    def _notify(self, message: str, level: str) -> None:
        if self._on_notify is not None:
            self._on_notify(message, level)

    def _emit_progress(self) -> None:
        if self._on_progress is None:
            return
        step = self.current_step
        phase = self._state.phase or self._state.resume_phase
        if phase == "work":
            duration = step.duration_sec
        elif phase == "recovery":
            duration = step.recovery_duration_sec
        elif phase == "countdown":
            duration = self._config.countdown_sec
        else:
            duration = 0
        self._on_progress(
            TestProgress(
                state=self._state,
                step_number=step.step_number,
                step_total=len(self._protocol.steps),
                target_power_watts=self._phase_target_watts(phase) if phase else 0,
                phase_elapsed_sec=self._phase_elapsed,
                phase_duration_sec=duration,
                phase_remaining_sec=max(0, duration - self._phase_elapsed),
                total_elapsed_sec=self._total_elapsed,
            )
        )
