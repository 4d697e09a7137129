"""Step generation and validated mid-test editing of an interval protocol."""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from loguru import logger

from lactate_engine.core.errors import ProtocolValidationError
from lactate_engine.core.state import TestMode
from lactate_engine.protocol.model import Protocol, ProtocolParams, Step

# Modes during which steps before the current one are locked.
_IN_PROGRESS_MODES: frozenset[TestMode] = frozenset({"running", "paused"})


def generate_steps(params: ProtocolParams) -> tuple[Step, ...]:
    """Derive the ordered step list: one step per power level."""
    if params.max_steps <= 0:
        raise ProtocolValidationError("max_steps must be > 0")
    if params.work_duration_sec <= 0:
        raise ProtocolValidationError("work_duration_sec must be > 0")
    if params.recovery_duration_sec <= 0:
        raise ProtocolValidationError("recovery_duration_sec must be > 0")
    if params.start_power_watts <= 0:
        raise ProtocolValidationError("start_power_watts must be > 0")

    last_power = params.start_power_watts + (params.max_steps - 1) * params.power_increment_watts
    if last_power <= 0:
        raise ProtocolValidationError(
            f"power_increment_watts={params.power_increment_watts} yields "
            f"non-positive power ({last_power} W) by step {params.max_steps}"
        )

    return tuple(
        Step(
            step_number=i + 1,
            target_power_watts=params.start_power_watts + i * params.power_increment_watts,
            duration_sec=params.work_duration_sec,
            recovery_duration_sec=params.recovery_duration_sec,
        )
        for i in range(params.max_steps)
    )


def create_protocol(params: ProtocolParams) -> Protocol:
    return Protocol(
        work_duration_sec=params.work_duration_sec,
        recovery_duration_sec=params.recovery_duration_sec,
        start_power_watts=params.start_power_watts,
        power_increment_watts=params.power_increment_watts,
        max_steps=params.max_steps,
        steps=generate_steps(params),
    )


def edit_protocol(
    protocol: Protocol,
    new_steps: Sequence[Step],
    current_step: int,
    mode: TestMode,
) -> Protocol:
    """Replace the protocol's steps atomically.

    While a test is in progress, steps before ``current_step`` are locked: an
    edit that changes any of them is rejected and the previous protocol is
    returned unchanged. A completed test's protocol is never edited.
    Invalid step values raise ``ProtocolValidationError``.
    """
    if mode == "completed":
        logger.warning("Protocol edit ignored: test already completed")
        return protocol

    renumbered = _validate_steps(new_steps)

    if mode in _IN_PROGRESS_MODES:
        if len(renumbered) <= current_step:
            raise ProtocolValidationError(
                f"Edited protocol must keep the current step {current_step + 1}"
            )
        if renumbered[:current_step] != protocol.steps[:current_step]:
            logger.warning(
                "Protocol edit rejected: steps 1..{} are already executed",
                current_step,
            )
            return protocol

    return replace(protocol, steps=renumbered, max_steps=len(renumbered))


def _validate_steps(new_steps: Sequence[Step]) -> tuple[Step, ...]:
    if not new_steps:
        raise ProtocolValidationError("Protocol must contain at least one step")

    out: list[Step] = []
    for i, step in enumerate(new_steps):
        if step.target_power_watts <= 0:
            raise ProtocolValidationError(f"Step {i + 1}: target_power_watts must be > 0")
        if step.duration_sec <= 0:
            raise ProtocolValidationError(f"Step {i + 1}: duration_sec must be > 0")
        if step.recovery_duration_sec <= 0:
            raise ProtocolValidationError(
                f"Step {i + 1}: recovery_duration_sec must be > 0"
            )
        out.append(replace(step, step_number=i + 1))
    return tuple(out)
