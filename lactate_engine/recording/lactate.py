"""Manually entered lactate and RPE annotations keyed to protocol steps."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from lactate_engine.core.errors import InvalidLactateValue
from lactate_engine.protocol.model import Step
from lactate_engine.recording.recorder import SampleRecorder

BORG_MIN = 6
BORG_MAX = 20


@dataclass(frozen=True)
class LactateEntry:
    step: int
    power: float
    lactate: float
    borg: Optional[float]
    time: int


class LactateAnnotationStore:
    def __init__(self, recorder: SampleRecorder) -> None:
        self._recorder = recorder
        self._entries: list[LactateEntry] = []

    @property
    def entries(self) -> tuple[LactateEntry, ...]:
        return tuple(self._entries)

    def add(
        self,
        step: Step,
        lactate: float,
        borg: float | None = None,
        manual_power: float | None = None,
        time: int = 0,
    ) -> LactateEntry:
        """Append an annotation for ``step``.

        Power is the manual value when given, else the mean recorded power of
        the step, else the step's target power.
        """
        lactate_value = _finite_number(lactate, "lactate")
        if lactate_value <= 0:
            raise InvalidLactateValue(f"lactate must be > 0, got {lactate!r}")

        borg_value: Optional[float] = None
        if borg is not None:
            borg_value = _finite_number(borg, "borg")
            if not BORG_MIN <= borg_value <= BORG_MAX:
                raise InvalidLactateValue(
                    f"borg must be within {BORG_MIN}-{BORG_MAX}, got {borg!r}"
                )

        if manual_power is not None:
            power = _finite_number(manual_power, "power")
        else:
            mean_power = self._recorder.mean_power(step.step_number - 1)
            power = mean_power if mean_power is not None else float(step.target_power_watts)

        entry = LactateEntry(
            step=step.step_number,
            power=round(power, 1),
            lactate=lactate_value,
            borg=borg_value,
            time=time,
        )
        self._entries.append(entry)
        logger.info(
            "Lactate {} mmol/L recorded for step {} at {} W",
            entry.lactate,
            entry.step,
            entry.power,
        )
        return entry

    def for_step(self, step_number: int) -> list[LactateEntry]:
        return [entry for entry in self._entries if entry.step == step_number]

    def clear(self) -> None:
        self._entries = []


def _finite_number(raw: object, name: str) -> float:
    if isinstance(raw, bool):
        raise InvalidLactateValue(f"{name} must be a number, got {raw!r}")
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise InvalidLactateValue(f"{name} must be a number, got {raw!r}") from exc
    if not math.isfinite(value):
        raise InvalidLactateValue(f"{name} must be finite, got {raw!r}")
    return value
