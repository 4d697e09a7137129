"""Protocol file parser (JSON/CSV)."""

from __future__ import annotations

import csv
import json
from dataclasses import fields
from pathlib import Path

from lactate_engine.core.errors import ProtocolParseError, ProtocolValidationError
from lactate_engine.protocol.manager import create_protocol, edit_protocol
from lactate_engine.protocol.model import Protocol, ProtocolParams, Step

_PARAM_FIELDS = tuple(f.name for f in fields(ProtocolParams))


def load_protocol(path: str | Path) -> Protocol:
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix == ".json":
        return _load_json(file_path)
    if suffix == ".csv":
        return _load_csv(file_path)
    raise ProtocolParseError(
        f"Unsupported protocol format '{file_path.suffix}'. Use .json or .csv"
    )


def _load_json(path: Path) -> Protocol:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(f"Invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ProtocolParseError("Protocol JSON must be an object")

    defaults = ProtocolParams()
    values = {
        name: _parse_int(data.get(name, getattr(defaults, name)), field_name=name)
        for name in _PARAM_FIELDS
    }

    steps_obj = data.get("steps")
    if steps_obj is None:
        return _create(ProtocolParams(**values))
    if not isinstance(steps_obj, list):
        raise ProtocolParseError("Protocol field 'steps' must be an array")

    steps: list[Step] = []
    for i, raw in enumerate(steps_obj):
        if not isinstance(raw, dict):
            raise ProtocolParseError(f"Step {i + 1}: must be an object")
        steps.append(
            _build_step(
                watts_obj=raw.get("target_watts"),
                duration_obj=raw.get("duration_sec", values["work_duration_sec"]),
                recovery_obj=raw.get(
                    "recovery_duration_sec", values["recovery_duration_sec"]
                ),
                index=i,
            )
        )
    return _with_steps(ProtocolParams(**values), steps)


def _load_csv(path: Path) -> Protocol:
    defaults = ProtocolParams()
    steps: list[Step] = []
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        header = set(reader.fieldnames or [])
        if not {"target_watts", "duration_sec"}.issubset(header):
            raise ProtocolParseError(
                "CSV must contain headers: target_watts,duration_sec[,recovery_duration_sec]"
            )
        for i, row in enumerate(reader):
            recovery_obj = row.get("recovery_duration_sec")
            if recovery_obj is None or str(recovery_obj).strip() == "":
                recovery_obj = defaults.recovery_duration_sec
            steps.append(
                _build_step(
                    watts_obj=row.get("target_watts"),
                    duration_obj=row.get("duration_sec"),
                    recovery_obj=recovery_obj,
                    index=i,
                )
            )

    if not steps:
        raise ProtocolParseError("Protocol must contain at least one step")
    first = steps[0]
    increment = steps[1].target_power_watts - first.target_power_watts if len(steps) > 1 else 0
    params = ProtocolParams(
        work_duration_sec=first.duration_sec,
        recovery_duration_sec=first.recovery_duration_sec,
        start_power_watts=first.target_power_watts,
        power_increment_watts=increment,
        max_steps=len(steps),
    )
    return _with_steps(params, steps)


def _create(params: ProtocolParams) -> Protocol:
    try:
        return create_protocol(params)
    except ProtocolValidationError as exc:
        raise ProtocolParseError(str(exc)) from exc


def _with_steps(params: ProtocolParams, steps: list[Step]) -> Protocol:
    skeleton = Protocol(
        work_duration_sec=params.work_duration_sec,
        recovery_duration_sec=params.recovery_duration_sec,
        start_power_watts=params.start_power_watts,
        power_increment_watts=params.power_increment_watts,
        max_steps=0,
        steps=(),
    )
    try:
        return edit_protocol(skeleton, steps, current_step=0, mode="idle")
    except ProtocolValidationError as exc:
        raise ProtocolParseError(str(exc)) from exc


def _build_step(
    *, watts_obj: object, duration_obj: object, recovery_obj: object, index: int
) -> Step:
    return Step(
        step_number=index + 1,
        target_power_watts=_parse_int(watts_obj, field_name="target_watts", index=index),
        duration_sec=_parse_int(duration_obj, field_name="duration_sec", index=index),
        recovery_duration_sec=_parse_int(
            recovery_obj, field_name="recovery_duration_sec", index=index
        ),
    )


def _parse_int(raw: object, *, field_name: str, index: int | None = None) -> int:
    where = f"Step {index + 1}: " if index is not None else ""
    if raw is None or isinstance(raw, bool):
        raise ProtocolParseError(f"{where}invalid {field_name}")
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ProtocolParseError(f"{where}invalid {field_name}") from exc
