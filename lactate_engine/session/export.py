"""CSV exports of a completed session."""

from __future__ import annotations

import csv
from dataclasses import astuple, fields
from pathlib import Path

from lactate_engine.recording.lactate import LactateEntry
from lactate_engine.recording.recorder import Sample
from lactate_engine.session.store import TestSession


def _default_export_dir() -> Path:
    return Path.home() / ".lactate-engine" / "exports"


def export_samples_csv(session: TestSession, out_dir: Path | None = None) -> Path:
    target_dir = out_dir or _default_export_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    out = target_dir / f"{session.session_id}_samples.csv"
    with out.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(["step_number", *(f.name for f in fields(Sample))])
        for sample in session.samples:
            writer.writerow([sample.step + 1, *astuple(sample)])
    return out


def export_lactate_csv(session: TestSession, out_dir: Path | None = None) -> Path:
    target_dir = out_dir or _default_export_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    out = target_dir / f"{session.session_id}_lactate.csv"
    with out.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow([f.name for f in fields(LactateEntry)] + ["target_power_watts"])
        targets = {step.step_number: step.target_power_watts for step in session.protocol.steps}
        for entry in session.lactate_entries:
            writer.writerow([*astuple(entry), targets.get(entry.step)])
    return out
