"""Completed test sessions and their local JSONL persistence."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from lactate_engine.protocol.model import Protocol, Step
from lactate_engine.recording.lactate import LactateEntry
from lactate_engine.recording.recorder import Sample


def _default_sessions_path() -> Path:
    return Path.home() / ".lactate-engine" / "sessions.jsonl"


@dataclass(frozen=True)
class TestSession:
    """Payload handed to the persistence collaborator when a test completes."""

    samples: tuple[Sample, ...]
    lactate_entries: tuple[LactateEntry, ...]
    protocol: Protocol
    test_duration: int
    started_at_utc: str
    ended_at_utc: str

    @property
    def session_id(self) -> str:
        return self.started_at_utc.replace(":", "").replace("-", "").replace("+", "_")


def now_utc_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def append_session(session: TestSession, path: Path | None = None) -> Path:
    target = path or _default_sessions_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(asdict(session), ensure_ascii=True) + "\n")
    logger.info(
        "Session saved to {} ({} samples, {} lactate entries)",
        target,
        len(session.samples),
        len(session.lactate_entries),
    )
    return target


def load_recent_sessions(limit: int = 20, path: Path | None = None) -> list[TestSession]:
    target = path or _default_sessions_path()
    if not target.exists():
        return []

    lines = target.read_text(encoding="utf-8").splitlines()
    out: list[TestSession] = []
    for raw in reversed(lines):
        if not raw.strip():
            continue
        try:
            out.append(session_from_dict(json.loads(raw)))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Skipping unreadable session line: {}", exc)
            continue
        if len(out) >= limit:
            break
    return out


def session_from_dict(item: dict[str, Any]) -> TestSession:
    protocol_obj = dict(item["protocol"])
    protocol_obj["steps"] = tuple(Step(**step) for step in protocol_obj["steps"])
    return TestSession(
        samples=tuple(Sample(**sample) for sample in item["samples"]),
        lactate_entries=tuple(LactateEntry(**entry) for entry in item["lactate_entries"]),
        protocol=Protocol(**protocol_obj),
        test_duration=int(item["test_duration"]),
        started_at_utc=str(item["started_at_utc"]),
        ended_at_utc=str(item["ended_at_utc"]),
    )
