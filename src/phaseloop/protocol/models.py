"""Persistent record types for phaseloop runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_iso(ts: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(ts)
    except ValueError:
        return datetime.now(UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Phase(StrEnum):
    """Named stages of the autonomous workflow."""

    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    CRITIQUE = "critique"
    COMPLETION = "completion"
    ERROR = "error"


@dataclass(slots=True)
class ErrorRecord:
    timestamp: str
    phase: str
    message: str
    recovered: bool = False
    recovery_attempt: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ErrorRecord:
        attempt = raw.get("recovery_attempt")
        return cls(
            timestamp=str(raw.get("timestamp", "")),
            phase=str(raw.get("phase", "")),
            # "error" was the key used by older session files
            message=str(raw.get("message", raw.get("error", ""))),
            recovered=bool(raw.get("recovered", False)),
            recovery_attempt=int(attempt) if isinstance(attempt, int) else None,
        )


@dataclass(slots=True)
class Metrics:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Metrics:
        return cls(
            total_operations=_as_int(raw.get("total_operations"), 0),
            successful_operations=_as_int(raw.get("successful_operations"), 0),
            failed_operations=_as_int(raw.get("failed_operations"), 0),
        )


@dataclass(slots=True)
class SessionState:
    """Durable record of one run; owned and mutated by the orchestrator only."""

    goal: str
    max_iterations: int
    phase: Phase = Phase.PLANNING
    iteration: int = 0
    session_handle: str | None = None
    previous_phase: Phase | None = None
    errors: list[ErrorRecord] = field(default_factory=list)
    metrics: Metrics = field(default_factory=Metrics)
    start_time: str = field(default_factory=utc_now_iso)

    def uptime_ms(self, now: datetime | None = None) -> int:
        current = now or datetime.now(UTC)
        return max(int((current - parse_iso(self.start_time)).total_seconds() * 1000), 0)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = str(self.phase)
        data["previous_phase"] = str(self.previous_phase) if self.previous_phase else None
        return data

    @classmethod
    def from_dict(
        cls,
        raw: dict[str, Any],
        *,
        goal: str,
        max_iterations: int,
    ) -> SessionState:
        """Rebuild a session from disk; missing fields fall back to fresh-run values."""
        fresh = cls(goal=goal, max_iterations=max_iterations)
        errors_raw = raw.get("errors", [])
        metrics_raw = raw.get("metrics", {})
        previous = raw.get("previous_phase")
        handle = raw.get("session_handle")
        stored_max = _as_int(raw.get("max_iterations"), max_iterations)
        started = raw.get("start_time")
        return cls(
            goal=goal,
            max_iterations=stored_max if stored_max > 0 else max_iterations,
            phase=_coerce_phase(raw.get("phase"), fresh.phase),
            iteration=max(_as_int(raw.get("iteration"), 0), 0),
            session_handle=str(handle) if handle else None,
            previous_phase=_coerce_phase(previous, None) if previous else None,
            errors=[
                ErrorRecord.from_dict(e) for e in errors_raw if isinstance(e, dict)
            ] if isinstance(errors_raw, list) else [],
            metrics=Metrics.from_dict(metrics_raw) if isinstance(metrics_raw, dict) else Metrics(),
            start_time=started if isinstance(started, str) and started else fresh.start_time,
        )


def _coerce_phase(value: Any, default: Phase | None) -> Phase | None:
    try:
        return Phase(str(value))
    except ValueError:
        return default


@dataclass(slots=True)
class FeedbackAttachment:
    name: str
    url: str


@dataclass(frozen=True, slots=True)
class FeedbackItem:
    id: str
    timestamp: str
    author_tag: str
    content: str
    attachments: tuple[FeedbackAttachment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "author_tag": self.author_tag,
            "content": self.content,
            "attachments": [{"name": a.name, "url": a.url} for a in self.attachments],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FeedbackItem:
        attachments = raw.get("attachments", [])
        return cls(
            id=str(raw.get("id", "")),
            timestamp=str(raw.get("timestamp", utc_now_iso())),
            author_tag=str(raw.get("author_tag", "unknown")),
            content=str(raw.get("content", "")),
            attachments=tuple(
                FeedbackAttachment(name=str(a.get("name", "")), url=str(a.get("url", "")))
                for a in attachments
                if isinstance(a, dict)
            ) if isinstance(attachments, list) else (),
        )


@dataclass(slots=True)
class AgentTurn:
    """One parsed record from the agent's streamed output."""

    kind: str
    session_handle: str | None = None
    result_text: str | None = None
    is_error: bool | None = None
    raw_content: Any = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AgentTurn:
        session_id = record.get("session_id")
        result = record.get("result")
        is_error = record.get("is_error")
        return cls(
            kind=str(record.get("type", "")),
            session_handle=str(session_id) if session_id else None,
            result_text=result if isinstance(result, str) else None,
            is_error=is_error if isinstance(is_error, bool) else None,
            raw_content=record.get("content", record.get("message")),
        )


@dataclass(slots=True)
class Checkpoint:
    """Immutable snapshot of a session taken at a phase boundary."""

    session: dict[str, Any]
    timestamp: str
    status: str
    uptime_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.session,
            "timestamp": self.timestamp,
            "status": self.status,
            "uptime_ms": self.uptime_ms,
        }
