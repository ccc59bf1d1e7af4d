"""Pydantic schemas for run records, log entries, progress events and QA results."""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

LogLevel = Literal["info", "warn", "error"]

EventType = Literal["state", "progress", "step", "log", "terminal", "ping"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LogEntry(BaseModel):
    """One append-only entry in a run's user-visible log."""

    ts: datetime = Field(default_factory=utcnow)
    level: LogLevel = "info"
    msg: str
    step: Optional[str] = None


class QAChecks(BaseModel):
    """Individual QA gate outcomes; every check must pass."""

    silence: bool = True
    file_size: bool = True
    resolution: bool = True


class QAResult(BaseModel):
    """Outcome of the post-render QA gate."""

    passed: bool
    checks: QAChecks
    details: Optional[str] = None


class RunSnapshot(BaseModel):
    """Full persisted state of a run, as exposed to observers."""

    id: uuid.UUID
    plan_id: uuid.UUID
    status: str
    progress: int
    current_step: Optional[str] = None
    log: list[LogEntry] = Field(default_factory=list)
    checkpoint: list[str] = Field(default_factory=list)
    artifacts: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    failed_step: Optional[str] = None
    attempt: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProgressEvent(BaseModel):
    """A state-change event fanned out to live observers of one run.

    ``state`` events carry a full snapshot and are always the first event a
    new subscriber sees; ``ping`` events are keep-alives with no payload.
    """

    type: EventType
    run_id: uuid.UUID
    ts: datetime = Field(default_factory=utcnow)
    status: Optional[str] = None
    progress: Optional[int] = None
    step: Optional[str] = None
    log: Optional[LogEntry] = None
    snapshot: Optional[RunSnapshot] = None
    error: Optional[str] = None
    qa: Optional[QAResult] = None

    def to_sse(self) -> str:
        """Render the event as a Server-Sent Events frame."""
        return f"event: {self.type}\ndata: {self.model_dump_json(exclude_none=True)}\n\n"
