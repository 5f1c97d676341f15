"""Data models for persisted engine state and collaborator records."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class AutomationRecord(BaseModel):
    """Automation row as stored by the authoring side.

    ``steps`` is kept raw; the engine validates it with
    :func:`flowmail.contracts.load_automation` so that one malformed
    definition cannot break reads of the others.
    """

    workspace_id: str
    id: str
    name: str = ""
    status: str = "Running"
    steps: list[dict[str, Any]] = Field(default_factory=list)


class Contact(BaseModel):
    """Mutable per-contact attributes read by conditions and actions."""

    workspace_id: str
    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    lead_score: Optional[int] = None
    lifecycle_stage: Optional[str] = None
    temperature: Optional[str] = None
    status: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    lists: list[str] = Field(default_factory=list)
    last_open_date: Optional[UtcDatetime] = None


class ContactEvent(BaseModel):
    """Append-only event log entry."""

    workspace_id: str
    id: str = Field(default_factory=new_id)
    contact_id: str
    type: str
    occurred_at: UtcDatetime = Field(default_factory=utcnow)
    campaign_id: Optional[str] = None
    title: str = ""
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def position(self) -> tuple[datetime, str]:
        return (self.occurred_at, self.id)


class Run(BaseModel):
    """One contact's traversal of an automation graph."""

    workspace_id: str
    id: str = Field(default_factory=new_id)
    automation_id: str
    contact_id: str
    status: RunStatus = RunStatus.RUNNING
    current_step_id: Optional[str] = None
    started_at: UtcDatetime = Field(default_factory=utcnow)
    finished_at: Optional[UtcDatetime] = None
    last_error: Optional[str] = None
    trigger_event_id: Optional[str] = None
    trigger_step_id: Optional[str] = None
    steps_executed: int = 0
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def dedupe_key(self) -> Optional[tuple[str, str, str, str]]:
        if self.trigger_event_id is None or self.trigger_step_id is None:
            return None
        return (
            self.automation_id,
            self.contact_id,
            self.trigger_event_id,
            self.trigger_step_id,
        )

    def dedupe_token(self) -> Optional[str]:
        """``dedupe_key`` serialized for a unique column."""
        key = self.dedupe_key
        return json.dumps(list(key)) if key else None


class QueueItem(BaseModel):
    """Execute step ``step_id`` of run ``run_id`` no earlier than ``execute_at``."""

    workspace_id: str
    id: str = Field(default_factory=new_id)
    run_id: str
    automation_id: str
    contact_id: str
    step_id: str
    execute_at: UtcDatetime = Field(default_factory=utcnow)
    status: QueueStatus = QueueStatus.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    claim_token: Optional[str] = None


class EventCursor(BaseModel):
    """Last fully processed position in a workspace's event log."""

    workspace_id: str
    last_occurred_at: UtcDatetime
    last_event_id: str
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def position(self) -> tuple[datetime, str]:
        return (self.last_occurred_at, self.last_event_id)
