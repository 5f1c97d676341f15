"""Repository abstraction for engine state and collaborator stores."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import (
    AutomationRecord,
    Contact,
    ContactEvent,
    EventCursor,
    QueueItem,
    Run,
    RunStatus,
)


class EngineRepository(Protocol):
    """Protocol for engine persistence backends.

    Every method is scoped to one workspace. Two operations carry the
    engine's concurrency guarantees and must be atomic in every backend:
    :meth:`claim_due` (``queued -> processing`` compare-and-set) and
    :meth:`compare_and_set_cursor`.

    A claim hands the item a fresh ``claim_token``. The finishing writes
    (:meth:`complete_item`, :meth:`skip_item`, :meth:`retry_item`,
    :meth:`fail_item`) only apply while the stored item is still
    ``processing`` under that token, and raise ``ClaimLostError`` otherwise.
    """

    # -- automation definition store -----------------------------------
    async def save_automation(self, automation: AutomationRecord) -> None:
        """Insert or replace an automation definition."""

    async def get_automation(
        self, workspace_id: str, automation_id: str
    ) -> AutomationRecord | None:
        """Return one automation definition."""

    async def list_automations(
        self, workspace_id: str, status: Optional[str] = None
    ) -> list[AutomationRecord]:
        """Return automations, optionally filtered by status."""

    async def list_active_workspaces(self, limit: int) -> list[str]:
        """Return workspaces with at least one Running automation."""

    # -- contact attribute store ---------------------------------------
    async def save_contact(self, contact: Contact) -> None:
        """Insert or replace a contact."""

    async def get_contact(self, workspace_id: str, contact_id: str) -> Contact | None:
        """Point read of a contact."""

    async def update_contact(
        self, workspace_id: str, contact_id: str, changes: dict[str, Any]
    ) -> None:
        """Point write of contact fields. Raises ContactNotFoundError."""

    # -- event log -----------------------------------------------------
    async def append_event(self, event: ContactEvent) -> None:
        """Append an event to the log."""

    async def read_events(
        self,
        workspace_id: str,
        after: Optional[tuple[datetime, str]],
        limit: int,
    ) -> list[ContactEvent]:
        """Events strictly after ``(occurred_at, id)``, ascending."""

    # -- event cursor --------------------------------------------------
    async def get_cursor(self, workspace_id: str) -> EventCursor | None:
        """Return the workspace cursor, if any."""

    async def compare_and_set_cursor(
        self,
        workspace_id: str,
        expected: EventCursor | None,
        new: EventCursor,
    ) -> bool:
        """Move the cursor only if it still equals ``expected``."""

    # -- runs ----------------------------------------------------------
    async def create_run(
        self, run: Run, item: QueueItem | None = None, dedupe: bool = False
    ) -> bool:
        """Persist a run and its first queue item together.

        With ``dedupe`` set, returns ``False`` without writing anything when a
        run with the same trigger key already exists.
        """

    async def get_run(self, workspace_id: str, run_id: str) -> Run | None:
        """Return one run."""

    async def list_runs(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Run]:
        """Return runs newest first."""

    async def finish_run(
        self,
        workspace_id: str,
        run_id: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        """Move a running run to a terminal status."""

    # -- queue ---------------------------------------------------------
    async def claim_due(
        self, workspace_id: str, now: datetime, limit: int
    ) -> list[QueueItem]:
        """Atomically move due queued items to processing and return them."""

    async def requeue_stale(self, workspace_id: str, older_than: datetime) -> int:
        """Return processing items claimed before ``older_than`` to the queue."""

    async def holds_claim(self, item: QueueItem) -> bool:
        """Whether ``item`` is still processing under its claim token."""

    async def complete_item(
        self,
        item: QueueItem,
        next_item: QueueItem | None,
        now: datetime,
        steps_executed: int,
    ) -> bool:
        """Mark ``item`` done and advance its run.

        Enqueues ``next_item`` and points the run at it, or completes the run
        when there is no next item. Returns ``False`` when the run had already
        left ``running``; the item is still marked done.
        """

    async def skip_item(self, item: QueueItem, now: datetime) -> None:
        """Mark ``item`` done without executing it."""

    async def retry_item(
        self, item: QueueItem, error: str, execute_at: datetime, now: datetime
    ) -> None:
        """Requeue ``item`` for a later attempt."""

    async def fail_item(self, item: QueueItem, error: str, now: datetime) -> None:
        """Mark ``item`` failed and fail its run with the same error."""

    async def list_queue(
        self, workspace_id: str, run_id: Optional[str] = None
    ) -> list[QueueItem]:
        """Return queue items in creation order."""
