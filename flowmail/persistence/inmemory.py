"""In-memory implementation of the engine repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from ..errors import ClaimLostError, ContactNotFoundError
from .models import (
    AutomationRecord,
    Contact,
    ContactEvent,
    EventCursor,
    QueueItem,
    QueueStatus,
    Run,
    RunStatus,
    new_id,
)
from .repository import EngineRepository

_Key = tuple[str, str]


class InMemoryEngineRepository(EngineRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. All mutations run under one
    ``asyncio.Lock`` so claims and cursor updates are atomic within the
    event loop. Reads return copies so callers cannot mutate stored rows.
    """

    def __init__(self) -> None:
        self._automations: Dict[_Key, AutomationRecord] = {}
        self._contacts: Dict[_Key, Contact] = {}
        self._events: Dict[str, list[ContactEvent]] = {}
        self._cursors: Dict[str, EventCursor] = {}
        self._runs: Dict[_Key, Run] = {}
        self._queue: Dict[_Key, QueueItem] = {}
        self._dedupe_keys: set[tuple[str, tuple[str, ...]]] = set()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_automation(self, automation: AutomationRecord) -> None:
        async with self._lock:
            key = (automation.workspace_id, automation.id)
            self._automations[key] = automation.model_copy(deep=True)

    async def get_automation(
        self, workspace_id: str, automation_id: str
    ) -> AutomationRecord | None:
        record = self._automations.get((workspace_id, automation_id))
        return record.model_copy(deep=True) if record else None

    async def list_automations(
        self, workspace_id: str, status: Optional[str] = None
    ) -> list[AutomationRecord]:
        return [
            a.model_copy(deep=True)
            for (ws, _), a in self._automations.items()
            if ws == workspace_id and (status is None or a.status == status)
        ]

    async def list_active_workspaces(self, limit: int) -> list[str]:
        seen: list[str] = []
        for (ws, _), automation in self._automations.items():
            if automation.status == "Running" and ws not in seen:
                seen.append(ws)
        return seen[:limit]

    # ------------------------------------------------------------------
    async def save_contact(self, contact: Contact) -> None:
        async with self._lock:
            self._contacts[(contact.workspace_id, contact.id)] = contact.model_copy(
                deep=True
            )

    async def get_contact(self, workspace_id: str, contact_id: str) -> Contact | None:
        contact = self._contacts.get((workspace_id, contact_id))
        return contact.model_copy(deep=True) if contact else None

    async def update_contact(
        self, workspace_id: str, contact_id: str, changes: dict[str, Any]
    ) -> None:
        async with self._lock:
            contact = self._contacts.get((workspace_id, contact_id))
            if contact is None:
                raise ContactNotFoundError(f"Contact {contact_id} not found")
            self._contacts[(workspace_id, contact_id)] = contact.model_copy(
                update=changes, deep=True
            )

    # ------------------------------------------------------------------
    async def append_event(self, event: ContactEvent) -> None:
        async with self._lock:
            self._events.setdefault(event.workspace_id, []).append(
                event.model_copy(deep=True)
            )

    async def read_events(
        self,
        workspace_id: str,
        after: Optional[tuple[datetime, str]],
        limit: int,
    ) -> list[ContactEvent]:
        events = sorted(self._events.get(workspace_id, []), key=lambda e: e.position)
        if after is not None:
            events = [e for e in events if e.position > after]
        return [e.model_copy(deep=True) for e in events[:limit]]

    # ------------------------------------------------------------------
    async def get_cursor(self, workspace_id: str) -> EventCursor | None:
        cursor = self._cursors.get(workspace_id)
        return cursor.model_copy() if cursor else None

    async def compare_and_set_cursor(
        self,
        workspace_id: str,
        expected: EventCursor | None,
        new: EventCursor,
    ) -> bool:
        async with self._lock:
            current = self._cursors.get(workspace_id)
            current_pos = current.position if current else None
            expected_pos = expected.position if expected else None
            if current_pos != expected_pos:
                return False
            self._cursors[workspace_id] = new.model_copy()
            return True

    # ------------------------------------------------------------------
    async def create_run(
        self, run: Run, item: QueueItem | None = None, dedupe: bool = False
    ) -> bool:
        async with self._lock:
            if dedupe and run.dedupe_key is not None:
                key = (run.workspace_id, run.dedupe_key)
                if key in self._dedupe_keys:
                    return False
                self._dedupe_keys.add(key)
            self._runs[(run.workspace_id, run.id)] = run.model_copy(deep=True)
            if item is not None:
                self._queue[(item.workspace_id, item.id)] = item.model_copy(deep=True)
            return True

    async def get_run(self, workspace_id: str, run_id: str) -> Run | None:
        run = self._runs.get((workspace_id, run_id))
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Run]:
        runs = [
            r
            for (ws, _), r in self._runs.items()
            if ws == workspace_id
            and (automation_id is None or r.automation_id == automation_id)
            and (run_id is None or r.id == run_id)
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    def _finish(
        self, run: Run, status: RunStatus, now: datetime, error: Optional[str]
    ) -> bool:
        if run.status != RunStatus.RUNNING:
            return False
        run.status = status
        run.finished_at = now
        run.updated_at = now
        if error is not None:
            run.last_error = error
        return True

    async def finish_run(
        self,
        workspace_id: str,
        run_id: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            run = self._runs.get((workspace_id, run_id))
            if run is None:
                return False
            return self._finish(run, status, now, error)

    # ------------------------------------------------------------------
    async def claim_due(
        self, workspace_id: str, now: datetime, limit: int
    ) -> list[QueueItem]:
        async with self._lock:
            due = [
                item
                for (ws, _), item in self._queue.items()
                if ws == workspace_id
                and item.status == QueueStatus.QUEUED
                and item.execute_at <= now
            ]
            due.sort(key=lambda i: i.execute_at)
            claimed = []
            for item in due[:limit]:
                item.status = QueueStatus.PROCESSING
                item.updated_at = now
                item.claim_token = new_id()
                claimed.append(item.model_copy(deep=True))
            return claimed

    async def requeue_stale(self, workspace_id: str, older_than: datetime) -> int:
        async with self._lock:
            count = 0
            for (ws, _), item in self._queue.items():
                if (
                    ws == workspace_id
                    and item.status == QueueStatus.PROCESSING
                    and item.updated_at < older_than
                ):
                    item.status = QueueStatus.QUEUED
                    item.claim_token = None
                    count += 1
            return count

    def _claimed(self, item: QueueItem) -> QueueItem:
        stored = self._queue.get((item.workspace_id, item.id))
        if (
            stored is None
            or stored.status != QueueStatus.PROCESSING
            or stored.claim_token != item.claim_token
        ):
            raise ClaimLostError(f"Queue item {item.id} is no longer claimed")
        return stored

    async def holds_claim(self, item: QueueItem) -> bool:
        async with self._lock:
            try:
                self._claimed(item)
            except ClaimLostError:
                return False
            return True

    async def complete_item(
        self,
        item: QueueItem,
        next_item: QueueItem | None,
        now: datetime,
        steps_executed: int,
    ) -> bool:
        async with self._lock:
            stored = self._claimed(item)
            stored.status = QueueStatus.DONE
            stored.updated_at = now
            run = self._runs.get((item.workspace_id, item.run_id))
            if run is None or run.status != RunStatus.RUNNING:
                return False
            run.steps_executed = steps_executed
            run.updated_at = now
            if next_item is None:
                self._finish(run, RunStatus.COMPLETED, now, None)
            else:
                run.current_step_id = next_item.step_id
                self._queue[(next_item.workspace_id, next_item.id)] = (
                    next_item.model_copy(deep=True)
                )
            return True

    async def skip_item(self, item: QueueItem, now: datetime) -> None:
        async with self._lock:
            stored = self._claimed(item)
            stored.status = QueueStatus.DONE
            stored.updated_at = now

    async def retry_item(
        self, item: QueueItem, error: str, execute_at: datetime, now: datetime
    ) -> None:
        async with self._lock:
            stored = self._claimed(item)
            stored.status = QueueStatus.QUEUED
            stored.claim_token = None
            stored.attempts = item.attempts
            stored.last_error = error
            stored.execute_at = execute_at
            stored.updated_at = now

    async def fail_item(self, item: QueueItem, error: str, now: datetime) -> None:
        async with self._lock:
            stored = self._claimed(item)
            stored.status = QueueStatus.FAILED
            stored.attempts = item.attempts
            stored.last_error = error
            stored.updated_at = now
            run = self._runs.get((item.workspace_id, item.run_id))
            if run is not None:
                self._finish(run, RunStatus.FAILED, now, error)

    async def list_queue(
        self, workspace_id: str, run_id: Optional[str] = None
    ) -> list[QueueItem]:
        return [
            i.model_copy(deep=True)
            for (ws, _), i in self._queue.items()
            if ws == workspace_id and (run_id is None or i.run_id == run_id)
        ]
