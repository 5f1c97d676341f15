"""SQLite implementation of the engine repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS automations (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        steps TEXT NOT NULL,
        PRIMARY KEY (workspace_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        email TEXT NOT NULL DEFAULT '',
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        lead_score INTEGER,
        lifecycle_stage TEXT,
        temperature TEXT,
        status TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        lists TEXT NOT NULL DEFAULT '[]',
        last_open_date TEXT,
        PRIMARY KEY (workspace_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_events (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        contact_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        campaign_id TEXT,
        title TEXT NOT NULL DEFAULT '',
        meta TEXT,
        PRIMARY KEY (workspace_id, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS contact_events_position_idx
        ON contact_events (workspace_id, occurred_at, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_event_cursor (
        workspace_id TEXT PRIMARY KEY,
        last_occurred_at TEXT NOT NULL,
        last_event_id TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_runs (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        automation_id TEXT NOT NULL,
        contact_id TEXT NOT NULL,
        status TEXT NOT NULL,
        current_step_id TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        last_error TEXT,
        trigger_event_id TEXT,
        trigger_step_id TEXT,
        dedupe_key TEXT,
        steps_executed INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (workspace_id, id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS automation_runs_dedupe_idx
        ON automation_runs (workspace_id, dedupe_key)
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_queue (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        run_id TEXT NOT NULL,
        automation_id TEXT NOT NULL,
        contact_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        execute_at TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        payload TEXT,
        updated_at TEXT NOT NULL,
        claim_token TEXT,
        PRIMARY KEY (workspace_id, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS automation_queue_due_idx
        ON automation_queue (workspace_id, status, execute_at)
    """,
)

_CONTACT_COLUMNS = {
    "email",
    "first_name",
    "last_name",
    "lead_score",
    "lifecycle_stage",
    "temperature",
    "status",
    "tags",
    "lists",
    "last_open_date",
}


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so that text ordering is time ordering."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteEngineRepository(EngineRepository):
    """Persist engine state using SQLite.

    Blocking ``sqlite3`` calls run in a worker thread. A single connection is
    shared, so every call holds ``_lock``; multi-statement operations run in
    one transaction. The queue claim is a conditional ``UPDATE`` so that
    separate processes sharing the file still claim each item once.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    async def _run(self, fn, *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _automation(row: sqlite3.Row) -> AutomationRecord:
        return AutomationRecord(
            workspace_id=row["workspace_id"],
            id=row["id"],
            name=row["name"],
            status=row["status"],
            steps=json.loads(row["steps"]) if row["steps"] else [],
        )

    @staticmethod
    def _contact(row: sqlite3.Row) -> Contact:
        return Contact(
            workspace_id=row["workspace_id"],
            id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            lead_score=row["lead_score"],
            lifecycle_stage=row["lifecycle_stage"],
            temperature=row["temperature"],
            status=row["status"],
            tags=json.loads(row["tags"]),
            lists=json.loads(row["lists"]),
            last_open_date=_parse_ts(row["last_open_date"]),
        )

    @staticmethod
    def _event(row: sqlite3.Row) -> ContactEvent:
        return ContactEvent(
            workspace_id=row["workspace_id"],
            id=row["id"],
            contact_id=row["contact_id"],
            type=row["event_type"],
            occurred_at=_parse_ts(row["occurred_at"]),
            campaign_id=row["campaign_id"],
            title=row["title"],
            meta=json.loads(row["meta"]) if row["meta"] else {},
        )

    @staticmethod
    def _run_row(row: sqlite3.Row) -> Run:
        return Run(
            workspace_id=row["workspace_id"],
            id=row["id"],
            automation_id=row["automation_id"],
            contact_id=row["contact_id"],
            status=RunStatus(row["status"]),
            current_step_id=row["current_step_id"],
            started_at=_parse_ts(row["started_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            last_error=row["last_error"],
            trigger_event_id=row["trigger_event_id"],
            trigger_step_id=row["trigger_step_id"],
            steps_executed=row["steps_executed"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _item(row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            workspace_id=row["workspace_id"],
            id=row["id"],
            run_id=row["run_id"],
            automation_id=row["automation_id"],
            contact_id=row["contact_id"],
            step_id=row["step_id"],
            execute_at=_parse_ts(row["execute_at"]),
            status=QueueStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            updated_at=_parse_ts(row["updated_at"]),
            claim_token=row["claim_token"],
        )

    def _insert_item(self, item: QueueItem) -> None:
        self._conn.execute(
            """
            INSERT INTO automation_queue (
                workspace_id, id, seq, run_id, automation_id, contact_id, step_id,
                execute_at, status, attempts, last_error, payload, updated_at
            ) VALUES (
                ?, ?,
                (SELECT COALESCE(MAX(seq), 0) + 1 FROM automation_queue),
                ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            )
            """,
            (
                item.workspace_id,
                item.id,
                item.run_id,
                item.automation_id,
                item.contact_id,
                item.step_id,
                _ts(item.execute_at),
                item.status.value,
                item.attempts,
                item.last_error,
                json.dumps(item.payload),
                _ts(item.updated_at),
            ),
        )

    def _finish_sql(
        self,
        workspace_id: str,
        run_id: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str],
    ) -> int:
        cur = self._conn.execute(
            """
            UPDATE automation_runs
            SET status = ?, finished_at = ?, updated_at = ?,
                last_error = COALESCE(?, last_error)
            WHERE workspace_id = ? AND id = ? AND status = 'running'
            """,
            (status.value, _ts(now), _ts(now), error, workspace_id, run_id),
        )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Automation definitions
    async def save_automation(self, automation: AutomationRecord) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO automations (workspace_id, id, name, status, steps)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (workspace_id, id) DO UPDATE SET
                name = excluded.name, status = excluded.status, steps = excluded.steps
            """,
            automation.workspace_id,
            automation.id,
            automation.name,
            automation.status,
            json.dumps(automation.steps),
        )

    async def get_automation(
        self, workspace_id: str, automation_id: str
    ) -> AutomationRecord | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM automations WHERE workspace_id = ? AND id = ?",
            workspace_id,
            automation_id,
        )
        return self._automation(row) if row else None

    async def list_automations(
        self, workspace_id: str, status: Optional[str] = None
    ) -> list[AutomationRecord]:
        if status is None:
            rows = await self._run(
                self._fetchall,
                "SELECT * FROM automations WHERE workspace_id = ? ORDER BY id",
                workspace_id,
            )
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT * FROM automations WHERE workspace_id = ? AND status = ? ORDER BY id",
                workspace_id,
                status,
            )
        return [self._automation(r) for r in rows]

    async def list_active_workspaces(self, limit: int) -> list[str]:
        rows = await self._run(
            self._fetchall,
            """
            SELECT DISTINCT workspace_id FROM automations
            WHERE status = 'Running' ORDER BY workspace_id LIMIT ?
            """,
            limit,
        )
        return [r["workspace_id"] for r in rows]

    # ------------------------------------------------------------------
    # Contacts
    async def save_contact(self, contact: Contact) -> None:
        await self._run(
            self._execute,
            """
            INSERT OR REPLACE INTO contacts (
                workspace_id, id, email, first_name, last_name, lead_score,
                lifecycle_stage, temperature, status, tags, lists, last_open_date
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            contact.workspace_id,
            contact.id,
            contact.email,
            contact.first_name,
            contact.last_name,
            contact.lead_score,
            contact.lifecycle_stage,
            contact.temperature,
            contact.status,
            json.dumps(contact.tags),
            json.dumps(contact.lists),
            _ts(contact.last_open_date),
        )

    async def get_contact(self, workspace_id: str, contact_id: str) -> Contact | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM contacts WHERE workspace_id = ? AND id = ?",
            workspace_id,
            contact_id,
        )
        return self._contact(row) if row else None

    async def update_contact(
        self, workspace_id: str, contact_id: str, changes: dict[str, Any]
    ) -> None:
        unknown = set(changes) - _CONTACT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact fields: {sorted(unknown)}")
        if not changes:
            return
        values: list[Any] = []
        for name, value in changes.items():
            if name in ("tags", "lists"):
                value = json.dumps(value)
            elif name == "last_open_date":
                value = _ts(value)
            values.append(value)
        assignments = ", ".join(f"{name} = ?" for name in changes)
        updated = await self._run(
            self._execute,
            f"UPDATE contacts SET {assignments} WHERE workspace_id = ? AND id = ?",
            *values,
            workspace_id,
            contact_id,
        )
        if not updated:
            raise ContactNotFoundError(f"Contact {contact_id} not found")

    # ------------------------------------------------------------------
    # Event log
    async def append_event(self, event: ContactEvent) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO contact_events (
                workspace_id, id, contact_id, event_type, occurred_at,
                campaign_id, title, meta
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            event.workspace_id,
            event.id,
            event.contact_id,
            event.type,
            _ts(event.occurred_at),
            event.campaign_id,
            event.title,
            json.dumps(event.meta),
        )

    async def read_events(
        self,
        workspace_id: str,
        after: Optional[tuple[datetime, str]],
        limit: int,
    ) -> list[ContactEvent]:
        if after is None:
            rows = await self._run(
                self._fetchall,
                """
                SELECT * FROM contact_events WHERE workspace_id = ?
                ORDER BY occurred_at, id LIMIT ?
                """,
                workspace_id,
                limit,
            )
        else:
            occurred_at, event_id = after
            rows = await self._run(
                self._fetchall,
                """
                SELECT * FROM contact_events
                WHERE workspace_id = ?
                  AND (occurred_at > ? OR (occurred_at = ? AND id > ?))
                ORDER BY occurred_at, id LIMIT ?
                """,
                workspace_id,
                _ts(occurred_at),
                _ts(occurred_at),
                event_id,
                limit,
            )
        return [self._event(r) for r in rows]

    # ------------------------------------------------------------------
    # Event cursor
    async def get_cursor(self, workspace_id: str) -> EventCursor | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM automation_event_cursor WHERE workspace_id = ?",
            workspace_id,
        )
        if not row:
            return None
        return EventCursor(
            workspace_id=row["workspace_id"],
            last_occurred_at=_parse_ts(row["last_occurred_at"]),
            last_event_id=row["last_event_id"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def compare_and_set_cursor(
        self,
        workspace_id: str,
        expected: EventCursor | None,
        new: EventCursor,
    ) -> bool:
        if expected is None:
            changed = await self._run(
                self._execute,
                """
                INSERT INTO automation_event_cursor (
                    workspace_id, last_occurred_at, last_event_id, updated_at
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT (workspace_id) DO NOTHING
                """,
                workspace_id,
                _ts(new.last_occurred_at),
                new.last_event_id,
                _ts(new.updated_at),
            )
        else:
            changed = await self._run(
                self._execute,
                """
                UPDATE automation_event_cursor
                SET last_occurred_at = ?, last_event_id = ?, updated_at = ?
                WHERE workspace_id = ? AND last_occurred_at = ? AND last_event_id = ?
                """,
                _ts(new.last_occurred_at),
                new.last_event_id,
                _ts(new.updated_at),
                workspace_id,
                _ts(expected.last_occurred_at),
                expected.last_event_id,
            )
        return changed == 1

    # ------------------------------------------------------------------
    # Runs
    def _create_run_sync(self, run: Run, item: QueueItem | None, dedupe: bool) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO automation_runs (
                    workspace_id, id, automation_id, contact_id, status,
                    current_step_id, started_at, finished_at, last_error,
                    trigger_event_id, trigger_step_id, dedupe_key,
                    steps_executed, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    run.workspace_id,
                    run.id,
                    run.automation_id,
                    run.contact_id,
                    run.status.value,
                    run.current_step_id,
                    _ts(run.started_at),
                    _ts(run.finished_at),
                    run.last_error,
                    run.trigger_event_id,
                    run.trigger_step_id,
                    run.dedupe_token() if dedupe else None,
                    run.steps_executed,
                    _ts(run.updated_at),
                ),
            )
            if cur.rowcount != 1:
                return False
            if item is not None:
                self._insert_item(item)
            return True

    async def create_run(
        self, run: Run, item: QueueItem | None = None, dedupe: bool = False
    ) -> bool:
        return await self._run(self._create_run_sync, run, item, dedupe)

    async def get_run(self, workspace_id: str, run_id: str) -> Run | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM automation_runs WHERE workspace_id = ? AND id = ?",
            workspace_id,
            run_id,
        )
        return self._run_row(row) if row else None

    async def list_runs(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Run]:
        clauses = ["workspace_id = ?"]
        params: list[Any] = [workspace_id]
        if automation_id:
            clauses.append("automation_id = ?")
            params.append(automation_id)
        if run_id:
            clauses.append("id = ?")
            params.append(run_id)
        rows = await self._run(
            self._fetchall,
            f"""
            SELECT * FROM automation_runs WHERE {' AND '.join(clauses)}
            ORDER BY started_at DESC LIMIT ?
            """,
            *params,
            limit,
        )
        return [self._run_row(r) for r in rows]

    def _finish_run_sync(
        self,
        workspace_id: str,
        run_id: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str],
    ) -> bool:
        with self._lock, self._conn:
            return self._finish_sql(workspace_id, run_id, status, now, error) == 1

    async def finish_run(
        self,
        workspace_id: str,
        run_id: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        return await self._run(
            self._finish_run_sync, workspace_id, run_id, status, now, error
        )

    # ------------------------------------------------------------------
    # Queue
    def _claim_sync(self, workspace_id: str, now: datetime, limit: int) -> list[QueueItem]:
        claimed: list[QueueItem] = []
        with self._lock, self._conn:
            rows = self._conn.execute(
                """
                SELECT * FROM automation_queue
                WHERE workspace_id = ? AND status = 'queued' AND execute_at <= ?
                ORDER BY execute_at, seq LIMIT ?
                """,
                (workspace_id, _ts(now), limit),
            ).fetchall()
            for row in rows:
                token = new_id()
                cur = self._conn.execute(
                    """
                    UPDATE automation_queue
                    SET status = 'processing', updated_at = ?, claim_token = ?
                    WHERE workspace_id = ? AND id = ? AND status = 'queued'
                    """,
                    (_ts(now), token, workspace_id, row["id"]),
                )
                if cur.rowcount == 1:
                    item = self._item(row)
                    item.status = QueueStatus.PROCESSING
                    item.updated_at = now
                    item.claim_token = token
                    claimed.append(item)
        return claimed

    async def claim_due(
        self, workspace_id: str, now: datetime, limit: int
    ) -> list[QueueItem]:
        return await self._run(self._claim_sync, workspace_id, now, limit)

    async def requeue_stale(self, workspace_id: str, older_than: datetime) -> int:
        return await self._run(
            self._execute,
            """
            UPDATE automation_queue SET status = 'queued', claim_token = NULL
            WHERE workspace_id = ? AND status = 'processing' AND updated_at < ?
            """,
            workspace_id,
            _ts(older_than),
        )

    async def holds_claim(self, item: QueueItem) -> bool:
        row = await self._run(
            self._fetchone,
            """
            SELECT 1 FROM automation_queue
            WHERE workspace_id = ? AND id = ? AND status = 'processing'
              AND claim_token = ?
            """,
            item.workspace_id,
            item.id,
            item.claim_token,
        )
        return row is not None

    def _release_sql(
        self,
        item: QueueItem,
        status: QueueStatus,
        now: datetime,
        execute_at: datetime | None = None,
        error: Optional[str] = None,
    ) -> None:
        """Move a claimed item out of ``processing``; caller holds the transaction."""
        cur = self._conn.execute(
            """
            UPDATE automation_queue
            SET status = ?, updated_at = ?, claim_token = NULL,
                attempts = ?, last_error = COALESCE(?, last_error),
                execute_at = COALESCE(?, execute_at)
            WHERE workspace_id = ? AND id = ? AND status = 'processing'
              AND claim_token = ?
            """,
            (
                status.value,
                _ts(now),
                item.attempts,
                error,
                _ts(execute_at),
                item.workspace_id,
                item.id,
                item.claim_token,
            ),
        )
        if cur.rowcount != 1:
            raise ClaimLostError(f"Queue item {item.id} is no longer claimed")

    def _complete_sync(
        self,
        item: QueueItem,
        next_item: QueueItem | None,
        now: datetime,
        steps_executed: int,
    ) -> bool:
        with self._lock, self._conn:
            self._release_sql(item, QueueStatus.DONE, now)
            row = self._conn.execute(
                "SELECT status FROM automation_runs WHERE workspace_id = ? AND id = ?",
                (item.workspace_id, item.run_id),
            ).fetchone()
            if row is None or row["status"] != RunStatus.RUNNING.value:
                return False
            self._conn.execute(
                """
                UPDATE automation_runs SET steps_executed = ?, updated_at = ?
                WHERE workspace_id = ? AND id = ?
                """,
                (steps_executed, _ts(now), item.workspace_id, item.run_id),
            )
            if next_item is None:
                self._finish_sql(
                    item.workspace_id, item.run_id, RunStatus.COMPLETED, now, None
                )
            else:
                self._insert_item(next_item)
                self._conn.execute(
                    """
                    UPDATE automation_runs SET current_step_id = ?
                    WHERE workspace_id = ? AND id = ?
                    """,
                    (next_item.step_id, item.workspace_id, item.run_id),
                )
            return True

    async def complete_item(
        self,
        item: QueueItem,
        next_item: QueueItem | None,
        now: datetime,
        steps_executed: int,
    ) -> bool:
        return await self._run(
            self._complete_sync, item, next_item, now, steps_executed
        )

    def _release_sync(
        self,
        item: QueueItem,
        status: QueueStatus,
        now: datetime,
        execute_at: datetime | None,
        error: Optional[str],
    ) -> None:
        with self._lock, self._conn:
            self._release_sql(item, status, now, execute_at, error)

    async def skip_item(self, item: QueueItem, now: datetime) -> None:
        await self._run(self._release_sync, item, QueueStatus.DONE, now, None, None)

    async def retry_item(
        self, item: QueueItem, error: str, execute_at: datetime, now: datetime
    ) -> None:
        await self._run(
            self._release_sync, item, QueueStatus.QUEUED, now, execute_at, error
        )

    def _fail_sync(self, item: QueueItem, error: str, now: datetime) -> None:
        with self._lock, self._conn:
            self._release_sql(item, QueueStatus.FAILED, now, error=error)
            self._finish_sql(
                item.workspace_id, item.run_id, RunStatus.FAILED, now, error
            )

    async def fail_item(self, item: QueueItem, error: str, now: datetime) -> None:
        await self._run(self._fail_sync, item, error, now)

    async def list_queue(
        self, workspace_id: str, run_id: Optional[str] = None
    ) -> list[QueueItem]:
        if run_id is None:
            rows = await self._run(
                self._fetchall,
                "SELECT * FROM automation_queue WHERE workspace_id = ? ORDER BY seq",
                workspace_id,
            )
        else:
            rows = await self._run(
                self._fetchall,
                """
                SELECT * FROM automation_queue WHERE workspace_id = ? AND run_id = ?
                ORDER BY seq
                """,
                workspace_id,
                run_id,
            )
        return [self._item(r) for r in rows]
