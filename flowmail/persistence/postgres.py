"""PostgreSQL implementation of the engine repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

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
)
from .repository import EngineRepository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS automations (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        steps JSONB NOT NULL DEFAULT '[]',
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
        tags TEXT[] NOT NULL DEFAULT '{}',
        lists TEXT[] NOT NULL DEFAULT '{}',
        last_open_date TIMESTAMPTZ,
        PRIMARY KEY (workspace_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_events (
        workspace_id TEXT NOT NULL,
        id TEXT NOT NULL,
        contact_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL,
        campaign_id TEXT,
        title TEXT NOT NULL DEFAULT '',
        meta JSONB,
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
        last_occurred_at TIMESTAMPTZ NOT NULL,
        last_event_id TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
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
        started_at TIMESTAMPTZ NOT NULL,
        finished_at TIMESTAMPTZ,
        last_error TEXT,
        trigger_event_id TEXT,
        trigger_step_id TEXT,
        dedupe_key TEXT,
        steps_executed INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL,
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
        seq BIGSERIAL,
        run_id TEXT NOT NULL,
        automation_id TEXT NOT NULL,
        contact_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        execute_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        payload JSONB,
        updated_at TIMESTAMPTZ NOT NULL,
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

_INSERT_ITEM = """
    INSERT INTO automation_queue (
        workspace_id, id, run_id, automation_id, contact_id, step_id,
        execute_at, status, attempts, last_error, payload, updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
"""

_FINISH_RUN = """
    UPDATE automation_runs
    SET status = $1, finished_at = $2, updated_at = $2,
        last_error = COALESCE($3, last_error)
    WHERE workspace_id = $4 AND id = $5 AND status = 'running'
"""

_RELEASE_ITEM = """
    UPDATE automation_queue
    SET status = $3, updated_at = $4, claim_token = NULL, attempts = $5,
        last_error = COALESCE($6, last_error), execute_at = COALESCE($7, execute_at)
    WHERE workspace_id = $1 AND id = $2 AND status = 'processing'
      AND claim_token = $8
"""


def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _item_args(item: QueueItem) -> tuple[Any, ...]:
    return (
        item.workspace_id,
        item.id,
        item.run_id,
        item.automation_id,
        item.contact_id,
        item.step_id,
        item.execute_at,
        item.status.value,
        item.attempts,
        item.last_error,
        json.dumps(item.payload),
        item.updated_at,
    )


class PostgresEngineRepository(EngineRepository):
    """Persist engine state using PostgreSQL.

    Claims use ``FOR UPDATE SKIP LOCKED`` so overlapping workers never
    receive the same queue item.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    # ------------------------------------------------------------------
    @staticmethod
    def _automation(row: asyncpg.Record) -> AutomationRecord:
        return AutomationRecord(
            workspace_id=row["workspace_id"],
            id=row["id"],
            name=row["name"],
            status=row["status"],
            steps=_loads(row["steps"]) or [],
        )

    @staticmethod
    def _contact(row: asyncpg.Record) -> Contact:
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
            tags=list(row["tags"] or []),
            lists=list(row["lists"] or []),
            last_open_date=row["last_open_date"],
        )

    @staticmethod
    def _event(row: asyncpg.Record) -> ContactEvent:
        return ContactEvent(
            workspace_id=row["workspace_id"],
            id=row["id"],
            contact_id=row["contact_id"],
            type=row["event_type"],
            occurred_at=row["occurred_at"],
            campaign_id=row["campaign_id"],
            title=row["title"],
            meta=_loads(row["meta"]) or {},
        )

    @staticmethod
    def _run_row(row: asyncpg.Record) -> Run:
        return Run(
            workspace_id=row["workspace_id"],
            id=row["id"],
            automation_id=row["automation_id"],
            contact_id=row["contact_id"],
            status=RunStatus(row["status"]),
            current_step_id=row["current_step_id"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            last_error=row["last_error"],
            trigger_event_id=row["trigger_event_id"],
            trigger_step_id=row["trigger_step_id"],
            steps_executed=row["steps_executed"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _item(row: asyncpg.Record) -> QueueItem:
        return QueueItem(
            workspace_id=row["workspace_id"],
            id=row["id"],
            run_id=row["run_id"],
            automation_id=row["automation_id"],
            contact_id=row["contact_id"],
            step_id=row["step_id"],
            execute_at=row["execute_at"],
            status=QueueStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            payload=_loads(row["payload"]) or {},
            updated_at=row["updated_at"],
            claim_token=row["claim_token"],
        )

    # ------------------------------------------------------------------
    async def save_automation(self, automation: AutomationRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO automations (workspace_id, id, name, status, steps)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (workspace_id, id) DO UPDATE SET
                    name = EXCLUDED.name, status = EXCLUDED.status, steps = EXCLUDED.steps
                """,
                automation.workspace_id,
                automation.id,
                automation.name,
                automation.status,
                json.dumps(automation.steps),
            )
        finally:
            await conn.close()

    async def get_automation(
        self, workspace_id: str, automation_id: str
    ) -> AutomationRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM automations WHERE workspace_id = $1 AND id = $2",
                workspace_id,
                automation_id,
            )
        finally:
            await conn.close()
        return self._automation(row) if row else None

    async def list_automations(
        self, workspace_id: str, status: Optional[str] = None
    ) -> list[AutomationRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM automations
                WHERE workspace_id = $1 AND ($2::text IS NULL OR status = $2)
                ORDER BY id
                """,
                workspace_id,
                status,
            )
        finally:
            await conn.close()
        return [self._automation(r) for r in rows]

    async def list_active_workspaces(self, limit: int) -> list[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT DISTINCT workspace_id FROM automations
                WHERE status = 'Running' ORDER BY workspace_id LIMIT $1
                """,
                limit,
            )
        finally:
            await conn.close()
        return [r["workspace_id"] for r in rows]

    # ------------------------------------------------------------------
    async def save_contact(self, contact: Contact) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO contacts (
                    workspace_id, id, email, first_name, last_name, lead_score,
                    lifecycle_stage, temperature, status, tags, lists, last_open_date
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (workspace_id, id) DO UPDATE SET
                    email = EXCLUDED.email,
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    lead_score = EXCLUDED.lead_score,
                    lifecycle_stage = EXCLUDED.lifecycle_stage,
                    temperature = EXCLUDED.temperature,
                    status = EXCLUDED.status,
                    tags = EXCLUDED.tags,
                    lists = EXCLUDED.lists,
                    last_open_date = EXCLUDED.last_open_date
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
                contact.tags,
                contact.lists,
                contact.last_open_date,
            )
        finally:
            await conn.close()

    async def get_contact(self, workspace_id: str, contact_id: str) -> Contact | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM contacts WHERE workspace_id = $1 AND id = $2",
                workspace_id,
                contact_id,
            )
        finally:
            await conn.close()
        return self._contact(row) if row else None

    async def update_contact(
        self, workspace_id: str, contact_id: str, changes: dict[str, Any]
    ) -> None:
        unknown = set(changes) - _CONTACT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact fields: {sorted(unknown)}")
        if not changes:
            return
        names = list(changes)
        assignments = ", ".join(f"{name} = ${i + 3}" for i, name in enumerate(names))
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"UPDATE contacts SET {assignments} WHERE workspace_id = $1 AND id = $2",
                workspace_id,
                contact_id,
                *(changes[name] for name in names),
            )
        finally:
            await conn.close()
        if status.endswith(" 0"):
            raise ContactNotFoundError(f"Contact {contact_id} not found")

    # ------------------------------------------------------------------
    async def append_event(self, event: ContactEvent) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO contact_events (
                    workspace_id, id, contact_id, event_type, occurred_at,
                    campaign_id, title, meta
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                event.workspace_id,
                event.id,
                event.contact_id,
                event.type,
                event.occurred_at,
                event.campaign_id,
                event.title,
                json.dumps(event.meta),
            )
        finally:
            await conn.close()

    async def read_events(
        self,
        workspace_id: str,
        after: Optional[tuple[datetime, str]],
        limit: int,
    ) -> list[ContactEvent]:
        conn = await self._connect()
        try:
            if after is None:
                rows = await conn.fetch(
                    """
                    SELECT * FROM contact_events WHERE workspace_id = $1
                    ORDER BY occurred_at, id LIMIT $2
                    """,
                    workspace_id,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM contact_events
                    WHERE workspace_id = $1 AND (occurred_at, id) > ($2, $3)
                    ORDER BY occurred_at, id LIMIT $4
                    """,
                    workspace_id,
                    after[0],
                    after[1],
                    limit,
                )
        finally:
            await conn.close()
        return [self._event(r) for r in rows]

    # ------------------------------------------------------------------
    async def get_cursor(self, workspace_id: str) -> EventCursor | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM automation_event_cursor WHERE workspace_id = $1",
                workspace_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return EventCursor(
            workspace_id=row["workspace_id"],
            last_occurred_at=row["last_occurred_at"],
            last_event_id=row["last_event_id"],
            updated_at=row["updated_at"],
        )

    async def compare_and_set_cursor(
        self,
        workspace_id: str,
        expected: EventCursor | None,
        new: EventCursor,
    ) -> bool:
        conn = await self._connect()
        try:
            if expected is None:
                status = await conn.execute(
                    """
                    INSERT INTO automation_event_cursor (
                        workspace_id, last_occurred_at, last_event_id, updated_at
                    ) VALUES ($1, $2, $3, $4)
                    ON CONFLICT (workspace_id) DO NOTHING
                    """,
                    workspace_id,
                    new.last_occurred_at,
                    new.last_event_id,
                    new.updated_at,
                )
            else:
                status = await conn.execute(
                    """
                    UPDATE automation_event_cursor
                    SET last_occurred_at = $2, last_event_id = $3, updated_at = $4
                    WHERE workspace_id = $1
                      AND last_occurred_at = $5 AND last_event_id = $6
                    """,
                    workspace_id,
                    new.last_occurred_at,
                    new.last_event_id,
                    new.updated_at,
                    expected.last_occurred_at,
                    expected.last_event_id,
                )
        finally:
            await conn.close()
        return status.endswith(" 1")

    # ------------------------------------------------------------------
    async def create_run(
        self, run: Run, item: QueueItem | None = None, dedupe: bool = False
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    """
                    INSERT INTO automation_runs (
                        workspace_id, id, automation_id, contact_id, status,
                        current_step_id, started_at, finished_at, last_error,
                        trigger_event_id, trigger_step_id, dedupe_key,
                        steps_executed, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                    ON CONFLICT DO NOTHING
                    """,
                    run.workspace_id,
                    run.id,
                    run.automation_id,
                    run.contact_id,
                    run.status.value,
                    run.current_step_id,
                    run.started_at,
                    run.finished_at,
                    run.last_error,
                    run.trigger_event_id,
                    run.trigger_step_id,
                    run.dedupe_token() if dedupe else None,
                    run.steps_executed,
                    run.updated_at,
                )
                if not status.endswith(" 1"):
                    return False
                if item is not None:
                    await conn.execute(_INSERT_ITEM, *_item_args(item))
                return True
        finally:
            await conn.close()

    async def get_run(self, workspace_id: str, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM automation_runs WHERE workspace_id = $1 AND id = $2",
                workspace_id,
                run_id,
            )
        finally:
            await conn.close()
        return self._run_row(row) if row else None

    async def list_runs(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM automation_runs
                WHERE workspace_id = $1
                  AND ($2::text IS NULL OR automation_id = $2)
                  AND ($3::text IS NULL OR id = $3)
                ORDER BY started_at DESC LIMIT $4
                """,
                workspace_id,
                automation_id,
                run_id,
                limit,
            )
        finally:
            await conn.close()
        return [self._run_row(r) for r in rows]

    async def finish_run(
        self,
        workspace_id: str,
        run_id: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                _FINISH_RUN, status.value, now, error, workspace_id, run_id
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    # ------------------------------------------------------------------
    async def claim_due(
        self, workspace_id: str, now: datetime, limit: int
    ) -> list[QueueItem]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                UPDATE automation_queue
                SET status = 'processing', updated_at = $2,
                    claim_token = md5(random()::text || clock_timestamp()::text || id)
                WHERE workspace_id = $1 AND id IN (
                    SELECT id FROM automation_queue
                    WHERE workspace_id = $1 AND status = 'queued' AND execute_at <= $2
                    ORDER BY execute_at, seq
                    LIMIT $3
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                workspace_id,
                now,
                limit,
            )
        finally:
            await conn.close()
        items = [self._item(r) for r in rows]
        items.sort(key=lambda i: i.execute_at)
        return items

    async def requeue_stale(self, workspace_id: str, older_than: datetime) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE automation_queue SET status = 'queued', claim_token = NULL
                WHERE workspace_id = $1 AND status = 'processing' AND updated_at < $2
                """,
                workspace_id,
                older_than,
            )
        finally:
            await conn.close()
        return int(status.split()[-1])

    async def holds_claim(self, item: QueueItem) -> bool:
        conn = await self._connect()
        try:
            found = await conn.fetchval(
                """
                SELECT 1 FROM automation_queue
                WHERE workspace_id = $1 AND id = $2 AND status = 'processing'
                  AND claim_token = $3
                """,
                item.workspace_id,
                item.id,
                item.claim_token,
            )
        finally:
            await conn.close()
        return found is not None

    @staticmethod
    async def _release(
        conn: asyncpg.Connection,
        item: QueueItem,
        status: QueueStatus,
        now: datetime,
        execute_at: datetime | None = None,
        error: Optional[str] = None,
    ) -> None:
        result = await conn.execute(
            _RELEASE_ITEM,
            item.workspace_id,
            item.id,
            status.value,
            now,
            item.attempts,
            error,
            execute_at,
            item.claim_token,
        )
        if not result.endswith(" 1"):
            raise ClaimLostError(f"Queue item {item.id} is no longer claimed")

    async def complete_item(
        self,
        item: QueueItem,
        next_item: QueueItem | None,
        now: datetime,
        steps_executed: int,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._release(conn, item, QueueStatus.DONE, now)
                run_status = await conn.fetchval(
                    """
                    SELECT status FROM automation_runs
                    WHERE workspace_id = $1 AND id = $2 FOR UPDATE
                    """,
                    item.workspace_id,
                    item.run_id,
                )
                if run_status != RunStatus.RUNNING.value:
                    return False
                if next_item is None:
                    await conn.execute(
                        """
                        UPDATE automation_runs SET steps_executed = $3
                        WHERE workspace_id = $1 AND id = $2
                        """,
                        item.workspace_id,
                        item.run_id,
                        steps_executed,
                    )
                    await conn.execute(
                        _FINISH_RUN,
                        RunStatus.COMPLETED.value,
                        now,
                        None,
                        item.workspace_id,
                        item.run_id,
                    )
                else:
                    await conn.execute(_INSERT_ITEM, *_item_args(next_item))
                    await conn.execute(
                        """
                        UPDATE automation_runs
                        SET current_step_id = $3, steps_executed = $4, updated_at = $5
                        WHERE workspace_id = $1 AND id = $2
                        """,
                        item.workspace_id,
                        item.run_id,
                        next_item.step_id,
                        steps_executed,
                        now,
                    )
                return True
        finally:
            await conn.close()

    async def skip_item(self, item: QueueItem, now: datetime) -> None:
        conn = await self._connect()
        try:
            await self._release(conn, item, QueueStatus.DONE, now)
        finally:
            await conn.close()

    async def retry_item(
        self, item: QueueItem, error: str, execute_at: datetime, now: datetime
    ) -> None:
        conn = await self._connect()
        try:
            await self._release(
                conn, item, QueueStatus.QUEUED, now, execute_at=execute_at, error=error
            )
        finally:
            await conn.close()

    async def fail_item(self, item: QueueItem, error: str, now: datetime) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._release(conn, item, QueueStatus.FAILED, now, error=error)
                await conn.execute(
                    _FINISH_RUN,
                    RunStatus.FAILED.value,
                    now,
                    error,
                    item.workspace_id,
                    item.run_id,
                )
        finally:
            await conn.close()

    async def list_queue(
        self, workspace_id: str, run_id: Optional[str] = None
    ) -> list[QueueItem]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM automation_queue
                WHERE workspace_id = $1 AND ($2::text IS NULL OR run_id = $2)
                ORDER BY seq
                """,
                workspace_id,
                run_id,
            )
        finally:
            await conn.close()
        return [self._item(r) for r in rows]
