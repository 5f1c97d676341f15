"""Trigger scanner: turns new event log entries into automation runs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .config import EngineSettings
from .contracts import (
    Automation,
    AutomationStatus,
    TriggerConfig,
    TriggerKind,
    TriggerStep,
    load_automation,
)
from .errors import DefinitionError
from .models import ScanResult
from .persistence import (
    ContactEvent,
    EngineRepository,
    EventCursor,
    QueueItem,
    Run,
    RunStatus,
)
from .persistence.models import utcnow

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _contains(haystack: Any, needle: Optional[str]) -> bool:
    wanted = _text(needle).lower()
    return not wanted or wanted in _text(haystack).lower()


def _same(actual: Any, expected: Optional[str]) -> bool:
    wanted = _text(expected)
    return not wanted or _text(actual) == wanted


def trigger_matches(trigger: TriggerConfig, event: ContactEvent) -> bool:
    """Return True if ``event`` fires ``trigger``.

    The event type must equal the trigger kind. Filters left blank on the
    trigger match any event.
    """
    if event.type != trigger.kind.value:
        return False
    meta = event.meta or {}
    url = meta.get("url") or meta.get("href")
    match trigger.kind:
        case TriggerKind.FORM_SUBMITTED:
            return _same(meta.get("form") or meta.get("formName"), trigger.form)
        case TriggerKind.EMAIL_OPEN:
            return _same(event.campaign_id, trigger.campaign_id)
        case TriggerKind.LINK_CLICK:
            return _same(event.campaign_id, trigger.campaign_id) and _contains(
                url, trigger.url_contains
            )
        case TriggerKind.TAG_ADDED | TriggerKind.TAG_REMOVED:
            return _contains(meta.get("tag"), trigger.tag)
        case TriggerKind.LIST_JOINED | TriggerKind.LIST_LEFT:
            return _contains(meta.get("list"), trigger.list_name)
        case TriggerKind.PAGE_VISITED:
            return _contains(url, trigger.url_contains)
        case _:
            return True


class TriggerScanner:
    """Match event log entries past the workspace cursor against every
    running automation's triggers and open a run per match."""

    def __init__(
        self,
        repository: EngineRepository,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings or EngineSettings()
        self._clock = clock

    async def scan(
        self, workspace_id: str, limit: int, now: datetime | None = None
    ) -> ScanResult:
        now = now or self._clock()
        result = ScanResult(workspace_id=workspace_id)

        try:
            cursor = await self._repository.get_cursor(workspace_id)
            events = await self._repository.read_events(
                workspace_id, cursor.position if cursor else None, limit
            )
            if not events:
                return result
            automations = await self._load_automations(workspace_id, result)
            for event in events:
                result.matched += await self._match_event(
                    event, automations, now, result
                )
                result.processed_events += 1
        except Exception as exc:
            # The cursor stays put so the whole batch is replayed next time.
            logger.exception(f"Scan of workspace {workspace_id} aborted")
            result.errors.append(f"scan aborted: {exc}")
            return result

        last = events[-1]
        new_cursor = EventCursor(
            workspace_id=workspace_id,
            last_occurred_at=last.occurred_at,
            last_event_id=last.id,
            updated_at=now,
        )
        result.cursor_advanced = await self._repository.compare_and_set_cursor(
            workspace_id, cursor, new_cursor
        )
        if not result.cursor_advanced:
            logger.info(
                f"Cursor for workspace {workspace_id} moved concurrently; yielding"
            )
        logger.info(
            f"Scanned {result.processed_events} events in {workspace_id}: "
            f"{result.matched} runs opened"
        )
        return result

    async def _load_automations(
        self, workspace_id: str, result: ScanResult
    ) -> list[Automation]:
        records = await self._repository.list_automations(
            workspace_id, status=AutomationStatus.RUNNING.value
        )
        automations = []
        for record in records:
            try:
                automations.append(load_automation(record))
            except DefinitionError as exc:
                logger.warning(f"Skipping automation {record.id}: {exc}")
                result.errors.append(f"automation {record.id}: {exc}")
        return automations

    async def _match_event(
        self,
        event: ContactEvent,
        automations: list[Automation],
        now: datetime,
        result: ScanResult,
    ) -> int:
        if not event.contact_id:
            return 0
        opened = 0
        for automation in automations:
            for trigger in automation.triggers():
                if not trigger_matches(trigger.config, event):
                    continue
                try:
                    if trigger.next:
                        automation.get_step(trigger.next)
                except DefinitionError as exc:
                    logger.warning(
                        f"Trigger {trigger.id} of automation {automation.id}: {exc}"
                    )
                    result.errors.append(f"automation {automation.id}: {exc}")
                    continue
                if await self._open_run(automation, trigger, event, now):
                    opened += 1
        return opened

    async def _open_run(
        self,
        automation: Automation,
        trigger: TriggerStep,
        event: ContactEvent,
        now: datetime,
    ) -> bool:
        run = Run(
            workspace_id=event.workspace_id,
            automation_id=automation.id,
            contact_id=event.contact_id,
            current_step_id=trigger.next or trigger.id,
            started_at=now,
            updated_at=now,
            trigger_event_id=event.id,
            trigger_step_id=trigger.id,
        )
        item = None
        if trigger.next is None:
            run.status = RunStatus.COMPLETED
            run.finished_at = now
        else:
            item = QueueItem(
                workspace_id=event.workspace_id,
                run_id=run.id,
                automation_id=automation.id,
                contact_id=event.contact_id,
                step_id=trigger.next,
                execute_at=now,
                updated_at=now,
                payload={"trigger_event_id": event.id},
            )
        created = await self._repository.create_run(
            run, item, dedupe=self._settings.dedupe_trigger_events
        )
        if created:
            logger.info(
                f"Run {run.id} opened for contact {run.contact_id} "
                f"in automation {automation.id} ({run.status.value})"
            )
        else:
            logger.debug(
                f"Event {event.id} already opened a run for automation {automation.id}"
            )
        return created
