"""Facade wiring the scanner, the executor and run management together."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .config import FlowmailConfig, load_config
from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_WORKSPACES,
    DEFAULT_RUNS_LIMIT,
    DEFAULT_SCAN_LIMIT,
    MAX_BATCH_SIZE,
    MAX_RUNS_LIMIT,
    MAX_SCAN_LIMIT,
    MAX_WORKSPACES,
    clamp,
)
from .contracts import load_automation
from .errors import AutomationNotFoundError, DefinitionError, RunNotFoundError
from .execute import StepExecutor
from .mailers import BaseMailer, get_mailer
from .models import ProcessResult, ScanResult, TickResult, TriggerResult
from .persistence import (
    EngineRepository,
    QueueItem,
    Run,
    RunStatus,
    get_repository,
)
from .persistence.models import utcnow
from .scanner import TriggerScanner

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Entry points invoked by the HTTP surface, the CLI and schedulers."""

    def __init__(
        self,
        repository: EngineRepository,
        mailer: BaseMailer,
        config: Optional[FlowmailConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or FlowmailConfig()
        self.repository = repository
        self.mailer = mailer
        self._clock = clock
        self.scanner = TriggerScanner(repository, self.config.engine, clock=clock)
        self.executor = StepExecutor(
            repository,
            mailer,
            self.config.engine,
            team_notify_email=self.config.team_notify_email,
            clock=clock,
        )

    @classmethod
    def from_config(cls, config: Optional[FlowmailConfig] = None) -> "AutomationEngine":
        config = config or load_config()
        return cls(
            repository=get_repository(config.database_url),
            mailer=get_mailer(config=config),
            config=config,
        )

    async def close(self) -> None:
        """Release mailer connections. The repository is shared and stays open."""
        await self.mailer.disconnect()

    async def scan(self, workspace_id: str, limit: Optional[int] = None) -> ScanResult:
        limit = clamp(limit, DEFAULT_SCAN_LIMIT, MAX_SCAN_LIMIT)
        return await self.scanner.scan(workspace_id, limit)

    async def process(
        self, workspace_id: str, batch_size: Optional[int] = None
    ) -> ProcessResult:
        batch_size = clamp(batch_size, DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE)
        return await self.executor.process(workspace_id, batch_size)

    async def trigger(
        self, workspace_id: str, automation_id: str, contact_id: str
    ) -> TriggerResult:
        """Start a run for ``contact_id`` directly, bypassing the scanner."""
        record = await self.repository.get_automation(workspace_id, automation_id)
        if record is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        automation = load_automation(record)
        entry = automation.entry_step_id()
        if entry is None:
            raise DefinitionError(f"Automation {automation_id} has no steps")

        now = self._clock()
        run = Run(
            workspace_id=workspace_id,
            automation_id=automation_id,
            contact_id=contact_id,
            current_step_id=entry,
            started_at=now,
            updated_at=now,
        )
        item = QueueItem(
            workspace_id=workspace_id,
            run_id=run.id,
            automation_id=automation_id,
            contact_id=contact_id,
            step_id=entry,
            execute_at=now,
            updated_at=now,
            payload={"manual": True},
        )
        await self.repository.create_run(run, item)
        logger.info(f"Manual run {run.id} of {automation_id} for contact {contact_id}")
        return TriggerResult(run_id=run.id, step_id=entry)

    async def cancel_run(self, workspace_id: str, run_id: str) -> bool:
        """Cancel a running run. Returns False if it had already finished."""
        run = await self.repository.get_run(workspace_id, run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        cancelled = await self.repository.finish_run(
            workspace_id, run_id, RunStatus.CANCELLED, self._clock()
        )
        if cancelled:
            logger.info(f"Run {run_id} cancelled")
        return cancelled

    async def list_runs(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Run]:
        limit = clamp(limit, DEFAULT_RUNS_LIMIT, MAX_RUNS_LIMIT)
        return await self.repository.list_runs(
            workspace_id, automation_id=automation_id, run_id=run_id, limit=limit
        )

    async def tick(
        self,
        max_workspaces: Optional[int] = None,
        scan_limit: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> TickResult:
        """Scan then process every workspace that has running automations."""
        max_workspaces = clamp(max_workspaces, DEFAULT_MAX_WORKSPACES, MAX_WORKSPACES)
        scan_limit = clamp(scan_limit, MAX_SCAN_LIMIT, MAX_SCAN_LIMIT)
        batch_size = clamp(batch_size, MAX_BATCH_SIZE, MAX_BATCH_SIZE)

        result = TickResult()
        for workspace_id in await self.repository.list_active_workspaces(max_workspaces):
            try:
                scanned = await self.scan(workspace_id, scan_limit)
                processed = await self.process(workspace_id, batch_size)
            except Exception as exc:
                logger.exception(f"Tick failed for workspace {workspace_id}")
                result.results.append({"workspaceId": workspace_id, "error": str(exc)})
                continue
            result.workspaces += 1
            result.results.append(
                {
                    "workspaceId": workspace_id,
                    "scanner": scanned.model_dump(by_alias=True, mode="json"),
                    "worker": processed.model_dump(by_alias=True, mode="json"),
                }
            )
        return result
