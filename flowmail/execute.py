"""Step executor for flowmail automation runs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .actions import ActionRunner, StepContext
from .conditions import select_branch
from .config import EngineSettings
from .contracts import (
    ActionStep,
    Automation,
    AutomationStatus,
    ConditionStep,
    Step,
    TriggerStep,
    WaitStep,
    load_automation,
)
from .errors import (
    TERMINAL_ERRORS,
    ClaimLostError,
    ContactNotFoundError,
    DefinitionError,
    StepLimitExceededError,
)
from .mailers import BaseMailer
from .models import ProcessResult
from .persistence import EngineRepository, QueueItem, Run, RunStatus
from .persistence.models import utcnow
from .utils.retry import retry_delay

logger = logging.getLogger(__name__)


class StepExecutor:
    """Claims due queue items and advances their runs through the graph."""

    def __init__(
        self,
        repository: EngineRepository,
        mailer: BaseMailer,
        settings: EngineSettings | None = None,
        team_notify_email: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._actions = ActionRunner(repository, mailer, team_notify_email)

    async def process(
        self, workspace_id: str, batch_size: int, now: datetime | None = None
    ) -> ProcessResult:
        now = now or self._clock()
        result = ProcessResult(workspace_id=workspace_id)

        stale_before = now - timedelta(seconds=self._settings.processing_timeout_seconds)
        requeued = await self._repository.requeue_stale(workspace_id, stale_before)
        if requeued:
            logger.warning(f"Requeued {requeued} stale items in {workspace_id}")

        items = await self._repository.claim_due(workspace_id, now, batch_size)
        for item in items:
            try:
                await self._handle_item(item, now, result)
            except ClaimLostError as exc:
                logger.warning(f"Dropped outcome of step {item.step_id}: {exc}")
            except Exception as exc:
                # The outcome could not be recorded; stale requeue picks it up.
                message = f"{type(exc).__name__}: {exc}"
                logger.error(
                    f"Could not settle step {item.step_id} of run {item.run_id}: {message}"
                )
                result.errors.append(f"run {item.run_id} step {item.step_id}: {message}")
            result.processed += 1
        if items:
            logger.info(
                f"Processed {result.processed} items in {workspace_id}: "
                f"{result.completed} completed, {result.failed} failed, "
                f"{result.cancelled} cancelled, {result.retried} retried"
            )
        return result

    async def _handle_item(
        self, item: QueueItem, now: datetime, result: ProcessResult
    ) -> None:
        try:
            await self._advance(item, now, result)
        except ClaimLostError:
            raise
        except TERMINAL_ERRORS as exc:
            await self._fail(item, exc, now, result)
        except Exception as exc:
            await self._retry_or_fail(item, exc, now, result)

    async def _advance(
        self, item: QueueItem, now: datetime, result: ProcessResult
    ) -> None:
        run = await self._repository.get_run(item.workspace_id, item.run_id)
        if run is None or run.is_terminal:
            # cancelled or finished while the item sat in the queue
            await self._repository.skip_item(item, now)
            if run is not None and run.status == RunStatus.CANCELLED:
                result.cancelled += 1
            return

        record = await self._repository.get_automation(
            item.workspace_id, item.automation_id
        )
        if record is None or record.status != AutomationStatus.RUNNING.value:
            await self._cancel(item, run, now)
            result.cancelled += 1
            return

        automation = load_automation(record)
        next_item = await self._execute(automation, run, item, now)
        advanced = await self._repository.complete_item(
            item, next_item, now, run.steps_executed + 1
        )
        if not advanced:
            logger.info(f"Run {run.id} left running state during step {item.step_id}")
            result.cancelled += 1
        elif next_item is None:
            logger.info(f"Run {run.id} completed at step {item.step_id}")
            result.completed += 1
        else:
            logger.debug(
                f"Run {run.id} advanced {item.step_id} -> {next_item.step_id} "
                f"(due {next_item.execute_at.isoformat()})"
            )

    async def _execute(
        self, automation: Automation, run: Run, item: QueueItem, now: datetime
    ) -> QueueItem | None:
        """Run one step and return the queue item for the step that follows."""
        step = automation.get_step(item.step_id)
        if run.steps_executed >= self._settings.max_steps_per_run:
            raise StepLimitExceededError(
                f"Run {run.id} exceeded {self._settings.max_steps_per_run} steps; "
                "the automation graph likely contains a cycle"
            )
        contact = await self._repository.get_contact(item.workspace_id, item.contact_id)
        if contact is None:
            raise ContactNotFoundError(f"Contact {item.contact_id} not found")

        execute_at = now
        match step:
            case ConditionStep():
                next_id = select_branch(step, contact, now)
            case ActionStep():
                if step.next:
                    automation.get_step(step.next)
                if not await self._repository.holds_claim(item):
                    raise ClaimLostError(f"Queue item {item.id} was requeued mid-step")
                await self._actions.run(
                    step, StepContext(item=item, contact=contact, now=now)
                )
                next_id = step.next
            case WaitStep():
                execute_at = now + timedelta(days=step.config.whole_days)
                next_id = step.next
            case TriggerStep():
                next_id = step.next
            case _:
                raise DefinitionError(f"Unsupported step {item.step_id}")

        if next_id is None:
            return None
        automation.get_step(next_id)
        return self._next_item(item, step, next_id, execute_at, now)

    def _next_item(
        self,
        item: QueueItem,
        step: Step,
        next_id: str,
        execute_at: datetime,
        now: datetime,
    ) -> QueueItem:
        return QueueItem(
            workspace_id=item.workspace_id,
            run_id=item.run_id,
            automation_id=item.automation_id,
            contact_id=item.contact_id,
            step_id=next_id,
            execute_at=execute_at,
            updated_at=now,
            payload={"previous_step_id": step.id},
        )

    async def _cancel(self, item: QueueItem, run: Run, now: datetime) -> None:
        await self._repository.skip_item(item, now)
        await self._repository.finish_run(
            item.workspace_id, run.id, RunStatus.CANCELLED, now
        )
        logger.info(
            f"Run {run.id} cancelled: automation {item.automation_id} is not running"
        )

    async def _fail(
        self, item: QueueItem, exc: Exception, now: datetime, result: ProcessResult
    ) -> None:
        message = f"{type(exc).__name__}: {exc}"
        item.attempts += 1
        await self._repository.fail_item(item, message, now)
        logger.error(f"Run {item.run_id} failed at step {item.step_id}: {message}")
        result.failed += 1
        result.errors.append(f"run {item.run_id} step {item.step_id}: {message}")

    async def _retry_or_fail(
        self, item: QueueItem, exc: Exception, now: datetime, result: ProcessResult
    ) -> None:
        if item.attempts + 1 >= self._settings.max_attempts:
            await self._fail(item, exc, now, result)
            return
        item.attempts += 1
        message = f"{type(exc).__name__}: {exc}"
        delay = retry_delay(
            item.attempts,
            delay_seconds=self._settings.retry_delay_seconds,
            base=self._settings.retry_backoff_base,
            jitter=self._settings.retry_jitter_seconds,
        )
        await self._repository.retry_item(item, message, now + delay, now)
        logger.warning(
            f"Step {item.step_id} of run {item.run_id} failed "
            f"(attempt {item.attempts}/{self._settings.max_attempts}); "
            f"retrying in {delay.total_seconds():.0f}s: {message}"
        )
        result.retried += 1
        result.errors.append(f"run {item.run_id} step {item.step_id}: {message}")
