"""Action handlers: email sends, contact field updates and team notifications."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from .constants import EVENT_EMAIL_QUEUED, EVENT_FIELD_UPDATED
from .contracts import (
    ActionStep,
    NotifyAction,
    SendEmailAction,
    SendRequest,
    UpdateFieldAction,
)
from .errors import DefinitionError
from .mailers import BaseMailer
from .persistence import ContactEvent, EngineRepository
from .persistence.models import Contact, QueueItem
from .rendering import contact_variables, render

logger = logging.getLogger(__name__)

_SCALAR_COLUMNS = {
    "lifecycleStage": "lifecycle_stage",
    "temperature": "temperature",
    "status": "status",
    "leadScore": "lead_score",
}
_SET_COLUMNS = {"tag": "tags", "list": "lists"}


class StepContext(BaseModel):
    """Everything an action needs to know about the item being executed."""

    item: QueueItem
    contact: Contact
    now: datetime

    @property
    def workspace_id(self) -> str:
        return self.item.workspace_id


def apply_field_update(action: UpdateFieldAction, contact: Contact) -> dict[str, Any]:
    """Compute the contact changes for an ``update_field`` action.

    Returns a mapping of contact attribute names to new values. An empty
    mapping means there is nothing to write.
    """
    if action.field in _SCALAR_COLUMNS:
        column = _SCALAR_COLUMNS[action.field]
        if column == "lead_score":
            try:
                return {column: int(float(action.value or 0))}
            except (TypeError, ValueError):
                raise DefinitionError(
                    f"leadScore value {action.value!r} is not a number"
                ) from None
        return {column: "" if action.value is None else str(action.value)}

    column = _SET_COLUMNS[action.field]
    wanted = str(action.value or "").strip()
    if not wanted:
        return {}
    current: list[str] = list(getattr(contact, column))
    if action.op == "remove":
        updated = [v for v in current if v.strip().lower() != wanted.lower()]
    else:
        # "set" on a set-like field is stored by the builder and means add
        updated = current if wanted in current else current + [wanted]
    return {column: updated}


class ActionRunner:
    """Executes action steps against the contact store and the mailer."""

    def __init__(
        self,
        repository: EngineRepository,
        mailer: BaseMailer,
        team_notify_email: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._mailer = mailer
        self._team_notify_email = team_notify_email

    async def run(self, step: ActionStep, ctx: StepContext) -> None:
        match step.config:
            case SendEmailAction() as action:
                await self.send_email(step, action, ctx)
            case UpdateFieldAction() as action:
                await self.update_field(step, action, ctx)
            case NotifyAction() as action:
                await self.notify(step, action, ctx)
            case _:
                raise DefinitionError(f"Unsupported action on step {step.id}")

    def _request(self, step: ActionStep, ctx: StepContext, **fields: Any) -> SendRequest:
        return SendRequest(
            workspace_id=ctx.workspace_id,
            automation_id=ctx.item.automation_id,
            run_id=ctx.item.run_id,
            step_id=step.id,
            contact_id=ctx.contact.id,
            created_at=ctx.now,
            **fields,
        )

    async def send_email(
        self, step: ActionStep, action: SendEmailAction, ctx: StepContext
    ) -> None:
        email = (ctx.contact.email or "").strip()
        if not email:
            logger.info(
                f"Contact {ctx.contact.id} has no email; skipping send on step {step.id}"
            )
            return
        variables = contact_variables(ctx.contact)
        subject = render(action.subject.strip(), variables)
        request = self._request(
            step,
            ctx,
            kind="email",
            to_email=email,
            subject=subject,
            body=render(action.body.strip(), variables),
        )
        await self._mailer.send(request)
        await self._repository.append_event(
            ContactEvent(
                workspace_id=ctx.workspace_id,
                contact_id=ctx.contact.id,
                type=EVENT_EMAIL_QUEUED,
                occurred_at=ctx.now,
                title=f'Automation Email Queued: "{subject}"',
                meta={
                    "automation_id": ctx.item.automation_id,
                    "step_id": step.id,
                    "message_id": request.message_id,
                },
            )
        )
        logger.info(f"Queued email {request.message_id} to {email} (run {ctx.item.run_id})")

    async def update_field(
        self, step: ActionStep, action: UpdateFieldAction, ctx: StepContext
    ) -> None:
        changes = apply_field_update(action, ctx.contact)
        if changes:
            await self._repository.update_contact(
                ctx.workspace_id, ctx.contact.id, changes
            )
        await self._repository.append_event(
            ContactEvent(
                workspace_id=ctx.workspace_id,
                contact_id=ctx.contact.id,
                type=EVENT_FIELD_UPDATED,
                occurred_at=ctx.now,
                title=f"Automation updated {action.field}",
                meta={
                    "automation_id": ctx.item.automation_id,
                    "step_id": step.id,
                    "field": action.field,
                    "op": action.op,
                    "value": action.value,
                },
            )
        )

    async def notify(
        self, step: ActionStep, action: NotifyAction, ctx: StepContext
    ) -> None:
        recipient = action.recipient or (self._team_notify_email or "").strip()
        if not recipient:
            logger.warning(f"No notification recipient for step {step.id}; skipping")
            return
        variables = contact_variables(ctx.contact)
        subject = action.subject or f"Automation Alert: {ctx.item.automation_id}"
        body = action.body or (
            f"Contact {ctx.contact.email or ctx.contact.id} "
            f'reached step "{step.title or step.id}"'
        )
        await self._mailer.send(
            self._request(
                step,
                ctx,
                kind="notification",
                to_email=recipient,
                subject=render(subject.strip(), variables),
                body=render(body.strip(), variables),
            )
        )
