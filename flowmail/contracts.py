"""Automation definition contracts for the flowmail engine.

A step is a closed union over four variants (trigger, condition, action and
wait), each carrying its own typed configuration. Condition and action
configurations are themselves unions discriminated on ``kind``. The builder
stores steps in a looser shape (``config.kind = "action.send_email"``, edges
inside ``config``, camelCase keys); :class:`Automation` normalizes that shape
before validation so the rest of the engine only ever sees typed steps.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import DefinitionError


class AutomationStatus(str, Enum):
    RUNNING = "Running"
    PAUSED = "Paused"


class TriggerKind(str, Enum):
    FORM_SUBMITTED = "form_submitted"
    EMAIL_OPEN = "email_open"
    LINK_CLICK = "link_click"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    LIST_JOINED = "list_joined"
    LIST_LEFT = "list_left"
    PAGE_VISITED = "page_visited"
    PURCHASE = "purchase"
    PURCHASE_UPGRADED = "purchase_upgraded"
    PURCHASE_CANCELLED = "purchase_cancelled"


class _Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ----------------------------------------------------------------------
# Trigger
class TriggerConfig(_Config):
    """Event type plus optional filters. Blank filters match any event."""

    kind: TriggerKind
    form: Optional[str] = None
    campaign_id: Optional[str] = Field(default=None, alias="campaignId")
    tag: Optional[str] = None
    list_name: Optional[str] = Field(default=None, alias="list")
    url_contains: Optional[str] = Field(default=None, alias="urlContains")


# ----------------------------------------------------------------------
# Conditions
class LeadScoreCondition(_Config):
    kind: Literal["lead_score"]
    op: Literal[">", ">=", "<", "<="] = ">"
    value: float = 50


class LifecycleStageCondition(_Config):
    kind: Literal["lifecycle_stage"]
    value: str = "lead"


class LastOpenDaysCondition(_Config):
    """True when the contact has not opened an email in ``days`` days."""

    kind: Literal["last_open_days"]
    days: int = Field(default=30, ge=0)


class HasTagCondition(_Config):
    kind: Literal["has_tag"]
    tag: str = ""


ConditionConfig = Annotated[
    Union[
        LeadScoreCondition,
        LifecycleStageCondition,
        LastOpenDaysCondition,
        HasTagCondition,
    ],
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# Actions
SCALAR_FIELDS = ("lifecycleStage", "temperature", "status", "leadScore")
SET_FIELDS = ("tag", "list")


class SendEmailAction(_Config):
    kind: Literal["send_email"]
    subject: str = "Hello"
    body: str = ""


class UpdateFieldAction(_Config):
    kind: Literal["update_field"]
    field: Literal["lifecycleStage", "temperature", "status", "leadScore", "tag", "list"]
    op: Literal["set", "add", "remove"] = "set"
    value: Any = None

    @model_validator(mode="after")
    def _check_op(self) -> "UpdateFieldAction":
        if self.field in SCALAR_FIELDS and self.op != "set":
            raise ValueError(f"op '{self.op}' is not valid for scalar field '{self.field}'")
        return self


class NotifyAction(_Config):
    kind: Literal["notify"]
    to_email: Optional[str] = Field(default=None, alias="toEmail")
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None

    @property
    def recipient(self) -> Optional[str]:
        for candidate in (self.to_email, self.to):
            if candidate and candidate.strip():
                return candidate.strip()
        return None


ActionConfig = Annotated[
    Union[SendEmailAction, UpdateFieldAction, NotifyAction],
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# Wait
class WaitConfig(_Config):
    days: float = 1

    @property
    def whole_days(self) -> int:
        return max(0, int(self.days // 1))


# ----------------------------------------------------------------------
# Steps
class _StepBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("next", "next_yes", "next_no", mode="before", check_fields=False)
    @classmethod
    def _blank_edge_is_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class TriggerStep(_StepBase):
    type: Literal["trigger"] = "trigger"
    config: TriggerConfig
    next: Optional[str] = None


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig
    next_yes: Optional[str] = Field(default=None, alias="nextYes")
    next_no: Optional[str] = Field(default=None, alias="nextNo")


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    config: ActionConfig
    next: Optional[str] = None


class WaitStep(_StepBase):
    type: Literal["wait"] = "wait"
    config: WaitConfig = Field(default_factory=WaitConfig)
    next: Optional[str] = None


Step = Annotated[
    Union[TriggerStep, ConditionStep, ActionStep, WaitStep],
    Field(discriminator="type"),
]

_EDGE_KEYS = ("next", "nextYes", "nextNo")


def normalize_step(raw: Any) -> Any:
    """Convert a builder-format step into the shape the step models expect."""
    if not isinstance(raw, dict):
        return raw
    data = dict(raw)
    step_type = data.get("type")
    if isinstance(step_type, str):
        data["type"] = step_type.strip().lower()
    config = dict(data.get("config") or {})
    kind = config.get("kind")
    if isinstance(kind, str) and "." in kind:
        config["kind"] = kind.split(".", 1)[1]
    for key in _EDGE_KEYS:
        if key in config and data.get(key) is None:
            data[key] = config.pop(key)
    # The builder marks wait steps either by type or by kind.
    if config.get("kind") == "wait" and data.get("type") != "wait":
        data["type"] = "wait"
    data["config"] = config
    return data


class Automation(BaseModel):
    """A validated automation graph."""

    id: str
    name: str = ""
    status: AutomationStatus = AutomationStatus.RUNNING
    steps: Dict[str, Step] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize_steps(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_steps = data.get("steps") or []
        if isinstance(raw_steps, dict):
            raw_steps = [
                {"id": key, **step} if isinstance(step, dict) else step
                for key, step in raw_steps.items()
            ]
        steps: Dict[str, Any] = {}
        for raw in raw_steps:
            step = normalize_step(raw)
            if isinstance(step, BaseModel):
                step_id = getattr(step, "id", None)
            elif isinstance(step, dict) and step.get("id") is not None:
                step_id = str(step["id"])
            else:
                raise ValueError("every step needs an id")
            if step_id in steps:
                raise ValueError(f"duplicate step id '{step_id}'")
            steps[step_id] = step
        data["steps"] = steps
        return data

    @property
    def is_running(self) -> bool:
        return self.status == AutomationStatus.RUNNING

    def triggers(self) -> List[TriggerStep]:
        return [s for s in self.steps.values() if isinstance(s, TriggerStep)]

    def get_step(self, step_id: str) -> Step:
        """Return the step with ``step_id`` or raise :class:`DefinitionError`."""
        try:
            return self.steps[step_id]
        except KeyError:
            raise DefinitionError(
                f"Step '{step_id}' not found in automation {self.id}"
            ) from None

    def entry_step_id(self) -> Optional[str]:
        """First step a manual run starts at.

        The ``next`` of the first trigger that has one, otherwise the first
        step of the graph.
        """
        for trigger in self.triggers():
            if trigger.next:
                return trigger.next
        return next(iter(self.steps), None)


def load_automation(data: Any) -> Automation:
    """Validate a stored automation, turning validation failures into
    :class:`DefinitionError`."""
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    try:
        return Automation.model_validate(data)
    except ValidationError as exc:
        automation_id = data.get("id") if isinstance(data, dict) else None
        raise DefinitionError(f"Invalid automation {automation_id}: {exc}") from exc


class SendRequest(BaseModel):
    """Hand-off to the mail dispatch collaborator.

    The engine does not wait for delivery; it only guarantees the request was
    accepted by the mailer.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["email", "notification"] = "email"
    workspace_id: str
    automation_id: str
    run_id: str
    step_id: str
    contact_id: str
    to_email: str
    subject: str
    body: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "SendRequest":
        return cls.model_validate_json(data)
