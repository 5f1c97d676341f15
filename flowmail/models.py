from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_response(self) -> dict[str, Any]:
        return {"ok": True, **self.model_dump(by_alias=True, mode="json")}


class ScanResult(_Envelope):
    """Outcome of one trigger scanner pass over a workspace."""

    workspace_id: str
    processed_events: int = 0
    matched: int = 0
    errors: list[str] = Field(default_factory=list)
    cursor_advanced: bool = False


class ProcessResult(_Envelope):
    """Outcome of one step executor pass over a workspace."""

    workspace_id: str
    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    retried: int = 0
    errors: list[str] = Field(default_factory=list)


class TriggerResult(_Envelope):
    run_id: str
    step_id: Optional[str] = None


class TickResult(_Envelope):
    """Scan and process results for every workspace visited by a tick."""

    workspaces: int = 0
    results: list[dict[str, Any]] = Field(default_factory=list)
