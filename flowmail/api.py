"""
Flowmail runner HTTP API

FastAPI app exposing the engine's batch operations so an external scheduler
can invoke them.

Endpoints:
- POST /scan, /process, /trigger, /tick
- POST /runs, /runs/cancel
- GET /health
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_WORKSPACE, RUNNER_TOKEN_HEADER
from .engine import AutomationEngine
from .errors import AutomationNotFoundError, DefinitionError, RunNotFoundError

logger = logging.getLogger(__name__)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    workspace_id: str = DEFAULT_WORKSPACE


class ScanBody(_Body):
    limit: Optional[int] = None


class ProcessBody(_Body):
    batch_size: Optional[int] = None


class TriggerBody(_Body):
    automation_id: str = ""
    contact_id: str = ""


class RunsBody(_Body):
    automation_id: Optional[str] = None
    run_id: Optional[str] = None
    limit: Optional[int] = None


class CancelBody(_Body):
    run_id: str = ""


class TickBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_workspaces: Optional[int] = None
    scan_limit: Optional[int] = None
    batch_size: Optional[int] = None


def get_engine(request: Request) -> AutomationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = AutomationEngine.from_config()
        request.app.state.engine = engine
    return engine


def require_runner_token(
    engine: AutomationEngine = Depends(get_engine),
    token: Optional[str] = Header(default=None, alias=RUNNER_TOKEN_HEADER),
) -> None:
    expected = (engine.config.runner_token or "").strip()
    if not expected:
        return
    if not token or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.close()


def create_app(engine: Optional[AutomationEngine] = None) -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title="Flowmail Runner",
        description="Automation trigger scanner and step executor",
        version="0.1.0",
    )
    app.state.engine = engine
    guarded = [Depends(require_runner_token)]

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "service": "flowmail-runner"}

    @app.post("/scan", dependencies=guarded)
    async def scan(body: ScanBody, engine: AutomationEngine = Depends(get_engine)):
        result = await engine.scan(body.workspace_id, body.limit)
        return result.to_response()

    @app.post("/process", dependencies=guarded)
    async def process(
        body: ProcessBody, engine: AutomationEngine = Depends(get_engine)
    ):
        result = await engine.process(body.workspace_id, body.batch_size)
        return result.to_response()

    @app.post("/trigger", dependencies=guarded)
    async def trigger(
        body: TriggerBody, engine: AutomationEngine = Depends(get_engine)
    ):
        automation_id = body.automation_id.strip()
        contact_id = body.contact_id.strip()
        if not automation_id:
            raise HTTPException(status_code=400, detail="Missing automationId")
        if not contact_id:
            raise HTTPException(status_code=400, detail="Missing contactId")
        try:
            result = await engine.trigger(body.workspace_id, automation_id, contact_id)
        except AutomationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except DefinitionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return result.to_response()

    @app.post("/runs", dependencies=guarded)
    async def runs(body: RunsBody, engine: AutomationEngine = Depends(get_engine)):
        rows = await engine.list_runs(
            body.workspace_id,
            automation_id=body.automation_id or None,
            run_id=body.run_id or None,
            limit=body.limit,
        )
        return {"ok": True, "rows": [r.model_dump(mode="json") for r in rows]}

    @app.post("/runs/cancel", dependencies=guarded)
    async def cancel(body: CancelBody, engine: AutomationEngine = Depends(get_engine)):
        if not body.run_id.strip():
            raise HTTPException(status_code=400, detail="Missing runId")
        try:
            cancelled = await engine.cancel_run(body.workspace_id, body.run_id.strip())
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"ok": True, "cancelled": cancelled}

    @app.post("/tick", dependencies=guarded)
    async def tick(body: TickBody, engine: AutomationEngine = Depends(get_engine)):
        result = await engine.tick(
            max_workspaces=body.max_workspaces,
            scan_limit=body.scan_limit,
            batch_size=body.batch_size,
        )
        return result.to_response()

    return app


app = create_app()
