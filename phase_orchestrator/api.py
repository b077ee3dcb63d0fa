"""
Read-only status API for dashboards.

The bus is best-effort, so dashboards poll this API to reconcile against
the registry's committed state and history.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .core.registry import WorkflowRegistry
from .data.models.phases import PHASE_ORDER, PHASE_TOKENS, Phase, successor
from .db.base import get_engine, get_session_factory, init_database
from .errors import NotFound, OrchestratorError, UsageError

logger = structlog.get_logger()

_registry: Optional[WorkflowRegistry] = None


def get_registry() -> WorkflowRegistry:
    """Registry dependency; tests override it with an in-memory one."""
    global _registry
    if _registry is None:
        engine = get_engine()
        init_database(engine)
        _registry = WorkflowRegistry(get_session_factory(engine))
    return _registry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("status_api_starting", environment=settings.environment)
    yield
    logger.info("status_api_stopped")


app = FastAPI(
    title="Phase Orchestrator",
    description="Read-only workflow status for dashboards",
    version=importlib.metadata.version("phase-orchestrator"),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    if isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, UsageError):
        status_code = 400
    else:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        status_code = 500
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("phase-orchestrator")}


@app.get("/phases")
def phases() -> List[Dict[str, Any]]:
    """The fixed phase order with the token that enters each phase."""
    return [
        {
            "phase": phase.value,
            "token": PHASE_TOKENS.get(phase),
            "next": successor(phase).value if successor(phase) else None,
            "terminal": phase.is_terminal,
        }
        for phase in (*PHASE_ORDER, Phase.FAILED)
    ]


@app.get("/workflows")
def list_workflows(
    phase: Optional[str] = None,
    registry: WorkflowRegistry = Depends(get_registry),
) -> List[Dict[str, Any]]:
    """List workflows, optionally filtered by phase."""
    selected = None
    if phase is not None:
        try:
            selected = Phase(phase.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown phase: {phase}")
    return [w.to_dict() for w in registry.list_workflows(selected)]


@app.get("/workflows/{workflow_id}")
def get_workflow(workflow_id: str, registry: WorkflowRegistry = Depends(get_registry)) -> Dict[str, Any]:
    return registry.get(workflow_id).to_dict()


@app.get("/workflows/{workflow_id}/history")
def get_history(workflow_id: str, registry: WorkflowRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return registry.export_history(workflow_id)
