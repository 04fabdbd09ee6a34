"""Liveness and readiness checks.

``/api/v1/health`` always answers 200 while the process is up and reports
store reachability in ``db``.  ``/ready`` lives at the application root and
answers 503 until the store responds, so orchestrators can hold traffic
back independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from fuelflow_core.state.database import ping

from api import __version__
from api.dependencies import SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    db_ok = await ping(session)
    return {"status": "healthy", "version": __version__, "db": "ok" if db_ok else "degraded"}


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness(session: SessionDep) -> JSONResponse:
    if await ping(session):
        return JSONResponse(status_code=200, content={"status": "ready", "version": __version__, "checks": {"db": "ok"}})

    logger.error("Readiness check failed: store unreachable")
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "version": __version__, "checks": {"db": "unavailable"}},
    )
