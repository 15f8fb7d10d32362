import logging
from datetime import datetime, timezone
from typing import Any

import anyio
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from billing.domain.ops.db_models import JobHeartbeat
from billing.jobs.heartbeat import RUNNER_HEARTBEAT_NAME

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)

CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _check_database(session_factory) -> dict[str, Any]:
    try:
        with anyio.fail_after(CHECK_TIMEOUT_SECONDS):
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
    except TimeoutError:
        return {"ok": False, "message": "database check timed out", "timeout_seconds": CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.warning("readyz_database_failed", extra={"extra": {"error": type(exc).__name__}})
        return {"ok": False, "message": "database check failed", "error": type(exc).__name__}
    return {"ok": True, "message": "database reachable"}


def _age_seconds(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int((datetime.now(tz=timezone.utc) - moment).total_seconds())


async def _jobs_runner_status(session_factory, ttl_seconds: int) -> dict[str, Any]:
    """Heartbeat of the jobs runner. Reported only; readiness never depends on it."""
    try:
        with anyio.fail_after(CHECK_TIMEOUT_SECONDS):
            async with session_factory() as session:
                row = await session.get(JobHeartbeat, RUNNER_HEARTBEAT_NAME)
    except Exception as exc:  # noqa: BLE001
        return {"message": "job heartbeat check failed", "error": type(exc).__name__}
    if row is None:
        return {"message": "job heartbeat missing", "threshold_seconds": ttl_seconds}
    age = _age_seconds(row.last_heartbeat)
    return {
        "message": "ok" if age <= ttl_seconds else "job heartbeat stale",
        "runner_id": row.runner_id,
        "age_seconds": age,
        "threshold_seconds": ttl_seconds,
    }


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    app_settings = getattr(request.app.state, "app_settings", None)
    ttl_seconds = getattr(app_settings, "job_heartbeat_ttl_seconds", 300)

    if session_factory is None:
        database = {"ok": False, "message": "database session factory unavailable"}
    else:
        database = await _check_database(session_factory)
    if database["ok"]:
        jobs = await _jobs_runner_status(session_factory, ttl_seconds)
    else:
        jobs = {"message": "skipped"}

    ready = database["ok"]
    body = {"ok": ready, "checks": [{"name": "db", **database}, {"name": "jobs", **jobs}]}
    return JSONResponse(body, status_code=200 if ready else 503)
