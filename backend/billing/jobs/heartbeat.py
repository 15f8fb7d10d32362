import socket
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from billing.domain.ops.db_models import JobHeartbeat
from billing.infra.metrics import metrics

RUNNER_HEARTBEAT_NAME = "billing-jobs-runner"


def _runner_id(runner_id: str | None) -> str:
    return (runner_id or "").strip() or socket.gethostname()


async def record_job_run(
    session_factory: async_sessionmaker,
    name: str,
    *,
    error: str | None = None,
    summary: dict[str, Any] | None = None,
    runner_id: str | None = None,
) -> JobHeartbeat:
    """Upsert the heartbeat row for ``name``.

    A run without ``error`` resets the failure streak and stores ``summary``; a
    failed run keeps the previous summary and bumps ``consecutive_failures``.
    """
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        row = await session.get(JobHeartbeat, name)
        if row is None:
            row = JobHeartbeat(name=name, consecutive_failures=0)
            session.add(row)
        row.runner_id = _runner_id(runner_id)
        row.last_heartbeat = now
        row.updated_at = now
        if error is None:
            row.last_success_at = now
            row.last_error = None
            row.last_error_at = None
            row.consecutive_failures = 0
            if summary is not None:
                row.last_summary = summary
        else:
            row.last_error = error[:255]
            row.last_error_at = now
            row.consecutive_failures = (row.consecutive_failures or 0) + 1
        await session.commit()

    metrics.record_job_heartbeat(name, now.timestamp())
    if error is None:
        metrics.record_job_success(name, now.timestamp())
    else:
        metrics.record_job_error(name, error)
    return row


async def record_runner_heartbeat(session_factory: async_sessionmaker, *, runner_id: str | None = None) -> JobHeartbeat:
    return await record_job_run(session_factory, RUNNER_HEARTBEAT_NAME, runner_id=runner_id)
