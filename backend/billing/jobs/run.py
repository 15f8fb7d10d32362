"""Entry point for scheduled billing jobs.

    python -m billing.jobs.run --once
    billing-jobs --job monthly-membership-charges --interval 3600
"""

import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

from billing.infra.db import dispose_engine, get_session_factory
from billing.infra.entity_store import EntityStore
from billing.infra.logging import clear_log_context, configure_logging, update_log_context
from billing.infra.metrics import configure_metrics, metrics
from billing.jobs import monthly_charges
from billing.jobs.heartbeat import record_job_run, record_runner_heartbeat
from billing.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[EntityStore], Awaitable[dict[str, Any]]]

DEFAULT_JOBS = [monthly_charges.JOB_NAME]


def _monthly_charges(store: EntityStore) -> Awaitable[dict[str, Any]]:
    return monthly_charges.run_monthly_membership_charges(
        store,
        time_zone=settings.billing_time_zone,
        batch_limit=settings.monthly_charge_batch_limit,
    )


JOBS: dict[str, JobRunner] = {monthly_charges.JOB_NAME: _monthly_charges}


def _summary(result: dict[str, Any]) -> dict[str, Any]:
    return {key: len(value) if isinstance(value, list) else value for key, value in result.items()}


async def run_job(session_factory: async_sessionmaker, name: str, runner: JobRunner) -> dict[str, Any] | None:
    """Run one job and record its outcome; a crash is logged and recorded, not raised."""
    update_log_context(job=name)
    try:
        result = await runner(EntityStore(session_factory))
    except Exception as exc:  # noqa: BLE001
        logger.exception("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        await record_job_run(session_factory, name, error=type(exc).__name__)
        return None
    finally:
        clear_log_context()

    summary = _summary(result)
    logger.info("job_complete", extra={"extra": {"job": name, **summary}})
    if summary.get("errors"):
        metrics.record_job_error(name, "item_errors")
    await record_job_run(session_factory, name, summary=summary)
    return result


async def run_jobs_once(session_factory: async_sessionmaker, job_names: list[str]) -> None:
    unknown = [name for name in job_names if name not in JOBS]
    if unknown:
        raise ValueError(f"unknown_job:{','.join(unknown)}")
    for name in job_names:
        await run_job(session_factory, name, JOBS[name])
    await record_runner_heartbeat(session_factory)


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled billing jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(JOBS), help="Job to run (repeatable)")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=int, default=86400, help="Seconds between runs without --once")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    try:
        while True:
            await run_jobs_once(session_factory, args.jobs or DEFAULT_JOBS)
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await dispose_engine()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
