import argparse
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from boxrental.domain.bookings.status_engine import StatusSyncer
from boxrental.infra.db import dispose_engine, get_session_factory
from boxrental.infra.logging import clear_log_context, configure_logging
from boxrental.infra.metrics import configure_metrics, metrics
from boxrental.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[async_sessionmaker], Awaitable[dict[str, int]]]


async def run_status_sync(session_factory: async_sessionmaker) -> dict[str, int]:
    result = await StatusSyncer(session_factory).sync_all()
    return {"updated": result.updated, "unchanged": result.unchanged, "failed": len(result.failed)}


JOBS: dict[str, JobRunner] = {
    "status-sync": run_status_sync,
}


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> None:
    try:
        result = await runner(session_factory)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        metrics.record_job_success(name, time.time())
    finally:
        clear_log_context()


def _job_runner(name: str) -> JobRunner:
    try:
        return JOBS[name]
    except KeyError:
        raise ValueError(f"unknown_job:{name}") from None


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(JOBS), help="Job name to run")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.job_interval_seconds,
        help="Seconds between loops when not using --once",
    )
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()

    job_names = args.jobs or sorted(JOBS)
    runners = [_job_runner(name) for name in job_names]

    try:
        while True:
            for name, runner in zip(job_names, runners):
                try:
                    await _run_job(name, session_factory, runner)
                except Exception as exc:  # noqa: BLE001
                    metrics.record_job_error(name, type(exc).__name__)
                    logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
