import argparse
import asyncio
import logging
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.infra.calendar import GoogleCalendarService
from app.infra.db import get_session_factory
from app.infra.email import resolve_email_adapter
from app.infra.logging import configure_logging
from app.infra.metrics import configure_metrics, metrics
from app.infra.stripe_client import StripeClient
from app.jobs.heartbeat import record_heartbeat
from app.jobs.tasks import JOBS, JobContext, context_from_state, record_job_metrics
from app.settings import settings

logger = logging.getLogger(__name__)


async def _run_job(name: str, session_factory: async_sessionmaker, ctx: JobContext) -> None:
    async with session_factory() as session:
        result = await JOBS[name](session, ctx)
    logger.info("job_complete", extra={"extra": {"job": name, **result}})
    record_job_metrics(name, result)


def _build_context() -> JobContext:
    state = SimpleNamespace(
        app_settings=settings,
        stripe_client=StripeClient(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        ),
        calendar_service=GoogleCalendarService(settings),
        email_adapter=resolve_email_adapter(settings),
    )
    return context_from_state(state)


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled settlement jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(JOBS), help="Job name to run")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    ctx = _build_context()
    job_names = args.jobs or ["keep-alive", "process-transfers", "upcoming-payouts"]

    while True:
        for name in job_names:
            try:
                await _run_job(name, session_factory, ctx)
            except Exception as exc:  # noqa: BLE001
                metrics.record_job(name, "aborted")
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        await record_heartbeat(session_factory)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
