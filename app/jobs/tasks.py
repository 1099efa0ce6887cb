from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.transfers import service as transfer_service
from app.infra import stripe_client as stripe_infra
from app.infra.calendar import resolve_calendar_service
from app.infra.email import resolve_notifier
from app.infra.metrics import metrics
from app.jobs.keep_alive import run_keep_alive


@dataclass
class JobContext:
    app_settings: Any
    stripe_client: Any | None
    calendar_service: Any
    notifier: Any


def context_from_state(app_state: Any) -> JobContext:
    app_settings = app_state.app_settings
    stripe_client = stripe_infra.resolve_client(app_state) if app_settings.stripe_secret_key else None
    return JobContext(
        app_settings=app_settings,
        stripe_client=stripe_client,
        calendar_service=resolve_calendar_service(app_state),
        notifier=resolve_notifier(app_state),
    )


async def keep_alive(session: AsyncSession, ctx: JobContext) -> dict[str, int]:
    return await run_keep_alive(
        session,
        calendar_service=ctx.calendar_service,
        batch_size=ctx.app_settings.keep_alive_batch_size,
    )


async def process_transfers(session: AsyncSession, ctx: JobContext) -> dict[str, int]:
    return await transfer_service.run_transfer_sweep(
        session,
        stripe_client=ctx.stripe_client,
        notifier=ctx.notifier,
        app_settings=ctx.app_settings,
    )


async def upcoming_payouts(session: AsyncSession, ctx: JobContext) -> dict[str, int]:
    return await transfer_service.run_upcoming_payout_check(
        session,
        notifier=ctx.notifier,
        app_settings=ctx.app_settings,
    )


JOBS: dict[str, Callable[[AsyncSession, JobContext], Awaitable[dict[str, int]]]] = {
    "keep-alive": keep_alive,
    "process-transfers": process_transfers,
    "upcoming-payouts": upcoming_payouts,
}


def record_job_metrics(job: str, result: dict[str, int]) -> None:
    for status, count in result.items():
        metrics.record_job(job, status, count)
