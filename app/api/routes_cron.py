import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import require_cron_secret
from app.domain.errors import InternalError
from app.infra.db import get_db_session
from app.infra.metrics import metrics
from app.jobs.tasks import JOBS, context_from_state, record_job_metrics

router = APIRouter(prefix="/v1/cron", dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger(__name__)


async def _run_job(name: str, request: Request, session: AsyncSession) -> dict[str, Any]:
    ctx = context_from_state(request.app.state)
    try:
        result = await JOBS[name](session, ctx)
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        metrics.record_job(name, "aborted")
        logger.exception("cron_job_aborted", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        raise InternalError("Scheduled job aborted") from exc
    record_job_metrics(name, result)
    logger.info("cron_job_complete", extra={"extra": {"job": name, **result}})
    return {"job": name, "ok": True, "summary": result}


@router.get("/keep-alive")
async def keep_alive(request: Request, session: AsyncSession = Depends(get_db_session)) -> dict[str, Any]:
    return await _run_job("keep-alive", request, session)


@router.get("/process-transfers")
async def process_transfers(request: Request, session: AsyncSession = Depends(get_db_session)) -> dict[str, Any]:
    return await _run_job("process-transfers", request, session)


@router.get("/upcoming-payouts")
async def upcoming_payouts(request: Request, session: AsyncSession = Depends(get_db_session)) -> dict[str, Any]:
    return await _run_job("upcoming-payouts", request, session)
