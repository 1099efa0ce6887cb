import logging
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.experts.db_models import CalendarCredential, ExpertProfile
from app.infra.calendar import MissingRefreshTokenError

logger = logging.getLogger(__name__)


async def run_keep_alive(session: AsyncSession, *, calendar_service: Any, batch_size: int = 50) -> dict[str, int]:
    """Ping the database, then refresh every connected calendar token.

    Profiles are read in keyset pages ordered by user id. One profile failing
    never stops the rest of the batch.
    """
    await session.execute(text("SELECT 1"))
    summary = {"profiles": 0, "refreshed": 0, "skipped": 0, "failed": 0}

    last_user_id: str | None = None
    while True:
        stmt = select(ExpertProfile.user_id).order_by(ExpertProfile.user_id).limit(batch_size)
        if last_user_id is not None:
            stmt = stmt.where(ExpertProfile.user_id > last_user_id)
        user_ids = (await session.scalars(stmt)).all()
        if not user_ids:
            break
        last_user_id = user_ids[-1]

        for user_id in user_ids:
            summary["profiles"] += 1
            credential = await session.get(CalendarCredential, user_id)
            if credential is None:
                continue
            try:
                await calendar_service.refresh_access_token(credential)
                await session.commit()
            except MissingRefreshTokenError:
                await session.rollback()
                summary["skipped"] += 1
                logger.info("calendar_token_refresh_skipped", extra={"extra": {"user_id": user_id}})
                continue
            except Exception as exc:  # noqa: BLE001
                await session.rollback()
                summary["failed"] += 1
                logger.warning(
                    "calendar_token_refresh_failed",
                    extra={"extra": {"user_id": user_id, "reason": type(exc).__name__}},
                )
                continue
            summary["refreshed"] += 1

        if len(user_ids) < batch_size:
            break

    logger.info("keep_alive_complete", extra={"extra": summary})
    return summary
