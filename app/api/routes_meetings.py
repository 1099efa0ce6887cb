import re
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import meeting_status_rate_limit
from app.domain.bookings import service as booking_service
from app.domain.bookings.schemas import MeetingStatusResponse
from app.domain.errors import InvalidInput
from app.infra.db import get_db_session

router = APIRouter()

SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


def _parse_start_time(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidInput("startTime must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@router.get(
    "/v1/meetings/status",
    response_model=MeetingStatusResponse,
    dependencies=[Depends(meeting_status_rate_limit)],
)
async def meeting_status(
    start_time: str | None = Query(None, alias="startTime"),
    event_slug: str | None = Query(None, alias="eventSlug"),
    session: AsyncSession = Depends(get_db_session),
) -> MeetingStatusResponse:
    if not start_time or not event_slug:
        raise InvalidInput("startTime and eventSlug are required")
    if not SLUG_RE.match(event_slug):
        raise InvalidInput("eventSlug is malformed")
    return await booking_service.get_meeting_status(
        session,
        event_slug=event_slug,
        start_time=_parse_start_time(start_time),
    )
