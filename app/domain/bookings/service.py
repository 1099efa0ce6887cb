from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.audit.service import SYSTEM_ACTOR_WEBHOOK, record_event
from app.domain.bookings.db_models import BookingAttempt, Meeting
from app.domain.bookings.schemas import MeetingData, MeetingRef, MeetingStatusResponse
from app.domain.bookings.statuses import BookingPaymentStatus, can_transition_payment
from app.domain.clock import ensure_utc
from app.domain.errors import Conflict, NotFound
from app.domain.experts.db_models import CalendarCredential, Event, ExpertProfile
from app.domain.transfers import service as transfer_service

logger = logging.getLogger(__name__)

FINGERPRINT_DISALLOWED = re.compile(r"[^A-Za-z0-9:._@-]")
FINGERPRINT_MAX_LENGTH = 255


class MeetingMetadataError(ValueError):
    """Payment intent metadata that no redelivery can repair."""


@dataclass(frozen=True)
class BookingMetadata:
    event_id: str
    expert_id: str | None
    fingerprint: str
    meeting_data: MeetingData


@dataclass(frozen=True)
class ConfirmationResult:
    meeting: Meeting
    created: bool
    slot_conflict: bool = False


def format_iso_start(start_time: datetime) -> str:
    value = ensure_utc(start_time)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


def build_fingerprint(event_id: str, guest_email: str, start_time: datetime) -> str:
    raw = f"{event_id}:{guest_email.strip().lower()}:{format_iso_start(start_time)}"
    return FINGERPRINT_DISALLOWED.sub("", raw)[:FINGERPRINT_MAX_LENGTH]


def build_intent_metadata(event: Event, meeting_data: MeetingData) -> dict[str, str]:
    return {
        "eventId": event.event_id,
        "expertId": event.expert_id,
        "fingerprint": build_fingerprint(event.event_id, meeting_data.guest_email, meeting_data.start_time),
        "meetingData": meeting_data.model_dump_json(by_alias=True),
    }


def parse_intent_metadata(metadata: Any) -> BookingMetadata:
    if not isinstance(metadata, dict):
        try:
            metadata = dict(metadata or {})
        except (TypeError, ValueError) as exc:
            raise MeetingMetadataError("metadata_not_a_mapping") from exc
    event_id = metadata.get("eventId")
    raw_meeting_data = metadata.get("meetingData")
    if not event_id or not raw_meeting_data:
        raise MeetingMetadataError("metadata_missing_fields")
    try:
        if isinstance(raw_meeting_data, str):
            meeting_data = MeetingData.model_validate_json(raw_meeting_data)
        else:
            meeting_data = MeetingData.model_validate(raw_meeting_data)
    except (ValidationError, json.JSONDecodeError) as exc:
        raise MeetingMetadataError("metadata_invalid_meeting_data") from exc

    fingerprint = build_fingerprint(str(event_id), meeting_data.guest_email, meeting_data.start_time)
    return BookingMetadata(
        event_id=str(event_id),
        expert_id=metadata.get("expertId"),
        fingerprint=fingerprint,
        meeting_data=meeting_data,
    )


async def track_attempt(
    session: AsyncSession,
    *,
    fingerprint: str,
    event_id: str,
    price: int,
    status: BookingPaymentStatus,
    payment_intent_id: str | None,
    meeting_data: dict[str, Any] | None = None,
) -> BookingAttempt:
    """Record the latest provider-reported status for a booking attempt.

    Deliveries may arrive out of order; a status that is not reachable from the
    stored one is ignored rather than applied.
    """
    attempt = await session.get(BookingAttempt, fingerprint)
    if attempt is None:
        attempt = BookingAttempt(
            fingerprint=fingerprint,
            event_id=event_id,
            price=price,
            status=status.value,
            payment_intent_id=payment_intent_id,
            meeting_data=meeting_data or {},
        )
        savepoint = await session.begin_nested()
        try:
            session.add(attempt)
            await session.flush()
        except IntegrityError:
            await savepoint.rollback()
            attempt = await session.get(BookingAttempt, fingerprint, populate_existing=True)
            if attempt is None:
                raise
        else:
            await savepoint.commit()
            return attempt

    if attempt.status == status.value:
        return attempt
    if not can_transition_payment(attempt.status, status):
        logger.info(
            "booking_attempt_transition_ignored",
            extra={"extra": {"fingerprint": fingerprint, "current": attempt.status, "target": status.value}},
        )
        return attempt
    attempt.status = status.value
    if payment_intent_id:
        attempt.payment_intent_id = payment_intent_id
    return attempt


async def find_meeting(session: AsyncSession, event_id: str, start_time: datetime) -> Meeting | None:
    result = await session.execute(
        select(Meeting).where(Meeting.event_id == event_id, Meeting.start_time == ensure_utc(start_time))
    )
    return result.scalar_one_or_none()


async def _load_conflicting_meeting(
    session: AsyncSession, event_id: str, start_time: datetime, payment_intent_id: str
) -> Meeting | None:
    result = await session.execute(
        select(Meeting).where(Meeting.event_id == event_id, Meeting.start_time == ensure_utc(start_time))
    )
    meeting = result.scalar_one_or_none()
    if meeting is not None:
        return meeting
    result = await session.execute(select(Meeting).where(Meeting.payment_intent_id == payment_intent_id))
    return result.scalar_one_or_none()


async def _insert_meeting(session: AsyncSession, meeting: Meeting) -> None:
    savepoint = await session.begin_nested()
    try:
        session.add(meeting)
        await session.flush()
    except IntegrityError as exc:
        await savepoint.rollback()
        raise Conflict("Meeting already exists for this slot") from exc
    else:
        await savepoint.commit()


def _resolve_existing(meeting: Meeting, payment_intent_id: str) -> ConfirmationResult:
    if meeting.payment_intent_id == payment_intent_id:
        logger.info(
            "stripe_webhook_duplicate",
            extra={"extra": {"meeting_id": meeting.meeting_id, "payment_intent_id": payment_intent_id}},
        )
        return ConfirmationResult(meeting=meeting, created=False)
    # Another payment already holds the slot; this one has to be given back.
    logger.warning(
        "stripe_webhook_slot_conflict",
        extra={
            "extra": {
                "meeting_id": meeting.meeting_id,
                "payment_intent_id": payment_intent_id,
                "holding_payment_intent_id": meeting.payment_intent_id,
            }
        },
    )
    return ConfirmationResult(meeting=meeting, created=False, slot_conflict=True)


async def confirm_meeting(
    session: AsyncSession,
    *,
    metadata: BookingMetadata,
    payment_intent_id: str,
    amount: int,
    currency: str,
    fee_rate: float,
    charge_id: str | None = None,
) -> ConfirmationResult:
    """Create the meeting and its transfer for a succeeded payment, at most once per slot.

    The unique ``(event_id, start_time)`` constraint arbitrates concurrent
    deliveries; the loser resolves to the winner's row. The caller commits.
    """
    event = await session.get(Event, metadata.event_id)
    if event is None:
        raise MeetingMetadataError("metadata_unknown_event")

    data = metadata.meeting_data
    existing = await find_meeting(session, event.event_id, data.start_time)
    if existing is not None:
        return _resolve_existing(existing, payment_intent_id)

    meeting = Meeting(
        event_id=event.event_id,
        expert_id=event.expert_id,
        start_time=data.start_time,
        end_time=data.start_time + timedelta(minutes=event.duration_minutes),
        guest_email=data.guest_email,
        guest_name=data.guest_name,
        timezone=data.timezone,
        guest_notes=data.guest_notes,
        price=amount,
        currency=currency,
        payment_intent_id=payment_intent_id,
        payment_status=BookingPaymentStatus.SUCCEEDED.value,
        booking_fingerprint=metadata.fingerprint,
    )
    try:
        await _insert_meeting(session, meeting)
    except Conflict:
        winner = await _load_conflicting_meeting(session, event.event_id, data.start_time, payment_intent_id)
        if winner is None:
            raise
        return _resolve_existing(winner, payment_intent_id)

    record_event(
        session,
        actor=SYSTEM_ACTOR_WEBHOOK,
        action="meeting_created",
        resource_type="meeting",
        resource_id=meeting.meeting_id,
        after={
            "event_id": meeting.event_id,
            "start_time": format_iso_start(meeting.start_time),
            "payment_intent_id": payment_intent_id,
            "price": amount,
        },
    )
    expert = await session.get(ExpertProfile, event.expert_id)
    transfer_service.initialize_transfer(
        session,
        meeting=meeting,
        expert=expert,
        fee_rate=fee_rate,
        charge_id=charge_id,
        actor=SYSTEM_ACTOR_WEBHOOK,
    )
    await session.flush()
    logger.info(
        "meeting_created",
        extra={"extra": {"meeting_id": meeting.meeting_id, "event_id": meeting.event_id}},
    )
    return ConfirmationResult(meeting=meeting, created=True)


async def mark_meeting_refunded(session: AsyncSession, payment_intent_id: str) -> Meeting | None:
    result = await session.execute(select(Meeting).where(Meeting.payment_intent_id == payment_intent_id))
    meeting = result.scalar_one_or_none()
    if meeting is None or not can_transition_payment(meeting.payment_status, BookingPaymentStatus.REFUNDED):
        return meeting
    before = meeting.payment_status
    meeting.payment_status = BookingPaymentStatus.REFUNDED.value
    record_event(
        session,
        actor=SYSTEM_ACTOR_WEBHOOK,
        action="meeting_refunded",
        resource_type="meeting",
        resource_id=meeting.meeting_id,
        before={"payment_status": before},
        after={"payment_status": meeting.payment_status},
    )
    return meeting


async def find_attempt_by_intent(session: AsyncSession, payment_intent_id: str) -> BookingAttempt | None:
    result = await session.execute(
        select(BookingAttempt).where(BookingAttempt.payment_intent_id == payment_intent_id).limit(1)
    )
    return result.scalar_one_or_none()


async def get_meeting_status(session: AsyncSession, *, event_slug: str, start_time: datetime) -> MeetingStatusResponse:
    result = await session.execute(select(Event).where(Event.slug == event_slug))
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFound("Event not found")
    meeting = await find_meeting(session, event.event_id, start_time)
    if meeting is None:
        return MeetingStatusResponse(status="pending", meeting=None)
    return MeetingStatusResponse(status="created", meeting=MeetingRef(id=meeting.meeting_id))


async def ensure_calendar_event(session: AsyncSession, meeting_id: str, calendar_service: Any) -> str | None:
    """Create the expert's calendar event for a meeting once.

    A claim flag guards creation across redeliveries. On failure the claim is
    released and the error propagates so the provider redelivers the event.
    """
    meeting = await session.get(Meeting, meeting_id, populate_existing=True)
    if meeting is None:
        return None
    if meeting.calendar_event_id:
        return meeting.calendar_event_id
    credential = await session.get(CalendarCredential, meeting.expert_id)
    if credential is None:
        logger.info("calendar_not_connected", extra={"extra": {"meeting_id": meeting_id}})
        return None

    claim = await session.execute(
        update(Meeting)
        .where(
            Meeting.meeting_id == meeting_id,
            Meeting.calendar_creation_claimed.is_(False),
            Meeting.calendar_event_id.is_(None),
        )
        .values(calendar_creation_claimed=True)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        await session.rollback()
        logger.info("calendar_event_already_claimed", extra={"extra": {"meeting_id": meeting_id}})
        return None
    await session.commit()

    event = await session.get(Event, meeting.event_id)
    try:
        calendar_event_id = await calendar_service.create_event(
            credential,
            summary=f"{event.title if event else 'Session'} with {meeting.guest_name}",
            start=ensure_utc(meeting.start_time),
            end=ensure_utc(meeting.end_time),
            time_zone=meeting.timezone,
            description=meeting.guest_notes,
            attendees=[meeting.guest_email],
        )
    except Exception:
        await session.rollback()
        await session.execute(
            update(Meeting)
            .where(Meeting.meeting_id == meeting_id)
            .values(calendar_creation_claimed=False)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.warning("calendar_event_creation_failed", extra={"extra": {"meeting_id": meeting_id}})
        raise

    await session.execute(
        update(Meeting)
        .where(Meeting.meeting_id == meeting_id)
        .values(calendar_event_id=calendar_event_id)
        .execution_options(synchronize_session=False)
    )
    # Persists the refreshed token as well when the service rotated it.
    await session.commit()
    return calendar_event_id
