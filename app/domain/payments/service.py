import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.audit.service import SYSTEM_ACTOR_WEBHOOK, record_event
from app.domain.bookings.db_models import BookingAttempt
from app.domain.bookings.schemas import PaymentIntentRequest, PaymentIntentResponse
from app.domain.bookings.service import BookingMetadata, build_intent_metadata, track_attempt
from app.domain.bookings.statuses import BookingPaymentStatus
from app.domain.errors import InvalidInput, NotFound, UpstreamFailure
from app.domain.experts.db_models import Event

logger = logging.getLogger(__name__)

STRIPE_METADATA_VALUE_LIMIT = 500


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


async def issue_payment_intent(
    session: AsyncSession,
    payload: PaymentIntentRequest,
    *,
    stripe_client: Any,
    currency: str,
) -> PaymentIntentResponse:
    """Create a provider payment intent that carries everything the webhook needs.

    Nothing is written locally; the intent metadata is the only record of the
    booking until the payment succeeds.
    """
    if payload.price <= 0:
        raise InvalidInput("Price must be a positive amount in minor units")

    event = await session.get(Event, payload.event_id)
    if event is None:
        raise NotFound("Event not found")
    if not event.is_active:
        raise InvalidInput("Event is not bookable")
    if payload.price != event.price:
        raise InvalidInput("Price does not match the event price")

    metadata = build_intent_metadata(event, payload.meeting_data)
    if any(len(value) > STRIPE_METADATA_VALUE_LIMIT for value in metadata.values()):
        raise InvalidInput("Meeting details are too long")
    try:
        intent = stripe_client.create_payment_intent(
            amount_cents=payload.price,
            currency=(event.currency or currency).lower(),
            metadata=metadata,
            description=event.title,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_payment_intent_failed",
            extra={"extra": {"event_id": event.event_id, "reason": type(exc).__name__}},
        )
        raise UpstreamFailure("Payment provider unavailable") from exc

    client_secret = _safe_get(intent, "client_secret")
    if not client_secret:
        raise UpstreamFailure("Payment provider returned no client secret")
    logger.info(
        "stripe_payment_intent_created",
        extra={"extra": {"event_id": event.event_id, "payment_intent_id": _safe_get(intent, "id")}},
    )
    return PaymentIntentResponse(client_secret=client_secret)


def slot_conflict_idempotency_key(payment_intent_id: str) -> str:
    return f"slot-conflict-{payment_intent_id}"


async def refund_slot_conflict(
    session: AsyncSession,
    *,
    metadata: BookingMetadata,
    payment_intent_id: str,
    amount: int,
    holding_meeting_id: str,
    stripe_client: Any,
) -> None:
    """Give back a payment for a slot that another payment already booked.

    The refund is keyed on the payment intent, so redeliveries reuse it. The
    attempt is only marked refunded when it belongs to this payment; a guest
    who paid twice for the same slot shares the fingerprint with the booking
    that stands. The caller commits.
    """
    try:
        refund = stripe_client.create_refund(
            payment_intent=payment_intent_id,
            idempotency_key=slot_conflict_idempotency_key(payment_intent_id),
            metadata={"reason": "slot_conflict", "meetingId": holding_meeting_id},
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_slot_conflict_refund_failed",
            extra={"extra": {"payment_intent_id": payment_intent_id, "reason": type(exc).__name__}},
        )
        raise UpstreamFailure("Payment provider refund failed") from exc

    attempt = await session.get(BookingAttempt, metadata.fingerprint)
    if attempt is None or attempt.payment_intent_id in (None, payment_intent_id):
        await track_attempt(
            session,
            fingerprint=metadata.fingerprint,
            event_id=metadata.event_id,
            price=amount,
            status=BookingPaymentStatus.REFUNDED,
            payment_intent_id=payment_intent_id,
            meeting_data=metadata.meeting_data.model_dump(mode="json", by_alias=True),
        )
    record_event(
        session,
        actor=SYSTEM_ACTOR_WEBHOOK,
        action="slot_conflict_refunded",
        resource_type="payment_intent",
        resource_id=payment_intent_id,
        after={"meeting_id": holding_meeting_id, "amount": amount, "refund_id": _safe_get(refund, "id")},
    )
    logger.info(
        "stripe_slot_conflict_refunded",
        extra={"extra": {"payment_intent_id": payment_intent_id, "refund_id": _safe_get(refund, "id")}},
    )
