from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import payment_intent_rate_limit
from app.domain.audit.service import SYSTEM_ACTOR_WEBHOOK
from app.domain.bookings import service as booking_service
from app.domain.bookings.schemas import PaymentIntentRequest, PaymentIntentResponse
from app.domain.bookings.statuses import BookingPaymentStatus
from app.domain.clock import utcnow
from app.domain.payments.service import issue_payment_intent, refund_slot_conflict
from app.domain.transfers import service as transfer_service
from app.domain.transfers.statuses import TransferStatus
from app.infra import stripe_client as stripe_infra
from app.infra.calendar import resolve_calendar_service
from app.infra.db import get_db_session
from app.infra.email import resolve_notifier
from app.infra.metrics import metrics
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

ATTEMPT_STATUS_BY_EVENT = {
    "payment_intent.processing": BookingPaymentStatus.PROCESSING,
    "payment_intent.payment_failed": BookingPaymentStatus.FAILED,
}


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def _object_id(value: Any) -> str | None:
    """Stripe expands some references into objects; accept either form."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _safe_get(value, "id")


@router.post(
    "/v1/payments/intent",
    response_model=PaymentIntentResponse,
    dependencies=[Depends(payment_intent_rate_limit)],
)
async def create_payment_intent(
    payload: PaymentIntentRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> PaymentIntentResponse:
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe not configured")
    stripe_client = stripe_infra.resolve_client(http_request.app.state)
    return await issue_payment_intent(
        session,
        payload,
        stripe_client=stripe_client,
        currency=settings.payment_currency,
    )


async def _handle_payment_succeeded(
    session: AsyncSession, http_request: Request, intent: Any
) -> bool:
    payment_intent_id = _safe_get(intent, "id")
    try:
        metadata = booking_service.parse_intent_metadata(_safe_get(intent, "metadata", {}) or {})
    except booking_service.MeetingMetadataError as exc:
        logger.warning(
            "stripe_webhook_metadata_invalid",
            extra={"extra": {"payment_intent_id": payment_intent_id, "reason": str(exc)}},
        )
        return False

    amount = int(_safe_get(intent, "amount_received") or _safe_get(intent, "amount") or 0)
    currency = str(_safe_get(intent, "currency") or settings.payment_currency).lower()
    try:
        result = await booking_service.confirm_meeting(
            session,
            metadata=metadata,
            payment_intent_id=payment_intent_id,
            amount=amount,
            currency=currency,
            fee_rate=settings.platform_fee_rate,
            charge_id=_object_id(_safe_get(intent, "latest_charge")),
        )
    except booking_service.MeetingMetadataError as exc:
        await session.rollback()
        logger.warning(
            "stripe_webhook_metadata_invalid",
            extra={"extra": {"payment_intent_id": payment_intent_id, "reason": str(exc)}},
        )
        return False
    if result.slot_conflict:
        await refund_slot_conflict(
            session,
            metadata=metadata,
            payment_intent_id=payment_intent_id,
            amount=amount,
            holding_meeting_id=result.meeting.meeting_id,
            stripe_client=stripe_infra.resolve_client(http_request.app.state),
        )
        await session.commit()
        return False
    await booking_service.track_attempt(
        session,
        fingerprint=metadata.fingerprint,
        event_id=metadata.event_id,
        price=amount,
        status=BookingPaymentStatus.SUCCEEDED,
        payment_intent_id=payment_intent_id,
        meeting_data=metadata.meeting_data.model_dump(mode="json", by_alias=True),
    )
    meeting_id = result.meeting.meeting_id
    await session.commit()

    if result.created:
        await resolve_notifier(http_request.app.state).send_meeting_confirmed(result.meeting)
    await booking_service.ensure_calendar_event(
        session, meeting_id, resolve_calendar_service(http_request.app.state)
    )
    return result.created


async def _handle_attempt_update(session: AsyncSession, intent: Any, target: BookingPaymentStatus) -> bool:
    payment_intent_id = _safe_get(intent, "id")
    try:
        metadata = booking_service.parse_intent_metadata(_safe_get(intent, "metadata", {}) or {})
    except booking_service.MeetingMetadataError as exc:
        logger.warning(
            "stripe_webhook_metadata_invalid",
            extra={"extra": {"payment_intent_id": payment_intent_id, "reason": str(exc)}},
        )
        return False
    if await booking_service.find_meeting(session, metadata.event_id, metadata.meeting_data.start_time):
        # A meeting for the slot already exists, so the attempt is settled.
        return False
    attempt = await booking_service.track_attempt(
        session,
        fingerprint=metadata.fingerprint,
        event_id=metadata.event_id,
        price=int(_safe_get(intent, "amount") or 0),
        status=target,
        payment_intent_id=payment_intent_id,
        meeting_data=metadata.meeting_data.model_dump(mode="json", by_alias=True),
    )
    await session.commit()
    return attempt.status == target.value


async def _notify_expert(session: AsyncSession, http_request: Request, transfer: Any, target: TransferStatus) -> None:
    notifier = resolve_notifier(http_request.app.state)
    recipient = await transfer_service.expert_email(session, transfer.expert_id)
    if target == TransferStatus.REFUNDED:
        await notifier.send_payment_refunded(recipient, transfer)
    else:
        await notifier.send_payment_disputed(recipient, transfer)


async def _handle_charge_refunded(session: AsyncSession, http_request: Request, charge: Any) -> bool:
    payment_intent_id = _object_id(_safe_get(charge, "payment_intent"))
    charge_id = _safe_get(charge, "id")
    if not payment_intent_id and not charge_id:
        return False
    now = utcnow()
    processed = False
    if payment_intent_id:
        meeting = await booking_service.mark_meeting_refunded(session, payment_intent_id)
        processed = meeting is not None
        attempt = await booking_service.find_attempt_by_intent(session, payment_intent_id)
        if attempt is not None:
            await booking_service.track_attempt(
                session,
                fingerprint=attempt.fingerprint,
                event_id=attempt.event_id,
                price=attempt.price,
                status=BookingPaymentStatus.REFUNDED,
                payment_intent_id=payment_intent_id,
            )
    transfer = await transfer_service.find_transfer_for_payment(
        session, payment_intent_id=payment_intent_id, charge_id=charge_id
    )
    refunded = False
    if transfer is not None:
        refunded = await transfer_service.apply_side_exit(
            session, transfer, TransferStatus.REFUNDED, now=now, actor=SYSTEM_ACTOR_WEBHOOK
        )
    await session.commit()
    if refunded:
        await _notify_expert(session, http_request, transfer, TransferStatus.REFUNDED)
    return processed or refunded


async def _handle_dispute_created(session: AsyncSession, http_request: Request, dispute: Any) -> bool:
    transfer = await transfer_service.find_transfer_for_payment(
        session,
        payment_intent_id=_object_id(_safe_get(dispute, "payment_intent")),
        charge_id=_object_id(_safe_get(dispute, "charge")),
    )
    if transfer is None:
        logger.info("stripe_dispute_unmatched", extra={"extra": {"dispute_id": _safe_get(dispute, "id")}})
        return False
    disputed = await transfer_service.apply_side_exit(
        session, transfer, TransferStatus.DISPUTED, now=utcnow(), actor=SYSTEM_ACTOR_WEBHOOK
    )
    await session.commit()
    if disputed:
        await _notify_expert(session, http_request, transfer, TransferStatus.DISPUTED)
    return disputed


async def _handle_webhook_event(session: AsyncSession, http_request: Request, event: Any) -> bool:
    event_type = _safe_get(event, "type")
    data = _safe_get(event, "data", {}) or {}
    payload_object = _safe_get(data, "object", {}) or {}
    if event_type == "payment_intent.succeeded":
        return await _handle_payment_succeeded(session, http_request, payload_object)
    if event_type in ATTEMPT_STATUS_BY_EVENT:
        return await _handle_attempt_update(session, payload_object, ATTEMPT_STATUS_BY_EVENT[event_type])
    if event_type == "charge.refunded":
        return await _handle_charge_refunded(session, http_request, payload_object)
    if event_type == "charge.dispute.created":
        return await _handle_dispute_created(session, http_request, payload_object)
    logger.info("stripe_webhook_ignored", extra={"extra": {"reason": "unhandled_type", "event_type": event_type}})
    return False


def _is_json_content_type(value: str | None) -> bool:
    if not value:
        return False
    return value.split(";", 1)[0].strip().lower() == "application/json"


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, bool]:
    if not _is_json_content_type(http_request.headers.get("Content-Type")):
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="Unsupported media type")
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    payload = await http_request.body()
    sig_header = http_request.headers.get("Stripe-Signature")
    stripe_client = stripe_infra.resolve_client(http_request.app.state)
    try:
        event = stripe_client.verify_webhook(payload=payload, signature=sig_header)
    except Exception as exc:  # noqa: BLE001
        metrics.record_webhook("invalid_signature")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Stripe signature") from exc

    event_id = _safe_get(event, "id")
    try:
        processed = await _handle_webhook_event(session, http_request, event)
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        metrics.record_webhook("error")
        logger.exception(
            "stripe_webhook_error",
            extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook processing error",
        ) from exc

    metrics.record_webhook("processed" if processed else "ignored")
    logger.info(
        "stripe_webhook_handled",
        extra={"extra": {"event_id": event_id, "event_type": _safe_get(event, "type"), "processed": processed}},
    )
    return {"received": True, "processed": processed}
