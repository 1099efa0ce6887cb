from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Awaitable, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.domain.audit.service import SYSTEM_ACTOR_SWEEP, record_event
from app.domain.clock import ensure_utc, utcnow
from app.domain.experts.db_models import ExpertProfile
from app.domain.transfers.db_models import Transfer
from app.domain.transfers.statuses import (
    TERMINAL_TRANSFER_STATUSES,
    TRANSITION_TIMESTAMPS,
    TransferStatus,
    can_transition,
    normalize_status,
)
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

MAX_SIDE_EXIT_ATTEMPTS = 3


class PayoutDestinationMissingError(RuntimeError):
    code = "missing_destination_account"


@dataclass(frozen=True)
class FeeSplit:
    platform_fee: int
    expert_amount: int


def compute_fee_split(gross_amount: int | None, fee_rate: float) -> FeeSplit:
    """Split a gross amount in minor units into platform fee and expert share.

    The fee is rounded down, so the expert share absorbs any fraction.
    """
    if not gross_amount or gross_amount <= 0:
        return FeeSplit(platform_fee=0, expert_amount=0)
    fee = int((Decimal(gross_amount) * Decimal(str(fee_rate))).to_integral_value(rounding=ROUND_FLOOR))
    fee = min(max(fee, 0), gross_amount)
    return FeeSplit(platform_fee=fee, expert_amount=gross_amount - fee)


def payout_idempotency_key(transfer_id: str) -> str:
    return f"transfer-{transfer_id}"


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def _json_safe(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in values.items()}


def initialize_transfer(
    session: AsyncSession,
    *,
    meeting: Any,
    expert: ExpertProfile | None,
    fee_rate: float,
    charge_id: str | None = None,
    actor: str = SYSTEM_ACTOR_SWEEP,
) -> Transfer:
    split = compute_fee_split(meeting.price, fee_rate)
    transfer = Transfer(
        transfer_id=str(uuid.uuid4()),
        meeting_id=meeting.meeting_id,
        payment_intent_id=meeting.payment_intent_id,
        charge_id=charge_id,
        expert_id=meeting.expert_id,
        destination_account_id=expert.stripe_connect_account_id if expert else None,
        currency=meeting.currency,
        gross_amount=meeting.price or 0,
        platform_fee=split.platform_fee,
        expert_amount=split.expert_amount,
        status=TransferStatus.PENDING.value,
        retry_count=0,
        session_end_at=meeting.end_time,
    )
    session.add(transfer)
    record_event(
        session,
        actor=actor,
        action="transfer_initialized",
        resource_type="transfer",
        resource_id=transfer.transfer_id,
        after={
            "status": TransferStatus.PENDING.value,
            "meeting_id": meeting.meeting_id,
            "gross_amount": transfer.gross_amount,
            "platform_fee": split.platform_fee,
            "expert_amount": split.expert_amount,
        },
    )
    return transfer


async def _transition(
    session: AsyncSession,
    transfer: Transfer,
    *,
    expected: TransferStatus,
    target: TransferStatus,
    now: datetime,
    actor: str = SYSTEM_ACTOR_SWEEP,
    values: dict[str, Any] | None = None,
) -> bool:
    """Move ``transfer`` from ``expected`` to ``target`` with a conditional update.

    Returns ``False`` without touching the row when another writer changed the
    status first.
    """
    if not can_transition(expected, target):
        raise ValueError(f"illegal_transfer_transition:{expected.value}->{target.value}")

    changes: dict[str, Any] = {"status": target.value, TRANSITION_TIMESTAMPS[target]: now, "updated_at": now}
    if values:
        changes.update(values)
    result = await session.execute(
        update(Transfer)
        .where(Transfer.transfer_id == transfer.transfer_id, Transfer.status == expected.value)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "transfer_transition_skipped",
            extra={
                "extra": {
                    "transfer_id": transfer.transfer_id,
                    "expected": expected.value,
                    "target": target.value,
                }
            },
        )
        return False

    for key, value in changes.items():
        set_committed_value(transfer, key, value)
    record_event(
        session,
        actor=actor,
        action=f"transfer_{target.value.lower()}",
        resource_type="transfer",
        resource_id=transfer.transfer_id,
        before={"status": expected.value},
        after=_json_safe(changes),
    )
    metrics.record_transfer(target.value)
    logger.info(
        "transfer_transitioned",
        extra={"extra": {"transfer_id": transfer.transfer_id, "from": expected.value, "to": target.value}},
    )
    return True


async def approve_transfer(
    session: AsyncSession, transfer: Transfer, *, holdback_days: int, now: datetime
) -> bool:
    if transfer.status != TransferStatus.PENDING.value:
        return False
    session_end = ensure_utc(transfer.session_end_at)
    if session_end is None or session_end > now:
        return False
    return await _transition(
        session,
        transfer,
        expected=TransferStatus.PENDING,
        target=TransferStatus.APPROVED,
        now=now,
        values={"earliest_releasable_at": now + timedelta(days=holdback_days)},
    )


async def release_transfer(session: AsyncSession, transfer: Transfer, *, now: datetime) -> bool:
    if transfer.status != TransferStatus.APPROVED.value:
        return False
    releasable_at = ensure_utc(transfer.earliest_releasable_at)
    if releasable_at is None or releasable_at > now:
        return False
    return await _transition(
        session,
        transfer,
        expected=TransferStatus.APPROVED,
        target=TransferStatus.READY,
        now=now,
    )


async def pay_out_transfer(
    session: AsyncSession,
    transfer: Transfer,
    *,
    stripe_client: Any,
    max_retries: int,
    now: datetime,
) -> str:
    """Send the expert share to the connected account.

    Returns one of ``completed``, ``retry``, ``failed`` or ``skipped``. The
    provider call is keyed by the transfer id, so a rerun after a lost response
    cannot move the funds twice.
    """
    if transfer.status != TransferStatus.READY.value:
        return "skipped"
    try:
        if not transfer.destination_account_id:
            raise PayoutDestinationMissingError("Expert has no payout account")
        payout = stripe_client.create_transfer(
            amount_cents=transfer.expert_amount,
            currency=transfer.currency,
            destination=transfer.destination_account_id,
            idempotency_key=payout_idempotency_key(transfer.transfer_id),
            source_transaction=transfer.charge_id,
            metadata={"transfer_id": transfer.transfer_id, "meeting_id": transfer.meeting_id},
        )
    except Exception as exc:  # noqa: BLE001
        return await _record_payout_failure(session, transfer, exc, max_retries=max_retries, now=now)

    completed = await _transition(
        session,
        transfer,
        expected=TransferStatus.READY,
        target=TransferStatus.COMPLETED,
        now=now,
        values={
            "stripe_transfer_id": _safe_get(payout, "id"),
            "last_error_code": None,
            "last_error_message": None,
        },
    )
    return "completed" if completed else "skipped"


async def _record_payout_failure(
    session: AsyncSession,
    transfer: Transfer,
    exc: Exception,
    *,
    max_retries: int,
    now: datetime,
) -> str:
    code = str(getattr(exc, "code", None) or type(exc).__name__)[:128]
    message = str(getattr(exc, "user_message", None) or exc)[:1000]
    previous_attempts = transfer.retry_count or 0
    attempts = previous_attempts + 1
    values = {"retry_count": attempts, "last_error_code": code, "last_error_message": message}
    logger.warning(
        "transfer_payout_failed",
        extra={"extra": {"transfer_id": transfer.transfer_id, "attempt": attempts, "reason": code}},
    )

    if attempts >= max_retries:
        failed = await _transition(
            session,
            transfer,
            expected=TransferStatus.READY,
            target=TransferStatus.FAILED,
            now=now,
            values=values,
        )
        return "failed" if failed else "skipped"

    result = await session.execute(
        update(Transfer)
        .where(
            Transfer.transfer_id == transfer.transfer_id,
            Transfer.status == TransferStatus.READY.value,
            Transfer.retry_count == previous_attempts,
        )
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return "skipped"
    for key, value in values.items():
        set_committed_value(transfer, key, value)
    return "retry"


async def find_transfer_for_payment(
    session: AsyncSession, *, payment_intent_id: str | None, charge_id: str | None = None
) -> Transfer | None:
    clauses = []
    if payment_intent_id:
        clauses.append(Transfer.payment_intent_id == payment_intent_id)
    if charge_id:
        clauses.append(Transfer.charge_id == charge_id)
    if not clauses:
        return None
    result = await session.execute(select(Transfer).where(or_(*clauses)).limit(1))
    return result.scalar_one_or_none()


async def apply_side_exit(
    session: AsyncSession,
    transfer: Transfer,
    target: TransferStatus,
    *,
    now: datetime,
    actor: str,
) -> bool:
    """Move a non-terminal transfer to REFUNDED or DISPUTED.

    A concurrent sweep may advance the row between read and write, so the
    current status is re-read and the update retried a bounded number of times.
    """
    if target not in {TransferStatus.REFUNDED, TransferStatus.DISPUTED, TransferStatus.FAILED}:
        raise ValueError(f"not_a_side_exit:{target.value}")
    for _ in range(MAX_SIDE_EXIT_ATTEMPTS):
        current = normalize_status(transfer.status)
        if current in TERMINAL_TRANSFER_STATUSES:
            return False
        if await _transition(session, transfer, expected=current, target=target, now=now, actor=actor):
            return True
        await session.refresh(transfer)
    return False


async def _sweep_stage(
    session: AsyncSession,
    status: TransferStatus,
    stage: str,
    handler: Callable[[Transfer], Awaitable[str | None]],
    summary: dict[str, int],
    after_commit: Callable[[Transfer, str], Awaitable[None]] | None = None,
) -> None:
    ids = (
        await session.scalars(
            select(Transfer.transfer_id)
            .where(Transfer.status == status.value)
            .order_by(Transfer.created_at, Transfer.transfer_id)
        )
    ).all()
    for transfer_id in ids:
        try:
            transfer = await session.get(Transfer, transfer_id, populate_existing=True)
            if transfer is None:
                continue
            outcome = await handler(transfer)
            await session.commit()
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            summary["errors"] += 1
            logger.warning(
                "transfer_sweep_item_failed",
                extra={"extra": {"transfer_id": transfer_id, "stage": stage, "reason": type(exc).__name__}},
            )
            continue
        if outcome:
            summary[outcome] = summary.get(outcome, 0) + 1
            if after_commit is not None:
                await after_commit(transfer, outcome)


async def expert_email(session: AsyncSession, expert_id: str) -> str | None:
    profile = await session.get(ExpertProfile, expert_id)
    return profile.email if profile else None


async def run_transfer_sweep(
    session: AsyncSession,
    *,
    stripe_client: Any,
    notifier: Any,
    app_settings: Any,
    now: datetime | None = None,
) -> dict[str, int]:
    """Advance every eligible transfer one step per stage.

    Stages run in lifecycle order, so a transfer whose guards are all met can
    move from PENDING to COMPLETED in a single sweep. Each item commits on its
    own and a failing item never stops its siblings.
    """
    now = now or utcnow()
    summary: dict[str, int] = {"approved": 0, "ready": 0, "completed": 0, "retry": 0, "failed": 0, "errors": 0}

    async def approve(transfer: Transfer) -> str | None:
        profile = await session.get(ExpertProfile, transfer.expert_id)
        holdback_days = app_settings.holdback_days_for(profile.country if profile else None)
        approved = await approve_transfer(session, transfer, holdback_days=holdback_days, now=now)
        return "approved" if approved else None

    async def release(transfer: Transfer) -> str | None:
        return "ready" if await release_transfer(session, transfer, now=now) else None

    async def pay_out(transfer: Transfer) -> str | None:
        outcome = await pay_out_transfer(
            session,
            transfer,
            stripe_client=stripe_client,
            max_retries=app_settings.payout_max_retries,
            now=now,
        )
        return None if outcome == "skipped" else outcome

    async def notify(transfer: Transfer, outcome: str) -> None:
        if outcome == "completed":
            await notifier.send_payout_completed(await expert_email(session, transfer.expert_id), transfer)
        elif outcome == "failed":
            await notifier.send_payout_failed(await expert_email(session, transfer.expert_id), transfer)

    await _sweep_stage(session, TransferStatus.PENDING, "approve", approve, summary)
    await _sweep_stage(session, TransferStatus.APPROVED, "release", release, summary)
    if stripe_client is None:
        logger.info("transfer_payout_disabled", extra={"extra": {"reason": "stripe_not_configured"}})
    else:
        await _sweep_stage(session, TransferStatus.READY, "pay_out", pay_out, summary, after_commit=notify)

    logger.info("transfer_sweep_complete", extra={"extra": summary})
    return summary


async def run_upcoming_payout_check(
    session: AsyncSession,
    *,
    notifier: Any,
    app_settings: Any,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or utcnow()
    horizon = now + timedelta(hours=app_settings.upcoming_payout_window_hours)
    summary = {"notified": 0, "errors": 0}

    ids = (
        await session.scalars(
            select(Transfer.transfer_id).where(
                Transfer.status == TransferStatus.APPROVED.value,
                Transfer.notified_at.is_(None),
            )
        )
    ).all()
    for transfer_id in ids:
        try:
            transfer = await session.get(Transfer, transfer_id, populate_existing=True)
            if transfer is None:
                continue
            releasable_at = ensure_utc(transfer.earliest_releasable_at)
            if releasable_at is None or releasable_at > horizon:
                continue
            result = await session.execute(
                update(Transfer)
                .where(
                    Transfer.transfer_id == transfer_id,
                    Transfer.status == TransferStatus.APPROVED.value,
                    Transfer.notified_at.is_(None),
                )
                .values(notified_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                continue
            await session.commit()
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            summary["errors"] += 1
            logger.warning(
                "upcoming_payout_item_failed",
                extra={"extra": {"transfer_id": transfer_id, "reason": type(exc).__name__}},
            )
            continue
        set_committed_value(transfer, "notified_at", now)
        await notifier.send_upcoming_payout(await expert_email(session, transfer.expert_id), transfer)
        summary["notified"] += 1

    logger.info("upcoming_payout_check_complete", extra={"extra": summary})
    return summary
