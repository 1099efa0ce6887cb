from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select, update

from app.domain.audit.db_models import AuditEvent
from app.domain.bookings.db_models import Meeting
from app.domain.experts.db_models import ExpertProfile
from app.domain.transfers import service as transfer_service
from app.domain.transfers.db_models import Transfer
from app.domain.transfers.statuses import TransferStatus
from app.settings import settings

NOW = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)


class RecordingStripe:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.calls: list[dict] = []
        self.fail_with = fail_with

    def create_transfer(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail_with is not None:
            raise self.fail_with
        return SimpleNamespace(id=f"tr_{len(self.calls)}")


class CardDeclined(Exception):
    code = "account_invalid"


async def _seed_transfer(
    async_session_maker,
    *,
    status: TransferStatus = TransferStatus.PENDING,
    session_end_at: datetime = NOW - timedelta(hours=1),
    earliest_releasable_at: datetime | None = None,
    expert_id: str = "expert-1",
    country: str | None = "DE",
    destination: str | None = "acct_expert1",
    intent_id: str = "pi_1",
    gross: int = 10000,
) -> str:
    async with async_session_maker() as session:
        if await session.get(ExpertProfile, expert_id) is None:
            session.add(
                ExpertProfile(
                    user_id=expert_id,
                    email=f"{expert_id}@example.com",
                    country=country,
                    stripe_connect_account_id=destination,
                )
            )
        meeting = Meeting(
            event_id=f"event-{intent_id}",
            expert_id=expert_id,
            start_time=session_end_at - timedelta(hours=1),
            end_time=session_end_at,
            guest_email="guest@example.com",
            guest_name="Grace Guest",
            timezone="UTC",
            price=gross,
            currency="eur",
            payment_intent_id=intent_id,
        )
        session.add(meeting)
        await session.flush()
        transfer = transfer_service.initialize_transfer(
            session,
            meeting=meeting,
            expert=await session.get(ExpertProfile, expert_id),
            fee_rate=0.15,
            charge_id=f"ch_{intent_id}",
        )
        transfer.status = status.value
        transfer.earliest_releasable_at = earliest_releasable_at
        await session.commit()
        return transfer.transfer_id


async def _get(async_session_maker, transfer_id: str) -> Transfer:
    async with async_session_maker() as session:
        return await session.get(Transfer, transfer_id)


async def _sweep(async_session_maker, *, stripe_client, notifier, app_settings=settings, now=NOW):
    async with async_session_maker() as session:
        return await transfer_service.run_transfer_sweep(
            session,
            stripe_client=stripe_client,
            notifier=notifier,
            app_settings=app_settings,
            now=now,
        )


@pytest.mark.anyio
async def test_pending_transfer_waits_for_session_to_end(async_session_maker, notifier):
    transfer_id = await _seed_transfer(async_session_maker, session_end_at=NOW + timedelta(minutes=30))

    summary = await _sweep(async_session_maker, stripe_client=RecordingStripe(), notifier=notifier)

    assert summary["approved"] == 0
    assert (await _get(async_session_maker, transfer_id)).status == "PENDING"


@pytest.mark.anyio
async def test_approval_starts_holdback_window(async_session_maker, notifier):
    settings.payout_holdback_days = 7
    transfer_id = await _seed_transfer(async_session_maker)

    summary = await _sweep(async_session_maker, stripe_client=RecordingStripe(), notifier=notifier)

    transfer = await _get(async_session_maker, transfer_id)
    assert summary["approved"] == 1
    assert summary["ready"] == 0
    assert transfer.status == "APPROVED"
    assert transfer.earliest_releasable_at.replace(tzinfo=timezone.utc) == NOW + timedelta(days=7)
    assert transfer.approved_at is not None


@pytest.mark.anyio
async def test_holdback_can_be_overridden_per_country(async_session_maker, notifier):
    settings.payout_holdback_days = 7
    settings.payout_holdback_by_country = {"DE": 14}
    transfer_id = await _seed_transfer(async_session_maker, country="de")

    await _sweep(async_session_maker, stripe_client=RecordingStripe(), notifier=notifier)

    transfer = await _get(async_session_maker, transfer_id)
    assert transfer.earliest_releasable_at.replace(tzinfo=timezone.utc) == NOW + timedelta(days=14)


@pytest.mark.anyio
async def test_approved_transfer_released_only_after_holdback(async_session_maker, notifier):
    early = await _seed_transfer(
        async_session_maker, status=TransferStatus.APPROVED, earliest_releasable_at=NOW + timedelta(hours=1)
    )
    due = await _seed_transfer(
        async_session_maker,
        status=TransferStatus.APPROVED,
        earliest_releasable_at=NOW - timedelta(hours=1),
        intent_id="pi_2",
    )

    summary = await _sweep(async_session_maker, stripe_client=None, notifier=notifier)

    assert summary["ready"] == 1
    assert (await _get(async_session_maker, early)).status == "APPROVED"
    assert (await _get(async_session_maker, due)).status == "READY"


@pytest.mark.anyio
async def test_eligible_transfer_completes_in_one_sweep(async_session_maker, notifier):
    settings.payout_holdback_days = 0
    stripe = RecordingStripe()
    transfer_id = await _seed_transfer(async_session_maker)

    summary = await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)

    transfer = await _get(async_session_maker, transfer_id)
    assert summary == {"approved": 1, "ready": 1, "completed": 1, "retry": 0, "failed": 0, "errors": 0}
    assert transfer.status == "COMPLETED"
    assert transfer.stripe_transfer_id == "tr_1"
    assert transfer.completed_at is not None
    assert stripe.calls == [
        {
            "amount_cents": 8500,
            "currency": "eur",
            "destination": "acct_expert1",
            "idempotency_key": f"transfer-{transfer_id}",
            "source_transaction": "ch_pi_1",
            "metadata": {"transfer_id": transfer_id, "meeting_id": transfer.meeting_id},
        }
    ]
    assert notifier.sent == [("payout_completed", "expert-1@example.com", transfer_id)]


@pytest.mark.anyio
async def test_completed_transfer_is_never_paid_twice(async_session_maker, notifier):
    stripe = RecordingStripe()
    await _seed_transfer(async_session_maker, status=TransferStatus.READY)

    await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)
    second = await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)

    assert len(stripe.calls) == 1
    assert second["completed"] == 0


@pytest.mark.anyio
async def test_payout_failures_retry_then_fail(async_session_maker, notifier):
    settings.payout_max_retries = 3
    stripe = RecordingStripe(fail_with=CardDeclined("destination account invalid"))
    transfer_id = await _seed_transfer(async_session_maker, status=TransferStatus.READY)

    first = await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)
    transfer = await _get(async_session_maker, transfer_id)
    assert first["retry"] == 1
    assert transfer.status == "READY"
    assert transfer.retry_count == 1
    assert transfer.last_error_code == "account_invalid"

    await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)
    third = await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)

    transfer = await _get(async_session_maker, transfer_id)
    assert third["failed"] == 1
    assert transfer.status == "FAILED"
    assert transfer.retry_count == 3
    assert transfer.failed_at is not None
    assert {call["idempotency_key"] for call in stripe.calls} == {f"transfer-{transfer_id}"}
    assert notifier.templates() == ["payout_failed"]

    fourth = await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)
    assert fourth["retry"] == 0
    assert len(stripe.calls) == 3


@pytest.mark.anyio
async def test_missing_destination_counts_as_failed_attempt(async_session_maker, notifier):
    stripe = RecordingStripe()
    transfer_id = await _seed_transfer(async_session_maker, status=TransferStatus.READY, destination=None)

    summary = await _sweep(async_session_maker, stripe_client=stripe, notifier=notifier)

    transfer = await _get(async_session_maker, transfer_id)
    assert summary["retry"] == 1
    assert stripe.calls == []
    assert transfer.last_error_code == "missing_destination_account"


@pytest.mark.anyio
async def test_payout_stage_skipped_without_provider(async_session_maker, notifier):
    transfer_id = await _seed_transfer(async_session_maker, status=TransferStatus.READY)

    summary = await _sweep(async_session_maker, stripe_client=None, notifier=notifier)

    transfer = await _get(async_session_maker, transfer_id)
    assert summary["completed"] == summary["retry"] == 0
    assert transfer.status == "READY"
    assert transfer.retry_count == 0


@pytest.mark.anyio
async def test_failing_item_does_not_stop_siblings(async_session_maker, notifier):
    broken = await _seed_transfer(async_session_maker, expert_id="expert-broken", country="XX")
    healthy = await _seed_transfer(async_session_maker, expert_id="expert-ok", country="DE", intent_id="pi_2")

    def holdback_days_for(country):
        if country == "XX":
            raise RuntimeError("holdback lookup failed")
        return 7

    app_settings = SimpleNamespace(holdback_days_for=holdback_days_for, payout_max_retries=3)
    summary = await _sweep(async_session_maker, stripe_client=None, notifier=notifier, app_settings=app_settings)

    assert summary["errors"] == 1
    assert summary["approved"] == 1
    assert (await _get(async_session_maker, broken)).status == "PENDING"
    assert (await _get(async_session_maker, healthy)).status == "APPROVED"


@pytest.mark.anyio
async def test_stale_transition_is_skipped(async_session_maker):
    transfer_id = await _seed_transfer(async_session_maker)

    async with async_session_maker() as session:
        transfer = await session.get(Transfer, transfer_id)
        # Another writer moves the row; the loaded object still reads PENDING.
        await session.execute(
            update(Transfer)
            .where(Transfer.transfer_id == transfer_id)
            .values(status="REFUNDED")
            .execution_options(synchronize_session=False)
        )

        approved = await transfer_service.approve_transfer(session, transfer, holdback_days=7, now=NOW)
        await session.commit()

    assert approved is False
    assert (await _get(async_session_maker, transfer_id)).status == "REFUNDED"


@pytest.mark.anyio
async def test_side_exit_from_any_active_state(async_session_maker):
    approved_id = await _seed_transfer(
        async_session_maker, status=TransferStatus.APPROVED, earliest_releasable_at=NOW
    )
    completed_id = await _seed_transfer(async_session_maker, status=TransferStatus.COMPLETED, intent_id="pi_2")

    async with async_session_maker() as session:
        approved = await session.get(Transfer, approved_id)
        completed = await session.get(Transfer, completed_id)
        refunded = await transfer_service.apply_side_exit(
            session, approved, TransferStatus.REFUNDED, now=NOW, actor="test"
        )
        untouched = await transfer_service.apply_side_exit(
            session, completed, TransferStatus.DISPUTED, now=NOW, actor="test"
        )
        await session.commit()

    assert refunded is True
    assert untouched is False
    assert (await _get(async_session_maker, approved_id)).status == "REFUNDED"
    assert (await _get(async_session_maker, completed_id)).status == "COMPLETED"


@pytest.mark.anyio
async def test_side_exit_rejects_forward_targets(async_session_maker):
    transfer_id = await _seed_transfer(async_session_maker)

    async with async_session_maker() as session:
        transfer = await session.get(Transfer, transfer_id)
        with pytest.raises(ValueError):
            await transfer_service.apply_side_exit(session, transfer, TransferStatus.COMPLETED, now=NOW, actor="test")


@pytest.mark.anyio
async def test_transitions_are_audited(async_session_maker, notifier):
    settings.payout_holdback_days = 0
    transfer_id = await _seed_transfer(async_session_maker)

    await _sweep(async_session_maker, stripe_client=RecordingStripe(), notifier=notifier)

    async with async_session_maker() as session:
        actions = (
            await session.scalars(
                select(AuditEvent.action)
                .where(AuditEvent.resource_id == transfer_id)
                .order_by(AuditEvent.created_at)
            )
        ).all()
    assert set(actions) == {
        "transfer_initialized",
        "transfer_approved",
        "transfer_ready",
        "transfer_completed",
    }
