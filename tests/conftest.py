import asyncio
import inspect
import sys
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import anyio
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.audit import db_models as audit_db_models  # noqa: F401
from app.domain.bookings import db_models as booking_db_models  # noqa: F401
from app.domain.experts import db_models as expert_db_models  # noqa: F401
from app.domain.ops import db_models as ops_db_models  # noqa: F401
from app.domain.transfers import db_models as transfer_db_models  # noqa: F401
from app.infra.db import Base, get_db_session
from app.main import app
from app.settings import settings


class FakeNotifier:
    """Records every notice instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, object, object]] = []

    async def send_meeting_confirmed(self, meeting) -> bool:
        self.sent.append(("meeting_confirmed", meeting.guest_email, meeting.meeting_id))
        return True

    async def send_payout_completed(self, recipient, transfer) -> bool:
        self.sent.append(("payout_completed", recipient, transfer.transfer_id))
        return True

    async def send_payout_failed(self, recipient, transfer) -> bool:
        self.sent.append(("payout_failed", recipient, transfer.transfer_id))
        return True

    async def send_upcoming_payout(self, recipient, transfer) -> bool:
        self.sent.append(("upcoming_payout", recipient, transfer.transfer_id))
        return True

    async def send_payment_refunded(self, recipient, transfer) -> bool:
        self.sent.append(("payment_refunded", recipient, transfer.transfer_id))
        return True

    async def send_payment_disputed(self, recipient, transfer) -> bool:
        self.sent.append(("payment_disputed", recipient, transfer.transfer_id))
        return True

    def templates(self) -> list[str]:
        return [entry[0] for entry in self.sent]


class FakeCalendarService:
    def __init__(self) -> None:
        self.created: list[dict] = []
        self.refreshed: list[str] = []
        self.fail_create = False

    async def refresh_access_token(self, credential) -> str:
        self.refreshed.append(credential.user_id)
        credential.access_token = f"fresh-{credential.user_id}"
        return credential.access_token

    async def create_event(self, credential, **kwargs) -> str:
        if self.fail_create:
            raise RuntimeError("calendar down")
        self.created.append({"user_id": credential.user_id, **kwargs})
        return f"gcal-{len(self.created)}"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original_testing = getattr(settings, "testing", False)
    original_app_env = settings.app_env
    original_stripe_secret = settings.stripe_secret_key
    original_webhook_secret = settings.stripe_webhook_secret
    original_cron_secret = settings.cron_secret
    original_metrics = getattr(settings, "metrics_enabled", True)
    original_metrics_token = getattr(settings, "metrics_token", None)
    original_job_heartbeat = getattr(settings, "job_heartbeat_required", False)
    original_job_heartbeat_ttl = getattr(settings, "job_heartbeat_ttl_seconds", 300)
    original_status_limit = settings.meeting_status_rate_limit
    original_intent_limit = settings.payment_intent_rate_limit
    original_fee_rate = settings.platform_fee_rate
    original_holdback = settings.payout_holdback_days
    original_holdback_by_country = settings.payout_holdback_by_country_raw
    original_max_retries = settings.payout_max_retries
    yield
    settings.testing = original_testing
    settings.app_env = original_app_env
    settings.stripe_secret_key = original_stripe_secret
    settings.stripe_webhook_secret = original_webhook_secret
    settings.cron_secret = original_cron_secret
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token
    settings.job_heartbeat_required = original_job_heartbeat
    settings.job_heartbeat_ttl_seconds = original_job_heartbeat_ttl
    settings.meeting_status_rate_limit = original_status_limit
    settings.payment_intent_rate_limit = original_intent_limit
    settings.platform_fee_rate = original_fee_rate
    settings.payout_holdback_days = original_holdback
    settings.payout_holdback_by_country_raw = original_holdback_by_country
    settings.payout_max_retries = original_max_retries


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.stripe_secret_key = "sk_test"
    settings.stripe_webhook_secret = "whsec_test"
    settings.cron_secret = "cron-test-secret"
    app.state.stripe_client = None
    app.state.email_adapter = FakeNotifier()
    app.state.calendar_service = FakeCalendarService()
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    rate_limiter = getattr(app.state, "rate_limiter", None)
    reset = getattr(rate_limiter, "reset", None) if rate_limiter else None
    if reset:
        if inspect.iscoroutinefunction(reset):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(reset())
            else:
                anyio.from_thread.run(reset)
        else:
            reset()
    yield


@pytest.fixture()
def seed_catalog(async_session_maker):
    """Seed one expert with one bookable event and return their ids."""

    async def _seed(
        *,
        user_id: str = "expert-1",
        slug: str = "intro-call",
        price: int = 10000,
        country: str | None = "DE",
        connect_account: str | None = "acct_expert1",
        is_active: bool = True,
        duration_minutes: int = 60,
    ) -> SimpleNamespace:
        async with async_session_maker() as session:
            expert = expert_db_models.ExpertProfile(
                user_id=user_id,
                display_name="Ada Expert",
                email=f"{user_id}@example.com",
                country=country,
                stripe_connect_account_id=connect_account,
            )
            event = expert_db_models.Event(
                slug=slug,
                expert_id=user_id,
                title="Intro call",
                price=price,
                currency="eur",
                duration_minutes=duration_minutes,
                is_active=is_active,
            )
            session.add_all([expert, event])
            await session.commit()
            return SimpleNamespace(expert_id=user_id, event_id=event.event_id, slug=slug, price=price)

    def seed(**kwargs) -> SimpleNamespace:
        return asyncio.run(_seed(**kwargs))

    return seed


@pytest.fixture()
def notifier() -> FakeNotifier:
    return app.state.email_adapter


@pytest.fixture()
def calendar_service() -> FakeCalendarService:
    return app.state.calendar_service


@pytest.fixture()
def stripe_stub():
    """Fake provider client installed on app state; tests override its callables."""

    stub = SimpleNamespace(
        intents=[],
        transfers=[],
        refunds=[],
        events=[],
    )

    def create_payment_intent(**kwargs):
        stub.intents.append(kwargs)
        return SimpleNamespace(id=f"pi_{len(stub.intents)}", client_secret=f"pi_{len(stub.intents)}_secret")

    def create_transfer(**kwargs):
        stub.transfers.append(kwargs)
        return SimpleNamespace(id=f"tr_{len(stub.transfers)}")

    def create_refund(**kwargs):
        stub.refunds.append(kwargs)
        return SimpleNamespace(id=f"re_{len(stub.refunds)}")

    def verify_webhook(payload, signature):
        if signature != "t=test":
            raise ValueError("bad signature")
        return stub.events.pop(0)

    stub.create_payment_intent = create_payment_intent
    stub.create_transfer = create_transfer
    stub.create_refund = create_refund
    stub.verify_webhook = verify_webhook
    app.state.stripe_client = stub
    return stub


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
