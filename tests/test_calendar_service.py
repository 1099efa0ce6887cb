import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest

from app.domain.experts.db_models import CalendarCredential
from app.infra.calendar import CalendarError, GoogleCalendarService, MissingRefreshTokenError

CALENDAR_SETTINGS = SimpleNamespace(
    google_client_id="client-id",
    google_client_secret="client-secret",
    google_token_url="https://oauth.test/token",
    google_calendar_api_base="https://calendar.test/v3",
    calendar_timeout_seconds=5.0,
)


def _credential(**overrides) -> CalendarCredential:
    values = {
        "user_id": "expert-1",
        "access_token": "old-access",
        "refresh_token": "refresh-1",
        "token_expires_at": datetime.now(tz=timezone.utc) - timedelta(minutes=1),
        "calendar_id": "primary",
    }
    values.update(overrides)
    return CalendarCredential(**values)


def _service(handler) -> GoogleCalendarService:
    return GoogleCalendarService(CALENDAR_SETTINGS, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.anyio
async def test_refresh_requires_refresh_token():
    service = _service(lambda request: httpx.Response(500))

    with pytest.raises(MissingRefreshTokenError):
        await service.refresh_access_token(_credential(refresh_token=None))


@pytest.mark.anyio
async def test_refresh_stores_new_tokens():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600, "refresh_token": "refresh-2"})

    credential = _credential()
    token = await _service(handler).refresh_access_token(credential)

    assert token == "new-access"
    assert credential.access_token == "new-access"
    assert credential.refresh_token == "refresh-2"
    assert credential.token_expires_at > datetime.now(tz=timezone.utc) + timedelta(minutes=55)
    assert "grant_type=refresh_token" in seen["body"]


@pytest.mark.anyio
async def test_refresh_failure_raises_calendar_error():
    with pytest.raises(CalendarError):
        await _service(lambda request: httpx.Response(400, json={"error": "invalid_grant"})).refresh_access_token(
            _credential()
        )


@pytest.mark.anyio
async def test_create_event_refreshes_expired_token_first():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.host == "oauth.test":
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})
        return httpx.Response(200, json={"id": "gcal-123"})

    start = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
    event_id = await _service(handler).create_event(
        _credential(),
        summary="Intro call with Grace",
        start=start,
        end=start + timedelta(hours=1),
        time_zone="Europe/Berlin",
        attendees=["guest@example.com"],
    )

    assert event_id == "gcal-123"
    assert [request.url.host for request in requests] == ["oauth.test", "calendar.test"]
    event_request = requests[1]
    assert event_request.headers["Authorization"] == "Bearer new-access"
    assert event_request.url.path == "/v3/calendars/primary/events"
    body = json.loads(event_request.content)
    assert body["attendees"] == [{"email": "guest@example.com"}]
    assert body["start"]["timeZone"] == "Europe/Berlin"


@pytest.mark.anyio
async def test_create_event_skips_refresh_for_valid_token():
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(201, json={"id": "gcal-9"})

    credential = _credential(token_expires_at=datetime.now(tz=timezone.utc) + timedelta(hours=1))
    start = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)

    assert await _service(handler).create_event(
        credential, summary="s", start=start, end=start + timedelta(hours=1), time_zone="UTC"
    ) == "gcal-9"
    assert hosts == ["calendar.test"]


@pytest.mark.anyio
async def test_transport_errors_surface_as_calendar_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(CalendarError):
        await _service(handler).refresh_access_token(_credential())
