import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from app.domain.experts.db_models import CalendarCredential
from app.settings import settings

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


class CalendarError(RuntimeError):
    pass


class MissingRefreshTokenError(CalendarError):
    """The stored credential cannot be refreshed without re-consent."""


class GoogleCalendarService:
    def __init__(self, app_settings=None, http_client: httpx.AsyncClient | None = None) -> None:
        self.app_settings = app_settings or settings
        self.http_client = http_client

    async def refresh_access_token(self, credential: CalendarCredential) -> str:
        """Exchange the refresh token for a new access token and store it on the credential.

        The caller owns the session and commits the updated row.
        """
        if not credential.refresh_token:
            raise MissingRefreshTokenError("missing_refresh_token")
        if not self.app_settings.google_client_id or not self.app_settings.google_client_secret:
            raise CalendarError("google_oauth_not_configured")

        response = await self._request(
            "POST",
            self.app_settings.google_token_url,
            data={
                "client_id": self.app_settings.google_client_id,
                "client_secret": self.app_settings.google_client_secret,
                "refresh_token": credential.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code != 200:
            raise CalendarError(f"token_refresh_status_{response.status_code}")
        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise CalendarError("token_refresh_missing_access_token")

        credential.access_token = access_token
        credential.token_expires_at = datetime.now(tz=timezone.utc) + timedelta(
            seconds=int(tokens.get("expires_in", 3600))
        )
        # Google only returns a refresh token when it rotates it.
        if tokens.get("refresh_token"):
            credential.refresh_token = tokens["refresh_token"]
        return access_token

    async def get_valid_access_token(self, credential: CalendarCredential) -> str:
        expires_at = credential.token_expires_at
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is None or expires_at <= datetime.now(tz=timezone.utc) + TOKEN_REFRESH_MARGIN:
            return await self.refresh_access_token(credential)
        return credential.access_token

    async def create_event(
        self,
        credential: CalendarCredential,
        *,
        summary: str,
        start: datetime,
        end: datetime,
        time_zone: str,
        description: str | None = None,
        attendees: list[str] | None = None,
    ) -> str:
        access_token = await self.get_valid_access_token(credential)
        payload: dict[str, Any] = {
            "summary": summary,
            "start": {"dateTime": start.isoformat(), "timeZone": time_zone},
            "end": {"dateTime": end.isoformat(), "timeZone": time_zone},
        }
        if description:
            payload["description"] = description
        if attendees:
            payload["attendees"] = [{"email": email} for email in attendees]

        calendar_id = credential.calendar_id or "primary"
        response = await self._request(
            "POST",
            f"{self.app_settings.google_calendar_api_base}/calendars/{calendar_id}/events",
            headers={"Authorization": f"Bearer {access_token}"},
            json=payload,
        )
        if response.status_code not in {200, 201}:
            raise CalendarError(f"calendar_event_status_{response.status_code}")
        event_id = response.json().get("id")
        if not event_id:
            raise CalendarError("calendar_event_missing_id")
        logger.info("calendar_event_created", extra={"extra": {"user_id": credential.user_id}})
        return event_id

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            return await client.request(
                method, url, timeout=self.app_settings.calendar_timeout_seconds, **kwargs
            )
        except httpx.HTTPError as exc:
            raise CalendarError(f"calendar_transport_error:{type(exc).__name__}") from exc
        finally:
            if close_client:
                await client.aclose()


def resolve_calendar_service(app_state: Any) -> GoogleCalendarService:
    service = getattr(app_state, "calendar_service", None)
    if service is None:
        service = GoogleCalendarService(getattr(app_state, "app_settings", None))
        app_state.calendar_service = service
    return service
