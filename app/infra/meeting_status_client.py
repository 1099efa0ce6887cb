import logging
from datetime import datetime

import httpx
from pydantic import ValidationError

from app.domain.bookings.poller import ConfirmationPoller, PollResult
from app.domain.bookings.schemas import MeetingStatusResponse
from app.domain.bookings.service import format_iso_start

logger = logging.getLogger(__name__)


class MeetingStatusClient:
    """HTTP client for the meeting status endpoint.

    Non-200 answers, transport errors and malformed bodies all read as "not
    created yet" so the poller simply moves on to its next attempt.
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient | None = None, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    async def fetch_status(self, event_slug: str, start_time: datetime) -> MeetingStatusResponse | None:
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.get(
                f"{self.base_url}/v1/meetings/status",
                params={"eventSlug": event_slug, "startTime": format_iso_start(start_time)},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.info("meeting_status_transport_error", extra={"extra": {"reason": type(exc).__name__}})
            return None
        finally:
            if close_client:
                await client.aclose()
        if response.status_code != 200:
            logger.info("meeting_status_not_ok", extra={"extra": {"status_code": response.status_code}})
            return None
        try:
            return MeetingStatusResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.info("meeting_status_malformed")
            return None


def build_poller(client: MeetingStatusClient, event_slug: str, start_time: datetime, app_settings) -> ConfirmationPoller:
    return ConfirmationPoller(
        lambda: client.fetch_status(event_slug, start_time),
        interval_seconds=app_settings.confirmation_poll_interval_ms / 1000,
        max_attempts=app_settings.confirmation_poll_max_attempts,
    )


async def wait_for_meeting(
    client: MeetingStatusClient, event_slug: str, start_time: datetime, app_settings
) -> PollResult:
    return await build_poller(client, event_slug, start_time, app_settings).run()
