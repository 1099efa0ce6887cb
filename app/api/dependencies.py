import secrets
from typing import Awaitable, Callable

from fastapi import Request

from app.api.problem_details import PROBLEM_TYPE_RATE_LIMIT
from app.domain.errors import RateLimited, Unauthorized
from app.infra.security import resolve_client_key
from app.settings import settings


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


def rate_limit(bucket: str, limit_setting: str, window_setting: str) -> Callable[[Request], Awaitable[None]]:
    """Build a dependency that charges one request against ``<bucket>:<client-ip>``."""

    async def dependency(request: Request) -> None:
        app_settings = _app_settings(request)
        limiter = request.app.state.rate_limiter
        client = resolve_client_key(
            request,
            trust_proxy_headers=app_settings.trust_proxy_headers,
            trusted_proxy_ips=app_settings.trusted_proxy_ips,
            trusted_proxy_cidrs=app_settings.trusted_proxy_cidrs,
        )
        allowed = await limiter.allow(
            f"{bucket}:{client}",
            getattr(app_settings, limit_setting),
            getattr(app_settings, window_setting),
        )
        if not allowed:
            raise RateLimited("Rate limit exceeded", type=PROBLEM_TYPE_RATE_LIMIT)

    return dependency


meeting_status_rate_limit = rate_limit(
    "meeting-status", "meeting_status_rate_limit", "meeting_status_rate_window_seconds"
)
payment_intent_rate_limit = rate_limit(
    "payment-intent", "payment_intent_rate_limit", "payment_intent_rate_window_seconds"
)


async def require_cron_secret(request: Request) -> None:
    expected = _app_settings(request).cron_secret
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if not expected or scheme.lower() != "bearer" or not token:
        raise Unauthorized("Missing or invalid cron credentials")
    if not secrets.compare_digest(token.strip().encode(), expected.encode()):
        raise Unauthorized("Missing or invalid cron credentials")
