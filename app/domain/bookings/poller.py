from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import anyio

from app.domain.bookings.schemas import MeetingStatusResponse

logger = logging.getLogger(__name__)

PAYMENT_TIMEOUT_CODE = "payment-timeout"
DEFAULT_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_ATTEMPTS = 15


class PollOutcome(str, Enum):
    CREATED = "created"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    attempts: int
    meeting_id: str | None = None

    @property
    def redirect_code(self) -> str | None:
        if self.outcome is PollOutcome.TIMEOUT:
            return PAYMENT_TIMEOUT_CODE
        return None


StatusCheck = Callable[[], Awaitable[MeetingStatusResponse | None]]


class ConfirmationPoller:
    """Asks whether the meeting exists yet, on a fixed cadence, a bounded number of times.

    The poller only reads. A timeout means the buyer stops waiting; the webhook
    may still confirm the booking afterwards. ``cancel()`` interrupts a pending
    sleep at once and no further check is issued.
    """

    def __init__(
        self,
        check: StatusCheck,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self._check = check
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._scope: anyio.CancelScope | None = None
        self._cancelled = False
        self.attempts = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._scope is not None:
            self._scope.cancel()

    async def run(self) -> PollResult:
        with anyio.CancelScope() as scope:
            self._scope = scope
            while not self._cancelled:
                self.attempts += 1
                status = await self._safe_check()
                if status is not None and status.status == "created":
                    meeting_id = status.meeting.id if status.meeting else None
                    logger.info(
                        "confirmation_poll_created",
                        extra={"extra": {"attempts": self.attempts, "meeting_id": meeting_id}},
                    )
                    return PollResult(PollOutcome.CREATED, self.attempts, meeting_id)
                if self.attempts >= self.max_attempts:
                    logger.info("confirmation_poll_timeout", extra={"extra": {"attempts": self.attempts}})
                    return PollResult(PollOutcome.TIMEOUT, self.attempts)
                await self._sleep(self.interval_seconds)
        return PollResult(PollOutcome.CANCELLED, self.attempts)

    async def _safe_check(self) -> MeetingStatusResponse | None:
        try:
            return await self._check()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "confirmation_poll_check_failed",
                extra={"extra": {"attempt": self.attempts, "reason": type(exc).__name__}},
            )
            return None
