import logging
from typing import Any

import httpx

from app.settings import settings

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


def _format_amount(amount_minor: int, currency: str) -> str:
    return f"{amount_minor / 100:.2f} {currency.upper()}"


class EmailAdapter:
    """Sends pipeline notifications.

    Every ``send_*`` method returns ``True`` when a message went out. Delivery
    failures are logged and reported as ``False`` so callers never roll back the
    state change that triggered the notice.
    """

    def __init__(self, app_settings=None, http_client: httpx.AsyncClient | None = None) -> None:
        self.app_settings = app_settings or settings
        self.http_client = http_client

    async def send_meeting_confirmed(self, meeting: Any) -> bool:
        recipient = getattr(meeting, "guest_email", None)
        start_time = getattr(meeting, "start_time", None)
        body = (
            f"Hi {getattr(meeting, 'guest_name', None) or 'there'},\n\n"
            "Your payment went through and your session is booked.\n"
            f"Starts at: {start_time.isoformat() if start_time else 'see your calendar invite'}"
            f" ({getattr(meeting, 'timezone', 'UTC')})\n\n"
            "A calendar invitation will follow."
        )
        return await self._deliver(
            "meeting_confirmed",
            recipient,
            subject="Your session is confirmed",
            body=body,
            ref={"meeting_id": getattr(meeting, "meeting_id", None)},
        )

    async def send_payout_completed(self, recipient: str | None, transfer: Any) -> bool:
        body = (
            f"We sent {_format_amount(transfer.expert_amount, transfer.currency)} to your payout account.\n"
            "Funds usually arrive within a few business days."
        )
        return await self._deliver(
            "payout_completed",
            recipient,
            subject="Your payout is on its way",
            body=body,
            ref={"transfer_id": transfer.transfer_id},
        )

    async def send_payout_failed(self, recipient: str | None, transfer: Any) -> bool:
        body = (
            f"We could not send your payout of {_format_amount(transfer.expert_amount, transfer.currency)}.\n"
            "Please check your payout account details. Our team has been notified."
        )
        return await self._deliver(
            "payout_failed",
            recipient,
            subject="Action needed: payout failed",
            body=body,
            ref={"transfer_id": transfer.transfer_id},
        )

    async def send_upcoming_payout(self, recipient: str | None, transfer: Any) -> bool:
        releasable_at = transfer.earliest_releasable_at
        body = (
            f"A payout of {_format_amount(transfer.expert_amount, transfer.currency)} becomes available"
            f" on {releasable_at.date().isoformat() if releasable_at else 'soon'}."
        )
        return await self._deliver(
            "upcoming_payout",
            recipient,
            subject="Upcoming payout",
            body=body,
            ref={"transfer_id": transfer.transfer_id},
        )

    async def send_payment_refunded(self, recipient: str | None, transfer: Any) -> bool:
        body = (
            f"A payment of {_format_amount(transfer.gross_amount, transfer.currency)} for one of your sessions"
            " was refunded to the guest.\nThe matching payout has been cancelled."
        )
        return await self._deliver(
            "payment_refunded",
            recipient,
            subject="A session payment was refunded",
            body=body,
            ref={"transfer_id": transfer.transfer_id},
        )

    async def send_payment_disputed(self, recipient: str | None, transfer: Any) -> bool:
        body = (
            f"The guest disputed a payment of {_format_amount(transfer.gross_amount, transfer.currency)}.\n"
            "The payout is on hold until the dispute is resolved."
        )
        return await self._deliver(
            "payment_disputed",
            recipient,
            subject="A session payment was disputed",
            body=body,
            ref={"transfer_id": transfer.transfer_id},
        )

    async def _deliver(
        self,
        template: str,
        recipient: str | None,
        *,
        subject: str,
        body: str,
        ref: dict[str, Any],
    ) -> bool:
        if self.app_settings.email_mode == "off":
            logger.info("email_skipped", extra={"extra": {"template": template, "reason": "email_off", **ref}})
            return False
        if not recipient:
            logger.info("email_skipped", extra={"extra": {"template": template, "reason": "no_recipient", **ref}})
            return False
        try:
            await self._send_email(to_email=recipient, subject=subject, body=body)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "email_send_failed",
                extra={"extra": {"template": template, "reason": type(exc).__name__, **ref}},
            )
            return False
        logger.info("email_sent", extra={"extra": {"template": template, **ref}})
        return True

    async def _send_email(self, to_email: str, subject: str, body: str) -> None:
        if self.app_settings.email_mode == "sendgrid":
            await self._send_via_sendgrid(to_email=to_email, subject=subject, body=body)
            return
        raise RuntimeError("unsupported_email_mode")

    async def _send_via_sendgrid(self, to_email: str, subject: str, body: str) -> None:
        api_key = self.app_settings.sendgrid_api_key
        from_email = self.app_settings.email_sender
        if not api_key or not from_email:
            raise RuntimeError("sendgrid_not_configured")
        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if self.app_settings.email_from_name:
            payload["from"]["name"] = self.app_settings.email_from_name
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.post(
                SENDGRID_SEND_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
                timeout=10,
            )
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")


def resolve_email_adapter(app_settings) -> EmailAdapter:
    return EmailAdapter(app_settings)


def resolve_notifier(app_state: Any) -> EmailAdapter:
    adapter = getattr(app_state, "email_adapter", None)
    if adapter is None:
        adapter = resolve_email_adapter(getattr(app_state, "app_settings", None) or settings)
        app_state.email_adapter = adapter
    return adapter
