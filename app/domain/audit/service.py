from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.audit.db_models import AuditEvent

SYSTEM_ACTOR_WEBHOOK = "stripe-webhook"
SYSTEM_ACTOR_SWEEP = "transfer-sweep"


def record_event(
    session: AsyncSession,
    *,
    actor: str,
    action: str,
    resource_type: str,
    resource_id: str,
    before: Any = None,
    after: Any = None,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction."""
    event = AuditEvent(
        action=action,
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        before=before,
        after=after,
    )
    session.add(event)
    return event
