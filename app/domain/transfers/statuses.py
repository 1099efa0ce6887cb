from enum import Enum


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    READY = "READY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


# DISPUTED only leaves through manual resolution, so no automated exit is listed.
TERMINAL_TRANSFER_STATUSES = frozenset(
    {
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
        TransferStatus.REFUNDED,
        TransferStatus.DISPUTED,
    }
)

ACTIVE_TRANSFER_STATUSES = frozenset(set(TransferStatus) - TERMINAL_TRANSFER_STATUSES)

_SIDE_EXITS = frozenset({TransferStatus.FAILED, TransferStatus.REFUNDED, TransferStatus.DISPUTED})

TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({TransferStatus.APPROVED}) | _SIDE_EXITS,
    TransferStatus.APPROVED: frozenset({TransferStatus.READY}) | _SIDE_EXITS,
    TransferStatus.READY: frozenset({TransferStatus.COMPLETED}) | _SIDE_EXITS,
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.FAILED: frozenset(),
    TransferStatus.REFUNDED: frozenset(),
    TransferStatus.DISPUTED: frozenset(),
}

TRANSITION_TIMESTAMPS: dict[TransferStatus, str] = {
    TransferStatus.APPROVED: "approved_at",
    TransferStatus.READY: "ready_at",
    TransferStatus.COMPLETED: "completed_at",
    TransferStatus.FAILED: "failed_at",
    TransferStatus.REFUNDED: "refunded_at",
    TransferStatus.DISPUTED: "disputed_at",
}


def normalize_status(value: str) -> TransferStatus:
    try:
        return TransferStatus(value.upper())
    except ValueError as exc:
        raise ValueError("Invalid transfer status") from exc


def can_transition(current: TransferStatus | str, target: TransferStatus | str) -> bool:
    current_status = current if isinstance(current, TransferStatus) else normalize_status(current)
    target_status = target if isinstance(target, TransferStatus) else normalize_status(target)
    return target_status in TRANSFER_TRANSITIONS[current_status]
