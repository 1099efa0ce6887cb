from enum import Enum


class BookingPaymentStatus(str, Enum):
    """Payment state of a booking attempt, using the payment provider's literals."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


PAYMENT_TRANSITIONS: dict[BookingPaymentStatus, frozenset[BookingPaymentStatus]] = {
    BookingPaymentStatus.PENDING: frozenset(
        {
            BookingPaymentStatus.PROCESSING,
            BookingPaymentStatus.SUCCEEDED,
            BookingPaymentStatus.FAILED,
            BookingPaymentStatus.REFUNDED,
        }
    ),
    BookingPaymentStatus.PROCESSING: frozenset(
        {BookingPaymentStatus.SUCCEEDED, BookingPaymentStatus.FAILED, BookingPaymentStatus.REFUNDED}
    ),
    BookingPaymentStatus.SUCCEEDED: frozenset({BookingPaymentStatus.REFUNDED}),
    BookingPaymentStatus.FAILED: frozenset(),
    BookingPaymentStatus.REFUNDED: frozenset(),
}

TERMINAL_PAYMENT_STATUSES = frozenset({BookingPaymentStatus.FAILED, BookingPaymentStatus.REFUNDED})


def normalize_payment_status(value: str) -> BookingPaymentStatus:
    try:
        return BookingPaymentStatus(value.lower())
    except ValueError as exc:
        raise ValueError("Invalid booking payment status") from exc


def can_transition_payment(current: BookingPaymentStatus | str, target: BookingPaymentStatus | str) -> bool:
    current_status = normalize_payment_status(current.value if isinstance(current, Enum) else current)
    target_status = normalize_payment_status(target.value if isinstance(target, Enum) else target)
    return target_status in PAYMENT_TRANSITIONS[current_status]
