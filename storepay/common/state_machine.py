"""Order and booking status transitions enforced by the settlement path."""

from storepay.common.errors import InvalidTransition

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "processing", "canceled"},
    "paid": {"processing", "shipped", "completed", "canceled", "refunded"},
    "processing": {"shipped", "completed", "canceled", "refunded"},
    "shipped": {"completed", "refunded"},
    "completed": {"refunded"},
    # reopened only by a verified retry payment
    "canceled": {"paid"},
    "refunded": set(),
}

BOOKING_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "confirmed", "canceled"},
    "paid": {"confirmed", "completed", "canceled", "no_show", "refunded"},
    "confirmed": {"completed", "canceled", "no_show", "refunded"},
    "completed": {"refunded"},
    "no_show": {"refunded"},
    "canceled": {"paid"},
    "refunded": set(),
}

# Statuses that already reflect a successful payment.
ORDER_PAID_STATUSES = {"paid", "processing", "shipped", "completed"}
BOOKING_PAID_STATUSES = {"paid", "confirmed", "completed", "no_show"}


def transitions_for(kind: str) -> dict[str, set[str]]:
    if kind == "order":
        return ORDER_TRANSITIONS
    if kind == "booking":
        return BOOKING_TRANSITIONS
    raise ValueError(f"unknown target kind: {kind}")


def paid_statuses_for(kind: str) -> set[str]:
    return ORDER_PAID_STATUSES if kind == "order" else BOOKING_PAID_STATUSES


def validate_transition(current: str, new: str, kind: str = "order") -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions_for(kind).get(current, set()):
        raise InvalidTransition(f"Invalid {kind} transition: {current} -> {new}")
