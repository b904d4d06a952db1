"""What a payment settles: exactly one order or exactly one booking."""

from dataclasses import dataclass
from typing import ClassVar

from storepay.common.errors import MalformedPayload


@dataclass(frozen=True)
class OrderTarget:
    id: str

    kind: ClassVar[str] = "order"
    entry_type: ClassVar[str] = "order_sale"

    def ledger_entry_id(self, transaction_id: str) -> str:
        return f"payment_{transaction_id}"

    def description(self, reference: str | None = None) -> str:
        return f"Order payment: {reference or self.id}"


@dataclass(frozen=True)
class BookingTarget:
    id: str

    kind: ClassVar[str] = "booking"
    entry_type: ClassVar[str] = "booking_payment"

    def ledger_entry_id(self, transaction_id: str) -> str:
        return f"payment_{transaction_id}_booking"

    def description(self, reference: str | None = None) -> str:
        return f"Booking payment: {reference or self.id}"


PaymentTarget = OrderTarget | BookingTarget


def target_from_ids(order_id: str | None, booking_id: str | None) -> PaymentTarget:
    """Build the target from a pair of optional ids; exactly one must be set."""

    if order_id and booking_id:
        raise MalformedPayload(f"payment references both order {order_id} and booking {booking_id}")
    if order_id:
        return OrderTarget(order_id)
    if booking_id:
        return BookingTarget(booking_id)
    raise MalformedPayload("payment references neither an order nor a booking")


def resolve_target(
    payload_order_id: str | None,
    payload_booking_id: str | None,
    record_order_id: str | None = None,
    record_booking_id: str | None = None,
) -> PaymentTarget:
    """Prefer ids carried by the gateway payload, else those on the stored record.

    The two sources are never mixed: a payload naming an order is not combined
    with a record naming a booking.
    """

    if payload_order_id or payload_booking_id:
        return target_from_ids(payload_order_id, payload_booking_id)
    return target_from_ids(record_order_id, record_booking_id)


def target_ids(target: PaymentTarget | None) -> tuple[str | None, str | None]:
    """Split a target back into `(order_id, booking_id)` columns."""

    if isinstance(target, OrderTarget):
        return target.id, None
    if isinstance(target, BookingTarget):
        return None, target.id
    return None, None
