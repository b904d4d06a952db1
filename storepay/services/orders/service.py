"""Order/booking status transitions driven by payment outcomes.

Every write is a compare-and-swap on the status observed just before it, so two
concurrent settlement passes cannot both apply pending -> paid.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update

from storepay.common.errors import ConcurrentUpdate, TargetNotFound
from storepay.common.logging import logger
from storepay.common.state_machine import paid_statuses_for, validate_transition
from storepay.common.targets import OrderTarget, PaymentTarget
from storepay.services.orders.models import Booking, Order


@dataclass
class TargetContact:
    """Customer-facing fields of an order/booking used by emails and notifications."""

    customer_id: str | None
    customer_email: str | None
    customer_name: str | None
    reference: str | None


def _model_for(target: PaymentTarget):
    if isinstance(target, OrderTarget):
        return Order, Order.order_id
    return Booking, Booking.booking_id


class OrderBookingService:
    """Applies paid/canceled transitions to the order or booking a payment targets."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @staticmethod
    def load(db, target: PaymentTarget):
        model, _ = _model_for(target)
        row = db.get(model, target.id)
        if row is None:
            raise TargetNotFound(f"{target.kind} not found: {target.id}")
        return row

    def contact(self, db, target: PaymentTarget) -> TargetContact:
        row = self.load(db, target)
        reference = row.order_number if isinstance(target, OrderTarget) else row.booking_number
        return TargetContact(
            customer_id=row.customer_id,
            customer_email=row.customer_email,
            customer_name=row.customer_name,
            reference=reference,
        )

    def _compare_and_swap(self, db, target: PaymentTarget, observed: str, values: dict) -> bool:
        model, pk = _model_for(target)
        result = db.execute(
            update(model)
            .where(pk == target.id, model.status == observed)
            .values(updated_at=datetime.now(timezone.utc), **values)
        )
        return result.rowcount == 1

    def mark_paid(self, db, target: PaymentTarget, payment: dict) -> bool:
        """Transition to paid and attach the payment sub-object.

        Callers only reach this after the gateway verified the payment, so a
        target canceled by an earlier failed attempt is reopened and its
        cancellation fields cleared. Returns False when the target already
        reflects a successful payment. Raises `InvalidTransition` for refunded
        targets and `ConcurrentUpdate` when the status changed to something
        other than paid between the read and the write.
        """

        row = self.load(db, target)
        observed = row.status
        if observed in paid_statuses_for(target.kind):
            logger.info("%s already paid id=%s status=%s", target.kind, target.id, observed)
            return False
        validate_transition(observed, "paid", kind=target.kind)

        values = {"status": "paid", "payment": payment}
        if observed == "canceled":
            values.update(canceled_at=None, canceled_reason=None)
        if self._compare_and_swap(db, target, observed, values):
            logger.info("%s status updated id=%s from=%s to=paid", target.kind, target.id, observed)
            return True

        db.refresh(row)
        if row.status in paid_statuses_for(target.kind):
            return False
        raise ConcurrentUpdate(
            f"{target.kind} {target.id} changed from {observed} to {row.status} during settlement"
        )

    def mark_canceled(self, db, target: PaymentTarget, reason: str) -> bool:
        """Transition to canceled after a failed payment.

        A target that already reflects a successful payment is never canceled;
        returns False for that case and for an already-canceled target.
        """

        row = self.load(db, target)
        observed = row.status
        if observed in paid_statuses_for(target.kind):
            logger.warning(
                "refusing to cancel paid %s id=%s status=%s reason=%s", target.kind, target.id, observed, reason
            )
            return False
        if observed == "canceled":
            return False
        validate_transition(observed, "canceled", kind=target.kind)

        now = datetime.now(timezone.utc)
        values = {"status": "canceled", "canceled_reason": reason, "canceled_at": now}
        if self._compare_and_swap(db, target, observed, values):
            logger.info("%s canceled id=%s from=%s reason=%s", target.kind, target.id, observed, reason)
            return True
        db.refresh(row)
        if row.status == "canceled" or row.status in paid_statuses_for(target.kind):
            return False
        raise ConcurrentUpdate(
            f"{target.kind} {target.id} changed from {observed} to {row.status} during cancellation"
        )
