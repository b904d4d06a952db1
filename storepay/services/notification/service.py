"""In-app notifications for payment and order/booking status changes."""

from enum import Enum

from storepay.common.logging import logger
from storepay.services.notification.models import Notification
from storepay.services.settings.service import SettlementOptions


class NotificationType(str, Enum):
    ORDER_PAID = "ORDER_PAID"
    BOOKING_PAID = "BOOKING_PAID"
    ORDER_CANCELED = "ORDER_CANCELED"
    BOOKING_CANCELED = "BOOKING_CANCELED"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"


_STATUS_TYPES = {
    ("order", "paid"): NotificationType.ORDER_PAID,
    ("order", "canceled"): NotificationType.ORDER_CANCELED,
    ("booking", "paid"): NotificationType.BOOKING_PAID,
    ("booking", "canceled"): NotificationType.BOOKING_CANCELED,
}


class NotificationService:
    """Writes notification rows when the store settings allow the type."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create(
        self,
        options: SettlementOptions,
        notification_type: NotificationType,
        title: str,
        message: str,
        **fields,
    ) -> str | None:
        """Persist one notification; returns its id, or None when disabled."""

        if not options.should_notify(notification_type.value):
            logger.info("notification disabled by settings type=%s", notification_type.value)
            return None
        metadata = fields.pop("metadata", {}) or {}
        with self.session_factory() as db:
            row = Notification(
                notification_type=notification_type.value,
                title=title,
                message=message,
                notification_metadata=metadata,
                **fields,
            )
            db.add(row)
            db.commit()
            logger.info("notification created type=%s id=%s", notification_type.value, row.id)
            return row.id

    def _notify_status_change(
        self,
        options: SettlementOptions,
        kind: str,
        target_id: str,
        reference: str | None,
        status: str,
        customer_email: str | None,
        customer_id: str | None,
        reason: str | None = None,
    ) -> str | None:
        notification_type = _STATUS_TYPES.get((kind, status))
        if notification_type is None:
            return None
        label = "Order" if kind == "order" else "Booking"
        title = f"{label} {status.capitalize()}"
        message = f"{label} #{reference or target_id} is now {status}."
        if reason:
            message = f"{message} Reason: {reason}"
        ids = {"order_id": target_id} if kind == "order" else {"booking_id": target_id}
        return self.create(
            options,
            notification_type,
            title,
            message,
            user_id=customer_id,
            user_email=customer_email,
            metadata={"status": status, "reference": reference, "reason": reason},
            **ids,
        )

    def notify_order_status_change(self, options: SettlementOptions, **kwargs) -> str | None:
        return self._notify_status_change(options, "order", **kwargs)

    def notify_booking_status_change(self, options: SettlementOptions, **kwargs) -> str | None:
        return self._notify_status_change(options, "booking", **kwargs)

    def notify_payment_success(
        self,
        options: SettlementOptions,
        *,
        tx_ref: str,
        transaction_id: str,
        amount,
        currency: str,
        order_id: str | None,
        booking_id: str | None,
        customer_email: str | None,
        customer_id: str | None = None,
    ) -> str | None:
        return self.create(
            options,
            NotificationType.PAYMENT_SUCCESS,
            "Payment Successful",
            f"Payment of {currency} {amount} received.",
            user_id=customer_id,
            user_email=customer_email,
            order_id=order_id,
            booking_id=booking_id,
            payment_id=transaction_id,
            metadata={"txRef": tx_ref, "amount": str(amount), "currency": currency},
        )

    def notify_payment_failed(
        self,
        options: SettlementOptions,
        *,
        tx_ref: str,
        transaction_id: str | None,
        amount,
        currency: str,
        order_id: str | None,
        booking_id: str | None,
        customer_email: str | None,
        reason: str | None,
        customer_id: str | None = None,
    ) -> str | None:
        return self.create(
            options,
            NotificationType.PAYMENT_FAILED,
            "Payment Failed",
            f"Payment of {currency} {amount} failed: {reason or 'unknown reason'}.",
            user_id=customer_id,
            user_email=customer_email,
            order_id=order_id,
            booking_id=booking_id,
            payment_id=transaction_id,
            metadata={"txRef": tx_ref, "reason": reason},
        )
