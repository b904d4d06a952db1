"""Payment record store.

One row per `tx_ref`. Rows normally come from session creation; the webhook
and poll paths create a degraded fallback row when they arrive first.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from storepay.common.config import settings
from storepay.common.logging import logger
from storepay.services.payments.models import PaymentRecord
from storepay.services.payments.schemas import GatewayPayment, PaymentStatus
from storepay.services.settings.service import SettlementOptions


def fallback_transaction_id() -> str:
    return f"fallback_{uuid4().hex}"


class PaymentRecordStore:
    """Reads and status updates for `PaymentRecord` rows."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _find(db, tx_ref: str) -> PaymentRecord | None:
        return db.execute(select(PaymentRecord).where(PaymentRecord.tx_ref == tx_ref)).scalar_one_or_none()

    def get_by_tx_ref(self, tx_ref: str) -> PaymentRecord | None:
        with self.session_factory() as db:
            return self._find(db, tx_ref)

    def create_pending(
        self,
        *,
        tx_ref: str,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        order_id: str | None,
        booking_id: str | None,
        customer_email: str | None,
        customer_name: str | None,
        metadata: dict,
        checkout_url: str | None,
    ) -> PaymentRecord:
        """Persist the session-creation row; returns the existing row on repeat."""

        with self.session_factory() as db:
            existing = self._find(db, tx_ref)
            if existing:
                return existing
            record = PaymentRecord(
                tx_ref=tx_ref,
                transaction_id=transaction_id,
                order_id=order_id,
                booking_id=booking_id,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PENDING.value,
                customer_email=customer_email,
                customer_name=customer_name,
                payment_metadata=metadata,
                checkout_url=checkout_url,
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._find(db, tx_ref)
            logger.info("payment record created tx_ref=%s transaction_id=%s", tx_ref, transaction_id)
            return record

    def _get_or_create(self, db, payment: GatewayPayment, status: str, options: SettlementOptions):
        """Return `(record, created)`; record is None when creation is disabled."""

        record = self._find(db, payment.tx_ref)
        if record is not None:
            return record, False
        if not options.create_payment_documents:
            logger.info("payment record creation disabled, skipping fallback tx_ref=%s", payment.tx_ref)
            return None, False

        transaction_id = payment.transaction_id or fallback_transaction_id()
        record = PaymentRecord(
            tx_ref=payment.tx_ref,
            transaction_id=transaction_id,
            session_id=payment.session_id,
            order_id=payment.order_id,
            booking_id=payment.booking_id,
            amount=payment.amount or Decimal("0"),
            currency=payment.currency or settings.default_currency,
            status=status,
            payment_method=payment.payment_method,
            customer_email=payment.customer_email,
            customer_name=payment.customer_name,
            payment_metadata=payment.metadata,
            failure_reason=payment.failure_reason if status == PaymentStatus.FAILED.value else None,
            is_fallback=True,
            completed_at=datetime.now(timezone.utc) if status == PaymentStatus.COMPLETED.value else None,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            # Another pass created the row for this tx_ref first.
            db.rollback()
            record = self._find(db, payment.tx_ref)
            if record is None:
                raise
            return record, False
        logger.warning(
            "payment record created as fallback tx_ref=%s transaction_id=%s", payment.tx_ref, transaction_id
        )
        return record, True

    @staticmethod
    def _merge_details(record: PaymentRecord, payment: GatewayPayment) -> None:
        if payment.payment_method:
            record.payment_method = payment.payment_method
        if payment.customer_email:
            record.customer_email = payment.customer_email
        if payment.customer_name:
            record.customer_name = payment.customer_name
        if not record.order_id and not record.booking_id:
            record.order_id = payment.order_id
            record.booking_id = payment.booking_id
        if payment.amount is not None:
            if not record.amount:
                record.amount = payment.amount
            elif Decimal(record.amount) != payment.amount:
                logger.warning(
                    "payment amount mismatch tx_ref=%s recorded=%s reported=%s",
                    record.tx_ref,
                    record.amount,
                    payment.amount,
                )

    def mark_completed(self, payment: GatewayPayment, options: SettlementOptions) -> PaymentRecord | None:
        with self.session_factory() as db:
            record, created = self._get_or_create(db, payment, PaymentStatus.COMPLETED.value, options)
            if record is None:
                return None
            if created or record.status == PaymentStatus.COMPLETED.value:
                return record
            self._merge_details(record, payment)
            record.status = PaymentStatus.COMPLETED.value
            record.failure_reason = None
            record.completed_at = datetime.now(timezone.utc)
            db.commit()
            logger.info("payment record completed tx_ref=%s", payment.tx_ref)
            return record

    def mark_failed(self, payment: GatewayPayment, options: SettlementOptions) -> PaymentRecord | None:
        with self.session_factory() as db:
            record, created = self._get_or_create(db, payment, PaymentStatus.FAILED.value, options)
            if record is None:
                return None
            if created:
                return record
            if record.status == PaymentStatus.COMPLETED.value:
                logger.warning("ignoring failure for completed payment tx_ref=%s", payment.tx_ref)
                return record
            self._merge_details(record, payment)
            record.status = PaymentStatus.FAILED.value
            record.failure_reason = payment.failure_reason
            db.commit()
            logger.info("payment record failed tx_ref=%s reason=%s", payment.tx_ref, payment.failure_reason)
            return record

    def mark_pending(self, payment: GatewayPayment, options: SettlementOptions) -> PaymentRecord | None:
        """Refresh details of a still-pending payment without changing its status."""

        with self.session_factory() as db:
            record, created = self._get_or_create(db, payment, PaymentStatus.PENDING.value, options)
            if record is None or created or record.status != PaymentStatus.PENDING.value:
                return record
            self._merge_details(record, payment)
            db.commit()
            return record

    def claim_email(self, tx_ref: str, kind: str) -> bool:
        """Atomically flip the `<kind>_email_sent` flag; False when already sent.

        Payments without a record can always send (nothing to mark).
        """

        column = PaymentRecord.success_email_sent if kind == "success" else PaymentRecord.failure_email_sent
        with self.session_factory() as db:
            if self._find(db, tx_ref) is None:
                return True
            result = db.execute(
                update(PaymentRecord)
                .where(PaymentRecord.tx_ref == tx_ref, column.is_(False))
                .values({column.key: True, "updated_at": datetime.now(timezone.utc)})
            )
            db.commit()
            return result.rowcount == 1

    def release_email(self, tx_ref: str, kind: str) -> None:
        """Undo a claim after delivery failed so a later pass can retry."""

        column = PaymentRecord.success_email_sent if kind == "success" else PaymentRecord.failure_email_sent
        with self.session_factory() as db:
            db.execute(update(PaymentRecord).where(PaymentRecord.tx_ref == tx_ref).values({column.key: False}))
            db.commit()
