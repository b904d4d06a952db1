"""Payment settlement: the path shared by the webhook and the verify poll.

Settling a payment means: mark the payment record completed, then in one
database transaction move the order/booking to paid (with inventory for
orders) and insert the ledger entry whose id is derived from the transaction
id. That id is the idempotency key. It is checked before any gateway call and
enforced by the ledger primary key at insert time, so any number of webhook
deliveries, polls and fallbacks for one payment produce one entry and one paid
transition.

Database work happens in short synchronous session blocks; no session is held
across an `await`.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from time import perf_counter

from sqlalchemy.exc import IntegrityError

from storepay.common.config import settings
from storepay.common.errors import (
    MalformedPayload,
    MissingTransactionId,
    TransactionNotFound,
    VerificationFailure,
)
from storepay.common.locks import SettlementLock
from storepay.common.logging import logger, settlement_context
from storepay.common.metrics import (
    duplicate_settlements_skipped_total,
    settlement_failures_total,
    settlement_latency_seconds,
    settlements_total,
    side_effect_failures_total,
)
from storepay.common.targets import OrderTarget, PaymentTarget, resolve_target, target_ids
from storepay.common.tracing import tracer
from storepay.services.ledger.schemas import LedgerEntryCreate
from storepay.services.ledger.service import LedgerService
from storepay.services.notification.email import PaymentEmail, PaymentMailer
from storepay.services.notification.service import NotificationService
from storepay.services.orders.inventory import adjust_inventory_for_paid_order
from storepay.services.orders.service import OrderBookingService, TargetContact
from storepay.services.payments.gateway import GatewayClient
from storepay.services.payments.models import PaymentRecord
from storepay.services.payments.schemas import GatewayPayment, VerificationResult
from storepay.services.payments.service import PaymentRecordStore
from storepay.services.settings.service import SettingsService, SettlementOptions


@dataclass
class SettlementResult:
    """Outcome of one pass.

    `outcome` is one of: settled, already_processed, failed, pending.
    """

    tx_ref: str
    status: str
    outcome: str
    transaction_id: str | None = None
    target: PaymentTarget | None = None
    amount: Decimal | None = None
    currency: str | None = None
    ledger_entry_id: str | None = None

    @property
    def already_processed(self) -> bool:
        return self.outcome == "already_processed"

    def as_response(self) -> dict:
        order_id, booking_id = target_ids(self.target)
        return {
            "status": self.status,
            "outcome": self.outcome,
            "txRef": self.tx_ref,
            "transactionId": self.transaction_id,
            "orderId": order_id,
            "bookingId": booking_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "ledgerEntryId": self.ledger_entry_id,
            "alreadyProcessed": self.already_processed,
        }


@dataclass
class _Applied:
    transitioned: bool
    ledger_entry_id: str | None
    contact: TargetContact | None


class SettlementService:
    """Finalizes successful payments and records failed ones."""

    def __init__(
        self,
        session_factory,
        gateway: GatewayClient,
        records: PaymentRecordStore,
        ledger: LedgerService,
        orders: OrderBookingService,
        notifications: NotificationService,
        mailer: PaymentMailer,
        settings_service: SettingsService,
        lock: SettlementLock | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.records = records
        self.ledger = ledger
        self.orders = orders
        self.notifications = notifications
        self.mailer = mailer
        self.settings_service = settings_service
        self.lock = lock or SettlementLock(enabled=False)

    @staticmethod
    def _amount_and_currency(payment: GatewayPayment, record: PaymentRecord | None) -> tuple[Decimal, str]:
        amount = payment.amount
        if amount is None:
            amount = Decimal(record.amount) if record is not None and record.amount is not None else Decimal("0")
        currency = payment.currency or (record.currency if record is not None else None) or settings.default_currency
        return amount, currency

    @staticmethod
    def _resolve(payment: GatewayPayment, record: PaymentRecord | None) -> PaymentTarget:
        return resolve_target(
            payment.order_id,
            payment.booking_id,
            record.order_id if record is not None else None,
            record.booking_id if record is not None else None,
        )

    async def finalize_success(
        self,
        payment: GatewayPayment,
        options: SettlementOptions,
        source: str,
        verified: bool = False,
    ) -> SettlementResult:
        """Settle a successful payment exactly once.

        `verified=True` means the caller already holds a fresh successful
        gateway verification for this `tx_ref` (the poll path). Raises
        `MalformedPayload`, `MissingTransactionId` or `VerificationFailure`
        without touching the order/booking or the ledger.
        """

        started = perf_counter()
        try:
            with settlement_context(payment.tx_ref, source), tracer.start_as_current_span(
                "settlement.finalize_success"
            ) as span:
                span.set_attribute("storepay.tx_ref", payment.tx_ref)
                span.set_attribute("storepay.source", source)
                async with self.lock.hold(payment.tx_ref):
                    result = await self._finalize_locked(payment, options, source, verified)
        except Exception:
            settlements_total.labels(source=source, outcome="error").inc()
            raise
        settlements_total.labels(source=source, outcome=result.outcome).inc()
        settlement_latency_seconds.labels(source=source).observe(max(0.0, perf_counter() - started))
        return result

    async def _finalize_locked(
        self, payment: GatewayPayment, options: SettlementOptions, source: str, verified: bool
    ) -> SettlementResult:
        record = self.records.mark_completed(payment, options)

        transaction_id = (record.transaction_id if record is not None else None) or payment.transaction_id
        if not transaction_id:
            raise MissingTransactionId(f"completed payment has no transaction id tx_ref={payment.tx_ref}")

        target = self._resolve(payment, record)
        entry_id = target.ledger_entry_id(transaction_id)
        amount, currency = self._amount_and_currency(payment, record)
        result = SettlementResult(
            tx_ref=payment.tx_ref,
            status="completed",
            outcome="already_processed",
            transaction_id=transaction_id,
            target=target,
            amount=amount,
            currency=currency,
            ledger_entry_id=entry_id,
        )

        with self.session_factory() as db:
            if self.ledger.entry_exists(db, entry_id):
                logger.info("settlement already processed ledger_entry_id=%s", entry_id)
                duplicate_settlements_skipped_total.labels(source=source, stage="gate").inc()
                return result

        if not verified and not await self.gateway.verify(payment.tx_ref):
            raise VerificationFailure(f"gateway did not verify tx_ref={payment.tx_ref}")

        applied = self._apply(payment, target, transaction_id, entry_id, amount, currency, options, source)
        if applied is None:
            duplicate_settlements_skipped_total.labels(source=source, stage="insert").inc()
            return result

        result.ledger_entry_id = applied.ledger_entry_id
        if not applied.transitioned and applied.ledger_entry_id is None:
            return result

        result.outcome = "settled"
        logger.info(
            "payment settled %s=%s transaction_id=%s ledger_entry_id=%s amount=%s currency=%s",
            target.kind,
            target.id,
            transaction_id,
            applied.ledger_entry_id,
            amount,
            currency,
        )
        await self._after_success(payment, record, target, applied, transaction_id, amount, currency, options, source)
        return result

    def _apply(
        self,
        payment: GatewayPayment,
        target: PaymentTarget,
        transaction_id: str,
        entry_id: str,
        amount: Decimal,
        currency: str,
        options: SettlementOptions,
        source: str,
    ) -> _Applied | None:
        """Paid transition, inventory and ledger insert in one transaction.

        Returns None when the ledger insert lost to another pass (the whole
        transaction is rolled back).
        """

        now = datetime.now(timezone.utc)
        payment_info = {
            "paymentId": transaction_id,
            "paymentMethod": payment.payment_method or "gateway",
            "paidAt": now.isoformat(),
            "amount": str(amount),
            "currency": currency,
            "txRef": payment.tx_ref,
        }
        order_id, booking_id = target_ids(target)
        with self.session_factory() as db:
            try:
                transitioned = self.orders.mark_paid(db, target, payment_info)
                if transitioned and isinstance(target, OrderTarget):
                    adjust_inventory_for_paid_order(db, target.id)
                contact = self.orders.contact(db, target)
                created_id = self.ledger.create_entry(
                    db,
                    LedgerEntryCreate(
                        entry_type=target.entry_type,
                        amount=amount,
                        currency=currency,
                        order_id=order_id,
                        booking_id=booking_id,
                        payment_id=transaction_id,
                        description=target.description(contact.reference),
                        metadata={"transactionId": transaction_id, "txRef": payment.tx_ref, "source": source},
                        created_by=source,
                    ),
                    entry_id=entry_id,
                    auto_create=options.ledger_auto_create,
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("settlement lost ledger insert race ledger_entry_id=%s", entry_id)
                return None
        if created_id is None:
            logger.info("ledger entry creation skipped by settings tx_ref=%s", payment.tx_ref)
        return _Applied(transitioned=transitioned, ledger_entry_id=created_id, contact=contact)

    async def _after_success(
        self,
        payment: GatewayPayment,
        record: PaymentRecord | None,
        target: PaymentTarget,
        applied: _Applied,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        options: SettlementOptions,
        source: str,
    ) -> None:
        """Notifications and email. Failures are logged and never undo the settlement."""

        contact = applied.contact
        order_id, booking_id = target_ids(target)
        customer_email = payment.customer_email or (record.customer_email if record else None) or contact.customer_email
        customer_name = payment.customer_name or (record.customer_name if record else None) or contact.customer_name

        if applied.transitioned:
            try:
                notify = (
                    self.notifications.notify_order_status_change
                    if isinstance(target, OrderTarget)
                    else self.notifications.notify_booking_status_change
                )
                notify(
                    options,
                    target_id=target.id,
                    reference=contact.reference,
                    status="paid",
                    customer_email=customer_email,
                    customer_id=contact.customer_id,
                )
            except Exception:
                side_effect_failures_total.labels(kind="status_notification").inc()
                logger.exception("status change notification failed %s=%s", target.kind, target.id)

        try:
            self.notifications.notify_payment_success(
                options,
                tx_ref=payment.tx_ref,
                transaction_id=transaction_id,
                amount=amount,
                currency=currency,
                order_id=order_id,
                booking_id=booking_id,
                customer_email=customer_email,
                customer_id=contact.customer_id,
            )
        except Exception:
            side_effect_failures_total.labels(kind="payment_notification").inc()
            logger.exception("payment success notification failed tx_ref=%s", payment.tx_ref)

        if not options.send_payment_emails:
            return
        try:
            await self.mailer.send_payment_email(
                PaymentEmail(
                    status="success",
                    customer_email=customer_email,
                    customer_name=customer_name,
                    amount=amount,
                    currency=currency,
                    tx_ref=payment.tx_ref,
                    transaction_id=transaction_id,
                    order_id=order_id,
                    booking_id=booking_id,
                    reference=contact.reference,
                    payment_method=payment.payment_method,
                ),
                source,
            )
        except Exception:
            side_effect_failures_total.labels(kind="email").inc()
            logger.exception("payment success email failed tx_ref=%s", payment.tx_ref)

    async def record_failure(
        self,
        payment: GatewayPayment,
        options: SettlementOptions,
        source: str,
        verification: VerificationResult | None = None,
    ) -> SettlementResult:
        """Mark the payment failed and cancel its order/booking.

        The cancellation only happens after the gateway confirms the payment did
        not succeed. No ledger entry is written for a failed payment.
        """

        try:
            with settlement_context(payment.tx_ref, source), tracer.start_as_current_span(
                "settlement.record_failure"
            ) as span:
                span.set_attribute("storepay.tx_ref", payment.tx_ref)
                span.set_attribute("storepay.source", source)
                async with self.lock.hold(payment.tx_ref):
                    result = await self._record_failure_locked(payment, options, source, verification)
        except Exception:
            settlement_failures_total.labels(source=source, outcome="error").inc()
            raise
        settlement_failures_total.labels(source=source, outcome=result.outcome).inc()
        return result

    async def _record_failure_locked(
        self,
        payment: GatewayPayment,
        options: SettlementOptions,
        source: str,
        verification: VerificationResult | None,
    ) -> SettlementResult:
        record = self.records.mark_failed(payment, options)

        if verification is None:
            verification = await self.gateway.fetch_verification(payment.tx_ref)
        if verification is None:
            raise VerificationFailure(f"gateway could not confirm failure tx_ref={payment.tx_ref}")
        if verification.verified:
            raise VerificationFailure(f"gateway reports success for failed event tx_ref={payment.tx_ref}")

        target = self._resolve(payment, record)
        amount, currency = self._amount_and_currency(payment, record)
        reason = payment.failure_reason or "Payment failed"
        with self.session_factory() as db:
            canceled = self.orders.mark_canceled(db, target, reason)
            contact = self.orders.contact(db, target)
            db.commit()

        result = SettlementResult(
            tx_ref=payment.tx_ref,
            status="failed",
            outcome="failed" if canceled else "already_processed",
            transaction_id=record.transaction_id if record else payment.transaction_id,
            target=target,
            amount=amount,
            currency=currency,
        )
        if not canceled:
            return result

        order_id, booking_id = target_ids(target)
        customer_email = payment.customer_email or (record.customer_email if record else None) or contact.customer_email
        customer_name = payment.customer_name or (record.customer_name if record else None) or contact.customer_name
        try:
            notify = (
                self.notifications.notify_order_status_change
                if isinstance(target, OrderTarget)
                else self.notifications.notify_booking_status_change
            )
            notify(
                options,
                target_id=target.id,
                reference=contact.reference,
                status="canceled",
                customer_email=customer_email,
                customer_id=contact.customer_id,
                reason=reason,
            )
        except Exception:
            side_effect_failures_total.labels(kind="status_notification").inc()
            logger.exception("cancellation notification failed %s=%s", target.kind, target.id)
        try:
            self.notifications.notify_payment_failed(
                options,
                tx_ref=payment.tx_ref,
                transaction_id=result.transaction_id,
                amount=amount,
                currency=currency,
                order_id=order_id,
                booking_id=booking_id,
                customer_email=customer_email,
                reason=reason,
                customer_id=contact.customer_id,
            )
        except Exception:
            side_effect_failures_total.labels(kind="payment_notification").inc()
            logger.exception("payment failed notification failed tx_ref=%s", payment.tx_ref)
        if options.send_payment_emails:
            try:
                await self.mailer.send_payment_email(
                    PaymentEmail(
                        status="failed",
                        customer_email=customer_email,
                        customer_name=customer_name,
                        amount=amount,
                        currency=currency,
                        tx_ref=payment.tx_ref,
                        transaction_id=result.transaction_id,
                        order_id=order_id,
                        booking_id=booking_id,
                        reference=contact.reference,
                        failure_reason=reason,
                    ),
                    source,
                )
            except Exception:
                side_effect_failures_total.labels(kind="email").inc()
                logger.exception("payment failure email failed tx_ref=%s", payment.tx_ref)
        return result

    async def verify_and_settle(
        self,
        tx_ref: str,
        source: str = "manual",
        options: SettlementOptions | None = None,
    ) -> SettlementResult:
        """Verify `tx_ref` with the gateway and apply whatever it reports.

        Used by the poll endpoint and as the webhook fallback; safe to repeat.
        Raises `TransactionNotFound` when the gateway lookup fails, before any
        state is touched.
        """

        with settlement_context(tx_ref, source):
            return await self._verify_and_settle(tx_ref, source, options)

    async def _verify_and_settle(
        self, tx_ref: str, source: str, options: SettlementOptions | None
    ) -> SettlementResult:
        options = options or self.settings_service.load_options()
        record = self.records.get_by_tx_ref(tx_ref)

        verification = await self.gateway.fetch_verification(tx_ref)
        if verification is None:
            raise TransactionNotFound(f"Transaction not found or verification failed: {tx_ref}")

        payment = verification.to_payment()
        if verification.status == "success":
            return await self.finalize_success(payment, options, source, verified=True)
        if verification.status == "failed":
            return await self.record_failure(payment, options, source, verification=verification)

        record = self.records.mark_pending(payment, options) or record
        try:
            target = self._resolve(payment, record)
        except MalformedPayload:
            target = None
        amount, currency = self._amount_and_currency(payment, record)
        return SettlementResult(
            tx_ref=tx_ref,
            status="pending",
            outcome="pending",
            transaction_id=record.transaction_id if record else None,
            target=target,
            amount=amount,
            currency=currency,
        )
