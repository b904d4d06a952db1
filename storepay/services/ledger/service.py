"""Ledger writes: deterministic settlement entries, reversals, reconciliation."""

from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from storepay.common.errors import MalformedPayload
from storepay.common.logging import logger
from storepay.common.targets import target_from_ids
from storepay.services.ledger.models import LedgerEntry
from storepay.services.ledger.schemas import LedgerEntryCreate
from storepay.services.payments.models import PaymentRecord

SETTLEMENT_ENTRY_TYPES = ("order_sale", "booking_payment")


class LedgerService:
    """Append-only ledger. Entries are inserted, never updated or deleted."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @staticmethod
    def entry_exists(db, entry_id: str) -> bool:
        return db.get(LedgerEntry, entry_id) is not None

    def create_entry(
        self,
        db,
        entry: LedgerEntryCreate,
        *,
        entry_id: str | None = None,
        auto_create: bool = True,
        skip_settings_check: bool = False,
    ) -> str | None:
        """Stage one entry in the caller's session and flush it.

        Returns the entry id, or None when auto-creation is disabled and the
        caller did not ask to skip that check. A duplicate `entry_id` raises
        `IntegrityError` from the flush; the caller owns the rollback.
        """

        if not auto_create and not skip_settings_check:
            logger.info("ledger entry skipped, auto-creation disabled entry_id=%s", entry_id)
            return None

        row = LedgerEntry(
            entry_id=entry_id or str(uuid4()),
            entry_type=entry.entry_type,
            status="confirmed",
            amount=entry.amount,
            currency=entry.currency,
            order_id=entry.order_id,
            booking_id=entry.booking_id,
            payment_id=entry.payment_id,
            description=entry.description,
            entry_metadata=entry.metadata,
            created_by=entry.created_by,
        )
        db.add(row)
        db.flush()
        return row.entry_id

    def reverse_entry(self, entry_id: str, reason: str, reversed_by: str) -> LedgerEntry:
        """Create the offsetting entry for `entry_id` exactly once.

        The reversal id is `reversal_<entry_id>`; repeating the call returns the
        existing reversal.
        """

        reversal_id = f"reversal_{entry_id}"
        with self.session_factory() as db:
            original = db.get(LedgerEntry, entry_id)
            if original is None:
                raise ValueError(f"ledger entry not found: {entry_id}")
            if original.reversed_entry_id is not None:
                raise ValueError(f"ledger entry {entry_id} is itself a reversal")
            existing = db.get(LedgerEntry, reversal_id)
            if existing is not None:
                return existing

            reversal = LedgerEntry(
                entry_id=reversal_id,
                entry_type=original.entry_type,
                status="reversed",
                amount=-original.amount,
                currency=original.currency,
                order_id=original.order_id,
                booking_id=original.booking_id,
                payment_id=original.payment_id,
                description=f"Reversal: {original.description}",
                entry_metadata={
                    **(original.entry_metadata or {}),
                    "reversedEntryId": entry_id,
                    "reversalReason": reason,
                },
                reversed_entry_id=entry_id,
                reversal_reason=reason,
                created_by=reversed_by,
            )
            db.add(reversal)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("ledger reversal raced entry_id=%s", entry_id)
                return db.get(LedgerEntry, reversal_id)
            logger.info("ledger entry reversed entry_id=%s reversal_id=%s", entry_id, reversal_id)
            return reversal

    def reconciliation_report(self, limit: int = 1000) -> dict:
        """Compare completed payments against their settlement entries."""

        with self.session_factory() as db:
            payments = db.execute(
                select(PaymentRecord)
                .where(PaymentRecord.status == "completed")
                .order_by(PaymentRecord.completed_at)
                .limit(limit)
            ).scalars().all()

            expected: dict[str, PaymentRecord] = {}
            unresolvable = []
            for payment in payments:
                if not payment.transaction_id:
                    unresolvable.append({"tx_ref": payment.tx_ref, "reason": "missing transaction id"})
                    continue
                try:
                    target = target_from_ids(payment.order_id, payment.booking_id)
                except MalformedPayload as exc:
                    unresolvable.append({"tx_ref": payment.tx_ref, "reason": str(exc)})
                    continue
                expected[target.ledger_entry_id(payment.transaction_id)] = payment

            present = set()
            if expected:
                present = set(
                    db.execute(
                        select(LedgerEntry.entry_id).where(LedgerEntry.entry_id.in_(list(expected)))
                    ).scalars()
                )
            missing = [
                {
                    "tx_ref": payment.tx_ref,
                    "transaction_id": payment.transaction_id,
                    "expected_entry_id": entry_id,
                    "amount": str(payment.amount),
                    "currency": payment.currency,
                }
                for entry_id, payment in expected.items()
                if entry_id not in present
            ]

            orphaned = db.execute(
                select(LedgerEntry.entry_id, LedgerEntry.payment_id, PaymentRecord.status)
                .outerjoin(PaymentRecord, PaymentRecord.transaction_id == LedgerEntry.payment_id)
                .where(
                    LedgerEntry.entry_type.in_(SETTLEMENT_ENTRY_TYPES),
                    LedgerEntry.reversed_entry_id.is_(None),
                )
                .where((PaymentRecord.status.is_(None)) | (PaymentRecord.status != "completed"))
                .limit(limit)
            ).all()

            totals = db.execute(
                select(
                    LedgerEntry.currency,
                    func.sum(LedgerEntry.amount).label("net"),
                    func.count(LedgerEntry.entry_id).label("entry_count"),
                )
                .group_by(LedgerEntry.currency)
                .order_by(LedgerEntry.currency)
            ).all()

        return {
            "payments_checked": len(payments),
            "missing_count": len(missing),
            "missing_entries": missing,
            "unresolvable_payments": unresolvable,
            "orphaned_entries": [
                {"entry_id": row.entry_id, "payment_id": row.payment_id, "payment_status": row.status}
                for row in orphaned
            ],
            "totals": [
                {
                    "currency": row.currency,
                    "net": str(Decimal(str(row.net or 0)).quantize(Decimal("0.01"))),
                    "entry_count": int(row.entry_count or 0),
                }
                for row in totals
            ],
        }
