"""Customer payment emails sent through a transactional email HTTP API."""

from decimal import Decimal
from typing import Literal

import httpx
from pydantic import BaseModel

from storepay.common.config import settings
from storepay.common.logging import logger
from storepay.services.payments.service import PaymentRecordStore

_METHOD_LABELS = {"card": "Card", "mobile_money": "Mobile Money", "bank_transfer": "Bank Transfer"}


class PaymentEmail(BaseModel):
    """Data rendered into a payment success/failure email."""

    status: Literal["success", "failed"]
    customer_email: str | None
    customer_name: str | None = None
    amount: Decimal
    currency: str
    tx_ref: str
    transaction_id: str | None = None
    order_id: str | None = None
    booking_id: str | None = None
    reference: str | None = None
    payment_method: str | None = None
    failure_reason: str | None = None


def render_payment_email(email: PaymentEmail) -> tuple[str, str]:
    """Return `(subject, text)` for a payment email."""

    label = "Order" if email.order_id else "Booking"
    reference = email.reference or email.order_id or email.booking_id or email.tx_ref
    name = email.customer_name or "Customer"
    amount = f"{email.currency} {email.amount:,.2f}"
    lines = [f"Dear {name},", ""]
    if email.status == "success":
        subject = f"Payment Confirmed - {label} #{reference}"
        lines.append("We're pleased to confirm that your payment has been successfully processed.")
    else:
        subject = f"Payment Failed - {label} #{reference}"
        lines.append("Unfortunately, your payment could not be processed.")
        if email.failure_reason:
            lines.append(f"Reason: {email.failure_reason}")
    lines += [
        "",
        f"{label} Reference: #{reference}",
        f"Transaction ID: {email.tx_ref}",
        f"Amount: {amount}",
    ]
    if email.payment_method:
        lines.append(f"Payment Method: {_METHOD_LABELS.get(email.payment_method, email.payment_method)}")
    return subject, "\n".join(lines)


class PaymentMailer:
    """Sends each payment email at most once per payment record and status."""

    def __init__(
        self,
        records: PaymentRecordStore,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.records = records
        self.api_url = api_url or settings.email_api_url
        self.api_key = api_key if api_key is not None else settings.email_api_key
        self.sender = sender or settings.email_from
        self.transport = transport

    async def send_payment_email(self, email: PaymentEmail, source: str = "unknown") -> bool:
        """Deliver the email; returns False when skipped.

        Raises on delivery failure after releasing the sent flag.
        """

        if not email.customer_email:
            logger.info("payment email skipped, no customer email source=%s tx_ref=%s", source, email.tx_ref)
            return False
        if not self.records.claim_email(email.tx_ref, email.status):
            logger.info("payment %s email already sent source=%s tx_ref=%s", email.status, source, email.tx_ref)
            return False

        subject, text = render_payment_email(email)
        if not self.api_key:
            logger.info("email api not configured, logging email to=%s subject=%s", email.customer_email, subject)
            return True

        try:
            async with httpx.AsyncClient(timeout=settings.email_timeout_seconds, transport=self.transport) as client:
                resp = await client.post(
                    self.api_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.sender, "to": email.customer_email, "subject": subject, "text": text},
                )
            resp.raise_for_status()
        except httpx.HTTPError:
            self.records.release_email(email.tx_ref, email.status)
            raise
        logger.info("payment %s email sent source=%s tx_ref=%s", email.status, source, email.tx_ref)
        return True
