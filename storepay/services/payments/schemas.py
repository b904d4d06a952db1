"""Payment schemas: gateway payloads, normalized results, API bodies."""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storepay.common.errors import MalformedPayload


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class PaymentMethod(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"


def map_payment_method(channel: str | None) -> str | None:
    """Map a gateway channel/method label to a `PaymentMethod` value."""

    if not channel:
        return None
    lowered = channel.lower()
    if "card" in lowered:
        return PaymentMethod.CARD.value
    if "mobile" in lowered or "momo" in lowered:
        return PaymentMethod.MOBILE_MONEY.value
    if "bank" in lowered or "transfer" in lowered:
        return PaymentMethod.BANK_TRANSFER.value
    return PaymentMethod.CARD.value


def parse_amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _full_name(customer: dict) -> str | None:
    first = (customer.get("first_name") or "").strip()
    last = (customer.get("last_name") or "").strip()
    name = f"{first} {last}".strip()
    return name or None


def str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


class GatewayPayment(BaseModel):
    """Normalized input to the settlement path, from a webhook or a verification."""

    tx_ref: str
    transaction_id: str | None = None
    session_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    payment_method: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    order_id: str | None = None
    booking_id: str | None = None
    metadata: dict = Field(default_factory=dict)
    failure_reason: str | None = None

    @classmethod
    def from_webhook(cls, data: dict) -> "GatewayPayment":
        """Build from the `data` object of a webhook envelope."""

        if not isinstance(data, dict):
            raise MalformedPayload("webhook data is not an object")
        tx_ref = str_or_none(data.get("tx_ref"))
        if not tx_ref:
            raise MalformedPayload("webhook data has no tx_ref")
        metadata = data.get("metadata") or data.get("meta") or {}
        if not isinstance(metadata, dict):
            metadata = {}
        customer = data.get("customer") or {}
        if not isinstance(customer, dict):
            customer = {}
        return cls(
            tx_ref=tx_ref,
            transaction_id=str_or_none(data.get("transaction_id")),
            session_id=str_or_none(data.get("session_id")),
            amount=parse_amount(data.get("amount")),
            currency=str_or_none(data.get("currency")),
            payment_method=map_payment_method(str_or_none(data.get("payment_method"))),
            customer_email=str_or_none(customer.get("email") or metadata.get("customerEmail")),
            customer_name=_full_name(customer) or str_or_none(metadata.get("customerName")),
            order_id=str_or_none(metadata.get("orderId")),
            booking_id=str_or_none(metadata.get("bookingId")),
            metadata=metadata,
            failure_reason=str_or_none(data.get("failure_reason")),
        )


class VerificationResult(BaseModel):
    """Gateway verify-payment response reduced to what settlement needs."""

    tx_ref: str
    status: Literal["success", "failed", "pending"]
    reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    payment_method: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    order_id: str | None = None
    booking_id: str | None = None
    metadata: dict = Field(default_factory=dict)
    charges: Any = None
    completed_at: str | None = None

    @property
    def verified(self) -> bool:
        return self.status == "success"

    def to_payment(self) -> GatewayPayment:
        """Settlement input for the poll path.

        The gateway `reference` is the gateway's own id, not our transaction
        id, so it is kept in metadata only.
        """

        metadata = dict(self.metadata)
        if self.reference:
            metadata.setdefault("gatewayReference", self.reference)
        return GatewayPayment(
            tx_ref=self.tx_ref,
            amount=self.amount,
            currency=self.currency,
            payment_method=self.payment_method,
            customer_email=self.customer_email,
            customer_name=self.customer_name,
            order_id=self.order_id,
            booking_id=self.booking_id,
            metadata=metadata,
            failure_reason=None if self.verified else f"gateway status {self.status}",
        )


class WebhookEnvelope(BaseModel):
    """Top-level webhook body `{event, data}`."""

    model_config = ConfigDict(extra="allow")

    event: str = ""
    data: dict = Field(default_factory=dict)


class CreatePaymentRequest(BaseModel):
    """Body accepted by `POST /api/payments`."""

    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    customer_email: str = Field(alias="customerEmail", min_length=3)
    customer_name: str | None = Field(default=None, alias="customerName")
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    order_id: str | None = Field(default=None, alias="orderId")
    booking_id: str | None = Field(default=None, alias="bookingId")
    metadata: dict = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper(cls, value: str | None) -> str | None:
        return value.upper() if value else value

    @model_validator(mode="after")
    def _one_target(self) -> "CreatePaymentRequest":
        if bool(self.order_id) == bool(self.booking_id):
            raise ValueError("exactly one of orderId or bookingId is required")
        return self

    def split_name(self) -> tuple[str, str]:
        """First/last name, falling back to splitting `customerName`."""

        first = self.first_name or ""
        last = self.last_name or ""
        if not first and not last and self.customer_name:
            parts = self.customer_name.split()
            first = parts[0] if parts else ""
            last = " ".join(parts[1:])
        return first, last
