"""Ledger request/response schemas."""

from decimal import Decimal

from pydantic import BaseModel, Field


class LedgerEntryCreate(BaseModel):
    """Fields of a new ledger entry; the id is supplied separately."""

    entry_type: str
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    order_id: str | None = None
    booking_id: str | None = None
    payment_id: str | None = None
    description: str = ""
    metadata: dict = Field(default_factory=dict)
    created_by: str | None = None


class ReversalRequest(BaseModel):
    """Body accepted by the ops reversal endpoint."""

    reason: str = Field(min_length=1)
    reversed_by: str = Field(min_length=1)
