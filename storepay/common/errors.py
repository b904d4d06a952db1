"""Exception taxonomy for the settlement path.

Only failures inside the settlement write path (record upsert, target
resolution, idempotency gate, verification, paid transition, ledger insert)
propagate. Notification and email failures are logged where they happen.
"""


class StorePayError(Exception):
    """Base class for settlement errors."""


class AuthenticationFailure(StorePayError):
    """Webhook signature missing, unconfigured, or not matching the body."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"webhook authentication failed: {reason}")
        self.reason = reason


class MalformedPayload(StorePayError):
    """Payload cannot be settled: bad JSON, missing correlation id, or ambiguous target."""


class MissingTransactionId(MalformedPayload):
    """Completed payment has no transaction id to key the ledger entry on."""


class TargetNotFound(MalformedPayload):
    """Resolved order/booking does not exist."""


class VerificationFailure(StorePayError):
    """Gateway did not confirm the transaction as successful."""


class TransactionNotFound(VerificationFailure):
    """Gateway lookup for a reference failed entirely."""


class InvalidTransition(StorePayError, ValueError):
    """Order/booking status change not permitted from its current status."""


class ConcurrentUpdate(StorePayError):
    """Compare-and-swap on an order/booking lost against another writer."""


class SettlementBusy(StorePayError):
    """Per-reference settlement lock is held by another pass."""


class GatewayError(StorePayError):
    """Gateway rejected or failed a payment-session request."""
