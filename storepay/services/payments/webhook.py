"""Gateway webhook ingress: authenticate, parse, dispatch, fall back.

The handler acknowledges every authenticated delivery. Processing errors are
recovered in-process by one verify-and-settle pass instead of relying on the
gateway to redeliver.
"""

import hashlib
import hmac
import json
from urllib.parse import urlencode

from pydantic import ValidationError

from storepay.common.config import settings
from storepay.common.errors import AuthenticationFailure, StorePayError
from storepay.common.logging import logger, source_ctx, tx_ref_ctx
from storepay.common.metrics import fallback_invocations_total, webhook_events_total, webhook_signature_failures_total
from storepay.services.payments.models import PaymentRecord
from storepay.services.payments.schemas import GatewayPayment, WebhookEnvelope, str_or_none
from storepay.services.payments.settlement import SettlementService
from storepay.services.settings.service import SettingsService

PAYMENT_SUCCESS = "payment.success"
PAYMENT_FAILED = "payment.failed"


def sign_body(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body, as the gateway sends it."""

    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> None:
    """Raise `AuthenticationFailure` unless `signature` matches the body."""

    if not secret:
        raise AuthenticationFailure("secret not configured")
    if not signature:
        raise AuthenticationFailure("missing signature")
    expected = sign_body(raw_body, secret).encode("ascii")
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(expected, provided):
        raise AuthenticationFailure("signature mismatch")


def redirect_url(record: PaymentRecord | None, tx_ref: str | None) -> str:
    """Where the customer's browser lands after the gateway checkout."""

    base = settings.app_base_url.rstrip("/")
    if not tx_ref:
        return f"{base}/"
    if record is not None and record.booking_id:
        return f"{base}/book-confirmed?{urlencode({'bookingId': record.booking_id, 'txRef': tx_ref})}"
    if record is not None and record.order_id:
        return f"{base}/order-confirmed?{urlencode({'orderId': record.order_id, 'txRef': tx_ref})}"
    return f"{base}/payment/status?{urlencode({'txRef': tx_ref})}"


class WebhookHandler:
    """Processes one gateway delivery end to end."""

    def __init__(
        self,
        settlement: SettlementService,
        settings_service: SettingsService,
        secret: str | None = None,
        test_mode: bool | None = None,
    ) -> None:
        self.settlement = settlement
        self.settings_service = settings_service
        self.secret = secret if secret is not None else settings.gateway_webhook_secret
        self.test_mode = settings.webhook_test_mode if test_mode is None else test_mode

    def authenticate(self, raw_body: bytes, signature: str | None) -> None:
        """Reject unauthenticated deliveries unless test mode is on."""

        try:
            verify_signature(raw_body, signature, self.secret)
        except AuthenticationFailure as exc:
            webhook_signature_failures_total.labels(reason=exc.reason, enforced=str(not self.test_mode)).inc()
            if not self.test_mode:
                logger.warning("webhook rejected reason=%s", exc.reason)
                raise
            logger.warning("webhook accepted in test mode despite reason=%s", exc.reason)

    async def handle(self, raw_body: bytes, signature: str | None) -> dict:
        """Authenticate and process a delivery; returns the acknowledgement body.

        Only `AuthenticationFailure` escapes. Everything else is logged,
        recovered through the fallback where a `tx_ref` is known, and
        acknowledged.
        """

        source_ctx.set("webhook")
        self.authenticate(raw_body, signature)

        try:
            body = json.loads(raw_body)
            envelope = WebhookEnvelope.model_validate(body)
        except (ValueError, ValidationError) as exc:
            logger.warning("webhook body is not a valid envelope error=%s", exc)
            webhook_events_total.labels(event="unknown", outcome="malformed").inc()
            return {"success": True, "status": "ignored"}

        event = envelope.event
        tx_ref = str_or_none(envelope.data.get("tx_ref"))
        if tx_ref:
            tx_ref_ctx.set(tx_ref)
        if event not in (PAYMENT_SUCCESS, PAYMENT_FAILED):
            logger.info("webhook event ignored event=%s", event)
            webhook_events_total.labels(event="other", outcome="ignored").inc()
            return {"success": True, "status": "ignored"}

        logger.info("webhook received event=%s", event)
        try:
            result = await self._dispatch(event, envelope.data)
        except Exception as exc:
            if isinstance(exc, StorePayError):
                logger.warning("webhook processing failed event=%s error=%s", event, exc)
            else:
                logger.exception("webhook processing crashed event=%s", event)
            webhook_events_total.labels(event=event, outcome="error").inc()
            await self._fallback(event, tx_ref)
            return {"success": True, "status": "fallback"}

        webhook_events_total.labels(event=event, outcome=result.outcome).inc()
        return {"success": True, "status": result.outcome, "data": result.as_response()}

    async def _dispatch(self, event: str, data: dict):
        payment = GatewayPayment.from_webhook(data)
        options = self.settings_service.load_options()
        if event == PAYMENT_SUCCESS:
            return await self.settlement.finalize_success(payment, options, source="webhook")
        return await self.settlement.record_failure(payment, options, source="webhook")

    async def _fallback(self, event: str, tx_ref: str | None) -> None:
        """One verify-and-settle pass. Its own failure is logged, not raised."""

        if not tx_ref:
            logger.warning("webhook fallback skipped, no tx_ref event=%s", event)
            fallback_invocations_total.labels(event=event, outcome="skipped").inc()
            return
        try:
            result = await self.settlement.verify_and_settle(tx_ref, source="fallback")
        except Exception:
            logger.exception("webhook fallback failed event=%s", event)
            fallback_invocations_total.labels(event=event, outcome="error").inc()
            return
        logger.info("webhook fallback finished event=%s status=%s outcome=%s", event, result.status, result.outcome)
        fallback_invocations_total.labels(event=event, outcome=result.outcome).inc()
