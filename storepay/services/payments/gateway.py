"""HTTP client for the payment gateway (verify-payment and payment initiation)."""

from decimal import Decimal

import httpx

from storepay.common.config import settings
from storepay.common.errors import GatewayError
from storepay.common.logging import logger
from storepay.common.metrics import gateway_verifications_total
from storepay.services.payments.schemas import VerificationResult, map_payment_method, parse_amount, str_or_none


def _normalize_status(body: dict, data: dict) -> str:
    if body.get("status") == "success" and data.get("status") == "success":
        return "success"
    if data.get("status") == "failed":
        return "failed"
    return "pending"


class GatewayClient:
    """Talks to the gateway REST API with a bearer secret key.

    Verification never raises: any HTTP, transport, timeout or parse failure is
    logged and reported as "not verified". There are no retries here; the
    caller's fallback path is the retry mechanism.
    """

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.gateway_secret_key
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
            headers={"Accept": "application/json", "Authorization": f"Bearer {self.secret_key}"},
        )

    async def fetch_verification(self, tx_ref: str) -> VerificationResult | None:
        """Return the normalized verification for `tx_ref`, or None on any failure."""

        try:
            async with self._client() as client:
                resp = await client.get(f"/verify-payment/{tx_ref}")
            if resp.status_code >= 400:
                logger.warning("gateway verification rejected tx_ref=%s status_code=%s", tx_ref, resp.status_code)
                gateway_verifications_total.labels(result="http_error").inc()
                return None
            body = resp.json()
        except httpx.TimeoutException:
            logger.warning("gateway verification timed out tx_ref=%s timeout=%s", tx_ref, self.timeout_seconds)
            gateway_verifications_total.labels(result="timeout").inc()
            return None
        except httpx.HTTPError as exc:
            logger.warning("gateway verification transport error tx_ref=%s error=%s", tx_ref, exc)
            gateway_verifications_total.labels(result="transport_error").inc()
            return None
        except ValueError as exc:
            logger.warning("gateway verification returned invalid json tx_ref=%s error=%s", tx_ref, exc)
            gateway_verifications_total.labels(result="invalid_body").inc()
            return None

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            logger.warning("gateway verification has no data tx_ref=%s", tx_ref)
            gateway_verifications_total.labels(result="invalid_body").inc()
            return None

        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        authorization = data.get("authorization") if isinstance(data.get("authorization"), dict) else {}
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        name = " ".join(
            part for part in [customer.get("first_name"), customer.get("last_name")] if part
        ).strip()

        result = VerificationResult(
            tx_ref=str(data.get("tx_ref") or tx_ref),
            status=_normalize_status(body, data),
            reference=str_or_none(data.get("reference")),
            amount=parse_amount(data.get("amount")),
            currency=str_or_none(data.get("currency")),
            payment_method=map_payment_method(str_or_none(authorization.get("channel"))),
            customer_email=str_or_none(customer.get("email")),
            customer_name=name or None,
            order_id=str_or_none(meta.get("orderId")),
            booking_id=str_or_none(meta.get("bookingId")),
            metadata=meta,
            charges=data.get("charges"),
            completed_at=str_or_none(authorization.get("completed_at")),
        )
        gateway_verifications_total.labels(result=result.status).inc()
        logger.info("gateway verification tx_ref=%s status=%s", tx_ref, result.status)
        return result

    async def verify(self, tx_ref: str) -> bool:
        """True only when the gateway reports the transaction as successful."""

        result = await self.fetch_verification(tx_ref)
        return result is not None and result.verified

    async def initiate_payment(
        self,
        *,
        tx_ref: str,
        amount: Decimal,
        currency: str,
        email: str,
        first_name: str,
        last_name: str,
        callback_url: str,
        return_url: str,
    ) -> str:
        """Open a hosted checkout and return its URL. Raises `GatewayError`."""

        payload = {
            "amount": f"{amount:.2f}",
            "currency": currency,
            "tx_ref": tx_ref,
            "callback_url": callback_url,
            "return_url": return_url,
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
        }
        try:
            async with self._client() as client:
                resp = await client.post("/payment", json=payload)
        except httpx.HTTPError as exc:
            logger.error("gateway payment initiation failed tx_ref=%s error=%s", tx_ref, exc)
            raise GatewayError(f"payment service unreachable: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            logger.error("gateway rejected payment initiation tx_ref=%s status_code=%s", tx_ref, resp.status_code)
            raise GatewayError(message or f"gateway error: {resp.status_code}")

        data = body.get("data") if isinstance(body, dict) else None
        checkout_url = None
        if isinstance(data, dict):
            checkout_url = data.get("checkout_url")
        if not checkout_url and isinstance(body, dict):
            checkout_url = body.get("checkout_url")
        if not checkout_url:
            raise GatewayError("gateway response has no checkout_url")
        return str(checkout_url)
