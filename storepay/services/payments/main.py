"""Payments service API.

Gateway webhook ingress, the customer verify poll, payment-session creation
and operator endpoints over the payment records and the ledger.
"""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.errors import (
    AuthenticationFailure,
    GatewayError,
    MalformedPayload,
    StorePayError,
    TransactionNotFound,
)
from storepay.common.locks import SettlementLock
from storepay.common.logging import configure_logging, logger, trace_id_ctx
from storepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.ledger.schemas import ReversalRequest
from storepay.services.ledger.service import LedgerService
from storepay.services.notification.email import PaymentMailer
from storepay.services.notification.service import NotificationService
from storepay.services.orders.service import OrderBookingService
from storepay.services.payments.gateway import GatewayClient
from storepay.services.payments.schemas import CreatePaymentRequest
from storepay.services.payments.service import PaymentRecordStore
from storepay.services.payments.settlement import SettlementService
from storepay.services.payments.webhook import WebhookHandler, redirect_url
from storepay.services.settings.service import SettingsService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    [
        "database_url",
        "redis_url",
        "gateway_base_url",
        "gateway_secret_key",
        "gateway_webhook_secret",
        "webhook_test_mode",
        "settlement_lock_enabled",
        "app_base_url",
    ]
)

records = PaymentRecordStore(SessionLocal)
ledger = LedgerService(SessionLocal)
gateway = GatewayClient()
settings_service = SettingsService(SessionLocal)
lock = SettlementLock()
settlement = SettlementService(
    SessionLocal,
    gateway=gateway,
    records=records,
    ledger=ledger,
    orders=OrderBookingService(SessionLocal),
    notifications=NotificationService(SessionLocal),
    mailer=PaymentMailer(records),
    settings_service=settings_service,
    lock=lock,
)
webhook_handler = WebhookHandler(settlement, settings_service)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Release the Redis connection used by the settlement lock."""

    yield
    await lock.close()


app = FastAPI(title="StorePay Payments", lifespan=lifespan)
instrument_app(app)


def get_settlement() -> SettlementService:
    return settlement


def get_webhook_handler() -> WebhookHandler:
    return webhook_handler


def get_records() -> PaymentRecordStore:
    return records


def get_ledger() -> LedgerService:
    return ledger


def get_gateway() -> GatewayClient:
    return gateway


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject operator requests without the configured API key."""

    if not settings.api_key or x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.post("/api/webhooks/gateway")
async def gateway_webhook(request: Request, handler: WebhookHandler = Depends(get_webhook_handler)):
    """Gateway push notification. 401 only when authentication fails."""

    raw_body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    try:
        return await handler.handle(raw_body, signature)
    except AuthenticationFailure as exc:
        return _error(401, str(exc))


@app.get("/api/webhooks/gateway")
def gateway_return(
    tx_ref: str | None = Query(default=None),
    tx_ref_camel: str | None = Query(default=None, alias="txRef"),
    payment_records: PaymentRecordStore = Depends(get_records),
):
    """Browser return from the hosted checkout; redirects to a confirmation page."""

    tx_ref = tx_ref or tx_ref_camel
    record = None
    if tx_ref:
        try:
            record = payment_records.get_by_tx_ref(tx_ref)
        except Exception:
            logger.exception("payment record lookup failed for redirect tx_ref=%s", tx_ref)
    return RedirectResponse(redirect_url(record, tx_ref), status_code=302)


@app.get("/api/payments/verify")
async def verify_payment(
    tx_ref: str | None = Query(default=None, alias="txRef"),
    service: SettlementService = Depends(get_settlement),
):
    """Verify `txRef` with the gateway and settle it; safe to call repeatedly."""

    if not tx_ref:
        return _error(400, "txRef is required")
    try:
        result = await service.verify_and_settle(tx_ref, source="poll")
    except TransactionNotFound:
        return _error(404, "Transaction not found or verification failed")
    except MalformedPayload as exc:
        return _error(400, str(exc))
    except StorePayError as exc:
        logger.warning("payment verification failed tx_ref=%s error=%s", tx_ref, exc)
        return _error(409, str(exc))
    return {"success": True, "data": result.as_response()}


@app.post("/api/payments")
async def create_payment(
    req: CreatePaymentRequest,
    payment_records: PaymentRecordStore = Depends(get_records),
    gateway_client: GatewayClient = Depends(get_gateway),
):
    """Open a gateway checkout session and persist its pending payment record.

    The transaction id generated here doubles as the gateway `tx_ref` and keys
    the ledger entry on settlement.
    """

    transaction_id = str(uuid4())
    tx_ref = transaction_id
    currency = req.currency or settings.default_currency
    base = settings.app_base_url.rstrip("/")
    if req.booking_id:
        callback_url = f"{base}/book-confirmed?bookingId={req.booking_id}&txRef={tx_ref}"
    else:
        callback_url = f"{base}/order-confirmed?orderId={req.order_id}&txRef={tx_ref}"
    first_name, last_name = req.split_name()

    try:
        checkout_url = await gateway_client.initiate_payment(
            tx_ref=tx_ref,
            amount=req.amount,
            currency=currency,
            email=req.customer_email,
            first_name=first_name,
            last_name=last_name,
            callback_url=callback_url,
            return_url=callback_url,
        )
    except GatewayError as exc:
        return _error(502, str(exc))

    metadata = {
        **req.metadata,
        "orderId": req.order_id,
        "bookingId": req.booking_id,
        "customerEmail": req.customer_email,
        "customerName": req.customer_name or f"{first_name} {last_name}".strip() or None,
    }
    record = payment_records.create_pending(
        tx_ref=tx_ref,
        transaction_id=transaction_id,
        amount=req.amount,
        currency=currency,
        order_id=req.order_id,
        booking_id=req.booking_id,
        customer_email=req.customer_email,
        customer_name=metadata["customerName"],
        metadata={k: v for k, v in metadata.items() if v is not None},
        checkout_url=checkout_url,
    )
    return {
        "success": True,
        "data": {
            "txRef": record.tx_ref,
            "transactionId": record.transaction_id,
            "checkoutUrl": record.checkout_url,
            "status": record.status,
        },
    }


@app.get("/ops/payments/{tx_ref}")
def get_payment(
    tx_ref: str,
    x_api_key: str | None = Header(default=None),
    payment_records: PaymentRecordStore = Depends(get_records),
):
    """Operator view of one payment record."""

    enforce_api_key(x_api_key)
    record = payment_records.get_by_tx_ref(tx_ref)
    if record is None:
        raise HTTPException(status_code=404, detail="payment not found")
    return {
        "tx_ref": record.tx_ref,
        "transaction_id": record.transaction_id,
        "status": record.status,
        "order_id": record.order_id,
        "booking_id": record.booking_id,
        "amount": str(record.amount),
        "currency": record.currency,
        "payment_method": record.payment_method,
        "is_fallback": record.is_fallback,
        "failure_reason": record.failure_reason,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }


@app.get("/ops/ledger/reconciliation")
def ledger_reconciliation(
    limit: int = Query(default=1000, ge=1, le=10000),
    x_api_key: str | None = Header(default=None),
    ledger_service: LedgerService = Depends(get_ledger),
):
    """Completed payments without a ledger entry, and entries without a completed payment."""

    enforce_api_key(x_api_key)
    return ledger_service.reconciliation_report(limit)


def _ledger_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    if "not found" in message:
        return HTTPException(status_code=404, detail=message)
    return HTTPException(status_code=409, detail=message)


@app.post("/ops/ledger/{entry_id}/reverse")
def reverse_ledger_entry(
    entry_id: str,
    req: ReversalRequest,
    x_api_key: str | None = Header(default=None),
    ledger_service: LedgerService = Depends(get_ledger),
):
    """Post the offsetting entry for a settlement entry (idempotent)."""

    enforce_api_key(x_api_key)
    try:
        reversal = ledger_service.reverse_entry(entry_id, req.reason, req.reversed_by)
    except ValueError as exc:
        raise _ledger_error(exc) from exc
    return {
        "entry_id": reversal.entry_id,
        "reversed_entry_id": reversal.reversed_entry_id,
        "amount": str(reversal.amount),
        "currency": reversal.currency,
        "status": reversal.status,
    }


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
