"""Shared fixtures: in-memory database, gateway stub, wired services."""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["TRACING_ENABLED"] = "false"
os.environ["SETTLEMENT_LOCK_ENABLED"] = "false"
os.environ["WEBHOOK_TEST_MODE"] = "false"
os.environ["API_KEY"] = "test-api-key"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec-test"
os.environ["EMAIL_API_KEY"] = ""

from dataclasses import dataclass
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storepay.common.db import Base
from storepay.services.ledger.models import LedgerEntry
from storepay.services.ledger.service import LedgerService
from storepay.services.notification.email import PaymentMailer
from storepay.services.notification.models import Notification
from storepay.services.notification.service import NotificationService
from storepay.services.orders.models import Booking, Item, Order
from storepay.services.orders.service import OrderBookingService
from storepay.services.payments.gateway import GatewayClient
from storepay.services.payments.service import PaymentRecordStore
from storepay.services.payments.settlement import SettlementService
from storepay.services.payments.webhook import WebhookHandler
from storepay.services.settings.models import StoreSettings
from storepay.services.settings.service import SettingsService

WEBHOOK_SECRET = "whsec-test"
API_KEY = "test-api-key"
GATEWAY_URL = "https://gateway.test"


class GatewayStub:
    """In-process stand-in for the gateway REST API."""

    def __init__(self) -> None:
        self.verifications: dict[str, tuple[int, object]] = {}
        self.errors: dict[str, Exception] = {}
        self.requests: list[httpx.Request] = []
        self.initiated: list[dict] = []
        self.initiate_status = 201
        self.initiate_body: object = {"status": "success", "data": {"checkout_url": "https://checkout.test/pay/abc"}}

    def set_status(
        self,
        tx_ref: str,
        status: str,
        amount: str = "1000",
        currency: str = "MWK",
        meta: dict | None = None,
        reference: str | None = None,
    ) -> None:
        data = {
            "tx_ref": tx_ref,
            "status": status,
            "amount": amount,
            "currency": currency,
            "reference": reference or f"GW-{tx_ref}",
            "charges": 0,
            "customer": {"email": "buyer@example.com", "first_name": "Chisomo", "last_name": "Phiri"},
            "authorization": {"channel": "Mobile Money", "completed_at": "2026-10-18T10:00:00Z"},
            "meta": meta or {},
        }
        self.verifications[tx_ref] = (200, {"status": "success", "message": "Payment details retrieved", "data": data})

    def set_response(self, tx_ref: str, status_code: int, body: object) -> None:
        self.verifications[tx_ref] = (status_code, body)

    def verify_calls(self, tx_ref: str) -> int:
        return sum(1 for r in self.requests if r.url.path == f"/verify-payment/{tx_ref}")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/verify-payment/"):
            tx_ref = path.rsplit("/", 1)[-1]
            if tx_ref in self.errors:
                raise self.errors[tx_ref]
            status_code, body = self.verifications.get(tx_ref, (404, {"status": "failed", "message": "not found"}))
            if isinstance(body, (bytes, str)):
                return httpx.Response(status_code, content=body)
            return httpx.Response(status_code, json=body)
        if request.method == "POST" and path == "/payment":
            self.initiated.append(json.loads(request.content))
            return httpx.Response(self.initiate_status, json=self.initiate_body)
        return httpx.Response(404, json={"message": "unknown route"})


@dataclass
class Services:
    session_factory: sessionmaker
    gateway_stub: GatewayStub
    gateway: GatewayClient
    records: PaymentRecordStore
    ledger: LedgerService
    orders: OrderBookingService
    notifications: NotificationService
    mailer: PaymentMailer
    settings_service: SettingsService
    settlement: SettlementService

    def webhook_handler(self, test_mode: bool = False, secret: str = WEBHOOK_SECRET) -> WebhookHandler:
        return WebhookHandler(self.settlement, self.settings_service, secret=secret, test_mode=test_mode)

    def order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            return db.get(Order, order_id)

    def booking(self, booking_id: str) -> Booking:
        with self.session_factory() as db:
            return db.get(Booking, booking_id)

    def item(self, item_id: str) -> Item:
        with self.session_factory() as db:
            return db.get(Item, item_id)

    def ledger_entry(self, entry_id: str) -> LedgerEntry | None:
        with self.session_factory() as db:
            return db.get(LedgerEntry, entry_id)

    def ledger_count(self, **filters) -> int:
        with self.session_factory() as db:
            query = select(func.count(LedgerEntry.entry_id))
            for column, value in filters.items():
                query = query.where(getattr(LedgerEntry, column) == value)
            return db.execute(query).scalar_one()

    def notification_types(self) -> list[str]:
        with self.session_factory() as db:
            return list(db.execute(select(Notification.notification_type)).scalars())

    def save_settings(self, document: dict) -> None:
        with self.session_factory() as db:
            db.merge(StoreSettings(key="default", document=document))
            db.commit()

    def seed_order(self, order_id: str, status: str = "pending", items: list | None = None, **fields) -> None:
        with self.session_factory() as db:
            db.add(
                Order(
                    order_id=order_id,
                    order_number=fields.pop("order_number", f"N-{order_id}"),
                    customer_id=fields.pop("customer_id", "cust-1"),
                    customer_email=fields.pop("customer_email", "buyer@example.com"),
                    customer_name=fields.pop("customer_name", "Chisomo Phiri"),
                    status=status,
                    total_amount=fields.pop("total_amount", Decimal("1000")),
                    currency="MWK",
                    items=items or [],
                    **fields,
                )
            )
            db.commit()

    def seed_booking(self, booking_id: str, status: str = "pending") -> None:
        with self.session_factory() as db:
            db.add(
                Booking(
                    booking_id=booking_id,
                    booking_number=f"B-{booking_id}",
                    customer_id="cust-2",
                    customer_email="guest@example.com",
                    customer_name="Thoko Banda",
                    service_name="Consultation",
                    status=status,
                    total_amount=Decimal("2500"),
                    currency="MWK",
                )
            )
            db.commit()

    def seed_item(self, item_id: str, quantity: int, reserved: int = 0, **fields) -> None:
        with self.session_factory() as db:
            db.add(
                Item(
                    item_id=item_id,
                    name=fields.pop("name", item_id),
                    quantity=quantity,
                    reserved=reserved,
                    available=quantity - reserved,
                    **fields,
                )
            )
            db.commit()

    def seed_payment(
        self,
        tx_ref: str,
        transaction_id: str,
        order_id: str | None = None,
        booking_id: str | None = None,
        amount: Decimal = Decimal("1000"),
    ):
        return self.records.create_pending(
            tx_ref=tx_ref,
            transaction_id=transaction_id,
            amount=amount,
            currency="MWK",
            order_id=order_id,
            booking_id=booking_id,
            customer_email="buyer@example.com",
            customer_name="Chisomo Phiri",
            metadata={},
            checkout_url="https://checkout.test/pay/abc",
        )


@pytest.fixture
def session_factory():
    """Fresh in-memory schema per test; one shared connection across threads."""

    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def services(session_factory, gateway_stub) -> Services:
    gateway = GatewayClient(
        base_url=GATEWAY_URL,
        secret_key="sk-test",
        timeout_seconds=2.0,
        transport=httpx.MockTransport(gateway_stub.handler),
    )
    records = PaymentRecordStore(session_factory)
    ledger = LedgerService(session_factory)
    orders = OrderBookingService(session_factory)
    notifications = NotificationService(session_factory)
    mailer = PaymentMailer(records, api_key="")
    settings_service = SettingsService(session_factory)
    settlement = SettlementService(
        session_factory,
        gateway=gateway,
        records=records,
        ledger=ledger,
        orders=orders,
        notifications=notifications,
        mailer=mailer,
        settings_service=settings_service,
    )
    return Services(
        session_factory=session_factory,
        gateway_stub=gateway_stub,
        gateway=gateway,
        records=records,
        ledger=ledger,
        orders=orders,
        notifications=notifications,
        mailer=mailer,
        settings_service=settings_service,
        settlement=settlement,
    )


def webhook_body(event: str, data: dict) -> bytes:
    return json.dumps({"event": event, "data": data}).encode("utf-8")
