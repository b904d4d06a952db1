"""Settlement path: idempotence, verification guard, fallback convergence."""

import asyncio
from decimal import Decimal

import pytest

from storepay.common.errors import MissingTransactionId, TransactionNotFound, VerificationFailure
from storepay.services.payments.schemas import GatewayPayment
from storepay.services.payments.webhook import sign_body
from storepay.services.settings.service import LedgerOptions, SettlementOptions

from conftest import WEBHOOK_SECRET, webhook_body


def _success_payment(tx_ref="TX1", transaction_id="abc123", order_id="ORD1", **extra) -> GatewayPayment:
    return GatewayPayment(
        tx_ref=tx_ref,
        transaction_id=transaction_id,
        amount=Decimal("1000"),
        currency="MWK",
        payment_method="mobile_money",
        order_id=order_id,
        **extra,
    )


def _success_body(tx_ref="TX1", transaction_id="abc123", order_id="ORD1") -> bytes:
    return webhook_body(
        "payment.success",
        {
            "tx_ref": tx_ref,
            "transaction_id": transaction_id,
            "amount": 1000,
            "currency": "MWK",
            "payment_method": "Mobile Money",
            "metadata": {"orderId": order_id},
        },
    )


@pytest.fixture
def settled_order(services):
    services.seed_order("ORD1")
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "success", meta={"orderId": "ORD1"})
    return services


@pytest.mark.asyncio
async def test_webhook_success_settles_order(settled_order):
    """TX1/abc123/ORD1 for 1000 MWK ends completed, paid, and booked once."""

    services = settled_order
    handler = services.webhook_handler()
    raw = _success_body()

    ack = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))

    assert ack["success"] is True
    assert ack["status"] == "settled"
    assert services.records.get_by_tx_ref("TX1").status == "completed"
    order = services.order("ORD1")
    assert order.status == "paid"
    assert order.payment["paymentId"] == "abc123"
    assert order.payment["txRef"] == "TX1"
    entry = services.ledger_entry("payment_abc123")
    assert entry is not None
    assert entry.amount == Decimal("1000")
    assert entry.entry_type == "order_sale"
    assert entry.description == "Order payment: N-ORD1"


@pytest.mark.asyncio
async def test_duplicate_webhook_delivery_keeps_one_entry(settled_order):
    """Gateway retry of the same delivery is a no-op."""

    services = settled_order
    handler = services.webhook_handler()
    raw = _success_body()
    signature = sign_body(raw, WEBHOOK_SECRET)

    first = await handler.handle(raw, signature)
    second = await handler.handle(raw, signature)

    assert first["status"] == "settled"
    assert second["status"] == "already_processed"
    assert services.ledger_count(payment_id="abc123") == 1
    assert services.notification_types().count("ORDER_PAID") == 1


@pytest.mark.asyncio
async def test_duplicate_pass_stops_before_gateway_call(settled_order):
    """Once the entry exists, repeats do not call the gateway again."""

    services = settled_order
    options = SettlementOptions()
    await services.settlement.finalize_success(_success_payment(), options, source="webhook")
    calls = services.gateway_stub.verify_calls("TX1")

    result = await services.settlement.finalize_success(_success_payment(), options, source="webhook")

    assert result.already_processed
    assert services.gateway_stub.verify_calls("TX1") == calls


@pytest.mark.asyncio
async def test_concurrent_finalize_settles_exactly_once(services):
    """N overlapping passes produce one ledger entry and one inventory deduction."""

    services.seed_item("SKU1", quantity=10, reserved=2)
    services.seed_order("ORD1", items=[{"productId": "SKU1", "quantity": 2}])
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "success")
    options = SettlementOptions()

    results = await asyncio.gather(
        *[services.settlement.finalize_success(_success_payment(), options, source="webhook") for _ in range(8)]
    )

    assert [r.outcome for r in results].count("settled") == 1
    assert all(r.status == "completed" for r in results)
    assert services.ledger_count(payment_id="abc123") == 1
    assert services.order("ORD1").status == "paid"
    item = services.item("SKU1")
    assert item.quantity == 8
    assert item.reserved == 0
    assert item.available == 8


@pytest.mark.asyncio
async def test_unverified_payload_never_marks_paid(services):
    """A success payload the gateway does not confirm leaves the order alone."""

    services.seed_order("ORD1")
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "pending")

    with pytest.raises(VerificationFailure):
        await services.settlement.finalize_success(_success_payment(), SettlementOptions(), source="webhook")

    assert services.order("ORD1").status == "pending"
    assert services.ledger_count() == 0


@pytest.mark.asyncio
async def test_unverified_webhook_falls_back_and_acknowledges(services):
    services.seed_order("ORD1")
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "pending")
    handler = services.webhook_handler()
    raw = _success_body()

    ack = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))

    assert ack == {"success": True, "status": "fallback"}
    assert services.order("ORD1").status == "pending"
    assert services.ledger_count() == 0


@pytest.mark.asyncio
async def test_fallback_completes_settlement_after_failed_pass(settled_order, monkeypatch):
    """A pass that fails at the gate is finished by the fallback, once."""

    services = settled_order
    original = services.ledger.entry_exists
    calls = {"n": 0}

    def flaky_entry_exists(db, entry_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("ledger store unavailable")
        return original(db, entry_id)

    monkeypatch.setattr(services.ledger, "entry_exists", flaky_entry_exists)
    handler = services.webhook_handler()
    raw = _success_body()

    ack = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))
    again = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))

    assert ack["status"] == "fallback"
    assert again["status"] == "already_processed"
    assert services.order("ORD1").status == "paid"
    assert services.ledger_count(payment_id="abc123") == 1


def _snapshot(services, tx_ref, order_id, transaction_id):
    record = services.records.get_by_tx_ref(tx_ref)
    entry = services.ledger_entry(f"payment_{transaction_id}")
    return {
        "record_status": record.status,
        "order_status": services.order(order_id).status,
        "ledger_entries": services.ledger_count(payment_id=transaction_id),
        "ledger_amount": entry.amount if entry else None,
    }


@pytest.mark.asyncio
async def test_webhook_and_poll_order_does_not_matter(services):
    """Webhook-then-poll and poll-then-webhook converge on the same state."""

    for tx_ref, transaction_id, order_id in [("TXA", "tid-a", "ORDA"), ("TXB", "tid-b", "ORDB")]:
        services.seed_order(order_id)
        services.seed_payment(tx_ref, transaction_id, order_id=order_id)
        services.gateway_stub.set_status(tx_ref, "success", meta={"orderId": order_id})
    handler = services.webhook_handler()

    raw_a = _success_body("TXA", "tid-a", "ORDA")
    await handler.handle(raw_a, sign_body(raw_a, WEBHOOK_SECRET))
    poll_a = await services.settlement.verify_and_settle("TXA", source="poll")

    poll_b = await services.settlement.verify_and_settle("TXB", source="poll")
    raw_b = _success_body("TXB", "tid-b", "ORDB")
    webhook_b = await handler.handle(raw_b, sign_body(raw_b, WEBHOOK_SECRET))

    assert poll_a.already_processed
    assert poll_b.outcome == "settled"
    assert webhook_b["status"] == "already_processed"
    assert _snapshot(services, "TXA", "ORDA", "tid-a") == _snapshot(services, "TXB", "ORDB", "tid-b")


@pytest.mark.asyncio
async def test_failed_event_cancels_order_without_ledger(services):
    services.seed_order("ORD2")
    services.seed_payment("TX2", "tid-2", order_id="ORD2")
    services.gateway_stub.set_status("TX2", "failed")
    handler = services.webhook_handler()
    raw = webhook_body(
        "payment.failed",
        {"tx_ref": "TX2", "failure_reason": "Insufficient funds", "metadata": {"orderId": "ORD2"}},
    )

    ack = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))

    assert ack["status"] == "failed"
    order = services.order("ORD2")
    assert order.status == "canceled"
    assert order.canceled_reason == "Insufficient funds"
    assert order.canceled_at is not None
    record = services.records.get_by_tx_ref("TX2")
    assert record.status == "failed"
    assert record.failure_reason == "Insufficient funds"
    assert services.ledger_count() == 0


@pytest.mark.asyncio
async def test_failed_event_for_successful_payment_settles_instead(services):
    """The gateway's word wins over a stale failure event."""

    services.seed_order("ORD1")
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "success")
    handler = services.webhook_handler()
    raw = webhook_body("payment.failed", {"tx_ref": "TX1", "metadata": {"orderId": "ORD1"}})

    ack = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))

    assert ack["status"] == "fallback"
    assert services.order("ORD1").status == "paid"
    assert services.records.get_by_tx_ref("TX1").status == "completed"
    assert services.ledger_count(payment_id="abc123") == 1


@pytest.mark.asyncio
async def test_failure_never_cancels_a_paid_order(settled_order):
    services = settled_order
    await services.settlement.verify_and_settle("TX1", source="poll")
    services.gateway_stub.set_status("TX1", "failed")

    result = await services.settlement.record_failure(
        GatewayPayment(tx_ref="TX1", failure_reason="late failure"), SettlementOptions(), source="webhook"
    )

    assert result.outcome == "already_processed"
    assert services.order("ORD1").status == "paid"
    assert services.records.get_by_tx_ref("TX1").status == "completed"


@pytest.mark.asyncio
async def test_poll_unknown_reference_mutates_nothing(services):
    with pytest.raises(TransactionNotFound):
        await services.settlement.verify_and_settle("NOPE", source="poll")

    assert services.records.get_by_tx_ref("NOPE") is None
    assert services.ledger_count() == 0


@pytest.mark.asyncio
async def test_poll_pending_keeps_order_pending(services):
    services.seed_order("ORD1")
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "pending")

    result = await services.settlement.verify_and_settle("TX1", source="poll")

    assert result.status == "pending"
    assert result.as_response()["orderId"] == "ORD1"
    assert services.records.get_by_tx_ref("TX1").status == "pending"
    assert services.order("ORD1").status == "pending"


@pytest.mark.asyncio
async def test_booking_settlement_uses_booking_entry_id(services):
    services.seed_booking("BK1")
    services.seed_payment("TXB1", "tid-b1", booking_id="BK1", amount=Decimal("2500"))
    services.gateway_stub.set_status("TXB1", "success", amount="2500", meta={"bookingId": "BK1"})

    result = await services.settlement.verify_and_settle("TXB1", source="poll")

    assert result.outcome == "settled"
    assert result.ledger_entry_id == "payment_tid-b1_booking"
    assert services.booking("BK1").status == "paid"
    entry = services.ledger_entry("payment_tid-b1_booking")
    assert entry.entry_type == "booking_payment"
    assert entry.booking_id == "BK1"
    assert entry.order_id is None
    assert "BOOKING_PAID" in services.notification_types()


@pytest.mark.asyncio
async def test_webhook_before_session_row_creates_fallback_record(services):
    services.seed_order("ORD9")
    services.gateway_stub.set_status("TX9", "success")

    result = await services.settlement.finalize_success(
        _success_payment("TX9", "wh-9", "ORD9", customer_email="late@example.com"),
        SettlementOptions(),
        source="webhook",
    )

    record = services.records.get_by_tx_ref("TX9")
    assert record.is_fallback is True
    assert record.transaction_id == "wh-9"
    assert record.status == "completed"
    assert result.ledger_entry_id == "payment_wh-9"
    assert services.order("ORD9").status == "paid"


@pytest.mark.asyncio
async def test_poll_before_session_row_uses_synthetic_transaction_id(services):
    services.seed_order("ORD9")
    services.gateway_stub.set_status("TX9", "success", meta={"orderId": "ORD9"})

    result = await services.settlement.verify_and_settle("TX9", source="poll")

    record = services.records.get_by_tx_ref("TX9")
    assert record.transaction_id.startswith("fallback_")
    assert result.ledger_entry_id == f"payment_{record.transaction_id}"
    assert services.ledger_count() == 1


@pytest.mark.asyncio
async def test_missing_transaction_id_aborts_before_any_state_change(services):
    services.seed_order("ORD1")
    services.gateway_stub.set_status("TX1", "success")
    options = SettlementOptions(create_payment_documents=False)

    with pytest.raises(MissingTransactionId):
        await services.settlement.finalize_success(
            _success_payment(transaction_id=None), options, source="webhook"
        )

    assert services.records.get_by_tx_ref("TX1") is None
    assert services.order("ORD1").status == "pending"
    assert services.ledger_count() == 0


@pytest.mark.asyncio
async def test_ledger_disabled_still_marks_paid(settled_order):
    services = settled_order
    options = SettlementOptions(ledger=LedgerOptions(manual_generation=True))

    first = await services.settlement.finalize_success(_success_payment(), options, source="webhook")
    second = await services.settlement.finalize_success(_success_payment(), options, source="webhook")

    assert first.outcome == "settled"
    assert first.ledger_entry_id is None
    assert second.outcome == "already_processed"
    assert services.order("ORD1").status == "paid"
    assert services.ledger_count() == 0


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_settlement(settled_order, monkeypatch):
    services = settled_order

    def broken(*args, **kwargs):
        raise RuntimeError("notification store down")

    monkeypatch.setattr(services.notifications, "notify_order_status_change", broken)
    monkeypatch.setattr(services.notifications, "notify_payment_success", broken)

    result = await services.settlement.finalize_success(_success_payment(), SettlementOptions(), source="webhook")

    assert result.outcome == "settled"
    assert services.order("ORD1").status == "paid"
    assert services.ledger_count(payment_id="abc123") == 1


@pytest.mark.asyncio
async def test_retry_payment_settles_order_canceled_by_failed_attempt(services):
    """A failed first attempt cancels the order; a verified retry pays it."""

    services.seed_order("ORD1")
    services.seed_payment("TX1", "t1", order_id="ORD1")
    services.seed_payment("TX2", "t2", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "failed")
    services.gateway_stub.set_status("TX2", "success", meta={"orderId": "ORD1"})

    first = await services.settlement.verify_and_settle("TX1", source="poll")
    assert first.outcome == "failed"
    assert services.order("ORD1").status == "canceled"

    retry = await services.settlement.verify_and_settle("TX2", source="poll")

    assert retry.outcome == "settled"
    order = services.order("ORD1")
    assert order.status == "paid"
    assert order.canceled_at is None
    assert order.canceled_reason is None
    assert order.payment["txRef"] == "TX2"
    assert services.ledger_entry("payment_t2") is not None
    assert services.ledger_count() == 1
    assert services.records.get_by_tx_ref("TX2").status == "completed"


@pytest.mark.asyncio
async def test_refunded_order_is_not_reopened_by_late_success(services):
    services.seed_order("ORD1", status="refunded")
    services.seed_payment("TX1", "abc123", order_id="ORD1")
    services.gateway_stub.set_status("TX1", "success")
    handler = services.webhook_handler()
    raw = _success_body()

    ack = await handler.handle(raw, sign_body(raw, WEBHOOK_SECRET))

    assert ack["status"] == "fallback"
    assert services.order("ORD1").status == "refunded"
    assert services.ledger_count() == 0
    assert services.records.get_by_tx_ref("TX1").status == "completed"
