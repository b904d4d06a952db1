"""Settlement log context binding."""

import logging

from storepay.common.config import CommonSettings
from storepay.common.logging import SettlementContextFilter, settlement_context, source_ctx, tx_ref_ctx
from storepay.common.startup import log_startup_config


def _record() -> logging.LogRecord:
    return logging.LogRecord("storepay", logging.INFO, __file__, 1, "msg", None, None)


def test_nested_context_restores_outer_source():
    outer = (tx_ref_ctx.get(), source_ctx.get())

    with settlement_context("TX1", "webhook"):
        with settlement_context(None, "fallback"):
            assert tx_ref_ctx.get() == "TX1"
            assert source_ctx.get() == "fallback"
        assert source_ctx.get() == "webhook"

    assert (tx_ref_ctx.get(), source_ctx.get()) == outer


def test_filter_copies_settlement_fields():
    record = _record()

    with settlement_context("TX9", "poll"):
        SettlementContextFilter().filter(record)

    assert record.tx_ref == "TX9"
    assert record.source == "poll"
    assert record.otel_span_id == ""


def test_startup_snapshot_redacts_secrets():
    config = CommonSettings(gateway_secret_key="sk-live", gateway_webhook_secret="", app_base_url="https://shop.test")

    snapshot = log_startup_config(["gateway_secret_key", "gateway_webhook_secret", "app_base_url"], config)

    assert snapshot == {
        "gateway_secret_key": "<redacted>",
        "gateway_webhook_secret": "<unset>",
        "app_base_url": "https://shop.test",
    }
