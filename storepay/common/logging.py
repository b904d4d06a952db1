"""JSON logging for the settlement service.

Every record carries the request correlation id, the `tx_ref` being settled,
which path is settling it (webhook, poll, fallback, manual) and the active
OpenTelemetry span, so one payment can be followed across the webhook, its
fallback and any concurrent polls.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from storepay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
tx_ref_ctx: ContextVar[str] = ContextVar("tx_ref", default="")
source_ctx: ContextVar[str] = ContextVar("source", default="")


@contextmanager
def settlement_context(tx_ref: str | None, source: str):
    """Bind `tx_ref` and `source` for the block, restoring the outer values after.

    The webhook fallback runs a nested pass with source `fallback`; on return
    the webhook's own lines are labelled `webhook` again.
    """

    tx_token = tx_ref_ctx.set(tx_ref or tx_ref_ctx.get())
    source_token = source_ctx.set(source)
    try:
        yield
    finally:
        source_ctx.reset(source_token)
        tx_ref_ctx.reset(tx_token)


class SettlementContextFilter(logging.Filter):
    """Copy correlation, settlement and span identifiers onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.tx_ref = tx_ref_ctx.get()
        record.source = source_ctx.get()
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.otel_trace_id = format(span_context.trace_id, "032x")
            record.otel_span_id = format(span_context.span_id, "016x")
        else:
            record.otel_trace_id = ""
            record.otel_span_id = ""
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = SettlementContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s "
            "%(tx_ref)s %(source)s %(otel_trace_id)s %(otel_span_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("storepay")
