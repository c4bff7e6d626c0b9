"""Structured JSON logging for the reconciliation services.

Every record carries the service name plus whichever correlation ids are bound
in the current context: `trace_id` (HTTP request or Kafka envelope),
`event_id`, `sms_id` and `payment_id`. Phone numbers are masked in the final
message so carrier text and sender addresses can be logged as-is.
"""

import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from momorecon.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
sms_id_ctx: ContextVar[str] = ContextVar("sms_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

_CONTEXT_VARS = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "sms_id": sms_id_ctx,
    "payment_id": payment_id_ctx,
}

# Rwandan MSISDNs in local or international form.
_MSISDN = re.compile(r"(?<![\dA-Za-z])((?:\+?250|0)?7\d{5})(\d{3})(?!\d)")

# Client libraries that log every request or rebalance at INFO.
_QUIET_LOGGERS = ("aiokafka", "httpx", "httpcore")


@contextmanager
def log_context(**ids: str | None):
    """Bind correlation ids for the duration of a block.

    Unknown names raise `KeyError`; `None` leaves the current value alone.
    """

    tokens = []
    try:
        for name, value in ids.items():
            if value is None:
                continue
            tokens.append((_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(str(value))))
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def mask_phone_numbers(message: str) -> str:
    return _MSISDN.sub(lambda m: "*" * len(m.group(1)) + m.group(2), message)


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


class RedactingJsonFormatter(JsonFormatter):
    """JSON formatter that never emits a full phone number."""

    def process_log_record(self, log_record):
        message = log_record.get("message")
        if isinstance(message, str):
            log_record["message"] = mask_phone_numbers(message)
        return super().process_log_record(log_record)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        RedactingJsonFormatter(
            "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(event_id)s %(sms_id)s %(payment_id)s %(message)s"
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("momorecon")
