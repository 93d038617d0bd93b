"""Structured JSON logging with request/payment context fields.

Also hosts the protocol log sink: every provider request/response pair is
written here with sensitive values masked.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, Mapping

from pythonjsonlogger.json import JsonFormatter

from onetouch.common.config import settings


request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
device_id_ctx: ContextVar[str] = ContextVar("device_id", default="")

REDACTED_FIELDS = frozenset({"TOKEN", "CHECKSUM", "APPCHECK", "CODE", "KEY", "SECRET"})
MASK = "***"


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.request_id = request_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        record.device_id = device_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(request_id)s %(payment_id)s %(device_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("onetouch")


def redact_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of `params` with token/signature/code values masked.

    Nested provider payloads (e.g. the `payment` object) are masked too.
    """

    redacted: dict[str, Any] = {}
    for key, value in params.items():
        if key.upper() in REDACTED_FIELDS and value not in (None, ""):
            redacted[key] = MASK
        elif isinstance(value, Mapping):
            redacted[key] = redact_params(value)
        else:
            redacted[key] = value
    return redacted


def log_exchange(endpoint: str, params: Mapping[str, Any], level: int = logging.DEBUG) -> None:
    """Default protocol log sink: `(endpoint, redacted params, level)`."""

    logger.log(level, "provider_exchange endpoint=%s params=%s", endpoint, dict(params))
