"""JSON logs for every storepay process.

Each record carries the correlation ids of the request or event being
handled: `trace_id`, the internal `user_id`, and `payment_id` (gateway
invoice id or event aggregate id). Handlers set the context vars, the
filter copies them onto the record.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from storepay.common.config import settings

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
user_id_ctx: ContextVar[str] = ContextVar("user_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

CONTEXT_VARS = {"trace_id": trace_id_ctx, "user_id": user_id_ctx, "payment_id": payment_id_ctx}

# Client libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "aiokafka")


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


def configure_logging(level: str | None = None) -> None:
    """Route the root logger to stdout as one JSON object per line."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(trace_id)s %(user_id)s %(payment_id)s %(message)s",
            rename_fields={"asctime": "ts", "levelname": "level"},
            static_fields={"service": settings.service_name},
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("storepay")
