"""Structured JSON logging with business/job/correlation context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from payledger.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
business_id_ctx: ContextVar[str] = ContextVar("business_id", default="")
job_id_ctx: ContextVar[str] = ContextVar("job_id", default="")
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")

_CONTEXT_VARS = {
    "trace_id": trace_id_ctx,
    "business_id": business_id_ctx,
    "job_id": job_id_ctx,
    "correlation_id": correlation_id_ctx,
}


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


def configure_logging(service_name: str | None = None, level: str | None = None) -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter(service_name or settings.service_name)
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(business_id)s "
        "%(job_id)s %(correlation_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)


@contextmanager
def bind_log_context(**values):
    """Set context fields for the duration of one unit of work."""

    tokens = []
    for name, value in values.items():
        var = _CONTEXT_VARS[name]
        tokens.append((var, var.set("" if value is None else str(value))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


logger = logging.getLogger("payledger")
