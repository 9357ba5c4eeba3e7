"""Structured JSON logging with job/account/transfer context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from cardfund.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
job_id_ctx: ContextVar[str] = ContextVar("job_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")
transfer_id_ctx: ContextVar[str] = ContextVar("transfer_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.job_id = job_id_ctx.get()
        record.account_id = account_id_ctx.get()
        record.transfer_id = transfer_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(job_id)s "
        "%(account_id)s %(transfer_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("cardfund")
