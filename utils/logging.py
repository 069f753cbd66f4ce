"""Logging configuration with API trace correlation."""

import logging
import sys

from utils.request_context import get_api_context

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s"


class ApiContextFilter(logging.Filter):
    """Adds the current API trace id to every record (``-`` outside requests)."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_api_context()
        record.trace_id = context.trace_id if context and context.trace_id else "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install a stdout handler on the root logger. Safe to call repeatedly."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers:
        if getattr(handler, "_api_context_handler", False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ApiContextFilter())
    handler._api_context_handler = True
    root.addHandler(handler)
