"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, to_utc, from_timestamp, parse_iso
from utils.request_context import (
    ApiRequestContext,
    get_api_context,
    bind_api_context,
    clear_api_context,
    ensure_api_context,
    api_request_context,
    client_ip,
)
from utils.logging import ApiContextFilter, configure_logging
