# Core infrastructure
from coursetrack.core.context import (
    RunContext,
    clear_context,
    get_context,
    get_request_id,
    get_run_id,
    get_user_id,
    set_request_id,
    set_user_id,
)
from coursetrack.core.logging import configure_structlog, get_logger
from coursetrack.core.middleware import RequestContextMiddleware


__all__ = [
    "RequestContextMiddleware",
    "RunContext",
    "clear_context",
    "configure_structlog",
    "get_context",
    "get_logger",
    "get_request_id",
    "get_run_id",
    "get_user_id",
    "set_request_id",
    "set_user_id",
]
