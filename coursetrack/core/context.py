"""Execution context tracking using contextvars.

HTTP requests carry a request id (and the authenticated user once known),
reconciliation runs carry a run id. Both are picked up by the logging
processors so every log line of a request or a batch run can be correlated.
"""

from contextvars import ContextVar
from typing import Any
from uuid import UUID, uuid4


request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid4())


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID for the current context.

    Args:
        request_id: Optional request ID. If not provided, generates a new one.

    Returns:
        The request ID that was set.
    """
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


def get_user_id() -> str | None:
    """Get the current user ID."""
    return user_id_var.get()


def set_user_id(user_id: str | UUID | None) -> None:
    """Set the user ID for the current context."""
    user_id_var.set(str(user_id) if user_id is not None else None)


def set_trace_id(trace_id: str | None) -> None:
    trace_id_var.set(trace_id)


def get_run_id() -> str | None:
    """Get the current reconciliation run ID."""
    return run_id_var.get()


def get_context() -> dict[str, Any]:
    """Get all non-empty context variables as a dictionary."""
    context: dict[str, Any] = {}

    request_id = get_request_id()
    if request_id:
        context["request_id"] = request_id

    user_id = get_user_id()
    if user_id:
        context["user_id"] = user_id

    trace_id = trace_id_var.get()
    if trace_id:
        context["trace_id"] = trace_id

    run_id = get_run_id()
    if run_id:
        context["run_id"] = run_id

    return context


def clear_context() -> None:
    """Clear request scoped variables.

    Called at the end of each request to prevent context leakage between
    requests.
    """
    request_id_var.set("")
    user_id_var.set(None)
    trace_id_var.set(None)


class RunContext:
    """Context manager binding a reconciliation run id.

    Usage:
        with RunContext() as run:
            log.info("reconcile_started")  # includes run_id=run.run_id
    """

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or uuid4().hex[:12]
        self._token: Any = None

    def __enter__(self) -> "RunContext":
        self._token = run_id_var.set(self.run_id)
        return self

    def __exit__(self, *_: object) -> None:
        run_id_var.reset(self._token)
