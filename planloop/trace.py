from __future__ import annotations

import uuid
from contextvars import ContextVar, Token

_trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


def generate_trace_id() -> str:
    if hasattr(uuid, "uuid7"):
        return str(uuid.uuid7())  # type: ignore[attr-defined]
    return str(uuid.uuid4())


def set_current_trace_id(trace_id: str) -> Token:
    return _trace_id_var.set(trace_id)


def reset_current_trace_id(token: Token) -> None:
    _trace_id_var.reset(token)


def get_current_trace_id() -> str | None:
    """Trace id of the run executing in this context, if any."""
    return _trace_id_var.get()
