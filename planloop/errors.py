from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

DEFAULT_INTERNAL_MESSAGE = "Internal error"


@dataclass(slots=True, eq=False)
class PlanloopError(Exception):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class TransportError(PlanloopError):
    """Model or tool network failure."""

    def __init__(self, message: str, *, retryable: bool = True, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_TRANSPORT", message=message, retryable=retryable, details=details)


class ParseError(PlanloopError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_PARSE", message=message, retryable=False, details=details)


class PermissionDenied(PlanloopError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_PERMISSION_DENIED", message=message, retryable=False, details=details)


class ValidationError(PlanloopError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_VALIDATION", message=message, retryable=False, details=details)


class BudgetExhausted(PlanloopError):
    def __init__(self, message: str = "replan_budget_exhausted", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_BUDGET_EXHAUSTED", message=message, retryable=False, details=details)


class RunTimeout(PlanloopError):
    def __init__(self, message: str = "run_timeout", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_TIMEOUT", message=message, retryable=True, details=details)


class StepTimeout(PlanloopError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="E_TIMEOUT", message=message, retryable=True, details=details)


def build_error(
    *,
    code: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
        "retryable": retryable,
        "ts": datetime.now(tz=timezone.utc).isoformat(),
    }
    if details:
        payload["details"] = details
    if cause:
        payload["cause"] = cause
    return payload


def error_payload(exc: BaseException, trace_id: str) -> dict[str, Any]:
    if isinstance(exc, PlanloopError):
        return build_error(
            code=exc.code,
            message=exc.message,
            trace_id=trace_id,
            retryable=exc.retryable,
            details=exc.details,
            cause=exc.__class__.__name__,
        )

    if isinstance(exc, asyncio.TimeoutError):
        return build_error(
            code="E_TIMEOUT",
            message="Operation timed out.",
            trace_id=trace_id,
            retryable=True,
            cause="timeout",
        )

    if isinstance(exc, httpx.TimeoutException):
        return build_error(
            code="E_TRANSPORT",
            message="Network timeout.",
            trace_id=trace_id,
            retryable=True,
            cause="network_timeout",
        )

    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        if status == 429:
            return build_error(
                code="E_TRANSPORT",
                message="Provider rate limited request.",
                trace_id=trace_id,
                retryable=True,
                details={"status": status},
                cause="provider_rate_limit",
            )
        return build_error(
            code="E_TRANSPORT",
            message="Network request failed.",
            trace_id=trace_id,
            retryable=status >= 500,
            details={"status": status},
            cause="http_status_error",
        )

    if isinstance(exc, httpx.HTTPError):
        return build_error(
            code="E_TRANSPORT",
            message="Network request failed.",
            trace_id=trace_id,
            retryable=True,
            cause=exc.__class__.__name__,
        )

    if isinstance(exc, (KeyError, ValueError, TypeError)):
        return build_error(
            code="E_VALIDATION",
            message="Invalid input or payload shape.",
            trace_id=trace_id,
            retryable=False,
            cause=exc.__class__.__name__,
        )

    return build_error(
        code="E_INTERNAL",
        message=DEFAULT_INTERNAL_MESSAGE,
        trace_id=trace_id,
        retryable=False,
        cause=exc.__class__.__name__,
    )
