import logging
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"

_CORRELATION_ID: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current logical operation, if any."""
    return _CORRELATION_ID.get()


def ensure_correlation_id() -> str:
    """Return the bound correlation id, binding a fresh one when none exists."""
    current = _CORRELATION_ID.get()
    if current:
        return current
    current = new_correlation_id()
    _CORRELATION_ID.set(current)
    return current


def bind_correlation_id(value: Optional[str]):
    """Bind a correlation id and return the token needed to reset it."""
    return _CORRELATION_ID.set(value or new_correlation_id())


def reset_correlation_id(token) -> None:
    _CORRELATION_ID.reset(token)


def _normalize(raw: Optional[str]) -> Optional[str]:
    # Caller supplied ids must be UUIDs; anything else is replaced.
    if raw is None:
        return None
    try:
        return str(uuid.UUID(raw.strip()))
    except (ValueError, AttributeError):
        return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Binds one correlation id per request:
    - accept a caller supplied X-Correlation-ID when it is a UUID
    - otherwise generate one
    - echo it on every response
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = _normalize(request.headers.get(CORRELATION_HEADER))
        token = bind_correlation_id(correlation_id)
        correlation_id = _CORRELATION_ID.get()
        request.state.correlation_id = correlation_id
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class CorrelationIdFilter(logging.Filter):
    """Stamp every log record with the current correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _CORRELATION_ID.get() or "-"
        return True
