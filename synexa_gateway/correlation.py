"""Request correlation ids.

A request id is taken from the inbound ``X-Request-ID`` header when the client
sends one, otherwise generated. It is stored in a context variable so it flows
through every log record, the provider call and the response.
"""
import logging
import secrets
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_INBOUND_LENGTH = 128

_current_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def generate_request_id() -> str:
    """Return a new id of the form ``req_<16 hex chars>``."""
    return f"req_{secrets.token_hex(8)}"


def get_request_id() -> Optional[str]:
    return _current_request_id.get()


def set_request_id(request_id: str):
    """Bind ``request_id`` to the current context; returns the reset token."""
    return _current_request_id.set(request_id)


def reset_request_id(token) -> None:
    _current_request_id.reset(token)


def ensure_request_id(inbound: Optional[str] = None) -> str:
    """Use a sane inbound id if present, else the bound one, else a fresh one."""
    if inbound:
        inbound = inbound.strip()
        if inbound and len(inbound) <= _MAX_INBOUND_LENGTH and inbound.isprintable():
            return inbound
    return get_request_id() or generate_request_id()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of each HTTP request and echo it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = ensure_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestIdFilter(logging.Filter):
    """Expose the current request id to log formatters as ``%(request_id)s``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True
