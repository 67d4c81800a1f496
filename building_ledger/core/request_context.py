import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"
ACTOR_HEADER = "X-Actor"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def assign_request_id(request: Request) -> str:
    request_id = request.headers.get(REQUEST_ID_HEADER) or request.headers.get(CORRELATION_ID_HEADER)
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    _request_id.set(request_id)
    return request_id


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def current_request_id() -> Optional[str]:
    return _request_id.get()


def get_actor(request: Request) -> Optional[str]:
    """Free-form actor label forwarded by the calling API layer."""
    actor = request.headers.get(ACTOR_HEADER)
    return actor.strip() if actor else None
