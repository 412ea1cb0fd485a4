"""Request context management.

Creates the per-request context, generates correlation IDs, and keeps the
current context in a ContextVar so any code running inside a request can
read it without it being passed explicitly.
"""

import re
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional, Union

from shared.logging import bind_correlation_id, clear_context, get_logger
from shared.models import RequestContext, RequestInfo, ResolvedIntent

logger = get_logger(__name__)

_current_context: ContextVar[Optional[RequestContext]] = ContextVar("request_context", default=None)

_CORRELATION_ID = re.compile(r"^req-[a-z0-9]+-[a-z0-9]+$", re.IGNORECASE)
_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

HeaderValue = Union[str, list[str], None]


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_correlation_id() -> str:
    """Generate a correlation ID of the form ``req-<base36 ms>-<uuid prefix>``."""
    millis = int(time.time() * 1000)
    return f"req-{_to_base36(millis)}-{uuid.uuid4().hex[:8]}"


def is_valid_correlation_id(value: str) -> bool:
    """Accept generated IDs and plain UUIDs."""
    return bool(_CORRELATION_ID.match(value) or _UUID.match(value))


def header_value(headers: Mapping[str, HeaderValue], name: str) -> Optional[str]:
    """
    Look up a header case-insensitively.

    Multi-valued headers yield their first element.
    """
    name = name.lower()
    for key, value in headers.items():
        if key.lower() != name:
            continue
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value
    return None


def create_context(
    correlation_id: Optional[str] = None,
    method: str = "",
    path: str = "",
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    source: str = "api",
    metadata: Optional[dict[str, Any]] = None
) -> RequestContext:
    """
    Create a new request context.

    An invalid caller-supplied correlation ID is replaced by a generated one.

    Args:
        correlation_id: Correlation ID propagated from the caller
        method: HTTP method
        path: Request path
        ip: Client IP address
        user_agent: Client user agent
        user_id: Authenticated user ID, if already known
        user_email: Authenticated user email, if already known
        source: Request source (api, internal, scheduled)
        metadata: Extra metadata

    Returns:
        A new RequestContext
    """
    if correlation_id and not is_valid_correlation_id(correlation_id):
        logger.warning("Invalid correlation ID, generating new one", provided_id=correlation_id)
        correlation_id = None

    context = RequestContext(
        correlation_id=correlation_id or generate_correlation_id(),
        start_time=time.monotonic(),
        user_id=user_id,
        user_email=user_email,
        source=source,
        request=RequestInfo(method=method, path=path, ip=ip, user_agent=user_agent),
        metadata={
            **(metadata or {}),
            "created_at": datetime.now(timezone.utc).isoformat(),
        },
    )

    logger.debug("Request context created", correlation_id=context.correlation_id)
    return context


def context_from_headers(
    method: str,
    path: str,
    headers: Mapping[str, HeaderValue],
    ip: Optional[str] = None
) -> RequestContext:
    """Create a context, honouring ``x-correlation-id`` / ``x-request-id``."""
    correlation_id = header_value(headers, "x-correlation-id") or header_value(headers, "x-request-id")
    return create_context(
        correlation_id=correlation_id,
        method=method,
        path=path,
        ip=ip,
        user_agent=header_value(headers, "user-agent"),
    )


def extend_context(
    context: RequestContext,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None
) -> RequestContext:
    """Return a new context with the given values layered over the old one."""
    return context.model_copy(update={
        "user_id": user_id if user_id is not None else context.user_id,
        "user_email": user_email if user_email is not None else context.user_email,
        "metadata": {**context.metadata, **(metadata or {})},
    })


def with_auth(
    context: RequestContext,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    service: Optional[str] = None,
    auth_type: Optional[str] = None
) -> RequestContext:
    return extend_context(
        context,
        user_id=user_id,
        user_email=user_email,
        metadata={"auth_service": service, "auth_type": auth_type},
    )


def with_intent(context: RequestContext, intent: ResolvedIntent) -> RequestContext:
    return extend_context(context, metadata={
        "intent": {
            "action": intent.action,
            "resource": intent.resource,
            "sub_action": intent.sub_action,
            "tools": list(intent.tools),
        },
    })


def elapsed_ms(context: RequestContext) -> float:
    """Milliseconds since the context was created."""
    return (time.monotonic() - context.start_time) * 1000


def finalize_context(context: RequestContext, status_code: int) -> float:
    """Log request completion and return its duration in milliseconds."""
    duration = elapsed_ms(context)
    logger.info(
        "Request completed",
        correlation_id=context.correlation_id,
        status_code=status_code,
        duration_ms=round(duration, 2),
        user_email=context.user_email
    )
    return duration


def get_context() -> Optional[RequestContext]:
    return _current_context.get()


def set_context(context: RequestContext) -> None:
    """Make a context current and bind its correlation ID to the loggers."""
    _current_context.set(context)
    bind_correlation_id(context.correlation_id)


def get_correlation_id() -> str:
    """Correlation ID of the current request, or ``unknown`` outside one."""
    context = _current_context.get()
    return context.correlation_id if context else "unknown"


@contextmanager
def request_scope(context: RequestContext) -> Iterator[RequestContext]:
    """Run a block with the given context as the current one."""
    token = _current_context.set(context)
    bind_correlation_id(context.correlation_id)
    try:
        yield context
    finally:
        _current_context.reset(token)
        clear_context()
