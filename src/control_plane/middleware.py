"""Composable middleware chain.

Units run strictly in registration order. Each unit is a callable
``(request, response, call_next)``; awaiting ``call_next()`` continues the
chain, returning without it (or sending a response) ends it. A plain
function unit continues the chain by returning ``call_next()``.

Example::

    chain = create_api_chain()
    chain.use(context_middleware)
    chain.use_path("/api/admin", admin_only)
    await chain.execute(request, response, terminal=handler)
"""

import asyncio
import inspect
import re
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable, Optional, Pattern, Union

from shared.logging import get_logger
from shared.models import AuthResult, RequestContext, ResolvedIntent
from control_plane.auth import AuthResolver, get_auth_resolver
from control_plane.context import (
    HeaderValue,
    context_from_headers,
    elapsed_ms,
    finalize_context,
    get_correlation_id,
    request_scope,
    set_context,
    with_auth,
    with_intent,
)
from control_plane.intent import IntentClassifier
from control_plane.metrics import get_metrics
from control_plane.ratelimit import RateLimiter, get_rate_limiter, limit_for_tier
from control_plane.responses import ControlPlaneError, ErrorCode, build_error_response, error_code_to_status
from control_plane.validation import InputValidator, get_input_validator

logger = get_logger(__name__)

DEFAULT_CORS_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS")
DEFAULT_CORS_HEADERS = ("Content-Type", "Authorization", "X-API-Key", "X-Correlation-ID")


@dataclass
class ChainRequest:
    """Transport-neutral view of an inbound request."""
    method: str
    path: str
    headers: dict[str, HeaderValue] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    ip: Optional[str] = None
    params: dict[str, str] = field(default_factory=dict)
    context: Optional[RequestContext] = None
    intent: Optional[ResolvedIntent] = None
    auth: Optional[AuthResult] = None
    validated_body: Any = None
    validated_query: Any = None
    validated_params: Any = None
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def correlation_id(self) -> str:
        return self.context.correlation_id if self.context else get_correlation_id()


class ChainResponse:
    """Response being built by the chain; can be sent once."""

    def __init__(self) -> None:
        self.status_code = 200
        self.headers: dict[str, str] = {}
        self.body: Any = None
        self.sent = False

    def status(self, code: int) -> "ChainResponse":
        self.status_code = code
        return self

    def set_header(self, name: str, value: str) -> "ChainResponse":
        self.headers[name] = value
        return self

    def send(self, body: Any = None) -> None:
        if self.sent:
            raise RuntimeError("Response already sent")
        self.body = body
        self.sent = True

    def json(self, body: Any) -> None:
        self.headers.setdefault("Content-Type", "application/json")
        self.send(body)


CallNext = Callable[[], Awaitable[None]]
Middleware = Callable[[ChainRequest, ChainResponse, CallNext], Union[None, Awaitable[None]]]
ErrorHandler = Callable[[Exception, ChainRequest, ChainResponse], Union[None, Awaitable[None]]]
Predicate = Callable[[ChainRequest], bool]
Terminal = Callable[[ChainRequest, ChainResponse], Awaitable[None]]


@dataclass(frozen=True)
class _Entry:
    middleware: Middleware
    name: str
    when: Optional[Predicate]
    owner: "MiddlewareChain"


class _Escalated(Exception):
    """An error no handler took; carried up to the caller of execute()."""

    def __init__(self, error: Exception) -> None:
        super().__init__(str(error))
        self.error = error


class MiddlewareChain:
    """
    Ordered, conditionally applied request-processing units.

    Responsibilities:
    - Run units in registration order, skipping those whose predicate fails
    - Stop once a unit sends a response or does not call ``call_next``
    - Route unit exceptions to the nearest error handler
    """

    def __init__(self) -> None:
        self._entries: list[_Entry] = []
        self._error_handler: Optional[ErrorHandler] = None

    def use(
        self,
        middleware: Middleware,
        name: Optional[str] = None,
        when: Optional[Predicate] = None
    ) -> "MiddlewareChain":
        """
        Append a unit.

        Args:
            middleware: Callable ``(request, response, call_next)``, sync or async
            name: Name for logs; defaults to the callable's name
            when: Predicate evaluated per request; the unit is skipped when false

        Returns:
            This chain, for chaining calls
        """
        self._entries.append(_Entry(
            middleware=middleware,
            name=name or getattr(middleware, "__name__", "middleware"),
            when=when,
            owner=self,
        ))
        return self

    def use_when(self, predicate: Predicate, middleware: Middleware, name: Optional[str] = None) -> "MiddlewareChain":
        return self.use(middleware, name=name, when=predicate)

    def use_path(
        self,
        pattern: Union[str, Pattern[str]],
        middleware: Middleware,
        name: Optional[str] = None
    ) -> "MiddlewareChain":
        """Apply a unit only to paths matching a regex, or starting with a string."""
        regex = re.compile("^" + re.escape(pattern)) if isinstance(pattern, str) else pattern
        return self.use(middleware, name=name, when=lambda request: bool(regex.search(request.path)))

    def use_method(
        self,
        methods: Union[str, Iterable[str]],
        middleware: Middleware,
        name: Optional[str] = None
    ) -> "MiddlewareChain":
        """Apply a unit only to the given HTTP method(s)."""
        allowed = {methods.upper()} if isinstance(methods, str) else {m.upper() for m in methods}
        return self.use(middleware, name=name, when=lambda request: request.method.upper() in allowed)

    def on_error(self, handler: ErrorHandler) -> "MiddlewareChain":
        self._error_handler = handler
        return self

    def merge(self, other: "MiddlewareChain") -> "MiddlewareChain":
        """
        Append another chain's units after this chain's.

        Merged units keep the other chain's error handler as their nearest.
        """
        self._entries.extend(other._entries)
        return self

    def clone(self) -> "MiddlewareChain":
        cloned = MiddlewareChain()
        cloned._entries = [
            replace(entry, owner=cloned) if entry.owner is self else entry
            for entry in self._entries
        ]
        cloned._error_handler = self._error_handler
        return cloned

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    async def _handle_error(
        self,
        error: Exception,
        owner: "MiddlewareChain",
        request: ChainRequest,
        response: ChainResponse
    ) -> None:
        handler = owner._error_handler or self._error_handler
        if handler is None:
            raise _Escalated(error) from error

        try:
            result = handler(error, request, response)
            if inspect.isawaitable(result):
                await result
        except Exception as handler_error:
            raise _Escalated(handler_error) from error

    async def execute(
        self,
        request: ChainRequest,
        response: ChainResponse,
        terminal: Optional[Terminal] = None
    ) -> None:
        """
        Run the chain for one request.

        Args:
            request: Inbound request
            response: Response to build
            terminal: Handler run after the last unit, if the chain gets there

        Raises:
            Exception: Whatever a unit raised, when no error handler is set
        """
        entries = list(self._entries)

        async def dispatch(index: int) -> None:
            if response.sent:
                return

            if index == len(entries):
                if terminal is not None:
                    try:
                        await terminal(request, response)
                    except _Escalated:
                        raise
                    except Exception as e:
                        await self._handle_error(e, self, request, response)
                return

            entry = entries[index]
            called = False

            async def call_next() -> None:
                nonlocal called
                if called:
                    raise RuntimeError(f"call_next() called more than once in '{entry.name}'")
                called = True
                await dispatch(index + 1)

            try:
                if entry.when is not None and not entry.when(request):
                    skipped = True
                else:
                    skipped = False
                    result = entry.middleware(request, response, call_next)
                    if inspect.isawaitable(result):
                        await result
            except _Escalated:
                raise
            except Exception as e:
                logger.debug("Middleware raised", middleware=entry.name, error=str(e))
                await self._handle_error(e, entry.owner, request, response)
                return

            if skipped:
                await dispatch(index + 1)

        try:
            await dispatch(0)
        except _Escalated as escalated:
            raise escalated.error from None


# =============================================================================
# Error responses
# =============================================================================

def send_error(
    request: ChainRequest,
    response: ChainResponse,
    code: Union[ErrorCode, str],
    message: str,
    details: Optional[dict[str, Any]] = None
) -> None:
    """Send an error envelope with the status matching its code."""
    code = code.value if isinstance(code, ErrorCode) else code
    duration = elapsed_ms(request.context) if request.context else 0
    envelope = build_error_response(
        code,
        message,
        details=details,
        correlation_id=request.correlation_id,
        duration=duration,
    )
    response.status(error_code_to_status(code)).json(envelope.to_dict())


async def error_recovery(error: Exception, request: ChainRequest, response: ChainResponse) -> None:
    """Error handler turning exceptions into error envelopes."""
    logger.error(
        "Request failed",
        correlation_id=request.correlation_id,
        method=request.method,
        path=request.path,
        error=str(error),
        exc_info=error
    )
    if response.sent:
        return

    if isinstance(error, ControlPlaneError):
        send_error(request, response, error.code, error.message, error.details)
    else:
        send_error(request, response, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


# =============================================================================
# Built-in units
# =============================================================================

async def request_logger(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
    logger.info(
        f"{request.method} {request.path}",
        correlation_id=request.correlation_id,
        method=request.method,
        path=request.path,
        ip=request.ip
    )
    await call_next()


async def context_middleware(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
    """Create the request context and keep it current for the rest of the chain."""
    if request.context is None:
        request.context = context_from_headers(request.method, request.path, request.headers, request.ip)

    response.set_header("X-Correlation-ID", request.context.correlation_id)
    with request_scope(request.context):
        try:
            await call_next()
        finally:
            finalize_context(request.context, response.status_code)


def cors_middleware(
    origins: Union[str, Iterable[str], Callable[[str], bool]] = "*",
    methods: Iterable[str] = DEFAULT_CORS_METHODS,
    headers: Iterable[str] = DEFAULT_CORS_HEADERS,
    credentials: bool = False
) -> Middleware:
    """
    Build a CORS unit. Preflight (OPTIONS) requests are answered with 204.

    Args:
        origins: ``*``, an allow-list, or a predicate on the request origin
        methods: Allowed methods
        headers: Allowed request headers
        credentials: Send ``Access-Control-Allow-Credentials: true``
    """
    allowed_list = None if isinstance(origins, str) or callable(origins) else set(origins)
    allow_methods = ", ".join(methods)
    allow_headers = ", ".join(headers)

    async def cors(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
        request_origin = next(
            (v for k, v in request.headers.items() if k.lower() == "origin" and isinstance(v, str)),
            None
        )
        if allowed_list is not None:
            allowed_origin = request_origin if request_origin in allowed_list else ""
        elif callable(origins):
            allowed_origin = request_origin if request_origin and origins(request_origin) else ""
        elif credentials and request_origin:
            # browsers refuse a wildcard origin on credentialed requests
            allowed_origin = request_origin
        else:
            allowed_origin = origins

        response.set_header("Access-Control-Allow-Origin", allowed_origin)
        if allowed_origin != "*":
            response.set_header("Vary", "Origin")
        response.set_header("Access-Control-Allow-Methods", allow_methods)
        response.set_header("Access-Control-Allow-Headers", allow_headers)
        if credentials:
            response.set_header("Access-Control-Allow-Credentials", "true")

        if request.method.upper() == "OPTIONS":
            response.status(204).send()
            return

        await call_next()

    return cors


def timeout_middleware(seconds: float) -> Middleware:
    """Build a unit that aborts the rest of the chain after ``seconds``."""

    async def timeout(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
        try:
            await asyncio.wait_for(call_next(), timeout=seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Request timed out",
                correlation_id=request.correlation_id,
                path=request.path,
                timeout_seconds=seconds
            )
            if not response.sent:
                send_error(
                    request,
                    response,
                    ErrorCode.SERVICE_UNAVAILABLE,
                    f"Request timed out after {seconds}s"
                )

    return timeout


def intent_middleware(classifier: Optional[IntentClassifier] = None) -> Middleware:
    """Build a unit that classifies the request; unmatched routes get 404."""

    async def intent(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
        resolved = (classifier or IntentClassifier()).classify_intent(request.method, request.path)
        if resolved is None:
            send_error(
                request,
                response,
                ErrorCode.ROUTE_NOT_FOUND,
                f"No handler found for {request.method.upper()} {request.path}"
            )
            return

        request.intent = resolved
        request.params = dict(resolved.params)
        if request.context is not None:
            request.context = with_intent(request.context, resolved)
            set_context(request.context)

        logger.info(
            f"Intent: {resolved.resource}.{resolved.action}",
            correlation_id=request.correlation_id,
            tools=resolved.tools,
            auth_required=resolved.auth_required
        )
        await call_next()

    return intent


def auth_middleware(resolver: Optional[AuthResolver] = None) -> Middleware:
    """Build a unit that authenticates requests whose intent requires it."""

    async def auth(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
        resolved = request.intent
        if resolved is None or not resolved.auth_required:
            await call_next()
            return

        result = await (resolver or get_auth_resolver()).resolve_auth(
            request.headers,
            resolved.auth_type,
            correlation_id=request.correlation_id,
            service=resolved.tools[0] if resolved.tools else None,
            ip_address=request.ip,
        )
        if not result.valid:
            error = result.error
            logger.warning(
                "Authentication failed",
                correlation_id=request.correlation_id,
                reason=error.message if error else None
            )
            send_error(
                request,
                response,
                error.code if error else ErrorCode.UNAUTHORIZED,
                error.message if error else "Authentication failed"
            )
            return

        request.auth = result
        if request.context is not None:
            request.context = with_auth(
                request.context,
                user_id=result.user_id,
                user_email=result.user_email,
                service=result.service,
                auth_type=result.type,
            )
            set_context(request.context)
        await call_next()

    return auth


def validation_middleware(validator: Optional[InputValidator] = None) -> Middleware:
    """Build a unit validating body, query and path params against the route's schemas."""

    async def validate(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
        route = request.intent.route if request.intent else None
        if route is None:
            await call_next()
            return

        checker = validator or get_input_validator()
        checks = (
            ("validated_body", request.body, route.input_schema, False),
            ("validated_query", request.query, route.query_schema, True),
            ("validated_params", request.params, route.params_schema, True),
        )
        for attr, raw, schema, skip_sanitization in checks:
            if schema is None:
                setattr(request, attr, raw)
                continue

            result = checker.validate(
                raw,
                schema,
                correlation_id=request.correlation_id,
                skip_sanitization=skip_sanitization,
            )
            if not result.success:
                send_error(
                    request,
                    response,
                    ErrorCode.VALIDATION_ERROR,
                    result.message,
                    {"errors": [e.model_dump(exclude_none=True) for e in result.errors]},
                )
                return
            setattr(request, attr, result.data)

        await call_next()

    return validate


def rate_limit_middleware(limiter: Optional[RateLimiter] = None) -> Middleware:
    """
    Build a unit enforcing the route's rate limit tier.

    Requests count against the intent's primary tool. Refused requests
    get 429 ``RATE_LIMITED`` with a ``Retry-After`` header.
    """

    async def rate_limit(request: ChainRequest, response: ChainResponse, call_next: CallNext) -> None:
        resolved = request.intent
        route = resolved.route if resolved else None
        limit = limit_for_tier(route.rate_limit_tier) if route else None
        if limit is None or not resolved.tools:
            await call_next()
            return

        tool = resolved.tools[0]
        status = (limiter or get_rate_limiter()).check(tool, limit)
        response.set_header("X-RateLimit-Limit", str(status.limit))
        response.set_header("X-RateLimit-Remaining", str(status.remaining))

        if not status.allowed:
            logger.warning(
                "Rate limit exceeded",
                correlation_id=request.correlation_id,
                tool=tool,
                limit=status.limit,
                retry_after=status.retry_after
            )
            get_metrics().record_rate_limited(tool)
            response.set_header("Retry-After", str(status.retry_after))
            send_error(
                request,
                response,
                ErrorCode.RATE_LIMITED,
                f"Rate limit exceeded. Try again in {status.retry_after}s",
                {"limit": status.limit, "remaining": status.remaining, "retry_after": status.retry_after},
            )
            return

        await call_next()

    return rate_limit


# =============================================================================
# Chain factories
# =============================================================================

def create_api_chain() -> MiddlewareChain:
    """Chain with request logging and error recovery."""
    return MiddlewareChain().use(request_logger, name="request_logger").on_error(error_recovery)


def create_cors_chain(**cors_options: Any) -> MiddlewareChain:
    return create_api_chain().use(cors_middleware(**cors_options), name="cors")
