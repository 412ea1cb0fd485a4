"""Request dispatcher.

Runs each inbound request through the middleware pipeline
(context, logging, CORS, timeout, intent, auth, validation, rate limit)
and then executes the resolved intent's plan, answering with the response
envelope. Every finished request is recorded in the metrics.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from shared.logging import get_logger
from control_plane.auth import AuthResolver
from control_plane.context import HeaderValue, elapsed_ms
from control_plane.executor import ToolRouter, get_tool_router
from control_plane.intent import IntentClassifier
from control_plane.metrics import Metrics, get_metrics
from control_plane.middleware import (
    ChainRequest,
    ChainResponse,
    MiddlewareChain,
    auth_middleware,
    context_middleware,
    cors_middleware,
    error_recovery,
    intent_middleware,
    rate_limit_middleware,
    request_logger,
    send_error,
    timeout_middleware,
    validation_middleware,
)
from control_plane.ratelimit import RateLimiter
from control_plane.responses import ErrorCode, build_success_response
from control_plane.routes import RouteRegistry, get_route_registry
from control_plane.validation import InputValidator

logger = get_logger(__name__)

VERSION = "0.1.0"

BuiltinHandler = Callable[[ChainRequest], Union[Any, Awaitable[Any]]]


@dataclass
class DispatchResult:
    """What the transport layer needs to write back."""
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


class Dispatcher:
    """
    Entry point for every API request.

    Responsibilities:
    - Assemble the middleware pipeline
    - Serve built-in intents (health) directly
    - Execute tool plans for everything else and wrap results in the envelope
    - Record request outcome and duration per intent
    """

    def __init__(
        self,
        registry: Optional[RouteRegistry] = None,
        router: Optional[ToolRouter] = None,
        auth_resolver: Optional[AuthResolver] = None,
        input_validator: Optional[InputValidator] = None,
        request_timeout: float = 300.0,
        cors_origins: Union[str, list[str]] = "*",
        cors_credentials: bool = False,
        rate_limiter: Optional[RateLimiter] = None,
        rate_limit_enabled: bool = True,
        metrics: Optional[Metrics] = None
    ) -> None:
        self.registry = registry if registry is not None else get_route_registry()
        self.router = router or get_tool_router()
        self.classifier = IntentClassifier(self.registry)
        self.metrics = metrics
        self._builtins: dict[str, BuiltinHandler] = {
            "health.check": self.health,
        }
        self.chain = (
            MiddlewareChain()
            .use(context_middleware, name="context")
            .use(request_logger, name="request_logger")
            .use(cors_middleware(origins=cors_origins, credentials=cors_credentials), name="cors")
            .use(timeout_middleware(request_timeout), name="timeout")
            .use(intent_middleware(self.classifier), name="intent")
            .use_when(
                lambda request: request.intent is not None and request.intent.auth_required,
                auth_middleware(auth_resolver),
                name="auth"
            )
            .use(validation_middleware(input_validator), name="validation")
            .on_error(error_recovery)
        )
        if rate_limit_enabled:
            self.chain.use(rate_limit_middleware(rate_limiter), name="rate_limit")

    def register_builtin(self, qualified_action: str, handler: BuiltinHandler) -> None:
        """Serve an intent in-process instead of through tool handlers."""
        self._builtins[qualified_action] = handler

    def health(self, request: ChainRequest) -> dict[str, Any]:
        return {
            "status": "ok",
            "version": VERSION,
            "routes": len(self.registry),
            "tools": self.router.list_tools(),
            "disabled_tools": self.router.list_disabled(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def _run_intent(self, request: ChainRequest, response: ChainResponse) -> None:
        intent = request.intent
        builtin = self._builtins.get(intent.route.qualified_action) if intent.route else None

        if builtin is not None:
            data = builtin(request)
            if inspect.isawaitable(data):
                data = await data
        else:
            plan = await self.router.execute_plan(intent, request.context, request.validated_body)
            if not plan.success:
                error = plan.error
                send_error(request, response, error.code, error.message)
                return
            data = plan.data

        envelope = build_success_response(
            data,
            correlation_id=request.correlation_id,
            duration=elapsed_ms(request.context),
        )
        response.status(200).json(envelope.to_dict())

    async def dispatch(
        self,
        method: str,
        path: str,
        headers: Optional[Mapping[str, HeaderValue]] = None,
        query: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        ip: Optional[str] = None
    ) -> DispatchResult:
        """
        Handle one request.

        Args:
            method: HTTP method
            path: Request path
            headers: Request headers
            query: Parsed query string
            body: Parsed JSON body
            ip: Client address

        Returns:
            Status code, envelope body and response headers
        """
        request = ChainRequest(
            method=method.upper(),
            path=path,
            headers=dict(headers or {}),
            query=dict(query or {}),
            body=body,
            ip=ip,
        )
        response = ChainResponse()

        await self.chain.execute(request, response, terminal=self._run_intent)

        if not response.sent:
            logger.error("Pipeline finished without a response", method=method, path=path)
            send_error(request, response, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")

        route = request.intent.route if request.intent else None
        (self.metrics or get_metrics()).record_request(
            route.qualified_action if route else "unmatched",
            response.status_code < 400,
            elapsed_ms(request.context) if request.context else 0,
        )

        return DispatchResult(
            status_code=response.status_code,
            body=response.body,
            headers=dict(response.headers),
        )
