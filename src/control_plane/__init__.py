"""Control Plane - request dispatch for the newsletter API.

Classifies each request into an intent, authenticates and validates it,
then routes the intent's execution plan to tool handlers. Every
security-relevant step is audited, and request and tool timings are
exported as Prometheus metrics.
"""

from control_plane.routes import RouteRegistry, get_route_registry
from control_plane.intent import IntentClassifier, classify_intent, create_execution_plan
from control_plane.auth import AuthResolver, resolve_auth
from control_plane.audit import AuditTrail, get_audit_trail
from control_plane.validation import InputValidator, validate_input
from control_plane.responses import ControlPlaneError, ErrorCode
from control_plane.executor import ToolRouter, get_tool_router
from control_plane.metrics import Metrics, get_metrics
from control_plane.ratelimit import RateLimiter, get_rate_limiter
from control_plane.middleware import MiddlewareChain
from control_plane.dispatcher import Dispatcher

__all__ = [
    "RouteRegistry",
    "get_route_registry",
    "IntentClassifier",
    "classify_intent",
    "create_execution_plan",
    "AuthResolver",
    "resolve_auth",
    "AuditTrail",
    "get_audit_trail",
    "InputValidator",
    "validate_input",
    "ControlPlaneError",
    "ErrorCode",
    "ToolRouter",
    "get_tool_router",
    "Metrics",
    "get_metrics",
    "RateLimiter",
    "get_rate_limiter",
    "MiddlewareChain",
    "Dispatcher",
]
