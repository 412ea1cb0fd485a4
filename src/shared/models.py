"""Core data models for the Control Plane.

This module defines the shared data structures that flow through request
dispatch: route definitions, resolved intents and their execution plans,
authentication results, validation results, audit entries, request context
and the response envelope.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    OPTIONS = "OPTIONS"


class AuthType(str, Enum):
    """Authentication requirement of a route."""
    NONE = "none"
    API_KEY = "api_key"
    OAUTH = "oauth"


class RateLimitTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNLIMITED = "unlimited"


class RouteCategory(str, Enum):
    """Route category for organization and documentation."""
    NEWSLETTER = "newsletter"
    GENERATION = "generation"
    TOPICS = "topics"
    SUBSCRIBERS = "subscribers"
    PERSONAS = "personas"
    TEMPLATES = "templates"
    DRAFTS = "drafts"
    CALENDAR = "calendar"
    AUTH = "auth"
    HEALTH = "health"
    LOGS = "logs"
    OTHER = "other"


class RouteDefinition(BaseModel):
    """
    Declarative definition of an API route.

    Definitions are immutable once registered. The path pattern is
    Express-style (``/api/newsletters/:id``) and is compiled by the registry.
    Schemas are pydantic model classes or JSON Schema dicts.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    method: HttpMethod
    path_pattern: str = Field(..., description="Express-style path pattern")
    resource: str
    action: str
    sub_action: Optional[str] = None
    category: RouteCategory = RouteCategory.OTHER
    auth_type: AuthType = AuthType.NONE
    tools: tuple[str, ...] = ()
    rate_limit_tier: Optional[RateLimitTier] = None
    timeout: Optional[int] = Field(default=None, description="Route timeout override in ms")

    # Documentation
    description: Optional[str] = None
    tags: tuple[str, ...] = ()
    deprecated: bool = False

    # Validation
    input_schema: Optional[Any] = None
    query_schema: Optional[Any] = None
    params_schema: Optional[Any] = None

    @property
    def route_id(self) -> str:
        return f"{self.method.value}:{self.path_pattern}"

    @property
    def qualified_action(self) -> str:
        """Return resource.action[.sub_action]."""
        name = f"{self.resource}.{self.action}"
        return f"{name}.{self.sub_action}" if self.sub_action else name


class ExecutionStep(BaseModel):
    """
    Single step in an execution plan.

    ``depends_on`` may only reference orders of earlier steps.
    """
    model_config = ConfigDict(frozen=True)

    order: int = Field(..., ge=0)
    tool_id: str
    parallel: bool = False
    depends_on: tuple[int, ...] = ()
    timeout_ms: int = Field(..., gt=0)


class ResolvedIntent(BaseModel):
    """Structured intent derived from a request's method and path."""
    action: str
    resource: str
    sub_action: Optional[str] = None
    tools: list[str] = Field(default_factory=list)
    auth_required: bool = False
    auth_type: AuthType = AuthType.NONE
    params: dict[str, str] = Field(default_factory=dict)
    execution_plan: list[ExecutionStep] = Field(default_factory=list)
    route: Optional[RouteDefinition] = Field(default=None, exclude=True)


class AuthError(BaseModel):
    code: str
    message: str


class AuthResult(BaseModel):
    """Outcome of authentication resolution for a single request."""
    valid: bool
    type: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    service: Optional[str] = None
    scopes: Optional[list[str]] = None
    error: Optional[AuthError] = None


class ValidationError(BaseModel):
    """Single field-level validation error."""
    field: str
    message: str
    code: str
    expected: Optional[str] = None
    received: Optional[str] = None


class ValidationSuccess(BaseModel):
    success: Literal[True] = True
    data: Any = None


class ValidationFailure(BaseModel):
    success: Literal[False] = False
    message: str
    errors: list[ValidationError] = Field(default_factory=list)


ValidationResult = Union[ValidationSuccess, ValidationFailure]


class AuditAction(str, Enum):
    """Types of security-relevant actions recorded in the audit trail."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    API_KEY_VALIDATE = "api_key_validate"
    OAUTH_GRANT = "oauth_grant"
    OAUTH_REVOKE = "oauth_revoke"
    EXPORT = "export"
    SEND_EMAIL = "send_email"


class AuditEntry(BaseModel):
    """
    Audit log entry for security-sensitive operations.

    Entries are append-only and never mutated after creation.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    success: bool
    ip_address: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class RequestInfo(BaseModel):
    method: str
    path: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class RequestContext(BaseModel):
    """
    Context created once per inbound request.

    Threaded through every component; extensions produce new instances.
    """
    model_config = ConfigDict(frozen=True)

    correlation_id: str
    start_time: float = Field(..., description="Monotonic start time in seconds")
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    source: Literal["api", "internal", "scheduled"] = "api"
    request: Optional[RequestInfo] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ApiError(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ResponseMeta(BaseModel):
    correlation_id: str
    duration: float = 0
    timestamp: str


class ApiResponse(BaseModel):
    """Uniform response envelope returned by every endpoint."""
    success: bool
    data: Optional[Any] = None
    error: Optional[ApiError] = None
    meta: Optional[ResponseMeta] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
