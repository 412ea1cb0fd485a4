"""Shared models, configuration and logging for the Control Plane."""

from shared.models import (
    RouteDefinition,
    ResolvedIntent,
    ExecutionStep,
    AuthResult,
    AuditEntry,
    RequestContext,
    ApiResponse,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "RouteDefinition",
    "ResolvedIntent",
    "ExecutionStep",
    "AuthResult",
    "AuditEntry",
    "RequestContext",
    "ApiResponse",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
