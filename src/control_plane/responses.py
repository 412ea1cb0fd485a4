"""Response envelope and output sanitization.

Every endpoint answers with the same envelope::

    {"success": bool, "data"?: ..., "error"?: {"code", "message", "details"?},
     "meta"?: {"correlation_id", "duration", "timestamp"}}

Sensitive fields are removed from outgoing data before serialization.
"""

import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.config import DEFAULT_SENSITIVE_FIELDS
from shared.logging import get_logger
from shared.models import ApiError, ApiResponse, ResponseMeta
from control_plane.validation import InputValidator, ValidatorConfig

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Stable error codes returned to clients."""
    # 400
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    # 401
    UNAUTHORIZED = "UNAUTHORIZED"
    MISSING_API_KEY = "MISSING_API_KEY"
    INVALID_API_KEY = "INVALID_API_KEY"
    MISSING_OAUTH_TOKEN = "MISSING_OAUTH_TOKEN"
    INVALID_OAUTH_TOKEN = "INVALID_OAUTH_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    UNKNOWN_AUTH_TYPE = "UNKNOWN_AUTH_TYPE"
    # 403
    FORBIDDEN = "FORBIDDEN"
    # 404
    NOT_FOUND = "NOT_FOUND"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    # 409
    CONFLICT = "CONFLICT"
    # 429
    RATE_LIMITED = "RATE_LIMITED"
    # 500
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    # 503
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TOOL_DISABLED = "TOOL_DISABLED"
    # 504
    TOOL_TIMEOUT = "TOOL_TIMEOUT"


_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.MISSING_API_KEY: 401,
    ErrorCode.INVALID_API_KEY: 401,
    ErrorCode.MISSING_OAUTH_TOKEN: 401,
    ErrorCode.INVALID_OAUTH_TOKEN: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.UNKNOWN_AUTH_TYPE: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ROUTE_NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.TOOL_EXECUTION_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.TOOL_DISABLED: 503,
    ErrorCode.TOOL_TIMEOUT: 504,
}


def error_code_to_status(code: str) -> int:
    """Map an error code to its HTTP status; unknown codes are 500."""
    try:
        return _STATUS_BY_CODE[ErrorCode(code)]
    except ValueError:
        return 500


class ControlPlaneError(Exception):
    """
    Expected failure carrying a client-safe code and message.

    Unlike arbitrary exceptions, its message may be shown to clients.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return error_code_to_status(self.code)


# =============================================================================
# Output sanitization
# =============================================================================

class OutputValidatorConfig(BaseModel):
    """Immutable output validator configuration."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    log_errors: bool = True
    sensitive_fields: tuple[str, ...] = Field(default_factory=lambda: tuple(DEFAULT_SENSITIVE_FIELDS))


class OutputValidation(BaseModel):
    success: bool
    data: Any = None
    warnings: list[str] = Field(default_factory=list)


class OutputValidator:
    """Strips sensitive fields and checks outgoing data against a schema."""

    def __init__(self, config: Optional[OutputValidatorConfig] = None) -> None:
        self._config = config or OutputValidatorConfig()
        self._lock = threading.Lock()

    @property
    def config(self) -> OutputValidatorConfig:
        return self._config

    def configure(self, **changes: Any) -> OutputValidatorConfig:
        if "sensitive_fields" in changes:
            changes["sensitive_fields"] = tuple(changes["sensitive_fields"])
        with self._lock:
            self._config = self._config.model_copy(update=changes)
            return self._config

    def add_sensitive_fields(self, *fields: str) -> OutputValidatorConfig:
        with self._lock:
            merged = tuple(dict.fromkeys((*self._config.sensitive_fields, *fields)))
            self._config = self._config.model_copy(update={"sensitive_fields": merged})
            return self._config

    def reset(self) -> None:
        with self._lock:
            self._config = OutputValidatorConfig()

    def remove_sensitive_fields(self, data: Any) -> Any:
        """
        Remove keys whose lower-cased name contains a sensitive name.

        Keys are dropped entirely rather than redacted.
        """
        needles = [f.lower() for f in self._config.sensitive_fields]
        return _strip(data, needles)

    def validate(
        self,
        data: Any,
        schema: Any = None,
        correlation_id: Optional[str] = None,
        skip_sanitization: bool = False
    ) -> OutputValidation:
        """
        Sanitize outgoing data and check it against a schema.

        Schema mismatches produce warnings, never a failed request.
        """
        config = self._config
        sanitized = data if skip_sanitization else self.remove_sensitive_fields(data)

        if not config.enabled or schema is None:
            return OutputValidation(success=True, data=sanitized)

        result = InputValidator(ValidatorConfig(sanitize_strings=False, log_errors=False)).validate(
            sanitized, schema, correlation_id=correlation_id
        )
        if result.success:
            return OutputValidation(success=True, data=result.data)

        warnings = [f"{e.field}: {e.message}" for e in result.errors] or [result.message]
        if config.log_errors:
            logger.warning(
                "Output validation failed",
                correlation_id=correlation_id,
                issues=warnings
            )
        return OutputValidation(success=False, data=sanitized, warnings=warnings)


def _strip(value: Any, needles: list[str]) -> Any:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    if isinstance(value, dict):
        return {
            k: _strip(v, needles)
            for k, v in value.items()
            if not any(n in str(k).lower() for n in needles)
        }
    if isinstance(value, (list, tuple)):
        return [_strip(v, needles) for v in value]
    return value


# Global output validator instance
_output_validator: Optional[OutputValidator] = None


def get_output_validator() -> OutputValidator:
    global _output_validator
    if _output_validator is None:
        _output_validator = OutputValidator()
    return _output_validator


def configure_output_validator(**changes: Any) -> OutputValidatorConfig:
    return get_output_validator().configure(**changes)


def add_sensitive_fields(*fields: str) -> OutputValidatorConfig:
    return get_output_validator().add_sensitive_fields(*fields)


def reset_output_validator_config() -> None:
    get_output_validator().reset()


def remove_sensitive_fields(data: Any) -> Any:
    return get_output_validator().remove_sensitive_fields(data)


def validate_output(
    data: Any,
    schema: Any = None,
    correlation_id: Optional[str] = None,
    skip_sanitization: bool = False
) -> OutputValidation:
    return get_output_validator().validate(
        data, schema, correlation_id=correlation_id, skip_sanitization=skip_sanitization
    )


# =============================================================================
# Envelope builders
# =============================================================================

def _meta(correlation_id: Optional[str], duration: float) -> ResponseMeta:
    return ResponseMeta(
        correlation_id=correlation_id or "unknown",
        duration=round(duration, 2),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def build_success_response(
    data: Any,
    correlation_id: Optional[str] = None,
    duration: float = 0
) -> ApiResponse:
    return ApiResponse(
        success=True,
        data=remove_sensitive_fields(data),
        meta=_meta(correlation_id, duration),
    )


def build_error_response(
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
    duration: float = 0
) -> ApiResponse:
    return ApiResponse(
        success=False,
        error=ApiError(
            code=code.value if isinstance(code, ErrorCode) else code,
            message=message,
            details=remove_sensitive_fields(details) if details else None,
        ),
        meta=_meta(correlation_id, duration),
    )


def build_api_response(
    data: Any,
    correlation_id: Optional[str] = None,
    start_time: Optional[float] = None
) -> ApiResponse:
    """Build a success envelope, timing from a ``time.monotonic()`` start."""
    duration = (time.monotonic() - start_time) * 1000 if start_time is not None else 0
    return build_success_response(data, correlation_id, duration)
