"""Input validation and sanitization.

Validates request bodies, query strings and path parameters against
declared schemas (pydantic models or JSON Schema dicts) and HTML-escapes
every string leaf of accepted bodies.
"""

import re
import threading
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.models import ValidationError, ValidationFailure, ValidationResult, ValidationSuccess
from shared.schema import json_type_name, schema_violations

logger = get_logger(__name__)

_ENTITY = r"&(?:amp|lt|gt|quot|#x27|#39|#\d+|#x[0-9a-fA-F]+);"
_ENTITY_RE = re.compile(_ENTITY)
_BARE_AMPERSAND = re.compile(r"&(?!" + _ENTITY[1:] + ")")

_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
}
_SPECIAL = re.compile(r"[<>\"']")


class ValidatorConfig(BaseModel):
    """Immutable input validator configuration."""
    model_config = ConfigDict(frozen=True)

    sanitize_strings: bool = True
    max_string_length: int = 100000
    log_errors: bool = True


def _truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value

    cut = max_length
    for entity in _ENTITY_RE.finditer(value):
        if entity.start() >= cut:
            break
        if entity.end() > cut:
            # Never leave half an entity behind
            cut = entity.start()
            break
    return value[:cut]


def sanitize_string(value: str, max_length: int = 100000) -> str:
    """
    HTML-escape a string and cap its length.

    Existing entities are left alone, so sanitizing twice gives the
    same result as sanitizing once.
    """
    escaped = _BARE_AMPERSAND.sub("&amp;", value)
    escaped = _SPECIAL.sub(lambda m: _ESCAPES[m.group(0)], escaped)
    return _truncate(escaped, max_length)


def sanitize_value(value: Any, max_length: int = 100000) -> Any:
    """Recursively sanitize every string leaf of dicts and lists."""
    if isinstance(value, str):
        return sanitize_string(value, max_length)
    if isinstance(value, dict):
        return {k: sanitize_value(v, max_length) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_value(v, max_length) for v in value]
    return value


def _is_model(schema: Any) -> bool:
    return isinstance(schema, type) and issubclass(schema, BaseModel)


def _expected_from_ctx(ctx: Optional[dict[str, Any]]) -> Optional[str]:
    if not ctx:
        return None
    return ", ".join(f"{k}={v}" for k, v in ctx.items() if k != "error")


def _pydantic_errors(exc: PydanticValidationError) -> list[ValidationError]:
    errors = []
    for err in exc.errors(include_url=False):
        missing = err["type"] == "missing"
        errors.append(ValidationError(
            field=".".join(str(p) for p in err["loc"]),
            message=err["msg"],
            code=err["type"],
            expected=_expected_from_ctx(err.get("ctx")),
            received=None if missing else json_type_name(err.get("input")),
        ))
    return errors


def summarize_errors(errors: list[ValidationError]) -> str:
    """Build the one-line summary for a failed validation."""
    if len(errors) == 1:
        field = errors[0].field or "input"
        return f"{field}: {errors[0].message}"

    fields = ", ".join(e.field or "input" for e in errors[:3])
    suffix = "..." if len(errors) > 3 else ""
    return f"{len(errors)} validation errors: {fields}{suffix}"


class InputValidator:
    """
    Validates raw request data against a schema.

    Schema violations come back as ValidationFailure values. Unexpected
    errors are logged and turned into a generic failure.
    """

    def __init__(self, config: Optional[ValidatorConfig] = None) -> None:
        self._config = config or ValidatorConfig()
        self._lock = threading.Lock()

    @property
    def config(self) -> ValidatorConfig:
        return self._config

    def configure(self, **changes: Any) -> ValidatorConfig:
        with self._lock:
            self._config = self._config.model_copy(update=changes)
            return self._config

    def reset(self) -> None:
        with self._lock:
            self._config = ValidatorConfig()

    def _check(self, raw: Any, schema: Any) -> tuple[Any, list[ValidationError]]:
        if schema is None:
            return raw, []

        if _is_model(schema):
            try:
                model = schema.model_validate(raw)
            except PydanticValidationError as e:
                return None, _pydantic_errors(e)
            return model.model_dump(by_alias=True), []

        if isinstance(schema, dict):
            violations = schema_violations(raw, schema)
            return raw, [ValidationError(**v) for v in violations]

        raise TypeError(f"Unsupported schema type: {type(schema).__name__}")

    def validate(
        self,
        raw: Any,
        schema: Any,
        correlation_id: Optional[str] = None,
        skip_sanitization: bool = False
    ) -> ValidationResult:
        """
        Validate and sanitize raw input.

        Args:
            raw: Parsed request data
            schema: Pydantic model class, JSON Schema dict, or None
            correlation_id: Request correlation ID for logging
            skip_sanitization: Return strings unescaped

        Returns:
            ValidationSuccess with the (sanitized) data, or ValidationFailure
        """
        config = self._config

        try:
            data, errors = self._check(raw, schema)

            if errors:
                message = summarize_errors(errors)
                if config.log_errors:
                    logger.warning(
                        "Input validation failed",
                        correlation_id=correlation_id,
                        errors=[e.model_dump(exclude_none=True) for e in errors]
                    )
                return ValidationFailure(message=message, errors=errors)

            if config.sanitize_strings and not skip_sanitization:
                data = sanitize_value(data, config.max_string_length)

            return ValidationSuccess(data=data)

        except Exception as e:
            logger.error(
                "Unexpected validation error",
                correlation_id=correlation_id,
                error=str(e),
                exc_info=True
            )
            return ValidationFailure(message="Validation failed due to unexpected error", errors=[])


# Global validator instance
_validator: Optional[InputValidator] = None


def get_input_validator() -> InputValidator:
    global _validator
    if _validator is None:
        _validator = InputValidator()
    return _validator


def configure_input_validator(**changes: Any) -> ValidatorConfig:
    return get_input_validator().configure(**changes)


def reset_input_validator_config() -> None:
    get_input_validator().reset()


def validate_input(
    raw: Any,
    schema: Any,
    correlation_id: Optional[str] = None,
    skip_sanitization: bool = False
) -> ValidationResult:
    return get_input_validator().validate(
        raw, schema, correlation_id=correlation_id, skip_sanitization=skip_sanitization
    )


def validate_query(raw: Any, schema: Any, correlation_id: Optional[str] = None) -> ValidationResult:
    """Validate query parameters. They are never rendered, so no escaping."""
    return validate_input(raw, schema, correlation_id=correlation_id, skip_sanitization=True)


def validate_params(raw: Any, schema: Any, correlation_id: Optional[str] = None) -> ValidationResult:
    """Validate path parameters. They are never rendered, so no escaping."""
    return validate_input(raw, schema, correlation_id=correlation_id, skip_sanitization=True)
