"""Control Plane - FastAPI Application.

Every ``/api/*`` request is handed to the dispatcher, which runs the
middleware pipeline and the resolved intent's tool plan. Tool
implementations are registered on the tool router by the host.
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging
from control_plane.audit import AuditTrail, set_audit_trail
from control_plane.auth import (
    AuthConfig,
    AuthResolver,
    GoogleTokenInfoValidator,
    JWTTokenValidator,
    StubApiKeyValidator,
    StoredKeyValidator,
    StubOAuthValidator,
    get_auth_resolver,
    set_auth_resolver,
)
from control_plane.credentials import CredentialCache, CredentialLoader
from control_plane.dispatcher import VERSION, Dispatcher
from control_plane.executor import get_tool_router
from control_plane.metrics import CONTENT_TYPE_LATEST, Metrics, get_metrics, set_metrics
from control_plane.ratelimit import RateLimiter, set_rate_limiter
from control_plane.responses import configure_output_validator
from control_plane.routes import get_route_registry
from control_plane.validation import InputValidator, ValidatorConfig

logger = get_logger(__name__)

API_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Global instances
_settings: Optional[Settings] = None
_dispatcher: Optional[Dispatcher] = None
_audit: Optional[AuditTrail] = None
_credentials: Optional[CredentialLoader] = None


def build_oauth_validator(settings: Settings) -> Any:
    """Pick the OAuth validator named in settings (stub, jwt or google)."""
    kind = settings.auth.oauth_validator.lower()
    if kind == "jwt":
        if not settings.auth.jwt_secret:
            raise ValueError("CP_AUTH_JWT_SECRET is required for the jwt OAuth validator")
        return JWTTokenValidator(settings.auth.jwt_secret, settings.auth.jwt_algorithm)
    if kind == "google":
        return GoogleTokenInfoValidator()
    if kind != "stub":
        raise ValueError(f"Unknown OAuth validator: {settings.auth.oauth_validator}")
    logger.warning("Using stub OAuth validator; tokens are not verified")
    return StubOAuthValidator()


def build_api_key_validator(settings: Settings, credentials: Optional[CredentialLoader] = None) -> Any:
    """Pick the API key validator named in settings (stub or stored)."""
    kind = settings.auth.api_key_validator.lower()
    if kind == "stored":
        return StoredKeyValidator(credentials if credentials is not None else CredentialLoader())
    if kind != "stub":
        raise ValueError(f"Unknown API key validator: {settings.auth.api_key_validator}")
    logger.warning("Using stub API key validator; only key length is checked")
    return StubApiKeyValidator(min_length=settings.auth.min_api_key_length)


def build_dispatcher(
    settings: Settings,
    audit: AuditTrail,
    credentials: Optional[CredentialLoader] = None
) -> Dispatcher:
    """Wire resolver, validators and dispatcher from settings."""
    resolver = AuthResolver(
        AuthConfig(
            api_key_header=settings.auth.api_key_header,
            oauth_header=settings.auth.oauth_header,
            api_key_validator=build_api_key_validator(settings, credentials),
            oauth_validator=build_oauth_validator(settings),
        ),
        audit=audit,
    )
    set_auth_resolver(resolver)

    validator = InputValidator(ValidatorConfig(
        sanitize_strings=settings.validation.sanitize_strings,
        max_string_length=settings.validation.max_string_length,
        log_errors=settings.validation.log_errors,
    ))
    configure_output_validator(
        enabled=settings.validation.validate_output,
        log_errors=settings.validation.log_errors,
        sensitive_fields=settings.validation.sensitive_fields,
    )

    origins = settings.server.cors_origins
    return Dispatcher(
        registry=get_route_registry(),
        router=get_tool_router(),
        auth_resolver=resolver,
        input_validator=validator,
        request_timeout=settings.server.request_timeout_seconds,
        cors_origins="*" if origins == ["*"] else origins,
        cors_credentials=settings.server.cors_credentials,
        rate_limit_enabled=settings.rate_limit.enabled,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _settings, _dispatcher, _audit, _credentials

    # Startup
    _settings = get_settings()
    setup_logging(_settings.log_level, json_output=_settings.environment == "production")
    logger.info("Starting Control Plane", environment=_settings.environment)

    _audit = AuditTrail(
        enabled=_settings.audit.enabled,
        buffer_size=_settings.audit.buffer_size,
        log_path=_settings.audit.log_path if _settings.audit.persist else None,
        flush_size=_settings.audit.flush_size,
    )
    set_audit_trail(_audit)
    set_metrics(Metrics(
        enabled=_settings.metrics.enabled,
        slow_operation_ms=_settings.metrics.slow_operation_ms,
    ))
    set_rate_limiter(RateLimiter(window_seconds=_settings.rate_limit.window_seconds))

    _credentials = CredentialLoader(cache=CredentialCache(_settings.auth.credential_cache_ttl_seconds))
    ok, missing = await _credentials.check_required_keys()
    if not ok:
        logger.warning("Required API keys missing", missing=missing)

    _dispatcher = build_dispatcher(_settings, _audit, _credentials)

    registry = get_route_registry()
    logger.info("Control Plane started", **registry.stats())

    yield

    # Shutdown
    logger.info("Shutting down Control Plane")
    await _audit.flush()
    oauth_validator = get_auth_resolver().config.oauth_validator
    if isinstance(oauth_validator, GoogleTokenInfoValidator):
        await oauth_validator.close()


# Create FastAPI app
app = FastAPI(
    title="Newsletter Control Plane",
    description="Request dispatch for the newsletter API: routing, auth, validation and tool execution",
    version=VERSION,
    lifespan=lifespan
)


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher()
    return _dispatcher


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return await request.json()
    except ValueError:
        # Let validation report a body of the wrong shape
        return raw.decode("utf-8", errors="replace")


@app.get("/routes", tags=["System"])
async def list_routes(category: Optional[str] = None):
    """Route table documentation."""
    registry = get_route_registry()
    routes = registry.generate_documentation()
    if category:
        routes = [r for r in routes if r["category"] == category]
    return {"routes": routes, "count": len(routes), "stats": registry.stats()}


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics."""
    return Response(get_metrics().payload(), media_type=CONTENT_TYPE_LATEST)


@app.api_route("/api/{path:path}", methods=API_METHODS, tags=["API"])
async def dispatch_api(request: Request, path: str):
    """Run an API request through the control plane."""
    result = await get_dispatcher().dispatch(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await _read_body(request),
        ip=request.client.host if request.client else None,
    )
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


def main():
    """Run the Control Plane server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "control_plane.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
