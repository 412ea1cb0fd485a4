"""Authentication resolution for the Control Plane.

Handles:
- Credential extraction from request headers (API key, bearer token)
- Validation through injectable validators
- Audit records for every authentication outcome

Configuration is an immutable snapshot owned by the resolver.
Reconfiguring swaps in a new snapshot; requests already in flight keep
the snapshot they started with.
"""

import hmac
import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, Union

import httpx
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger
from shared.models import AuthError, AuthResult, AuthType
from control_plane.audit import AuditTrail, get_audit_trail
from control_plane.context import HeaderValue, header_value
from control_plane.credentials import CredentialLoader

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"


class ApiKeyValidation(BaseModel):
    """Result of validating an API key."""
    valid: bool
    service: str
    user_email: Optional[str] = None
    error: Optional[str] = None


class OAuthValidation(BaseModel):
    """Result of validating an OAuth access token."""
    valid: bool
    access_token: str = ""
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    scopes: Optional[list[str]] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class ApiKeyValidator(Protocol):
    async def validate(self, key: str, service: str) -> ApiKeyValidation:
        ...


class OAuthValidator(Protocol):
    async def validate(self, token: str) -> OAuthValidation:
        ...


# =============================================================================
# Validators
# =============================================================================

class StubApiKeyValidator:
    """Structural check only. Production wiring replaces it."""

    def __init__(self, min_length: int = 10) -> None:
        self.min_length = min_length

    async def validate(self, key: str, service: str) -> ApiKeyValidation:
        if not key:
            return ApiKeyValidation(valid=False, service=service, error="API key is required")

        if len(key) < self.min_length:
            return ApiKeyValidation(valid=False, service=service, error="Invalid API key format")

        logger.debug("API key validation (stub)", service=service, key_length=len(key))
        return ApiKeyValidation(valid=True, service=service)


class StubOAuthValidator:
    """Accepts any non-empty token. Production wiring replaces it."""

    async def validate(self, token: str) -> OAuthValidation:
        if not token:
            return OAuthValidation(valid=False, error="OAuth token is required")

        logger.debug("OAuth token validation (stub)", token_length=len(token))
        return OAuthValidation(valid=True, access_token=token)


class StoredKeyValidator:
    """
    Validates an API key against the key configured for the service.

    Comparison is constant-time; lookups go through the credential cache.
    """

    def __init__(self, loader: CredentialLoader) -> None:
        self.loader = loader

    async def validate(self, key: str, service: str) -> ApiKeyValidation:
        expected = await self.loader.get_api_key(service)
        if not expected:
            return ApiKeyValidation(valid=False, service=service, error=f"No API key configured for {service}")

        if not hmac.compare_digest(key.encode(), expected.encode()):
            return ApiKeyValidation(valid=False, service=service, error="Invalid API key")

        return ApiKeyValidation(valid=True, service=service)


class JWTTokenValidator:
    """Validates bearer tokens signed with a shared secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    async def validate(self, token: str) -> OAuthValidation:
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            return OAuthValidation(valid=False, access_token=token, error="Token expired")
        except JWTError as e:
            logger.warning("Token verification failed", error=str(e))
            return OAuthValidation(valid=False, access_token=token, error="Invalid or expired OAuth token")

        exp = payload.get("exp")
        scopes = payload.get("scope", "")

        return OAuthValidation(
            valid=True,
            access_token=token,
            user_email=payload.get("email"),
            user_name=payload.get("name") or payload.get("sub"),
            scopes=scopes.split() if isinstance(scopes, str) else list(scopes),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )


class GoogleTokenInfoValidator:
    """Validates Google OAuth access tokens with the tokeninfo endpoint."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        tokeninfo_url: str = GOOGLE_TOKENINFO_URL,
        timeout: float = 10.0
    ) -> None:
        self.tokeninfo_url = tokeninfo_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True
    )
    async def _fetch_tokeninfo(self, token: str) -> httpx.Response:
        return await self._client.get(self.tokeninfo_url, params={"access_token": token})

    async def validate(self, token: str) -> OAuthValidation:
        response = await self._fetch_tokeninfo(token)

        if response.status_code != 200:
            logger.warning("Google token rejected", status_code=response.status_code)
            return OAuthValidation(valid=False, access_token=token, error="Invalid or expired OAuth token")

        info = response.json()
        expires_in = info.get("expires_in")
        expires_at = None
        if expires_in is not None:
            now = datetime.now(timezone.utc).timestamp()
            expires_at = datetime.fromtimestamp(now + int(expires_in), tz=timezone.utc)

        return OAuthValidation(
            valid=True,
            access_token=token,
            user_email=info.get("email"),
            scopes=info.get("scope", "").split(),
            expires_at=expires_at,
        )

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Resolver
# =============================================================================

class AuthConfig(BaseModel):
    """Immutable auth resolver configuration."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    api_key_header: str = "x-api-key"
    oauth_header: str = "authorization"
    api_key_validator: Any = Field(default_factory=StubApiKeyValidator)
    oauth_validator: Any = Field(default_factory=StubOAuthValidator)


def strip_bearer(value: str) -> str:
    """Remove a case-insensitive ``Bearer `` prefix."""
    if value[:7].lower() == "bearer ":
        return value[7:]
    return value


class AuthResolver:
    """
    Resolves request credentials into an AuthResult.

    Expected failures (missing or invalid credentials) are returned as
    results and audited, never raised.
    """

    def __init__(
        self,
        config: Optional[AuthConfig] = None,
        audit: Optional[AuditTrail] = None
    ) -> None:
        self._config = config or AuthConfig()
        self._lock = threading.Lock()
        self.audit = audit if audit is not None else get_audit_trail()

    @property
    def config(self) -> AuthConfig:
        return self._config

    def configure(self, **changes: Any) -> AuthConfig:
        """Swap in a new configuration snapshot with the given changes."""
        with self._lock:
            self._config = self._config.model_copy(update=changes)
            return self._config

    def reset(self) -> None:
        """Restore default configuration."""
        with self._lock:
            self._config = AuthConfig()

    def extract_api_key(self, headers: Mapping[str, HeaderValue], config: Optional[AuthConfig] = None) -> Optional[str]:
        config = config or self._config
        return header_value(headers, config.api_key_header) or None

    def extract_oauth_token(self, headers: Mapping[str, HeaderValue], config: Optional[AuthConfig] = None) -> Optional[str]:
        config = config or self._config
        raw = header_value(headers, config.oauth_header)
        if raw is None and config.oauth_header.lower() != "authorization":
            raw = header_value(headers, "authorization")
        if not raw:
            return None
        return strip_bearer(raw) or None

    async def _run_api_key_validator(self, config: AuthConfig, key: str, service: str) -> ApiKeyValidation:
        try:
            return await config.api_key_validator.validate(key, service)
        except Exception:
            logger.error("API key validator failed", service=service, exc_info=True)
            return ApiKeyValidation(valid=False, service=service, error="API key validation failed")

    async def _run_oauth_validator(self, config: AuthConfig, token: str) -> OAuthValidation:
        try:
            return await config.oauth_validator.validate(token)
        except Exception:
            logger.error("OAuth validator failed", exc_info=True)
            return OAuthValidation(valid=False, access_token=token, error="OAuth token validation failed")

    async def resolve_auth(
        self,
        headers: Mapping[str, HeaderValue],
        required_type: Union[AuthType, str],
        correlation_id: Optional[str] = None,
        service: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> AuthResult:
        """
        Resolve authentication for a request.

        Args:
            headers: Request headers (any key case, str or list values)
            required_type: none, api_key or oauth
            correlation_id: Request correlation ID for audit entries
            service: Service the API key is for
            ip_address: Client IP for audit entries

        Returns:
            AuthResult describing the outcome
        """
        config = self._config
        required = required_type.value if isinstance(required_type, AuthType) else str(required_type)

        if required == AuthType.NONE.value:
            return AuthResult(valid=True, type=AuthType.NONE.value)

        if required == AuthType.API_KEY.value:
            return await self._resolve_api_key(config, headers, correlation_id, service, ip_address)

        if required == AuthType.OAUTH.value:
            return await self._resolve_oauth(config, headers, correlation_id, ip_address)

        return AuthResult(
            valid=False,
            type=required,
            error=AuthError(code="UNKNOWN_AUTH_TYPE", message=f"Unknown authentication type: {required}"),
        )

    async def _resolve_api_key(
        self,
        config: AuthConfig,
        headers: Mapping[str, HeaderValue],
        correlation_id: Optional[str],
        service: Optional[str],
        ip_address: Optional[str]
    ) -> AuthResult:
        api_key = self.extract_api_key(headers, config)

        if not api_key:
            logger.warning("API key required but not provided", correlation_id=correlation_id)
            await self.audit.log_auth_failure(
                method="api_key",
                reason="Missing API key",
                correlation_id=correlation_id,
                ip_address=ip_address,
            )
            return AuthResult(
                valid=False,
                type=AuthType.API_KEY.value,
                error=AuthError(code="MISSING_API_KEY", message="API key is required for this operation"),
            )

        validation = await self._run_api_key_validator(config, api_key, service or "unknown")

        if not validation.valid:
            reason = validation.error or "Invalid API key"
            logger.warning(
                "API key validation failed",
                correlation_id=correlation_id,
                service=validation.service,
                reason=reason
            )
            await self.audit.log_auth_failure(
                method="api_key",
                reason=reason,
                correlation_id=correlation_id,
                user_email=validation.user_email,
                ip_address=ip_address,
            )
            return AuthResult(
                valid=False,
                type=AuthType.API_KEY.value,
                error=AuthError(code="INVALID_API_KEY", message=reason),
            )

        await self.audit.log_api_key_validation(
            service=validation.service,
            success=True,
            correlation_id=correlation_id,
            user_email=validation.user_email,
            ip_address=ip_address,
        )
        return AuthResult(
            valid=True,
            type=AuthType.API_KEY.value,
            user_email=validation.user_email,
            service=validation.service,
        )

    async def _resolve_oauth(
        self,
        config: AuthConfig,
        headers: Mapping[str, HeaderValue],
        correlation_id: Optional[str],
        ip_address: Optional[str]
    ) -> AuthResult:
        token = self.extract_oauth_token(headers, config)

        if not token:
            logger.warning("OAuth token required but not provided", correlation_id=correlation_id)
            await self.audit.log_auth_failure(
                method="oauth",
                reason="Missing OAuth token",
                correlation_id=correlation_id,
                ip_address=ip_address,
            )
            return AuthResult(
                valid=False,
                type=AuthType.OAUTH.value,
                error=AuthError(
                    code="MISSING_OAUTH_TOKEN",
                    message="OAuth authentication is required for this operation",
                ),
            )

        validation = await self._run_oauth_validator(config, token)

        if not validation.valid:
            reason = validation.error or "Invalid OAuth token"
            logger.warning("OAuth token validation failed", correlation_id=correlation_id, reason=reason)
            await self.audit.log_auth_failure(
                method="oauth",
                reason=reason,
                correlation_id=correlation_id,
                user_email=validation.user_email,
                ip_address=ip_address,
            )
            return AuthResult(
                valid=False,
                type=AuthType.OAUTH.value,
                error=AuthError(
                    code="INVALID_OAUTH_TOKEN",
                    message=validation.error or "Invalid or expired OAuth token",
                ),
            )

        await self.audit.log_auth_success(
            method="oauth",
            correlation_id=correlation_id,
            user_email=validation.user_email,
            ip_address=ip_address,
        )
        return AuthResult(
            valid=True,
            type=AuthType.OAUTH.value,
            user_email=validation.user_email,
            scopes=validation.scopes,
        )

    async def validate_api_key(
        self,
        api_key: str,
        service: str,
        correlation_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> ApiKeyValidation:
        """Validate a key directly (e.g. when a user saves one) and audit the outcome."""
        result = await self._run_api_key_validator(self._config, api_key, service)
        await self.audit.log_api_key_validation(
            service=service,
            success=result.valid,
            reason=result.error,
            correlation_id=correlation_id,
            user_email=result.user_email,
            ip_address=ip_address,
        )
        return result

    async def validate_oauth_token(
        self,
        token: str,
        correlation_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> OAuthValidation:
        """Validate a token directly and audit the outcome."""
        result = await self._run_oauth_validator(self._config, token)
        if result.valid:
            await self.audit.log_auth_success(
                method="oauth",
                correlation_id=correlation_id,
                user_email=result.user_email,
                ip_address=ip_address,
            )
        else:
            await self.audit.log_auth_failure(
                method="oauth",
                reason=result.error or "Token validation failed",
                correlation_id=correlation_id,
                user_email=result.user_email,
                ip_address=ip_address,
            )
        return result


# Global resolver instance
_resolver: Optional[AuthResolver] = None


def get_auth_resolver() -> AuthResolver:
    """Get or create the global auth resolver."""
    global _resolver
    if _resolver is None:
        _resolver = AuthResolver()
    return _resolver


def set_auth_resolver(resolver: Optional[AuthResolver]) -> None:
    global _resolver
    _resolver = resolver


def configure_auth_resolver(**changes: Any) -> AuthConfig:
    """Reconfigure the global resolver (api_key_header, oauth_validator, ...)."""
    return get_auth_resolver().configure(**changes)


def reset_auth_resolver_config() -> None:
    """Restore the global resolver's default configuration."""
    get_auth_resolver().reset()


async def resolve_auth(
    headers: Mapping[str, HeaderValue],
    required_type: Union[AuthType, str],
    correlation_id: Optional[str] = None,
    service: Optional[str] = None,
    ip_address: Optional[str] = None
) -> AuthResult:
    return await get_auth_resolver().resolve_auth(
        headers,
        required_type,
        correlation_id=correlation_id,
        service=service,
        ip_address=ip_address,
    )
