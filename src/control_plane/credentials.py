"""Credential loading with a short-lived cache.

Looks up service API keys from a per-user store first, then from the
environment. Results are cached for a few minutes to avoid repeated
store lookups on every request.
"""

import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Protocol

from shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0

SERVICE_ENV_VARS = {
    "claude": "ANTHROPIC_API_KEY",
    "stability": "STABILITY_API_KEY",
    "brave": "BRAVE_SEARCH_API_KEY",
    "google_api_key": "GOOGLE_API_KEY",
    "google_client_id": "GOOGLE_CLIENT_ID",
}

REQUIRED_SERVICES = ("claude", "stability")


def cache_key(service: str, user_email: Optional[str] = None) -> str:
    return f"{service}:{user_email or 'default'}"


@dataclass(frozen=True)
class _CachedCredential:
    value: str
    cached_at: float


class CredentialCache:
    """
    Thread-safe TTL cache keyed by service and user.

    Expired entries are evicted lazily when read; there is no background sweep.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CachedCredential] = {}
        self._lock = threading.Lock()

    def get(self, service: str, user_email: Optional[str] = None) -> Optional[str]:
        key = cache_key(service, user_email)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.cached_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.value

    def set(self, service: str, value: str, user_email: Optional[str] = None) -> None:
        entry = _CachedCredential(value=value, cached_at=self._clock())
        with self._lock:
            self._entries[cache_key(service, user_email)] = entry

    def invalidate(self, service: str, user_email: Optional[str] = None) -> None:
        with self._lock:
            self._entries.pop(cache_key(service, user_email), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("Credential cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CredentialStore(Protocol):
    """Per-user credential storage (persistence lives outside the Control Plane)."""

    async def get(self, service: str, user_email: Optional[str]) -> Optional[str]:
        ...


class EnvironmentCredentialStore:
    """Reads service keys from environment variables; ignores the user."""

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        env_vars: Optional[Mapping[str, str]] = None
    ) -> None:
        self._environ = environ if environ is not None else os.environ
        self._env_vars = dict(env_vars or SERVICE_ENV_VARS)

    async def get(self, service: str, user_email: Optional[str] = None) -> Optional[str]:
        env_var = self._env_vars.get(service)
        if not env_var:
            return None
        return self._environ.get(env_var) or None


class CredentialLoader:
    """
    Resolves service credentials: cache, then user store, then environment.

    Store errors are logged and treated as a miss.
    """

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        cache: Optional[CredentialCache] = None,
        fallback: Optional[CredentialStore] = None
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else CredentialCache()
        self.fallback = fallback or EnvironmentCredentialStore()

    async def get_api_key(self, service: str, user_email: Optional[str] = None) -> Optional[str]:
        """
        Get an API key for a service.

        Args:
            service: Service identifier (claude, stability, brave, ...)
            user_email: Owner of a per-user key, if any

        Returns:
            The key, or None if no source has one
        """
        cached = self.cache.get(service, user_email)
        if cached:
            return cached

        value: Optional[str] = None

        if user_email and self.store is not None:
            try:
                value = await self.store.get(service, user_email)
            except Exception as e:
                logger.error("Credential store lookup failed", service=service, error=str(e))

        if not value:
            value = await self.fallback.get(service, user_email)

        if value:
            self.cache.set(service, value, user_email)
            return value

        logger.warning("No API key found", service=service)
        return None

    async def get_all_api_keys(self, user_email: Optional[str] = None) -> dict[str, Optional[str]]:
        return {service: await self.get_api_key(service, user_email) for service in SERVICE_ENV_VARS}

    async def check_required_keys(self, user_email: Optional[str] = None) -> tuple[bool, list[str]]:
        """Return (is_complete, missing services) for the services generation needs."""
        missing = [s for s in REQUIRED_SERVICES if not await self.get_api_key(s, user_email)]
        return not missing, missing

    def clear_cache(self) -> None:
        self.cache.clear()
