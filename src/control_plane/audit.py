"""Audit trail for the Control Plane.

Records security-relevant actions (authentication outcomes, API key
validation, OAuth grants, exports, email sends) as immutable entries.
Entries are kept in a bounded in-memory buffer, logged as structured
events, and optionally persisted as JSON lines or handed to a callback.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiofiles

from shared.logging import get_logger
from shared.models import AuditAction, AuditEntry
from control_plane.context import generate_correlation_id

logger = get_logger(__name__)

PersistCallback = Callable[[AuditEntry], Awaitable[None]]


def generate_audit_id() -> str:
    return f"audit-{uuid.uuid4().hex[:12]}"


class AuditTrail:
    """
    Write-only sink for audit entries.

    Persistence failures are logged and never raised; an audit write
    must not break the request that produced it.
    """

    # Detail keys containing any of these are redacted
    SENSITIVE_KEYS = ("password", "token", "secret", "key", "credential", "auth")

    def __init__(
        self,
        enabled: bool = True,
        buffer_size: int = 500,
        log_path: Optional[str] = None,
        flush_size: int = 100,
        persist_callback: Optional[PersistCallback] = None
    ) -> None:
        self.enabled = enabled
        self.log_path = Path(log_path) if log_path else None
        self.flush_size = flush_size
        self.persist_callback = persist_callback
        self._buffer: deque[AuditEntry] = deque(maxlen=buffer_size)
        self._pending: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _redact_sensitive(self, details: dict[str, Any]) -> dict[str, Any]:
        redacted = {}
        for key, value in details.items():
            if any(s in key.lower() for s in self.SENSITIVE_KEYS):
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = value
        return redacted

    def create_entry(
        self,
        action: AuditAction,
        resource_type: str,
        success: bool,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None
    ) -> AuditEntry:
        return AuditEntry(
            id=generate_audit_id(),
            correlation_id=correlation_id or generate_correlation_id(),
            user_id=user_id,
            user_email=user_email,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            success=success,
            ip_address=ip_address,
            details=self._redact_sensitive(details) if details else None,
        )

    async def log(
        self,
        action: AuditAction,
        resource_type: str,
        success: bool,
        **fields: Any
    ) -> AuditEntry:
        """
        Record an audit entry.

        Args:
            action: Audited action
            resource_type: Type of the affected resource
            success: Outcome of the action
            **fields: correlation_id, user_id, user_email, resource_id,
                ip_address, details

        Returns:
            The created entry (also returned when auditing is disabled)
        """
        entry = self.create_entry(action, resource_type, success, **fields)

        if not self.enabled:
            return entry

        async with self._lock:
            self._buffer.append(entry)

        target = resource_type if not entry.resource_id else f"{resource_type} ({entry.resource_id})"
        log = logger.info if entry.success else logger.warning
        log(
            f"{action.value} on {target}: {'success' if success else 'failed'}",
            audit_id=entry.id,
            correlation_id=entry.correlation_id,
            user_email=entry.user_email,
            resource_id=entry.resource_id
        )

        await self._persist(entry)
        return entry

    async def _persist(self, entry: AuditEntry) -> None:
        if self.persist_callback is not None:
            try:
                await self.persist_callback(entry)
            except Exception as e:
                logger.error("Failed to persist audit entry", audit_id=entry.id, error=str(e))

        if self.log_path is None:
            return

        async with self._lock:
            self._pending.append(entry)
            if len(self._pending) >= self.flush_size:
                await self._flush()

    async def _flush(self) -> None:
        """Flush pending entries to the JSON-lines file."""
        if not self._pending or self.log_path is None:
            return

        entries_to_write = self._pending.copy()
        self._pending.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e))
            # Keep entries for the next flush
            self._pending.extend(entries_to_write)

    async def flush(self) -> None:
        """Public method to flush pending entries."""
        async with self._lock:
            await self._flush()

    async def log_auth_success(
        self,
        method: str,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None
    ) -> AuditEntry:
        return await self.log(
            AuditAction.AUTH_SUCCESS,
            "authentication",
            True,
            correlation_id=correlation_id,
            user_id=user_id,
            user_email=user_email,
            ip_address=ip_address,
            details={"method": method, **(details or {})},
        )

    async def log_auth_failure(
        self,
        method: str,
        reason: str,
        correlation_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None
    ) -> AuditEntry:
        return await self.log(
            AuditAction.AUTH_FAILURE,
            "authentication",
            False,
            correlation_id=correlation_id,
            user_email=user_email,
            ip_address=ip_address,
            details={"method": method, "reason": reason, **(details or {})},
        )

    async def log_api_key_validation(
        self,
        service: str,
        success: bool,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> AuditEntry:
        return await self.log(
            AuditAction.API_KEY_VALIDATE,
            "api_key",
            success,
            correlation_id=correlation_id,
            user_email=user_email,
            resource_id=service,
            ip_address=ip_address,
            details={"reason": reason} if reason else None,
        )

    async def log_oauth_grant(
        self,
        provider: str,
        scopes: list[str],
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> AuditEntry:
        return await self.log(
            AuditAction.OAUTH_GRANT,
            "oauth",
            True,
            correlation_id=correlation_id,
            user_id=user_id,
            user_email=user_email,
            resource_id=provider,
            ip_address=ip_address,
            details={"provider": provider, "scopes": scopes},
        )

    async def log_oauth_revoke(
        self,
        provider: str,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> AuditEntry:
        return await self.log(
            AuditAction.OAUTH_REVOKE,
            "oauth",
            True,
            correlation_id=correlation_id,
            user_id=user_id,
            user_email=user_email,
            resource_id=provider,
            ip_address=ip_address,
        )

    async def log_export(
        self,
        resource_type: str,
        file_format: str,
        resource_id: Optional[str] = None,
        record_count: Optional[int] = None,
        **fields: Any
    ) -> AuditEntry:
        return await self.log(
            AuditAction.EXPORT,
            resource_type,
            True,
            resource_id=resource_id,
            details={"format": file_format, "record_count": record_count},
            **fields,
        )

    async def log_email_send(
        self,
        recipient_count: int,
        success: bool,
        newsletter_id: Optional[str] = None,
        error: Optional[str] = None,
        **fields: Any
    ) -> AuditEntry:
        return await self.log(
            AuditAction.SEND_EMAIL,
            "newsletter",
            success,
            resource_id=newsletter_id,
            details={"recipient_count": recipient_count, "error": error},
            **fields,
        )

    async def log_create(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **fields: Any
    ) -> AuditEntry:
        return await self.log(AuditAction.CREATE, resource_type, True, resource_id=resource_id, **fields)

    async def log_delete(self, resource_type: str, resource_id: str, **fields: Any) -> AuditEntry:
        return await self.log(AuditAction.DELETE, resource_type, True, resource_id=resource_id, **fields)

    def recent(
        self,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        resource_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> list[AuditEntry]:
        """
        Query buffered entries, oldest first.

        Args:
            correlation_id: Filter by correlation ID
            user_id: Filter by user ID
            action: Filter by action
            resource_type: Filter by resource type
            since: Only entries at or after this time
            limit: Maximum entries to return (the most recent ones)

        Returns:
            List of matching audit entries
        """
        results = list(self._buffer)

        if correlation_id:
            results = [e for e in results if e.correlation_id == correlation_id]
        if user_id:
            results = [e for e in results if e.user_id == user_id]
        if action:
            results = [e for e in results if e.action == action]
        if resource_type:
            results = [e for e in results if e.resource_type == resource_type]
        if since:
            results = [e for e in results if e.timestamp >= since]

        return results[-limit:] if limit > 0 else []

    def clear(self) -> None:
        """Clear the in-memory buffer."""
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)


# Global audit trail instance
_audit_trail: Optional[AuditTrail] = None


def get_audit_trail() -> AuditTrail:
    """Get or create the global audit trail instance."""
    global _audit_trail
    if _audit_trail is None:
        _audit_trail = AuditTrail()
    return _audit_trail


def set_audit_trail(trail: Optional[AuditTrail]) -> None:
    """Replace the global audit trail."""
    global _audit_trail
    _audit_trail = trail
