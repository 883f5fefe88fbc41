"""Error taxonomy for the accounting sync engine.

Whole-run failures (ConfigurationError, AuthError and subclasses) abort a
sync run and propagate to the caller. Per-item failures (ValidationError,
TransientError, MappingError) are recorded in SyncResult.errors and the
batch continues. RemoteAPIError is raised by remote adapters only and is
classified by the RetryExecutor; nothing else should catch it.
"""

from __future__ import annotations


class AccountingSyncError(Exception):
    """Base class for all sync engine errors."""


# ── Whole-run failures ──────────────────────────────────────────────────────


class ConfigurationError(AccountingSyncError):
    """Integration is not set up (missing client credentials, keys, ...)."""


class NotConnectedError(ConfigurationError):
    """Tenant has no stored connection record."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Accounting integration not connected for tenant {tenant_id}")
        self.tenant_id = tenant_id


class AuthError(AccountingSyncError):
    """Credentials rejected by the remote service; needs re-authorization."""


class RefreshFailedError(AuthError):
    """Refresh token expired or rejected. Never retried automatically."""


class InvalidOAuthStateError(AuthError):
    """OAuth callback state token is unknown, expired or already used."""


# ── Per-item failures ───────────────────────────────────────────────────────


class TransientError(AccountingSyncError):
    """Rate limit or remote server fault that persisted after all retries."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class ValidationError(AccountingSyncError):
    """Remote service rejected a specific payload (4xx other than 401/429)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MappingError(ValidationError):
    """A local entity cannot be expressed in the remote schema (e.g. unlinked customer)."""


# ── Conflicts & orchestration ───────────────────────────────────────────────


class ConflictError(AccountingSyncError):
    """Category for divergent concurrent edits.

    Never raised: conflicts are recorded as ConflictRecords and reported in
    SyncResult.conflicts. Not mapped to an HTTP status.
    """


class ConflictNotFoundError(AccountingSyncError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflict not found: {conflict_id}")
        self.conflict_id = conflict_id


class AlreadyResolvedError(AccountingSyncError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflict already resolved: {conflict_id}")
        self.conflict_id = conflict_id


class SyncAlreadyInProgressError(AccountingSyncError):
    """A run for the same (tenant, entity type) is already in flight."""

    def __init__(self, tenant_id: str, entity_type: str) -> None:
        super().__init__(f"Sync already in progress for tenant {tenant_id}, entity type {entity_type}")
        self.tenant_id = tenant_id
        self.entity_type = entity_type


class DuplicateLinkageError(AccountingSyncError):
    """The local store already links this remote id for the tenant and entity type."""

    def __init__(self, entity_type: str, remote_id: str) -> None:
        super().__init__(f"Remote {entity_type} {remote_id} is already linked to a local entity")
        self.entity_type = entity_type
        self.remote_id = remote_id


# ── Remote adapter error (unclassified) ─────────────────────────────────────


class RemoteAPIError(Exception):
    """Raw failure from the remote accounting API.

    status_code is None for transport-level failures (connection reset,
    timeout), which are treated as transient.
    """

    def __init__(self, message: str, status_code: int | None = None, payload: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
