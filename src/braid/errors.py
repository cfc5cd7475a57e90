"""Error taxonomy for the reconciliation engine.

Local tracker operations keep raising ``KeyError`` / ``ValueError`` for
unknown IDs and bad input. The classes here cover the sync boundaries:
webhook integrity, convention parsing, mapping correlation, and remote I/O.
"""

from __future__ import annotations


class BraidError(Exception):
    """Base class for braid sync errors."""


class WebhookError(BraidError):
    """Rejected webhook delivery. ``status_code`` is the HTTP status to return."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ConventionError(BraidError, ValueError):
    """Invalid convention override (bad regex, unknown type, out-of-range priority)."""


class MappingError(BraidError, ValueError):
    """Duplicate or ambiguous local/remote correlation."""


class StaleMappingError(MappingError):
    """The mapping row changed since it was read (optimistic version mismatch)."""


class RemoteAPIError(BraidError):
    """Permanent failure from the remote issue API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteAPIError):
    """Retryable remote failure: timeout, connection reset, 5xx, or rate limiting."""


class RetryExhaustedError(TransientRemoteError):
    """A transient failure persisted through every retry attempt."""

    def __init__(self, message: str, *, attempts: int, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.attempts = attempts


class SyncFailedError(BraidError):
    """An installation exceeded its consecutive-error budget."""

    def __init__(self, installation_id: str, error_count: int, message: str) -> None:
        super().__init__(f"Installation {installation_id} failed {error_count} consecutive passes: {message}")
        self.installation_id = installation_id
        self.error_count = error_count
