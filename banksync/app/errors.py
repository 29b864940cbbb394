"""
Bank sync error hierarchy

Connection-level errors propagate to the top of a sync run and are recorded
on the SyncRun and the BankConnection. Account-level errors are converted
into counters by the orchestrator.
"""

from typing import Optional


class BankSyncError(Exception):
    """Base class for all bank sync and categorization errors."""
    pass


class TokenExpiredError(BankSyncError):
    """Access token has expired and no refresh token is available. The connection must be re-linked."""
    pass


class ProviderError(BankSyncError):
    """Base class for failures talking to the banking provider."""
    pass


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout or 5xx from the provider. Safe to retry later."""
    pass


class ProviderRejectedError(ProviderError):
    """The provider rejected the request (4xx). Not retryable without user action."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(BankSyncError):
    pass


class InvalidStateError(BankSyncError):
    """Connection is not in a state that allows the operation, or an OAuth state token is missing/expired."""
    pass


class NoLinkedAccountsError(BankSyncError):
    pass


class ImportConflictError(BankSyncError):
    """A candidate transaction already exists. Counted as skipped, never surfaced."""

    def __init__(self, message: str, existing_transaction_id: Optional[int] = None):
        super().__init__(message)
        self.existing_transaction_id = existing_transaction_id


class SyncTimeoutError(BankSyncError):
    """A sync run exceeded its wall-clock budget and was abandoned."""
    pass
