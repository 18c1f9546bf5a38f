"""Error taxonomy for the canonical event sync."""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync failures."""


class SourceUnavailable(SyncError):
    """A provider could not be reached or answered with a failure status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class InvalidPayload(SyncError):
    """A provider response or webhook body does not match the expected schema."""


class ReconciliationWriteError(SyncError):
    """A write to the canonical store failed."""


class WriteConflict(ReconciliationWriteError):
    """A conditional write lost against the stored state."""


class AuthenticationFailure(SyncError):
    """A webhook secret did not match."""


class UnknownCalendar(SyncError):
    """A calendar filter does not name a configured calendar."""


class ConfigurationError(SyncError):
    """Configuration is missing or malformed."""
