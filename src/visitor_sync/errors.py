"""Error taxonomy for visitor synchronization.

Every error carries a ``retriable`` flag consulted by the shared retry
policy (see ``src.visitor_sync.sync.retry``). Transient network and 5xx
failures are retriable; configuration problems and malformed requests
are not.
"""

from __future__ import annotations

# HTTP status codes that signal a transient condition even though they are 4xx.
TRANSIENT_CLIENT_STATUSES = frozenset({408, 425, 429})


def is_transient_status(status_code: int) -> bool:
    """Return True if a non-success HTTP status is worth retrying."""
    return status_code >= 500 or status_code in TRANSIENT_CLIENT_STATUSES


class VisitorSyncError(Exception):
    """Base class for all visitor-sync failures."""

    retriable: bool = True


class ClassificationError(VisitorSyncError):
    """Declared for completeness; attendee classification is total and never raises it."""

    retriable = False


class ConfigurationError(VisitorSyncError):
    """Missing or invalid connection descriptor. Fatal to the service instance."""

    retriable = False


class StoreReadError(VisitorSyncError):
    """The record store could not be read.

    Attributes:
        status_code: HTTP status from the store, if a response was received.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        self.status_code = status_code
        self.retriable = retriable
        super().__init__(message)


class StoreWriteError(VisitorSyncError):
    """The record store rejected a create or delete.

    Attributes:
        status_code: HTTP status from the store, if a response was received.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        self.status_code = status_code
        self.retriable = retriable
        super().__init__(message)


class NotificationTimeoutError(VisitorSyncError):
    """The notification endpoint did not answer within the configured timeout."""

    attempts: int = 0

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Request timeout after {timeout_ms}ms")


class NotificationRejectedError(VisitorSyncError):
    """The notification endpoint answered with a non-success status.

    Attributes:
        status_code: HTTP status returned (None for transport failures).
        body: Response text, truncated, for diagnostics.
    """

    attempts: int = 0

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str = "",
        retriable: bool = True,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.retriable = retriable
        super().__init__(message)


class MeetingNotFoundError(VisitorSyncError, LookupError):
    """The host calendar has no meeting with the requested id."""

    retriable = False

    def __init__(self, meeting_id: str) -> None:
        self.meeting_id = meeting_id
        super().__init__(f"Meeting not found: {meeting_id}")
