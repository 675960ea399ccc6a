"""
Custom exception classes for the reelqueue posting scheduler.

Errors are raised where they are detected and carry enough context to be
shown to the user or written to ``last_error``.  The scheduler timers
contain them: no exception propagates out of a cycle tick.

Hierarchy:
    Exception
    +-- SchedulerBaseError (base for all scheduling domain errors)
    |   +-- AccountNotFoundError
    |   +-- AccountInactiveError
    |   +-- SlotNotFoundError
    |   +-- SlotConflictError
    |   +-- PostNotFoundError
    |   +-- VideoNotReadyError
    |   +-- VideoAlreadyQueuedError
    |   +-- InvalidTransitionError
    |   |   +-- PostNotEditableError
    |   +-- InstagramAPIError
    |       +-- InstagramRateLimitError
    |       +-- InstagramTokenInvalidError
    |       +-- ContainerProcessingError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from dataclasses import dataclass
from typing import Optional


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# SCHEDULING DOMAIN EXCEPTIONS
# =============================================================================


class SchedulerBaseError(Exception):
    """Base exception for all scheduling errors."""

    pass


class AccountNotFoundError(SchedulerBaseError):
    """Raised when a social account does not exist or is not owned by the user."""

    pass


class AccountInactiveError(SchedulerBaseError):
    """Raised when a social account is disconnected and needs reconnection."""

    pass


class SlotNotFoundError(SchedulerBaseError):
    """Raised when a slot definition does not exist or is not owned by the user."""

    pass


class SlotConflictError(SchedulerBaseError):
    """Raised when a slot definition or slot instant is already taken."""

    pass


class PostNotFoundError(SchedulerBaseError):
    """Raised when a queued post does not exist or is not owned by the user."""

    pass


class VideoNotReadyError(SchedulerBaseError):
    """Raised when a video is missing or has not finished processing."""

    pass


class VideoAlreadyQueuedError(SchedulerBaseError):
    """Raised when a video already has a non-terminal queued post."""

    pass


class InvalidTransitionError(SchedulerBaseError):
    """Raised when a post status transition is not allowed.

    Attributes:
        from_status: Current status value.
        to_status: Requested status value.
    """

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Cannot move post from '{from_status}' to '{to_status}'"
        )


class PostNotEditableError(InvalidTransitionError):
    """Raised when a post can no longer be edited or cancelled."""

    def __init__(self, status: str, action: str):
        self.action = action
        super().__init__(
            status,
            status,
            f"Cannot {action} a post with status '{status}'",
        )


# =============================================================================
# INSTAGRAM GRAPH API EXCEPTIONS
# =============================================================================


@dataclass(frozen=True)
class GraphErrorClassification:
    """How a Graph API error should be handled by the publisher.

    Attributes:
        category: One of ``token_expired``, ``token_invalid``,
            ``permission_denied``, ``rate_limited``, ``media_error``,
            ``unknown``.
        user_message: Message suitable for ``last_error``.
        should_retry: Whether the publish attempt may be retried.
        should_deactivate_account: Whether the account must be reconnected.
    """

    category: str
    user_message: str
    should_retry: bool
    should_deactivate_account: bool


UNKNOWN_ERROR = GraphErrorClassification(
    category="unknown",
    user_message="Instagram API error",
    should_retry=True,
    should_deactivate_account=False,
)


class InstagramAPIError(SchedulerBaseError):
    """Raised for Instagram Graph API failures.

    Attributes:
        classification: Retry/deactivation decision for this error.
    """

    def __init__(
        self,
        message: str,
        classification: GraphErrorClassification = UNKNOWN_ERROR,
    ):
        self.classification = classification
        super().__init__(message)

    @property
    def should_retry(self) -> bool:
        return self.classification.should_retry


class InstagramRateLimitError(InstagramAPIError):
    """Raised when the Graph API rate limit is hit."""

    pass


class InstagramTokenInvalidError(InstagramAPIError):
    """Raised when an access or refresh token is confirmed invalid."""

    pass


class ContainerProcessingError(InstagramAPIError):
    """Raised when a media container fails or never finishes processing."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Scheduling
    "SchedulerBaseError",
    "AccountNotFoundError",
    "AccountInactiveError",
    "SlotNotFoundError",
    "SlotConflictError",
    "PostNotFoundError",
    "VideoNotReadyError",
    "VideoAlreadyQueuedError",
    "InvalidTransitionError",
    "PostNotEditableError",
    # Instagram
    "GraphErrorClassification",
    "UNKNOWN_ERROR",
    "InstagramAPIError",
    "InstagramRateLimitError",
    "InstagramTokenInvalidError",
    "ContainerProcessingError",
]
