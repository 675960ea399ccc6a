"""
Scheduling data models: PostStatus, SocialAccount, SlotDefinition, QueuedPost.

Defines the core data structures used by the scheduling subsystem:
- ``PostStatus``: Lifecycle status of a queued post, plus the transition table.
- ``SocialAccount``: A connected Instagram business account.
- ``SlotDefinition``: A recurring weekly posting slot in a local timezone.
- ``QueuedPost``: A video assigned to a concrete UTC instant.
- Result types returned by the assigner, queue and cycle runners.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from reelqueue.exceptions import InvalidTransitionError
from reelqueue.utils import parse_timestamp


# =============================================================================
# POST STATUS ENUM
# =============================================================================


class PostStatus(Enum):
    """Lifecycle status of a queued post.

    Transitions:
        QUEUED -> SCHEDULED -> UPLOADING -> PROCESSING_VIDEO -> PUBLISHED
                                         -> PUBLISHED
        UPLOADING / PROCESSING_VIDEO -> SCHEDULED (retry) | FAILED
        any non-terminal -> CANCELLED
    """

    QUEUED = "QUEUED"
    SCHEDULED = "SCHEDULED"
    PROCESSING_VIDEO = "PROCESSING_VIDEO"
    UPLOADING = "UPLOADING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions allowed)."""
        return self in TERMINAL_STATUSES

    @property
    def is_in_flight(self) -> bool:
        """A publish attempt currently owns the post."""
        return self in IN_FLIGHT_STATUSES

    @property
    def is_editable(self) -> bool:
        """Caption, cover and time may still be changed."""
        return self in EDITABLE_STATUSES

    @property
    def is_pending(self) -> bool:
        """Occupies its slot instant (every non-terminal status)."""
        return not self.is_terminal


TERMINAL_STATUSES: FrozenSet[PostStatus] = frozenset({
    PostStatus.PUBLISHED,
    PostStatus.FAILED,
    PostStatus.CANCELLED,
})

IN_FLIGHT_STATUSES: FrozenSet[PostStatus] = frozenset({
    PostStatus.UPLOADING,
    PostStatus.PROCESSING_VIDEO,
})

EDITABLE_STATUSES: FrozenSet[PostStatus] = frozenset({
    PostStatus.QUEUED,
    PostStatus.SCHEDULED,
})

PENDING_STATUSES: FrozenSet[PostStatus] = frozenset(
    s for s in PostStatus if s not in TERMINAL_STATUSES
)

ALLOWED_TRANSITIONS: Dict[PostStatus, FrozenSet[PostStatus]] = {
    PostStatus.QUEUED: frozenset({PostStatus.SCHEDULED, PostStatus.CANCELLED}),
    PostStatus.SCHEDULED: frozenset({PostStatus.UPLOADING, PostStatus.CANCELLED}),
    PostStatus.UPLOADING: frozenset({
        PostStatus.PROCESSING_VIDEO,
        PostStatus.PUBLISHED,
        PostStatus.SCHEDULED,
        PostStatus.FAILED,
        PostStatus.CANCELLED,
    }),
    PostStatus.PROCESSING_VIDEO: frozenset({
        PostStatus.PUBLISHED,
        PostStatus.SCHEDULED,
        PostStatus.FAILED,
        PostStatus.CANCELLED,
    }),
    PostStatus.PUBLISHED: frozenset(),
    PostStatus.FAILED: frozenset(),
    PostStatus.CANCELLED: frozenset(),
}


def sources_for(target: PostStatus) -> List[PostStatus]:
    """Statuses from which *target* may be entered.

    Used to build compare-and-set updates: a write to *target* only
    applies while the row is still in one of these statuses.
    """
    return [s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def ensure_transition(from_status: PostStatus, to_status: PostStatus) -> None:
    """Raise ``InvalidTransitionError`` unless the move is allowed."""
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransitionError(from_status.value, to_status.value)


# =============================================================================
# SOCIAL ACCOUNT
# =============================================================================


@dataclass
class SocialAccount:
    """A connected Instagram business account.

    ``access_token`` is the page token used for publishing;
    ``user_access_token`` is the long-lived user token exchanged on
    refresh.  Accounts are deactivated, never deleted.
    """

    id: str
    user_id: str
    instagram_user_id: str
    access_token: str
    instagram_username: str = ""
    facebook_page_id: Optional[str] = None
    user_access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    is_active: bool = True
    last_error: Optional[str] = None
    last_published_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SocialAccount":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            instagram_user_id=row.get("instagram_user_id") or "",
            access_token=row.get("access_token") or "",
            instagram_username=row.get("instagram_username") or "",
            facebook_page_id=row.get("facebook_page_id"),
            user_access_token=row.get("user_access_token"),
            token_expires_at=parse_timestamp(row.get("token_expires_at")),
            is_active=bool(row.get("is_active", True)),
            last_error=row.get("last_error"),
            last_published_at=parse_timestamp(row.get("last_published_at")),
        )


# =============================================================================
# SLOT DEFINITION
# =============================================================================


@dataclass
class SlotDefinition:
    """A recurring weekly posting slot.

    Attributes:
        day_of_week: 0 = Sunday ... 6 = Saturday.
        time_of_day: Local wall-clock time, ``"HH:MM"``.
        timezone: IANA zone name the wall-clock time is expressed in.
    """

    id: str
    user_id: str
    account_id: str
    day_of_week: int
    time_of_day: str
    timezone: str
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SlotDefinition":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            day_of_week=int(row["day_of_week"]),
            time_of_day=row["time_of_day"][:5],
            timezone=row["timezone"],
            is_active=bool(row.get("is_active", True)),
        )


# =============================================================================
# QUEUED POST
# =============================================================================


@dataclass
class QueuedPost:
    """A video assigned to a concrete UTC publish instant."""

    id: str
    user_id: str
    account_id: str
    video_id: str
    scheduled_for: datetime
    status: PostStatus
    caption: str = ""
    caption_generated: bool = False
    hashtags: List[str] = field(default_factory=list)
    cover_image_url: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    ig_container_id: Optional[str] = None
    ig_media_id: Optional[str] = None
    ig_permalink: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueuedPost":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            video_id=row["video_id"],
            scheduled_for=parse_timestamp(row["scheduled_for"]),
            status=PostStatus(row["status"]),
            caption=row.get("caption") or "",
            caption_generated=bool(row.get("caption_generated", False)),
            hashtags=list(row.get("hashtags") or []),
            cover_image_url=row.get("cover_image_url"),
            retry_count=int(row.get("retry_count") or 0),
            last_error=row.get("last_error"),
            last_attempt_at=parse_timestamp(row.get("last_attempt_at")),
            published_at=parse_timestamp(row.get("published_at")),
            ig_container_id=row.get("ig_container_id"),
            ig_media_id=row.get("ig_media_id"),
            ig_permalink=row.get("ig_permalink"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class AssignmentResult:
    """Outcome of assigning a video to the next open slot."""

    post: QueuedPost
    scheduled_for: datetime


@dataclass
class PreflightResult:
    """Read-only readiness check before queueing videos.

    ``reason`` is ``"no_account"`` or ``"no_slots"`` when not ready.
    """

    ready: bool
    reason: Optional[str] = None
    account: Optional[SocialAccount] = None
    slots: List[SlotDefinition] = field(default_factory=list)
    next_slots: List[datetime] = field(default_factory=list)
    slots_per_week: int = 0
    days_of_content: int = 0


@dataclass
class QueueStats:
    scheduled: int = 0
    in_flight: int = 0
    published: int = 0
    failed: int = 0
    cancelled: int = 0
    next_post_at: Optional[datetime] = None


@dataclass
class CycleResult:
    """Counters for one publish cycle."""

    published: int = 0
    failed: int = 0
    retried: int = 0
    recovered: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.published or self.failed or self.retried or self.recovered)


@dataclass
class PublishOutcome:
    """Result of a single publish attempt for one post."""

    post_id: str
    status: PostStatus
    ig_media_id: Optional[str] = None
    ig_permalink: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TokenRefreshResult:
    refreshed: int = 0
    failed: int = 0


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "PostStatus",
    "TERMINAL_STATUSES",
    "IN_FLIGHT_STATUSES",
    "EDITABLE_STATUSES",
    "PENDING_STATUSES",
    "ALLOWED_TRANSITIONS",
    "sources_for",
    "ensure_transition",
    "SocialAccount",
    "SlotDefinition",
    "QueuedPost",
    "AssignmentResult",
    "PreflightResult",
    "QueueStats",
    "CycleResult",
    "PublishOutcome",
    "TokenRefreshResult",
]
