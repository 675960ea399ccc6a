"""
Posting queue: listing, reordering, editing and cancelling queued posts.

Enqueueing lives in :class:`~reelqueue.scheduling.queue_assigner.QueueAssigner`;
this module covers everything a user does to posts once they exist.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from reelqueue.exceptions import (
    PostNotEditableError,
    PostNotFoundError,
    SlotConflictError,
    ValidationError,
)
from reelqueue.scheduling.models import (
    EDITABLE_STATUSES,
    IN_FLIGHT_STATUSES,
    PENDING_STATUSES,
    PostStatus,
    QueuedPost,
    QueueStats,
    ensure_transition,
)
from reelqueue.utils import ensure_utc, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

HISTORY_STATUSES = (PostStatus.PUBLISHED, PostStatus.FAILED)


class PostingQueue:
    """Operations on a user's queued posts.

    Args:
        db: Database client (:class:`~reelqueue.database.SupabaseDB`).
    """

    def __init__(self, db: "SupabaseDB") -> None:  # noqa: F821
        self.db = db

    async def _get_owned_post(self, user_id: str, post_id: str) -> QueuedPost:
        row = await self.db.get_post(post_id)
        if row is None or row["user_id"] != user_id:
            raise PostNotFoundError(f"Post {post_id} not found")
        return QueuedPost.from_row(row)

    # ================================================================
    # QUERIES
    # ================================================================

    async def list_queue(
        self,
        user_id: str,
        statuses: Optional[Iterable[PostStatus]] = None,
        account_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[QueuedPost]:
        """Posts ordered by ``scheduled_for`` ascending.

        Defaults to every non-terminal status.
        """
        rows = await self.db.list_posts(
            user_id,
            statuses=list(statuses) if statuses is not None else PENDING_STATUSES,
            account_id=account_id,
            limit=limit,
        )
        return [QueuedPost.from_row(r) for r in rows]

    async def calendar(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[QueuedPost]:
        """Every post of the user scheduled within ``[start, end]``."""
        start, end = ensure_utc(start), ensure_utc(end)
        if end < start:
            raise ValidationError("calendar end must not be before start")
        rows = await self.db.list_posts(user_id, start=start, end=end)
        return [QueuedPost.from_row(r) for r in rows]

    async def history(
        self, user_id: str, limit: int = 25, offset: int = 0
    ) -> Tuple[List[QueuedPost], int]:
        """Published and failed posts, newest first, with the total count."""
        if offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset}")
        rows, total = await self.db.get_post_history(
            user_id, HISTORY_STATUSES, limit, offset
        )
        return [QueuedPost.from_row(r) for r in rows], total

    async def stats(self, user_id: str) -> QueueStats:
        """Counts per status bucket and the next upcoming instant."""
        stats = QueueStats()
        now = utc_now()
        for row in await self.db.get_status_rows(user_id):
            status = PostStatus(row["status"])
            if status in EDITABLE_STATUSES:
                stats.scheduled += 1
                instant = parse_timestamp(row["scheduled_for"])
                if instant >= now and (stats.next_post_at is None or instant < stats.next_post_at):
                    stats.next_post_at = instant
            elif status in IN_FLIGHT_STATUSES:
                stats.in_flight += 1
            elif status is PostStatus.PUBLISHED:
                stats.published += 1
            elif status is PostStatus.FAILED:
                stats.failed += 1
            elif status is PostStatus.CANCELLED:
                stats.cancelled += 1
        return stats

    # ================================================================
    # REORDER
    # ================================================================

    async def reorder(
        self, user_id: str, account_id: str, ordered_post_ids: Sequence[str]
    ) -> List[QueuedPost]:
        """Redistribute the existing instants of posts in a new order.

        The instants held by the listed ``QUEUED``/``SCHEDULED`` posts are
        sorted ascending and handed out positionally: the first id gets
        the earliest instant.  No new instants are created; ids beyond
        the number of available instants keep their current time.

        Returns:
            The reordered posts in the requested order.
        """
        if len(set(ordered_post_ids)) != len(ordered_post_ids):
            raise ValidationError("ordered_post_ids contains duplicates")

        rows = await self.db.get_posts_by_ids(user_id, account_id, ordered_post_ids)
        by_id: Dict[str, QueuedPost] = {}
        for row in rows:
            post = QueuedPost.from_row(row)
            if post.status in EDITABLE_STATUSES:
                by_id[post.id] = post

        ordered = [by_id[pid] for pid in ordered_post_ids if pid in by_id]
        instants = sorted(p.scheduled_for for p in ordered)

        assignments = [
            (post.id, instant)
            for post, instant in zip(ordered, instants)
            if post.scheduled_for != instant
        ]
        if assignments:
            await self.db.reassign_post_times(assignments)

        new_times = dict(assignments)
        for post in ordered:
            post.scheduled_for = new_times.get(post.id, post.scheduled_for)

        logger.info(
            "[QUEUE] Reordered %d posts for account %s (%d moved)",
            len(ordered), account_id, len(assignments),
        )
        return ordered

    # ================================================================
    # EDITS
    # ================================================================

    async def update_post(
        self,
        user_id: str,
        post_id: str,
        caption: Optional[str] = None,
        hashtags: Optional[List[str]] = None,
        scheduled_for: Optional[datetime] = None,
        cover_image_url: Optional[str] = None,
    ) -> QueuedPost:
        """Edit a post that has not started publishing.

        Raises:
            PostNotEditableError: If the post is in flight or terminal.
            ValidationError: If the new time is not in the future.
            SlotConflictError: If the new time is held by another post.
        """
        post = await self._get_owned_post(user_id, post_id)
        if not post.status.is_editable:
            raise PostNotEditableError(post.status.value, "edit")

        fields: Dict[str, Any] = {}
        if caption is not None:
            fields["caption"] = caption
            fields["caption_generated"] = False
        if hashtags is not None:
            fields["hashtags"] = hashtags
        if cover_image_url is not None:
            fields["cover_image_url"] = cover_image_url
        if scheduled_for is not None:
            scheduled_for = ensure_utc(scheduled_for)
            if scheduled_for <= utc_now():
                raise ValidationError("scheduled_for must be in the future")
            taken = await self.db.get_occupied_instants(
                post.account_id, scheduled_for, scheduled_for,
                PENDING_STATUSES, exclude_post_id=post.id,
            )
            if taken:
                raise SlotConflictError(
                    f"Slot {scheduled_for.isoformat()} is already taken"
                )
            fields["scheduled_for"] = scheduled_for.isoformat()

        if not fields:
            return post

        updated = await self.db.transition_post(post.id, EDITABLE_STATUSES, fields)
        if not updated:
            # Publishing started (or the post was cancelled) since we read it
            current = await self._get_owned_post(user_id, post_id)
            raise PostNotEditableError(current.status.value, "edit")

        logger.info("[QUEUE] Post %s updated: %s", post_id, sorted(fields))
        return await self._get_owned_post(user_id, post_id)

    async def cancel(self, user_id: str, post_id: str) -> QueuedPost:
        """Move a non-terminal post to ``CANCELLED``.

        Raises:
            PostNotEditableError: If the post is already terminal.
        """
        post = await self._get_owned_post(user_id, post_id)
        if post.status.is_terminal:
            raise PostNotEditableError(post.status.value, "cancel")
        ensure_transition(post.status, PostStatus.CANCELLED)

        cancelled = await self.db.transition_post(
            post.id, PENDING_STATUSES, {"status": PostStatus.CANCELLED.value}
        )
        if not cancelled:
            current = await self._get_owned_post(user_id, post_id)
            raise PostNotEditableError(current.status.value, "cancel")

        if post.status.is_in_flight:
            logger.warning(
                "[QUEUE] Post %s cancelled while %s; an in-progress upload may still complete",
                post_id, post.status.value,
            )
        logger.info("[QUEUE] Post %s cancelled", post_id)
        post.status = PostStatus.CANCELLED
        return post


__all__ = ["PostingQueue", "HISTORY_STATUSES"]
