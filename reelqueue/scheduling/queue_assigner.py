"""
Assignment of videos to the next open slot instant.

``QueueAssigner`` walks an account's weekly slot calendar forward from a
starting instant, one day at a time for at most ``lookahead_days``, and
picks the earliest slot instant that is in the future and not already
held by a non-terminal post of the same account.

The no-double-booking guarantee has two layers: the occupied-instant
check here, and partial unique indexes in Postgres that reject a
concurrent insert at the same instant (surfaced as
``SlotConflictError``, after which the search resumes past that instant).
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional, Set

from reelqueue.config import PublishingConfig, get_settings
from reelqueue.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    SlotConflictError,
    VideoAlreadyQueuedError,
    VideoNotReadyError,
)
from reelqueue.scheduling.models import (
    PENDING_STATUSES,
    AssignmentResult,
    PostStatus,
    PreflightResult,
    QueuedPost,
    SlotDefinition,
    SocialAccount,
)
from reelqueue.scheduling.timezone import day_of_week, local_date_of, local_time_to_utc
from reelqueue.utils import ensure_utc, generate_id, utc_now

logger = logging.getLogger(__name__)

VIDEO_COMPLETED = "COMPLETED"

# Concurrent assignments racing for the same instant retry this often.
MAX_ASSIGN_ATTEMPTS = 3


class QueueAssigner:
    """Finds open slot instants and creates posts bound to them.

    Args:
        db: Database client (:class:`~reelqueue.database.SupabaseDB`).
        caption_generator: Optional
            :class:`~reelqueue.tools.caption_generator.CaptionGenerator`
            used when a video is queued without a caption.
        config: Publishing settings (lookahead, preflight size).
    """

    def __init__(
        self,
        db: "SupabaseDB",  # noqa: F821
        caption_generator: Optional["CaptionGenerator"] = None,  # noqa: F821
        config: Optional[PublishingConfig] = None,
        hashtag_count: Optional[int] = None,
    ) -> None:
        self.db = db
        self.caption_generator = caption_generator
        self.config = config or get_settings().publishing
        self.hashtag_count = hashtag_count or get_settings().caption_hashtag_count

    # ================================================================
    # SLOT FINDING
    # ================================================================

    async def _active_slots(self, user_id: str, account_id: str) -> List[SlotDefinition]:
        rows = await self.db.get_active_slots(account_id)
        return [SlotDefinition.from_row(r) for r in rows if r["user_id"] == user_id]

    async def _occupied(self, account_id: str, search_from: datetime) -> Set[datetime]:
        # One extra day covers slots late on the last local day.
        end = search_from + timedelta(days=self.config.lookahead_days + 1)
        instants = await self.db.get_occupied_instants(
            account_id, search_from, end, PENDING_STATUSES
        )
        return {ensure_utc(i) for i in instants}

    @staticmethod
    def _next_candidate(
        slots: List[SlotDefinition],
        search_from: datetime,
        occupied: Set[datetime],
        lookahead_days: int,
    ) -> Optional[datetime]:
        for offset in range(lookahead_days):
            candidates = []
            for slot in slots:
                # Each slot is walked in its own zone's calendar so that a
                # search starting late in the UTC day still sees the local
                # current day.
                local_day = local_date_of(search_from, slot.timezone) + timedelta(days=offset)
                if day_of_week(local_day) != slot.day_of_week:
                    continue
                instant = local_time_to_utc(local_day, slot.time_of_day, slot.timezone)
                if instant <= search_from or instant in occupied:
                    continue
                candidates.append(instant)
            if candidates:
                return min(candidates)
        return None

    async def find_next_open_slot(
        self,
        user_id: str,
        account_id: str,
        search_from: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Earliest unoccupied slot instant strictly after *search_from*.

        Args:
            search_from: Starting instant.  Defaults to now.

        Returns:
            Aware UTC instant, or ``None`` when the account has no active
            slots or every candidate within the lookahead is taken.
        """
        search_from = ensure_utc(search_from or utc_now())

        slots = await self._active_slots(user_id, account_id)
        if not slots:
            logger.debug("[QUEUE] Account %s has no active slots", account_id)
            return None

        occupied = await self._occupied(account_id, search_from)
        found = self._next_candidate(slots, search_from, occupied, self.config.lookahead_days)
        if found is None:
            logger.info(
                "[QUEUE] No open slot for account %s within %d days of %s",
                account_id, self.config.lookahead_days, search_from.isoformat(),
            )
        return found

    async def preview_next_slots(
        self,
        user_id: str,
        account_id: str,
        count: int,
        search_from: Optional[datetime] = None,
    ) -> List[datetime]:
        """Next *count* distinct open instants.  Never writes.

        Each search starts one minute past the previous result.
        """
        count = min(max(count, 0), self.config.preflight_max_slots)
        cursor = ensure_utc(search_from or utc_now())
        results: List[datetime] = []

        while len(results) < count:
            found = await self.find_next_open_slot(user_id, account_id, cursor)
            if found is None:
                break
            results.append(found)
            cursor = found + timedelta(minutes=1)
        return results

    # ================================================================
    # ASSIGNMENT
    # ================================================================

    async def _load_account(self, user_id: str, account_id: str) -> SocialAccount:
        row = await self.db.get_user_account(user_id, account_id)
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        account = SocialAccount.from_row(row)
        if not account.is_active:
            raise AccountInactiveError(
                account.last_error or "Instagram account needs to be reconnected"
            )
        return account

    async def _generate_caption(self, video: dict) -> tuple:
        """Caption and hashtags for a video; empty on any generator failure."""
        transcript = video.get("transcript") or ""
        if self.caption_generator is None or not transcript.strip():
            return "", [], False
        try:
            generated = await self.caption_generator.generate(
                transcript,
                title=video.get("original_name"),
                hashtag_count=self.hashtag_count,
            )
        except Exception as exc:
            logger.warning(
                "[QUEUE] Caption generation failed for video %s, queueing without caption: %s",
                video["id"], exc,
            )
            return "", [], False
        return generated.full_caption, generated.hashtags, True

    async def assign_video_to_next_slot(
        self,
        user_id: str,
        video_id: str,
        account_id: str,
        caption: Optional[str] = None,
        hashtags: Optional[List[str]] = None,
        cover_image_url: Optional[str] = None,
    ) -> Optional[AssignmentResult]:
        """Queue a processed video at the next open slot instant.

        Returns:
            The created post, or ``None`` when no open slot exists (the
            caller should ask the user to configure a schedule).

        Raises:
            VideoNotReadyError: If the video is missing or not ``COMPLETED``.
            VideoAlreadyQueuedError: If the video already has a pending post.
            AccountNotFoundError / AccountInactiveError: For a bad account.
        """
        video = await self.db.get_video(video_id)
        if video is None or video.get("user_id") != user_id:
            raise VideoNotReadyError(f"Video {video_id} not found")
        if video.get("status") != VIDEO_COMPLETED or not video.get("processed_url"):
            raise VideoNotReadyError(f"Video {video_id} has not finished processing")
        if await self.db.get_pending_post_for_video(video_id, PENDING_STATUSES):
            raise VideoAlreadyQueuedError(f"Video {video_id} is already queued")

        await self._load_account(user_id, account_id)

        search_from = utc_now()
        slot = await self.find_next_open_slot(user_id, account_id, search_from)
        if slot is None:
            return None

        caption_generated = False
        if caption is None:
            caption, generated_tags, caption_generated = await self._generate_caption(video)
            if hashtags is None:
                hashtags = generated_tags

        for attempt in range(1, MAX_ASSIGN_ATTEMPTS + 1):
            try:
                row = await self.db.insert_post({
                    "id": generate_id(),
                    "user_id": user_id,
                    "account_id": account_id,
                    "video_id": video_id,
                    "caption": caption,
                    "caption_generated": caption_generated,
                    "hashtags": hashtags or [],
                    "cover_image_url": cover_image_url,
                    "scheduled_for": slot.isoformat(),
                    "status": PostStatus.SCHEDULED.value,
                    "retry_count": 0,
                })
            except SlotConflictError:
                if attempt == MAX_ASSIGN_ATTEMPTS:
                    raise
                if await self.db.get_pending_post_for_video(video_id, PENDING_STATUSES):
                    raise VideoAlreadyQueuedError(f"Video {video_id} is already queued")
                logger.info(
                    "[QUEUE] Slot %s taken concurrently, searching again (attempt %d/%d)",
                    slot.isoformat(), attempt, MAX_ASSIGN_ATTEMPTS,
                )
                slot = await self.find_next_open_slot(user_id, account_id, slot)
                if slot is None:
                    return None
                continue

            post = QueuedPost.from_row(row)
            logger.info(
                "[QUEUE] Video %s queued for %s (post=%s, account=%s)",
                video_id, slot.isoformat(), post.id, account_id,
            )
            return AssignmentResult(post=post, scheduled_for=slot)

        return None

    # ================================================================
    # PREFLIGHT
    # ================================================================

    async def preflight(self, user_id: str, video_count: int = 1) -> PreflightResult:
        """Read-only readiness check for queueing *video_count* videos.

        Looks at the user's first active account, its active slots, and
        the next upcoming open instants.  Never writes.
        """
        row = await self.db.get_first_active_account(user_id)
        if row is None:
            return PreflightResult(ready=False, reason="no_account")
        account = SocialAccount.from_row(row)

        slots = await self._active_slots(user_id, account.id)
        if not slots:
            return PreflightResult(ready=False, reason="no_slots", account=account)

        next_slots = await self.preview_next_slots(
            user_id, account.id, max(video_count, 1)
        )
        slots_per_week = len(slots)
        days_of_content = math.ceil(max(video_count, 0) * 7 / slots_per_week)

        return PreflightResult(
            ready=True,
            account=account,
            slots=slots,
            next_slots=next_slots,
            slots_per_week=slots_per_week,
            days_of_content=days_of_content,
        )


__all__ = ["QueueAssigner", "VIDEO_COMPLETED", "MAX_ASSIGN_ATTEMPTS"]
