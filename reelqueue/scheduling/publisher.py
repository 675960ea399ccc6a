"""
Publish cycle: recover stuck posts, then publish every due post.

One cycle runs these steps in order:

1. Stuck recovery.  Posts left in ``UPLOADING``/``PROCESSING_VIDEO``
   longer than the stuck timeout were abandoned by a crashed cycle.  If
   Instagram already reports their container as published they are
   reconciled to ``PUBLISHED``; otherwise they go back to ``SCHEDULED``.
2. Due discovery.  ``SCHEDULED`` posts with ``scheduled_for <= now``,
   oldest first, up to the batch size.
3. Attempts, one post at a time.
4. A summary log line when anything happened.

Every status write is a compare-and-set on the statuses the post may
legally be in, so a post cancelled mid-attempt is never overwritten.
"""

import logging
import re
from datetime import timedelta
from typing import List, Optional

from reelqueue.config import PublishingConfig, get_settings
from reelqueue.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    InstagramAPIError,
    PostNotEditableError,
    PostNotFoundError,
    VideoNotReadyError,
)
from reelqueue.scheduling.models import (
    IN_FLIGHT_STATUSES,
    CycleResult,
    PostStatus,
    PublishOutcome,
    QueuedPost,
    SocialAccount,
    sources_for,
)
from reelqueue.tools.caption_generator import INSTAGRAM_CAPTION_LIMIT
from reelqueue.tools.instagram_client import CONTAINER_PUBLISHED
from reelqueue.utils import utc_now

logger = logging.getLogger(__name__)

# Errors that will not go away by trying again.
NON_RETRYABLE_ERRORS = (VideoNotReadyError, AccountInactiveError, AccountNotFoundError)


def _has_hashtag(caption: str, tag: str) -> bool:
    return re.search(rf"#{re.escape(tag)}(?!\w)", caption, re.IGNORECASE) is not None


def compose_caption(caption: str, hashtags: List[str]) -> str:
    """Append hashtags that the caption text does not already contain.

    Tags match whole: ``#ai`` is not satisfied by ``#aitools``.  The
    result is cut to Instagram's caption limit.
    """
    tags = [h.lstrip("#") for h in hashtags if h.lstrip("#")]
    missing = [t for t in tags if not _has_hashtag(caption, t)]
    if missing:
        line = " ".join(f"#{t}" for t in missing)
        caption = f"{caption}\n\n{line}" if caption else line
    return caption[:INSTAGRAM_CAPTION_LIMIT]


class PublishCycleRunner:
    """Runs publish cycles against the persistent queue.

    Holds no post state between cycles; every decision is made from what
    the database says at the time.

    Args:
        db: Database client (:class:`~reelqueue.database.SupabaseDB`).
        instagram: :class:`~reelqueue.tools.instagram_client.InstagramClient`.
        tokens: :class:`~reelqueue.scheduling.token_refresh.TokenManager`.
        config: Retry ceiling, stuck timeout and batch size.
    """

    def __init__(
        self,
        db: "SupabaseDB",  # noqa: F821
        instagram: "InstagramClient",  # noqa: F821
        tokens: "TokenManager",  # noqa: F821
        config: Optional[PublishingConfig] = None,
    ) -> None:
        self.db = db
        self.instagram = instagram
        self.tokens = tokens
        self.config = config or get_settings().publishing

    # ================================================================
    # CYCLE
    # ================================================================

    async def run_cycle(self) -> CycleResult:
        """Run one full publish cycle and return its counters."""
        result = CycleResult()

        await self.recover_stuck_posts(result)

        due = await self.db.get_due_posts(
            utc_now(), PostStatus.SCHEDULED, self.config.batch_size
        )
        if due:
            logger.info("[PUBLISHER] Found %d posts due for publishing", len(due))

        for row in due:
            post = QueuedPost.from_row(row)
            try:
                outcome = await self._attempt(post)
            except Exception as exc:
                # Failure bookkeeping itself failed; the post stays in
                # flight and stuck recovery will pick it up.
                logger.exception("[PUBLISHER] Unexpected error handling post %s", post.id)
                result.errors.append(f"Post {post.id}: {exc}")
                continue

            if outcome is None:
                continue
            if outcome.status is PostStatus.PUBLISHED:
                result.published += 1
            elif outcome.status is PostStatus.FAILED:
                result.failed += 1
            elif outcome.status is PostStatus.SCHEDULED:
                result.retried += 1
            if outcome.error:
                result.errors.append(f"Post {post.id}: {outcome.error}")

        if not result.is_empty:
            logger.info(
                "[PUBLISHER] Cycle complete: %d published, %d failed, %d retried, %d recovered",
                result.published, result.failed, result.retried, result.recovered,
            )
        return result

    # ================================================================
    # RECOVERY
    # ================================================================

    async def recover_stuck_posts(self, result: Optional[CycleResult] = None) -> int:
        """Reconcile or reset posts abandoned mid-attempt.

        Returns:
            Number of posts recovered.
        """
        cutoff = utc_now() - timedelta(minutes=self.config.stuck_timeout_minutes)
        rows = await self.db.get_stuck_posts(cutoff, IN_FLIGHT_STATUSES)

        recovered = 0
        for row in rows:
            post = QueuedPost.from_row(row)
            if await self._already_published(post):
                moved = await self.db.transition_post(
                    post.id,
                    IN_FLIGHT_STATUSES,
                    {
                        "status": PostStatus.PUBLISHED.value,
                        "published_at": utc_now().isoformat(),
                        "last_error": None,
                    },
                )
                if moved:
                    logger.warning(
                        "[PUBLISHER] Stuck post %s was already published (container=%s), reconciled",
                        post.id, post.ig_container_id,
                    )
            else:
                moved = await self.db.transition_post(
                    post.id,
                    IN_FLIGHT_STATUSES,
                    {
                        "status": PostStatus.SCHEDULED.value,
                        "last_error": f"Recovered after being stuck in {post.status.value}",
                    },
                )
                if moved:
                    logger.warning(
                        "[PUBLISHER] Reset stuck post %s (%s since %s) to SCHEDULED",
                        post.id, post.status.value,
                        post.updated_at.isoformat() if post.updated_at else "unknown",
                    )
            if moved:
                recovered += 1

        if result is not None:
            result.recovered += recovered
        return recovered

    async def _already_published(self, post: QueuedPost) -> bool:
        """Ask Instagram whether the post's container went live."""
        if not post.ig_container_id:
            return False
        try:
            row = await self.db.get_account(post.account_id)
            if row is None:
                return False
            account = SocialAccount.from_row(row)
            status = await self.instagram.get_container_status(
                post.ig_container_id, account.access_token
            )
        except (InstagramAPIError, AccountNotFoundError) as exc:
            logger.warning(
                "[PUBLISHER] Could not check container %s of stuck post %s: %s",
                post.ig_container_id, post.id, exc,
            )
            return False
        return status.get("status_code") == CONTAINER_PUBLISHED

    # ================================================================
    # ATTEMPT
    # ================================================================

    async def _attempt(self, post: QueuedPost) -> Optional[PublishOutcome]:
        """Publish one post.  Returns ``None`` if another writer owned it."""
        claimed = await self.db.transition_post(
            post.id,
            sources_for(PostStatus.UPLOADING),
            {
                "status": PostStatus.UPLOADING.value,
                "last_attempt_at": utc_now().isoformat(),
            },
        )
        if not claimed:
            logger.debug("[PUBLISHER] Post %s already claimed, skipping", post.id)
            return None
        post.status = PostStatus.UPLOADING

        logger.info(
            "[PUBLISHER] Publishing post %s (account=%s, attempt %d/%d)",
            post.id, post.account_id, post.retry_count + 1, self.config.max_attempts,
        )

        try:
            video = await self.db.get_video(post.video_id)
            if video is None or not video.get("processed_url"):
                raise VideoNotReadyError("Video has no processed URL")

            token = await self.tokens.get_valid_token(post.account_id)
            row = await self.db.get_account(post.account_id)
            if row is None:
                raise AccountNotFoundError(f"Account {post.account_id} not found")
            account = SocialAccount.from_row(row)

            async def on_container_created(container_id: str) -> None:
                post.ig_container_id = container_id
                await self.db.transition_post(
                    post.id,
                    sources_for(PostStatus.PROCESSING_VIDEO),
                    {
                        "status": PostStatus.PROCESSING_VIDEO.value,
                        "ig_container_id": container_id,
                    },
                )

            published = await self.instagram.publish(
                access_token=token,
                instagram_user_id=account.instagram_user_id,
                video_url=video["processed_url"],
                caption=compose_caption(post.caption, post.hashtags),
                cover_url=post.cover_image_url,
                on_container_created=on_container_created,
            )
        except Exception as exc:
            return await self._handle_failure(post, exc)

        now = utc_now()
        recorded = await self.db.transition_post(
            post.id,
            sources_for(PostStatus.PUBLISHED),
            {
                "status": PostStatus.PUBLISHED.value,
                "published_at": now.isoformat(),
                "ig_container_id": published.container_id,
                "ig_media_id": published.media_id,
                "ig_permalink": published.permalink,
                "last_error": None,
            },
        )
        if not recorded:
            logger.warning(
                "[PUBLISHER] Post %s went live as %s but was cancelled meanwhile",
                post.id, published.media_id,
            )
        await self.db.update_account(
            post.account_id, {"last_published_at": now.isoformat(), "last_error": None}
        )

        logger.info(
            "[PUBLISHER] Published post %s (media=%s, permalink=%s)",
            post.id, published.media_id, published.permalink or "-",
        )
        return PublishOutcome(
            post_id=post.id,
            status=PostStatus.PUBLISHED,
            ig_media_id=published.media_id,
            ig_permalink=published.permalink,
        )

    async def _handle_failure(
        self, post: QueuedPost, exc: Exception
    ) -> PublishOutcome:
        """Re-queue or fail a post after an attempt raised *exc*."""
        message = str(exc) or exc.__class__.__name__
        new_count = post.retry_count + 1

        if isinstance(exc, InstagramAPIError):
            retryable = exc.should_retry
            if exc.classification.should_deactivate_account:
                await self.db.deactivate_account(
                    post.account_id, exc.classification.user_message
                )
        else:
            retryable = not isinstance(exc, NON_RETRYABLE_ERRORS)

        if retryable and new_count < self.config.max_attempts:
            target = PostStatus.SCHEDULED
        else:
            target = PostStatus.FAILED

        moved = await self.db.transition_post(
            post.id,
            IN_FLIGHT_STATUSES,
            {
                "status": target.value,
                "retry_count": new_count,
                "last_error": message,
                "last_attempt_at": utc_now().isoformat(),
            },
        )
        logger.error(
            "[PUBLISHER] Post %s attempt %d failed (%s): %s",
            post.id, new_count, target.value if moved else "cancelled meanwhile", message,
        )
        if not moved:
            return PublishOutcome(post_id=post.id, status=PostStatus.CANCELLED, error=message)

        if target is PostStatus.FAILED:
            await self.db.create_notification(
                user_id=post.user_id,
                type="post_failed",
                title="Post failed to publish",
                message=(
                    f"Your scheduled video failed to publish after {new_count} "
                    f"attempt{'s' if new_count != 1 else ''}: {message}"
                ),
                data={"post_id": post.id, "video_id": post.video_id},
            )

        return PublishOutcome(post_id=post.id, status=target, error=message)

    # ================================================================
    # PUBLISH NOW
    # ================================================================

    async def publish_now(self, user_id: str, post_id: str) -> PublishOutcome:
        """Publish a queued post immediately instead of at its slot.

        Raises:
            PostNotFoundError: If the post is not the user's.
            PostNotEditableError: If publishing already started or finished.
        """
        row = await self.db.get_post(post_id)
        if row is None or row["user_id"] != user_id:
            raise PostNotFoundError(f"Post {post_id} not found")
        post = QueuedPost.from_row(row)
        if not post.status.is_editable:
            raise PostNotEditableError(post.status.value, "publish")

        if post.status is PostStatus.QUEUED:
            moved = await self.db.transition_post(
                post.id, [PostStatus.QUEUED], {"status": PostStatus.SCHEDULED.value}
            )
            if not moved:
                raise PostNotEditableError(post.status.value, "publish")
            post.status = PostStatus.SCHEDULED

        outcome = await self._attempt(post)
        if outcome is None:
            current = await self.db.get_post(post_id)
            raise PostNotEditableError(
                (current or row)["status"], "publish"
            )
        return outcome


__all__ = ["PublishCycleRunner", "compose_caption", "NON_RETRYABLE_ERRORS"]
