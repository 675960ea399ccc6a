"""Tests for reelqueue.scheduling.posting_queue."""

from datetime import datetime, timedelta, timezone

import pytest

from reelqueue.exceptions import (
    PostNotEditableError,
    PostNotFoundError,
    SlotConflictError,
    ValidationError,
)
from reelqueue.scheduling.models import PostStatus
from reelqueue.scheduling.posting_queue import PostingQueue

UTC = timezone.utc


def _at(day, hour):
    return datetime(2025, 1, day, hour, 0, tzinfo=UTC)


class TestListing:

    @pytest.mark.asyncio
    async def test_list_queue_defaults_to_pending_ascending(self, fake_db, account):
        fake_db.add_post(account, _at(20, 14))
        fake_db.add_post(account, _at(15, 14), status="QUEUED")
        fake_db.add_post(account, _at(14, 14), status="PUBLISHED")

        posts = await PostingQueue(fake_db).list_queue("user-1")

        assert [p.scheduled_for for p in posts] == [_at(15, 14), _at(20, 14)]

    @pytest.mark.asyncio
    async def test_calendar_includes_every_status_in_range(self, fake_db, account):
        fake_db.add_post(account, _at(14, 14), status="PUBLISHED")
        fake_db.add_post(account, _at(16, 14), status="FAILED")
        fake_db.add_post(account, _at(25, 14))

        posts = await PostingQueue(fake_db).calendar("user-1", _at(13, 0), _at(19, 0))

        assert {p.status for p in posts} == {PostStatus.PUBLISHED, PostStatus.FAILED}

    @pytest.mark.asyncio
    async def test_calendar_rejects_inverted_range(self, fake_db):
        with pytest.raises(ValidationError):
            await PostingQueue(fake_db).calendar("user-1", _at(20, 0), _at(13, 0))

    @pytest.mark.asyncio
    async def test_history_newest_first_with_total(self, fake_db, account):
        fake_db.add_post(account, _at(10, 14), status="PUBLISHED")
        fake_db.add_post(account, _at(11, 14), status="FAILED")
        fake_db.add_post(account, _at(12, 14), status="PUBLISHED")
        fake_db.add_post(account, _at(13, 14), status="CANCELLED")

        posts, total = await PostingQueue(fake_db).history("user-1", limit=2)

        assert total == 3
        assert [p.scheduled_for for p in posts] == [_at(12, 14), _at(11, 14)]


class TestStats:

    @pytest.mark.asyncio
    async def test_counts_each_bucket(self, fake_db, account, clock):
        fake_db.add_post(account, _at(14, 14))
        fake_db.add_post(account, _at(15, 14), status="QUEUED")
        fake_db.add_post(account, _at(13, 11), status="UPLOADING")
        fake_db.add_post(account, _at(10, 14), status="PUBLISHED")
        fake_db.add_post(account, _at(11, 14), status="FAILED")
        fake_db.add_post(account, _at(12, 14), status="CANCELLED")

        stats = await PostingQueue(fake_db).stats("user-1")

        assert stats.scheduled == 2
        assert stats.in_flight == 1
        assert stats.published == 1
        assert stats.failed == 1
        assert stats.cancelled == 1
        assert stats.next_post_at == _at(14, 14)

    @pytest.mark.asyncio
    async def test_empty_queue(self, fake_db, clock):
        stats = await PostingQueue(fake_db).stats("user-1")

        assert stats.scheduled == 0
        assert stats.next_post_at is None


class TestReorder:

    @pytest.mark.asyncio
    async def test_reverses_times_and_keeps_the_set(self, fake_db, account):
        a = fake_db.add_post(account, _at(14, 14))
        b = fake_db.add_post(account, _at(15, 14))
        c = fake_db.add_post(account, _at(16, 14))
        before = sorted(p["scheduled_for"] for p in fake_db.posts.values())

        result = await PostingQueue(fake_db).reorder(
            "user-1", account["id"], [c["id"], b["id"], a["id"]]
        )

        assert [p.id for p in result] == [c["id"], b["id"], a["id"]]
        assert fake_db.posts[c["id"]]["scheduled_for"] == _at(14, 14).isoformat()
        assert fake_db.posts[a["id"]]["scheduled_for"] == _at(16, 14).isoformat()
        assert sorted(p["scheduled_for"] for p in fake_db.posts.values()) == before

    @pytest.mark.asyncio
    async def test_unlisted_and_in_flight_posts_untouched(self, fake_db, account):
        a = fake_db.add_post(account, _at(14, 14))
        b = fake_db.add_post(account, _at(15, 14))
        uploading = fake_db.add_post(account, _at(13, 14), status="UPLOADING")
        other = fake_db.add_post(account, _at(17, 14))

        await PostingQueue(fake_db).reorder(
            "user-1", account["id"], [b["id"], uploading["id"], a["id"]]
        )

        assert fake_db.posts[b["id"]]["scheduled_for"] == _at(14, 14).isoformat()
        assert fake_db.posts[a["id"]]["scheduled_for"] == _at(15, 14).isoformat()
        assert fake_db.posts[uploading["id"]]["scheduled_for"] == _at(13, 14).isoformat()
        assert fake_db.posts[other["id"]]["scheduled_for"] == _at(17, 14).isoformat()

    @pytest.mark.asyncio
    async def test_same_order_writes_nothing(self, fake_db, account):
        a = fake_db.add_post(account, _at(14, 14))
        b = fake_db.add_post(account, _at(15, 14))

        await PostingQueue(fake_db).reorder("user-1", account["id"], [a["id"], b["id"]])

        assert "reassign_post_times" not in fake_db.writes

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, fake_db, account):
        a = fake_db.add_post(account, _at(14, 14))

        with pytest.raises(ValidationError):
            await PostingQueue(fake_db).reorder("user-1", account["id"], [a["id"], a["id"]])


class TestUpdatePost:

    @pytest.mark.asyncio
    async def test_caption_edit_clears_generated_flag(self, fake_db, account, clock):
        post = fake_db.add_post(account, _at(20, 14), caption_generated=True)

        updated = await PostingQueue(fake_db).update_post("user-1", post["id"], caption="New")

        assert updated.caption == "New"
        assert updated.caption_generated is False

    @pytest.mark.asyncio
    async def test_move_to_free_future_time(self, fake_db, account, clock):
        post = fake_db.add_post(account, _at(20, 14))

        updated = await PostingQueue(fake_db).update_post(
            "user-1", post["id"], scheduled_for=_at(21, 9)
        )

        assert updated.scheduled_for == _at(21, 9)

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, fake_db, account, clock):
        post = fake_db.add_post(account, _at(20, 14))

        with pytest.raises(ValidationError):
            await PostingQueue(fake_db).update_post(
                "user-1", post["id"], scheduled_for=clock.now - timedelta(minutes=1)
            )

    @pytest.mark.asyncio
    async def test_taken_time_rejected(self, fake_db, account, clock):
        post = fake_db.add_post(account, _at(20, 14))
        fake_db.add_post(account, _at(21, 14))

        with pytest.raises(SlotConflictError):
            await PostingQueue(fake_db).update_post(
                "user-1", post["id"], scheduled_for=_at(21, 14)
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["UPLOADING", "PROCESSING_VIDEO", "PUBLISHED", "FAILED", "CANCELLED"])
    async def test_non_editable_statuses_rejected(self, fake_db, account, clock, status):
        post = fake_db.add_post(account, _at(20, 14), status=status)

        with pytest.raises(PostNotEditableError):
            await PostingQueue(fake_db).update_post("user-1", post["id"], caption="x")

        assert fake_db.posts[post["id"]]["caption"] == "caption"

    @pytest.mark.asyncio
    async def test_other_users_post_not_found(self, fake_db, account, clock):
        post = fake_db.add_post(account, _at(20, 14))

        with pytest.raises(PostNotFoundError):
            await PostingQueue(fake_db).update_post("user-2", post["id"], caption="x")


class TestCancel:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["QUEUED", "SCHEDULED", "UPLOADING", "PROCESSING_VIDEO"])
    async def test_non_terminal_posts_cancel(self, fake_db, account, clock, status):
        post = fake_db.add_post(account, _at(20, 14), status=status)

        result = await PostingQueue(fake_db).cancel("user-1", post["id"])

        assert result.status is PostStatus.CANCELLED
        assert fake_db.status_of(post["id"]) == "CANCELLED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["PUBLISHED", "FAILED", "CANCELLED"])
    async def test_terminal_posts_are_immutable(self, fake_db, account, clock, status):
        post = fake_db.add_post(account, _at(10, 14), status=status)

        with pytest.raises(PostNotEditableError, match="Cannot cancel"):
            await PostingQueue(fake_db).cancel("user-1", post["id"])

        assert fake_db.status_of(post["id"]) == status

    @pytest.mark.asyncio
    async def test_cancelled_instant_is_free_again(self, fake_db, account, clock):
        post = fake_db.add_post(account, _at(20, 14))
        await PostingQueue(fake_db).cancel("user-1", post["id"])

        taken = await fake_db.get_occupied_instants(
            account["id"], _at(20, 14), _at(20, 14), ["QUEUED", "SCHEDULED"]
        )

        assert taken == []
