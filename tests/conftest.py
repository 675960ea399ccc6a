"""Shared fixtures for the reelqueue test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from unittest.mock import MagicMock

import pytest

from reelqueue.config import InstagramConfig, PublishingConfig, TokenRefreshConfig
from reelqueue.exceptions import SlotConflictError
from reelqueue.utils import generate_id, parse_timestamp


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all API keys so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "ANTHROPIC_API_KEY",
        "FACEBOOK_APP_ID",
        "FACEBOOK_APP_SECRET",
        "LOG_LEVEL",
        "PUBLISH_INTERVAL_SECONDS",
        "PUBLISH_MAX_ATTEMPTS",
        "GRAPH_API_VERSION",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

# Modules that read the clock through ``from reelqueue.utils import utc_now``.
CLOCK_MODULES = [
    "reelqueue.database",
    "reelqueue.scheduling.posting_queue",
    "reelqueue.scheduling.publisher",
    "reelqueue.scheduling.queue_assigner",
    "reelqueue.scheduling.token_refresh",
    "reelqueue.tools.instagram_client",
]


class FrozenClock:
    """Callable stand-in for ``utc_now`` that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests (Monday 2025-01-13 12:00)."""
    return datetime(2025, 1, 13, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(monkeypatch, sample_utc_now):
    """Freeze ``utc_now`` in every module that uses it."""
    frozen = FrozenClock(sample_utc_now)
    for module in CLOCK_MODULES:
        monkeypatch.setattr(f"{module}.utc_now", frozen)
    return frozen


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def publishing_config():
    return PublishingConfig()


@pytest.fixture
def token_config():
    return TokenRefreshConfig()


@pytest.fixture
def instagram_config():
    return InstagramConfig(
        app_id="app-123",
        app_secret="secret-456",
        container_poll_interval_seconds=0,
        container_poll_attempts=3,
    )


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client.

    ``table()`` and ``rpc()`` return one chainable query mock whose
    ``execute`` is awaitable.  Set ``client.result`` to control what
    ``execute`` returns.
    """
    client = MagicMock()
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "neq", "gte", "lte",
        "lt", "in_", "order", "limit", "range", "single",
    ):
        getattr(table_mock, method).return_value = table_mock

    client.result = MagicMock(data=[], count=0)

    async def mock_execute():
        if isinstance(client.result, Exception):
            raise client.result
        return client.result

    table_mock.execute = mock_execute
    client.table.return_value = table_mock
    client.rpc.return_value = table_mock
    client.query = table_mock
    return client


# ---------------------------------------------------------------------------
# In-memory database
# ---------------------------------------------------------------------------

_TERMINAL = {"PUBLISHED", "FAILED", "CANCELLED"}


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [getattr(s, "value", s) for s in statuses]


class FakeSchedulerDB:
    """In-memory stand-in for :class:`reelqueue.database.SupabaseDB`.

    Mirrors the partial unique indexes of the migration: at most one
    non-terminal post per ``(account_id, scheduled_for)`` and per
    ``video_id``.  Every mutating call is recorded in ``writes``.
    """

    def __init__(self, clock) -> None:
        self.clock = clock
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.slots: Dict[str, Dict[str, Any]] = {}
        self.videos: Dict[str, Dict[str, Any]] = {}
        self.posts: Dict[str, Dict[str, Any]] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.writes: List[str] = []

    # -- seeding helpers ----------------------------------------------------

    def add_account(self, **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": generate_id(),
            "user_id": "user-1",
            "instagram_user_id": "ig-1",
            "instagram_username": "creator",
            "facebook_page_id": "page-1",
            "access_token": "page-token",
            "user_access_token": "user-token",
            "token_expires_at": (self.clock() + timedelta(days=50)).isoformat(),
            "is_active": True,
            "last_error": None,
            "last_published_at": None,
            "created_at": self.clock().isoformat(),
        }
        row.update(overrides)
        self.accounts[row["id"]] = row
        return row

    def add_slot(self, account: Dict[str, Any], day_of_week: int, time_of_day: str,
                 timezone_name: str = "America/New_York", **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": generate_id(),
            "user_id": account["user_id"],
            "account_id": account["id"],
            "day_of_week": day_of_week,
            "time_of_day": time_of_day,
            "timezone": timezone_name,
            "is_active": True,
        }
        row.update(overrides)
        self.slots[row["id"]] = row
        return row

    def add_video(self, user_id: str = "user-1", **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": generate_id(),
            "user_id": user_id,
            "status": "COMPLETED",
            "processed_url": "https://cdn.example.com/video.mp4",
            "original_name": "clip.mp4",
            "transcript": "Three things I wish I knew before starting a podcast.",
        }
        row.update(overrides)
        self.videos[row["id"]] = row
        return row

    def add_post(self, account: Dict[str, Any], scheduled_for: datetime,
                 status: str = "SCHEDULED", **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": generate_id(),
            "user_id": account["user_id"],
            "account_id": account["id"],
            "video_id": generate_id(),
            "caption": "caption",
            "caption_generated": False,
            "hashtags": [],
            "cover_image_url": None,
            "scheduled_for": scheduled_for.isoformat(),
            "status": status,
            "retry_count": 0,
            "last_error": None,
            "last_attempt_at": None,
            "published_at": None,
            "ig_container_id": None,
            "ig_media_id": None,
            "ig_permalink": None,
            "created_at": self.clock().isoformat(),
            "updated_at": self.clock().isoformat(),
        }
        row.update(overrides)
        self.posts[row["id"]] = row
        return row

    def status_of(self, post_id: str) -> str:
        return self.posts[post_id]["status"]

    # -- constraint checks --------------------------------------------------

    def _check_unique(self, row: Dict[str, Any]) -> None:
        if row["status"] in _TERMINAL:
            return
        instant = parse_timestamp(row["scheduled_for"])
        for other in self.posts.values():
            if other["id"] == row["id"] or other["status"] in _TERMINAL:
                continue
            if other["video_id"] == row["video_id"]:
                raise SlotConflictError(f"Video {row['video_id']} already has a pending post")
            if (other["account_id"] == row["account_id"]
                    and parse_timestamp(other["scheduled_for"]) == instant):
                raise SlotConflictError(f"Slot {row['scheduled_for']} is already taken")

    # -- accounts -----------------------------------------------------------

    async def get_account(self, account_id):
        row = self.accounts.get(account_id)
        return dict(row) if row else None

    async def get_user_account(self, user_id, account_id):
        row = self.accounts.get(account_id)
        return dict(row) if row and row["user_id"] == user_id else None

    async def get_first_active_account(self, user_id):
        rows = [a for a in self.accounts.values() if a["user_id"] == user_id and a["is_active"]]
        rows.sort(key=lambda a: a["created_at"])
        return dict(rows[0]) if rows else None

    async def get_accounts_expiring_before(self, cutoff):
        return [
            dict(a) for a in self.accounts.values()
            if a["is_active"] and a["token_expires_at"]
            and parse_timestamp(a["token_expires_at"]) <= cutoff
        ]

    async def update_account(self, account_id, fields):
        self.writes.append("update_account")
        self.accounts[account_id].update(fields)
        self.accounts[account_id]["updated_at"] = self.clock().isoformat()

    async def deactivate_account(self, account_id, error):
        await self.update_account(account_id, {"is_active": False, "last_error": error})

    # -- slots --------------------------------------------------------------

    async def list_slots(self, user_id, account_id=None):
        rows = [
            dict(s) for s in self.slots.values()
            if s["user_id"] == user_id and (account_id is None or s["account_id"] == account_id)
        ]
        return sorted(rows, key=lambda s: (s["day_of_week"], s["time_of_day"]))

    async def get_active_slots(self, account_id):
        rows = [dict(s) for s in self.slots.values()
                if s["account_id"] == account_id and s["is_active"]]
        return sorted(rows, key=lambda s: (s["day_of_week"], s["time_of_day"]))

    async def get_slot(self, slot_id):
        row = self.slots.get(slot_id)
        return dict(row) if row else None

    def _check_slot_unique(self, row):
        for other in self.slots.values():
            if (other["id"] != row["id"] and other["account_id"] == row["account_id"]
                    and other["day_of_week"] == row["day_of_week"]
                    and other["time_of_day"] == row["time_of_day"]):
                raise SlotConflictError("Another slot already uses that day and time")

    async def insert_slot(self, slot):
        self.writes.append("insert_slot")
        self._check_slot_unique(slot)
        self.slots[slot["id"]] = dict(slot)
        return dict(slot)

    async def update_slot(self, slot_id, fields):
        self.writes.append("update_slot")
        candidate = {**self.slots[slot_id], **fields}
        self._check_slot_unique(candidate)
        self.slots[slot_id] = candidate
        return dict(candidate)

    async def delete_slot(self, slot_id):
        self.writes.append("delete_slot")
        self.slots.pop(slot_id, None)

    async def replace_schedule_slots(self, user_id, account_id, slots):
        self.writes.append("replace_schedule_slots")
        for slot_id in [s["id"] for s in self.slots.values()
                        if s["account_id"] == account_id and s["user_id"] == user_id]:
            del self.slots[slot_id]
        for slot in slots:
            self.slots[slot["id"]] = {**slot, "user_id": user_id, "account_id": account_id}
        return [dict(s) for s in slots]

    # -- videos -------------------------------------------------------------

    async def get_video(self, video_id):
        row = self.videos.get(video_id)
        return dict(row) if row else None

    # -- posts --------------------------------------------------------------

    async def get_post(self, post_id):
        row = self.posts.get(post_id)
        return dict(row) if row else None

    async def get_posts_by_ids(self, user_id, account_id, post_ids):
        return [
            dict(self.posts[pid]) for pid in post_ids
            if pid in self.posts and self.posts[pid]["user_id"] == user_id
            and self.posts[pid]["account_id"] == account_id
        ]

    async def insert_post(self, post):
        self.writes.append("insert_post")
        now = self.clock().isoformat()
        row = {
            "caption": "", "caption_generated": False, "hashtags": [],
            "cover_image_url": None, "retry_count": 0, "last_error": None,
            "last_attempt_at": None, "published_at": None, "ig_container_id": None,
            "ig_media_id": None, "ig_permalink": None,
            "created_at": now, "updated_at": now, **post,
        }
        self._check_unique(row)
        self.posts[row["id"]] = row
        return dict(row)

    async def get_pending_post_for_video(self, video_id, statuses):
        wanted = _status_values(statuses)
        for row in self.posts.values():
            if row["video_id"] == video_id and row["status"] in wanted:
                return {"id": row["id"], "status": row["status"]}
        return None

    async def get_occupied_instants(self, account_id, start, end, statuses, exclude_post_id=None):
        wanted = _status_values(statuses)
        result = []
        for row in self.posts.values():
            if row["account_id"] != account_id or row["status"] not in wanted:
                continue
            if row["id"] == exclude_post_id:
                continue
            instant = parse_timestamp(row["scheduled_for"])
            if start <= instant <= end:
                result.append(instant)
        return result

    async def list_posts(self, user_id, statuses=None, account_id=None, start=None,
                         end=None, limit=None):
        wanted = _status_values(statuses) if statuses is not None else None
        rows = []
        for row in self.posts.values():
            instant = parse_timestamp(row["scheduled_for"])
            if row["user_id"] != user_id:
                continue
            if wanted is not None and row["status"] not in wanted:
                continue
            if account_id is not None and row["account_id"] != account_id:
                continue
            if start is not None and instant < start:
                continue
            if end is not None and instant > end:
                continue
            rows.append(dict(row))
        rows.sort(key=lambda r: parse_timestamp(r["scheduled_for"]))
        return rows[:limit] if limit is not None else rows

    async def get_post_history(self, user_id, statuses, limit, offset):
        wanted = _status_values(statuses)
        rows = [dict(r) for r in self.posts.values()
                if r["user_id"] == user_id and r["status"] in wanted]
        rows.sort(key=lambda r: parse_timestamp(r["scheduled_for"]), reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def get_status_rows(self, user_id):
        return [
            {"status": r["status"], "scheduled_for": r["scheduled_for"]}
            for r in self.posts.values() if r["user_id"] == user_id
        ]

    async def get_due_posts(self, now, status, limit):
        wanted = getattr(status, "value", status)
        rows = [dict(r) for r in self.posts.values()
                if r["status"] == wanted and parse_timestamp(r["scheduled_for"]) <= now]
        rows.sort(key=lambda r: parse_timestamp(r["scheduled_for"]))
        return rows[:limit]

    async def get_stuck_posts(self, cutoff, statuses):
        wanted = _status_values(statuses)
        return [dict(r) for r in self.posts.values()
                if r["status"] in wanted and parse_timestamp(r["updated_at"]) < cutoff]

    async def transition_post(self, post_id, expected, fields):
        self.writes.append("transition_post")
        row = self.posts.get(post_id)
        if row is None or row["status"] not in _status_values(expected):
            return False
        candidate = {**row, **fields, "updated_at": self.clock().isoformat()}
        self._check_unique(candidate)
        self.posts[post_id] = candidate
        return True

    async def reassign_post_times(self, assignments):
        self.writes.append("reassign_post_times")
        for post_id, instant in assignments:
            row = self.posts[post_id]
            if row["status"] in ("QUEUED", "SCHEDULED"):
                row["scheduled_for"] = instant.isoformat()
                row["updated_at"] = self.clock().isoformat()

    # -- notifications ------------------------------------------------------

    async def create_notification(self, user_id, type, title, message, data=None):
        self.writes.append("create_notification")
        self.notifications.append({
            "user_id": user_id, "type": type, "title": title,
            "message": message, "data": data or {},
        })


@pytest.fixture
def fake_db(clock):
    return FakeSchedulerDB(clock)


@pytest.fixture
def account(fake_db):
    return fake_db.add_account()
