"""
Unified async database client for the posting scheduler.

ALL database operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

Usage::

    from reelqueue.database import SupabaseDB, get_db

    # In async context:
    db = await get_db()
    slots = await db.get_active_slots(account_id)

Multi-row writes that must be atomic (quick-preset replace, queue
reorder) are Postgres functions invoked through ``rpc``; see
``migrations/001_scheduler.sql``.
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from reelqueue.exceptions import DatabaseError, SlotConflictError, ValidationError
from reelqueue.utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"

ACCOUNTS_TABLE = "instagram_accounts"
SLOTS_TABLE = "schedule_slots"
POSTS_TABLE = "scheduled_posts"
VIDEOS_TABLE = "videos"
NOTIFICATIONS_TABLE = "notifications"


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def _iso(value: datetime) -> str:
    return value.isoformat()


def _statuses(values: Iterable[Any]) -> List[str]:
    return [getattr(v, "value", v) for v in values]


def _is_unique_violation(exc: APIError) -> bool:
    return getattr(exc, "code", None) == UNIQUE_VIOLATION


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** database client for the scheduler.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.

    Every write to ``scheduled_posts`` stamps ``updated_at``; stuck
    recovery keys off that column.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance."""
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # ACCOUNTS
    # -----------------------------------------------------------------

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(account_id, "account_id")
        result = await (
            self.client.table(ACCOUNTS_TABLE)
            .select("*")
            .eq("id", account_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_user_account(
        self, user_id: str, account_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get an account only if it belongs to *user_id*."""
        validate_not_empty(user_id, "user_id")
        validate_not_empty(account_id, "account_id")
        result = await (
            self.client.table(ACCOUNTS_TABLE)
            .select("*")
            .eq("id", account_id)
            .eq("user_id", user_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_first_active_account(
        self, user_id: str
    ) -> Optional[Dict[str, Any]]:
        """Oldest active account of a user (the one preflight inspects)."""
        validate_not_empty(user_id, "user_id")
        result = await (
            self.client.table(ACCOUNTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("is_active", True)
            .order("created_at", desc=False)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_accounts_expiring_before(
        self, cutoff: datetime
    ) -> List[Dict[str, Any]]:
        """Active accounts whose token expires at or before *cutoff*."""
        result = await (
            self.client.table(ACCOUNTS_TABLE)
            .select("*")
            .eq("is_active", True)
            .lte("token_expires_at", _iso(cutoff))
            .order("token_expires_at", desc=False)
            .execute()
        )
        return result.data

    async def update_account(
        self, account_id: str, fields: Dict[str, Any]
    ) -> None:
        validate_not_empty(account_id, "account_id")
        if not fields:
            raise ValidationError("account update cannot be empty")
        await (
            self.client.table(ACCOUNTS_TABLE)
            .update({**fields, "updated_at": _iso(utc_now())})
            .eq("id", account_id)
            .execute()
        )

    async def deactivate_account(self, account_id: str, error: str) -> None:
        """Flag an account as needing reconnection."""
        await self.update_account(
            account_id, {"is_active": False, "last_error": error}
        )
        logger.warning(
            "[DB] Account %s deactivated: %s", account_id, error
        )

    # -----------------------------------------------------------------
    # SCHEDULE SLOTS
    # -----------------------------------------------------------------

    async def list_slots(
        self, user_id: str, account_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        validate_not_empty(user_id, "user_id")
        query = self.client.table(SLOTS_TABLE).select("*").eq("user_id", user_id)
        if account_id is not None:
            query = query.eq("account_id", account_id)
        result = await (
            query.order("day_of_week", desc=False)
            .order("time_of_day", desc=False)
            .execute()
        )
        return result.data

    async def get_active_slots(self, account_id: str) -> List[Dict[str, Any]]:
        validate_not_empty(account_id, "account_id")
        result = await (
            self.client.table(SLOTS_TABLE)
            .select("*")
            .eq("account_id", account_id)
            .eq("is_active", True)
            .order("day_of_week", desc=False)
            .order("time_of_day", desc=False)
            .execute()
        )
        return result.data

    async def get_slot(self, slot_id: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(slot_id, "slot_id")
        result = await (
            self.client.table(SLOTS_TABLE)
            .select("*")
            .eq("id", slot_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def insert_slot(self, slot: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a slot definition.

        Raises:
            SlotConflictError: If the ``(account, day, time)`` already exists.
            DatabaseError: When the insert returns no data.
        """
        try:
            result = await self.client.table(SLOTS_TABLE).insert(slot).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                raise SlotConflictError(
                    f"A slot already exists on day {slot.get('day_of_week')} "
                    f"at {slot.get('time_of_day')}"
                ) from exc
            raise
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]

    async def update_slot(
        self, slot_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        validate_not_empty(slot_id, "slot_id")
        try:
            result = await (
                self.client.table(SLOTS_TABLE)
                .update(fields)
                .eq("id", slot_id)
                .execute()
            )
        except APIError as exc:
            if _is_unique_violation(exc):
                raise SlotConflictError(
                    "Another slot already uses that day and time"
                ) from exc
            raise
        if not result.data:
            raise DatabaseError(f"Slot {slot_id} update returned no data")
        return result.data[0]

    async def delete_slot(self, slot_id: str) -> None:
        validate_not_empty(slot_id, "slot_id")
        await self.client.table(SLOTS_TABLE).delete().eq("id", slot_id).execute()

    async def replace_schedule_slots(
        self,
        user_id: str,
        account_id: str,
        slots: Sequence[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Delete all slots of an account and insert *slots* in one transaction."""
        result = await self.client.rpc(
            "replace_schedule_slots",
            {
                "p_user_id": user_id,
                "p_account_id": account_id,
                "p_slots": list(slots),
            },
        ).execute()
        return result.data or []

    # -----------------------------------------------------------------
    # VIDEOS
    # -----------------------------------------------------------------

    async def get_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(video_id, "video_id")
        result = await (
            self.client.table(VIDEOS_TABLE)
            .select("id, user_id, status, processed_url, original_name, transcript")
            .eq("id", video_id)
            .execute()
        )
        return result.data[0] if result.data else None

    # -----------------------------------------------------------------
    # SCHEDULED POSTS
    # -----------------------------------------------------------------

    async def get_post(self, post_id: str) -> Optional[Dict[str, Any]]:
        validate_not_empty(post_id, "post_id")
        result = await (
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("id", post_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_posts_by_ids(
        self, user_id: str, account_id: str, post_ids: Sequence[str]
    ) -> List[Dict[str, Any]]:
        if not post_ids:
            return []
        result = await (
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("account_id", account_id)
            .in_("id", list(post_ids))
            .execute()
        )
        return result.data

    async def insert_post(self, post: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a queued post.

        Raises:
            SlotConflictError: If the instant (or the video) already has a
                non-terminal post.
            DatabaseError: When the insert returns no data.
        """
        required = {"user_id", "account_id", "video_id", "scheduled_for", "status"}
        missing = required - set(post.keys())
        if missing:
            raise ValidationError(f"scheduled post missing required fields: {missing}")

        now = _iso(utc_now())
        row = {"created_at": now, "updated_at": now, **post}
        try:
            result = await self.client.table(POSTS_TABLE).insert(row).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                raise SlotConflictError(
                    f"Slot {post['scheduled_for']} is already taken"
                ) from exc
            raise
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]

    async def get_pending_post_for_video(
        self, video_id: str, statuses: Iterable[Any]
    ) -> Optional[Dict[str, Any]]:
        result = await (
            self.client.table(POSTS_TABLE)
            .select("id, status")
            .eq("video_id", video_id)
            .in_("status", _statuses(statuses))
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_occupied_instants(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[Any],
        exclude_post_id: Optional[str] = None,
    ) -> List[datetime]:
        """Instants in ``[start, end]`` held by posts in *statuses*."""
        query = (
            self.client.table(POSTS_TABLE)
            .select("id, scheduled_for")
            .eq("account_id", account_id)
            .in_("status", _statuses(statuses))
            .gte("scheduled_for", _iso(start))
            .lte("scheduled_for", _iso(end))
        )
        if exclude_post_id is not None:
            query = query.neq("id", exclude_post_id)
        result = await query.execute()
        return [parse_timestamp(row["scheduled_for"]) for row in result.data]

    async def list_posts(
        self,
        user_id: str,
        statuses: Optional[Iterable[Any]] = None,
        account_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Posts of a user ordered by ``scheduled_for`` ascending."""
        validate_not_empty(user_id, "user_id")
        query = self.client.table(POSTS_TABLE).select("*").eq("user_id", user_id)
        if statuses is not None:
            query = query.in_("status", _statuses(statuses))
        if account_id is not None:
            query = query.eq("account_id", account_id)
        if start is not None:
            query = query.gte("scheduled_for", _iso(start))
        if end is not None:
            query = query.lte("scheduled_for", _iso(end))
        query = query.order("scheduled_for", desc=False)
        if limit is not None:
            validate_positive(limit, "limit")
            query = query.limit(limit)
        result = await query.execute()
        return result.data

    async def get_post_history(
        self,
        user_id: str,
        statuses: Iterable[Any],
        limit: int,
        offset: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Finished posts, newest first, with the total row count."""
        validate_positive(limit, "limit")
        result = await (
            self.client.table(POSTS_TABLE)
            .select("*", count="exact")
            .eq("user_id", user_id)
            .in_("status", _statuses(statuses))
            .order("scheduled_for", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return result.data, result.count or 0

    async def get_status_rows(self, user_id: str) -> List[Dict[str, Any]]:
        """``status`` and ``scheduled_for`` of every post of a user."""
        result = await (
            self.client.table(POSTS_TABLE)
            .select("status, scheduled_for")
            .eq("user_id", user_id)
            .execute()
        )
        return result.data

    async def get_due_posts(
        self, now: datetime, status: Any, limit: int
    ) -> List[Dict[str, Any]]:
        """Posts in *status* with ``scheduled_for <= now``, oldest first."""
        validate_positive(limit, "limit")
        result = await (
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("status", getattr(status, "value", status))
            .lte("scheduled_for", _iso(now))
            .order("scheduled_for", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    async def get_stuck_posts(
        self, cutoff: datetime, statuses: Iterable[Any]
    ) -> List[Dict[str, Any]]:
        """Posts in *statuses* not touched since *cutoff*."""
        result = await (
            self.client.table(POSTS_TABLE)
            .select("*")
            .in_("status", _statuses(statuses))
            .lt("updated_at", _iso(cutoff))
            .execute()
        )
        return result.data

    async def transition_post(
        self,
        post_id: str,
        expected: Iterable[Any],
        fields: Dict[str, Any],
    ) -> bool:
        """Compare-and-set update of a post.

        Applies *fields* only while the row's status is one of *expected*.

        Returns:
            ``True`` if the row matched and was updated, ``False`` if a
            concurrent writer moved the post first.

        Raises:
            SlotConflictError: If a new ``scheduled_for`` collides with
                another non-terminal post.
        """
        validate_not_empty(post_id, "post_id")
        payload = {**fields, "updated_at": _iso(utc_now())}
        try:
            result = await (
                self.client.table(POSTS_TABLE)
                .update(payload)
                .eq("id", post_id)
                .in_("status", _statuses(expected))
                .execute()
            )
        except APIError as exc:
            if _is_unique_violation(exc):
                raise SlotConflictError(
                    "That time is already taken by another post"
                ) from exc
            raise
        return bool(result.data)

    async def reassign_post_times(
        self, assignments: Sequence[Tuple[str, datetime]]
    ) -> None:
        """Write new ``scheduled_for`` values for several posts atomically.

        Raises:
            SlotConflictError: If an instant collides with another pending
                post, e.g. one that changed state after the caller read it.
        """
        try:
            await self.client.rpc(
                "reassign_post_times",
                {
                    "p_assignments": [
                        {"id": post_id, "scheduled_for": _iso(instant)}
                        for post_id, instant in assignments
                    ],
                },
            ).execute()
        except APIError as exc:
            if _is_unique_violation(exc):
                raise SlotConflictError(
                    "Queue changed while reordering, reload and try again"
                ) from exc
            raise

    # -----------------------------------------------------------------
    # NOTIFICATIONS
    # -----------------------------------------------------------------

    async def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        validate_not_empty(user_id, "user_id")
        await (
            self.client.table(NOTIFICATIONS_TABLE)
            .insert({
                "user_id": user_id,
                "type": type,
                "title": title,
                "message": message,
                "data": data or {},
            })
            .execute()
        )


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance.

    The first call creates the :class:`SupabaseDB` singleton; subsequent
    calls return the same instance.
    """
    global _db_instance, _db_lock

    if _db_lock is None:
        with _init_lock:
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance


__all__ = [
    "SupabaseConfig",
    "SupabaseDB",
    "get_db",
    "validate_not_empty",
    "validate_positive",
    "UNIQUE_VIOLATION",
]
