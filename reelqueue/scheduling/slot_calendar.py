"""
Recurring weekly posting calendar per social account.

Each slot is a weekday plus a local ``"HH:MM"`` in an IANA zone.  The
calendar only stores definitions; turning them into instants is the
queue assigner's job.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from reelqueue.exceptions import AccountNotFoundError, SlotNotFoundError, ValidationError
from reelqueue.scheduling.models import SlotDefinition
from reelqueue.scheduling.timezone import parse_time_of_day, validate_timezone
from reelqueue.utils import generate_id

logger = logging.getLogger(__name__)

QUICK_PRESETS: Dict[str, List[str]] = {
    "1x": ["12:00"],
    "2x": ["09:00", "18:00"],
    "3x": ["09:00", "13:00", "18:00"],
}

ALL_DAYS: List[int] = [0, 1, 2, 3, 4, 5, 6]

_UPDATABLE_FIELDS = {"day_of_week", "time_of_day", "timezone", "is_active"}


def _validate_day(day: Any) -> int:
    if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
        raise ValidationError(f"day_of_week must be 0-6 (0 = Sunday), got {day!r}")
    return day


def _normalize_time(value: str) -> str:
    hour, minute = parse_time_of_day(value)
    return f"{hour:02d}:{minute:02d}"


class SlotCalendar:
    """CRUD over an account's weekly slot definitions.

    Args:
        db: Database client (:class:`~reelqueue.database.SupabaseDB`).
    """

    def __init__(self, db: "SupabaseDB") -> None:  # noqa: F821
        self.db = db

    async def _require_account(self, user_id: str, account_id: str) -> None:
        if await self.db.get_user_account(user_id, account_id) is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

    async def _require_slot(self, user_id: str, slot_id: str) -> Dict[str, Any]:
        row = await self.db.get_slot(slot_id)
        if row is None or row["user_id"] != user_id:
            raise SlotNotFoundError(f"Slot {slot_id} not found")
        return row

    # ================================================================
    # QUERIES
    # ================================================================

    async def list_slots(
        self, user_id: str, account_id: Optional[str] = None
    ) -> List[SlotDefinition]:
        """All slots of a user, ordered by day then time."""
        rows = await self.db.list_slots(user_id, account_id)
        return [SlotDefinition.from_row(r) for r in rows]

    async def get_active_slots(self, user_id: str, account_id: str) -> List[SlotDefinition]:
        rows = await self.db.get_active_slots(account_id)
        return [SlotDefinition.from_row(r) for r in rows if r["user_id"] == user_id]

    # ================================================================
    # MUTATIONS
    # ================================================================

    async def create_slot(
        self,
        user_id: str,
        account_id: str,
        day_of_week: int,
        time_of_day: str,
        timezone: str,
    ) -> SlotDefinition:
        """Add a slot.

        Raises:
            ValidationError: On an invalid day, time or zone.
            AccountNotFoundError: If the account is not the user's.
            SlotConflictError: If the same day and time already exist.
        """
        row = {
            "id": generate_id(),
            "user_id": user_id,
            "account_id": account_id,
            "day_of_week": _validate_day(day_of_week),
            "time_of_day": _normalize_time(time_of_day),
            "timezone": timezone,
            "is_active": True,
        }
        validate_timezone(timezone)
        await self._require_account(user_id, account_id)

        created = await self.db.insert_slot(row)
        logger.info(
            "[SLOTS] Created slot day=%d %s %s for account %s",
            row["day_of_week"], row["time_of_day"], timezone, account_id,
        )
        return SlotDefinition.from_row(created)

    async def update_slot(self, user_id: str, slot_id: str, **changes: Any) -> SlotDefinition:
        """Change day, time, zone or active flag of a slot.

        Raises:
            ValidationError: On unknown fields or invalid values.
            SlotNotFoundError: If the slot is missing or belongs to another user.
            SlotConflictError: If the new day and time are already used.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update slot fields: {sorted(unknown)}")
        if not changes:
            raise ValidationError("No slot changes given")

        fields: Dict[str, Any] = {}
        if "day_of_week" in changes:
            fields["day_of_week"] = _validate_day(changes["day_of_week"])
        if "time_of_day" in changes:
            fields["time_of_day"] = _normalize_time(changes["time_of_day"])
        if "timezone" in changes:
            validate_timezone(changes["timezone"])
            fields["timezone"] = changes["timezone"]
        if "is_active" in changes:
            fields["is_active"] = bool(changes["is_active"])

        await self._require_slot(user_id, slot_id)
        updated = await self.db.update_slot(slot_id, fields)
        logger.info("[SLOTS] Updated slot %s: %s", slot_id, sorted(fields))
        return SlotDefinition.from_row(updated)

    async def delete_slot(self, user_id: str, slot_id: str) -> None:
        await self._require_slot(user_id, slot_id)
        await self.db.delete_slot(slot_id)
        logger.info("[SLOTS] Deleted slot %s", slot_id)

    async def apply_quick_preset(
        self,
        user_id: str,
        account_id: str,
        preset: str,
        timezone: str,
        days: Optional[Sequence[int]] = None,
    ) -> List[SlotDefinition]:
        """Replace the account's calendar with a posts-per-day preset.

        The delete and inserts run in one database transaction, so a
        failure leaves the previous calendar intact.

        Raises:
            ValidationError: On an unknown preset, day or zone.
            AccountNotFoundError: If the account is not the user's.
        """
        if preset not in QUICK_PRESETS:
            raise ValidationError(
                f"Unknown preset {preset!r}; expected one of {sorted(QUICK_PRESETS)}"
            )
        validate_timezone(timezone)
        selected = sorted({_validate_day(d) for d in (ALL_DAYS if days is None else days)})
        if not selected:
            raise ValidationError("At least one day must be selected")
        await self._require_account(user_id, account_id)

        rows = [
            {
                "id": generate_id(),
                "user_id": user_id,
                "account_id": account_id,
                "day_of_week": day,
                "time_of_day": time_of_day,
                "timezone": timezone,
                "is_active": True,
            }
            for day in selected
            for time_of_day in QUICK_PRESETS[preset]
        ]
        created = await self.db.replace_schedule_slots(user_id, account_id, rows)
        logger.info(
            "[SLOTS] Applied preset %s to account %s (%d slots)",
            preset, account_id, len(rows),
        )
        return [SlotDefinition.from_row(r) for r in (created or rows)]


__all__ = ["SlotCalendar", "QUICK_PRESETS", "ALL_DAYS"]
