"""Scheduling subsystem: slot calendar, queue assignment, publish and token cycles."""

from reelqueue.scheduling.models import (
    CycleResult,
    PostStatus,
    PreflightResult,
    QueuedPost,
    QueueStats,
    SlotDefinition,
    SocialAccount,
    TokenRefreshResult,
)
from reelqueue.scheduling.posting_queue import PostingQueue
from reelqueue.scheduling.publisher import PublishCycleRunner
from reelqueue.scheduling.queue_assigner import QueueAssigner
from reelqueue.scheduling.scheduler import InternalScheduler, SchedulerState
from reelqueue.scheduling.slot_calendar import SlotCalendar
from reelqueue.scheduling.token_refresh import TokenManager

__all__ = [
    "CycleResult",
    "PostStatus",
    "PreflightResult",
    "QueuedPost",
    "QueueStats",
    "SlotDefinition",
    "SocialAccount",
    "TokenRefreshResult",
    "PostingQueue",
    "PublishCycleRunner",
    "QueueAssigner",
    "InternalScheduler",
    "SchedulerState",
    "SlotCalendar",
    "TokenManager",
]
