"""
Wiring of the scheduler components for the entry scripts.

Usage::

    services = await create_services()
    services.scheduler.start()
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from reelqueue.config import Settings, get_settings
from reelqueue.database import SupabaseDB, get_db
from reelqueue.scheduling.posting_queue import PostingQueue
from reelqueue.scheduling.publisher import PublishCycleRunner
from reelqueue.scheduling.queue_assigner import QueueAssigner
from reelqueue.scheduling.scheduler import InternalScheduler
from reelqueue.scheduling.slot_calendar import SlotCalendar
from reelqueue.scheduling.token_refresh import TokenManager
from reelqueue.tools.caption_generator import CaptionGenerator
from reelqueue.tools.instagram_client import InstagramClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: SupabaseDB
    instagram: InstagramClient
    tokens: TokenManager
    publisher: PublishCycleRunner
    assigner: QueueAssigner
    queue: PostingQueue
    calendar: SlotCalendar
    scheduler: InternalScheduler


def build_services(
    db: SupabaseDB,
    settings: Optional[Settings] = None,
    instagram: Optional[InstagramClient] = None,
    caption_generator: Optional[CaptionGenerator] = None,
) -> Services:
    """Assemble every component around one database client."""
    settings = settings or get_settings()
    instagram = instagram or InstagramClient(settings.instagram)

    if caption_generator is None and os.environ.get("ANTHROPIC_API_KEY"):
        caption_generator = CaptionGenerator(model=settings.caption_model)
    if caption_generator is None:
        logger.warning("ANTHROPIC_API_KEY not set, videos without a caption are queued uncaptioned")

    tokens = TokenManager(db, instagram, settings.token_refresh)
    publisher = PublishCycleRunner(db, instagram, tokens, settings.publishing)
    return Services(
        db=db,
        instagram=instagram,
        tokens=tokens,
        publisher=publisher,
        assigner=QueueAssigner(
            db,
            caption_generator=caption_generator,
            config=settings.publishing,
            hashtag_count=settings.caption_hashtag_count,
        ),
        queue=PostingQueue(db),
        calendar=SlotCalendar(db),
        scheduler=InternalScheduler(
            publisher, tokens, settings.publishing, settings.token_refresh
        ),
    )


async def create_services(settings: Optional[Settings] = None) -> Services:
    """Connect to Supabase and assemble the components."""
    db = await get_db()
    return build_services(db, settings)


__all__ = ["Services", "build_services", "create_services"]
