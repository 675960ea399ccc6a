"""
External service clients used by the scheduler.

- ClaudeClient: Anthropic Claude API for caption writing
- CaptionGenerator: Instagram caption assembly from transcripts
- InstagramClient: Instagram Graph API (Reels publishing, token refresh)
"""

from reelqueue.tools.caption_generator import CaptionGenerator, GeneratedCaption
from reelqueue.tools.claude_client import ClaudeClient
from reelqueue.tools.instagram_client import (
    InstagramClient,
    PublishResult,
    TokenGrant,
    classify_graph_error,
)

__all__ = [
    "CaptionGenerator",
    "GeneratedCaption",
    "ClaudeClient",
    "InstagramClient",
    "PublishResult",
    "TokenGrant",
    "classify_graph_error",
]
