"""
Instagram caption writer for queued videos.

Turns a video transcript into a hook, body, call to action and hashtag
set via Claude, then assembles the final caption within Instagram's
2,200 character limit.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from reelqueue.tools.claude_client import ClaudeClient

logger = logging.getLogger(__name__)

INSTAGRAM_CAPTION_LIMIT = 2200
TRANSCRIPT_PROMPT_CHARS = 3000

SYSTEM_PROMPT = "You are a social media copywriter specializing in Instagram Reels."

PROMPT_TEMPLATE = """Write an engaging Instagram caption for a video with this transcript:

---
{transcript}
---
{title_line}
Requirements:
- First line must be a scroll-stopping hook (under 125 characters)
- Body should provide value or context (2-4 short paragraphs)
- Include a clear call to action at the end
- Generate {hashtag_count} relevant hashtags (mix of high-volume and niche-specific)
- Keep the total caption under 2,200 characters
- Match the tone and energy of the video

Return JSON with keys: "hook", "body", "cta", "hashtags" (list of strings)."""


@dataclass
class GeneratedCaption:
    hook: str
    body: str
    cta: str
    hashtags: List[str] = field(default_factory=list)
    full_caption: str = ""


def normalize_hashtags(raw: Any) -> List[str]:
    """Lowercase, strip ``#`` and whitespace, drop empties and duplicates."""
    seen: List[str] = []
    for item in raw or []:
        tag = re.sub(r"\s+", "", str(item)).lstrip("#").lower()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def assemble_caption(hook: str, body: str, cta: str, hashtags: List[str]) -> str:
    """Join the caption parts and the hashtag line, truncated to the limit."""
    parts = [hook, "", body]
    if cta:
        parts.extend(["", cta])
    if hashtags:
        parts.extend(["", ".", ".", ".", "", " ".join(f"#{h}" for h in hashtags)])
    return "\n".join(parts).strip()[:INSTAGRAM_CAPTION_LIMIT]


class CaptionGenerator:
    """Generate captions through a :class:`ClaudeClient`.

    Args:
        claude: Client to use.  Created lazily from ``ANTHROPIC_API_KEY``
            when omitted.
        model: Model identifier passed to a lazily created client.
    """

    def __init__(
        self,
        claude: Optional[ClaudeClient] = None,
        model: Optional[str] = None,
    ) -> None:
        self._claude = claude
        self._model = model

    @property
    def claude(self) -> ClaudeClient:
        if self._claude is None:
            self._claude = ClaudeClient(model=self._model) if self._model else ClaudeClient()
        return self._claude

    async def generate(
        self,
        transcript: str,
        title: Optional[str] = None,
        hashtag_count: int = 25,
    ) -> GeneratedCaption:
        """Generate a caption for a transcript.

        Raises:
            ValueError: If the transcript is empty.
        """
        if not transcript or not transcript.strip():
            raise ValueError("transcript cannot be empty")

        prompt = PROMPT_TEMPLATE.format(
            transcript=transcript[:TRANSCRIPT_PROMPT_CHARS],
            title_line=f'Video title: "{title}"\n' if title else "",
            hashtag_count=hashtag_count,
        )
        data: Dict[str, Any] = await self.claude.generate_structured(
            prompt, system=SYSTEM_PROMPT
        )

        hook = str(data.get("hook") or "").strip()
        body = str(data.get("body") or "").strip()
        cta = str(data.get("cta") or "").strip()
        hashtags = normalize_hashtags(data.get("hashtags"))[:hashtag_count]

        caption = GeneratedCaption(
            hook=hook,
            body=body,
            cta=cta,
            hashtags=hashtags,
            full_caption=assemble_caption(hook, body, cta, hashtags),
        )
        logger.info(
            "[CAPTION] Generated caption (%d chars, %d hashtags)",
            len(caption.full_caption),
            len(hashtags),
        )
        return caption


__all__ = [
    "CaptionGenerator",
    "GeneratedCaption",
    "normalize_hashtags",
    "assemble_caption",
    "INSTAGRAM_CAPTION_LIMIT",
]
