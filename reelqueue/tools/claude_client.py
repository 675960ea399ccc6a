"""
Async Claude API client used for caption writing.

Uses the ``anthropic`` Python SDK (``AsyncAnthropic``) to call the
Messages API.

Key features:
    - Automatic retry with exponential backoff via ``@with_retry``
    - Token usage tracking (input + output)
    - Structured JSON generation with markdown-fence stripping

If all retry attempts are exhausted the original ``anthropic`` exception
propagates wrapped in ``RetryExhaustedError``.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from anthropic import AsyncAnthropic

from reelqueue.utils import with_retry

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5"


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if the model added one."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        if first_newline != -1:
            cleaned = cleaned[first_newline + 1 :]
        else:
            cleaned = cleaned[3:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


class ClaudeClient:
    """Async Claude API client.

    Args:
        api_key: Anthropic API key.  Falls back to the
            ``ANTHROPIC_API_KEY`` environment variable.
        model: Model identifier.

    Raises:
        KeyError: If no API key is provided and the environment variable
            is missing.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
    ) -> None:
        self.client = AsyncAnthropic(
            api_key=api_key or os.environ["ANTHROPIC_API_KEY"],
        )
        self.model = model
        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0

    @with_retry(max_attempts=3, retryable_exceptions=(Exception,))
    async def generate_structured(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 1500,
        temperature: float = 0.8,
    ) -> Dict[str, Any]:
        """Generate a JSON object response.

        Raises:
            json.JSONDecodeError: If the model returns invalid JSON after
                stripping.
        """
        json_prompt = (
            f"{prompt}\n\n"
            "IMPORTANT: Return ONLY valid JSON, no markdown, no explanation."
        )
        messages: List[Dict[str, str]] = [{"role": "user", "content": json_prompt}]

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self.client.messages.create(**kwargs)

        self._total_input_tokens += response.usage.input_tokens
        self._total_output_tokens += response.usage.output_tokens

        logger.debug(
            "Claude generate_structured: in=%d out=%d tokens",
            response.usage.input_tokens,
            response.usage.output_tokens,
        )

        return json.loads(strip_code_fences(response.content[0].text))

    @property
    def usage_stats(self) -> Dict[str, int]:
        """Cumulative token usage since this client was instantiated."""
        return {
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }


__all__ = ["ClaudeClient", "strip_code_fences", "DEFAULT_MODEL"]
