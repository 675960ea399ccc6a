"""
Async Instagram Graph API client for Reels publishing and token refresh.

Uses ``httpx`` to call the Graph API.  Publishing a Reel is a three-step
flow: create a media container from a public video URL, poll it until
Instagram finishes ingesting the video, then publish the container.

Failed Graph responses are classified by :func:`classify_graph_error` so
the publisher can decide between retrying, failing, and deactivating the
account.  Transport-level failures (timeouts, resets) surface as
retryable ``InstagramAPIError``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from reelqueue.config import InstagramConfig, get_settings
from reelqueue.exceptions import (
    UNKNOWN_ERROR,
    ContainerProcessingError,
    GraphErrorClassification,
    InstagramAPIError,
    InstagramRateLimitError,
    InstagramTokenInvalidError,
)
from reelqueue.utils import utc_now, with_retry

logger = logging.getLogger(__name__)

# Long-lived tokens last 60 days when the response omits ``expires_in``.
DEFAULT_TOKEN_TTL_SECONDS = 5184000

CONTAINER_FINISHED = "FINISHED"
CONTAINER_ERROR = "ERROR"
CONTAINER_PUBLISHED = "PUBLISHED"


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================


def classify_graph_error(payload: Optional[Dict[str, Any]]) -> GraphErrorClassification:
    """Classify a Graph API error body (``{"error": {...}}``).

    Code 190 is an auth failure (subcode 463/460 expired, 458 revoked),
    10/200 missing permissions, 4/32/613 rate limits, 36003 or a message
    mentioning media/video a rejected upload.  Anything else is treated
    as transient.
    """
    error = (payload or {}).get("error") or {}
    code = error.get("code")
    subcode = error.get("error_subcode")
    message = error.get("message") or ""
    lowered = message.lower()

    if code == 190:
        if subcode in (463, 460):
            return GraphErrorClassification(
                category="token_expired",
                user_message="Your Instagram connection has expired. Please reconnect your account.",
                should_retry=False,
                should_deactivate_account=True,
            )
        if subcode == 458:
            return GraphErrorClassification(
                category="permission_denied",
                user_message="Instagram permissions were revoked. Please reconnect with all required permissions.",
                should_retry=False,
                should_deactivate_account=True,
            )
        return GraphErrorClassification(
            category="token_invalid",
            user_message="Your Instagram authentication is invalid. Please reconnect your account.",
            should_retry=False,
            should_deactivate_account=True,
        )

    if code in (10, 200):
        return GraphErrorClassification(
            category="permission_denied",
            user_message="Instagram permissions are missing. Please reconnect with all required permissions.",
            should_retry=False,
            should_deactivate_account=True,
        )

    if code in (4, 32, 613):
        return GraphErrorClassification(
            category="rate_limited",
            user_message="Instagram rate limit reached. Your post will be retried automatically.",
            should_retry=True,
            should_deactivate_account=False,
        )

    if code == 36003 or "media" in lowered or "video" in lowered:
        return GraphErrorClassification(
            category="media_error",
            user_message=f"Instagram rejected the video: {message}",
            should_retry=False,
            should_deactivate_account=False,
        )

    return GraphErrorClassification(
        category="unknown",
        user_message=f"Instagram API error: {message or 'Unknown error'}",
        should_retry=True,
        should_deactivate_account=False,
    )


def _error_for(message: str, classification: GraphErrorClassification) -> InstagramAPIError:
    if classification.category == "rate_limited":
        return InstagramRateLimitError(message, classification)
    if classification.should_deactivate_account:
        return InstagramTokenInvalidError(message, classification)
    return InstagramAPIError(message, classification)


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class PublishResult:
    container_id: str
    media_id: str
    permalink: str = ""


@dataclass
class TokenGrant:
    """A refreshed long-lived user token."""

    access_token: str
    expires_at: datetime


# =============================================================================
# CLIENT
# =============================================================================


class InstagramClient:
    """Async Instagram Graph API client.

    Args:
        config: Graph API settings.  Defaults to ``get_settings().instagram``.
        transport: Optional ``httpx`` transport (tests pass a
            ``httpx.MockTransport``).

    Usage::

        client = InstagramClient()
        result = await client.publish(token, ig_user_id, video_url, caption)
    """

    def __init__(
        self,
        config: Optional[InstagramConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or get_settings().instagram
        self._transport = transport

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout_seconds,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a Graph request and return the decoded body.

        Raises:
            InstagramAPIError: On a non-2xx response (classified) or a
                transport failure (retryable).
        """
        try:
            async with self._client() as client:
                response = await client.request(method, path, params=params, json=json)
        except httpx.TransportError as exc:
            raise InstagramAPIError(
                f"{action}: network error: {exc}", UNKNOWN_ERROR
            ) from exc

        body = _safe_json(response)
        if response.is_success:
            return body

        classification = classify_graph_error(body)
        logger.error(
            "[INSTAGRAM] %s failed (http=%d, category=%s, fbtrace_id=%s)",
            action,
            response.status_code,
            classification.category,
            (body.get("error") or {}).get("fbtrace_id"),
        )
        raise _error_for(f"{action}: {classification.user_message}", classification)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def create_container(
        self,
        access_token: str,
        instagram_user_id: str,
        video_url: str,
        caption: str,
        cover_url: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {
            "media_type": "REELS",
            "video_url": video_url,
            "caption": caption,
            "access_token": access_token,
        }
        if cover_url:
            body["cover_url"] = cover_url

        data = await self._request(
            "POST",
            f"/{instagram_user_id}/media",
            "Failed to create media container",
            json=body,
        )
        container_id = data.get("id")
        if not container_id:
            raise InstagramAPIError("Media container response had no id")
        return str(container_id)

    async def get_container_status(
        self, container_id: str, access_token: str
    ) -> Dict[str, Any]:
        """Return ``{"status_code": ..., "status": ...}`` for a container."""
        return await self._request(
            "GET",
            f"/{container_id}",
            "Failed to read container status",
            params={"fields": "status_code,status", "access_token": access_token},
        )

    async def wait_for_container(self, container_id: str, access_token: str) -> None:
        """Poll a container until Instagram reports ``FINISHED``.

        Transient status-read failures are skipped; the poll ceiling
        bounds the total wait.

        Raises:
            ContainerProcessingError: On ``ERROR`` status or timeout.
        """
        attempts = self.config.container_poll_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.config.container_poll_interval_seconds)
            try:
                data = await self.get_container_status(container_id, access_token)
            except InstagramAPIError as exc:
                if not exc.should_retry:
                    raise
                logger.debug(
                    "[INSTAGRAM] Container %s status poll %d/%d failed: %s",
                    container_id, attempt, attempts, exc,
                )
                continue

            status_code = data.get("status_code")
            if status_code == CONTAINER_FINISHED:
                return
            if status_code == CONTAINER_ERROR:
                raise ContainerProcessingError(
                    f"Media container failed: {data.get('status') or 'Unknown error'}",
                    GraphErrorClassification(
                        category="media_error",
                        user_message="Instagram could not process the video",
                        should_retry=False,
                        should_deactivate_account=False,
                    ),
                )

        raise ContainerProcessingError(
            "Media container timed out waiting for FINISHED status"
        )

    async def publish_container(
        self, container_id: str, access_token: str, instagram_user_id: str
    ) -> str:
        data = await self._request(
            "POST",
            f"/{instagram_user_id}/media_publish",
            "Failed to publish",
            json={"creation_id": container_id, "access_token": access_token},
        )
        media_id = data.get("id")
        if not media_id:
            raise InstagramAPIError("media_publish response had no id")
        return str(media_id)

    async def get_permalink(self, media_id: str, access_token: str) -> str:
        """Best effort: an empty string when the lookup fails."""
        try:
            data = await self._request(
                "GET",
                f"/{media_id}",
                "Failed to read permalink",
                params={"fields": "permalink", "access_token": access_token},
            )
        except InstagramAPIError as exc:
            logger.warning("[INSTAGRAM] Permalink lookup for %s failed: %s", media_id, exc)
            return ""
        return data.get("permalink") or ""

    async def publish(
        self,
        access_token: str,
        instagram_user_id: str,
        video_url: str,
        caption: str,
        cover_url: Optional[str] = None,
        on_container_created: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> PublishResult:
        """Publish a Reel.

        Args:
            on_container_created: Awaited with the container id as soon as
                it exists, before polling starts.

        Raises:
            InstagramAPIError: On any failed step (see ``classification``).
        """
        container_id = await self.create_container(
            access_token, instagram_user_id, video_url, caption, cover_url
        )
        logger.info("[INSTAGRAM] Created container %s for %s", container_id, instagram_user_id)
        if on_container_created is not None:
            await on_container_created(container_id)

        await self.wait_for_container(container_id, access_token)
        media_id = await self.publish_container(container_id, access_token, instagram_user_id)
        permalink = await self.get_permalink(media_id, access_token)

        logger.info("[INSTAGRAM] Published media %s (container=%s)", media_id, container_id)
        return PublishResult(container_id=container_id, media_id=media_id, permalink=permalink)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @with_retry(max_attempts=3, base_delay=1.0, retryable_exceptions=(InstagramRateLimitError,))
    async def refresh_token(self, user_access_token: str) -> TokenGrant:
        """Exchange a long-lived user token for a fresh one.

        Raises:
            InstagramTokenInvalidError: If the token can no longer be refreshed.
            InstagramAPIError: On other failures.
        """
        data = await self._request(
            "GET",
            "/oauth/access_token",
            "Failed to refresh token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.config.app_id,
                "client_secret": self.config.app_secret,
                "fb_exchange_token": user_access_token,
            },
        )
        token = data.get("access_token")
        if not token:
            raise InstagramAPIError("Token refresh response had no access_token")
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        return TokenGrant(access_token=token, expires_at=utc_now() + timedelta(seconds=expires_in))

    async def fetch_page_token(self, user_access_token: str, page_id: str) -> Optional[str]:
        """Derive the page token for *page_id*; ``None`` if the lookup fails."""
        try:
            data = await self._request(
                "GET",
                f"/{page_id}",
                "Failed to fetch page token",
                params={"fields": "access_token", "access_token": user_access_token},
            )
        except InstagramAPIError as exc:
            logger.warning("[INSTAGRAM] Page token for %s unavailable: %s", page_id, exc)
            return None
        return data.get("access_token") or None


__all__ = [
    "InstagramClient",
    "PublishResult",
    "TokenGrant",
    "classify_graph_error",
    "DEFAULT_TOKEN_TTL_SECONDS",
    "CONTAINER_FINISHED",
    "CONTAINER_ERROR",
    "CONTAINER_PUBLISHED",
]
