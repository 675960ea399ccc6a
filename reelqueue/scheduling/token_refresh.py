"""
Access token management for connected Instagram accounts.

Publishing uses the page token stored on the account.  Page tokens are
derived from a long-lived user token that lasts about 60 days and can be
exchanged for a fresh one while still valid.  ``TokenManager`` refreshes
tokens that expire within the refresh window, both proactively (daily
cycle) and inline before a publish attempt.

A refresh failure only deactivates an account when Instagram confirms
the token is invalid, or when there is no user token to refresh with and
the current token has already expired.  Transient failures fall back to
the current token while it is still valid.
"""

import logging
from datetime import timedelta
from typing import Optional, Tuple

from reelqueue.config import TokenRefreshConfig, get_settings
from reelqueue.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    GraphErrorClassification,
    InstagramAPIError,
    InstagramTokenInvalidError,
)
from reelqueue.scheduling.models import SocialAccount, TokenRefreshResult
from reelqueue.utils import BoundedLockMap, utc_now

logger = logging.getLogger(__name__)

RECONNECT_MESSAGE = "Please reconnect your Instagram account to continue publishing."

RECONNECT_REQUIRED = GraphErrorClassification(
    category="token_invalid",
    user_message=RECONNECT_MESSAGE,
    should_retry=False,
    should_deactivate_account=True,
)


class TokenManager:
    """Hands out valid access tokens, refreshing them when needed.

    Refreshes of the same account are serialized with a per-account lock
    so the publish and refresh cycles never exchange one token twice.

    Args:
        db: Database client (:class:`~reelqueue.database.SupabaseDB`).
        instagram: :class:`~reelqueue.tools.instagram_client.InstagramClient`.
        config: Refresh window and lock capacity.
    """

    def __init__(
        self,
        db: "SupabaseDB",  # noqa: F821
        instagram: "InstagramClient",  # noqa: F821
        config: Optional[TokenRefreshConfig] = None,
    ) -> None:
        self.db = db
        self.instagram = instagram
        self.config = config or get_settings().token_refresh
        self._locks = BoundedLockMap(self.config.lock_capacity)

    def _needs_refresh(self, account: SocialAccount) -> bool:
        if account.token_expires_at is None:
            return False
        window_end = utc_now() + timedelta(days=self.config.refresh_window_days)
        return account.token_expires_at < window_end

    async def _load(self, account_id: str) -> SocialAccount:
        row = await self.db.get_account(account_id)
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        account = SocialAccount.from_row(row)
        if not account.is_active:
            raise AccountInactiveError(account.last_error or "Instagram account is inactive")
        return account

    async def _deactivate(self, account: SocialAccount, message: str) -> None:
        await self.db.deactivate_account(account.id, message)

    async def _refresh(self, account: SocialAccount) -> Tuple[str, bool]:
        """Refresh *account*'s tokens.

        Returns:
            ``(token, refreshed)``; ``refreshed`` is ``False`` when the
            current token was kept after a failed refresh.
        """
        still_valid = (
            account.token_expires_at is not None
            and account.token_expires_at > utc_now()
        )

        if not account.user_access_token:
            logger.warning(
                "[TOKENS] Account %s has no user token stored, cannot refresh", account.id
            )
            if still_valid:
                return account.access_token, False
            await self._deactivate(account, RECONNECT_MESSAGE)
            raise InstagramTokenInvalidError(
                "Instagram account needs reconnection (no user token stored)",
                RECONNECT_REQUIRED,
            )

        try:
            grant = await self.instagram.refresh_token(account.user_access_token)
        except InstagramTokenInvalidError as exc:
            logger.error("[TOKENS] Token for account %s is no longer valid: %s", account.id, exc)
            await self._deactivate(account, exc.classification.user_message)
            raise
        except Exception as exc:
            logger.error("[TOKENS] Failed to refresh token for account %s: %s", account.id, exc)
            if still_valid:
                return account.access_token, False
            raise InstagramAPIError(
                f"Instagram token expired and refresh failed: {exc}"
            ) from exc

        page_token = None
        if account.facebook_page_id:
            page_token = await self.instagram.fetch_page_token(
                grant.access_token, account.facebook_page_id
            )
        token = page_token or account.access_token

        await self.db.update_account(account.id, {
            "user_access_token": grant.access_token,
            "access_token": token,
            "token_expires_at": grant.expires_at.isoformat(),
            "last_error": None,
        })
        logger.info(
            "[TOKENS] Refreshed token for account %s (expires %s)",
            account.id, grant.expires_at.isoformat(),
        )
        return token, True

    async def get_valid_token(self, account_id: str) -> str:
        """Return a usable access token for *account_id*.

        Raises:
            AccountNotFoundError: If the account does not exist.
            AccountInactiveError: If the account was deactivated.
            InstagramTokenInvalidError: If the token cannot be refreshed;
                the account is deactivated first.
            InstagramAPIError: If the token expired and a transient
                refresh failure left no usable token (retryable).
        """
        async with self._locks.get(account_id):
            account = await self._load(account_id)
            if not self._needs_refresh(account):
                return account.access_token
            token, _ = await self._refresh(account)
            return token

    async def refresh_expiring_tokens(self) -> TokenRefreshResult:
        """Refresh every active account whose token expires within the window.

        Failures are counted and produce a ``token_expiring`` notification;
        they never stop the loop over the remaining accounts.
        """
        result = TokenRefreshResult()
        cutoff = utc_now() + timedelta(days=self.config.refresh_window_days)
        rows = await self.db.get_accounts_expiring_before(cutoff)

        for row in rows:
            account = SocialAccount.from_row(row)
            try:
                async with self._locks.get(account.id):
                    # Reload under the lock: an inline refresh may have won
                    current = await self._load(account.id)
                    if not self._needs_refresh(current):
                        logger.debug(
                            "[TOKENS] Account %s already refreshed, skipping", account.id
                        )
                        continue
                    _, refreshed = await self._refresh(current)
            except Exception as exc:
                refreshed = False
                logger.error("[TOKENS] Refresh failed for account %s: %s", account.id, exc)

            if refreshed:
                result.refreshed += 1
                continue

            result.failed += 1
            await self.db.create_notification(
                user_id=account.user_id,
                type="token_expiring",
                title="Instagram connection expiring",
                message=(
                    f"We couldn't refresh access for @{account.instagram_username or account.id}. "
                    "Reconnect the account to keep scheduled posts publishing."
                ),
                data={"account_id": account.id},
            )

        if result.refreshed or result.failed:
            logger.info(
                "[TOKENS] Refresh cycle: %d refreshed, %d failed",
                result.refreshed, result.failed,
            )
        return result


__all__ = ["TokenManager", "RECONNECT_MESSAGE", "RECONNECT_REQUIRED"]
