"""
Refresh-token grant with retry, error classification and single-flight.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Tuple

from ..config.settings import settings
from ..utils.helpers import parse_timestamp, utcnow
from ..utils.logger import logger, mask_secret
from ..utils.retry import RetryExhausted, RetryPolicy, linear_backoff
from .errors import (
    NotAuthenticatedError,
    ProviderHTTPError,
    ReauthRequiredError,
    RefreshError,
    TerminalRefreshError,
    TransientRefreshError,
)
from .exchanger import TokenExchanger
from .normalize import MalformedTokenResponse, NormalizedToken
from .platforms import PlatformConfig, PlatformRegistry
from .token_store import TokenRecord, TokenStore

DEFAULT_TERMINAL_MARKERS = (
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "invalid_refresh_token",
    "refresh_token_expired",
)


def is_expiring_soon(
    record: Optional[TokenRecord],
    buffer_minutes: int = 10,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check whether a stored token should be refreshed before use.

    Args:
        record: Token record (or None)
        buffer_minutes: Refresh this long before the actual expiry
        now: Current time (defaults to utcnow)

    Returns:
        True when the expiry is missing, unparsable, or inside the buffer
    """
    if record is None:
        return True
    expires_at = parse_timestamp(record.expires_at)
    if expires_at is None:
        return True
    now = now or utcnow()
    return expires_at <= now + timedelta(minutes=buffer_minutes)


class RefreshErrorClassifier:
    """Decide whether a failed refresh attempt is terminal or worth retrying."""

    def __init__(self, default_markers: Iterable[str] = DEFAULT_TERMINAL_MARKERS):
        self.default_markers: Tuple[str, ...] = tuple(m.lower() for m in default_markers)

    def markers_for(self, config: PlatformConfig) -> Tuple[str, ...]:
        return self.default_markers + tuple(m.lower() for m in config.terminal_error_markers)

    def is_terminal(self, error: ProviderHTTPError, markers: Iterable[str]) -> bool:
        if error.timed_out:
            return False
        code = (error.error_code or "").lower()
        text = (error.description or error.body or "").lower()
        for marker in markers:
            if marker == code:
                return True
            # Numeric Graph codes only match the code field, never free text
            if not marker.isdigit() and marker in text:
                return True
        return False

    def classify(self, config: PlatformConfig, error: ProviderHTTPError) -> RefreshError:
        """Wrap a provider failure in the matching refresh error."""
        error_class = TerminalRefreshError if self.is_terminal(error, self.markers_for(config)) else TransientRefreshError
        return error_class(
            f"Token refresh failed for {config.platform_id}: {error}",
            config.platform_id,
            provider_message=error.provider_message,
            status=error.status,
        )


class TokenRefresher:
    """
    Refreshes stored tokens and writes the result back to the store.

    Refreshes for the same user and storage key are serialized: a caller that
    waited on a refresh another caller already finished reuses its outcome
    instead of hitting the token endpoint again.
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        store: TokenStore,
        exchanger: TokenExchanger,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[RefreshErrorClassifier] = None,
        buffer_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.store = store
        self.exchanger = exchanger
        self.classifier = classifier or RefreshErrorClassifier()
        self.buffer_minutes = settings.token_refresh_buffer_minutes if buffer_minutes is None else buffer_minutes
        self._clock = clock

        policy = retry_policy or RetryPolicy(
            max_attempts=settings.token_refresh_max_attempts,
            backoff=linear_backoff(settings.token_refresh_retry_delay),
        )
        self.retry_policy = replace(
            policy, is_retryable=lambda exc: isinstance(exc, TransientRefreshError)
        )

        # Per-key state lives only while some caller is refreshing that key
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        # Bumped whenever a refresh for the key finishes, successfully or not
        self._generations: Dict[str, int] = {}

    def is_expiring_soon(self, record: Optional[TokenRecord], buffer_minutes: Optional[int] = None) -> bool:
        buffer_minutes = self.buffer_minutes if buffer_minutes is None else buffer_minutes
        return is_expiring_soon(record, buffer_minutes, now=self._clock())

    def _acquire_slot(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        return self._locks[key]

    def _release_slot(self, key: str) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            del self._waiters[key]
            del self._locks[key]
            self._generations.pop(key, None)

    async def refresh(self, user_id: str, platform_id: str) -> NormalizedToken:
        """
        Refresh the token used by ``platform_id`` for a user.

        Args:
            user_id: Token owner
            platform_id: Any registered platform; platforms sharing a token
                record refresh that one record

        Returns:
            The new token (refresh token preserved when the provider omits it)

        Raises:
            NotAuthenticatedError: No record stored, or it was disconnected
                before the new token could be written
            ReauthRequiredError: Record flagged, no refresh token, terminal
                provider error, or retries exhausted
            ConfigurationError: Unknown platform or missing credentials
        """
        config = self.registry.get_config(platform_id)
        owner = self.registry.get_config(config.storage_key)
        key = f"{user_id}:{owner.platform_id}"

        generation = self._generations.get(key, 0)
        lock = self._acquire_slot(key)
        try:
            async with lock:
                if self._generations.get(key, 0) != generation:
                    logger.debug(f"Reusing concurrent {owner.platform_id} refresh for user {user_id}")
                    return await self._latest(user_id, owner)
                try:
                    return await self._refresh(user_id, owner)
                finally:
                    self._generations[key] = self._generations.get(key, 0) + 1
        finally:
            self._release_slot(key)

    async def _latest(self, user_id: str, owner: PlatformConfig) -> NormalizedToken:
        record = await self.store.find_by_user_and_platform(user_id, owner.platform_id)
        if record is None:
            raise NotAuthenticatedError(owner.platform_id, user_id)
        if record.needs_reauth:
            raise ReauthRequiredError(owner.platform_id, ReauthRequiredError.FLAGGED)
        return NormalizedToken(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_at=record.expires_at,
            token_type=record.token_type,
            scope=record.scope,
            obtained_at=record.last_refreshed_at or record.updated_at,
        )

    async def _flag(self, record: TokenRecord, reason: str) -> None:
        await self.store.mark_needs_reauth(record.user_id, record.platform)
        logger.warning(f"{record.platform} token for user {record.user_id} needs re-authentication ({reason})")

    async def _refresh(self, user_id: str, owner: PlatformConfig) -> NormalizedToken:
        platform_id = owner.platform_id
        record = await self.store.find_by_user_and_platform(user_id, platform_id)
        if record is None:
            raise NotAuthenticatedError(platform_id, user_id)
        if record.needs_reauth:
            raise ReauthRequiredError(platform_id, ReauthRequiredError.FLAGGED)
        if not record.refresh_token:
            await self._flag(record, ReauthRequiredError.NO_REFRESH_TOKEN)
            raise ReauthRequiredError(platform_id, ReauthRequiredError.NO_REFRESH_TOKEN)

        owner.ensure_credentials()

        async def attempt(number: int) -> NormalizedToken:
            try:
                return await self.exchanger.request_refresh(platform_id, record.refresh_token)
            except ProviderHTTPError as e:
                raise self.classifier.classify(owner, e) from e
            except MalformedTokenResponse as e:
                raise TransientRefreshError(
                    f"Token refresh for {platform_id} returned no access token", platform_id
                ) from e

        logger.info(f"Refreshing {platform_id} token {mask_secret(record.refresh_token)} for user {user_id}")
        try:
            token = await self.retry_policy.run(attempt, description=f"{platform_id} token refresh for user {user_id}")
        except TerminalRefreshError as e:
            logger.error(f"Refresh token rejected by {platform_id} for user {user_id}: {e.provider_message}")
            await self._flag(record, ReauthRequiredError.TERMINAL)
            raise ReauthRequiredError(platform_id, ReauthRequiredError.TERMINAL, detail=e.provider_message) from e
        except RetryExhausted as e:
            await self._flag(record, ReauthRequiredError.RETRIES_EXHAUSTED)
            raise ReauthRequiredError(
                platform_id, ReauthRequiredError.RETRIES_EXHAUSTED, detail=str(e.last_error)
            ) from e.last_error

        refresh_token = token.refresh_token or record.refresh_token
        now = self._clock()
        updated = await self.store.update_token(replace(
            record,
            access_token=token.access_token,
            refresh_token=refresh_token,
            expires_at=token.expires_at,
            token_type=token.token_type or record.token_type,
            scope=token.scope or record.scope,
            needs_reauth=False,
            last_refreshed_at=now,
            updated_at=now,
        ))
        if not updated:
            logger.warning(f"{platform_id} token for user {user_id} was disconnected during refresh; discarding new token")
            raise NotAuthenticatedError(platform_id, user_id)
        logger.info(f"Refreshed {platform_id} token for user {user_id}, expires at {token.expires_at}")
        return replace(token, refresh_token=refresh_token)
