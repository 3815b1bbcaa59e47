"""
Orchestration facade: the one object ad-platform clients talk to.

Ad management code must obtain tokens through
``AdPlatformAuthenticator.get_valid_access_token`` and never read them from
the store directly; that is what keeps expiring tokens refreshed.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..config.settings import Settings, settings as default_settings
from ..utils.helpers import utcnow
from ..utils.logger import logger
from .errors import (
    AuthError,
    NotAuthenticatedError,
    ReauthRequiredError,
    StateValidationError,
    TokenExchangeError,
)
from .exchanger import TokenExchanger
from .http import ProviderHTTPClient
from .normalize import NormalizedToken
from .platforms import GOOGLE, INSTAGRAM, PlatformRegistry
from .probe import AccountProbe, ProbeResult
from .refresher import TokenRefresher
from .state import StateCodec
from .token_store import AdAccount, SQLAlchemyTokenStore, TokenRecord, TokenStore
from .urls import AuthorizationURLBuilder

# Which stored ad accounts belong to which platform view
ACCOUNT_KINDS = {
    GOOGLE: ("google_customer",),
    INSTAGRAM: ("instagram_business",),
}
DEFAULT_ACCOUNT_KINDS = ("ad_account",)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class PlatformStatus:
    """Connection state of one platform for one user."""

    platform: str
    authenticated: bool = False
    needs_refresh: bool = False
    needs_reauth: bool = False
    has_refresh_token: bool = False
    expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "authenticated": self.authenticated,
            "needs_refresh": self.needs_refresh,
            "needs_reauth": self.needs_reauth,
            "has_refresh_token": self.has_refresh_token,
            "expires_at": _iso(self.expires_at),
            "last_refreshed_at": _iso(self.last_refreshed_at),
        }


@dataclass
class CaseAuthStatus:
    auth_case: str
    is_fully_authenticated: bool
    needs_refresh: bool
    platforms: Dict[str, PlatformStatus] = field(default_factory=dict)

    @property
    def needs_reauth(self) -> List[str]:
        return [p for p, status in self.platforms.items() if status.needs_reauth]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auth_case": self.auth_case,
            "is_fully_authenticated": self.is_fully_authenticated,
            "needs_refresh": self.needs_refresh,
            "needs_reauth": self.needs_reauth,
            "platforms": {p: status.to_dict() for p, status in self.platforms.items()},
        }


@dataclass
class UserAuthStatus:
    user_id: str
    platforms: Dict[str, PlatformStatus] = field(default_factory=dict)

    @property
    def authenticated_count(self) -> int:
        return sum(1 for status in self.platforms.values() if status.authenticated)

    @property
    def needs_refresh_count(self) -> int:
        return sum(1 for status in self.platforms.values() if status.needs_refresh)

    @property
    def needs_reauth_count(self) -> int:
        return sum(1 for status in self.platforms.values() if status.needs_reauth)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "platforms": {p: status.to_dict() for p, status in self.platforms.items()},
            "summary": {
                "total_platforms": len(self.platforms),
                "authenticated": self.authenticated_count,
                "needs_refresh": self.needs_refresh_count,
                "needs_reauth": self.needs_reauth_count,
            },
        }


STILL_VALID = "still_valid"


@dataclass
class BatchRefreshResult:
    """
    Per-platform outcome of ``refresh_all_user_tokens``.

    ``results`` holds the new token, or ``STILL_VALID`` for platforms that did
    not need a refresh; ``errors`` holds a message per failed platform.
    """

    user_id: str
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    reauth_required: List[str] = field(default_factory=list)

    @property
    def refreshed(self) -> List[str]:
        return [p for p, value in self.results.items() if isinstance(value, NormalizedToken)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "results": {
                p: value.to_dict() if isinstance(value, NormalizedToken) else value
                for p, value in self.results.items()
            },
            "errors": dict(self.errors),
            "skipped": list(self.skipped),
            "reauth_required": list(self.reauth_required),
        }


@dataclass
class CallbackResult:
    """Outcome of a completed consent flow."""

    platform: str
    user_id: str
    token: NormalizedToken
    user_info: Dict[str, Any] = field(default_factory=dict)
    permissions: List[str] = field(default_factory=list)
    ad_accounts: List[AdAccount] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "user_id": self.user_id,
            "token": self.token.to_dict(),
            "user_info": self.user_info,
            "permissions": self.permissions,
            "ad_accounts": [account.to_dict() for account in self.ad_accounts],
            "warnings": self.warnings,
            "degraded": self.degraded,
        }


class AdPlatformAuthenticator:
    """
    Token lifecycle manager for Google and Meta advertising platforms.

    Composes the platform registry, state codec, URL builder, token exchanger,
    refresher, account probe and token store. Construct it explicitly (or via
    ``from_settings``) and close it on shutdown.
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        store: TokenStore,
        state_codec: StateCodec,
        exchanger: TokenExchanger,
        refresher: TokenRefresher,
        probe: Optional[AccountProbe] = None,
        http: Optional[ProviderHTTPClient] = None,
        long_lived_exchange: bool = False,
    ):
        self.registry = registry
        self.store = store
        self.state_codec = state_codec
        self.url_builder = AuthorizationURLBuilder(registry, state_codec)
        self.exchanger = exchanger
        self.refresher = refresher
        self.probe = probe
        self.http = http
        self.long_lived_exchange = long_lived_exchange

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        store: Optional[TokenStore] = None,
        http: Optional[ProviderHTTPClient] = None,
    ) -> "AdPlatformAuthenticator":
        """
        Wire the default components from environment settings.

        Args:
            config: Settings (defaults to the module-level settings)
            store: Token store (defaults to SQLAlchemyTokenStore on DATABASE_URL)
            http: Shared provider HTTP client

        Returns:
            Ready-to-use authenticator
        """
        config = config or default_settings
        registry = PlatformRegistry.from_settings(config)
        http = http or ProviderHTTPClient(timeout=config.oauth_http_timeout)
        store = store or SQLAlchemyTokenStore()
        exchanger = TokenExchanger(registry, http)
        return cls(
            registry=registry,
            store=store,
            state_codec=StateCodec(config.state_secret, ttl_minutes=config.oauth_state_ttl_minutes),
            exchanger=exchanger,
            refresher=TokenRefresher(registry, store, exchanger, buffer_minutes=config.token_refresh_buffer_minutes),
            probe=AccountProbe(
                registry,
                http,
                graph_api_version=config.fb_api_version,
                google_ads_developer_token=config.google_ads_developer_token,
                google_ads_api_version=config.google_ads_api_version,
            ),
            http=http,
            long_lived_exchange=config.fb_long_lived_exchange,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Release the outbound HTTP session."""
        if self.http:
            await self.http.close()

    # ----- Authorization URLs -----

    def build_auth_url(self, platform_id: str, user_id, scopes: Optional[Sequence[str]] = None) -> str:
        return self.url_builder.build_auth_url(platform_id, user_id, scopes)

    def build_auth_urls_for_case(self, case_id: str, user_id) -> Dict[str, str]:
        return self.url_builder.build_auth_urls_for_case(case_id, user_id)

    # ----- Tokens -----

    async def _load(self, user_id: str, platform_id: str) -> Optional[TokenRecord]:
        return await self.store.find_by_user_and_platform(user_id, self.registry.storage_key(platform_id))

    async def get_valid_access_token(self, user_id: str, platform_id: str) -> str:
        """
        Return an access token that is safe to use right now.

        Refreshes the stored token first when it expires within the buffer.

        Args:
            user_id: Token owner
            platform_id: Platform the caller is about to call

        Returns:
            Access token

        Raises:
            NotAuthenticatedError: User never connected the platform
            ReauthRequiredError: Token cannot be refreshed; user must reconnect
            ConfigurationError: Unknown platform
        """
        record = await self._load(user_id, platform_id)
        if record is None:
            raise NotAuthenticatedError(platform_id, user_id)
        if record.needs_reauth:
            raise ReauthRequiredError(platform_id, ReauthRequiredError.FLAGGED)
        if self.refresher.is_expiring_soon(record):
            logger.info(f"{platform_id} token for user {user_id} is expiring, refreshing")
            token = await self.refresher.refresh(user_id, platform_id)
            return token.access_token
        return record.access_token

    def _status(self, platform_id: str, record: Optional[TokenRecord]) -> PlatformStatus:
        if record is None:
            return PlatformStatus(platform=platform_id)
        return PlatformStatus(
            platform=platform_id,
            authenticated=bool(record.access_token),
            needs_refresh=self.refresher.is_expiring_soon(record),
            needs_reauth=record.needs_reauth,
            has_refresh_token=record.has_refresh_token,
            expires_at=record.expires_at,
            last_refreshed_at=record.last_refreshed_at,
        )

    async def _statuses(self, user_id: str, platform_ids: Sequence[str]) -> Dict[str, PlatformStatus]:
        statuses = {}
        for platform_id in platform_ids:
            statuses[platform_id] = self._status(platform_id, await self._load(user_id, platform_id))
        return statuses

    async def is_authenticated(self, user_id: str, case_id: str) -> CaseAuthStatus:
        """
        Check whether a user has connected every platform of an auth case.

        Read-only: no refresh is attempted.

        Raises:
            ConfigurationError: Unknown auth case
        """
        statuses = await self._statuses(user_id, self.registry.list_auth_case_platforms(case_id))
        return CaseAuthStatus(
            auth_case=case_id,
            is_fully_authenticated=all(status.authenticated for status in statuses.values()),
            needs_refresh=any(status.authenticated and status.needs_refresh for status in statuses.values()),
            platforms=statuses,
        )

    async def get_user_auth_status(self, user_id: str) -> UserAuthStatus:
        """Connection state of every supported platform. Read-only."""
        statuses = await self._statuses(user_id, self.registry.supported_platforms())
        return UserAuthStatus(user_id=str(user_id), platforms=statuses)

    async def refresh_all_user_tokens(
        self,
        user_id: str,
        platforms: Optional[Sequence[str]] = None,
        buffer_minutes: Optional[int] = None,
    ) -> BatchRefreshResult:
        """
        Refresh every expiring token of a user. Never raises for a platform.

        Platforms sharing a token record are refreshed once and reported under
        each requested platform id.

        Args:
            user_id: Token owner
            platforms: Platforms to consider (defaults to all supported; an
                empty list refreshes nothing)
            buffer_minutes: Refresh tokens expiring within this many minutes
                (defaults to the refresher's buffer)

        Returns:
            BatchRefreshResult
        """
        result = BatchRefreshResult(user_id=str(user_id))
        groups: Dict[str, List[str]] = {}
        if platforms is None:
            platforms = self.registry.supported_platforms()
        for platform_id in platforms:
            try:
                storage_key = self.registry.storage_key(platform_id)
            except AuthError as e:
                result.errors[platform_id] = e.message
                continue
            groups.setdefault(storage_key, []).append(platform_id)

        async def refresh_group(storage_key: str, platform_ids: List[str]) -> None:
            try:
                record = await self.store.find_by_user_and_platform(user_id, storage_key)
                if record is None:
                    result.skipped.extend(platform_ids)
                    return
                if not record.needs_reauth and not self.refresher.is_expiring_soon(record, buffer_minutes):
                    outcome: Any = STILL_VALID
                else:
                    outcome = await self.refresher.refresh(user_id, platform_ids[0])
                for platform_id in platform_ids:
                    result.results[platform_id] = outcome
            except ReauthRequiredError as e:
                for platform_id in platform_ids:
                    result.errors[platform_id] = e.message
                    result.reauth_required.append(platform_id)
            except Exception as e:
                logger.error(f"Failed to refresh {storage_key} token for user {user_id}: {e}")
                for platform_id in platform_ids:
                    result.errors[platform_id] = str(e)

        await asyncio.gather(*(refresh_group(key, ids) for key, ids in groups.items()))

        logger.info(
            f"Token refresh for user {user_id}: {len(result.refreshed)} refreshed, "
            f"{len(result.errors)} failed, {len(result.skipped)} skipped"
        )
        return result

    # ----- Callback -----

    async def handle_callback(self, platform_id: str, code: str, state: str, user_id: str) -> CallbackResult:
        """
        Complete a consent flow: verify state, exchange the code, store the token.

        Identity and ad account lookups afterwards are best-effort; failures
        there only add warnings because the token is already stored.

        Args:
            platform_id: Platform that redirected back
            code: Authorization code
            state: ``state`` query parameter
            user_id: Authenticated caller completing the flow

        Returns:
            CallbackResult

        Raises:
            ConfigurationError: Unknown platform or missing credentials
            StateValidationError: Forged, stale, replayed or foreign state
            TokenExchangeError: Provider rejected the code
        """
        config = self.registry.get_config(platform_id)

        decoded = self.state_codec.consume(state, user_id)
        if not decoded.valid:
            raise StateValidationError(f"Invalid OAuth state: {decoded.reason}", platform_id)
        if decoded.label != platform_id:
            raise StateValidationError(
                f"OAuth state was issued for {decoded.label}, not {platform_id}", platform_id
            )

        token = await self.exchanger.exchange_code(platform_id, code)
        warnings: List[str] = []

        if config.is_facebook_family and self.long_lived_exchange:
            try:
                token = await self.exchanger.exchange_long_lived(platform_id, token.access_token)
            except TokenExchangeError as e:
                logger.warning(f"Keeping short-lived {platform_id} token: {e}")
                warnings.append(f"Long-lived token exchange failed: {e.provider_message or e.message}")

        now = utcnow()
        await self.store.upsert(TokenRecord(
            user_id=str(user_id),
            platform=config.storage_key,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=token.expires_at,
            token_type=token.token_type,
            scope=token.scope,
            needs_reauth=False,
            created_at=now,
            updated_at=now,
        ))
        logger.info(f"Connected {platform_id} for user {user_id}")

        probe_result = ProbeResult()
        if self.probe:
            try:
                probe_result = await self.probe.probe(platform_id, token)
            except Exception as e:
                logger.warning(f"Account lookup failed for {platform_id}, user {user_id}: {e}")
                probe_result.warnings.append(f"Account lookup failed: {e}")

        if probe_result.ad_accounts_complete:
            try:
                await self.store.replace_ad_accounts(user_id, config.storage_key, probe_result.ad_accounts)
            except Exception as e:
                logger.warning(f"Could not store ad accounts for {platform_id}, user {user_id}: {e}")
                probe_result.warnings.append(f"Could not store ad accounts: {e}")

        return CallbackResult(
            platform=platform_id,
            user_id=str(user_id),
            token=token,
            user_info=probe_result.user_info,
            permissions=probe_result.permissions,
            ad_accounts=probe_result.ad_accounts,
            warnings=warnings + probe_result.warnings,
        )

    # ----- Account management -----

    async def disconnect(self, user_id: str, platform_id: str) -> bool:
        """
        Delete the stored token of a platform and its ad accounts.

        Platforms sharing a record (Facebook, Instagram, Meta) are
        disconnected together.
        """
        deleted = await self.store.delete_by_user_and_platform(user_id, self.registry.storage_key(platform_id))
        if deleted:
            logger.info(f"Disconnected {platform_id} for user {user_id}")
        return deleted

    async def delete_user(self, user_id: str) -> int:
        """Delete every token of a user. Returns the number of records removed."""
        count = await self.store.delete_by_user(user_id)
        logger.info(f"Deleted {count} token records for user {user_id}")
        return count

    async def list_ad_accounts(self, user_id: str, platform_id: str) -> List[AdAccount]:
        """Ad accounts found for a platform during the last successful callback."""
        kinds = ACCOUNT_KINDS.get(platform_id, DEFAULT_ACCOUNT_KINDS)
        accounts = await self.store.list_ad_accounts(user_id, self.registry.storage_key(platform_id))
        return [account for account in accounts if account.kind in kinds]

    async def has_connected_accounts(self, user_id: str, platform_id: str) -> bool:
        return bool(await self.list_ad_accounts(user_id, platform_id))
