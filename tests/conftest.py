"""Pytest configuration and fixtures for ads_auth tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ads_auth.auth.authenticator import AdPlatformAuthenticator
from ads_auth.auth.errors import ProviderHTTPError
from ads_auth.auth.exchanger import TokenExchanger
from ads_auth.auth.http import ProviderHTTPClient
from ads_auth.auth.platforms import (
    FACEBOOK,
    FACEBOOK_FAMILY,
    FACEBOOK_TERMINAL_MARKERS,
    GOOGLE,
    GOOGLE_FAMILY,
    INSTAGRAM,
    META,
    PlatformConfig,
    PlatformRegistry,
)
from ads_auth.auth.probe import AccountProbe, ProbeResult
from ads_auth.auth.refresher import TokenRefresher
from ads_auth.auth.state import StateCodec
from ads_auth.auth.token_store import InMemoryTokenStore, TokenRecord
from ads_auth.utils.retry import RetryPolicy, linear_backoff

GOOGLE_TOKEN_URL = "https://oauth2.example.test/token"
FACEBOOK_TOKEN_URL = "https://graph.example.test/v24.0/oauth/access_token"


def _facebook_family(platform_id: str, token_owner=None) -> PlatformConfig:
    return PlatformConfig(
        platform_id=platform_id,
        family=FACEBOOK_FAMILY,
        client_id="fb-app-id",
        client_secret="fb-app-secret",
        redirect_uri="https://app.example.test/auth/facebook/callback",
        scopes=("ads_management", "ads_read"),
        authorization_endpoint="https://www.facebook.example.test/v24.0/dialog/oauth",
        token_endpoint=FACEBOOK_TOKEN_URL,
        token_owner=token_owner,
        terminal_error_markers=FACEBOOK_TERMINAL_MARKERS,
    )


@pytest.fixture
def registry() -> PlatformRegistry:
    """Registry with fully configured test credentials for every platform."""
    return PlatformRegistry([
        PlatformConfig(
            platform_id=GOOGLE,
            family=GOOGLE_FAMILY,
            client_id="google-client-id",
            client_secret="google-client-secret",
            redirect_uri="https://app.example.test/auth/google/callback",
            scopes=("openid", "email", "https://www.googleapis.com/auth/adwords"),
            authorization_endpoint="https://accounts.example.test/o/oauth2/auth",
            token_endpoint=GOOGLE_TOKEN_URL,
        ),
        _facebook_family(FACEBOOK),
        _facebook_family(META, token_owner=FACEBOOK),
        _facebook_family(INSTAGRAM, token_owner=FACEBOOK),
    ])


@pytest.fixture
def store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def http():
    """Provider HTTP client double; no test talks to the network."""
    return AsyncMock(spec=ProviderHTTPClient)


@pytest.fixture
def state_codec() -> StateCodec:
    return StateCodec("test-state-secret", ttl_minutes=10)


@pytest.fixture
def sleep():
    """Replaces asyncio.sleep in retry policies so backoff is instant."""
    return AsyncMock()


@pytest.fixture
def retry_policy(sleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0), sleep=sleep)


@pytest.fixture
def exchanger(registry, http) -> TokenExchanger:
    return TokenExchanger(registry, http)


@pytest.fixture
def refresher(registry, store, exchanger, retry_policy) -> TokenRefresher:
    return TokenRefresher(registry, store, exchanger, retry_policy=retry_policy, buffer_minutes=10)


@pytest.fixture
def probe():
    mock_probe = AsyncMock(spec=AccountProbe)
    mock_probe.probe.return_value = ProbeResult(
        user_info={"id": "provider-user-1", "email": "ads@example.test"},
        permissions=["ads_read"],
    )
    return mock_probe


@pytest.fixture
def authenticator(registry, store, state_codec, exchanger, refresher, probe, http) -> AdPlatformAuthenticator:
    return AdPlatformAuthenticator(
        registry=registry,
        store=store,
        state_codec=state_codec,
        exchanger=exchanger,
        refresher=refresher,
        probe=probe,
        http=http,
    )


@pytest.fixture
def make_record():
    """Factory for token records expiring ``expires_in`` from now."""
    def factory(
        user_id: str = "user-1",
        platform: str = GOOGLE,
        expires_in=timedelta(hours=1),
        refresh_token="refresh-token-1",
        **kwargs,
    ) -> TokenRecord:
        expires_at = kwargs.pop(
            "expires_at",
            datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
        )
        return TokenRecord(
            user_id=user_id,
            platform=platform,
            access_token=kwargs.pop("access_token", f"{platform}-access-token"),
            refresh_token=refresh_token,
            expires_at=expires_at,
            **kwargs,
        )
    return factory


@pytest.fixture
def provider_error():
    """Factory for provider failures as raised by ProviderHTTPClient."""
    def factory(
        error_code=None,
        description=None,
        status=400,
        timed_out=False,
    ) -> ProviderHTTPError:
        if timed_out:
            return ProviderHTTPError("Request timed out after 10s", timed_out=True)
        return ProviderHTTPError(
            f"HTTP {status}: {description or error_code}",
            status=status,
            error_code=error_code,
            description=description,
        )
    return factory
