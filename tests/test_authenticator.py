"""Tests for the AdPlatformAuthenticator facade."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from ads_auth.auth.authenticator import STILL_VALID, AdPlatformAuthenticator
from ads_auth.auth.errors import (
    ConfigurationError,
    NotAuthenticatedError,
    ReauthRequiredError,
    StateValidationError,
    TokenExchangeError,
)
from ads_auth.auth.normalize import NormalizedToken
from ads_auth.auth.platforms import FACEBOOK, GOOGLE, INSTAGRAM, META
from ads_auth.auth.probe import ProbeResult
from ads_auth.auth.token_store import AdAccount

from conftest import FACEBOOK_TOKEN_URL, GOOGLE_TOKEN_URL


def state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def route_by_url(responses):
    """post_form side effect answering per token endpoint."""
    async def post_form(url, data):
        response = responses[url]
        if isinstance(response, Exception):
            raise response
        return response
    return post_form


class TestGetValidAccessToken:
    """Tests for get_valid_access_token."""

    @pytest.mark.asyncio
    async def test_not_authenticated_without_http(self, authenticator, http):
        """A user without a token gets NotAuthenticatedError and no request is made."""
        with pytest.raises(NotAuthenticatedError) as exc_info:
            await authenticator.get_valid_access_token("user-1", GOOGLE)

        assert exc_info.value.platform == GOOGLE
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_valid_token_returned_unchanged(self, authenticator, store, http, make_record):
        await store.upsert(make_record(expires_in=timedelta(hours=1)))

        assert await authenticator.get_valid_access_token("user-1", GOOGLE) == "google-access-token"
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self, authenticator, store, http, make_record):
        await store.upsert(make_record(expires_in=timedelta(minutes=5)))
        http.post_form.return_value = {"access_token": "fresh", "expires_in": 3600}

        assert await authenticator.get_valid_access_token("user-1", GOOGLE) == "fresh"
        http.post_form.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_failure_propagates(self, authenticator, store, http, make_record, provider_error):
        await store.upsert(make_record(expires_in=timedelta(minutes=5)))
        http.post_form.side_effect = provider_error("invalid_grant")

        with pytest.raises(ReauthRequiredError):
            await authenticator.get_valid_access_token("user-1", GOOGLE)

    @pytest.mark.asyncio
    async def test_flagged_token(self, authenticator, store, http, make_record):
        await store.upsert(make_record(needs_reauth=True))

        with pytest.raises(ReauthRequiredError) as exc_info:
            await authenticator.get_valid_access_token("user-1", GOOGLE)

        assert exc_info.value.reason == ReauthRequiredError.FLAGGED
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_instagram_uses_facebook_token(self, authenticator, store, make_record):
        await store.upsert(make_record(platform=FACEBOOK))

        assert await authenticator.get_valid_access_token("user-1", INSTAGRAM) == "facebook-access-token"

    @pytest.mark.asyncio
    async def test_unknown_platform(self, authenticator):
        with pytest.raises(ConfigurationError):
            await authenticator.get_valid_access_token("user-1", "tiktok")


class TestAuthStatus:
    """Tests for is_authenticated and get_user_auth_status."""

    @pytest.mark.asyncio
    async def test_partially_authenticated_case(self, authenticator, store, make_record):
        await store.upsert(make_record(platform=GOOGLE))

        status = await authenticator.is_authenticated("user-1", "SOCIAL_MEDIA_SUITE")

        assert not status.is_fully_authenticated
        assert status.platforms[GOOGLE].authenticated
        assert not status.platforms[FACEBOOK].authenticated
        assert not status.platforms[INSTAGRAM].authenticated

    @pytest.mark.asyncio
    async def test_fully_authenticated_case(self, authenticator, store, make_record):
        """Connecting Facebook also covers Instagram."""
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(minutes=3)))
        await store.upsert(make_record(platform=FACEBOOK))

        status = await authenticator.is_authenticated("user-1", "SOCIAL_MEDIA_SUITE")

        assert status.is_fully_authenticated
        assert status.needs_refresh
        assert status.platforms[GOOGLE].needs_refresh
        assert not status.platforms[INSTAGRAM].needs_refresh
        assert status.to_dict()["platforms"][INSTAGRAM]["authenticated"] is True

    @pytest.mark.asyncio
    async def test_status_reports_reauth(self, authenticator, store, make_record):
        await store.upsert(make_record(platform=GOOGLE, needs_reauth=True))

        status = await authenticator.is_authenticated("user-1", "GOOGLE_ADS_ONLY")

        assert status.needs_reauth == [GOOGLE]

    @pytest.mark.asyncio
    async def test_unknown_case(self, authenticator):
        with pytest.raises(ConfigurationError):
            await authenticator.is_authenticated("user-1", "NOPE")

    @pytest.mark.asyncio
    async def test_user_auth_status(self, authenticator, store, http, make_record):
        """The dashboard view covers every platform and never refreshes."""
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(minutes=1)))
        await store.upsert(make_record(platform=FACEBOOK, needs_reauth=True))

        status = await authenticator.get_user_auth_status("user-1")

        assert set(status.platforms) == {GOOGLE, FACEBOOK, META, INSTAGRAM}
        assert status.authenticated_count == 4
        assert status.needs_refresh_count == 1
        assert status.needs_reauth_count == 3
        assert status.to_dict()["summary"]["total_platforms"] == 4
        http.post_form.assert_not_awaited()


class TestRefreshAllUserTokens:
    """Tests for batch refresh."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, authenticator, store, http, make_record, provider_error):
        """A terminal Google error does not stop the Facebook refresh."""
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(minutes=1)))
        await store.upsert(make_record(platform=FACEBOOK, expires_in=timedelta(minutes=1)))
        http.post_form.side_effect = route_by_url({
            GOOGLE_TOKEN_URL: provider_error("invalid_grant"),
            FACEBOOK_TOKEN_URL: {"access_token": "EAAnew", "expires_in": 5184000},
        })

        result = await authenticator.refresh_all_user_tokens("user-1")

        assert set(result.errors) == {GOOGLE}
        assert result.reauth_required == [GOOGLE]
        for platform_id in (FACEBOOK, META, INSTAGRAM):
            assert isinstance(result.results[platform_id], NormalizedToken)
            assert result.results[platform_id].access_token == "EAAnew"
        # One shared Facebook record, one request
        assert sum(1 for call in http.post_form.await_args_list if call.args[0] == FACEBOOK_TOKEN_URL) == 1

    @pytest.mark.asyncio
    async def test_skips_and_still_valid(self, authenticator, store, http, make_record):
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(hours=2)))

        result = await authenticator.refresh_all_user_tokens("user-1")

        assert result.results == {GOOGLE: STILL_VALID}
        assert sorted(result.skipped) == [FACEBOOK, INSTAGRAM, META]
        assert result.errors == {}
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_subset_of_platforms(self, authenticator, store, http, make_record):
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(minutes=1)))
        await store.upsert(make_record(platform=FACEBOOK, expires_in=timedelta(minutes=1)))
        http.post_form.return_value = {"access_token": "new", "expires_in": 3600}

        result = await authenticator.refresh_all_user_tokens("user-1", [INSTAGRAM])

        assert list(result.results) == [INSTAGRAM]
        assert result.refreshed == [INSTAGRAM]
        http.post_form.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_platform_list_refreshes_nothing(self, authenticator, store, http, make_record):
        """An explicit empty selection is not widened to every platform."""
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(minutes=1)))

        result = await authenticator.refresh_all_user_tokens("user-1", [])

        assert result.results == {}
        assert result.errors == {}
        assert result.skipped == []
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wider_buffer_refreshes_token_outside_default_buffer(self, authenticator, store, http, make_record):
        """A token 20 minutes from expiry is refreshed when the caller asks for a 40 minute buffer."""
        await store.upsert(make_record(platform=GOOGLE, expires_in=timedelta(minutes=20)))
        http.post_form.return_value = {"access_token": "ya29-new", "expires_in": 3600}

        default = await authenticator.refresh_all_user_tokens("user-1", [GOOGLE])
        widened = await authenticator.refresh_all_user_tokens("user-1", [GOOGLE], buffer_minutes=40)

        assert default.results == {GOOGLE: STILL_VALID}
        assert widened.refreshed == [GOOGLE]
        http.post_form.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_platform_is_reported(self, authenticator):
        result = await authenticator.refresh_all_user_tokens("user-1", ["tiktok"])

        assert "tiktok" in result.errors

    @pytest.mark.asyncio
    async def test_flagged_record_is_reported(self, authenticator, store, http, make_record):
        await store.upsert(make_record(platform=GOOGLE, needs_reauth=True))

        result = await authenticator.refresh_all_user_tokens("user-1", [GOOGLE])

        assert result.reauth_required == [GOOGLE]
        assert "reconnect" in result.errors[GOOGLE]
        http.post_form.assert_not_awaited()


class TestHandleCallback:
    """Tests for handle_callback."""

    @pytest.mark.asyncio
    async def test_success_stores_token(self, authenticator, store, http, probe):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        http.post_form.return_value = {
            "access_token": "ya29", "refresh_token": "1//r", "expires_in": 3600, "scope": "openid email",
        }

        result = await authenticator.handle_callback(GOOGLE, "auth-code", state, "user-1")

        assert result.token.access_token == "ya29"
        assert result.user_info["email"] == "ads@example.test"
        assert result.permissions == ["ads_read"]
        assert not result.degraded
        stored = await store.find_by_user_and_platform("user-1", GOOGLE)
        assert stored.access_token == "ya29"
        assert stored.refresh_token == "1//r"
        probe.probe.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tampered_state_rejected_before_network(self, authenticator, store, http, probe):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        payload, signature = state.split(".")

        with pytest.raises(StateValidationError):
            await authenticator.handle_callback(GOOGLE, "auth-code", f"{payload}x.{signature}", "user-1")

        http.post_form.assert_not_awaited()
        probe.probe.assert_not_awaited()
        assert await store.find_by_user_and_platform("user-1", GOOGLE) is None

    @pytest.mark.asyncio
    async def test_state_of_other_user(self, authenticator, http):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))

        with pytest.raises(StateValidationError):
            await authenticator.handle_callback(GOOGLE, "auth-code", state, "user-2")
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replayed_state(self, authenticator, http):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        http.post_form.return_value = {"access_token": "ya29", "expires_in": 3600}

        await authenticator.handle_callback(GOOGLE, "code-1", state, "user-1")
        with pytest.raises(StateValidationError):
            await authenticator.handle_callback(GOOGLE, "code-2", state, "user-1")

        assert http.post_form.await_count == 1

    @pytest.mark.asyncio
    async def test_state_for_other_platform(self, authenticator, http):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))

        with pytest.raises(StateValidationError):
            await authenticator.handle_callback(FACEBOOK, "auth-code", state, "user-1")
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_google_state_without_prefix_at_facebook_callback(self, authenticator, store, http):
        """Stripping the platform prefix does not let a Google state through another callback."""
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        bare = state.split(":", 1)[1]

        with pytest.raises(StateValidationError):
            await authenticator.handle_callback(FACEBOOK, "auth-code", bare, "user-1")
        http.post_form.assert_not_awaited()
        assert await store.find_by_user_and_platform("user-1", FACEBOOK) is None

    @pytest.mark.asyncio
    async def test_google_state_with_swapped_prefix_at_facebook_callback(self, authenticator, http):
        """Rewriting the prefix to facebook does not change the signed platform."""
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        swapped = f"{FACEBOOK}:{state.split(':', 1)[1]}"

        with pytest.raises(StateValidationError):
            await authenticator.handle_callback(FACEBOOK, "auth-code", swapped, "user-1")
        http.post_form.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exchange_failure(self, authenticator, store, http, provider_error):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        http.post_form.side_effect = provider_error("invalid_grant", "Bad code")

        with pytest.raises(TokenExchangeError):
            await authenticator.handle_callback(GOOGLE, "auth-code", state, "user-1")
        assert await store.find_by_user_and_platform("user-1", GOOGLE) is None

    @pytest.mark.asyncio
    async def test_callback_clears_reauth_flag(self, authenticator, store, http, make_record):
        """A new consent flow is the way out of NEEDS_REAUTH."""
        original = await store.upsert(make_record(platform=FACEBOOK, needs_reauth=True))
        state = state_from(authenticator.build_auth_url(INSTAGRAM, "user-1"))
        http.post_form.return_value = {"access_token": "EAAnew", "expires_in": 5184000}

        await authenticator.handle_callback(INSTAGRAM, "code", state, "user-1")

        stored = await store.find_by_user_and_platform("user-1", FACEBOOK)
        assert stored.id == original.id
        assert not stored.needs_reauth
        assert stored.access_token == "EAAnew"
        assert await authenticator.get_valid_access_token("user-1", INSTAGRAM) == "EAAnew"

    @pytest.mark.asyncio
    async def test_degraded_probe(self, authenticator, store, http, probe):
        """Probe failures are reported, the token stays stored."""
        state = state_from(authenticator.build_auth_url(FACEBOOK, "user-1"))
        http.post_form.return_value = {"access_token": "EAA", "expires_in": 3600}
        probe.probe.return_value = ProbeResult(warnings=["Could not fetch Facebook user info: HTTP 500"])

        result = await authenticator.handle_callback(FACEBOOK, "code", state, "user-1")

        assert result.degraded
        assert result.to_dict()["degraded"] is True
        assert await store.find_by_user_and_platform("user-1", FACEBOOK) is not None

    @pytest.mark.asyncio
    async def test_probe_exception_is_degraded(self, authenticator, store, http, probe):
        state = state_from(authenticator.build_auth_url(GOOGLE, "user-1"))
        http.post_form.return_value = {"access_token": "ya29", "expires_in": 3600}
        probe.probe.side_effect = RuntimeError("probe crashed")

        result = await authenticator.handle_callback(GOOGLE, "code", state, "user-1")

        assert result.degraded
        assert await store.find_by_user_and_platform("user-1", GOOGLE) is not None

    @pytest.mark.asyncio
    async def test_ad_accounts_are_stored(self, authenticator, store, http, probe):
        state = state_from(authenticator.build_auth_url(FACEBOOK, "user-1"))
        http.post_form.return_value = {"access_token": "EAA", "expires_in": 3600}
        probe.probe.return_value = ProbeResult(
            ad_accounts=[
                AdAccount(account_id="act_1", name="Main", currency="USD"),
                AdAccount(account_id="1784", name="brand", kind="instagram_business"),
            ],
            ad_accounts_complete=True,
        )

        await authenticator.handle_callback(FACEBOOK, "code", state, "user-1")

        assert [a.account_id for a in await authenticator.list_ad_accounts("user-1", FACEBOOK)] == ["act_1"]
        assert [a.account_id for a in await authenticator.list_ad_accounts("user-1", INSTAGRAM)] == ["1784"]
        assert await authenticator.has_connected_accounts("user-1", META)
        assert not await authenticator.has_connected_accounts("user-1", GOOGLE)

    @pytest.mark.asyncio
    async def test_incomplete_account_list_keeps_previous(self, authenticator, store, http, probe, make_record):
        await store.upsert(make_record(platform=FACEBOOK))
        await store.replace_ad_accounts("user-1", FACEBOOK, [AdAccount(account_id="act_old")])
        state = state_from(authenticator.build_auth_url(FACEBOOK, "user-1"))
        http.post_form.return_value = {"access_token": "EAA", "expires_in": 3600}
        probe.probe.return_value = ProbeResult(warnings=["Could not fetch Facebook ad accounts: timeout"])

        await authenticator.handle_callback(FACEBOOK, "code", state, "user-1")

        assert [a.account_id for a in await store.list_ad_accounts("user-1", FACEBOOK)] == ["act_old"]

    @pytest.mark.asyncio
    async def test_long_lived_exchange(self, authenticator, store, http):
        authenticator.long_lived_exchange = True
        state = state_from(authenticator.build_auth_url(FACEBOOK, "user-1"))
        http.post_form.side_effect = [
            {"access_token": "EAAshort", "expires_in": 3600},
            {"access_token": "EAAlong", "expires_in": 5184000},
        ]

        result = await authenticator.handle_callback(FACEBOOK, "code", state, "user-1")

        assert result.token.access_token == "EAAlong"
        assert (await store.find_by_user_and_platform("user-1", FACEBOOK)).access_token == "EAAlong"

    @pytest.mark.asyncio
    async def test_long_lived_exchange_failure_keeps_short_token(self, authenticator, store, http, provider_error):
        authenticator.long_lived_exchange = True
        state = state_from(authenticator.build_auth_url(FACEBOOK, "user-1"))
        http.post_form.side_effect = [
            {"access_token": "EAAshort", "expires_in": 3600},
            provider_error("190", "Invalid OAuth access token"),
        ]

        result = await authenticator.handle_callback(FACEBOOK, "code", state, "user-1")

        assert result.token.access_token == "EAAshort"
        assert result.degraded


class TestAccountManagement:
    """Tests for disconnect and user deletion."""

    @pytest.mark.asyncio
    async def test_disconnect(self, authenticator, store, make_record):
        await store.upsert(make_record(platform=GOOGLE))

        assert await authenticator.disconnect("user-1", GOOGLE)
        assert not await authenticator.disconnect("user-1", GOOGLE)
        with pytest.raises(NotAuthenticatedError):
            await authenticator.get_valid_access_token("user-1", GOOGLE)

    @pytest.mark.asyncio
    async def test_delete_user(self, authenticator, store, make_record):
        await store.upsert(make_record(platform=GOOGLE))
        await store.upsert(make_record(platform=FACEBOOK))
        await store.upsert(make_record(user_id="user-2", platform=GOOGLE))

        assert await authenticator.delete_user("user-1") == 2
        assert await store.find_by_user_and_platform("user-2", GOOGLE) is not None


class TestFromSettings:
    """Tests for the default wiring."""

    @pytest.mark.asyncio
    async def test_from_settings(self, store, http):
        authenticator = AdPlatformAuthenticator.from_settings(store=store, http=http)

        assert authenticator.store is store
        assert set(authenticator.registry.supported_platforms()) == {GOOGLE, FACEBOOK, META, INSTAGRAM}

        async with authenticator:
            pass
        http.close.assert_awaited_once()
