"""
Authorization-code and refresh-token exchanges against provider token endpoints.
"""
from typing import Dict

from ..utils.logger import logger
from .errors import ProviderHTTPError, TokenExchangeError
from .http import ProviderHTTPClient
from .normalize import MalformedTokenResponse, NormalizedToken, normalize_token_response
from .platforms import PlatformRegistry


class TokenExchanger:
    """Performs the token endpoint calls and normalizes the replies."""

    def __init__(self, registry: PlatformRegistry, http: ProviderHTTPClient):
        self.registry = registry
        self.http = http

    async def exchange_code(self, platform_id: str, code: str) -> NormalizedToken:
        """
        Exchange an authorization code for tokens.

        Authorization codes are single-use, so a failed exchange is never
        retried; the caller has to restart the consent flow.

        Args:
            platform_id: Platform that issued the code
            code: Authorization code from the callback

        Returns:
            NormalizedToken

        Raises:
            ConfigurationError: Unknown platform or missing credentials
            TokenExchangeError: Provider rejected the code, timed out, or
                returned an unusable body
        """
        config = self.registry.get_config(platform_id)
        config.ensure_credentials()
        if not code:
            raise TokenExchangeError("Missing authorization code", platform_id)

        data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": config.redirect_uri,
        }

        try:
            payload = await self.http.post_form(config.token_endpoint, data)
            token = normalize_token_response(config.family, payload)
        except ProviderHTTPError as e:
            logger.error(f"Token exchange failed for {platform_id}: {e.provider_message}")
            message = "Token exchange request timed out" if e.timed_out else f"Token exchange failed: {e}"
            raise TokenExchangeError(
                message, platform_id, provider_message=e.provider_message, status=e.status
            ) from e
        except MalformedTokenResponse as e:
            logger.error(f"Token exchange for {platform_id} returned no access token")
            raise TokenExchangeError(f"Token exchange failed: {e}", platform_id, provider_message=str(e)) from e

        logger.info(
            f"Exchanged authorization code for {platform_id} token "
            f"(refresh token: {token.has_refresh_token}, expires: {token.expires_at})"
        )
        return token

    def build_refresh_request(self, platform_id: str, refresh_token: str) -> Dict[str, str]:
        """Form fields of a refresh-token grant for a platform."""
        config = self.registry.get_config(platform_id)
        data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if config.is_facebook_family:
            data["fb_exchange_token"] = refresh_token
        return data

    async def request_refresh(self, platform_id: str, refresh_token: str) -> NormalizedToken:
        """
        One refresh-token grant attempt, without retries or classification.

        Raises:
            ProviderHTTPError: Any transport, HTTP or OAuth error
            MalformedTokenResponse: 2xx body without an access token
        """
        config = self.registry.get_config(platform_id)
        config.ensure_credentials()
        payload = await self.http.post_form(
            config.token_endpoint, self.build_refresh_request(platform_id, refresh_token)
        )
        return normalize_token_response(config.family, payload)

    async def exchange_long_lived(self, platform_id: str, access_token: str) -> NormalizedToken:
        """
        Exchange a short-lived Graph API user token for a long-lived one.

        Only meaningful for the Facebook family.

        Raises:
            TokenExchangeError: If the upgrade is rejected
        """
        config = self.registry.get_config(platform_id)
        config.ensure_credentials()
        if not config.is_facebook_family:
            raise TokenExchangeError(f"Long-lived exchange is not supported for {platform_id}", platform_id)

        data = {
            "grant_type": "fb_exchange_token",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "fb_exchange_token": access_token,
        }
        try:
            payload = await self.http.post_form(config.token_endpoint, data)
            token = normalize_token_response(config.family, payload)
        except ProviderHTTPError as e:
            logger.error(f"Long token exchange error for {platform_id}: {e.provider_message}")
            raise TokenExchangeError(
                f"Long-lived token exchange failed: {e}",
                platform_id,
                provider_message=e.provider_message,
                status=e.status,
            ) from e
        except MalformedTokenResponse as e:
            raise TokenExchangeError(f"Long-lived token exchange failed: {e}", platform_id) from e

        logger.info(f"Got long-lived {platform_id} token, expires at {token.expires_at}")
        return token
