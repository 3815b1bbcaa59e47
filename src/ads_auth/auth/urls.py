"""
Authorization redirect URLs for the supported platforms.
"""
from typing import Dict, Optional, Sequence
from urllib.parse import urlencode

from ..utils.logger import logger
from .platforms import PlatformRegistry
from .state import StateCodec


class AuthorizationURLBuilder:
    """Builds OAuth2 authorization-code requests with signed state."""

    def __init__(self, registry: PlatformRegistry, state_codec: StateCodec):
        self.registry = registry
        self.state_codec = state_codec

    def build_auth_url(
        self,
        platform_id: str,
        user_id,
        scopes: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Generate the consent URL for one platform.

        ``access_type=offline`` and ``prompt=consent`` are always sent so the
        provider issues a refresh token on every consent, not only the first.

        Args:
            platform_id: Platform to connect
            user_id: Authenticated caller the state is bound to
            scopes: Optional scope override (defaults to the platform's scopes)

        Returns:
            Authorization URL

        Raises:
            ConfigurationError: Unknown platform or missing credentials
        """
        config = self.registry.get_config(platform_id)
        config.ensure_credentials()

        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(scopes if scopes else config.scopes),
            "response_type": "code",
            "state": f"{platform_id}:{self.state_codec.encode(user_id, platform_id)}",
            "access_type": "offline",
            "prompt": "consent",
        }
        logger.info(f"Generated {platform_id} authorization URL for user: {user_id}")
        return f"{config.authorization_endpoint}?{urlencode(params)}"

    def build_auth_urls_for_case(self, case_id: str, user_id) -> Dict[str, str]:
        """Authorization URLs for every platform in an auth case, keyed by platform."""
        return {
            platform_id: self.build_auth_url(platform_id, user_id)
            for platform_id in self.registry.list_auth_case_platforms(case_id)
        }
