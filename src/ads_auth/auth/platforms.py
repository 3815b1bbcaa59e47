"""
Static table of supported advertising platforms and named auth cases.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigurationError, MissingCredentialsError

GOOGLE = "google"
FACEBOOK = "facebook"
META = "meta"
INSTAGRAM = "instagram"

# Platform families decide the token response shape and refresh quirks
GOOGLE_FAMILY = "google"
FACEBOOK_FAMILY = "facebook"

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"

GOOGLE_SCOPES = (
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/adwords",
    "https://www.googleapis.com/auth/youtube",
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/analytics",
    "https://www.googleapis.com/auth/analytics.readonly",
)
FACEBOOK_SCOPES = (
    "ads_management",
    "ads_read",
    "business_management",
    "instagram_basic",
    "instagram_manage_insights",
    "pages_read_engagement",
    "pages_manage_ads",
    "pages_manage_metadata",
)
META_SCOPES = (
    "ads_management",
    "ads_read",
    "business_management",
    "catalog_management",
    "pages_manage_ads",
)
INSTAGRAM_SCOPES = (
    "instagram_basic",
    "instagram_content_publish",
    "instagram_manage_insights",
    "ads_management",
    "ads_read",
    "pages_read_engagement",
)

# Graph API error code for an expired or invalidated user token
FACEBOOK_TERMINAL_MARKERS = ("190",)

AUTH_CASES: Dict[str, Tuple[str, ...]] = {
    "GOOGLE_ADS_ONLY": (GOOGLE,),
    "FACEBOOK_ADS_ONLY": (FACEBOOK,),
    "INSTAGRAM_ADS_ONLY": (INSTAGRAM,),
    "YOUTUBE_ADS_ONLY": (GOOGLE,),  # YouTube ads are managed through Google
    "SOCIAL_MEDIA_SUITE": (FACEBOOK, INSTAGRAM, GOOGLE),
    "ALL_PLATFORMS": (GOOGLE, FACEBOOK, INSTAGRAM),
    "GOOGLE_ECOSYSTEM": (GOOGLE,),
    "META_ECOSYSTEM": (FACEBOOK, INSTAGRAM),
    "SEARCH_ONLY": (GOOGLE,),
    "SOCIAL_ONLY": (FACEBOOK, INSTAGRAM),
    "CROSS_PLATFORM": (GOOGLE, FACEBOOK, INSTAGRAM),
}


@dataclass(frozen=True)
class PlatformConfig:
    """OAuth client configuration for one provider."""

    platform_id: str
    family: str
    client_id: Optional[str]
    client_secret: Optional[str] = field(repr=False)
    redirect_uri: Optional[str]
    scopes: Tuple[str, ...]
    authorization_endpoint: str
    token_endpoint: str
    token_owner: Optional[str] = None
    terminal_error_markers: Tuple[str, ...] = ()

    @property
    def storage_key(self) -> str:
        """Platform id under which this provider's token record is stored."""
        return self.token_owner or self.platform_id

    @property
    def is_facebook_family(self) -> bool:
        return self.family == FACEBOOK_FAMILY

    def ensure_credentials(self) -> None:
        """
        Fail fast when the client credentials for this platform are not set.

        Raises:
            MissingCredentialsError: If client id, secret or redirect URI is missing
        """
        missing = [
            name for name, value in (
                ("client_id", self.client_id),
                ("client_secret", self.client_secret),
                ("redirect_uri", self.redirect_uri),
            )
            if not value
        ]
        if missing:
            raise MissingCredentialsError(
                f"Missing OAuth credentials for {self.platform_id}: {', '.join(missing)}",
                self.platform_id,
            )


class PlatformRegistry:
    """Read-only lookup of platform configs and auth cases."""

    def __init__(
        self,
        platforms: Iterable[PlatformConfig],
        auth_cases: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self._platforms: Dict[str, PlatformConfig] = {p.platform_id: p for p in platforms}
        cases = AUTH_CASES if auth_cases is None else auth_cases
        self._auth_cases: Dict[str, Tuple[str, ...]] = {name: tuple(ids) for name, ids in cases.items()}

        for case_id, platform_ids in self._auth_cases.items():
            unknown = [pid for pid in platform_ids if pid not in self._platforms]
            if unknown:
                raise ConfigurationError(
                    f"Auth case {case_id} references unknown platforms: {', '.join(unknown)}"
                )
        for config in self._platforms.values():
            if config.storage_key not in self._platforms:
                raise ConfigurationError(
                    f"Platform {config.platform_id} shares tokens with unknown platform {config.storage_key}",
                    config.platform_id,
                )

    def get_config(self, platform_id: str) -> PlatformConfig:
        config = self._platforms.get(platform_id)
        if config is None:
            raise ConfigurationError(f"Unsupported platform: {platform_id}", platform_id)
        return config

    def list_auth_case_platforms(self, case_id: str) -> List[str]:
        platform_ids = self._auth_cases.get(case_id)
        if platform_ids is None:
            raise ConfigurationError(f"Invalid authentication case: {case_id}")
        return list(platform_ids)

    def supported_platforms(self) -> List[str]:
        return list(self._platforms)

    def auth_cases(self) -> List[str]:
        return list(self._auth_cases)

    def storage_key(self, platform_id: str) -> str:
        return self.get_config(platform_id).storage_key

    @classmethod
    def from_settings(cls, settings) -> "PlatformRegistry":
        """
        Build the default registry from environment-provided credentials.

        Credentials may be missing here; they are checked when a platform is
        first used so that a deployment with only Google configured still works.
        """
        fb_dialog = f"https://www.facebook.com/{settings.fb_api_version}/dialog/oauth"
        fb_token = f"https://graph.facebook.com/{settings.fb_api_version}/oauth/access_token"

        def facebook_family(platform_id: str, scopes: Tuple[str, ...]) -> PlatformConfig:
            return PlatformConfig(
                platform_id=platform_id,
                family=FACEBOOK_FAMILY,
                client_id=settings.fb_app_id,
                client_secret=settings.fb_app_secret,
                redirect_uri=settings.fb_redirect_uri,
                scopes=scopes,
                authorization_endpoint=fb_dialog,
                token_endpoint=fb_token,
                # One Meta user token serves Facebook, Instagram and Meta APIs
                token_owner=None if platform_id == FACEBOOK else FACEBOOK,
                terminal_error_markers=FACEBOOK_TERMINAL_MARKERS,
            )

        return cls([
            PlatformConfig(
                platform_id=GOOGLE,
                family=GOOGLE_FAMILY,
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                redirect_uri=settings.google_redirect_uri,
                scopes=GOOGLE_SCOPES,
                authorization_endpoint=GOOGLE_AUTHORIZATION_ENDPOINT,
                token_endpoint=GOOGLE_TOKEN_ENDPOINT,
            ),
            facebook_family(FACEBOOK, FACEBOOK_SCOPES),
            facebook_family(META, META_SCOPES),
            facebook_family(INSTAGRAM, INSTAGRAM_SCOPES),
        ])
