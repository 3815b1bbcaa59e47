"""
Error taxonomy for the OAuth token lifecycle.

Only ``ReauthRequiredError`` and ``NotAuthenticatedError`` are meant to be
shown to end users ("please connect / reconnect <platform>"); the others are
diagnostic. Provider-specific error payloads never leave the auth package:
they are converted into one of these classes first.
"""
from typing import Any, Dict, Optional


class AuthError(Exception):
    """Base class for every auth lifecycle error."""

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform


class ConfigurationError(AuthError):
    """Unknown platform or auth case, or missing client credentials."""


class MissingCredentialsError(ConfigurationError):
    """Client id, secret or redirect URI of a platform is not configured."""


class StateValidationError(AuthError):
    """OAuth ``state`` failed verification (tampered, stale, replayed, wrong user)."""


class TokenExchangeError(AuthError):
    """The provider rejected an authorization code exchange."""

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        provider_message: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, platform)
        self.provider_message = provider_message
        self.status = status


class NotAuthenticatedError(AuthError):
    """No token is stored for the user on this platform."""

    def __init__(self, platform: str, user_id: Optional[str] = None):
        super().__init__(f"Not authenticated with {platform}. Please connect your {platform} account.", platform)
        self.user_id = user_id


class RefreshError(AuthError):
    """A single refresh attempt failed."""

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        provider_message: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, platform)
        self.provider_message = provider_message
        self.status = status


class TransientRefreshError(RefreshError):
    """Timeout, 5xx or network failure; worth retrying."""


class TerminalRefreshError(RefreshError):
    """The provider says the refresh token is dead (``invalid_grant`` and friends)."""


class ReauthRequiredError(AuthError):
    """
    The user must go through the consent flow again.

    ``reason`` is one of ``no_refresh_token``, ``flagged``, ``terminal`` or
    ``retries_exhausted``.
    """

    NO_REFRESH_TOKEN = "no_refresh_token"
    FLAGGED = "flagged"
    TERMINAL = "terminal"
    RETRIES_EXHAUSTED = "retries_exhausted"

    def __init__(self, platform: str, reason: str, detail: Optional[str] = None):
        super().__init__(f"Please reconnect your {platform} account.", platform)
        self.reason = reason
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "reauth_required",
            "platform": self.platform,
            "reason": self.reason,
            "message": self.message,
        }


class ProviderHTTPError(Exception):
    """
    Raw failure talking to a provider endpoint.

    Internal to the auth package: the exchanger, refresher and probe translate
    it into the taxonomy above.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error_code: Optional[str] = None,
        description: Optional[str] = None,
        body: Optional[str] = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.error_code = error_code
        self.description = description
        self.body = body
        self.timed_out = timed_out

    @property
    def provider_message(self) -> str:
        """Best human-readable message the provider gave us."""
        if self.error_code and self.description:
            return f"{self.error_code}: {self.description}"
        return self.description or self.error_code or self.body or str(self)
