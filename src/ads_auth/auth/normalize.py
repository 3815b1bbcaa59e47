"""
Canonical token shape and per-provider response normalizers.

Google and the Facebook family answer the token endpoint with different
shapes; each has its own response type that knows how to turn itself into a
``NormalizedToken``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..utils.helpers import parse_timestamp, utcnow
from .platforms import FACEBOOK_FAMILY, GOOGLE_FAMILY


class MalformedTokenResponse(ValueError):
    """A 2xx token response that does not carry a usable access token."""


@dataclass
class NormalizedToken:
    """Provider-independent token as stored and handed to callers."""

    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    id_token: Optional[str] = field(default=None, repr=False)
    obtained_at: datetime = field(default_factory=utcnow)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> Dict[str, Any]:
        """Public view without secrets."""
        return {
            "token_type": self.token_type,
            "scope": self.scope,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "obtained_at": self.obtained_at.isoformat(),
            "has_refresh_token": self.has_refresh_token,
        }


def _expiry(expires_at: Any, expires_in: Any, now: datetime) -> Optional[datetime]:
    """Absolute expiry wins; otherwise derive it from ``expires_in`` seconds."""
    absolute = parse_timestamp(expires_at)
    if absolute is not None:
        return absolute
    if expires_in in (None, ""):
        return None
    try:
        return now + timedelta(seconds=int(expires_in))
    except (TypeError, ValueError):
        return None


def _require_access_token(payload: Dict[str, Any]) -> str:
    token = payload.get("access_token")
    if not token or not isinstance(token, str):
        raise MalformedTokenResponse("Response missing access_token")
    return token


@dataclass
class GoogleTokenResponse:
    """Token endpoint reply from ``oauth2.googleapis.com``."""

    access_token: str = field(repr=False)
    expires_in: Optional[int] = None
    expires_at: Optional[Any] = None
    refresh_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None
    token_type: str = "Bearer"
    id_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GoogleTokenResponse":
        return cls(
            access_token=_require_access_token(payload),
            expires_in=payload.get("expires_in"),
            expires_at=payload.get("expires_at"),
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
            id_token=payload.get("id_token"),
        )

    def normalize(self, now: datetime) -> NormalizedToken:
        return NormalizedToken(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=_expiry(self.expires_at, self.expires_in, now),
            token_type=self.token_type,
            scope=self.scope,
            id_token=self.id_token,
            obtained_at=now,
        )


@dataclass
class FacebookTokenResponse:
    """
    Graph API ``oauth/access_token`` reply (Facebook, Instagram, Meta).

    Graph rarely returns a refresh token and never returns scopes here;
    granted permissions are probed separately.
    """

    access_token: str = field(repr=False)
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    expires_at: Optional[Any] = None
    refresh_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "FacebookTokenResponse":
        return cls(
            access_token=_require_access_token(payload),
            token_type=payload.get("token_type") or "bearer",
            expires_in=payload.get("expires_in"),
            expires_at=payload.get("expires_at"),
            refresh_token=payload.get("refresh_token"),
        )

    def normalize(self, now: datetime) -> NormalizedToken:
        return NormalizedToken(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=_expiry(self.expires_at, self.expires_in, now),
            token_type=self.token_type,
            obtained_at=now,
        )


TOKEN_RESPONSE_TYPES = {
    GOOGLE_FAMILY: GoogleTokenResponse,
    FACEBOOK_FAMILY: FacebookTokenResponse,
}


def normalize_token_response(
    family: str,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> NormalizedToken:
    """
    Normalize a successful token endpoint payload for a platform family.

    Raises:
        MalformedTokenResponse: If the payload has no access token
        KeyError: If the family is unknown
    """
    response_type = TOKEN_RESPONSE_TYPES[family]
    return response_type.from_payload(payload).normalize(now or utcnow())
