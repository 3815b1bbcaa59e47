"""
Authentication and OAuth modules for the ads platform auth service.
"""
from .authenticator import (
    AdPlatformAuthenticator,
    BatchRefreshResult,
    CallbackResult,
    CaseAuthStatus,
    PlatformStatus,
    UserAuthStatus,
)
from .errors import (
    AuthError,
    ConfigurationError,
    MissingCredentialsError,
    NotAuthenticatedError,
    ReauthRequiredError,
    RefreshError,
    StateValidationError,
    TerminalRefreshError,
    TokenExchangeError,
    TransientRefreshError,
)
from .normalize import NormalizedToken
from .platforms import PlatformConfig, PlatformRegistry
from .token_store import AdAccount, InMemoryTokenStore, SQLAlchemyTokenStore, TokenRecord, TokenStore

__all__ = [
    "AdPlatformAuthenticator",
    "BatchRefreshResult",
    "CallbackResult",
    "CaseAuthStatus",
    "PlatformStatus",
    "UserAuthStatus",
    "AuthError",
    "ConfigurationError",
    "MissingCredentialsError",
    "NotAuthenticatedError",
    "ReauthRequiredError",
    "RefreshError",
    "StateValidationError",
    "TerminalRefreshError",
    "TokenExchangeError",
    "TransientRefreshError",
    "NormalizedToken",
    "PlatformConfig",
    "PlatformRegistry",
    "AdAccount",
    "InMemoryTokenStore",
    "SQLAlchemyTokenStore",
    "TokenRecord",
    "TokenStore",
]
