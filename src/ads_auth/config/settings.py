"""
Configuration settings for the ads platform auth service.
"""
import os
from typing import List, Optional
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
# This searches for .env in current directory and parent directories
load_dotenv()


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        # Environment
        self.environment: str = os.getenv("ENVIRONMENT", "development")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Google OAuth Configuration (Google Ads + YouTube)
        self.google_client_id: Optional[str] = os.getenv("GOOGLE_CLIENT_ID")
        self.google_client_secret: Optional[str] = os.getenv("GOOGLE_CLIENT_SECRET")
        self.google_redirect_uri: Optional[str] = os.getenv("GOOGLE_REDIRECT_URI")
        self.google_ads_developer_token: str = os.getenv("GOOGLE_ADS_DEVELOPER_TOKEN", "")
        self.google_ads_api_version: str = os.getenv("GOOGLE_ADS_API_VERSION", "v16")

        # Facebook OAuth Configuration (shared by Facebook, Instagram and Meta)
        self.fb_app_id: Optional[str] = os.getenv("FB_APP_ID")
        self.fb_app_secret: Optional[str] = os.getenv("FB_APP_SECRET")
        self.fb_redirect_uri: Optional[str] = os.getenv("FB_REDIRECT_URI")
        self.fb_api_version: str = os.getenv("FB_API_VERSION", "v24.0")
        # Upgrade short-lived tokens returned by the code exchange to 60-day tokens
        self.fb_long_lived_exchange: bool = os.getenv("FB_LONG_LIVED_EXCHANGE", "false").lower() == "true"

        # OAuth state (CSRF protection)
        self.oauth_state_ttl_minutes: int = int(os.getenv("OAUTH_STATE_TTL_MINUTES", "10"))
        self.oauth_state_secret: Optional[str] = os.getenv("OAUTH_STATE_SECRET")

        # Outbound HTTP timeout for token endpoints (in seconds)
        self.oauth_http_timeout: float = float(os.getenv("OAUTH_HTTP_TIMEOUT", "10"))

        # Token refresh policy
        self.token_refresh_buffer_minutes: int = int(os.getenv("TOKEN_REFRESH_BUFFER_MINUTES", "10"))
        self.token_refresh_max_attempts: int = int(os.getenv("TOKEN_REFRESH_MAX_ATTEMPTS", "3"))
        self.token_refresh_retry_delay: float = float(os.getenv("TOKEN_REFRESH_RETRY_DELAY", "1.0"))
        self.token_refresh_sweep_minutes: int = int(os.getenv("TOKEN_REFRESH_SWEEP_MINUTES", "30"))

        # Token Encryption
        self.token_encryption_key: Optional[str] = os.getenv("TOKEN_ENCRYPTION_KEY")
        # If no key provided, use a local key (for development only)
        if not self.token_encryption_key:
            self.token_encryption_key = os.getenv("TOKEN_ENCRYPTION_KEY_LOCAL", "dev-key-change-in-production")

        # Database Configuration
        self.database_url: str = os.getenv(
            "DATABASE_URL",
            f"sqlite:///{Path.home()}/.ads-auth/tokens.db"
        )

        # Web Server Configuration
        self.web_server_host: str = os.getenv("WEB_SERVER_HOST", "0.0.0.0")
        self.web_server_port: int = int(os.getenv("WEB_SERVER_PORT", "8000"))

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def state_secret(self) -> str:
        """Secret used to sign OAuth state values."""
        return self.oauth_state_secret or self.token_encryption_key

    def missing_credentials(self, family: str) -> List[str]:
        """
        List the environment variables still unset for a platform family.

        Args:
            family: Platform family ("google" or "facebook")

        Returns:
            Names of the missing variables (empty when fully configured)
        """
        if family == "google":
            required = {
                "GOOGLE_CLIENT_ID": self.google_client_id,
                "GOOGLE_CLIENT_SECRET": self.google_client_secret,
                "GOOGLE_REDIRECT_URI": self.google_redirect_uri,
            }
        else:
            required = {
                "FB_APP_ID": self.fb_app_id,
                "FB_APP_SECRET": self.fb_app_secret,
                "FB_REDIRECT_URI": self.fb_redirect_uri,
            }
        return [name for name, value in required.items() if not value]


# Global settings instance
settings = Settings()
