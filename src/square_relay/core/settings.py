"""
Settings for the Square OAuth relay.
"""

from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict

SQUARE_VERSION = "2025-03-19"
SQUARE_BASE_URL_SANDBOX = "https://connect.squareupsandbox.com"
SQUARE_BASE_URL_PRODUCTION = "https://connect.squareup.com"
SQUARE_OAUTH_REDIRECT_URI = "http://localhost:8080/api/square/oauth/callback"
APP_REDIRECT_URI = "blucollarbookingsflutterapp://square-success"
DEFAULT_STORE_PATH = "users/companies/{tenant_id}/companySettings"


class TokenStoreBackend(Enum):
    """
    Persistence backend for tenant tokens.
    """

    FIREBASE = "firebase"
    SQL = "sql"
    NONE = "none"


class RelaySettings(BaseSettings):
    """
    Settings for the relay process.

    Built once at startup and handed to the app factory; nothing in the
    package reads the environment on import.
    """

    square_app_id: str = ""
    square_app_secret: str = ""
    square_redirect_uri: str = SQUARE_OAUTH_REDIRECT_URI
    square_scopes: str = "MERCHANT_PROFILE_READ PAYMENTS_READ PAYMENTS_WRITE"
    environment: str = "production"

    app_redirect_uri: str = APP_REDIRECT_URI
    embed_tokens_in_redirect: bool = False
    require_tenant: bool = True

    token_store: TokenStoreBackend = TokenStoreBackend.FIREBASE
    firebase_credentials: str = ""
    firebase_database_url: str = ""
    store_path_template: str = DEFAULT_STORE_PATH
    database_url: str = "sqlite:///./square_relay.db"

    refresh_single_flight: bool = False
    log_tokens: bool = False

    static_dir: str = ""
    cors_origins: list[str] = ["*"]
    port: int = 8080

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def client_id(self) -> str:
        """OAuth client id registered with Square."""
        return self.square_app_id

    @property
    def client_secret(self) -> str:
        """OAuth client secret registered with Square."""
        return self.square_app_secret

    @property
    def square_base_url(self) -> str:
        """
        Returns the Square base URL depending on the environment.
        """
        base_urls = {
            "sandbox": SQUARE_BASE_URL_SANDBOX,
            "production": SQUARE_BASE_URL_PRODUCTION,
        }
        try:
            return base_urls[self.environment]
        except KeyError as e:
            raise ValueError(f"Invalid environment: {self.environment}") from e
