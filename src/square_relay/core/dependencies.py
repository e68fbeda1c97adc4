"""
Builders for the collaborators handed to the app factory.
"""

import logging
from functools import lru_cache
from typing import Optional

from square_relay.core.database import Base, create_db_engine, create_session_factory
from square_relay.core.oauth import SquareOAuth, create_square_client
from square_relay.core.settings import RelaySettings, TokenStoreBackend
from square_relay.stores.base import TokenStore
from square_relay.stores.firebase import FirebaseTokenStore, initialize_firebase_app
from square_relay.stores.sql import SqlTokenStore

# Setup logger
logger = logging.getLogger("dependencies")


@lru_cache()
def get_settings() -> RelaySettings:
    """
    Get the settings for the relay, read once from the environment and `.env`.
    """
    settings = RelaySettings()
    logger.info(
        "get_settings returning RelaySettings with environment: %s, token store: %s",
        settings.environment,
        settings.token_store.value,
    )
    return settings


def build_token_store(settings: RelaySettings) -> Optional[TokenStore]:
    """
    Token store selected by `settings.token_store`.

    Raises:
        ConfigurationError: If the selected backend is missing credentials.
    """
    if settings.token_store == TokenStoreBackend.FIREBASE:
        app = initialize_firebase_app(settings.firebase_credentials, settings.firebase_database_url)
        return FirebaseTokenStore(app, settings.store_path_template)
    elif settings.token_store == TokenStoreBackend.SQL:
        engine = create_db_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        return SqlTokenStore(create_session_factory(engine))
    logger.warning("No token store configured; tokens will not be persisted")
    return None


def build_square_oauth(settings: RelaySettings) -> SquareOAuth:
    """
    Square OAuth wrapper for the configured environment.
    """
    if not settings.client_id or not settings.client_secret:
        logger.warning("SQUARE_APP_ID or SQUARE_APP_SECRET is not set")
    return SquareOAuth(create_square_client(settings), settings)
