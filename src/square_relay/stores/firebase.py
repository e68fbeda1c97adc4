"""Token store backed by the Firebase Realtime Database."""

import base64
import binascii
import json
import logging
import os
from typing import Any, Optional

import anyio
import firebase_admin
from firebase_admin import credentials, db
from firebase_admin.exceptions import FirebaseError
from google.auth.exceptions import GoogleAuthError

from square_relay.core.errors import ConfigurationError, StoreError
from square_relay.core.models import TokenRecord
from square_relay.core.settings import DEFAULT_STORE_PATH
from square_relay.stores.base import clean_fields

logger = logging.getLogger("stores")

APP_NAME = "square-relay"

# db.reference rejects paths with . # $ [ ] as ValueError; revoked or expired
# service-account keys surface as GoogleAuthError from the authorized session.
STORE_ERRORS = (FirebaseError, GoogleAuthError, ValueError)

# TokenRecord field -> key in the tenant's settings document
DOCUMENT_KEYS = {
    "access_token": "squareAccessToken",
    "refresh_token": "squareRefreshToken",
    "expires_at": "squareTokenExpiresAt",
    "merchant_id": "squareMerchantId",
}


class FirebaseTokenStore:
    """
    Keeps a tenant's tokens as named keys of its settings document.

    `upsert` issues a single `update()`, which the Realtime Database applies
    atomically, so access token, refresh token and expiry never land apart.
    """

    def __init__(self, app: firebase_admin.App, path_template: str = DEFAULT_STORE_PATH) -> None:
        self.app = app
        self.path_template = path_template

    def path_for(self, tenant_id: str) -> str:
        return self.path_template.format(tenant_id=tenant_id)

    async def get(self, tenant_id: str) -> Optional[TokenRecord]:
        path = self.path_for(tenant_id)
        try:
            reference = self._reference(path)
            data = await anyio.to_thread.run_sync(reference.get)
        except STORE_ERRORS as e:
            raise StoreError(f"Failed to read {path}: {e}") from e
        if not isinstance(data, dict):
            return None
        return TokenRecord(
            tenant_id=tenant_id,
            access_token=str(data.get(DOCUMENT_KEYS["access_token"]) or ""),
            refresh_token=str(data.get(DOCUMENT_KEYS["refresh_token"]) or ""),
            expires_at=str(data.get(DOCUMENT_KEYS["expires_at"]) or ""),
            merchant_id=data.get(DOCUMENT_KEYS["merchant_id"]),
        )

    async def upsert(self, tenant_id: str, fields: dict[str, Any]) -> None:
        values = {DOCUMENT_KEYS[name]: value for name, value in clean_fields(fields).items()}
        if not values:
            return
        path = self.path_for(tenant_id)
        logger.debug("Updating Firebase path %s with keys %s", path, sorted(values))
        try:
            reference = self._reference(path)
            await anyio.to_thread.run_sync(reference.update, values)
        except STORE_ERRORS as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    async def check_connection(self) -> bool:
        try:
            reference = self._reference("test")
            await anyio.to_thread.run_sync(reference.set, {"status": "working"})
        except STORE_ERRORS as e:
            logger.error("Firebase test write failed: %s", e)
            return False
        logger.info("Firebase test write successful")
        return True

    def _reference(self, path: str) -> db.Reference:
        return db.reference(path, app=self.app)


def load_service_account(value: str) -> dict[str, Any]:
    """
    Service-account payload from a base64-encoded JSON string or a file path.

    Raises:
        ConfigurationError: If the value is empty or cannot be decoded.
    """
    if not value:
        raise ConfigurationError(
            "Firebase credentials are missing. Set FIREBASE_CREDENTIALS."
        )
    if os.path.isfile(value):
        with open(value, encoding="utf-8") as f:
            return json.load(f)
    try:
        return json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            "FIREBASE_CREDENTIALS must be a base64-encoded service account JSON or a file path"
        ) from e


def initialize_firebase_app(credentials_value: str, database_url: str) -> firebase_admin.App:
    """Initialize (or reuse) the relay's Firebase app."""
    if not database_url:
        raise ConfigurationError("FIREBASE_DATABASE_URL is not set.")
    service_account = load_service_account(credentials_value)
    try:
        return firebase_admin.get_app(APP_NAME)
    except ValueError:
        pass
    cred = credentials.Certificate(service_account)
    app = firebase_admin.initialize_app(cred, {"databaseURL": database_url}, name=APP_NAME)
    logger.info("Firebase initialized for %s", database_url)
    return app
