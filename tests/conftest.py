"""Shared fixtures: a mocked Square SDK client and an in-memory token store."""

from typing import Any, Iterator, Optional
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from square_relay.core.errors import StoreError
from square_relay.core.main import create_app
from square_relay.core.models import TokenRecord
from square_relay.core.oauth import SquareOAuth
from square_relay.core.settings import RelaySettings, TokenStoreBackend
from square_relay.stores.base import clean_fields

TOKEN_RESPONSE = {
    "access_token": "AT1",
    "refresh_token": "RT1",
    "expires_at": "2099-01-01T00:00:00Z",
    "merchant_id": "MLMXWMGK6R2V8",
    "token_type": "bearer",
}


def square_result(body: Optional[dict] = None, errors: Optional[list] = None) -> MagicMock:
    """Mimic the SDK's ApiResponse."""
    return MagicMock(
        is_success=MagicMock(return_value=errors is None),
        body=body or {},
        errors=errors,
    )


class InMemoryTokenStore:
    """Token store that records every upsert."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.upserts: list[tuple[str, dict[str, Any]]] = []

    async def get(self, tenant_id: str) -> Optional[TokenRecord]:
        data = self.records.get(tenant_id)
        return TokenRecord(tenant_id=tenant_id, **data) if data is not None else None

    async def upsert(self, tenant_id: str, fields: dict[str, Any]) -> None:
        self.upserts.append((tenant_id, dict(fields)))
        self.records.setdefault(tenant_id, {}).update(clean_fields(fields))

    async def check_connection(self) -> bool:
        return True


class FailingTokenStore(InMemoryTokenStore):
    """Reads work, writes fail."""

    async def upsert(self, tenant_id: str, fields: dict[str, Any]) -> None:
        self.upserts.append((tenant_id, dict(fields)))
        raise StoreError("permission denied")


@pytest.fixture
def settings() -> RelaySettings:
    """Settings for testing."""
    return RelaySettings(
        _env_file=None,
        square_app_id="test_app_id",
        square_app_secret="test_app_secret",
        square_redirect_uri="https://relay.example.com/api/square/oauth/callback",
        environment="sandbox",
        token_store=TokenStoreBackend.NONE,
    )


@pytest.fixture
def square_client() -> MagicMock:
    """Square SDK client whose token endpoint returns TOKEN_RESPONSE."""
    client = MagicMock()
    client.o_auth.obtain_token.return_value = square_result(dict(TOKEN_RESPONSE))
    return client


@pytest.fixture
def merchant_client() -> MagicMock:
    client = MagicMock()
    client.merchants.retrieve_merchant.return_value = square_result(
        {"merchant": {"id": "MLMXWMGK6R2V8", "business_name": "Test Business"}}
    )
    return client


@pytest.fixture
def merchant_tokens() -> list[str]:
    """Access tokens the merchant client factory was called with."""
    return []


@pytest.fixture
def oauth(
    square_client: MagicMock,
    merchant_client: MagicMock,
    merchant_tokens: list[str],
    settings: RelaySettings,
) -> SquareOAuth:
    def factory(access_token: str) -> MagicMock:
        merchant_tokens.append(access_token)
        return merchant_client

    return SquareOAuth(square_client, settings, merchant_client_factory=factory)


@pytest.fixture
def store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def app(settings: RelaySettings, store: InMemoryTokenStore, oauth: SquareOAuth) -> FastAPI:
    return create_app(settings, store=store, oauth=oauth)


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
