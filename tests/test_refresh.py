"""Tests for the token refresh middleware."""

import gc
from typing import Optional
from unittest.mock import MagicMock, patch

import anyio
import pytest
from fastapi.testclient import TestClient

from square_relay.core.errors import StoreError
from square_relay.core.main import create_app
from square_relay.core.models import TokenRecord
from square_relay.core.oauth import SquareOAuth
from square_relay.core.refresh import TokenRefresher
from square_relay.core.settings import RelaySettings
from square_relay.stores.firebase import FirebaseTokenStore

from conftest import FailingTokenStore, InMemoryTokenStore, square_result

MERCHANT = "/api/square/merchant"

REFRESHED = {
    "access_token": "AT2",
    "refresh_token": "RT2",
    "expires_at": "2099-06-01T00:00:00Z",
    "token_type": "bearer",
}


def seed(store: InMemoryTokenStore, expires_at: str) -> None:
    store.records["tenant-1"] = {
        "access_token": "AT1",
        "refresh_token": "RT1",
        "expires_at": expires_at,
        "merchant_id": "MLMXWMGK6R2V8",
    }


def test_expired_token_is_refreshed_before_handler(
    client: TestClient,
    store: InMemoryTokenStore,
    square_client: MagicMock,
    merchant_tokens: list[str],
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.return_value = square_result(dict(REFRESHED))

    response = client.get(MERCHANT, params={"companyUUID": "tenant-1"})

    assert response.status_code == 200
    assert response.json()["merchant"]["business_name"] == "Test Business"

    square_client.o_auth.obtain_token.assert_called_once()
    body = square_client.o_auth.obtain_token.call_args.kwargs["body"]
    assert body["grant_type"] == "refresh_token"
    assert body["refresh_token"] == "RT1"

    assert store.upserts == [
        (
            "tenant-1",
            {"access_token": "AT2", "refresh_token": "RT2", "expires_at": "2099-06-01T00:00:00Z"},
        )
    ]
    assert store.records["tenant-1"]["merchant_id"] == "MLMXWMGK6R2V8"
    assert merchant_tokens == ["AT2"]


def test_fresh_token_is_used_without_refresh(
    client: TestClient,
    store: InMemoryTokenStore,
    square_client: MagicMock,
    merchant_tokens: list[str],
) -> None:
    seed(store, "2099-01-01T00:00:00Z")

    response = client.get(MERCHANT, params={"companyUUID": "tenant-1"})

    assert response.status_code == 200
    square_client.o_auth.obtain_token.assert_not_called()
    assert store.upserts == []
    assert merchant_tokens == ["AT1"]


def test_refresh_failure_leaves_request_without_token(
    client: TestClient,
    store: InMemoryTokenStore,
    square_client: MagicMock,
    merchant_tokens: list[str],
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.return_value = square_result(
        errors=[{"category": "AUTHENTICATION_ERROR", "code": "UNAUTHORIZED"}]
    )

    response = client.get(MERCHANT, params={"companyUUID": "tenant-1"})

    assert response.status_code == 401
    assert store.upserts == []
    assert store.records["tenant-1"]["access_token"] == "AT1"
    assert merchant_tokens == []


def test_request_without_tenant_passes_through(
    client: TestClient, store: InMemoryTokenStore, square_client: MagicMock
) -> None:
    seed(store, "2020-01-01T00:00:00Z")

    response = client.get("/api/square/test")

    assert response.status_code == 200
    square_client.o_auth.obtain_token.assert_not_called()


def test_paths_outside_prefix_are_not_intercepted(
    client: TestClient, store: InMemoryTokenStore, square_client: MagicMock
) -> None:
    seed(store, "2020-01-01T00:00:00Z")

    response = client.get("/docs", params={"companyUUID": "tenant-1"})

    assert response.status_code == 200
    square_client.o_auth.obtain_token.assert_not_called()


def test_tenant_read_from_json_body(
    client: TestClient, store: InMemoryTokenStore, square_client: MagicMock
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.side_effect = [
        square_result(dict(REFRESHED)),
        square_result(
            {
                "access_token": "AT3",
                "refresh_token": "RT3",
                "expires_at": "2099-12-01T00:00:00Z",
                "merchant_id": "MLMXWMGK6R2V8",
            }
        ),
    ]

    response = client.post(
        "/api/square/oauth/callback",
        json={"authorization_code": "ABC", "companyUUID": "tenant-1"},
    )

    assert response.status_code == 200
    assert response.json()["access_token"] == "AT3"
    grants = [
        call.kwargs["body"]["grant_type"]
        for call in square_client.o_auth.obtain_token.call_args_list
    ]
    assert grants == ["refresh_token", "authorization_code"]
    assert store.records["tenant-1"]["access_token"] == "AT3"


@pytest.mark.anyio
async def test_single_flight_refreshes_once(
    store: InMemoryTokenStore, square_client: MagicMock, oauth: SquareOAuth
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.return_value = square_result(dict(REFRESHED))
    refresher = TokenRefresher(store, oauth, single_flight=True)
    tokens: list = []

    async def resolve() -> None:
        tokens.append(await refresher.access_token_for("tenant-1"))

    async with anyio.create_task_group() as tg:
        tg.start_soon(resolve)
        tg.start_soon(resolve)

    assert tokens == ["AT2", "AT2"]
    assert square_client.o_auth.obtain_token.call_count == 1
    assert len(store.upserts) == 1


@pytest.mark.anyio
async def test_unsynchronised_refreshes_both_call_square(
    store: InMemoryTokenStore, square_client: MagicMock, oauth: SquareOAuth
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.return_value = square_result(dict(REFRESHED))
    refresher = TokenRefresher(store, oauth)

    async with anyio.create_task_group() as tg:
        tg.start_soon(refresher.access_token_for, "tenant-1")
        tg.start_soon(refresher.access_token_for, "tenant-1")

    assert square_client.o_auth.obtain_token.call_count == 2
    assert store.records["tenant-1"]["access_token"] == "AT2"


@pytest.mark.anyio
async def test_missing_record_resolves_to_none(
    store: InMemoryTokenStore, oauth: SquareOAuth
) -> None:
    refresher = TokenRefresher(store, oauth)

    assert await refresher.access_token_for("tenant-unknown") is None


class UnreadableTokenStore(InMemoryTokenStore):
    """Reads fail."""

    async def get(self, tenant_id: str) -> Optional[TokenRecord]:
        raise StoreError("database unavailable")


def test_store_read_failure_leaves_request_without_token(
    settings: RelaySettings,
    oauth: SquareOAuth,
    square_client: MagicMock,
    merchant_tokens: list[str],
) -> None:
    app = create_app(settings, store=UnreadableTokenStore(), oauth=oauth)

    with TestClient(app) as client:
        response = client.get(MERCHANT, params={"companyUUID": "tenant-1"})

    assert response.status_code == 401
    square_client.o_auth.obtain_token.assert_not_called()
    assert merchant_tokens == []


def test_store_write_failure_after_refresh_leaves_request_without_token(
    settings: RelaySettings,
    oauth: SquareOAuth,
    square_client: MagicMock,
    merchant_tokens: list[str],
) -> None:
    store = FailingTokenStore()
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.return_value = square_result(dict(REFRESHED))
    app = create_app(settings, store=store, oauth=oauth)

    with TestClient(app) as client:
        response = client.get(MERCHANT, params={"companyUUID": "tenant-1"})

    assert response.status_code == 401
    square_client.o_auth.obtain_token.assert_called_once()
    assert len(store.upserts) == 1
    assert store.records["tenant-1"]["access_token"] == "AT1"
    assert merchant_tokens == []


def test_refresh_network_error_leaves_request_without_token(
    client: TestClient,
    store: InMemoryTokenStore,
    square_client: MagicMock,
    merchant_tokens: list[str],
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.side_effect = ConnectionError("connection reset")

    response = client.get(MERCHANT, params={"companyUUID": "tenant-1"})

    assert response.status_code == 401
    assert store.upserts == []
    assert merchant_tokens == []


def test_firebase_rejected_tenant_path_passes_through(
    settings: RelaySettings, oauth: SquareOAuth
) -> None:
    reference = MagicMock(side_effect=ValueError("Path contains illegal characters."))
    with patch("square_relay.stores.firebase.db.reference", reference):
        app = create_app(settings, store=FirebaseTokenStore(app=MagicMock()), oauth=oauth)
        with TestClient(app) as client:
            test_response = client.get("/api/square/test", params={"companyUUID": "acme.co"})
            merchant_response = client.get(MERCHANT, params={"companyUUID": "acme.co"})

    assert test_response.status_code == 200
    assert merchant_response.status_code == 401


@pytest.mark.anyio
async def test_refresh_without_expiry_keeps_stored_expiry(
    store: InMemoryTokenStore, square_client: MagicMock, oauth: SquareOAuth
) -> None:
    seed(store, "2020-01-01T00:00:00Z")
    square_client.o_auth.obtain_token.return_value = square_result(
        {"access_token": "AT2", "refresh_token": "RT2"}
    )
    refresher = TokenRefresher(store, oauth)

    assert await refresher.access_token_for("tenant-1") == "AT2"
    assert store.records["tenant-1"]["expires_at"] == "2020-01-01T00:00:00Z"


@pytest.mark.anyio
async def test_single_flight_locks_are_released(
    store: InMemoryTokenStore, square_client: MagicMock, oauth: SquareOAuth
) -> None:
    seed(store, "2099-01-01T00:00:00Z")
    refresher = TokenRefresher(store, oauth, single_flight=True)

    async with anyio.create_task_group() as tg:
        for _ in range(3):
            tg.start_soon(refresher.access_token_for, "tenant-1")
    gc.collect()

    assert len(refresher._locks) == 0
