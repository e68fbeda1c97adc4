"""Refresh expired Square access tokens before provider-scoped routes run."""

import asyncio
import json
import logging
import weakref
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from square_relay.core.errors import ProviderExchangeError, StoreError
from square_relay.core.models import TokenRecord
from square_relay.core.oauth import SquareOAuth
from square_relay.stores.base import TokenStore

logger = logging.getLogger("refresh")

SQUARE_PATH_PREFIX = "/api/square/"
TENANT_PARAM = "companyUUID"


class TokenRefresher:
    """
    Resolves a tenant's usable access token, refreshing it when expired.

    Without `single_flight`, two requests that see the same expired token
    both refresh it and the last store write wins. With it, refreshes for a
    tenant are serialised and the record is re-read after the lock is taken.
    """

    def __init__(
        self,
        store: TokenStore,
        oauth: SquareOAuth,
        single_flight: bool = False,
        log_tokens: bool = False,
    ) -> None:
        self.store = store
        self.oauth = oauth
        self.single_flight = single_flight
        self.log_tokens = log_tokens
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def access_token_for(self, tenant_id: str) -> Optional[str]:
        """Current access token for `tenant_id`, or None if there is none to use."""
        if not self.single_flight:
            return await self._resolve(tenant_id)
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        async with lock:
            return await self._resolve(tenant_id)

    async def _resolve(self, tenant_id: str) -> Optional[str]:
        try:
            record = await self.store.get(tenant_id)
        except StoreError as e:
            logger.error("Could not read tokens for %s: %s", tenant_id, e)
            return None

        if record is None:
            logger.debug("No stored Square tokens for %s", tenant_id)
            return None

        if record.is_expired():
            logger.info("Token expired, refreshing access token for %s", tenant_id)
            return await self.refresh(record)
        return record.access_token

    async def refresh(self, record: TokenRecord) -> Optional[str]:
        """
        Exchange the record's refresh token and persist the new token set.

        Returns:
            Optional[str]: The new access token, or None if the refresh or the
            write of its result failed.
        """
        tenant_id = record.tenant_id
        try:
            grant = await self.oauth.refresh_token(record.refresh_token)
        except ProviderExchangeError as e:
            logger.error(
                "Error refreshing Square OAuth token for %s: %s %s", tenant_id, e.message, e.errors
            )
            return None

        try:
            await self.store.upsert(tenant_id, grant.to_fields())
        except StoreError as e:
            logger.error("Could not save refreshed tokens for %s: %s", tenant_id, e)
            return None

        if self.log_tokens:
            logger.debug("New access token for %s: %s", tenant_id, grant.access_token)
        logger.info("New access token saved for %s", tenant_id)
        return grant.access_token


class TokenRefreshMiddleware(BaseHTTPMiddleware):
    """
    Attaches `request.state.square_access_token` on `/api/square/` routes.

    The tenant comes from the `companyUUID` query parameter or JSON body
    field; requests without one pass through untouched.
    """

    def __init__(self, app: Any, refresher: TokenRefresher, prefix: str = SQUARE_PATH_PREFIX) -> None:
        super().__init__(app)
        self.refresher = refresher
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next: Callable) -> Any:
        if request.url.path.startswith(self.prefix):
            tenant_id = await tenant_from_request(request)
            if tenant_id:
                token = await self.refresher.access_token_for(tenant_id)
                if token:
                    request.state.square_access_token = token
        return await call_next(request)


async def tenant_from_request(request: Request) -> Optional[str]:
    """`companyUUID` from the query string, else from a JSON object body."""
    tenant_id = request.query_params.get(TENANT_PARAM)
    if tenant_id:
        return tenant_id
    if request.method not in ("POST", "PUT", "PATCH"):
        return None
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(payload, dict):
        value = payload.get(TENANT_PARAM)
        return str(value) if value else None
    return None


def get_square_access_token(request: Request) -> Optional[str]:
    """Dependency returning the access token attached by the refresh middleware."""
    return getattr(request.state, "square_access_token", None)
