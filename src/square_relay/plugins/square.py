"""Square plugin module."""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel

from square_relay.core.errors import (
    ClientInputError,
    MissingCredentialError,
    ProviderExchangeError,
    StoreError,
)
from square_relay.core.models import TokenGrant
from square_relay.core.oauth import SquareOAuth
from square_relay.core.refresh import get_square_access_token
from square_relay.core.settings import RelaySettings
from square_relay.stores.base import TokenStore

logger = logging.getLogger("square")


class AuthorizationCodeRequest(BaseModel):
    """Body of the POST flavour of the OAuth callback."""

    authorization_code: Optional[str] = None
    companyUUID: Optional[str] = None


def create_square_router(
    oauth: SquareOAuth,
    settings: RelaySettings,
    store: Optional[TokenStore] = None,
) -> APIRouter:
    """Create a router for the Square OAuth relay."""

    router = APIRouter()

    async def exchange(code: str, tenant_id: Optional[str]) -> TokenGrant:
        logger.info("Exchanging authorization code for company %s", tenant_id)
        if settings.log_tokens:
            logger.debug("Authorization code: %s", code)
        try:
            grant = await oauth.obtain_token(code)
        except ProviderExchangeError as e:
            e.tenant_id = tenant_id
            raise

        logger.info(
            "Square OAuth exchange succeeded for company %s (merchant %s, expires %s)",
            tenant_id,
            grant.merchant_id,
            grant.expires_at,
        )
        if settings.log_tokens:
            logger.debug(
                "Access token: %s, refresh token: %s", grant.access_token, grant.refresh_token
            )
        await save_tokens(tenant_id, grant)
        return grant

    async def save_tokens(tenant_id: Optional[str], grant: TokenGrant) -> None:
        if store is None or not tenant_id:
            logger.info("Not persisting tokens for company %s", tenant_id)
            return
        # A failed write does not fail the callback; the client still gets its redirect.
        try:
            await store.upsert(tenant_id, grant.to_fields())
        except StoreError as e:
            logger.error("Failed to save tokens for company %s: %s", tenant_id, e)
            return
        logger.info("Access token successfully saved for company %s", tenant_id)

    def app_redirect_uri(grant: TokenGrant) -> str:
        if not settings.embed_tokens_in_redirect:
            return settings.app_redirect_uri
        query = urlencode(
            {"access_token": grant.access_token, "refresh_token": grant.refresh_token}
        )
        return f"{settings.app_redirect_uri}?{query}"

    @router.get("/test", response_class=PlainTextResponse)
    async def test_integration() -> str:
        """Check that the server is running."""
        return "Square OAuth integration is working!"

    @router.get("/oauth/authorize")
    async def initiate_oauth(state: Optional[str] = None) -> RedirectResponse:
        """Initiate OAuth flow; `state` carries the company UUID back to the callback."""
        oauth_url = oauth.authorize_url(state)
        logger.info("Redirecting company %s to Square authorization", state)
        return RedirectResponse(oauth_url, status_code=302)

    @router.get("/oauth/callback")
    async def oauth_callback(
        code: Optional[str] = None, state: Optional[str] = None
    ) -> RedirectResponse:
        """Handle the OAuth redirect from Square and send the user back to the app."""
        logger.info("Received OAuth callback for company %s", state)

        missing = []
        if not code:
            missing.append("code")
        if settings.require_tenant and not state:
            missing.append("state")
        if missing:
            raise ClientInputError(missing, tenant_id=state, extra={"receivedUUID": state})

        grant = await exchange(code, state)

        redirect_uri = app_redirect_uri(grant)
        logger.info("Redirecting to app: %s", settings.app_redirect_uri)
        return RedirectResponse(redirect_uri, status_code=302)

    @router.post("/oauth/callback")
    async def oauth_callback_post(
        payload: Optional[AuthorizationCodeRequest] = None,
    ) -> dict[str, str]:
        """Exchange an authorization code posted by the client and return the tokens."""
        payload = payload or AuthorizationCodeRequest()
        tenant_id = payload.companyUUID
        if not payload.authorization_code:
            raise ClientInputError(["authorization_code"], tenant_id=tenant_id)
        if settings.require_tenant and not tenant_id:
            raise ClientInputError(["companyUUID"])

        grant = await exchange(payload.authorization_code, tenant_id)
        return {
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token,
            "expires_at": grant.expires_at,
        }

    @router.get("/merchant")
    async def merchant_info(
        companyUUID: Optional[str] = None,
        access_token: Optional[str] = Depends(get_square_access_token),
    ) -> dict:
        """Get merchant information with the company's current access token."""
        if not access_token:
            raise MissingCredentialError(
                "No Square access token available. Please connect your Square account.",
                tenant_id=companyUUID,
            )
        try:
            merchant = await oauth.retrieve_merchant(access_token)
        except ProviderExchangeError as e:
            e.tenant_id = companyUUID
            raise
        return {"merchant": merchant}

    return router
