"""Square OAuth calls: code exchange, refresh grant and merchant lookup."""

import logging
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import anyio
from square.client import Client
from square.http.auth.o_auth_2 import BearerAuthCredentials

from square_relay.core.errors import (
    INSUFFICIENT_SCOPES,
    InsufficientScopeError,
    ProviderExchangeError,
)
from square_relay.core.models import TokenGrant
from square_relay.core.settings import SQUARE_VERSION, RelaySettings

logger = logging.getLogger("square")

ClientFactory = Callable[[str], Client]


class SquareOAuth:
    """
    Thin async wrapper over the Square SDK's OAuth and Merchants APIs.

    The SDK is blocking, so every call runs in a worker thread.
    """

    def __init__(
        self,
        client: Client,
        settings: RelaySettings,
        merchant_client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self._merchant_client_factory = merchant_client_factory or self._default_merchant_client

    def _default_merchant_client(self, access_token: str) -> Client:
        return Client(
            bearer_auth_credentials=BearerAuthCredentials(access_token=access_token),
            environment=self.settings.environment,
            square_version=SQUARE_VERSION,
        )

    def authorize_url(self, state: Optional[str] = None) -> str:
        """URL of Square's consent page for this application."""
        params = {
            "client_id": self.settings.client_id,
            "scope": self.settings.square_scopes,
            "session": "False",
            "redirect_uri": self.settings.square_redirect_uri,
        }
        if state:
            params["state"] = state
        return f"{self.settings.square_base_url}/oauth2/authorize?{urlencode(params)}"

    async def obtain_token(self, code: str) -> TokenGrant:
        """Exchange an authorization code for an access/refresh token pair."""
        body = {
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.square_redirect_uri,
        }
        return await self._token_call(body, "Failed to exchange authorization code.")

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Mint a new access token from a stored refresh token."""
        body = {
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        return await self._token_call(body, "Failed to refresh access token.")

    async def retrieve_merchant(self, access_token: str) -> dict[str, Any]:
        """
        Retrieves merchant details using a tenant's access token.

        Args:
            access_token (str): The tenant's Square access token.

        Returns:
            dict[str, Any]: Merchant details as provided by Square.

        Raises:
            ProviderExchangeError: If Square rejects the request.
        """
        merchant_client = self._merchant_client_factory(access_token)
        result = await self._run(
            lambda: merchant_client.merchants.retrieve_merchant(merchant_id="me"),
            "Failed to fetch merchant information.",
        )
        return dict(result.body.get("merchant") or {})

    async def _token_call(self, body: dict[str, Any], failure_message: str) -> TokenGrant:
        result = await self._run(
            lambda: self.client.o_auth.obtain_token(body=body), failure_message
        )
        data = result.body
        if not data.get("access_token"):
            raise ProviderExchangeError(failure_message, errors=[{"detail": "missing access_token"}])
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=str(data.get("expires_at") or ""),
            merchant_id=data.get("merchant_id"),
        )

    async def _run(self, call: Callable[[], Any], failure_message: str) -> Any:
        try:
            result = await anyio.to_thread.run_sync(call)
        except Exception as e:
            logger.error("Square call failed: %s: %s", type(e).__name__, str(e))
            raise ProviderExchangeError(failure_message, errors=[{"detail": str(e)}]) from e

        if result.is_success():
            return result

        errors = list(result.errors or [])
        if any(error.get("code") == INSUFFICIENT_SCOPES for error in errors):
            raise InsufficientScopeError(failure_message, errors=errors)
        raise ProviderExchangeError(failure_message, errors=errors)


def create_square_client(settings: RelaySettings) -> Client:
    """
    Square client used for application-level OAuth calls.
    """
    logger.info("Creating Square client with environment: %s", settings.environment)
    return Client(environment=settings.environment, square_version=SQUARE_VERSION)
