"""Error types raised by the relay and their HTTP mapping."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("errors")

INSUFFICIENT_SCOPES = "INSUFFICIENT_SCOPES"
INSUFFICIENT_SCOPES_MESSAGE = (
    "Your Square connection is missing permissions this app needs. "
    "Please reconnect your Square account and approve all requested permissions."
)


class RelayError(Exception):
    """Base class for errors surfaced to the client as JSON."""

    status_code = 500

    def __init__(self, message: str, tenant_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id

    def to_body(self) -> dict[str, Any]:
        """JSON body returned to the client."""
        return {"error": self.message}


class ClientInputError(RelayError):
    """A required request field is missing."""

    status_code = 400

    def __init__(
        self,
        missing: list[str],
        tenant_id: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        self.missing = missing
        self.extra = extra or {}
        super().__init__(_missing_message(missing), tenant_id)

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class MissingCredentialError(RelayError):
    """No Square access token is available for the request."""

    status_code = 401


class ProviderExchangeError(RelayError):
    """
    Square rejected or failed a token call.

    Attributes:
        errors (list[dict]): Raw error objects returned by Square, if any.
    """

    status_code = 500

    def __init__(
        self,
        message: str = "Failed to exchange authorization code.",
        errors: Optional[list[dict[str, Any]]] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, tenant_id)
        self.errors = errors or []


class InsufficientScopeError(ProviderExchangeError):
    """Square reported the authorization lacks required scopes."""

    status_code = 403

    def to_body(self) -> dict[str, Any]:
        return {"error": INSUFFICIENT_SCOPES, "message": INSUFFICIENT_SCOPES_MESSAGE}


class StoreError(Exception):
    """A token store read or write failed."""


class ConfigurationError(Exception):
    """Required process configuration is missing or invalid."""


_FIELD_LABELS = {
    "code": "Authorization code",
    "authorization_code": "Authorization code",
    "state": "company UUID",
    "companyUUID": "company UUID",
}


def _missing_message(missing: list[str]) -> str:
    labels = [_FIELD_LABELS.get(name, name) for name in missing]
    if not labels:
        return "Invalid request."
    sentence = " and ".join(labels)
    sentence = sentence[0].upper() + sentence[1:]
    verb = "is" if len(labels) == 1 else "are"
    return f"{sentence} {verb} required."


def install_error_handlers(app: FastAPI) -> None:
    """Register the JSON handler for relay errors."""

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if isinstance(exc, ProviderExchangeError):
            logger.error(
                "%s %s failed for tenant %s: %s %s",
                request.method,
                request.url.path,
                exc.tenant_id,
                exc.message,
                exc.errors,
            )
        else:
            logger.warning(
                "%s %s rejected (%s) for tenant %s: %s",
                request.method,
                request.url.path,
                exc.status_code,
                exc.tenant_id,
                exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())
