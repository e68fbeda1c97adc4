"""Token store interface."""

from typing import Any, Optional, Protocol

from square_relay.core.models import TokenRecord

TOKEN_FIELDS = ("access_token", "refresh_token", "expires_at", "merchant_id")


class TokenStore(Protocol):
    """
    Keyed storage of one TokenRecord per tenant.

    `upsert` merges only the supplied fields into the tenant's record and
    writes them in a single call; concurrent writers of the same tenant are
    last-write-wins.
    """

    async def get(self, tenant_id: str) -> Optional[TokenRecord]: ...

    async def upsert(self, tenant_id: str, fields: dict[str, Any]) -> None: ...

    async def check_connection(self) -> bool: ...


def clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Known token fields with a value, in storage order."""
    unknown = set(fields) - set(TOKEN_FIELDS)
    if unknown:
        raise ValueError(f"Unknown token fields: {sorted(unknown)}")
    return {name: fields[name] for name in TOKEN_FIELDS if fields.get(name) is not None}
