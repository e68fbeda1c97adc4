"""
Token models shared by the Square plugin, the refresh middleware and the stores.
"""

import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from square_relay.core.database import Base


class TokenRecord(BaseModel):
    """
    Latest Square credentials held for one tenant.

    Attributes:
        tenant_id (str): Company identifier the OAuth flow was started for.
        access_token (str): Bearer token for Square API calls.
        refresh_token (str): Token used to mint a new access token.
        expires_at (str): Expiry as returned by Square (ISO-8601, or epoch seconds).
        merchant_id (str | None): Square merchant id, when the exchange returned one.
    """

    tenant_id: str
    access_token: str = ""
    refresh_token: str = ""
    expires_at: str = ""
    merchant_id: Optional[str] = None

    def expires_at_datetime(self) -> Optional[datetime.datetime]:
        """Expiry as an aware UTC datetime, or None when it cannot be parsed."""
        return parse_expiry(self.expires_at)

    def is_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        """
        Whether the access token expired strictly before `now`.

        A record with no usable expiry is not considered expired.
        """
        expires_at = self.expires_at_datetime()
        if expires_at is None:
            return False
        now = now or datetime.datetime.now(datetime.UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=datetime.UTC)
        return expires_at < now


class TokenGrant(BaseModel):
    """Token set returned by Square for an exchange or refresh."""

    access_token: str
    refresh_token: str = ""
    expires_at: str = ""
    merchant_id: Optional[str] = Field(None, description="Only present on code exchange")

    def to_fields(self) -> dict[str, Any]:
        """
        Fields to merge into the tenant's record.

        Fields Square left out of the response (refresh token, expiry,
        merchant id) keep their stored values.
        """
        fields: dict[str, Any] = {"access_token": self.access_token}
        if self.expires_at:
            fields["expires_at"] = self.expires_at
        if self.refresh_token:
            fields["refresh_token"] = self.refresh_token
        if self.merchant_id:
            fields["merchant_id"] = self.merchant_id
        return fields


class SquareToken(Base):
    """
    Row-per-tenant storage of Square credentials for the SQL token store.
    """

    __tablename__ = "square_tokens"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    access_token: Mapped[str] = mapped_column(String, nullable=False, default="")
    refresh_token: Mapped[str] = mapped_column(String, nullable=False, default="")
    expires_at: Mapped[str] = mapped_column(String, nullable=False, default="")
    merchant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    def to_record(self) -> TokenRecord:
        """Convert the row to a TokenRecord."""
        return TokenRecord(
            tenant_id=self.tenant_id,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            merchant_id=self.merchant_id,
        )


def parse_expiry(value: Any) -> Optional[datetime.datetime]:
    """
    Parse an expiry into an aware UTC datetime.

    Accepts ISO-8601 strings (a trailing ``Z`` included), epoch seconds as a
    number or numeric string, and datetimes. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(value)
    else:
        text = str(value).strip()
        try:
            return _from_epoch(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=datetime.UTC)
    return parsed.astimezone(datetime.UTC)


def _from_epoch(seconds: float) -> Optional[datetime.datetime]:
    try:
        return datetime.datetime.fromtimestamp(seconds, tz=datetime.UTC)
    except (OverflowError, OSError, ValueError):
        return None
