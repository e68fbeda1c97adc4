"""SQL token store backed by SQLAlchemy."""

import logging
from typing import Any, Optional

import anyio
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from square_relay.core.errors import StoreError
from square_relay.core.models import SquareToken, TokenRecord
from square_relay.stores.base import clean_fields

logger = logging.getLogger("stores")


class SqlTokenStore:
    """Stores each tenant's tokens as one row of `square_tokens`."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def get(self, tenant_id: str) -> Optional[TokenRecord]:
        return await anyio.to_thread.run_sync(self._get, tenant_id)

    async def upsert(self, tenant_id: str, fields: dict[str, Any]) -> None:
        values = clean_fields(fields)
        await anyio.to_thread.run_sync(self._upsert, tenant_id, values)

    async def check_connection(self) -> bool:
        return await anyio.to_thread.run_sync(self._check_connection)

    def _get(self, tenant_id: str) -> Optional[TokenRecord]:
        db = self.session_factory()
        try:
            row = db.get(SquareToken, tenant_id)
            return row.to_record() if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read tokens for {tenant_id}: {e}") from e
        finally:
            db.close()

    def _upsert(self, tenant_id: str, values: dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            row = db.get(SquareToken, tenant_id)
            if row is None:
                row = SquareToken(tenant_id=tenant_id)
                db.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Failed to write tokens for {tenant_id}: {e}") from e
        finally:
            db.close()

    def _check_connection(self) -> bool:
        try:
            with self.session_factory() as db:
                result = db.execute(text("SELECT 1"))
                logger.info("Database connection successful: %s", result.scalar())
                return True
        except SQLAlchemyError as e:
            logger.error("Database connection failed: %s", e)
            return False
