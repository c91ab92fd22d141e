"""
Remote per-user store for cart rows and purchase records.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from storefront.atomic_scripts import AtomicScripts
from storefront.config import Config
from storefront.exceptions import (
    CartRowNotFoundError,
    LimitExceededError,
    RedisConnectionError,
    ValidationError
)
from storefront.log import hash_identifier
from storefront.models import CartRow, PurchaseRecord
from storefront.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


def _row_seq(row_id: str) -> int:
    seq = row_id.rpartition(":")[2]
    return int(seq) if seq.isdigit() else 0


class RemoteStore(ABC):
    """Network store holding each user's cart rows and purchases."""

    @abstractmethod
    async def list_cart_rows(self, user_id: str) -> List[CartRow]:
        pass

    @abstractmethod
    async def insert_cart_row(self, user_id: str, product_id: str, quantity: int) -> CartRow:
        pass

    @abstractmethod
    async def update_cart_row_quantity(self, row_id: str, quantity: int) -> None:
        """Raises CartRowNotFoundError when the row no longer exists."""
        pass

    @abstractmethod
    async def delete_cart_row(self, row_id: str) -> None:
        """Deleting a missing row is a no-op."""
        pass

    @abstractmethod
    async def delete_all_cart_rows(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def insert_purchase_record(self, record: PurchaseRecord) -> PurchaseRecord:
        pass

    @abstractmethod
    async def list_purchase_records(self, user_id: str) -> List[PurchaseRecord]:
        pass


class RedisRemoteStore(RemoteStore):
    """Remote store backed by Redis hashes and lists"""

    ROW_SEQ_KEY = "cart_row_seq"
    PURCHASE_SEQ_KEY = "purchase_seq"

    def __init__(self, redis_client: Optional[RedisClient] = None):
        self.redis = redis_client or get_redis_client()
        self.scripts = AtomicScripts(self.redis)

    def _rows_key(self, user_id: str) -> str:
        """Generate Redis key for a user's cart rows"""
        return f"cart_rows:{user_id}"

    def _purchases_key(self, user_id: str) -> str:
        return f"purchases:{user_id}"

    def _owner_of(self, row_id: str) -> str:
        """Row ids are '<user_id>:<seq>'"""
        user_id, sep, seq = row_id.rpartition(":")
        if not sep or not user_id or not seq.isdigit():
            raise CartRowNotFoundError(row_id)
        return user_id

    def _raise_script_error(self, result: dict, row_id: Optional[str] = None):
        error = result["err"]
        if error == "ROW_NOT_FOUND":
            raise CartRowNotFoundError(row_id or "")
        elif error == "MAX_ITEMS_EXCEEDED":
            raise LimitExceededError(
                f"Cart exceeds maximum items {result.get('max', Config.MAX_ITEMS_PER_CART)}"
            )
        elif error == "INVALID_QUANTITY":
            raise ValidationError("Quantity must be greater than 0")
        else:
            raise RedisConnectionError(f"Redis script error: {error}")

    async def list_cart_rows(self, user_id: str) -> List[CartRow]:
        values = await self.redis.hvals(self._rows_key(user_id))

        rows: List[CartRow] = []
        for raw in values:
            try:
                rows.append(CartRow.model_validate_json(raw))
            except ValueError as e:
                # Skip invalid rows
                logger.warning(
                    f"Skipping unreadable cart row: {e}",
                    extra={"hashed_user_id": hash_identifier(user_id)}
                )
        # Insertion order, so hydration keeps the oldest row as primary
        rows.sort(key=lambda row: _row_seq(row.id))
        return rows

    async def insert_cart_row(self, user_id: str, product_id: str, quantity: int) -> CartRow:
        result = await self.scripts.insert_cart_row(
            rows_key=self._rows_key(user_id),
            seq_key=self.ROW_SEQ_KEY,
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            max_rows=Config.MAX_ITEMS_PER_CART,
            ttl=Config.CART_TTL_SECONDS
        )
        if result.get("err"):
            self._raise_script_error(result)
        return CartRow.model_validate(result["row"])

    async def update_cart_row_quantity(self, row_id: str, quantity: int) -> None:
        user_id = self._owner_of(row_id)
        result = await self.scripts.update_row_quantity(
            rows_key=self._rows_key(user_id),
            row_id=row_id,
            quantity=quantity,
            ttl=Config.CART_TTL_SECONDS
        )
        if result.get("err"):
            self._raise_script_error(result, row_id)

    async def delete_cart_row(self, row_id: str) -> None:
        try:
            user_id = self._owner_of(row_id)
        except CartRowNotFoundError:
            return
        await self.redis.hdel(self._rows_key(user_id), row_id)

    async def delete_all_cart_rows(self, user_id: str) -> int:
        return await self.redis.delete(self._rows_key(user_id))

    async def insert_purchase_record(self, record: PurchaseRecord) -> PurchaseRecord:
        seq = await self.redis.incr(self.PURCHASE_SEQ_KEY)
        stored = record.model_copy(update={"id": str(seq)})
        await self.redis.rpush(self._purchases_key(record.user_id), stored.model_dump_json())
        return stored

    async def list_purchase_records(self, user_id: str) -> List[PurchaseRecord]:
        values = await self.redis.lrange(self._purchases_key(user_id))

        records: List[PurchaseRecord] = []
        for raw in values:
            try:
                records.append(PurchaseRecord.model_validate_json(raw))
            except ValueError as e:
                logger.warning(
                    f"Skipping unreadable purchase record: {e}",
                    extra={"hashed_user_id": hash_identifier(user_id)}
                )
        return records
