"""
Purchase recording for checkout, and purchase history.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional, Sequence

from storefront.catalog import ProductCatalog
from storefront.exceptions import CartException, RemoteUnavailableError
from storefront.log import hash_identifier
from storefront.models import CartLine, FailedLine, PurchaseHistoryEntry, PurchaseRecord
from storefront.remote_store import RemoteStore

logger = logging.getLogger(__name__)


class RecordedLine(NamedTuple):
    line: CartLine
    record: PurchaseRecord


class PurchaseOutcome(NamedTuple):
    order_id: str
    recorded: List[RecordedLine]
    failed: List[FailedLine]


async def _submit(
    remote_store: RemoteStore,
    record: PurchaseRecord,
    timeout: Optional[float]
) -> PurchaseRecord:
    try:
        return await asyncio.wait_for(remote_store.insert_purchase_record(record), timeout)
    except asyncio.TimeoutError as e:
        raise RemoteUnavailableError(f"Purchase insert timed out after {timeout}s") from e


async def record_purchases(
    remote_store: RemoteStore,
    user_id: str,
    lines: Sequence[CartLine],
    timeout: Optional[float] = None,
    order_id: Optional[str] = None,
    purchase_date: Optional[datetime] = None
) -> PurchaseOutcome:
    """
    Submit one purchase record per cart line, concurrently.

    Every submission runs to completion and its result is inspected on its
    own, so a failure for one line never hides the others.

    Returns:
        PurchaseOutcome splitting the lines into recorded and failed
    """
    order_id = order_id or str(uuid.uuid4())
    purchase_date = purchase_date or datetime.now(timezone.utc)
    records = [
        PurchaseRecord.from_line(user_id, line, purchase_date, order_id=order_id)
        for line in lines
    ]

    results = await asyncio.gather(
        *(_submit(remote_store, record, timeout) for record in records),
        return_exceptions=True
    )

    recorded: List[RecordedLine] = []
    failed: List[FailedLine] = []
    for line, result in zip(lines, results):
        if isinstance(result, CartException):
            failed.append(FailedLine(line=line, reason=str(result)))
        elif isinstance(result, Exception):
            logger.error(
                f"Unexpected error recording purchase: {type(result).__name__}: {result}",
                exc_info=result
            )
            failed.append(FailedLine(line=line, reason=f"{type(result).__name__}: {result}"))
        elif isinstance(result, BaseException):
            raise result
        else:
            recorded.append(RecordedLine(line=line, record=result))

    if failed:
        logger.error(
            f"Checkout {order_id}: {len(failed)} of {len(records)} purchase records failed",
            extra={
                "order_id": order_id,
                "hashed_user_id": hash_identifier(user_id),
                "failed_products": [f.line.product_id for f in failed]
            }
        )
    else:
        logger.info(
            f"Checkout {order_id}: recorded {len(recorded)} purchase records",
            extra={"order_id": order_id, "hashed_user_id": hash_identifier(user_id)}
        )

    return PurchaseOutcome(order_id=order_id, recorded=recorded, failed=failed)


class PurchaseHistoryService:
    """Service for reading a user's past purchases"""

    def __init__(self, remote_store: RemoteStore, catalog: ProductCatalog):
        self.remote_store = remote_store
        self.catalog = catalog

    async def get_history(self, user_id: str) -> List[PurchaseHistoryEntry]:
        """Purchases newest first, each joined with its product when it still exists"""
        records = await self.remote_store.list_purchase_records(user_id)
        records = sorted(records, key=lambda r: r.purchase_date, reverse=True)

        entries = []
        for record in records:
            product = await self.catalog.get_product_by_id(record.product_id)
            entries.append(PurchaseHistoryEntry(record=record, product=product))
        return entries
