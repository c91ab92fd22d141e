"""
Shared fixtures for cart service tests.

The remote store fake keeps rows and purchases in dicts and can be told to
fail or to pause specific operations, which lets tests drive the offline and
stale-hydration paths deterministically.
"""
import asyncio
from typing import Dict, List, Optional, Set

import pytest

from storefront.cart_service import CartReconciliationService
from storefront.catalog import StaticProductCatalog
from storefront.exceptions import CartRowNotFoundError, RemoteUnavailableError
from storefront.identity import SessionIdentityProvider
from storefront.local_storage import MemoryStorage
from storefront.models import CartRow, PurchaseRecord
from storefront.remote_store import RemoteStore


class FakeRemoteStore(RemoteStore):
    """In-memory RemoteStore with failure injection"""

    def __init__(self):
        self.rows: Dict[str, Dict[str, CartRow]] = {}
        self.purchases: Dict[str, List[PurchaseRecord]] = {}
        self.calls: List[str] = []
        # Operation names that raise RemoteUnavailableError
        self.fail_operations: Set[str] = set()
        # Product ids whose purchase insert fails
        self.fail_purchase_products: Set[str] = set()
        # Per-user gates that hold list_cart_rows until set
        self.gates: Dict[str, asyncio.Event] = {}
        self.waiting = asyncio.Event()
        self.insert_delay = 0.0
        self.insert_started = asyncio.Event()
        self._row_seq = 0
        self._purchase_seq = 0

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_operations:
            raise RemoteUnavailableError(f"{operation} failed")

    def seed_row(self, user_id: str, product_id: str, quantity: int) -> CartRow:
        self._row_seq += 1
        row = CartRow(id=f"{user_id}:{self._row_seq}", product_id=product_id, quantity=quantity)
        self.rows.setdefault(user_id, {})[row.id] = row
        return row

    def quantities(self, user_id: str) -> Dict[str, int]:
        """Sum of row quantities per product for one user"""
        totals: Dict[str, int] = {}
        for row in self.rows.get(user_id, {}).values():
            totals[row.product_id] = totals.get(row.product_id, 0) + row.quantity
        return totals

    def row_count(self, user_id: str, product_id: Optional[str] = None) -> int:
        return sum(
            1 for row in self.rows.get(user_id, {}).values()
            if product_id is None or row.product_id == product_id
        )

    def _find(self, row_id: str) -> Optional[Dict[str, CartRow]]:
        for user_rows in self.rows.values():
            if row_id in user_rows:
                return user_rows
        return None

    async def list_cart_rows(self, user_id: str) -> List[CartRow]:
        self._check("list_cart_rows")
        gate = self.gates.get(user_id)
        if gate is not None:
            self.waiting.set()
            await gate.wait()
        return [row.model_copy() for row in self.rows.get(user_id, {}).values()]

    async def insert_cart_row(self, user_id: str, product_id: str, quantity: int) -> CartRow:
        self._check("insert_cart_row")
        self.insert_started.set()
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        return self.seed_row(user_id, product_id, quantity).model_copy()

    async def update_cart_row_quantity(self, row_id: str, quantity: int) -> None:
        self._check("update_cart_row_quantity")
        user_rows = self._find(row_id)
        if user_rows is None:
            raise CartRowNotFoundError(row_id)
        user_rows[row_id] = user_rows[row_id].model_copy(update={"quantity": quantity})

    async def delete_cart_row(self, row_id: str) -> None:
        self._check("delete_cart_row")
        user_rows = self._find(row_id)
        if user_rows is not None:
            del user_rows[row_id]

    async def delete_all_cart_rows(self, user_id: str) -> int:
        self._check("delete_all_cart_rows")
        return len(self.rows.pop(user_id, {}))

    async def insert_purchase_record(self, record: PurchaseRecord) -> PurchaseRecord:
        self._check("insert_purchase_record")
        if record.product_id in self.fail_purchase_products:
            raise RemoteUnavailableError(f"purchase insert for {record.product_id} failed")
        self._purchase_seq += 1
        stored = record.model_copy(update={"id": str(self._purchase_seq)})
        self.purchases.setdefault(record.user_id, []).append(stored)
        return stored

    async def list_purchase_records(self, user_id: str) -> List[PurchaseRecord]:
        self._check("list_purchase_records")
        return list(self.purchases.get(user_id, []))


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def catalog() -> StaticProductCatalog:
    return StaticProductCatalog()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def identity() -> SessionIdentityProvider:
    return SessionIdentityProvider()


@pytest.fixture
def make_service(identity, remote, catalog, storage):
    """Factory for services sharing the fixture collaborators"""
    def factory(**options) -> CartReconciliationService:
        options.setdefault("identity_provider", identity)
        options.setdefault("remote_store", remote)
        options.setdefault("catalog", catalog)
        options.setdefault("local_storage", storage)
        options.setdefault("remote_timeout", 1.0)
        return CartReconciliationService(**options)
    return factory


@pytest.fixture
async def cart(make_service) -> CartReconciliationService:
    """Started service in the anonymous state"""
    service = make_service()
    await service.start()
    yield service
    service.close()
