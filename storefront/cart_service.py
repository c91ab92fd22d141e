"""
Cart reconciliation service.

Owns one cart snapshot per session and keeps it consistent with the backing
store that matches the session identity: local storage while anonymous, the
remote store once a user is signed in.

Identity transitions (Uninitialized -> Anonymous <-> Authenticated) each bump
a generation counter and run exactly one hydration; results of a hydration
that was overtaken by a newer transition are discarded. Mutations apply to
the in-memory snapshot first and are then written to the backing store.
Remote writes for a session are serialized through one lock and always write
the product's current snapshot quantity, so the remote rows converge to the
latest local state even when individual writes fail. A write made before the
user's remote rows are known (the saved cart failed to load) lists them
first; a write made while the saved cart is still loading stays local.
"""
import asyncio
import json
import logging
from decimal import Decimal
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as ModelValidationError

from storefront.catalog import ProductCatalog
from storefront.checkout_service import RecordedLine, record_purchases
from storefront.config import Config
from storefront.exceptions import (
    CartException,
    CartRowNotFoundError,
    LimitExceededError,
    NotAuthenticatedError,
    PartialCheckoutFailure,
    ProductNotFoundError,
    RemoteUnavailableError,
    ValidationError
)
from storefront.identity import IdentityProvider
from storefront.local_storage import LocalStorage
from storefront.log import hash_identifier
from storefront.models import (
    CartLine,
    CheckoutResult,
    HydrationResult,
    Identity,
    MutationResult,
    SessionState
)
from storefront.remote_store import RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MERGE_POLICIES = ("discard", "sum", "last-write-wins")


class CartReconciliationService:
    """Service for cart operations on one session"""

    def __init__(
        self,
        identity_provider: IdentityProvider,
        remote_store: RemoteStore,
        catalog: ProductCatalog,
        local_storage: LocalStorage,
        local_key: Optional[str] = None,
        remote_timeout: Optional[float] = None,
        max_items: Optional[int] = None,
        max_quantity: Optional[int] = None,
        retain_failed_lines: Optional[bool] = None,
        merge_policy: Optional[str] = None
    ):
        self.identity_provider = identity_provider
        self.remote_store = remote_store
        self.catalog = catalog
        self.local_storage = local_storage

        self.local_key = local_key or Config.LOCAL_CART_KEY
        self.remote_timeout = remote_timeout if remote_timeout is not None else Config.REMOTE_TIMEOUT_SECONDS
        self.max_items = max_items or Config.MAX_ITEMS_PER_CART
        self.max_quantity = max_quantity or Config.MAX_QUANTITY_PER_ITEM
        self.retain_failed_lines = (
            Config.CHECKOUT_RETAIN_FAILED_LINES if retain_failed_lines is None else retain_failed_lines
        )
        self.merge_policy = merge_policy or Config.MERGE_ON_LOGIN
        if self.merge_policy not in MERGE_POLICIES:
            raise ValidationError(f"merge_policy must be one of {', '.join(MERGE_POLICIES)}")

        self._lines: Dict[str, CartLine] = {}
        # Remote row ids per product; the first id is the row we keep updating
        self._row_ids: Dict[str, List[str]] = {}
        # False until _row_ids reflects the signed-in user's remote rows
        self._rows_known = False
        # True while a remote hydration for the current generation is in flight
        self._loading = False
        # Bumped whenever hydration replaces the snapshot
        self._snapshot_version = 0
        self._identity: Optional[Identity] = None
        self._state = SessionState.UNINITIALIZED
        self._generation = 0
        self._remote_lock = asyncio.Lock()
        self._unsubscribe = None
        self.last_hydration: Optional[HydrationResult] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def generation(self) -> int:
        return self._generation

    def _is_authenticated(self) -> bool:
        return self._identity is not None and self._identity.is_authenticated

    def _log_extra(self, **extra) -> Dict:
        user_id = self._identity.user_id if self._identity else None
        return {"hashed_user_id": hash_identifier(user_id), "generation": self._generation, **extra}

    # Reads

    def snapshot(self) -> List[CartLine]:
        """Published copy of the current lines"""
        return [line.model_copy() for line in self._lines.values()]

    def get_line(self, product_id: str) -> Optional[CartLine]:
        line = self._lines.get(product_id)
        return line.model_copy() if line is not None else None

    def get_cart_total(self) -> Decimal:
        return sum((line.line_total for line in self._lines.values()), Decimal("0"))

    def get_item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    # Lifecycle and hydration

    async def start(self) -> HydrationResult:
        """Subscribe to identity changes and run the startup hydration"""
        if self._unsubscribe is None:
            self._unsubscribe = self.identity_provider.on_identity_change(self._on_identity_change)
        return await self.hydrate()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def hydrate(self) -> HydrationResult:
        """Reload the snapshot from the store matching the current identity"""
        identity = await self.identity_provider.get_current_identity()
        return self._remember(await self._hydrate_for(identity))

    async def _on_identity_change(self, identity: Identity) -> None:
        if self._state is not SessionState.UNINITIALIZED and identity == self._identity:
            logger.debug("Identity notification without change, skipping hydration")
            return
        self._remember(await self._hydrate_for(identity))

    def _remember(self, result: HydrationResult) -> HydrationResult:
        if not result.stale:
            self.last_hydration = result
        return result

    async def _hydrate_for(self, identity: Identity) -> HydrationResult:
        self._generation += 1
        generation = self._generation
        anonymous_lines = dict(self._lines) if self._state is SessionState.ANONYMOUS else {}
        self._identity = identity
        self._row_ids = {}
        self._rows_known = False
        self._loading = False

        if not identity.is_authenticated:
            self._state = SessionState.ANONYMOUS
            lines, warning = self._read_local()
            self._replace_snapshot(lines)
            logger.info(
                f"Hydrated anonymous cart with {len(lines)} line(s)",
                extra=self._log_extra(source="local")
            )
            return HydrationResult(
                source="local",
                warning=warning,
                line_count=len(lines),
                generation=generation
            )

        self._state = SessionState.AUTHENTICATED
        user_id = identity.user_id
        self._loading = True
        try:
            lines, row_ids = await self._fetch_remote(user_id)
        except RemoteUnavailableError as e:
            if generation != self._generation:
                return HydrationResult(source="remote", applied=False, stale=True, generation=generation)
            # Row ids stay unknown; the next remote write reloads them first
            self._loading = False
            warning = f"Could not load saved cart: {e}"
            logger.warning(warning, extra=self._log_extra(source="remote"))
            return HydrationResult(
                source="remote",
                applied=False,
                warning=warning,
                line_count=len(self._lines),
                generation=generation
            )

        if generation != self._generation:
            logger.info(
                "Discarding stale cart hydration",
                extra={"hashed_user_id": hash_identifier(user_id), "generation": generation}
            )
            return HydrationResult(source="remote", applied=False, stale=True, generation=generation)

        self._replace_snapshot(lines)
        self._row_ids = row_ids
        self._rows_known = True
        self._loading = False

        warning = None
        if anonymous_lines and self.merge_policy != "discard":
            warning = await self._merge_anonymous(user_id, anonymous_lines, generation)

        logger.info(
            f"Hydrated cart with {len(self._lines)} line(s)",
            extra=self._log_extra(source="remote")
        )
        return HydrationResult(
            source="remote",
            warning=warning,
            line_count=len(self._lines),
            generation=generation
        )

    def _replace_snapshot(self, lines: Dict[str, CartLine]) -> None:
        self._lines = lines
        self._snapshot_version += 1

    def _read_local(self) -> Tuple[Dict[str, CartLine], Optional[str]]:
        try:
            raw = self.local_storage.read(self.local_key)
        except OSError as e:
            return {}, f"Stored cart could not be read: {e}"
        if not raw:
            return {}, None

        try:
            entries = json.loads(raw)
        except ValueError:
            logger.warning("Stored cart is not valid JSON, starting empty")
            return {}, "Stored cart was unreadable and has been reset"
        if not isinstance(entries, list):
            logger.warning("Stored cart is not a list, starting empty")
            return {}, "Stored cart was unreadable and has been reset"

        lines: Dict[str, CartLine] = {}
        skipped = 0
        for entry in entries:
            try:
                line = CartLine.model_validate(entry)
            except ModelValidationError:
                skipped += 1
                continue
            existing = lines.get(line.product_id)
            if existing is not None:
                line = existing.model_copy(update={"quantity": existing.quantity + line.quantity})
            lines[line.product_id] = line

        warning = None
        if skipped:
            warning = f"Skipped {skipped} unreadable cart line(s)"
            logger.warning(warning)
        return lines, warning

    def _persist_local(self) -> None:
        payload = [line.model_dump(mode="json") for line in self._lines.values()]
        self.local_storage.write(self.local_key, json.dumps(payload))

    async def _fetch_remote(self, user_id: str) -> Tuple[Dict[str, CartLine], Dict[str, List[str]]]:
        rows = await self._remote(self.remote_store.list_cart_rows(user_id))

        lines: Dict[str, CartLine] = {}
        row_ids: Dict[str, List[str]] = {}
        for row in rows:
            if row.quantity < 1:
                logger.warning(f"Ignoring cart row {row.id} with quantity {row.quantity}")
                continue

            existing = lines.get(row.product_id)
            if existing is not None:
                # Duplicate rows for one product collapse into one line
                lines[row.product_id] = existing.model_copy(
                    update={"quantity": existing.quantity + row.quantity}
                )
                row_ids[row.product_id].append(row.id)
                continue

            product = await self._remote(self.catalog.get_product_by_id(row.product_id))
            if product is None:
                logger.warning(f"Dropping cart row for unknown product {row.product_id}")
                continue
            lines[row.product_id] = CartLine.from_product(product, row.quantity)
            row_ids[row.product_id] = [row.id]

        return lines, row_ids

    async def _merge_anonymous(
        self,
        user_id: str,
        anonymous_lines: Dict[str, CartLine],
        generation: int
    ) -> Optional[str]:
        changed = []
        for product_id, anonymous in anonymous_lines.items():
            current = self._lines.get(product_id)
            if current is None:
                if len(self._lines) >= self.max_items:
                    logger.warning(f"Cart full, not merging product {product_id}")
                    continue
                self._lines[product_id] = anonymous
            elif self.merge_policy == "sum":
                quantity = min(current.quantity + anonymous.quantity, self.max_quantity)
                self._lines[product_id] = current.model_copy(update={"quantity": quantity})
            else:
                self._lines[product_id] = anonymous
            changed.append(product_id)

        self.local_storage.write(self.local_key, "[]")

        unsaved = []
        version = self._snapshot_version
        for product_id in changed:
            result = await self._sync_product(user_id, product_id, generation, version)
            if not result.synced:
                unsaved.append(product_id)

        logger.info(
            f"Merged {len(changed)} anonymous line(s) using '{self.merge_policy}'",
            extra=self._log_extra(unsaved=len(unsaved))
        )
        if unsaved:
            return f"{len(unsaved)} merged item(s) were not saved: {', '.join(unsaved)}"
        return None

    # Remote writes

    async def _remote(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.remote_timeout)
        except asyncio.TimeoutError as e:
            raise RemoteUnavailableError(
                f"Remote call timed out after {self.remote_timeout}s"
            ) from e

    async def _commit(self, product_id: str) -> MutationResult:
        if not self._is_authenticated():
            self._persist_local()
            return MutationResult.applied()
        return await self._sync_product(
            self._identity.user_id, product_id, self._generation, self._snapshot_version
        )

    async def _sync_product(
        self,
        user_id: str,
        product_id: str,
        generation: int,
        version: int
    ) -> MutationResult:
        """Write the product's current snapshot state to the remote store"""
        async with self._remote_lock:
            if generation != self._generation:
                return MutationResult.local_only("Session identity changed before the change was saved")
            if version != self._snapshot_version:
                return MutationResult.local_only("Cart was reloaded before the change was saved")
            if self._loading:
                return MutationResult.local_only("Saved cart is still loading")

            try:
                if not self._rows_known:
                    await self._reload_row_ids(user_id)
                line = self._lines.get(product_id)
                row_ids = self._row_ids.setdefault(product_id, [])
                if line is None:
                    while row_ids:
                        await self._remote(self.remote_store.delete_cart_row(row_ids[0]))
                        row_ids.pop(0)
                else:
                    await self._write_line(user_id, line, row_ids)
            except CartException as e:
                logger.warning(
                    f"Cart change for product {product_id} kept locally only: {e}",
                    extra={"hashed_user_id": hash_identifier(user_id), "error_type": type(e).__name__}
                )
                return MutationResult.local_only(str(e))

        return MutationResult.applied()

    async def _reload_row_ids(self, user_id: str) -> None:
        """Learn which remote rows exist before writing over them"""
        rows = await self._remote(self.remote_store.list_cart_rows(user_id))
        row_ids: Dict[str, List[str]] = {}
        for row in rows:
            row_ids.setdefault(row.product_id, []).append(row.id)
        self._row_ids = row_ids
        self._rows_known = True
        logger.info(
            f"Reloaded {len(rows)} remote cart row(s) before saving",
            extra={"hashed_user_id": hash_identifier(user_id)}
        )

    async def _write_line(self, user_id: str, line: CartLine, row_ids: List[str]) -> None:
        while row_ids:
            try:
                await self._remote(
                    self.remote_store.update_cart_row_quantity(row_ids[0], line.quantity)
                )
                break
            except CartRowNotFoundError:
                logger.info(f"Cart row {row_ids[0]} no longer exists remotely")
                row_ids.pop(0)
        else:
            row = await self._remote(
                self.remote_store.insert_cart_row(user_id, line.product_id, line.quantity)
            )
            row_ids.append(row.id)

        # Collapse duplicate rows onto the one just written
        while len(row_ids) > 1:
            await self._remote(self.remote_store.delete_cart_row(row_ids[-1]))
            row_ids.pop()

    # Mutations

    @staticmethod
    def _check_integer(quantity) -> None:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be an integer")

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> MutationResult:
        """
        Add quantity of a product, creating the line if needed.

        A new line snapshots the product's current price and metadata. The
        in-memory change is kept even when the remote write fails.

        Returns:
            MutationResult telling whether the backing store took the change
        """
        self._check_integer(quantity)
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        product = None
        if product_id not in self._lines:
            product = await self._remote(self.catalog.get_product_by_id(product_id))
            if product is None:
                raise ProductNotFoundError(product_id)

        existing = self._lines.get(product_id)
        new_quantity = quantity + (existing.quantity if existing else 0)
        if new_quantity > self.max_quantity:
            raise LimitExceededError(
                f"Quantity {new_quantity} exceeds maximum {self.max_quantity}"
            )
        if existing is None and len(self._lines) >= self.max_items:
            raise LimitExceededError(f"Cart exceeds maximum items {self.max_items}")

        if existing is None:
            self._lines[product_id] = CartLine.from_product(product, quantity)
        else:
            self._lines[product_id] = existing.model_copy(update={"quantity": new_quantity})

        return await self._commit(product_id)

    async def remove_from_cart(self, product_id: str) -> MutationResult:
        """Remove a line; removing an absent product is a no-op"""
        if product_id not in self._lines:
            return MutationResult.applied()
        del self._lines[product_id]
        return await self._commit(product_id)

    async def update_quantity(self, product_id: str, quantity: int) -> MutationResult:
        """Set a line's quantity; zero or less removes the line"""
        self._check_integer(quantity)
        if quantity <= 0:
            return await self.remove_from_cart(product_id)

        existing = self._lines.get(product_id)
        if existing is None:
            # Nothing to update; behaves like removing an absent product
            return MutationResult.applied()
        if quantity > self.max_quantity:
            raise LimitExceededError(f"Quantity {quantity} exceeds maximum {self.max_quantity}")

        self._lines[product_id] = existing.model_copy(update={"quantity": quantity})
        return await self._commit(product_id)

    async def clear_cart(self) -> MutationResult:
        """Empty the cart; the local view is cleared even if the remote delete fails"""
        result = MutationResult.applied()
        generation = self._generation
        rows_known = True

        if self._is_authenticated():
            user_id = self._identity.user_id
            async with self._remote_lock:
                if self._loading:
                    result = MutationResult.local_only("Saved cart is still loading")
                else:
                    try:
                        await self._remote(self.remote_store.delete_all_cart_rows(user_id))
                    except RemoteUnavailableError as e:
                        logger.warning(
                            f"Remote cart not cleared: {e}",
                            extra={"hashed_user_id": hash_identifier(user_id)}
                        )
                        result = MutationResult.local_only(str(e))
                        rows_known = False

        if generation != self._generation:
            return MutationResult.local_only("Session identity changed while clearing the cart")

        self._lines = {}
        if not self._loading:
            # Rows left behind by a failed delete are reloaded before the next write
            self._row_ids = {}
            self._rows_known = rows_known
        if not self._is_authenticated():
            self._persist_local()
        return result

    # Checkout

    async def checkout(self) -> CheckoutResult:
        """
        Record one purchase per cart line, then settle the cart.

        Raises:
            NotAuthenticatedError: if the session is not signed in
            ValidationError: if the cart is empty
            PartialCheckoutFailure: if some records failed and failed lines
                are retained (the default); recorded lines are removed
        """
        if not self._is_authenticated():
            raise NotAuthenticatedError()
        if self._loading:
            raise RemoteUnavailableError("Saved cart is still loading")

        lines = self.snapshot()
        if not lines:
            raise ValidationError("Cannot checkout empty cart")

        user_id = self._identity.user_id
        generation = self._generation

        outcome = await record_purchases(
            self.remote_store,
            user_id,
            lines,
            timeout=self.remote_timeout
        )

        records = [recorded.record for recorded in outcome.recorded]
        if not outcome.failed:
            message = "Order placed successfully. Cart has been cleared."
        elif self.retain_failed_lines:
            message = f"Checkout failed for {len(outcome.failed)} item(s); they are still in your cart."
        else:
            message = f"Order placed. {len(outcome.failed)} item(s) could not be recorded."

        result = CheckoutResult(
            order_id=outcome.order_id,
            user_id=user_id,
            recorded=records,
            failed=outcome.failed,
            total=sum((record.total_price for record in records), Decimal("0")),
            message=message
        )

        retain = bool(outcome.failed) and self.retain_failed_lines
        if generation != self._generation:
            logger.warning(
                "Session identity changed during checkout, cart left untouched",
                extra={"hashed_user_id": hash_identifier(user_id), "order_id": outcome.order_id}
            )
        elif retain:
            await self._settle_recorded(outcome.recorded)
        else:
            await self.clear_cart()

        if retain:
            raise PartialCheckoutFailure(result)
        return result

    async def _settle_recorded(self, recorded: List[RecordedLine]) -> None:
        """Take recorded quantities out of the cart, leaving failed lines in place"""
        touched = []
        for line, _record in recorded:
            current = self._lines.get(line.product_id)
            if current is None:
                continue
            remaining = current.quantity - line.quantity
            if remaining > 0:
                self._lines[line.product_id] = current.model_copy(update={"quantity": remaining})
            else:
                del self._lines[line.product_id]
            touched.append(line.product_id)

        for product_id in touched:
            result = await self._commit(product_id)
            if not result.synced:
                logger.warning(f"Purchased product {product_id} still in remote cart: {result.reason}")
