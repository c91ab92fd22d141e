"""
Tests for cart mutations, reads, and remote write-through.
"""
import asyncio
import json
from decimal import Decimal

import pytest

from storefront.exceptions import (
    LimitExceededError,
    ProductNotFoundError,
    ValidationError
)
from storefront.models import MutationStatus, SessionState

LAPTOP = "1"
KEYBOARD = "2"
MOUSE = "3"


class TestAnonymousMutations:
    """Anonymous sessions write through to local storage only"""

    async def test_repeated_adds_merge_into_one_line(self, cart, remote):
        await cart.add_to_cart(KEYBOARD, 2)
        await cart.add_to_cart(KEYBOARD, 3)

        lines = cart.snapshot()
        assert len(lines) == 1
        assert lines[0].product_id == KEYBOARD
        assert lines[0].quantity == 5
        assert cart.get_cart_total() == Decimal("129.50") * 5
        assert remote.calls == []

    async def test_add_snapshots_catalog_data(self, cart):
        result = await cart.add_to_cart(MOUSE)

        assert result.status == MutationStatus.APPLIED
        line = cart.get_line(MOUSE)
        assert line.name == "Aura Wireless Mouse"
        assert line.unit_price == Decimal("79.00")
        assert line.category == "Peripherals"
        assert line.quantity == 1

    async def test_unit_price_is_kept_from_time_of_add(self, cart, catalog):
        await cart.add_to_cart(MOUSE)
        catalog._products[MOUSE] = catalog._products[MOUSE].model_copy(update={"price": Decimal("10.00")})

        await cart.add_to_cart(MOUSE)

        assert cart.get_line(MOUSE).unit_price == Decimal("79.00")
        assert cart.get_cart_total() == Decimal("158.00")

    async def test_mutations_are_persisted_locally(self, cart, storage):
        await cart.add_to_cart(LAPTOP, 1)
        await cart.add_to_cart(MOUSE, 2)

        stored = json.loads(storage.read("storefront-cart"))
        assert [(entry["product_id"], entry["quantity"]) for entry in stored] == [(LAPTOP, 1), (MOUSE, 2)]
        assert stored[0]["unit_price"] == "1499.99"

    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_add_rejects_non_positive_quantity(self, cart, quantity):
        with pytest.raises(ValidationError):
            await cart.add_to_cart(KEYBOARD, quantity)
        assert cart.snapshot() == []

    @pytest.mark.parametrize("quantity", [1.5, "2", True])
    async def test_add_rejects_non_integer_quantity(self, cart, quantity):
        with pytest.raises(ValidationError, match="integer"):
            await cart.add_to_cart(KEYBOARD, quantity)

    async def test_add_unknown_product_is_rejected(self, cart):
        with pytest.raises(ProductNotFoundError):
            await cart.add_to_cart("does-not-exist")
        assert cart.get_item_count() == 0

    async def test_update_to_zero_removes_line(self, cart):
        await cart.add_to_cart(LAPTOP, 1)

        await cart.update_quantity(LAPTOP, 0)

        assert cart.get_item_count() == 0
        assert cart.get_line(LAPTOP) is None

    async def test_update_negative_quantity_removes_line(self, cart):
        await cart.add_to_cart(LAPTOP, 2)
        await cart.update_quantity(LAPTOP, -4)
        assert cart.snapshot() == []

    async def test_update_sets_quantity(self, cart):
        await cart.add_to_cart(MOUSE, 1)
        await cart.update_quantity(MOUSE, 7)
        assert cart.get_line(MOUSE).quantity == 7

    async def test_update_absent_line_is_noop(self, cart, storage):
        result = await cart.update_quantity(MOUSE, 2)

        assert result.status == MutationStatus.APPLIED
        assert cart.snapshot() == []
        assert storage.read("storefront-cart") is None

    async def test_remove_twice_is_same_as_once(self, cart):
        await cart.add_to_cart(LAPTOP)
        await cart.add_to_cart(MOUSE)

        first = await cart.remove_from_cart(LAPTOP)
        after_first = cart.snapshot()
        second = await cart.remove_from_cart(LAPTOP)

        assert first.synced and second.synced
        assert cart.snapshot() == after_first
        assert [line.product_id for line in after_first] == [MOUSE]

    async def test_clear_cart_empties_and_persists(self, cart, storage):
        await cart.add_to_cart(LAPTOP)
        await cart.add_to_cart(MOUSE, 3)

        result = await cart.clear_cart()

        assert result.synced
        assert cart.get_item_count() == 0
        assert json.loads(storage.read("storefront-cart")) == []

    async def test_snapshot_is_a_copy(self, cart):
        await cart.add_to_cart(MOUSE, 2)

        lines = cart.snapshot()
        lines[0].quantity = 50

        assert cart.get_line(MOUSE).quantity == 2


class TestReads:

    async def test_total_and_count_over_several_lines(self, cart):
        await cart.add_to_cart(KEYBOARD, 2)
        await cart.add_to_cart(MOUSE, 1)
        await cart.add_to_cart("7", 3)

        assert cart.get_cart_total() == Decimal("129.50") * 2 + Decimal("79.00") + Decimal("99.99") * 3
        assert cart.get_item_count() == 6

    async def test_empty_cart_totals(self, cart):
        assert cart.get_cart_total() == Decimal("0")
        assert cart.get_item_count() == 0


class TestLimits:

    async def test_quantity_limit_leaves_line_unchanged(self, make_service):
        service = make_service(max_quantity=5)
        await service.start()
        await service.add_to_cart(MOUSE, 3)

        with pytest.raises(LimitExceededError):
            await service.add_to_cart(MOUSE, 3)
        with pytest.raises(LimitExceededError):
            await service.update_quantity(MOUSE, 6)

        assert service.get_line(MOUSE).quantity == 3

    async def test_distinct_product_limit(self, make_service):
        service = make_service(max_items=2)
        await service.start()
        await service.add_to_cart(LAPTOP)
        await service.add_to_cart(KEYBOARD)

        with pytest.raises(LimitExceededError):
            await service.add_to_cart(MOUSE)

        # More of an existing product is still allowed
        await service.add_to_cart(LAPTOP)
        assert service.get_item_count() == 3

    def test_unknown_merge_policy_is_rejected(self, make_service):
        with pytest.raises(ValidationError):
            make_service(merge_policy="union")


class TestAuthenticatedWriteThrough:
    """Signed-in sessions keep one remote row per product in step with the snapshot"""

    async def test_add_inserts_then_updates_same_row(self, cart, identity, remote):
        await identity.sign_in("alice")

        await cart.add_to_cart(KEYBOARD, 1)
        await cart.add_to_cart(KEYBOARD, 2)

        assert cart.state is SessionState.AUTHENTICATED
        assert remote.row_count("alice", KEYBOARD) == 1
        assert remote.quantities("alice") == {KEYBOARD: 3}
        assert remote.calls.count("insert_cart_row") == 1

    async def test_authenticated_changes_do_not_touch_local_storage(self, cart, identity, storage):
        await identity.sign_in("alice")
        await cart.add_to_cart(MOUSE)
        assert storage.read("storefront-cart") is None

    async def test_remote_failure_keeps_local_change(self, cart, identity, remote):
        await identity.sign_in("alice")
        remote.fail_operations.add("insert_cart_row")

        result = await cart.add_to_cart(MOUSE, 2)

        assert result.status == MutationStatus.APPLIED_LOCAL_ONLY
        assert "insert_cart_row failed" in result.reason
        assert cart.get_line(MOUSE).quantity == 2
        assert remote.quantities("alice") == {}

    async def test_remote_converges_after_outage(self, cart, identity, remote):
        await identity.sign_in("alice")
        remote.fail_operations.add("insert_cart_row")
        await cart.add_to_cart(MOUSE, 2)

        remote.fail_operations.clear()
        result = await cart.add_to_cart(MOUSE, 1)

        assert result.synced
        assert remote.quantities("alice") == {MOUSE: 3}

    async def test_slow_remote_times_out_as_local_only(self, make_service, identity, remote):
        service = make_service(remote_timeout=0.01)
        await service.start()
        await identity.sign_in("alice")
        remote.insert_delay = 0.5

        result = await service.add_to_cart(LAPTOP)

        assert result.status == MutationStatus.APPLIED_LOCAL_ONLY
        assert "timed out" in result.reason
        assert service.get_item_count() == 1

    async def test_duplicate_rows_are_collapsed_on_write(self, cart, identity, remote):
        remote.seed_row("alice", MOUSE, 1)
        remote.seed_row("alice", MOUSE, 2)
        await identity.sign_in("alice")
        assert cart.get_line(MOUSE).quantity == 3

        await cart.update_quantity(MOUSE, 5)

        assert remote.row_count("alice", MOUSE) == 1
        assert remote.quantities("alice") == {MOUSE: 5}

    async def test_row_deleted_elsewhere_is_reinserted(self, cart, identity, remote):
        await identity.sign_in("alice")
        await cart.add_to_cart(LAPTOP, 1)
        remote.rows["alice"].clear()

        result = await cart.update_quantity(LAPTOP, 4)

        assert result.synced
        assert remote.quantities("alice") == {LAPTOP: 4}

    async def test_remove_deletes_remote_row(self, cart, identity, remote):
        await identity.sign_in("alice")
        await cart.add_to_cart(LAPTOP)
        await cart.add_to_cart(MOUSE)

        await cart.remove_from_cart(LAPTOP)

        assert remote.quantities("alice") == {MOUSE: 1}

    async def test_clear_deletes_all_remote_rows(self, cart, identity, remote):
        await identity.sign_in("alice")
        await cart.add_to_cart(LAPTOP)
        await cart.add_to_cart(MOUSE)

        result = await cart.clear_cart()

        assert result.synced
        assert remote.rows.get("alice") is None
        assert cart.get_item_count() == 0

    async def test_clear_with_remote_failure_still_clears_locally(self, cart, identity, remote):
        await identity.sign_in("alice")
        await cart.add_to_cart(LAPTOP)
        remote.fail_operations.add("delete_all_cart_rows")

        result = await cart.clear_cart()

        assert result.status == MutationStatus.APPLIED_LOCAL_ONLY
        assert cart.snapshot() == []
        assert remote.quantities("alice") == {LAPTOP: 1}


class TestConcurrentMutations:
    """Overlapping mutations on one signed-in session"""

    async def _line_without_remote_row(self, cart, identity, remote):
        await identity.sign_in("alice")
        remote.fail_operations.add("insert_cart_row")
        await cart.add_to_cart(KEYBOARD, 1)
        remote.fail_operations.clear()

    async def test_overlapping_writes_leave_one_row_with_latest_quantity(self, cart, identity, remote):
        """
        Validates:
        - Writes queue behind the slow first insert instead of inserting again
        - The remote row ends at the latest snapshot quantity
        """
        # Arrange
        await self._line_without_remote_row(cart, identity, remote)
        remote.insert_delay = 0.05

        # Act
        results = await asyncio.gather(
            cart.add_to_cart(KEYBOARD, 1),
            cart.add_to_cart(KEYBOARD, 2),
            cart.update_quantity(KEYBOARD, 7)
        )

        # Assert
        assert all(result.synced for result in results)
        assert cart.get_line(KEYBOARD).quantity == 7
        assert remote.row_count("alice", KEYBOARD) == 1
        assert remote.quantities("alice") == {KEYBOARD: 7}

    async def test_write_queued_across_sign_out_is_dropped(self, cart, identity, remote):
        # Arrange
        await self._line_without_remote_row(cart, identity, remote)
        remote.insert_delay = 0.05
        first = asyncio.create_task(cart.add_to_cart(KEYBOARD, 1))
        queued = asyncio.create_task(cart.add_to_cart(KEYBOARD, 1))
        await remote.insert_started.wait()

        # Act
        await identity.sign_out()
        first_result, queued_result = await asyncio.gather(first, queued)

        # Assert
        assert first_result.synced
        assert queued_result.status == MutationStatus.APPLIED_LOCAL_ONLY
        assert "identity changed" in queued_result.reason
        assert cart.state is SessionState.ANONYMOUS
        assert remote.quantities("alice") == {KEYBOARD: 2}
