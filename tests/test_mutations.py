"""Tests for committed line item mutations and the optimistic update path."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from src.invoicing.mutations import LineItemMutations
from src.invoicing.query_cache import QueryCache, query_keys
from src.invoicing.reconciler import TotalsReconciler
from src.invoicing.storage.invoice_repository import InvoiceRepository
from src.invoicing.storage.line_item_store import SqliteLineItemStore
from src.shared.errors import AppErrors, RollbackFailure, StorageError


@pytest.fixture()
def repo(tmp_path):
    return InvoiceRepository(tmp_path / "invoices.sqlite")


@pytest.fixture()
def store(repo):
    return SqliteLineItemStore(repo)


@pytest.fixture()
def cache():
    return QueryCache()


@pytest.fixture()
def reconciler(store, cache):
    return TotalsReconciler(store, cache, batch_delay=0, single_edit_delay=0)


@pytest.fixture()
def messages():
    return []


@pytest.fixture()
def mutations(store, cache, reconciler, messages):
    return LineItemMutations(store, cache, reconciler, notify=lambda level, msg: messages.append((level, msg)))


@pytest.fixture()
def invoice(repo):
    return repo.create_invoice("INV-3", items=[
        {"title": "Pulled Pork", "category": "proteins", "quantity": 20, "unit_price_cents": 1200},
        {"title": "Cornbread", "category": "sides", "quantity": 40, "unit_price_cents": 150},
    ])


class TestOptimisticUpdate:
    @pytest.mark.asyncio
    async def test_success_persists_and_reconciles(self, mutations, repo, cache, invoice):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        item = repo.get_line_items(invoice.id)[0]

        updated = await mutations.update_line_item(invoice.id, item.id, {"quantity": 25})

        assert updated.quantity == 25
        assert updated.total_price_cents == 30000
        assert repo.get_invoice(invoice.id).subtotal_cents == 36000
        cached = {i.id: i for i in cache.get_data(key)}
        assert cached[item.id].quantity == 25
        assert cache.is_stale(key)

    @pytest.mark.asyncio
    async def test_success_uses_single_edit_window(self, mutations, reconciler, invoice, repo):
        item = repo.get_line_items(invoice.id)[0]
        with patch.object(reconciler, "reconcile_single_edit", AsyncMock()) as single, \
                patch.object(reconciler, "reconcile", AsyncMock()) as batch:
            await mutations.update_line_item(invoice.id, item.id, {"description": "Carolina style"})
        single.assert_awaited_once_with(invoice.id, True)
        batch.assert_not_called()

    @pytest.mark.asyncio
    async def test_optimistic_value_visible_during_write(self, mutations, store, cache, repo, invoice):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        item = repo.get_line_items(invoice.id)[1]
        seen = {}
        real_update = store.update

        async def spying_update(item_id, changes):
            seen["cached"] = next(i for i in cache.get_data(key) if i.id == item_id)
            seen["payload"] = changes
            return await real_update(item_id, changes)

        with patch.object(store, "update", spying_update):
            await mutations.update_line_item(invoice.id, item.id, {"unit_price_cents": 175})

        assert seen["cached"].unit_price_cents == 175
        assert seen["cached"].total_price_cents == 7000
        assert seen["payload"]["total_price_cents"] == 7000

    @pytest.mark.asyncio
    async def test_failure_restores_snapshot_exactly(self, mutations, store, reconciler, cache, repo, invoice, messages):
        key = query_keys.line_items(invoice.id)
        original = repo.get_line_items(invoice.id)
        cache.set_data(key, original)
        before = [vars(i).copy() for i in original]

        with patch.object(store, "update", AsyncMock(side_effect=StorageError("row locked", operation="update"))), \
                patch.object(reconciler, "reconcile_single_edit", AsyncMock()) as single:
            with pytest.raises(StorageError):
                await mutations.update_line_item(invoice.id, original[0].id, {"quantity": 99, "description": "x"})

        assert [vars(i) for i in cache.get_data(key)] == before
        assert not cache.is_stale(key)
        single.assert_not_called()
        assert messages == [("error", AppErrors.UPDATE_REVERTED)]
        assert repo.get_line_item(original[0].id).quantity == 20

    @pytest.mark.asyncio
    async def test_failure_without_cached_collection_leaves_cache_empty(self, mutations, store, cache, invoice, repo):
        item = repo.get_line_items(invoice.id)[0]
        with patch.object(store, "update", AsyncMock(side_effect=StorageError("down"))):
            with pytest.raises(StorageError):
                await mutations.update_line_item(invoice.id, item.id, {"quantity": 2})
        assert not cache.has(query_keys.line_items(invoice.id))

    @pytest.mark.asyncio
    async def test_in_flight_read_cannot_clobber_optimistic_value(self, mutations, cache, repo, invoice):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        cache.invalidate(key)
        item = repo.get_line_items(invoice.id)[0]

        async def slow_read():
            await asyncio.sleep(10)
            return ["stale"]

        read = asyncio.create_task(cache.fetch(key, slow_read))
        await asyncio.sleep(0)
        assert cache.is_fetching(key)

        await mutations.update_line_item(invoice.id, item.id, {"quantity": 21})

        assert await read != ["stale"]
        assert not cache.is_fetching(key)
        cached = {i.id: i for i in cache.get_data(key)}
        assert cached[item.id].quantity == 21

    @pytest.mark.asyncio
    async def test_rollback_failure_falls_back_to_refetch(self, mutations, store, cache, repo, invoice):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        item = repo.get_line_items(invoice.id)[0]

        with patch.object(store, "update", AsyncMock(side_effect=StorageError("down"))), \
                patch.object(cache, "restore_entry", side_effect=RuntimeError("cache poisoned")):
            with pytest.raises(RollbackFailure):
                await mutations.update_line_item(invoice.id, item.id, {"quantity": 2})

        assert cache.is_stale(key)

    @pytest.mark.asyncio
    async def test_failure_restores_stale_entry_as_stale(self, mutations, store, cache, repo, invoice):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        cache.invalidate(key)
        before = cache.get_entry(key)

        with patch.object(store, "update", AsyncMock(side_effect=StorageError("down"))):
            with pytest.raises(StorageError):
                await mutations.update_line_item(invoice.id, before.data[0].id, {"quantity": 5})

        after = cache.get_entry(key)
        assert after.is_stale is True
        assert after.updated_at == before.updated_at
        assert [vars(i) for i in after.data] == [vars(i) for i in before.data]


class TestUpdateValues:
    @pytest.mark.asyncio
    async def test_numeric_strings_are_stored_as_ints(self, mutations, cache, repo, invoice):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        item = repo.get_line_items(invoice.id)[0]

        updated = await mutations.update_line_item(invoice.id, item.id, {"quantity": "3"})

        assert updated.quantity == 3
        assert updated.total_price_cents == 3600
        cached = {i.id: i for i in cache.get_data(key)}
        assert cached[item.id].total_price_cents == 3600
        assert repo.get_invoice(invoice.id).subtotal_cents == 9600

    @pytest.mark.asyncio
    @pytest.mark.parametrize("changes", [
        {"quantity": 2.5},
        {"quantity": "three"},
        {"quantity": True},
        {"unit_price_cents": None, "quantity": "1e3"},
    ])
    async def test_non_integer_values_rejected_before_any_change(self, mutations, store, cache, repo, invoice, changes):
        key = query_keys.line_items(invoice.id)
        cache.set_data(key, repo.get_line_items(invoice.id))
        before = [vars(i).copy() for i in cache.get_data(key)]
        item = repo.get_line_items(invoice.id)[0]

        with patch.object(store, "update", AsyncMock()) as update:
            with pytest.raises(ValueError):
                await mutations.update_line_item(invoice.id, item.id, changes)

        update.assert_not_called()
        assert [vars(i) for i in cache.get_data(key)] == before

    @pytest.mark.asyncio
    async def test_invalid_values_rejected(self, mutations, repo, invoice):
        item = repo.get_line_items(invoice.id)[0]
        with pytest.raises(ValueError, match="Quantity must be greater than 0"):
            await mutations.update_line_item(invoice.id, item.id, {"quantity": -4})
        with pytest.raises(ValueError, match="Unit price cannot be negative"):
            await mutations.update_line_item(invoice.id, item.id, {"unit_price_cents": -1})
        assert repo.get_line_item(item.id).quantity == 20


class TestStructuralMutations:
    @pytest.mark.asyncio
    async def test_create_reconciles_totals(self, mutations, repo, cache, invoice):
        cache.set_data(query_keys.invoice(invoice.id), invoice)
        created = await mutations.create_line_items(invoice.id, [
            {"title": "Sweet Tea", "category": "beverages", "quantity": 10, "unit_price_cents": 200},
        ])
        assert [i.title for i in created] == ["Sweet Tea"]
        assert repo.get_invoice(invoice.id).subtotal_cents == 32000
        assert cache.is_stale(query_keys.invoice(invoice.id))

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_items(self, mutations, store, invoice):
        with patch.object(store, "create", AsyncMock()) as create:
            with pytest.raises(ValueError, match="Title is required"):
                await mutations.create_line_items(invoice.id, [{"title": "", "quantity": 1, "unit_price_cents": 100}])
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_reconciles_totals(self, mutations, repo, invoice):
        item = repo.get_line_items(invoice.id)[1]
        await mutations.delete_line_item(invoice.id, item.id)
        assert repo.get_invoice(invoice.id).subtotal_cents == 24000

    @pytest.mark.asyncio
    async def test_replace_reconciles_totals(self, mutations, repo, invoice):
        replaced = await mutations.replace_line_items(invoice.id, [
            {"title": "Buffet Package", "category": "package", "quantity": 50, "unit_price_cents": 2500},
        ])
        assert len(replaced) == 1
        assert [i.title for i in repo.get_line_items(invoice.id)] == ["Buffet Package"]
        assert repo.get_invoice(invoice.id).subtotal_cents == 125000

    @pytest.mark.asyncio
    async def test_replace_allows_negative_discount_line(self, mutations, repo, invoice):
        await mutations.replace_line_items(invoice.id, [
            {"title": "Buffet", "category": "package", "quantity": 1, "unit_price_cents": 10000},
            {"title": "Loyalty", "category": "discount", "quantity": 1, "unit_price_cents": -1000},
        ])
        assert repo.get_invoice(invoice.id).subtotal_cents == 9000

    @pytest.mark.asyncio
    async def test_update_notes_reconciles(self, mutations, cache, repo, invoice):
        cache.set_data(query_keys.invoice(invoice.id), invoice)
        updated = await mutations.update_invoice_notes(invoice.id, customer_notes="Deliver to dock B")
        assert updated.notes == "Deliver to dock B"
        assert repo.get_invoice(invoice.id).notes == "Deliver to dock B"
        assert cache.is_stale(query_keys.invoice(invoice.id))

    @pytest.mark.asyncio
    async def test_failed_write_skips_reconciler(self, mutations, store, reconciler, invoice):
        with patch.object(store, "delete", AsyncMock(side_effect=StorageError("gone", operation="delete"))), \
                patch.object(reconciler, "reconcile", AsyncMock()) as reconcile:
            with pytest.raises(StorageError):
                await mutations.delete_line_item(invoice.id, "missing")
        reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_recalculate_has_no_wait(self, mutations, reconciler, invoice):
        with patch.object(reconciler, "reconcile", AsyncMock()) as reconcile:
            await mutations.recalculate(invoice.id)
        reconcile.assert_awaited_once_with(invoice.id, delay=0, invalidate_milestones=True)

    @pytest.mark.asyncio
    async def test_milestones_left_alone_when_disabled(self, store, cache, reconciler, repo, invoice):
        mutations = LineItemMutations(store, cache, reconciler, invalidate_milestones=False)
        cache.set_data(query_keys.payment_milestones(invoice.id), ["deposit"])
        await mutations.recalculate(invoice.id)
        assert not cache.is_stale(query_keys.payment_milestones(invoice.id))


class TestTemplates:
    @pytest.mark.asyncio
    async def test_add_service_fee(self, mutations, repo, invoice):
        item = await mutations.add_template_item(invoice.id, "service_fee")
        assert (item.title, item.category, item.quantity, item.total_price_cents) == ("Service Fee", "service", 1, 15000)
        assert repo.get_invoice(invoice.id).subtotal_cents == 45000

    @pytest.mark.asyncio
    async def test_per_guest_template_uses_guest_count(self, mutations, invoice):
        item = await mutations.add_template_item(invoice.id, "per_person_catering", guest_count=80)
        assert item.quantity == 80
        assert item.total_price_cents == 200000

    @pytest.mark.asyncio
    async def test_per_guest_template_defaults_to_fifty(self, mutations, invoice):
        item = await mutations.add_template_item(invoice.id, "per_person_catering")
        assert item.quantity == 50

    @pytest.mark.asyncio
    async def test_unknown_template(self, mutations, store, invoice):
        with patch.object(store, "create", AsyncMock()) as create:
            with pytest.raises(ValueError, match="Unknown line item template"):
                await mutations.add_template_item(invoice.id, "ice_sculpture")
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_quick_calculate_per_person_replaces_items(self, mutations, repo, invoice):
        items = await mutations.quick_calculate_per_person(invoice.id, 40, price_per_person_cents=3000)
        assert [i.title for i in items] == ["Per-Person Catering", "Service Fee"]
        assert items[0].quantity == 40
        assert repo.get_invoice(invoice.id).subtotal_cents == 135000

    @pytest.mark.asyncio
    async def test_quick_calculate_rejects_zero_guests(self, mutations, repo, invoice):
        with pytest.raises(ValueError, match="Quantity must be greater than 0"):
            await mutations.quick_calculate_per_person(invoice.id, 0)
        assert len(repo.get_line_items(invoice.id)) == 2
