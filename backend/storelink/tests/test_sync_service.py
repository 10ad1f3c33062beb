"""Tests for the synchronization engine.

WHAT: Idempotent product/order upserts, variant mapping, product creation
      and duplication, resumable full catalog sync
WHY: Webhook redeliveries and admin syncs replay the same snapshots; the
     mirror must converge to one record per external id every time

REFERENCES:
  - storelink/services/sync_service.py
"""

import asyncio
import threading
from decimal import Decimal

import pytest

from storelink.adapters.base import LineItemSnapshot, OrderSnapshot, ProductSnapshot, VariantSnapshot
from storelink.exceptions import (
    PlatformRejected,
    PlatformUnavailable,
    StoreDisconnected,
    StoreInactive,
    ValidationRejected,
)
from storelink.models import MappingSourceEnum, Order, OrderItem, Product, ProductVariant
from storelink.services import sync_service
from storelink.services.store_lifecycle import deactivate, disconnect


def print_snapshot(variant_ids=("777", "778"), title="Framed Print"):
    sizes = {"777": "8x10", "778": "5x7", "779": "A4"}
    return ProductSnapshot(
        external_id="555",
        title=title,
        status="active",
        option_groups=[{"name": "Size", "values": [sizes[v] for v in variant_ids]}],
        variants=[
            VariantSnapshot(
                external_variant_id=v,
                title=sizes[v],
                price=Decimal("20.00"),
                position=index + 1,
                selected_options={"Size": sizes[v]},
            )
            for index, v in enumerate(variant_ids)
        ],
    )


def order_snapshot(variant_id="777", total_price="45.00", **overrides):
    fields = dict(
        external_id="1001",
        name="#1001",
        currency="USD",
        line_items=[
            LineItemSnapshot(
                external_line_id="9001",
                quantity=2,
                unit_price=Decimal("20.00"),
                external_variant_id=variant_id,
                title="Framed Print",
            )
        ],
        subtotal_price=Decimal("40.00"),
        total_shipping=Decimal("5.00"),
        total_price=Decimal(total_price),
    )
    fields.update(overrides)
    return OrderSnapshot(**fields)


def _variant(db, external_variant_id):
    return db.query(ProductVariant).filter(ProductVariant.external_variant_id == external_variant_id).one()


class TestUpsertProduct:
    def test_second_upsert_is_a_no_op(self, test_db_session, shopify_store):
        first = sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())
        second = sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())

        assert first.created and first.changed
        assert not second.created and not second.changed
        assert first.record.id == second.record.id
        assert test_db_session.query(Product).count() == 1
        assert test_db_session.query(ProductVariant).count() == 2

    def test_platform_fields_overwritten_internal_fields_kept(self, test_db_session, shopify_store):
        product = sync_service.upsert_product(test_db_session, shopify_store, print_snapshot()).record
        product.fulfilment_active = True
        product.variants[0].fulfilment_active = True
        test_db_session.commit()

        result = sync_service.upsert_product(test_db_session, shopify_store, print_snapshot(title="Framed Print v2"))

        assert result.changed
        assert result.record.title == "Framed Print v2"
        assert result.record.fulfilment_active is True
        assert _variant(test_db_session, "777").fulfilment_active is True

    def test_same_external_id_in_two_stores_is_two_products(self, test_db_session, make_store):
        store_a = make_store()
        store_b = make_store(domain="shop-b.myshopify.com")

        sync_service.upsert_product(test_db_session, store_a, print_snapshot())
        sync_service.upsert_product(test_db_session, store_b, print_snapshot())

        assert test_db_session.query(Product).count() == 2

    def test_removed_variant_unmaps_order_items(self, test_db_session, shopify_store):
        sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())
        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot(variant_id="778"))
        item = test_db_session.query(OrderItem).one()
        assert item.needs_mapping is False

        sync_service.upsert_product(test_db_session, shopify_store, print_snapshot(variant_ids=("777",)))

        test_db_session.refresh(item)
        assert item.product_variant_id is None
        assert item.mapping_source is None
        assert item.needs_mapping is True
        assert test_db_session.query(ProductVariant).count() == 1

    def test_added_variant(self, test_db_session, shopify_store):
        sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())

        result = sync_service.upsert_product(
            test_db_session, shopify_store, print_snapshot(variant_ids=("777", "778", "779"))
        )

        assert result.changed
        assert [v.external_variant_id for v in result.record.variants] == ["777", "778", "779"]

    def test_disconnected_store_refuses_upsert(self, test_db_session, shopify_store):
        disconnect(test_db_session, shopify_store, purge_data=False)

        with pytest.raises(StoreDisconnected):
            sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())


class TestUpsertOrder:
    def test_replayed_order_is_unchanged(self, test_db_session, shopify_store):
        first = sync_service.upsert_order(test_db_session, shopify_store, order_snapshot())
        second = sync_service.upsert_order(test_db_session, shopify_store, order_snapshot())

        assert first.created
        assert not second.changed
        assert test_db_session.query(Order).count() == 1
        assert test_db_session.query(OrderItem).count() == 1

    def test_item_maps_when_variant_is_mirrored_later(self, test_db_session, shopify_store):
        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot())
        assert test_db_session.query(OrderItem).one().needs_mapping is True

        sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())
        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot())

        item = test_db_session.query(OrderItem).one()
        assert item.product_variant_id == _variant(test_db_session, "777").id
        assert item.mapping_source == MappingSourceEnum.auto

    def test_manual_mapping_survives_resync(self, test_db_session, shopify_store):
        sync_service.upsert_product(test_db_session, shopify_store, print_snapshot())
        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot(variant_id="unknown"))
        item = test_db_session.query(OrderItem).one()

        sync_service.assign_variant_mapping(test_db_session, item, _variant(test_db_session, "778"))
        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot(variant_id="unknown"))

        test_db_session.refresh(item)
        assert item.mapping_source == MappingSourceEnum.manual
        assert item.product_variant_id == _variant(test_db_session, "778").id
        assert item.needs_mapping is False

    def test_clearing_manual_mapping(self, test_db_session, shopify_store):
        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot(variant_id=None))
        item = test_db_session.query(OrderItem).one()

        sync_service.assign_variant_mapping(test_db_session, item, None)

        assert item.needs_mapping is True
        assert item.mapping_source is None

    def test_mapping_to_other_store_variant_is_rejected(self, test_db_session, make_store):
        store_a = make_store()
        store_b = make_store(domain="shop-b.myshopify.com")
        sync_service.upsert_product(test_db_session, store_b, print_snapshot())
        sync_service.upsert_order(test_db_session, store_a, order_snapshot())
        item = test_db_session.query(OrderItem).one()

        with pytest.raises(ValidationRejected):
            sync_service.assign_variant_mapping(test_db_session, item, _variant(test_db_session, "777"))

    def test_totals_mismatch_is_flagged_not_rejected(self, test_db_session, shopify_store):
        result = sync_service.upsert_order(test_db_session, shopify_store, order_snapshot(total_price="99.00"))

        assert result.record.totals_mismatch is True
        assert test_db_session.query(Order).count() == 1

    def test_order_level_discount_and_included_tax(self, test_db_session, shopify_store):
        snapshot = order_snapshot(
            total_price="40.00",
            total_discounts=Decimal("5.00"),
            total_tax=Decimal("6.67"),
            taxes_included=True,
        )

        assert sync_service.totals_consistent(snapshot)
        assert sync_service.upsert_order(test_db_session, shopify_store, snapshot).record.totals_mismatch is False

    def test_removed_line_item_is_deleted(self, test_db_session, shopify_store):
        snapshot = order_snapshot()
        snapshot.line_items.append(
            LineItemSnapshot(external_line_id="9002", quantity=1, unit_price=Decimal("0"), title="Gift note")
        )
        sync_service.upsert_order(test_db_session, shopify_store, snapshot)

        sync_service.upsert_order(test_db_session, shopify_store, order_snapshot())

        assert [i.external_line_id for i in test_db_session.query(OrderItem).all()] == ["9001"]


class TestCreateProduct:
    def test_create_with_size_options(self, test_db_session, shopify_store, fake_adapter):
        product = asyncio.run(
            sync_service.create_product(
                test_db_session,
                shopify_store,
                title="Framed Print",
                option_groups=[{"name": "Size", "values": ["8x10", "5x7"]}],
                adapter=fake_adapter,
            )
        )

        assert product.option_groups == [{"name": "Size", "values": ["8x10", "5x7"]}]
        assert [v.selected_options for v in product.variants] == [{"Size": "8x10"}, {"Size": "5x7"}]
        assert fake_adapter.tokens_seen == ["access-0"]

    @pytest.mark.parametrize(
        "option_groups, variant_count",
        [
            ([], 1),
            ([{"name": "Size", "values": ["8x10"]}], 1),
            ([{"name": "Size", "values": ["8x10", "5x7"]}, {"name": "Frame", "values": ["Oak", "Black", "None"]}], 6),
        ],
    )
    def test_duplicate_copies_option_structure(self, test_db_session, shopify_store, fake_adapter, option_groups, variant_count):
        source = asyncio.run(
            sync_service.create_product(
                test_db_session, shopify_store, title="Source", option_groups=option_groups, adapter=fake_adapter
            )
        )

        copy = asyncio.run(
            sync_service.duplicate_product(
                test_db_session, shopify_store, source.external_id, title="Copy", adapter=fake_adapter
            )
        )

        assert copy.external_id != source.external_id
        assert copy.title == "Copy"
        assert copy.option_groups == source.option_groups
        assert len(copy.variants) == variant_count
        assert [v.selected_options for v in copy.variants] == [v.selected_options for v in source.variants]

    def test_blank_title_never_reaches_platform(self, test_db_session, shopify_store, fake_adapter):
        with pytest.raises(ValidationRejected) as exc_info:
            asyncio.run(sync_service.create_product(test_db_session, shopify_store, title="  ", adapter=fake_adapter))

        assert exc_info.value.errors == ["Title can't be blank"]
        assert fake_adapter.created_drafts == []

    def test_invalid_option_structure(self, test_db_session, shopify_store, fake_adapter):
        with pytest.raises(ValidationRejected) as exc_info:
            asyncio.run(
                sync_service.create_product(
                    test_db_session,
                    shopify_store,
                    title="Print",
                    option_groups=[{"name": "Size", "values": ["8x10", "8x10"]}, {"name": "", "values": ["x"]}],
                    adapter=fake_adapter,
                )
            )

        assert len(exc_info.value.errors) == 2
        assert fake_adapter.created_drafts == []

    def test_platform_validation_errors_are_verbatim(self, test_db_session, shopify_store, fake_adapter):
        fake_adapter.create_error = ValidationRejected(["Title is too long"], platform="shopify")

        with pytest.raises(ValidationRejected) as exc_info:
            asyncio.run(sync_service.create_product(test_db_session, shopify_store, title="x" * 300, adapter=fake_adapter))

        assert exc_info.value.errors == ["Title is too long"]
        assert test_db_session.query(Product).count() == 0

    def test_deactivated_store_refuses_creation(self, test_db_session, shopify_store, fake_adapter):
        deactivate(test_db_session, shopify_store)

        with pytest.raises(StoreInactive):
            asyncio.run(sync_service.create_product(test_db_session, shopify_store, title="Print", adapter=fake_adapter))

    def test_duplicate_of_missing_product(self, test_db_session, shopify_store, fake_adapter):
        with pytest.raises(PlatformRejected) as exc_info:
            asyncio.run(
                sync_service.duplicate_product(test_db_session, shopify_store, "404", title="Copy", adapter=fake_adapter)
            )

        assert exc_info.value.status_code == 404


class TestSyncAllProducts:
    def _pages(self):
        return [
            [ProductSnapshot(external_id="1", title="One"), ProductSnapshot(external_id="2", title="Two")],
            [ProductSnapshot(external_id="3", title="Three")],
        ]

    def test_pages_through_catalog(self, test_db_session, shopify_store, fake_adapter):
        fake_adapter.pages = self._pages()

        stats = asyncio.run(sync_service.sync_all_products(test_db_session, shopify_store, adapter=fake_adapter))

        assert stats.products_created == 3
        assert stats.pages == 2
        assert stats.products_seen == 3
        assert shopify_store.product_sync_cursor is None
        assert shopify_store.last_synced_at is not None

    def test_second_run_reports_unchanged(self, test_db_session, shopify_store, fake_adapter):
        fake_adapter.pages = self._pages()
        asyncio.run(sync_service.sync_all_products(test_db_session, shopify_store, adapter=fake_adapter))

        stats = asyncio.run(sync_service.sync_all_products(test_db_session, shopify_store, adapter=fake_adapter))

        assert stats.products_created == 0
        assert stats.products_unchanged == 3

    def test_interrupted_sync_resumes_from_saved_cursor(self, test_db_session, shopify_store, fake_adapter):
        fake_adapter.pages = self._pages()
        fake_adapter.page_errors = {1: PlatformUnavailable("rate limited", platform="shopify", status_code=429)}

        with pytest.raises(PlatformUnavailable):
            asyncio.run(sync_service.sync_all_products(test_db_session, shopify_store, adapter=fake_adapter))

        assert shopify_store.product_sync_cursor == "1"
        assert test_db_session.query(Product).count() == 2

        stats = asyncio.run(sync_service.sync_all_products(test_db_session, shopify_store, adapter=fake_adapter))

        assert stats.resumed_from_cursor is True
        assert stats.pages == 1
        assert stats.products_created == 1
        assert test_db_session.query(Product).count() == 3


class TestKeyedLock:
    def test_lock_entry_is_dropped_after_release(self):
        locks = sync_service.KeyedLock()

        with locks.hold(("product", "s", "1")):
            assert ("product", "s", "1") in locks._locks

        assert locks._locks == {}

    def test_same_key_waits_other_keys_do_not(self):
        locks = sync_service.KeyedLock()
        first_inside = threading.Event()
        release_first = threading.Event()
        second_inside = threading.Event()

        def hold_first():
            with locks.hold("product:555"):
                first_inside.set()
                release_first.wait(5)

        def hold_second():
            with locks.hold("product:555"):
                second_inside.set()

        first = threading.Thread(target=hold_first)
        first.start()
        assert first_inside.wait(5)
        second = threading.Thread(target=hold_second)
        second.start()

        assert not second_inside.wait(0.2)
        with locks.hold("product:556"):
            pass

        release_first.set()
        first.join(5)
        second.join(5)
        assert second_inside.is_set()
        assert locks._locks == {}


class TestConcurrentInsert:
    def test_insert_race_updates_the_winning_row(self, test_db_session, shopify_store, monkeypatch):
        sync_service.upsert_product(test_db_session, shopify_store, print_snapshot(title="Old title"))

        # Another writer committed the row after our lookup: the lookup misses,
        # the insert hits the unique constraint inside the savepoint.
        real_query = test_db_session.query
        missed = []

        class _Miss:
            def filter_by(self, **filters):
                return self

            def first(self):
                return None

        def query(*entities):
            if entities == (Product,) and not missed:
                missed.append(True)
                return _Miss()
            return real_query(*entities)

        monkeypatch.setattr(test_db_session, "query", query)

        result = sync_service.upsert_product(test_db_session, shopify_store, print_snapshot(title="New title"))

        assert missed == [True]
        assert result.created is False
        monkeypatch.undo()
        products = test_db_session.query(Product).all()
        assert len(products) == 1
        assert products[0].title == "New title"
        assert sorted(v.external_variant_id for v in products[0].variants) == ["777", "778"]
