"""
Stock ledger tests.

Every operation must keep stock == available + reserved (all >= 0) and log
exactly one movement with a matching counter snapshot.
"""

import pytest

from shopledger.models import StockMovement, StockRecord
from shopledger.services import inventory_service
from shopledger.services.concurrency import run_in_transaction
from shopledger.services.errors import InsufficientStock, InvalidAmount, ProductNotFound
from shopledger.services.ledger_service import verify_ledgers


def _record(session, product_id):
    return session.query(StockRecord).filter_by(product_id=product_id).populate_existing().one()


def _counters(record):
    return record.stock_quantity, record.available_quantity, record.reserved_quantity


def _movements(session, product_id):
    return session.query(StockMovement).filter_by(product_id=product_id).order_by(StockMovement.id).all()


def _apply(session, fn, *args, **kwargs):
    return run_in_transaction(session, lambda: fn(session, *args, **kwargs))


class TestProvisioning:
    def test_ensure_stock_record_creates_zeroed_record_once(self, db_session, product):
        first = inventory_service.ensure_stock_record(db_session, product.id)
        second = inventory_service.ensure_stock_record(db_session, product.id)
        db_session.commit()

        assert first.id == second.id
        assert _counters(first) == (0, 0, 0)
        assert first.shop_id == product.shop_id

    def test_record_provisioned_by_another_transaction_is_reused(self, db_session, product, monkeypatch):
        existing = StockRecord(
            shop_id=product.shop_id,
            product_id=product.id,
            stock_quantity=0,
            available_quantity=0,
            reserved_quantity=0,
        )
        db_session.add(existing)
        db_session.commit()
        existing_id = existing.id
        # The lookup ran before the other transaction committed its row
        monkeypatch.setattr(inventory_service, "_find_stock_record", lambda session, product_id: None)

        record = _apply(db_session, inventory_service.ensure_stock_record, product.id)

        assert record.id == existing_id
        assert db_session.query(StockRecord).filter_by(product_id=product.id).count() == 1

    def test_unprovisioned_product_reads_as_zero(self, db_session, product):
        record = inventory_service.get_stock_record(db_session, product.id)
        assert _counters(record) == (0, 0, 0)
        assert db_session.query(StockRecord).count() == 0

    def test_unknown_product(self, db_session):
        with pytest.raises(ProductNotFound):
            inventory_service.get_stock_record(db_session, 9999)


class TestReserveRelease:
    def test_reserve_moves_available_to_reserved(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 4, reference_type="order", reference_id=1)

        assert _counters(_record(db_session, stocked_product.id)) == (10, 6, 4)
        last = _movements(db_session, stocked_product.id)[-1]
        assert last.kind == "sale"
        assert last.quantity_delta == -4
        assert (last.stock_after, last.available_after, last.reserved_after) == (10, 6, 4)
        assert (last.reference_type, last.reference_id) == ("order", 1)

    def test_reserve_more_than_available_fails_without_side_effects(self, db_session, stocked_product):
        before = len(_movements(db_session, stocked_product.id))

        with pytest.raises(InsufficientStock) as exc:
            _apply(db_session, inventory_service.reserve, stocked_product.id, 11)

        assert exc.value.details["requested_quantity"] == 11
        assert exc.value.details["available_quantity"] == 10
        assert _counters(_record(db_session, stocked_product.id)) == (10, 10, 0)
        assert len(_movements(db_session, stocked_product.id)) == before

    def test_release_returns_units(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 5)
        _apply(db_session, inventory_service.release, stocked_product.id, 3)

        assert _counters(_record(db_session, stocked_product.id)) == (10, 8, 2)
        last = _movements(db_session, stocked_product.id)[-1]
        assert last.kind == "adjustment"
        assert last.quantity_delta == 3

    def test_release_more_than_reserved(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 2)
        with pytest.raises(InvalidAmount):
            _apply(db_session, inventory_service.release, stocked_product.id, 3)
        assert _counters(_record(db_session, stocked_product.id)) == (10, 8, 2)

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True, "2"])
    def test_non_positive_or_non_integer_quantity_rejected(self, db_session, stocked_product, quantity):
        with pytest.raises(InvalidAmount):
            _apply(db_session, inventory_service.reserve, stocked_product.id, quantity)


class TestConsume:
    def test_consume_from_reservation(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 4)
        _apply(db_session, inventory_service.consume, stocked_product.id, 4)

        assert _counters(_record(db_session, stocked_product.id)) == (6, 6, 0)

    def test_consume_from_reservation_requires_reserved_units(self, db_session, stocked_product):
        with pytest.raises(InvalidAmount):
            _apply(db_session, inventory_service.consume, stocked_product.id, 1)

    def test_direct_consume_takes_from_available(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 3)
        _apply(db_session, inventory_service.consume, stocked_product.id, 7, from_reservation=False)

        assert _counters(_record(db_session, stocked_product.id)) == (3, 0, 3)

    def test_direct_consume_cannot_eat_reserved_units(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 3)
        with pytest.raises(InsufficientStock):
            _apply(db_session, inventory_service.consume, stocked_product.id, 8, from_reservation=False)
        assert _counters(_record(db_session, stocked_product.id)) == (10, 7, 3)


class TestAdjustAndReceive:
    def test_adjust_applies_delta_to_stock_and_available(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 2)
        record = inventory_service.adjust_stock(
            db_session, product_id=stocked_product.id, stock_quantity=7, reason="Cycle count", actor_id=5,
        )

        assert _counters(record) == (7, 5, 2)
        last = _movements(db_session, stocked_product.id)[-1]
        assert last.kind == "adjustment"
        assert last.quantity_delta == -3
        assert last.note == "Cycle count"
        assert last.actor_id == 5

    def test_adjust_cannot_cut_into_reserved_units(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 6)
        with pytest.raises(InsufficientStock):
            inventory_service.adjust_stock(
                db_session, product_id=stocked_product.id, stock_quantity=5, reason=None, actor_id=None,
            )
        assert _counters(_record(db_session, stocked_product.id)) == (10, 4, 6)

    def test_adjust_to_same_level_logs_nothing(self, db_session, stocked_product):
        before = len(_movements(db_session, stocked_product.id))
        inventory_service.adjust_stock(
            db_session, product_id=stocked_product.id, stock_quantity=10, reason=None, actor_id=None,
        )
        assert len(_movements(db_session, stocked_product.id)) == before

    def test_adjust_negative_rejected(self, db_session, stocked_product):
        with pytest.raises(InvalidAmount):
            inventory_service.adjust_stock(
                db_session, product_id=stocked_product.id, stock_quantity=-1, reason=None, actor_id=None,
            )

    def test_receive_logs_delivery(self, db_session, product):
        record = inventory_service.receive_stock(db_session, product_id=product.id, quantity=12, note="PO-7", actor_id=3)

        assert _counters(record) == (12, 12, 0)
        movements = _movements(db_session, product.id)
        assert [m.kind for m in movements] == ["delivery"]
        assert movements[0].quantity_delta == 12
        assert movements[0].note == "PO-7"

    def test_return_to_stock(self, db_session, stocked_product):
        _apply(db_session, inventory_service.consume, stocked_product.id, 4, from_reservation=False)
        _apply(db_session, inventory_service.return_to_stock, stocked_product.id, 4, reference_type="order", reference_id=9)

        assert _counters(_record(db_session, stocked_product.id)) == (10, 10, 0)
        assert _movements(db_session, stocked_product.id)[-1].kind == "adjustment"


class TestQueries:
    def test_movements_newest_first_with_limit(self, db_session, stocked_product):
        _apply(db_session, inventory_service.reserve, stocked_product.id, 1)
        _apply(db_session, inventory_service.reserve, stocked_product.id, 2)

        movements = inventory_service.list_movements(db_session, stocked_product.id, limit=2)
        assert [m.quantity_delta for m in movements] == [-2, -1]

    def test_low_stock_listing(self, db_session, stocked_product, untaxed_product):
        inventory_service.update_stock_settings(db_session, product_id=stocked_product.id, reorder_level=10)
        inventory_service.update_stock_settings(db_session, product_id=untaxed_product.id, reorder_level=2, location="A-3")

        low = inventory_service.list_low_stock(db_session, stocked_product.shop_id)
        assert [r.product_id for r in low] == [stocked_product.id]
        assert low[0].is_low_stock is True
        assert _record(db_session, untaxed_product.id).location == "A-3"


def test_invariants_hold_after_mixed_operations(db_session, stocked_product):
    _apply(db_session, inventory_service.reserve, stocked_product.id, 5)
    _apply(db_session, inventory_service.consume, stocked_product.id, 2)
    _apply(db_session, inventory_service.release, stocked_product.id, 1)
    _apply(db_session, inventory_service.consume, stocked_product.id, 3, from_reservation=False)
    inventory_service.receive_stock(db_session, product_id=stocked_product.id, quantity=4, note=None, actor_id=None)
    inventory_service.adjust_stock(db_session, product_id=stocked_product.id, stock_quantity=6, reason=None, actor_id=None)

    record = _record(db_session, stocked_product.id)
    assert record.stock_quantity == record.available_quantity + record.reserved_quantity
    assert min(_counters(record)) >= 0
    assert verify_ledgers(db_session) == []
