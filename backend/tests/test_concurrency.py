"""
Concurrency tests against a file-backed SQLite database.

Each worker runs in its own thread and app context (own session and
connection); a barrier releases them together so both transactions race for
the same StockRecord / Sale rows.
"""

import threading

import pytest

from conftest import make_product, SHOP_ID
from shopledger import create_app
from shopledger.extensions import db
from shopledger.models import PaymentRecord, Sale, StockRecord
from shopledger.services import payment_service, sales_service
from shopledger.services.ledger_service import verify_ledgers


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}",
        'TX_RETRY_BACKOFF': 0,
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _race(app, work, workers=2):
    """Run work() in parallel threads; return the sorted outcomes."""
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def worker():
        with app.app_context():
            try:
                barrier.wait()
                work()
                outcome = "ok"
            except Exception as exc:
                outcome = type(exc).__name__
            finally:
                db.session.remove()
            with lock:
                results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    return sorted(results)


def test_concurrent_checkouts_sell_the_last_unit_once(file_app):
    with file_app.app_context():
        product_id = make_product(db.session, sku="LAST-1", stock=1).id

    def work():
        sales_service.checkout(
            db.session,
            shop_id=SHOP_ID,
            lines=[{"product_id": product_id, "quantity": 1}],
            payment_method="cash",
        )

    assert _race(file_app, work) == ["InsufficientStock", "ok"]

    with file_app.app_context():
        record = db.session.query(StockRecord).filter_by(product_id=product_id).one()
        assert (record.stock_quantity, record.available_quantity, record.reserved_quantity) == (0, 0, 0)
        assert db.session.query(Sale).count() == 1
        assert verify_ledgers(db.session) == []


def test_concurrent_payments_cannot_exceed_the_balance(file_app):
    with file_app.app_context():
        product = make_product(db.session, sku="PLAIN-2", tax_rate_bps=0, stock=1)
        sale_id = sales_service.checkout(
            db.session,
            shop_id=SHOP_ID,
            lines=[{"product_id": product.id, "quantity": 1}],
            payment_method="card",
            amount_paid_cents=0,
        ).id

    def work():
        payment_service.record_payment(db.session, sale_id=sale_id, amount_cents=6000, method="card")

    assert _race(file_app, work) == ["PaymentExceedsBalance", "ok"]

    with file_app.app_context():
        assert db.session.query(PaymentRecord).filter_by(sale_id=sale_id).count() == 1
        summary = payment_service.get_payment_summary(db.session, sale_id)
        assert summary["total_paid_cents"] == 6000
        assert summary["payment_status"] == "partial"
        assert verify_ledgers(db.session) == []
