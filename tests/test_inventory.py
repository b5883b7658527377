import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import GADGET, GIZMO, WIDGET
from shopflow.application.inventory import InventoryLedger
from shopflow.domain.errors import InsufficientInventory, InvalidArgument, InventoryNotFound, ProductNotFound
from shopflow.domain.models import Base, Inventory, Product


def test_check_available(db):
    ledger = InventoryLedger(db)
    assert ledger.check_available(WIDGET, 10) is True
    assert ledger.check_available(WIDGET, 11) is False
    assert ledger.check_available(GIZMO, 1) is False
    assert ledger.quantity(GIZMO) is None


def test_decrement_reduces_by_exact_amount(db):
    ledger = InventoryLedger(db)
    ledger.decrement(WIDGET, 3)
    db.commit()
    assert ledger.quantity(WIDGET) == 7


def test_decrement_to_exactly_zero(db):
    ledger = InventoryLedger(db)
    ledger.decrement(GADGET, 1)
    db.commit()
    assert ledger.quantity(GADGET) == 0


def test_decrement_below_zero_refused(db):
    ledger = InventoryLedger(db)
    with pytest.raises(InsufficientInventory) as exc_info:
        ledger.decrement(GADGET, 2)
    assert exc_info.value.product_id == GADGET
    assert exc_info.value.requested == 2
    assert exc_info.value.available == 1
    db.rollback()
    assert ledger.quantity(GADGET) == 1


def test_decrement_without_inventory_record(db):
    with pytest.raises(InventoryNotFound):
        InventoryLedger(db).decrement(GIZMO, 1)


@pytest.mark.parametrize("qty", [0, -1])
def test_decrement_requires_positive_quantity(db, qty):
    with pytest.raises(InvalidArgument):
        InventoryLedger(db).decrement(WIDGET, qty)


def test_increment_adds_to_existing_record(db):
    ledger = InventoryLedger(db)
    ledger.increment(WIDGET, 5)
    db.commit()
    assert ledger.quantity(WIDGET) == 15


def test_increment_creates_missing_record(db):
    ledger = InventoryLedger(db)
    ledger.increment(GIZMO, 4)
    db.commit()
    assert ledger.quantity(GIZMO) == 4


def test_increment_by_zero_is_allowed(db):
    ledger = InventoryLedger(db)
    ledger.increment(WIDGET, 0)
    db.commit()
    assert ledger.quantity(WIDGET) == 10


def test_increment_rejects_negative(db):
    with pytest.raises(InvalidArgument):
        InventoryLedger(db).increment(WIDGET, -1)


def test_increment_unknown_product(db):
    with pytest.raises(ProductNotFound):
        InventoryLedger(db).increment(999, 1)


def test_ledger_does_not_commit(db):
    ledger = InventoryLedger(db)
    ledger.decrement(WIDGET, 4)
    db.rollback()
    assert ledger.quantity(WIDGET) == 10


def test_concurrent_decrements_never_oversell(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'stock.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with Session() as session:
        session.add(Product(id=1, name="Limited", price=Decimal("5.00")))
        session.add(Inventory(product_id=1, quantity=3))
        session.commit()

    buyers = 8
    barrier = threading.Barrier(buyers)
    outcomes = []
    lock = threading.Lock()

    def buy():
        with Session() as session:
            barrier.wait()
            try:
                InventoryLedger(session).decrement(1, 1)
                session.commit()
                outcome = "sold"
            except InsufficientInventory:
                session.rollback()
                outcome = "short"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=buy) for _ in range(buyers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("sold") == 3
    assert outcomes.count("short") == buyers - 3
    with Session() as session:
        assert InventoryLedger(session).quantity(1) == 0
    engine.dispose()
