"""Shared fixtures: an in-memory catalog, fake gateways and an API client."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopflow.application.pricing import PricingCalculator
from shopflow.application.workflow import OrderWorkflow
from shopflow.domain.models import Base, Inventory, Product
from shopflow.payments import ChargeResult, ExecutionResult, PaymentProvider, ProviderRegistry, RefundResult

WIDGET = 1  # 100.00 at 10%, 10 in stock
GADGET = 2  # 50.00, catalog has no rate, 1 in stock
GIZMO = 3  # 20.00 at 20%, never stocked


class FakeCardProvider(PaymentProvider):
    """Synchronous gateway. Records every amount it is asked to charge."""

    key = "stripe"

    def __init__(self, error=None, on_charge=None):
        self.error = error
        self.on_charge = on_charge
        self.charges = []
        self.refunds = []

    def charge(self, amount, details):
        self.charges.append(amount)
        if self.on_charge is not None:
            self.on_charge()
        if self.error is not None:
            raise self.error
        return ChargeResult(gateway=self.key, status="succeeded", transaction_id=f"ch_{len(self.charges)}")

    def refund(self, transaction_id):
        self.refunds.append(transaction_id)
        return RefundResult(gateway=self.key, status="succeeded", refund_id=f"re_{transaction_id}")


class FakeRedirectProvider(PaymentProvider):
    """Two-phase gateway: charge hands back an approval link, execute captures."""

    key = "paypal"

    def __init__(self, execute_error=None):
        self.execute_error = execute_error
        self.charges = []
        self.executed = []

    def charge(self, amount, details):
        self.charges.append(amount)
        order_id = f"PAY-{len(self.charges)}"
        return ChargeResult(
            gateway=self.key,
            status="CREATED",
            external_order_id=order_id,
            redirect_url=f"https://paypal.test/checkoutnow?token={order_id}",
        )

    def execute(self, external_order_id):
        self.executed.append(external_order_id)
        if self.execute_error is not None:
            raise self.execute_error
        return ExecutionResult(gateway=self.key, status="COMPLETED", transaction_id=f"CAP-{external_order_id}")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()

    session.add_all([
        Product(id=WIDGET, name="Widget", sku="WID-1", price=Decimal("100.00"), tax_rate=Decimal("0.1")),
        Product(id=GADGET, name="Gadget", sku="GAD-1", price=Decimal("50.00"), tax_rate=None),
        Product(id=GIZMO, name="Gizmo", sku="GIZ-1", price=Decimal("20.00"), tax_rate=Decimal("0.2")),
    ])
    session.add_all([
        Inventory(product_id=WIDGET, quantity=10),
        Inventory(product_id=GADGET, quantity=1),
    ])
    session.commit()

    yield session
    session.close()


@pytest.fixture
def pricing():
    return PricingCalculator(tax_included_in_price=False, default_tax_rate=Decimal("0.2"))


@pytest.fixture
def card_provider():
    return FakeCardProvider()


@pytest.fixture
def redirect_provider():
    return FakeRedirectProvider()


@pytest.fixture
def registry(card_provider, redirect_provider):
    return ProviderRegistry(
        {"stripe": lambda: card_provider, "paypal": lambda: redirect_provider},
        default_gateway="stripe",
    )


@pytest.fixture
def workflow(db, registry, pricing):
    return OrderWorkflow(db, registry, pricing, redirect_gateway="paypal")


@pytest.fixture
def client(db, registry, pricing):
    from shopflow.api.routes import get_pricing, get_registry
    from shopflow.infrastructure.db import get_db
    from shopflow.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_pricing] = lambda: pricing

    yield TestClient(app)

    app.dependency_overrides.clear()


def line(product_id, quantity, price, tax_amount, tax_rate=None):
    return {
        "product_id": product_id,
        "quantity": quantity,
        "price": Decimal(price),
        "tax_amount": Decimal(tax_amount),
        "product": {"tax_rate": None if tax_rate is None else Decimal(tax_rate)},
    }
