"""
Pytest fixtures for invoicecore backend tests.

Provides an in-memory application, a clean database per test, a tenant
with one branch, a customer, two stocked products and the lifecycle.
"""

import pytest

from invoicecore import create_app
from invoicecore.extensions import db
from invoicecore.models import Branch, Customer, Organization, Product, ProductInventory
from invoicecore.services.concurrency import run_atomic
from invoicecore.services.invoice_service import InvoiceLifecycle
from invoicecore.validation import ActorContext, CreateInvoiceCommand


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'EVENTS_DISPATCH_INLINE': True,
        'INVOICE_TXN_BACKOFF_BASE': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data for each test (schema kept)."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    # Subscribers registered by a previous test must not leak
    app.extensions.pop("invoicecore.events", None)

    yield db.session

    # Cleanup after test
    db.session.rollback()
    db.session.expunge_all()


@pytest.fixture(scope='function')
def org(db_session):
    org = Organization(name="Acme Traders", code="ACME", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def other_org(db_session):
    org = Organization(name="Beta Stores", code="BETA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def branch(db_session, org):
    branch = Branch(org_id=org.id, name="Main", code="MAIN")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def customer(db_session, org):
    customer = Customer(org_id=org.id, name="Ravi Kumar", email="ravi@example.com", phone="9800000000")
    db_session.add(customer)
    db_session.commit()
    return customer


def _stocked_product(db_session, org, branch, *, sku, name, category, price, cost, tax_bps, quantity, reorder=0):
    product = Product(
        org_id=org.id,
        sku=sku,
        name=name,
        category=category,
        price_cents=price,
        cost_price_cents=cost,
        tax_rate_bps=tax_bps,
    )
    db_session.add(product)
    db_session.flush()
    db_session.add(ProductInventory(
        org_id=org.id,
        product_id=product.id,
        branch_id=branch.id,
        quantity=quantity,
        reorder_level=reorder,
    ))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_a(db_session, org, branch):
    """Rice bag: 100.00 at 18% tax, cost 60.00, 10 in stock."""
    return _stocked_product(
        db_session, org, branch,
        sku="RICE-25", name="Rice Bag 25kg", category="Grains",
        price=10000, cost=6000, tax_bps=1800, quantity=10,
    )


@pytest.fixture(scope='function')
def product_b(db_session, org, branch):
    """Oil can: 50.00 at 18% tax, cost 30.00, 10 in stock."""
    return _stocked_product(
        db_session, org, branch,
        sku="OIL-5L", name="Sunflower Oil 5L", category="Oils",
        price=5000, cost=3000, tax_bps=1800, quantity=10,
    )


@pytest.fixture(scope='function')
def ctx(org, branch):
    return ActorContext(org_id=org.id, branch_id=branch.id, user_id=7)


@pytest.fixture(scope='function')
def lifecycle(db_session):
    return InvoiceLifecycle()


@pytest.fixture(scope='function')
def atomic(db_session):
    """Run a callable in a committed unit of work (savepoints need the explicit BEGIN)."""
    def _run(func):
        return run_atomic(func, attempts=1)
    return _run


@pytest.fixture(scope='function')
def make_invoice(lifecycle, ctx, customer, product_a, product_b):
    """Factory for the standard two-line invoice (3 x rice, 1 x oil) with overrides."""
    def _make(**overrides):
        payload = {
            "customer_id": customer.id,
            "items": [
                {"product_id": product_a.id, "quantity": 3},
                {"product_id": product_b.id, "quantity": 1},
            ],
        }
        payload.update(overrides)
        return lifecycle.create_invoice(ctx, CreateInvoiceCommand.from_payload(payload))
    return _make
