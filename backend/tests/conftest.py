"""
Pytest fixtures for SalesLedger backend tests.

Provides the in-memory application, a clean database per test, a branch
with two products, registered clients in different balance states and the
actors used to call the services.
"""

import pytest

from salesledger import create_app
from salesledger.extensions import db
from salesledger.identity import Actor, ROLE_ADMIN, ROLE_STAFF
from salesledger.models import Branch, Client, Product
from salesledger.services import client_ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'COMMIT_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def branch(db_session):
    branch = Branch(name="Main Branch", code="MAIN", is_active=True)
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def cement(db_session, branch):
    """Sold by the bag: whole quantities only."""
    product = Product(branch_id=branch.id, name="Cement 50kg", category="Cement", unit="BAG", unit_price="100.00", stock=50, min_stock_level=10)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def rod(db_session, branch):
    """Sold by weight: fractional quantities allowed."""
    product = Product(branch_id=branch.id, name="Iron Rod 12mm", category="Steel", unit="KG", unit_price="12.50", stock="100.5", min_stock_level=5)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def staff(branch):
    return Actor(id=7, role=ROLE_STAFF, branch_id=branch.id, name="cashier")


@pytest.fixture(scope='function')
def admin(branch):
    return Actor(id=1, role=ROLE_ADMIN, branch_id=branch.id, name="manager")


@pytest.fixture(scope='function')
def customer(db_session, branch):
    """Registered client with a zero balance."""
    client = Client(branch_id=branch.id, name="Bola Builders", phone="08030000000", balance=0, is_active=True)
    db_session.add(client)
    db_session.commit()
    return client


def make_funded_client(db_session, branch, actor, amount, name="Prepaid Contractor"):
    """Client whose balance comes from a real DEPOSIT ledger entry."""
    client = Client(branch_id=branch.id, name=name, balance=0, is_active=True)
    db_session.add(client)
    db_session.commit()
    client_ledger_service.record_deposit(client.id, amount, actor)
    return db_session.get(Client, client.id)


@pytest.fixture(scope='function')
def funded_customer(db_session, branch, staff):
    """Registered client holding 50.00 of credit."""
    return make_funded_client(db_session, branch, staff, "50.00")


@pytest.fixture(scope='function')
def suspended_customer(db_session, branch):
    client = Client(branch_id=branch.id, name="Dormant Ltd", balance=0, is_active=False)
    db_session.add(client)
    db_session.commit()
    return client


def actor_headers(actor: Actor) -> dict:
    """Gateway identity headers for an actor."""
    headers = {
        'X-Actor-Id': str(actor.id),
        'X-Actor-Role': actor.role,
    }
    if actor.branch_id is not None:
        headers['X-Actor-Branch'] = str(actor.branch_id)
    return headers
