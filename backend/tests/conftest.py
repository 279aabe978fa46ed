"""
Pytest fixtures for settlement backend tests.

Provides an in-memory application, a clean database per test, a fake
catalog and model factories.
"""

from decimal import Decimal

import pytest

from settlement import create_app
from settlement.extensions import db
from settlement.models import Coupon, User
from settlement.services.catalog_service import GroupMembership


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'VERIFONE_ENDPOINT': 'https://verifone.test/Services.asmx',
    'VERIFONE_CHAIN_ID': '1234',
    'VERIFONE_USERNAME': 'api-user',
    'VERIFONE_PASSWORD': 'secret',
    'VERIFONE_TIMEOUT_SECONDS': 2,
}


class FakeCatalog:
    """CatalogLookup backed by plain dicts."""

    def __init__(self, groups=None, categories=None):
        # groups: {sku: (group_id, pair_price)}
        self.groups = groups or {}
        self.categories = categories or {}
        self.category_calls = 0

    def discount_groups_for(self, skus):
        result = {}
        for sku in skus:
            if sku in self.groups:
                group_id, pair_price = self.groups[sku]
                result[sku] = GroupMembership(group_id=group_id, pair_price=Decimal(str(pair_price)))
        return result

    def categories_for(self, skus):
        self.category_calls += 1
        return {sku: [c.lower() for c in self.categories.get(sku, [])] for sku in skus}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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


@pytest.fixture
def catalog():
    """Factory for FakeCatalog instances."""
    return FakeCatalog


@pytest.fixture
def make_user(db_session):
    counter = {'n': 0}

    def _make(points=0, phone=None, email=None, verifone_customer_no=None):
        counter['n'] += 1
        user = User(
            email=email if email is not None else f"shopper{counter['n']}@example.com",
            first_name="Test",
            last_name=f"Shopper {counter['n']}",
            phone=phone,
            points_balance=Decimal(str(points)),
            verifone_customer_no=verifone_customer_no,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_coupon(db_session):
    def _make(code, discount_type='percent_all', discount_value=10, **fields):
        coupon = Coupon(
            code=code.upper(),
            name_en=fields.pop('name_en', code),
            name_he=fields.pop('name_he', code),
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)) if discount_value is not None else None,
            **fields,
        )
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make
