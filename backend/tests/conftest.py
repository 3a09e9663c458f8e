"""
Pytest fixtures for discount engine backend tests.

Provides test database setup, two tenants, seeded discount accounts and
a POS ticket plus an invoice to price and allocate against.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from discount_engine import create_app
from discount_engine.config import TestConfig
from discount_engine.extensions import db
from discount_engine.models import (
    Business,
    Invoice,
    InvoiceLineItem,
    PosTransaction,
    PosTransactionItem,
    PromotionalDiscount,
)
from discount_engine.services import accounting_service
from discount_engine.time_utils import today


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

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
        app.extensions["discount_cache"].clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def business_a(db_session):
    """Create Business A (first tenant), 18% VAT."""
    business = Business(name="Biz A - Acme Salon", code="ACME", tax_rate=Decimal("18"))
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def business_b(db_session):
    """Create Business B (second tenant), no VAT."""
    business = Business(name="Biz B - Beta Spa", code="BETA", tax_rate=Decimal("0"))
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def accounts_a(db_session, business_a):
    """Seed the discount chart of accounts for Business A."""
    return accounting_service.seed_discount_accounts(business_a.id)


@pytest.fixture(scope='function')
def pos_tx(db_session, business_a):
    """POS ticket in Business A: 3 x 100000 + 1 x 200000 = 500000, customer 7."""
    tx = PosTransaction(
        business_id=business_a.id,
        transaction_number="POS-0001",
        customer_id=7,
        total_amount=Decimal("500000.00"),
    )
    tx.items.append(PosTransactionItem(
        description="Haircut", category_id=3, quantity=3,
        unit_price=Decimal("100000.00"), line_total=Decimal("300000.00"),
    ))
    tx.items.append(PosTransactionItem(
        description="Colour", category_id=4, quantity=1,
        unit_price=Decimal("200000.00"), line_total=Decimal("200000.00"),
    ))
    db_session.add(tx)
    db_session.commit()
    return tx


@pytest.fixture(scope='function')
def invoice(db_session, business_a):
    """Invoice in Business A: 600000 + 400000 = 1000000, customer 7, net 30."""
    inv = Invoice(
        business_id=business_a.id,
        invoice_number="INV-0001",
        customer_id=7,
        due_date=today() + timedelta(days=30),
        total_amount=Decimal("1000000.00"),
    )
    inv.line_items.append(InvoiceLineItem(
        description="Bridal package", quantity=1,
        unit_price=Decimal("600000.00"), line_total=Decimal("600000.00"),
    ))
    inv.line_items.append(InvoiceLineItem(
        description="Make-up", quantity=2,
        unit_price=Decimal("200000.00"), line_total=Decimal("400000.00"),
    ))
    db_session.add(inv)
    db_session.commit()
    return inv


@pytest.fixture(scope='function')
def pos_tx_b(db_session, business_b):
    """POS ticket in Business B."""
    tx = PosTransaction(
        business_id=business_b.id,
        transaction_number="POS-0001",
        customer_id=7,
        total_amount=Decimal("100000.00"),
    )
    tx.items.append(PosTransactionItem(
        description="Massage", quantity=1,
        unit_price=Decimal("100000.00"), line_total=Decimal("100000.00"),
    ))
    db_session.add(tx)
    db_session.commit()
    return tx


@pytest.fixture(scope='function')
def welcome_promo(db_session, business_a):
    """WELCOME10: coded 10% promotion in Business A."""
    promo = PromotionalDiscount(
        business_id=business_a.id,
        name="Welcome offer",
        description="10% off your first visit",
        promo_code="WELCOME10",
        discount_type="PERCENTAGE",
        discount_value=Decimal("10"),
    )
    db_session.add(promo)
    db_session.commit()
    return promo
