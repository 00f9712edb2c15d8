"""
Shared fixtures for the loan ledger test suite
"""

import uuid
import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_ledger.audit import AuditTrail
from loan_ledger.config import LedgerConfig
from loan_ledger.events import EventDispatcher
from loan_ledger.ledger import activate_loan, approve_loan
from loan_ledger.models import (
    ApprovalTerms, InterestType, LedgerContext, LoanApplication, PaymentFrequency
)
from loan_ledger.products import LoanProduct
from loan_ledger.service import LoanLedgerService
from loan_ledger.storage import InMemoryStorage


DISBURSED = date(2024, 1, 1)


def make_product(**overrides) -> LoanProduct:
    """Product used by most tests: 1% flat a month, grace 3 days, 5% late penalty"""
    now = datetime.now(timezone.utc)
    terms = dict(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        tenant_id="tenant-a",
        name="Working capital",
        code="WCL",
        currency="USD",
        min_amount=Decimal('100'),
        max_amount=Decimal('100000'),
        interest_rate=Decimal('1'),
        interest_type=InterestType.FLAT,
        min_term_days=7,
        max_term_days=365,
        payment_frequency=PaymentFrequency.MONTHLY,
        processing_fee_percent=Decimal('0'),
        late_penalty_percent=Decimal('5'),
        grace_period_days=3,
    )
    terms.update(overrides)
    return LoanProduct(**terms)


def make_snapshot(product=None, amount='10000', term_days=90, disbursement_date=DISBURSED,
                  tenant_id="tenant-a", **terms):
    """Active loan snapshot with a generated schedule"""
    product = product or make_product(tenant_id=tenant_id)
    ctx = LedgerContext(tenant_id=tenant_id, user_id="officer-1")
    application = LoanApplication(
        customer_id="cust-1",
        product_id=product.id,
        requested_amount=Decimal(amount),
        requested_term_days=term_days
    )
    approved = approve_loan(ctx, application, ApprovalTerms(approved_amount=Decimal(amount), **terms), product)
    return activate_loan(approved.snapshot, disbursement_date).snapshot


@pytest.fixture
def ctx():
    return LedgerContext(tenant_id="tenant-a", user_id="officer-1", correlation_id="req-1")


@pytest.fixture
def other_ctx():
    return LedgerContext(tenant_id="tenant-b", user_id="officer-9")


@pytest.fixture
def snapshot():
    """Scenario loan: 10,000 at 1% flat for 90 days, monthly"""
    return make_snapshot()


@pytest.fixture
def storage():
    """In-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def config():
    return LedgerConfig(database_url="memory://")


@pytest.fixture
def service(storage, audit_trail, dispatcher, config):
    return LoanLedgerService(storage, audit_trail=audit_trail, dispatcher=dispatcher, config=config)


@pytest.fixture
def product(service, ctx):
    return service.catalog.create_product(
        ctx,
        name="Working capital",
        code="WCL",
        min_amount=Decimal('100'),
        max_amount=Decimal('100000'),
        interest_rate=Decimal('1'),
        interest_type=InterestType.FLAT,
        min_term_days=7,
        max_term_days=365,
        payment_frequency=PaymentFrequency.MONTHLY,
        late_penalty_percent=Decimal('5'),
        grace_period_days=3
    )


@pytest.fixture
def disburse(service, ctx, product):
    """Factory disbursing a loan through the service"""
    def _disburse(amount='10000', term_days=90, disbursement_date=DISBURSED, **terms):
        application = LoanApplication(
            customer_id="cust-1",
            product_id=product.id,
            requested_amount=Decimal(amount),
            requested_term_days=term_days
        )
        return service.disburse_loan(ctx, application, ApprovalTerms(
            approved_amount=Decimal(amount),
            disbursement_date=disbursement_date,
            **terms
        ))
    return _disburse


@pytest.fixture
def loan(disburse):
    return disburse()
