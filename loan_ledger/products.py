"""
Loan Product Catalog

Loan products are the terms templates loans are priced from: amount and term
bounds, interest rate and type, processing fee, late penalty, grace period and
repayment frequency. Products are created by an administrator, rarely updated
and never deleted; archiving a product stops new loans from using it.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import Currency, ZERO, to_decimal
from .errors import InvalidLoanTerms, ProductNotFound
from .models import InterestType, PaymentFrequency, LedgerContext
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType


logger = logging.getLogger("loan_ledger.products")


class ProductStatus(Enum):
    """Product lifecycle status"""
    ACTIVE = "active"       # Available for new loans
    ARCHIVED = "archived"   # Kept for existing loans, closed to new ones


@dataclass
class LoanProduct(StorageRecord):
    """Terms template for a family of loans"""
    tenant_id: str
    name: str
    code: str
    currency: str
    min_amount: Decimal
    max_amount: Decimal
    interest_rate: Decimal              # Percent per 30-day month
    interest_type: InterestType
    min_term_days: int
    max_term_days: int
    payment_frequency: PaymentFrequency
    processing_fee_percent: Decimal = ZERO
    late_penalty_percent: Decimal = ZERO
    grace_period_days: int = 0
    description: str = ""
    status: ProductStatus = ProductStatus.ACTIVE
    version: int = 1

    _decimal_fields = (
        'min_amount', 'max_amount', 'interest_rate',
        'processing_fee_percent', 'late_penalty_percent',
    )

    def __post_init__(self):
        for name in self._decimal_fields:
            setattr(self, name, to_decimal(getattr(self, name)))
        self.validate()

    def validate(self) -> None:
        """Check the product is internally consistent"""
        if self.min_amount <= ZERO:
            raise InvalidLoanTerms("Minimum amount must be positive", min_amount=self.min_amount)
        if self.max_amount < self.min_amount:
            raise InvalidLoanTerms(
                "Maximum amount is below minimum amount",
                min_amount=self.min_amount, max_amount=self.max_amount
            )
        if self.min_term_days <= 0 or self.max_term_days < self.min_term_days:
            raise InvalidLoanTerms(
                "Invalid term bounds",
                min_term_days=self.min_term_days, max_term_days=self.max_term_days
            )
        for name in ('interest_rate', 'processing_fee_percent', 'late_penalty_percent'):
            if getattr(self, name) < ZERO:
                raise InvalidLoanTerms(f"{name} cannot be negative", **{name: getattr(self, name)})
        if self.grace_period_days < 0:
            raise InvalidLoanTerms("Grace period cannot be negative", grace_period_days=self.grace_period_days)
        try:
            Currency.from_code(self.currency)
        except ValueError as e:
            raise InvalidLoanTerms(str(e), currency=self.currency)

    @property
    def is_available(self) -> bool:
        return self.status == ProductStatus.ACTIVE

    def check_terms(self, amount: Decimal, term_days: int) -> None:
        """Raise InvalidLoanTerms unless amount and term are inside the product bounds"""
        if not self.is_available:
            raise InvalidLoanTerms(f"Product {self.code} is {self.status.value}", product_id=self.id)
        if not (self.min_amount <= amount <= self.max_amount):
            raise InvalidLoanTerms(
                f"Amount {amount} outside product range {self.min_amount}-{self.max_amount}",
                product_id=self.id, amount=amount
            )
        if not (self.min_term_days <= term_days <= self.max_term_days):
            raise InvalidLoanTerms(
                f"Term {term_days} days outside product range "
                f"{self.min_term_days}-{self.max_term_days}",
                product_id=self.id, term_days=term_days
            )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['interest_type'] = self.interest_type.value
        result['payment_frequency'] = self.payment_frequency.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['interest_type'] = InterestType(data['interest_type'])
        data['payment_frequency'] = PaymentFrequency(data['payment_frequency'])
        data['status'] = ProductStatus(data['status'])
        return cls(**data)


UPDATABLE_FIELDS = {f.name for f in fields(LoanProduct)} - {
    'id', 'created_at', 'updated_at', 'tenant_id', 'code', 'status', 'version'
}


class LoanProductCatalog:
    """Create, look up, update and archive loan products"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_products"

    def create_product(self, ctx: LedgerContext, name: str, currency: str = "USD",
                       code: Optional[str] = None, **terms) -> LoanProduct:
        """
        Create a new loan product

        Args:
            ctx: Caller identity
            name: Display name
            currency: ISO currency code
            code: Unique product code per tenant, generated when omitted
            **terms: LoanProduct term fields (min_amount, interest_rate, ...)
        """
        if not code:
            code = f"LOAN_{uuid.uuid4().hex[:8].upper()}"

        if self.get_product_by_code(ctx, code):
            raise InvalidLoanTerms(f"Product code {code} already exists", code=code)

        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=ctx.tenant_id,
            name=name,
            code=code,
            currency=currency.upper(),
            **terms
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, product.id, product.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_CREATED,
                entity_type="product",
                entity_id=product.id,
                metadata={"code": code, "name": name},
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                correlation_id=ctx.correlation_id
            )

        logger.info(f"Created loan product {code}", extra={'tenant_id': ctx.tenant_id, 'user_id': ctx.user_id})
        return product

    def update_product(self, ctx: LedgerContext, product_id: str, **changes) -> LoanProduct:
        """Update product terms; existing loans keep the terms they were priced with"""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidLoanTerms(f"Cannot update product fields: {sorted(unknown)}")

        current = self.get_product(ctx, product_id)

        updated = current.to_dict()
        for key, value in changes.items():
            updated[key] = value.value if isinstance(value, Enum) else (
                str(value) if isinstance(value, Decimal) else value
            )
        updated['version'] = current.version + 1
        updated['updated_at'] = datetime.now(timezone.utc).isoformat()
        product = LoanProduct.from_dict(updated)

        with self.storage.atomic():
            self.storage.save(self.table_name, product_id, product.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_UPDATED,
                entity_type="product",
                entity_id=product_id,
                metadata={
                    "old_version": current.version,
                    "new_version": product.version,
                    "changes": changes
                },
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                correlation_id=ctx.correlation_id
            )

        return product

    def archive_product(self, ctx: LedgerContext, product_id: str) -> LoanProduct:
        """Soft-archive a product so no new loans are priced from it"""
        current = self.get_product(ctx, product_id)
        if current.status == ProductStatus.ARCHIVED:
            return current

        data = current.to_dict()
        data['status'] = ProductStatus.ARCHIVED.value
        data['version'] = current.version + 1
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        product = LoanProduct.from_dict(data)

        with self.storage.atomic():
            self.storage.save(self.table_name, product_id, product.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_ARCHIVED,
                entity_type="product",
                entity_id=product_id,
                metadata={"code": product.code},
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                correlation_id=ctx.correlation_id
            )

        logger.info(f"Archived loan product {product.code}", extra={'tenant_id': ctx.tenant_id})
        return product

    def get_product(self, ctx: LedgerContext, product_id: str) -> LoanProduct:
        """Get product by ID, raising ProductNotFound outside the caller's tenant"""
        data = self.storage.load(self.table_name, product_id)
        if not data or data.get('tenant_id') != ctx.tenant_id:
            raise ProductNotFound(product_id)
        return LoanProduct.from_dict(data)

    def get_product_by_code(self, ctx: LedgerContext, code: str) -> Optional[LoanProduct]:
        products = self.storage.find(self.table_name, {"tenant_id": ctx.tenant_id, "code": code})
        if products:
            return LoanProduct.from_dict(products[0])
        return None

    def list_products(self, ctx: LedgerContext,
                      status: Optional[ProductStatus] = None) -> List[LoanProduct]:
        """List the tenant's products, optionally by status"""
        filters = {"tenant_id": ctx.tenant_id}
        if status:
            filters["status"] = status.value
        return [LoanProduct.from_dict(data) for data in self.storage.find(self.table_name, filters)]
