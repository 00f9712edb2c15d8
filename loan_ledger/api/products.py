"""
Loan product endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_context, get_service
from .loans import parse_amount, parse_enum
from .schemas import CreateProductRequest
from ..models import InterestType, LedgerContext, PaymentFrequency
from ..products import ProductStatus
from ..service import LoanLedgerService


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    request: CreateProductRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    """Create a new loan product"""
    product = service.catalog.create_product(
        ctx,
        name=request.name,
        currency=request.currency,
        code=request.code,
        min_amount=parse_amount(request.min_amount, "min_amount"),
        max_amount=parse_amount(request.max_amount, "max_amount"),
        interest_rate=parse_amount(request.interest_rate, "interest_rate"),
        interest_type=parse_enum(InterestType, request.interest_type, "interest_type"),
        min_term_days=request.min_term_days,
        max_term_days=request.max_term_days,
        payment_frequency=parse_enum(PaymentFrequency, request.payment_frequency, "payment_frequency"),
        processing_fee_percent=parse_amount(request.processing_fee_percent, "processing_fee_percent"),
        late_penalty_percent=parse_amount(request.late_penalty_percent, "late_penalty_percent"),
        grace_period_days=request.grace_period_days,
        description=request.description
    )
    return product.to_dict()


@router.get("")
async def list_products(
    status_filter: Optional[str] = None,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    product_status = parse_enum(ProductStatus, status_filter, "status_filter")
    return [p.to_dict() for p in service.catalog.list_products(ctx, product_status)]


@router.get("/{product_id}")
async def get_product(
    product_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.catalog.get_product(ctx, product_id).to_dict()


@router.post("/{product_id}/archive")
async def archive_product(
    product_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    """Archive a product; existing loans are unaffected"""
    return service.catalog.archive_product(ctx, product_id).to_dict()
