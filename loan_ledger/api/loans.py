"""
Loan and payment endpoints
"""

from enum import Enum
from typing import Optional, Type
from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import get_context, get_service
from .schemas import (
    CloseLoanRequest, DetectOverdueRequest, DisburseLoanRequest, PaymentRequest,
    PenaltyRequest, ReasonRequest, RecalculateScheduleRequest, ReversePaymentRequest,
    WaivePenaltyRequest
)
from ..currency import decimal_from_string
from ..models import (
    ApprovalTerms, ClosureType, LedgerContext, LoanApplication, LoanStatus,
    PaymentFrequency, PaymentMethod
)
from ..service import LoanLedgerService


router = APIRouter()
payments_router = APIRouter()


def parse_amount(value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return decimal_from_string(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field}: {e}")


def parse_enum(enum_cls: Type[Enum], value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{field}: '{value}' is not one of {allowed}"
        )


@router.post("/disburse", status_code=status.HTTP_201_CREATED)
async def disburse_loan(
    request: DisburseLoanRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    """Create an active loan and its schedule from an approved application"""
    requested = parse_amount(request.requested_amount, "requested_amount")
    application = LoanApplication(
        customer_id=request.customer_id,
        product_id=request.product_id,
        requested_amount=requested,
        requested_term_days=request.requested_term_days,
        id=request.application_id
    )
    terms = ApprovalTerms(
        approved_amount=parse_amount(request.approved_amount, "approved_amount") or requested,
        term_days=request.term_days,
        interest_rate=parse_amount(request.interest_rate, "interest_rate"),
        payment_frequency=parse_enum(PaymentFrequency, request.payment_frequency, "payment_frequency"),
        disbursement_date=request.disbursement_date,
        approved_by=ctx.user_id,
        notes=request.notes
    )
    loan = service.disburse_loan(ctx, application, terms)
    return loan.to_dict()


@router.get("")
async def list_loans(
    status_filter: Optional[str] = None,
    customer_id: Optional[str] = None,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    loan_status = parse_enum(LoanStatus, status_filter, "status_filter")
    return [loan.to_dict() for loan in service.list_loans(ctx, loan_status, customer_id)]


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.get_loan(ctx, loan_id).to_dict()


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def apply_payment(
    loan_id: str,
    request: PaymentRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    """Record a payment; it is allocated across installments earliest first"""
    payment = service.apply_payment(
        ctx, loan_id,
        amount=parse_amount(request.amount, "amount"),
        method=parse_enum(PaymentMethod, request.method, "method"),
        payment_date=request.payment_date,
        reference=request.reference
    )
    return payment.to_dict()


@router.get("/{loan_id}/payments")
async def list_payments(
    loan_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return [p.to_dict() for p in service.get_payments(ctx, loan_id)]


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return [entry.to_dict() for entry in service.get_schedule(ctx, loan_id)]


@router.get("/{loan_id}/balance")
async def get_balance(
    loan_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.get_balance(ctx, loan_id).to_dict()


@router.post("/{loan_id}/detect-overdue")
async def detect_overdue(
    loan_id: str,
    request: DetectOverdueRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    loan = service.detect_overdue(ctx, loan_id, request.as_of_date)
    return {"loan_id": loan.id, "status": loan.status.value, "days_overdue": loan.days_overdue}


@router.post("/{loan_id}/schedule/{installment_number}/penalty")
async def apply_late_penalty(
    loan_id: str,
    installment_number: int,
    request: PenaltyRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    penalty = service.apply_late_penalty(
        ctx, loan_id, installment_number,
        as_of_date=request.as_of_date,
        period_key=request.period_key
    )
    return {"loan_id": loan_id, "installment_number": installment_number, "penalty": str(penalty)}


@router.post("/{loan_id}/penalties/waive")
async def waive_penalty(
    loan_id: str,
    request: WaivePenaltyRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    amount = parse_amount(request.amount, "amount")
    return service.waive_penalty(ctx, loan_id, request.installment_number, amount, request.reason).to_dict()


@router.post("/{loan_id}/close")
async def close_loan(
    loan_id: str,
    request: CloseLoanRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    closure_type = parse_enum(ClosureType, request.closure_type, "closure_type")
    return service.close_loan(ctx, loan_id, closure_type, request.reason).to_dict()


@router.post("/{loan_id}/suspend")
async def suspend_loan(
    loan_id: str,
    request: ReasonRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.suspend_loan(ctx, loan_id, request.reason).to_dict()


@router.post("/{loan_id}/resume")
async def resume_loan(
    loan_id: str,
    request: ReasonRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.resume_loan(ctx, loan_id, request.reason).to_dict()


@router.post("/{loan_id}/recalculate")
async def recalculate_schedule(
    loan_id: str,
    request: RecalculateScheduleRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    """Restructure the loan and rebuild its unpaid installments"""
    modification = service.recalculate_schedule(
        ctx, loan_id,
        new_principal=parse_amount(request.new_principal, "new_principal"),
        new_rate=parse_amount(request.new_rate, "new_rate"),
        new_term_days=request.new_term_days,
        frequency=parse_enum(PaymentFrequency, request.payment_frequency, "payment_frequency"),
        modification_type=request.modification_type,
        reason=request.reason
    )
    return modification.to_dict()


@router.get("/{loan_id}/verify")
async def verify_loan(
    loan_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.verify_loan(ctx, loan_id)


@payments_router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    return service.get_payment(ctx, payment_id).to_dict()


@payments_router.post("/{payment_id}/reverse")
async def reverse_payment(
    payment_id: str,
    request: ReversePaymentRequest,
    ctx: LedgerContext = Depends(get_context),
    service: LoanLedgerService = Depends(get_service)
):
    """Reverse a completed payment"""
    loan = service.reverse_payment(ctx, payment_id, request.reason)
    return loan.to_dict()
