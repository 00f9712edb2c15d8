"""
Pydantic schemas for API requests

Monetary amounts travel as decimal strings, never JSON numbers.
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field


# Product schemas
class CreateProductRequest(BaseModel):
    name: str
    code: Optional[str] = None
    currency: str = "USD"
    min_amount: str = Field(..., description="Decimal amount as string")
    max_amount: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Percent per 30-day month")
    interest_type: str = Field(..., description="flat or reducing")
    min_term_days: int
    max_term_days: int
    payment_frequency: str = Field(..., description="daily, weekly or monthly")
    processing_fee_percent: str = "0"
    late_penalty_percent: str = "0"
    grace_period_days: int = 0
    description: str = ""


# Loan schemas
class DisburseLoanRequest(BaseModel):
    customer_id: str
    product_id: str
    requested_amount: str = Field(..., description="Decimal amount as string")
    requested_term_days: int
    application_id: Optional[str] = None
    approved_amount: Optional[str] = Field(None, description="Defaults to the requested amount")
    term_days: Optional[int] = None
    interest_rate: Optional[str] = None
    payment_frequency: Optional[str] = None
    disbursement_date: Optional[date] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    method: Optional[str] = Field(None, description="cash, bank_transfer, mobile_money, cheque, card, other")
    payment_date: Optional[date] = None
    reference: Optional[str] = None


class ReversePaymentRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class DetectOverdueRequest(BaseModel):
    as_of_date: Optional[date] = None


class PenaltyRequest(BaseModel):
    as_of_date: Optional[date] = None
    period_key: Optional[str] = None


class WaivePenaltyRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    reason: str = Field(..., min_length=1)
    installment_number: Optional[int] = Field(None, description="Spread over the loan when omitted")


class CloseLoanRequest(BaseModel):
    closure_type: str = Field(..., description="settled or written_off")
    reason: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class RecalculateScheduleRequest(BaseModel):
    new_principal: Optional[str] = None
    new_rate: Optional[str] = None
    new_term_days: Optional[int] = None
    payment_frequency: Optional[str] = None
    modification_type: str = "restructure"
    reason: Optional[str] = None
