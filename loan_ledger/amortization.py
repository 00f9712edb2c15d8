"""
Amortization Calculator

Pure interest, fee and total-payable functions. Nothing here rounds: callers
quantize at the point a value is stored.

Rates are percentages per 30-day month (``Decimal('1')`` means 1% a month).
The reducing-balance formula is the simplified monthly approximation the
lending book has always been priced with and must not be replaced by a true
declining-balance schedule.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Union
import math

from .currency import ZERO, to_decimal
from .errors import InvalidLoanTerms
from .models import InterestType, PaymentFrequency


DAYS_PER_MONTH = Decimal('30')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')

Number = Union[Decimal, int, str]


@dataclass(frozen=True)
class AmortizationSummary:
    """Unrounded pricing of a loan"""
    principal: Decimal
    interest: Decimal
    processing_fee: Decimal
    total_payable: Decimal
    installment_count: int
    installment_amount: Decimal


def compute_interest(principal: Number, rate_percent: Number, term_days: int,
                     interest_type: InterestType) -> Decimal:
    """
    Total interest over the term.

    flat:      principal * rate/100 * (term_days/30)
    reducing:  principal * (rate/12/100) * (term_days/30)
    """
    principal = to_decimal(principal)
    rate = to_decimal(rate_percent)
    _check_non_negative(principal=principal, rate_percent=rate)
    if term_days <= 0:
        raise InvalidLoanTerms(f"Term must be positive, got {term_days} days", term_days=term_days)

    months = Decimal(term_days) / DAYS_PER_MONTH

    if interest_type == InterestType.FLAT:
        return principal * rate / HUNDRED * months
    elif interest_type == InterestType.REDUCING:
        return principal * (rate / MONTHS_PER_YEAR / HUNDRED) * months
    else:
        raise InvalidLoanTerms(f"Unsupported interest type: {interest_type}")


def compute_processing_fee(principal: Number, fee_percent: Number) -> Decimal:
    """Upfront processing fee charged on the principal"""
    principal = to_decimal(principal)
    fee_percent = to_decimal(fee_percent)
    _check_non_negative(principal=principal, fee_percent=fee_percent)
    return principal * fee_percent / HUNDRED


def compute_total_payable(principal: Number, interest: Number, fee: Number = ZERO) -> Decimal:
    return to_decimal(principal) + to_decimal(interest) + to_decimal(fee)


def installment_count(term_days: int, frequency: PaymentFrequency) -> int:
    """Number of installments for a term: daily n, weekly ceil(n/7), monthly ceil(n/30)"""
    if term_days <= 0:
        raise InvalidLoanTerms(f"Term must be positive, got {term_days} days", term_days=term_days)

    if frequency == PaymentFrequency.DAILY:
        return term_days
    elif frequency == PaymentFrequency.WEEKLY:
        return math.ceil(term_days / 7)
    elif frequency == PaymentFrequency.MONTHLY:
        return math.ceil(term_days / 30)
    raise InvalidLoanTerms(f"Unsupported payment frequency: {frequency}")


def compute_loan_terms(principal: Number, rate_percent: Number, term_days: int,
                       interest_type: InterestType, frequency: PaymentFrequency,
                       fee_percent: Number = ZERO) -> AmortizationSummary:
    """Price a loan in one call"""
    principal = to_decimal(principal)
    if principal <= ZERO:
        raise InvalidLoanTerms(f"Principal must be positive, got {principal}", principal=principal)

    interest = compute_interest(principal, rate_percent, term_days, interest_type)
    fee = compute_processing_fee(principal, fee_percent)
    total = compute_total_payable(principal, interest, fee)
    count = installment_count(term_days, frequency)

    return AmortizationSummary(
        principal=principal,
        interest=interest,
        processing_fee=fee,
        total_payable=total,
        installment_count=count,
        installment_amount=total / Decimal(count)
    )


def _check_non_negative(**values: Decimal) -> None:
    for name, value in values.items():
        if value < ZERO:
            raise InvalidLoanTerms(f"{name} cannot be negative, got {value}", **{name: value})
