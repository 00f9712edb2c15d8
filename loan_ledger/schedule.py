"""
Schedule Generator

Builds the ordered repayment schedule of a loan: equal principal, equal
interest and equal fee per installment. Each installment takes the amount
still unallocated divided by the installments still to go, rounded up to the
currency unit, and the last installment takes whatever is left, so the parts
always sum to the loan totals exactly.

Installment number order is due-date order and is the canonical order used by
payment allocation, overdue detection and next-due lookup.
"""

from decimal import Decimal
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .amortization import installment_count
from .currency import Currency, ZERO, quantize, quantize_up
from .errors import InvalidLoanTerms, ScheduleInconsistency
from .models import (
    Loan, RepaymentScheduleEntry, InstallmentStatus, PaymentFrequency
)


PERIOD_DAYS: Dict[PaymentFrequency, int] = {
    PaymentFrequency.DAILY: 1,
    PaymentFrequency.WEEKLY: 7,
    PaymentFrequency.MONTHLY: 30,
}


def period_days(frequency: PaymentFrequency) -> int:
    """Days between consecutive due dates"""
    try:
        return PERIOD_DAYS[frequency]
    except KeyError:
        raise InvalidLoanTerms(f"Unsupported payment frequency: {frequency}")


def due_date_for(disbursement_date: date, installment_number: int,
                 frequency: PaymentFrequency) -> date:
    return disbursement_date + timedelta(days=installment_number * period_days(frequency))


def split_evenly(total: Decimal, parts: int, currency: Currency = Currency.USD) -> List[Decimal]:
    """
    Split ``total`` into ``parts`` amounts at currency precision.

    >>> split_evenly(Decimal('10000'), 3)
    [Decimal('3333.34'), Decimal('3333.33'), Decimal('3333.33')]
    """
    if parts <= 0:
        raise InvalidLoanTerms(f"Cannot split into {parts} installments")

    remaining = quantize(total, currency)
    amounts = []
    for index in range(parts):
        left = parts - index
        if left == 1:
            amount = remaining
        else:
            amount = min(quantize_up(remaining / Decimal(left), currency), remaining)
        amounts.append(amount)
        remaining -= amount
    return amounts


def _build_entries(loan: Loan, numbers: Sequence[int], frequency: PaymentFrequency,
                   principal: Decimal, interest: Decimal, fee: Decimal,
                   currency: Currency) -> List[RepaymentScheduleEntry]:
    count = len(numbers)
    principals = split_evenly(principal, count, currency)
    interests = split_evenly(interest, count, currency)
    fees = split_evenly(fee, count, currency)

    entries = []
    for number, principal_due, interest_due, fee_due in zip(numbers, principals, interests, fees):
        total_due = principal_due + interest_due + fee_due
        if total_due <= ZERO:
            raise InvalidLoanTerms(
                f"Installment {number} of {count} would be empty", loan_id=loan.id, installments=count
            )
        entries.append(RepaymentScheduleEntry(
            loan_id=loan.id,
            installment_number=number,
            due_date=due_date_for(loan.disbursement_date, number, frequency),
            principal_due=principal_due,
            interest_due=interest_due,
            fee_due=fee_due,
            total_due=total_due,
            amount_paid=ZERO,
            outstanding_amount=total_due,
            status=InstallmentStatus.PENDING,
            tenant_id=loan.tenant_id
        ))
    return entries


def generate_schedule(loan: Loan, frequency: Optional[PaymentFrequency] = None) -> List[RepaymentScheduleEntry]:
    """
    Generate the initial schedule of a disbursed loan.

    Args:
        loan: Loan with principal, total interest, processing fee and
            disbursement date set
        frequency: Payment frequency, defaults to the loan's

    Returns:
        Entries ordered by installment number
    """
    if loan.disbursement_date is None:
        raise InvalidLoanTerms("Loan has no disbursement date", loan_id=loan.id)

    frequency = frequency or loan.payment_frequency
    currency = Currency.from_code(loan.currency)
    count = installment_count(loan.term_days, frequency)

    return _build_entries(
        loan, range(1, count + 1), frequency,
        loan.principal_amount, loan.total_interest, loan.processing_fee, currency
    )


def recalculate_schedule(loan: Loan, schedule: Sequence[RepaymentScheduleEntry],
                         frequency: PaymentFrequency, new_principal: Decimal,
                         new_interest: Decimal, new_fee: Decimal,
                         term_days: int) -> Tuple[List[RepaymentScheduleEntry], List[int]]:
    """
    Replace the unpaid tail of a schedule after a restructure or rate change.

    Paid entries are kept untouched. Every other entry is replaced by a new
    tail numbered after the last paid installment; amounts already paid on
    replaced entries are re-applied to the tail in installment order and
    their penalties are carried onto its first entry.

    Returns:
        (full new schedule ordered by installment number,
         installment numbers that no longer exist)
    """
    currency = Currency.from_code(loan.currency)
    ordered = sorted(schedule, key=lambda e: e.installment_number)
    paid = [e for e in ordered if e.is_paid]
    replaced = [e for e in ordered if not e.is_paid]

    remaining_principal = quantize(new_principal, currency) - sum((e.principal_due for e in paid), ZERO)
    remaining_interest = quantize(new_interest, currency) - sum((e.interest_due for e in paid), ZERO)
    remaining_fee = quantize(new_fee, currency) - sum((e.fee_due for e in paid), ZERO)

    for name, value in (("principal", remaining_principal),
                        ("interest", remaining_interest),
                        ("fee", remaining_fee)):
        if value < ZERO:
            raise ScheduleInconsistency(
                loan.id, f"new {name} is below the {name} already settled",
                expected=">= 0", actual=str(value)
            )

    count = max(installment_count(term_days, frequency) - len(paid), 1)
    start = (paid[-1].installment_number if paid else 0) + 1
    numbers = list(range(start, start + count))

    tail = _build_entries(
        loan, numbers, frequency,
        remaining_principal, remaining_interest, remaining_fee, currency
    )

    carried = sum((e.amount_paid for e in replaced), ZERO)
    tail_total = sum((e.total_due for e in tail), ZERO)
    if carried > tail_total:
        raise ScheduleInconsistency(
            loan.id, "amount already paid exceeds the recalculated schedule",
            expected=str(tail_total), actual=str(carried)
        )

    if replaced:
        first = tail[0]
        first.penalty_amount = sum((e.penalty_amount for e in replaced), ZERO)
        first.penalty_paid = sum((e.penalty_paid for e in replaced), ZERO)
        first.penalty_waived_amount = sum((e.penalty_waived_amount for e in replaced), ZERO)
        first.penalty_period_keys = [k for e in replaced for k in e.penalty_period_keys]

    for entry in tail:
        applied = min(carried, entry.total_due)
        entry.amount_paid = applied
        entry.outstanding_amount = entry.total_due - applied
        carried -= applied
        if entry.outstanding_amount == ZERO and entry.outstanding_penalty == ZERO:
            entry.status = InstallmentStatus.PAID
            entry.paid_date = max((e.paid_date for e in replaced if e.paid_date), default=None)
        elif applied > ZERO or entry.penalty_paid > ZERO:
            entry.status = InstallmentStatus.PARTIALLY_PAID

    kept_numbers = {e.installment_number for e in paid} | set(numbers)
    removed = [e.installment_number for e in replaced if e.installment_number not in kept_numbers]

    return paid + tail, removed
