"""
Penalty Engine

Late-payment penalties on overdue installments. A penalty is a percentage of
the installment's outstanding amount, added to the installment and to the
loan balance, and collected by the payment waterfall before anything else on
that installment.

Penalties are charged once per call. Callers that run penalties on a
schedule pass a ``period_key`` (for example the ISO date of the run) and the
engine rejects a second penalty for the same installment and key. Without a
key no deduplication happens.

A waiver forgives part of the penalty still outstanding, on one installment
or across the loan in installment order. Waived amounts are kept apart from
the penalties charged.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Optional, Union

from .currency import Currency, ZERO, quantize, to_decimal
from .errors import (
    DuplicatePenaltyPeriod, InvalidLoanTerms, InvalidWaiverAmount, LoanNotActive, NotOverdue,
    PenaltyPeriodRequired, ScheduleEntryNotFound
)
from .events import DomainEvent, create_loan_event
from .ledger import LedgerResult, snapshot_effects
from .models import InstallmentStatus, LoanSnapshot, LoanStatus, utc_now


HUNDRED = Decimal('100')


def compute_penalty(outstanding_amount: Union[Decimal, str, int],
                    late_penalty_percent: Union[Decimal, str, int]) -> Decimal:
    """Unrounded penalty: outstanding * percent / 100"""
    return to_decimal(outstanding_amount) * to_decimal(late_penalty_percent) / HUNDRED


def apply_late_penalty(snapshot: LoanSnapshot, installment_number: int, as_of_date: date,
                       late_penalty_percent: Optional[Decimal] = None,
                       period_key: Optional[str] = None, require_period_key: bool = False,
                       now: Optional[datetime] = None) -> LedgerResult:
    """
    Charge a late penalty on one installment.

    Args:
        snapshot: Loan and schedule
        installment_number: Installment to penalize
        as_of_date: Date the installment is judged overdue against
        late_penalty_percent: Rate override, defaults to the loan's
        period_key: Deduplication key for this penalty run
        require_period_key: Reject calls without a period key

    Returns:
        LedgerResult whose ``penalty`` is the amount charged

    Raises:
        LoanNotActive: loan is not active or overdue
        ScheduleEntryNotFound: no such installment
        NotOverdue: installment is paid or still within its grace period
        DuplicatePenaltyPeriod: period key already charged on this installment
    """
    loan = snapshot.loan
    if not loan.status.accepts_payments:
        raise LoanNotActive(loan.id, loan.status.value, "apply a penalty to")

    entry = snapshot.entry(installment_number)
    if entry is None:
        raise ScheduleEntryNotFound(loan.id, installment_number)

    if entry.is_paid or not entry.is_past_grace(as_of_date, loan.grace_period_days):
        raise NotOverdue(loan.id, installment_number, entry.due_date,
                         loan.grace_period_days, as_of_date)

    if period_key is None and require_period_key:
        raise PenaltyPeriodRequired(loan.id, installment_number)
    if period_key is not None and period_key in entry.penalty_period_keys:
        raise DuplicatePenaltyPeriod(loan.id, installment_number, period_key)

    percent = loan.late_penalty_percent if late_penalty_percent is None else to_decimal(late_penalty_percent)
    if percent < ZERO:
        raise InvalidLoanTerms(f"Penalty percent cannot be negative: {percent}", loan_id=loan.id)
    penalty = quantize(compute_penalty(entry.outstanding_amount, percent), Currency.from_code(loan.currency))

    work = snapshot.copy()
    entry = work.entry(installment_number)
    loan = work.loan

    entry.penalty_amount += penalty
    entry.status = InstallmentStatus.OVERDUE
    if period_key is not None:
        entry.penalty_period_keys.append(period_key)

    loan.penalty_amount += penalty
    loan.outstanding_balance += penalty
    days = max((as_of_date - min(e.due_date for e in work.schedule
                                 if e.status == InstallmentStatus.OVERDUE)).days, 0)

    events = [create_loan_event(
        DomainEvent.PENALTY_APPLIED, loan,
        installment_number=installment_number,
        penalty=penalty,
        period_key=period_key
    )]
    if loan.status == LoanStatus.ACTIVE:
        loan.status = LoanStatus.OVERDUE
        events.append(create_loan_event(
            DomainEvent.LOAN_OVERDUE, loan,
            overdue_installments=[installment_number],
            days_overdue=days
        ))
    loan.days_overdue = days
    loan.version += 1
    loan.updated_at = now or utc_now()

    return LedgerResult(
        snapshot=work,
        effects=snapshot_effects(snapshot, work),
        events=events,
        penalty=penalty
    )


def waive_penalty(snapshot: LoanSnapshot, installment_number: Optional[int],
                  amount: Union[Decimal, str, int], reason: str,
                  waived_by: Optional[str] = None, waived_date: Optional[date] = None,
                  now: Optional[datetime] = None) -> LedgerResult:
    """
    Forgive outstanding penalty on one installment or across the loan.

    Without an installment number the waiver is spread over installments
    with outstanding penalty, earliest first. An installment left with
    nothing due is marked paid; a loan left with nothing due is paid off.

    Returns:
        LedgerResult whose ``penalty`` is the amount waived

    Raises:
        LoanNotActive: loan is not active or overdue
        ScheduleEntryNotFound: no such installment
        InvalidWaiverAmount: amount is not positive, has sub-unit precision
            or exceeds the outstanding penalty
    """
    loan = snapshot.loan
    if not loan.status.accepts_payments:
        raise LoanNotActive(loan.id, loan.status.value, "waive a penalty on")

    if installment_number is not None:
        entry = snapshot.entry(installment_number)
        if entry is None:
            raise ScheduleEntryNotFound(loan.id, installment_number)
        targets = [installment_number]
        available = entry.outstanding_penalty
    else:
        targets = [e.installment_number for e in snapshot.schedule if e.outstanding_penalty > ZERO]
        available = sum((e.outstanding_penalty for e in snapshot.schedule), ZERO)

    currency = Currency.from_code(loan.currency)
    amount = to_decimal(amount)
    if not amount.is_finite() or amount <= ZERO:
        raise InvalidWaiverAmount(loan.id, amount, available, "amount must be positive")
    if quantize(amount, currency) != amount:
        raise InvalidWaiverAmount(loan.id, amount, available,
                                  f"amount is more precise than {currency.code} allows")
    if amount > available:
        raise InvalidWaiverAmount(loan.id, amount, available, "amount exceeds outstanding penalty")

    now = now or utc_now()
    waived_date = waived_date or now.date()
    work = snapshot.copy()
    loan = work.loan

    remaining = amount
    waived = []
    for number in targets:
        if remaining <= ZERO:
            break
        entry = work.entry(number)
        portion = min(remaining, entry.outstanding_penalty)
        entry.penalty_waived_amount = quantize(entry.penalty_waived_amount + portion, currency)
        remaining -= portion
        waived.append({'installment_number': number, 'amount': str(portion)})
        if entry.outstanding_amount == ZERO and entry.outstanding_penalty == ZERO:
            entry.status = InstallmentStatus.PAID
            entry.paid_date = waived_date

    loan.penalty_waived_amount = quantize(loan.penalty_waived_amount + amount, currency)
    loan.outstanding_balance = quantize(loan.outstanding_balance - amount, currency)

    events = [create_loan_event(
        DomainEvent.PENALTY_WAIVED, loan,
        amount=amount,
        installments=waived,
        reason=reason,
        waived_by=waived_by
    )]
    if loan.outstanding_balance == ZERO:
        loan.status = LoanStatus.PAID_OFF
        loan.days_overdue = 0
        events.append(create_loan_event(DomainEvent.LOAN_PAID_OFF, loan))
    elif loan.status == LoanStatus.OVERDUE and not any(
            e.status == InstallmentStatus.OVERDUE for e in work.schedule):
        loan.status = LoanStatus.ACTIVE
        loan.days_overdue = 0
    loan.version += 1
    loan.updated_at = now

    return LedgerResult(
        snapshot=work,
        effects=snapshot_effects(snapshot, work),
        events=events,
        penalty=amount
    )
