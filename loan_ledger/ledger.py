"""
Loan Ledger Core

Pure functions over a ``LoanSnapshot`` (a loan and its ordered schedule).
Each operation validates its preconditions, works on a private copy of the
snapshot and returns a ``LedgerResult``: the new snapshot, the persistence
effects that realise it and the domain events to publish once those effects
are committed. Nothing here touches storage; ``LoanLedgerService`` writes the
effects inside one transaction.

Loan states::

    pending_disbursement -> active <-> overdue -> paid_off | written_off | closed
    active/overdue -> suspended -> (status before suspension)
    paid_off -> closed (settled), paid_off -> active/overdue (payment reversed)
"""

from decimal import Decimal
from datetime import date, datetime, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import uuid

from .amortization import compute_interest, compute_processing_fee, installment_count
from .currency import Currency, ZERO, quantize, to_decimal
from .errors import (
    AlreadyReversed, InvalidLoanTerms, InvalidPaymentAmount, InvalidStateTransition,
    LoanNotActive, ScheduleInconsistency
)
from .events import DomainEvent, EventPayload, create_loan_event, create_payment_event
from .models import (
    ApprovalTerms, ClosureType, InstallmentStatus, LedgerContext, Loan, LoanApplication,
    LoanModification, LoanSnapshot, LoanStatus, Payment, PaymentAllocation,
    PaymentMethod, PaymentStatus, RepaymentScheduleEntry, utc_now
)
from .schedule import generate_schedule, recalculate_schedule as rebuild_unpaid_tail


logger = logging.getLogger("loan_ledger.ledger")

LOANS_TABLE = "loans"
SCHEDULE_TABLE = "repayment_schedule"
PAYMENTS_TABLE = "payments"
MODIFICATIONS_TABLE = "loan_modifications"


@dataclass(frozen=True)
class Effect:
    """One record write; ``record`` of None deletes the record"""
    table: str
    record_id: str
    record: Optional[Dict[str, Any]] = None

    @property
    def is_delete(self) -> bool:
        return self.record is None


@dataclass
class LedgerResult:
    """Outcome of a ledger operation"""
    snapshot: LoanSnapshot
    effects: List[Effect] = field(default_factory=list)
    events: List[EventPayload] = field(default_factory=list)
    payment: Optional[Payment] = None
    modification: Optional[LoanModification] = None
    penalty: Optional[Decimal] = None

    @property
    def loan(self) -> Loan:
        return self.snapshot.loan


def _currency(loan: Loan) -> Currency:
    return Currency.from_code(loan.currency)


def _stamp(loan: Loan, now: datetime) -> None:
    loan.version += 1
    loan.updated_at = now


def stored_form(record, currency: Currency) -> Dict[str, Any]:
    """``record.to_dict()`` with its money fields at currency precision"""
    data = record.to_dict()
    for name in record._money_fields:
        data[name] = str(quantize(getattr(record, name), currency))
    return data


def snapshot_effects(before: Optional[LoanSnapshot], after: LoanSnapshot) -> List[Effect]:
    """Effects writing the loan and every schedule entry that changed"""
    currency = _currency(after.loan)
    effects = [Effect(LOANS_TABLE, after.loan.id, stored_form(after.loan, currency))]
    previous = {e.installment_number: stored_form(e, currency) for e in before.schedule} if before else {}
    for entry in after.schedule:
        data = stored_form(entry, currency)
        if previous.get(entry.installment_number) != data:
            effects.append(Effect(SCHEDULE_TABLE, entry.id, data))
    return effects


# --- Origination -----------------------------------------------------------

def approve_loan(ctx: LedgerContext, application: LoanApplication, terms: ApprovalTerms,
                 product, loan_id: Optional[str] = None, now: Optional[datetime] = None) -> LedgerResult:
    """
    Price an approved application into a loan awaiting disbursement.

    Interest, fee and total are computed unrounded and stored rounded to the
    currency unit.
    """
    now = now or utc_now()
    principal = to_decimal(terms.approved_amount)
    term_days = terms.term_days or application.requested_term_days
    rate = to_decimal(terms.interest_rate) if terms.interest_rate is not None else product.interest_rate
    frequency = terms.payment_frequency or product.payment_frequency
    currency = Currency.from_code(product.currency)

    if not principal.is_finite() or principal <= ZERO:
        raise InvalidLoanTerms(f"Approved amount must be positive, got {principal}", amount=principal)
    if quantize(principal, currency) != principal:
        raise InvalidLoanTerms(f"Approved amount {principal} has sub-unit precision", amount=principal)
    if principal > to_decimal(application.requested_amount):
        raise InvalidLoanTerms(
            f"Approved amount {principal} exceeds requested amount {application.requested_amount}",
            amount=principal, requested_amount=application.requested_amount
        )
    product.check_terms(principal, term_days)
    installments = installment_count(term_days, frequency)
    if principal < installments * currency.quantum:
        raise InvalidLoanTerms(
            f"Approved amount {principal} cannot cover {installments} installments of at least {currency.quantum}",
            amount=principal, installments=installments
        )

    interest = quantize(compute_interest(principal, rate, term_days, product.interest_type), currency)
    fee = quantize(compute_processing_fee(principal, product.processing_fee_percent), currency)
    total = principal + interest + fee

    loan_id = loan_id or str(uuid.uuid4())
    loan = Loan(
        id=loan_id,
        created_at=now,
        updated_at=now,
        tenant_id=ctx.tenant_id,
        customer_id=application.customer_id,
        product_id=product.id,
        application_id=application.id,
        loan_number=f"LN-{now.strftime('%Y%m%d')}-{loan_id.replace('-', '')[:8].upper()}",
        currency=currency.code,
        principal_amount=principal,
        interest_rate=rate,
        interest_type=product.interest_type,
        payment_frequency=frequency,
        term_days=term_days,
        processing_fee=fee,
        total_interest=interest,
        total_amount=total,
        grace_period_days=product.grace_period_days,
        late_penalty_percent=product.late_penalty_percent,
        outstanding_balance=total,
        status=LoanStatus.PENDING_DISBURSEMENT,
        version=1
    )
    snapshot = LoanSnapshot.of(loan, [])
    return LedgerResult(
        snapshot=snapshot,
        effects=snapshot_effects(None, snapshot),
        events=[create_loan_event(DomainEvent.LOAN_APPROVED, loan, approved_by=terms.approved_by)]
    )


def activate_loan(snapshot: LoanSnapshot, disbursement_date: date,
                  now: Optional[datetime] = None) -> LedgerResult:
    """Disburse a pending loan: fix its dates and generate the schedule"""
    loan = snapshot.loan
    if loan.status != LoanStatus.PENDING_DISBURSEMENT:
        raise InvalidStateTransition(loan.id, loan.status.value, LoanStatus.ACTIVE.value,
                                     "only pending loans can be disbursed")

    now = now or utc_now()
    work = snapshot.copy()
    loan = work.loan
    loan.disbursement_date = disbursement_date
    loan.maturity_date = disbursement_date + timedelta(days=loan.term_days)
    loan.status = LoanStatus.ACTIVE
    _stamp(loan, now)

    result = LoanSnapshot.of(loan, generate_schedule(loan))
    return LedgerResult(
        snapshot=result,
        effects=snapshot_effects(snapshot, result),
        events=[create_loan_event(
            DomainEvent.LOAN_DISBURSED, loan,
            disbursement_date=disbursement_date.isoformat(),
            installments=len(result.schedule)
        )]
    )


# --- Payments --------------------------------------------------------------

def split_components(entry: RepaymentScheduleEntry, paid: Decimal,
                     currency: Currency) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Principal, interest and fee covered by ``paid`` of an entry's total due.

    The split follows the entry's original principal:interest:fee ratio.
    Principal is rounded to the currency unit, interest takes its share of
    the rest and fee whatever remains.
    """
    if paid >= entry.total_due:
        return entry.principal_due, entry.interest_due, entry.fee_due
    if paid <= ZERO or entry.total_due == ZERO:
        return ZERO, ZERO, ZERO

    principal = quantize(paid * entry.principal_due / entry.total_due, currency)
    rest = paid - principal
    charges = entry.interest_due + entry.fee_due
    interest = quantize(rest * entry.interest_due / charges, currency) if charges else ZERO
    return principal, interest, rest - interest


def _allocate(entry: RepaymentScheduleEntry, available: Decimal, payment_date: date,
              currency: Currency) -> PaymentAllocation:
    """Apply up to ``available`` to one entry, penalty first"""
    allocation = PaymentAllocation(
        installment_number=entry.installment_number,
        status_before=entry.status,
        paid_date_before=entry.paid_date
    )

    penalty = min(available, entry.outstanding_penalty)
    applied = min(available - penalty, entry.outstanding_amount)

    before = split_components(entry, entry.amount_paid, currency)
    after = split_components(entry, entry.amount_paid + applied, currency)
    allocation.principal = after[0] - before[0]
    allocation.interest = after[1] - before[1]
    allocation.fee = after[2] - before[2]
    allocation.penalty = penalty

    entry.penalty_paid = quantize(entry.penalty_paid + penalty, currency)
    entry.amount_paid = quantize(entry.amount_paid + applied, currency)
    entry.outstanding_amount = quantize(max(entry.total_due - entry.amount_paid, ZERO), currency)

    if entry.outstanding_amount == ZERO and entry.outstanding_penalty == ZERO:
        entry.status = InstallmentStatus.PAID
        entry.paid_date = payment_date
    elif entry.status != InstallmentStatus.OVERDUE:
        entry.status = InstallmentStatus.PARTIALLY_PAID

    return allocation


def apply_payment(snapshot: LoanSnapshot, amount: Union[Decimal, int, str],
                  method: PaymentMethod, payment_date: date,
                  reference: Optional[str] = None, recorded_by: Optional[str] = None,
                  payment_id: Optional[str] = None, now: Optional[datetime] = None) -> LedgerResult:
    """
    Apply a payment to a loan's schedule, earliest installment first.

    Each unpaid installment is settled in full (outstanding penalty, then
    principal, interest and fee) before the next one is touched. The last
    installment reached may be settled partially; an overdue installment
    stays overdue until it is settled, and an overdue loan returns to active
    once no overdue installment remains.

    Raises:
        LoanNotActive: loan is not active or overdue
        InvalidPaymentAmount: amount is not positive, has sub-unit precision
            or exceeds the outstanding balance
        ScheduleInconsistency: schedule cannot absorb the amount
    """
    loan = snapshot.loan
    currency = _currency(loan)
    amount = to_decimal(amount)

    if not loan.status.accepts_payments:
        raise LoanNotActive(loan.id, loan.status.value, "apply a payment to")
    if not amount.is_finite():
        raise InvalidPaymentAmount(loan.id, amount, loan.outstanding_balance, "amount must be a finite number")
    if amount <= ZERO:
        raise InvalidPaymentAmount(loan.id, amount, loan.outstanding_balance, "amount must be positive")
    if quantize(amount, currency) != amount:
        raise InvalidPaymentAmount(loan.id, amount, loan.outstanding_balance,
                                   f"amount is more precise than {currency.code} allows")
    if amount > loan.outstanding_balance:
        raise InvalidPaymentAmount(loan.id, amount, loan.outstanding_balance,
                                   "amount exceeds outstanding balance")

    now = now or utc_now()
    work = snapshot.copy()

    remaining = amount
    allocations = []
    for entry in work.schedule:
        if remaining <= ZERO:
            break
        if entry.is_paid:
            continue
        allocation = _allocate(entry, remaining, payment_date, currency)
        if allocation.total > ZERO:
            allocations.append(allocation)
        remaining -= allocation.total

    if remaining > ZERO:
        raise ScheduleInconsistency(
            loan.id, "schedule has less outstanding than the loan balance",
            expected=str(amount), actual=str(amount - remaining)
        )

    loan = work.loan
    status_before = loan.status
    days_overdue_before = loan.days_overdue
    loan.amount_paid = quantize(loan.amount_paid + amount, currency)
    loan.outstanding_balance = quantize(max(loan.outstanding_balance - amount, ZERO), currency)

    if loan.outstanding_balance == ZERO:
        loan.status = LoanStatus.PAID_OFF
        loan.days_overdue = 0
    elif loan.status == LoanStatus.OVERDUE and not any(
            e.status == InstallmentStatus.OVERDUE for e in work.schedule):
        loan.status = LoanStatus.ACTIVE
        loan.days_overdue = 0
    _stamp(loan, now)

    payment = Payment(
        id=payment_id or str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        tenant_id=loan.tenant_id,
        loan_id=loan.id,
        amount=amount,
        principal_portion=sum((a.principal for a in allocations), ZERO),
        interest_portion=sum((a.interest for a in allocations), ZERO),
        fee_portion=sum((a.fee for a in allocations), ZERO),
        penalty_portion=sum((a.penalty for a in allocations), ZERO),
        payment_date=payment_date,
        method=method,
        allocations=allocations,
        loan_status_before=status_before,
        days_overdue_before=days_overdue_before,
        reference=reference,
        recorded_by=recorded_by
    )

    effects = snapshot_effects(snapshot, work)
    effects.append(Effect(PAYMENTS_TABLE, payment.id, payment.to_dict()))

    events = [create_payment_event(DomainEvent.PAYMENT_RECORDED, payment)]
    if loan.status == LoanStatus.PAID_OFF:
        events.append(create_loan_event(DomainEvent.LOAN_PAID_OFF, loan))

    return LedgerResult(snapshot=work, effects=effects, events=events, payment=payment)


def reverse_payment(snapshot: LoanSnapshot, payment: Payment, reason: str,
                    reversed_by: Optional[str] = None, now: Optional[datetime] = None) -> LedgerResult:
    """
    Undo a payment's allocations and restore the loan aggregates.

    Raises:
        AlreadyReversed: payment is not completed
        LoanNotActive: loan is written off, closed, suspended or not disbursed
        ScheduleInconsistency: an allocated installment no longer holds the
            amounts the payment put there
    """
    loan = snapshot.loan
    if payment.status == PaymentStatus.REVERSED:
        raise AlreadyReversed(payment.id, loan.id)
    if payment.loan_id != loan.id:
        raise ScheduleInconsistency(loan.id, f"payment {payment.id} belongs to loan {payment.loan_id}")
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.PAID_OFF):
        raise LoanNotActive(loan.id, loan.status.value, "reverse a payment on")

    currency = _currency(loan)
    now = now or utc_now()
    work = snapshot.copy()

    for allocation in payment.allocations:
        entry = work.entry(allocation.installment_number)
        if entry is None:
            raise ScheduleInconsistency(
                loan.id, f"installment {allocation.installment_number} no longer exists"
            )
        scheduled = allocation.scheduled_total
        if entry.amount_paid < scheduled or entry.penalty_paid < allocation.penalty:
            raise ScheduleInconsistency(
                loan.id, f"installment {entry.installment_number} holds less than the payment allocated",
                expected=str(allocation.total), actual=str(entry.amount_paid + entry.penalty_paid)
            )

        entry.amount_paid = quantize(entry.amount_paid - scheduled, currency)
        entry.penalty_paid = quantize(entry.penalty_paid - allocation.penalty, currency)
        entry.outstanding_amount = quantize(max(entry.total_due - entry.amount_paid, ZERO), currency)

        if entry.outstanding_amount == ZERO and entry.outstanding_penalty == ZERO:
            entry.status = InstallmentStatus.PAID
            continue
        if allocation.status_before == InstallmentStatus.OVERDUE:
            entry.status = InstallmentStatus.OVERDUE
        elif entry.amount_paid > ZERO or entry.penalty_paid > ZERO:
            entry.status = InstallmentStatus.PARTIALLY_PAID
        else:
            entry.status = InstallmentStatus.PENDING
        entry.paid_date = allocation.paid_date_before

    loan = work.loan
    was_paid_off = loan.status == LoanStatus.PAID_OFF
    loan.amount_paid = quantize(loan.amount_paid - payment.amount, currency)
    loan.outstanding_balance = quantize(loan.outstanding_balance + payment.amount, currency)

    if any(e.status == InstallmentStatus.OVERDUE for e in work.schedule):
        loan.status = LoanStatus.OVERDUE
        if payment.loan_status_before == LoanStatus.OVERDUE:
            loan.days_overdue = payment.days_overdue_before
    elif was_paid_off:
        loan.status = LoanStatus.ACTIVE
    _stamp(loan, now)

    reversed_payment = Payment.from_dict(payment.to_dict())
    reversed_payment.status = PaymentStatus.REVERSED
    reversed_payment.reversal_reason = reason
    reversed_payment.reversed_at = now
    reversed_payment.reversed_by = reversed_by
    reversed_payment.updated_at = now

    effects = snapshot_effects(snapshot, work)
    effects.append(Effect(PAYMENTS_TABLE, reversed_payment.id, reversed_payment.to_dict()))

    events = [create_payment_event(DomainEvent.PAYMENT_REVERSED, reversed_payment)]
    if was_paid_off:
        events.append(create_loan_event(DomainEvent.LOAN_REOPENED, loan, payment_id=payment.id))

    return LedgerResult(snapshot=work, effects=effects, events=events, payment=reversed_payment)


# --- Classification --------------------------------------------------------

def detect_overdue(snapshot: LoanSnapshot, as_of_date: date,
                   now: Optional[datetime] = None) -> LedgerResult:
    """
    Flag unpaid installments past due date plus grace period as overdue.

    An active loan with any overdue installment becomes overdue. Loans in
    any other state than active or overdue are left as they are.
    """
    loan = snapshot.loan
    if not loan.status.accepts_payments:
        return LedgerResult(snapshot=snapshot)

    work = snapshot.copy()
    changed = False
    for entry in work.schedule:
        if entry.is_paid or entry.status == InstallmentStatus.OVERDUE:
            continue
        if entry.is_past_grace(as_of_date, loan.grace_period_days):
            entry.status = InstallmentStatus.OVERDUE
            changed = True

    overdue = [e for e in work.schedule if e.status == InstallmentStatus.OVERDUE]
    loan = work.loan
    events = []
    if overdue:
        days = max((as_of_date - overdue[0].due_date).days, 0)
        if days != loan.days_overdue:
            loan.days_overdue = days
            changed = True
        if loan.status == LoanStatus.ACTIVE:
            loan.status = LoanStatus.OVERDUE
            changed = True
            events.append(create_loan_event(
                DomainEvent.LOAN_OVERDUE, loan,
                overdue_installments=[e.installment_number for e in overdue],
                days_overdue=loan.days_overdue
            ))

    if not changed:
        return LedgerResult(snapshot=snapshot)

    _stamp(loan, now or utc_now())
    return LedgerResult(snapshot=work, effects=snapshot_effects(snapshot, work), events=events)


# --- Administrative transitions ---------------------------------------------

def close_loan(snapshot: LoanSnapshot, closure_type: ClosureType, reason: Optional[str] = None,
               closed_date: Optional[date] = None, now: Optional[datetime] = None) -> LedgerResult:
    """
    Close a loan as settled (zero balance required) or write it off.

    A write-off records the forgiven balance in ``written_off_amount`` and
    zeroes the outstanding balance.
    """
    loan = snapshot.loan
    target = LoanStatus.CLOSED if closure_type == ClosureType.SETTLED else LoanStatus.WRITTEN_OFF

    if loan.status in (LoanStatus.CLOSED, LoanStatus.WRITTEN_OFF):
        raise LoanNotActive(loan.id, loan.status.value, "close")
    if loan.status == LoanStatus.PENDING_DISBURSEMENT:
        raise InvalidStateTransition(loan.id, loan.status.value, target.value, "loan was never disbursed")
    if closure_type == ClosureType.SETTLED and loan.outstanding_balance != ZERO:
        raise InvalidStateTransition(
            loan.id, loan.status.value, target.value,
            f"outstanding balance is {loan.outstanding_balance}"
        )
    if closure_type == ClosureType.WRITTEN_OFF and loan.status == LoanStatus.PAID_OFF:
        raise InvalidStateTransition(loan.id, loan.status.value, target.value, "nothing left to write off")

    now = now or utc_now()
    work = snapshot.copy()
    loan = work.loan
    loan.closure_type = closure_type
    loan.closure_reason = reason
    loan.closed_date = closed_date or now.date()
    loan.status_before_suspension = None

    if closure_type == ClosureType.WRITTEN_OFF:
        written_off = loan.outstanding_balance
        loan.written_off_amount += written_off
        loan.outstanding_balance = ZERO
        loan.status = LoanStatus.WRITTEN_OFF
        logger.warning(
            f"Loan {loan.loan_number} written off with {written_off} {loan.currency} outstanding",
            extra={'tenant_id': loan.tenant_id, 'action': 'write_off', 'resource': loan.id,
                   'extra': {'written_off_amount': str(written_off), 'reason': reason}}
        )
        event = create_loan_event(DomainEvent.LOAN_WRITTEN_OFF, loan,
                                  written_off_amount=written_off, reason=reason)
    else:
        loan.status = LoanStatus.CLOSED
        event = create_loan_event(DomainEvent.LOAN_CLOSED, loan, reason=reason)

    _stamp(loan, now)
    return LedgerResult(snapshot=work, effects=snapshot_effects(snapshot, work), events=[event])


def suspend_loan(snapshot: LoanSnapshot, reason: Optional[str] = None,
                 now: Optional[datetime] = None) -> LedgerResult:
    """Freeze an active or overdue loan, remembering its status"""
    loan = snapshot.loan
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
        raise InvalidStateTransition(loan.id, loan.status.value, LoanStatus.SUSPENDED.value)

    work = snapshot.copy()
    loan = work.loan
    loan.status_before_suspension = loan.status
    loan.status = LoanStatus.SUSPENDED
    _stamp(loan, now or utc_now())
    return LedgerResult(
        snapshot=work,
        effects=snapshot_effects(snapshot, work),
        events=[create_loan_event(DomainEvent.LOAN_SUSPENDED, loan, reason=reason)]
    )


def resume_loan(snapshot: LoanSnapshot, reason: Optional[str] = None,
                now: Optional[datetime] = None) -> LedgerResult:
    """Return a suspended loan to the status it was suspended from"""
    loan = snapshot.loan
    restored = loan.status_before_suspension or LoanStatus.ACTIVE
    if loan.status != LoanStatus.SUSPENDED:
        raise InvalidStateTransition(loan.id, loan.status.value, restored.value, "loan is not suspended")

    work = snapshot.copy()
    loan = work.loan
    loan.status = restored
    loan.status_before_suspension = None
    _stamp(loan, now or utc_now())
    return LedgerResult(
        snapshot=work,
        effects=snapshot_effects(snapshot, work),
        events=[create_loan_event(DomainEvent.LOAN_RESUMED, loan, reason=reason)]
    )


# --- Modification ----------------------------------------------------------

def recalculate_schedule(snapshot: LoanSnapshot, new_principal: Optional[Decimal] = None,
                         new_rate: Optional[Decimal] = None, new_term_days: Optional[int] = None,
                         frequency=None, modification_type: str = "restructure",
                         reason: Optional[str] = None, created_by: Optional[str] = None,
                         now: Optional[datetime] = None) -> LedgerResult:
    """
    Restructure a loan and rebuild the unpaid part of its schedule.

    Paid installments keep their amounts; everything else is replaced. The
    processing fee is not re-priced.
    """
    loan = snapshot.loan
    if not loan.status.accepts_payments:
        raise LoanNotActive(loan.id, loan.status.value, "restructure")

    currency = _currency(loan)
    principal = to_decimal(new_principal) if new_principal is not None else loan.principal_amount
    rate = to_decimal(new_rate) if new_rate is not None else loan.interest_rate
    term_days = new_term_days or loan.term_days
    frequency = frequency or loan.payment_frequency

    if not principal.is_finite() or principal <= ZERO or quantize(principal, currency) != principal:
        raise InvalidLoanTerms(f"Invalid principal {principal}", loan_id=loan.id, principal=principal)

    interest = quantize(compute_interest(principal, rate, term_days, loan.interest_type), currency)
    work = snapshot.copy()
    entries, removed = rebuild_unpaid_tail(
        work.loan, work.schedule, frequency, principal, interest, loan.processing_fee, term_days
    )

    now = now or utc_now()
    loan = work.loan
    modification = LoanModification(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        tenant_id=loan.tenant_id,
        loan_id=loan.id,
        modification_type=modification_type,
        old_principal=loan.principal_amount,
        new_principal=principal,
        old_interest_rate=loan.interest_rate,
        new_interest_rate=rate,
        old_term_days=loan.term_days,
        new_term_days=term_days,
        old_frequency=loan.payment_frequency,
        new_frequency=frequency,
        reason=reason,
        created_by=created_by
    )

    loan.principal_amount = principal
    loan.interest_rate = rate
    loan.term_days = term_days
    loan.payment_frequency = frequency
    loan.total_interest = interest
    loan.total_amount = principal + interest + loan.processing_fee
    loan.maturity_date = loan.disbursement_date + timedelta(days=term_days)
    loan.outstanding_balance = loan.expected_outstanding

    if loan.outstanding_balance < ZERO:
        raise ScheduleInconsistency(
            loan.id, "restructured total is below the amount already paid",
            expected=">= 0", actual=str(loan.outstanding_balance)
        )

    if loan.outstanding_balance == ZERO:
        loan.status = LoanStatus.PAID_OFF
        loan.days_overdue = 0
    elif loan.status == LoanStatus.OVERDUE and not any(
            e.status == InstallmentStatus.OVERDUE for e in entries):
        loan.status = LoanStatus.ACTIVE
        loan.days_overdue = 0
    _stamp(loan, now)

    result = LoanSnapshot.of(loan, entries)
    effects = snapshot_effects(snapshot, result)
    effects.extend(Effect(SCHEDULE_TABLE, f"{loan.id}:{n}") for n in removed)
    effects.append(Effect(MODIFICATIONS_TABLE, modification.id, modification.to_dict()))

    events = [create_loan_event(
        DomainEvent.SCHEDULE_RECALCULATED, loan,
        modification_type=modification_type,
        installments=len(entries)
    )]
    if loan.status == LoanStatus.PAID_OFF:
        events.append(create_loan_event(DomainEvent.LOAN_PAID_OFF, loan))

    return LedgerResult(snapshot=result, effects=effects, events=events, modification=modification)


# --- Invariants ------------------------------------------------------------

def verify_invariants(snapshot: LoanSnapshot) -> None:
    """
    Check the loan aggregates against themselves and the schedule.

    Raises:
        ScheduleInconsistency: on the first violated invariant
    """
    loan = snapshot.loan

    def check(condition: bool, detail: str, expected: Any = None, actual: Any = None) -> None:
        if not condition:
            raise ScheduleInconsistency(
                loan.id, detail,
                expected=None if expected is None else str(expected),
                actual=None if actual is None else str(actual)
            )

    check(loan.outstanding_balance >= ZERO, "outstanding balance is negative",
          ">= 0", loan.outstanding_balance)
    check(loan.outstanding_balance == loan.expected_outstanding,
          "outstanding balance does not match loan aggregates",
          loan.expected_outstanding, loan.outstanding_balance)

    if loan.status == LoanStatus.PENDING_DISBURSEMENT:
        return

    schedule = snapshot.schedule
    check(len(schedule) > 0, "disbursed loan has no schedule")
    numbers = [e.installment_number for e in schedule]
    check(numbers == sorted(set(numbers)), "installment numbers are not unique and ordered")

    for entry in schedule:
        n = entry.installment_number
        check(entry.total_due == entry.principal_due + entry.interest_due + entry.fee_due,
              f"installment {n} total due does not match its parts",
              entry.principal_due + entry.interest_due + entry.fee_due, entry.total_due)
        check(entry.outstanding_amount == max(entry.total_due - entry.amount_paid, ZERO),
              f"installment {n} outstanding amount does not match amount paid",
              max(entry.total_due - entry.amount_paid, ZERO), entry.outstanding_amount)
        check(ZERO <= entry.amount_paid <= entry.total_due,
              f"installment {n} amount paid out of range", entry.total_due, entry.amount_paid)
        check(ZERO <= entry.penalty_paid <= entry.penalty_amount,
              f"installment {n} penalty paid out of range", entry.penalty_amount, entry.penalty_paid)
        check(ZERO <= entry.penalty_waived_amount <= entry.penalty_amount - entry.penalty_paid,
              f"installment {n} penalty waived out of range",
              entry.penalty_amount - entry.penalty_paid, entry.penalty_waived_amount)
        settled = entry.outstanding_amount == ZERO and entry.outstanding_penalty == ZERO
        check(entry.is_paid == settled, f"installment {n} status {entry.status.value} does not match its balance")

    check(sum((e.principal_due for e in schedule), ZERO) == loan.principal_amount,
          "schedule principal does not sum to loan principal",
          loan.principal_amount, sum((e.principal_due for e in schedule), ZERO))
    check(sum((e.interest_due for e in schedule), ZERO) == loan.total_interest,
          "schedule interest does not sum to total interest",
          loan.total_interest, sum((e.interest_due for e in schedule), ZERO))
    check(sum((e.fee_due for e in schedule), ZERO) == loan.processing_fee,
          "schedule fees do not sum to processing fee",
          loan.processing_fee, sum((e.fee_due for e in schedule), ZERO))

    paid = sum((e.amount_paid + e.penalty_paid for e in schedule), ZERO)
    check(paid == loan.amount_paid, "schedule payments do not sum to loan amount paid",
          loan.amount_paid, paid)
    penalties = sum((e.penalty_amount for e in schedule), ZERO)
    check(penalties == loan.penalty_amount, "schedule penalties do not sum to loan penalties",
          loan.penalty_amount, penalties)
    waived = sum((e.penalty_waived_amount for e in schedule), ZERO)
    check(waived == loan.penalty_waived_amount, "schedule waivers do not sum to loan penalties waived",
          loan.penalty_waived_amount, waived)

    if loan.status != LoanStatus.WRITTEN_OFF:
        outstanding = sum((e.amount_due for e in schedule), ZERO)
        check(outstanding == loan.outstanding_balance,
              "schedule outstanding does not sum to loan outstanding balance",
              loan.outstanding_balance, outstanding)
