"""
Ledger Error Taxonomy

Typed exceptions for the loan ledger. Every error has a machine-readable
``code`` class attribute and carries structured context (loan id, attempted
amount, current balance) so callers can render a precise message without
parsing strings.

    LedgerError
    +-- InvalidPaymentAmount      zero/negative payment or exceeds balance
    +-- LoanNotActive             operation on a terminal/suspended loan
    +-- NotOverdue                penalty requested on a current installment
    +-- AlreadyReversed           payment already reversed
    +-- ScheduleInconsistency     internal invariant violated (fatal)
    +-- InvalidStateTransition    administrative transition not allowed
    +-- InvalidLoanTerms          terms outside product bounds
    +-- DuplicatePenaltyPeriod    penalty period key already applied
    +-- InvalidWaiverAmount       waiver not positive or above outstanding penalty
    +-- PenaltyPeriodRequired     penalty period key missing when required
    +-- ConcurrentModification    loan version changed under us
    +-- NotFoundError
        +-- LoanNotFound
        +-- PaymentNotFound
        +-- ProductNotFound
        +-- ScheduleEntryNotFound

None of these are retried by the ledger.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, loan_id: Optional[str] = None, **context: Any):
        self.loan_id = loan_id
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation for logs and API responses"""
        details = {
            key: (str(value) if isinstance(value, Decimal) else value)
            for key, value in self.context.items()
        }
        if self.loan_id:
            details['loan_id'] = self.loan_id
        return {
            'code': self.code,
            'message': str(self),
            'details': details,
        }


class InvalidPaymentAmount(LedgerError):
    """Payment amount is not positive or exceeds the outstanding balance."""

    code: str = "INVALID_PAYMENT_AMOUNT"

    def __init__(self, loan_id: str, amount: Decimal, balance: Decimal, reason: str):
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Invalid payment of {amount} on loan {loan_id}: {reason} "
            f"(outstanding balance {balance})",
            loan_id=loan_id, amount=amount, balance=balance, reason=reason
        )


class LoanNotActive(LedgerError):
    """Operation attempted on a loan whose status does not allow it."""

    code: str = "LOAN_NOT_ACTIVE"

    def __init__(self, loan_id: str, status: str, operation: str):
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} loan {loan_id} in status {status}",
            loan_id=loan_id, status=status, operation=operation
        )


class NotOverdue(LedgerError):
    """Penalty requested on an installment that is not past its grace period."""

    code: str = "NOT_OVERDUE"

    def __init__(self, loan_id: str, installment_number: int, due_date: Any,
                 grace_period_days: int, as_of_date: Any):
        self.installment_number = installment_number
        super().__init__(
            f"Installment {installment_number} of loan {loan_id} is not overdue "
            f"as of {as_of_date} (due {due_date}, grace {grace_period_days} days)",
            loan_id=loan_id,
            installment_number=installment_number,
            due_date=str(due_date),
            grace_period_days=grace_period_days,
            as_of_date=str(as_of_date)
        )


class AlreadyReversed(LedgerError):
    """Payment has already been reversed."""

    code: str = "ALREADY_REVERSED"

    def __init__(self, payment_id: str, loan_id: Optional[str] = None):
        self.payment_id = payment_id
        super().__init__(
            f"Payment {payment_id} has already been reversed",
            loan_id=loan_id, payment_id=payment_id
        )


class ScheduleInconsistency(LedgerError):
    """
    Ledger invariant violated.

    Fatal: the surrounding transaction is aborted rather than healed.
    """

    code: str = "SCHEDULE_INCONSISTENCY"

    def __init__(self, loan_id: str, detail: str, expected: Any = None, actual: Any = None):
        self.detail = detail
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Schedule inconsistency on loan {loan_id}: {detail}",
            loan_id=loan_id, detail=detail, expected=expected, actual=actual
        )


class InvalidStateTransition(LedgerError):
    """Administrative transition not permitted from the current status."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, loan_id: str, from_status: str, to_status: str, reason: str = ""):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Loan {loan_id} cannot move from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message, loan_id=loan_id,
            from_status=from_status, to_status=to_status, reason=reason
        )


class InvalidLoanTerms(LedgerError):
    """Requested loan terms violate the product or are malformed."""

    code: str = "INVALID_LOAN_TERMS"

    def __init__(self, message: str, loan_id: Optional[str] = None, **context: Any):
        super().__init__(message, loan_id=loan_id, **context)


class InvalidWaiverAmount(LedgerError):
    """Penalty waiver is not positive or exceeds the penalty still outstanding."""

    code: str = "INVALID_WAIVER_AMOUNT"

    def __init__(self, loan_id: str, amount: Decimal, outstanding_penalty: Decimal, reason: str):
        self.amount = amount
        self.outstanding_penalty = outstanding_penalty
        super().__init__(
            f"Invalid penalty waiver of {amount} on loan {loan_id}: {reason} "
            f"(outstanding penalty {outstanding_penalty})",
            loan_id=loan_id, amount=amount, outstanding_penalty=outstanding_penalty, reason=reason
        )


class DuplicatePenaltyPeriod(LedgerError):
    """A penalty was already applied to this installment for the period key."""

    code: str = "DUPLICATE_PENALTY_PERIOD"

    def __init__(self, loan_id: str, installment_number: int, period_key: str):
        self.installment_number = installment_number
        self.period_key = period_key
        super().__init__(
            f"Penalty for period {period_key} already applied to installment "
            f"{installment_number} of loan {loan_id}",
            loan_id=loan_id, installment_number=installment_number, period_key=period_key
        )


class ConcurrentModification(LedgerError):
    """Loan was modified by another operation between read and write."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, loan_id: str, expected_version: int, actual_version: int):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Loan {loan_id} changed concurrently (expected version "
            f"{expected_version}, found {actual_version})",
            loan_id=loan_id, expected_version=expected_version, actual_version=actual_version
        )


class NotFoundError(LedgerError):
    """Base for missing records."""

    code: str = "NOT_FOUND"


class LoanNotFound(NotFoundError):
    code: str = "LOAN_NOT_FOUND"

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", loan_id=loan_id)


class PaymentNotFound(NotFoundError):
    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found", payment_id=payment_id)


class ProductNotFound(NotFoundError):
    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Loan product {product_id} not found", product_id=product_id)


class ScheduleEntryNotFound(NotFoundError):
    code: str = "SCHEDULE_ENTRY_NOT_FOUND"

    def __init__(self, loan_id: str, installment_number: int):
        self.installment_number = installment_number
        super().__init__(
            f"Installment {installment_number} not found on loan {loan_id}",
            loan_id=loan_id, installment_number=installment_number
        )


class PenaltyPeriodRequired(LedgerError):
    """Penalty application carried no period key while one is required."""

    code: str = "PENALTY_PERIOD_REQUIRED"

    def __init__(self, loan_id: str, installment_number: int):
        self.installment_number = installment_number
        super().__init__(
            f"A penalty period key is required for installment {installment_number} "
            f"of loan {loan_id}",
            loan_id=loan_id, installment_number=installment_number
        )
