"""
Ledger Data Model

Loans, repayment schedule entries, payments and the snapshot the ledger core
operates on. Monetary fields are Decimal and are stored as decimal strings.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import copy

from .currency import ZERO
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_DISBURSEMENT = "pending_disbursement"  # Approved, funds not yet released
    ACTIVE = "active"                              # Repaying on schedule
    OVERDUE = "overdue"                            # At least one installment past grace
    SUSPENDED = "suspended"                        # Administratively frozen
    PAID_OFF = "paid_off"                          # Fully repaid
    WRITTEN_OFF = "written_off"                    # Balance forgiven
    CLOSED = "closed"                              # Account closed

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.PAID_OFF, LoanStatus.WRITTEN_OFF, LoanStatus.CLOSED)

    @property
    def accepts_payments(self) -> bool:
        return self in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


class InterestType(Enum):
    """Interest calculation methods"""
    FLAT = "flat"
    REDUCING = "reducing"


class PaymentFrequency(Enum):
    """Repayment frequency options"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class InstallmentStatus(Enum):
    """Repayment schedule entry states"""
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentStatus(Enum):
    COMPLETED = "completed"
    REVERSED = "reversed"


class PaymentMethod(Enum):
    """How funds were received"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHEQUE = "cheque"
    CARD = "card"
    OTHER = "other"


class ClosureType(Enum):
    SETTLED = "settled"
    WRITTEN_OFF = "written_off"


def to_json_value(value: Any) -> Any:
    """Convert a value into its JSON storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def _load_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _load_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _load_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass
class LedgerContext:
    """
    Explicit caller identity threaded through every ledger call.

    Authentication and authorization happen before the ledger is reached;
    the ledger only records who acted and isolates tenants.
    """
    tenant_id: str
    user_id: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class LoanApplication:
    """Approved application the loan is disbursed from"""
    customer_id: str
    product_id: str
    requested_amount: Decimal
    requested_term_days: int
    id: Optional[str] = None
    purpose: Optional[str] = None


@dataclass
class ApprovalTerms:
    """Terms granted at approval, overriding the product where given"""
    approved_amount: Decimal
    term_days: Optional[int] = None
    interest_rate: Optional[Decimal] = None
    payment_frequency: Optional[PaymentFrequency] = None
    disbursement_date: Optional[date] = None
    approved_by: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Loan(StorageRecord):
    """A disbursed credit contract and its running aggregates"""
    tenant_id: str
    customer_id: str
    product_id: str
    loan_number: str
    currency: str
    principal_amount: Decimal
    interest_rate: Decimal              # Percent, e.g. Decimal('1') for 1%
    interest_type: InterestType
    payment_frequency: PaymentFrequency
    term_days: int
    processing_fee: Decimal
    total_interest: Decimal
    total_amount: Decimal               # principal + interest + fee
    grace_period_days: int = 0
    late_penalty_percent: Decimal = ZERO
    application_id: Optional[str] = None
    disbursement_date: Optional[date] = None
    maturity_date: Optional[date] = None
    amount_paid: Decimal = ZERO
    outstanding_balance: Decimal = ZERO
    penalty_amount: Decimal = ZERO
    penalty_waived_amount: Decimal = ZERO
    written_off_amount: Decimal = ZERO
    status: LoanStatus = LoanStatus.PENDING_DISBURSEMENT
    status_before_suspension: Optional[LoanStatus] = None
    days_overdue: int = 0
    closure_type: Optional[ClosureType] = None
    closure_reason: Optional[str] = None
    closed_date: Optional[date] = None
    version: int = 0

    _decimal_fields = (
        'principal_amount', 'interest_rate', 'processing_fee', 'total_interest',
        'total_amount', 'late_penalty_percent', 'amount_paid', 'outstanding_balance',
        'penalty_amount', 'penalty_waived_amount', 'written_off_amount',
    )
    # Amounts kept at currency precision in storage
    _money_fields = tuple(n for n in _decimal_fields if n not in ('interest_rate', 'late_penalty_percent'))
    _date_fields = ('disbursement_date', 'maturity_date', 'closed_date')

    @property
    def expected_outstanding(self) -> Decimal:
        """Balance implied by the aggregates"""
        return (self.total_amount + self.penalty_amount - self.penalty_waived_amount
                - self.amount_paid - self.written_off_amount)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: to_json_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['created_at'] = _load_datetime(data['created_at'])
        data['updated_at'] = _load_datetime(data['updated_at'])
        for name in cls._decimal_fields:
            data[name] = _load_decimal(data.get(name))
        for name in cls._date_fields:
            data[name] = _load_date(data.get(name))
        data['interest_type'] = InterestType(data['interest_type'])
        data['payment_frequency'] = PaymentFrequency(data['payment_frequency'])
        data['status'] = LoanStatus(data['status'])
        if data.get('status_before_suspension'):
            data['status_before_suspension'] = LoanStatus(data['status_before_suspension'])
        if data.get('closure_type'):
            data['closure_type'] = ClosureType(data['closure_type'])
        return cls(**data)


@dataclass
class RepaymentScheduleEntry:
    """One installment of a loan's repayment schedule"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    fee_due: Decimal = ZERO
    total_due: Decimal = ZERO
    amount_paid: Decimal = ZERO
    outstanding_amount: Decimal = ZERO
    penalty_amount: Decimal = ZERO      # Penalties charged
    penalty_paid: Decimal = ZERO
    penalty_waived_amount: Decimal = ZERO
    penalty_period_keys: List[str] = field(default_factory=list)
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    tenant_id: Optional[str] = None

    _decimal_fields = (
        'principal_due', 'interest_due', 'fee_due', 'total_due', 'amount_paid',
        'outstanding_amount', 'penalty_amount', 'penalty_paid', 'penalty_waived_amount',
    )
    _money_fields = _decimal_fields

    @property
    def id(self) -> str:
        return entry_id(self.loan_id, self.installment_number)

    @property
    def outstanding_penalty(self) -> Decimal:
        return self.penalty_amount - self.penalty_paid - self.penalty_waived_amount

    @property
    def amount_due(self) -> Decimal:
        """Everything needed to settle this installment now"""
        return self.outstanding_amount + self.outstanding_penalty

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def is_past_grace(self, as_of_date: date, grace_period_days: int) -> bool:
        return (as_of_date - self.due_date).days > grace_period_days

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: to_json_value(getattr(self, f.name)) for f in fields(self)}
        result['id'] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentScheduleEntry':
        data = dict(data)
        data.pop('id', None)
        for name in cls._decimal_fields:
            data[name] = _load_decimal(data.get(name))
        data['due_date'] = _load_date(data['due_date'])
        data['paid_date'] = _load_date(data.get('paid_date'))
        data['status'] = InstallmentStatus(data['status'])
        data['penalty_period_keys'] = list(data.get('penalty_period_keys') or [])
        return cls(**data)


def entry_id(loan_id: str, installment_number: int) -> str:
    """Storage key for a schedule entry"""
    return f"{loan_id}:{installment_number}"


@dataclass
class PaymentAllocation:
    """How much of one payment went to one installment"""
    installment_number: int
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    fee: Decimal = ZERO
    penalty: Decimal = ZERO
    status_before: InstallmentStatus = InstallmentStatus.PENDING
    paid_date_before: Optional[date] = None

    @property
    def total(self) -> Decimal:
        return self.principal + self.interest + self.fee + self.penalty

    @property
    def scheduled_total(self) -> Decimal:
        """Part applied to the installment's principal, interest and fee"""
        return self.principal + self.interest + self.fee

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: to_json_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentAllocation':
        return cls(
            installment_number=data['installment_number'],
            principal=_load_decimal(data.get('principal')),
            interest=_load_decimal(data.get('interest')),
            fee=_load_decimal(data.get('fee')),
            penalty=_load_decimal(data.get('penalty')),
            status_before=InstallmentStatus(data.get('status_before', 'pending')),
            paid_date_before=_load_date(data.get('paid_date_before')),
        )


@dataclass
class Payment(StorageRecord):
    """Immutable record of funds received against a loan"""
    tenant_id: str
    loan_id: str
    amount: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    fee_portion: Decimal
    penalty_portion: Decimal
    payment_date: date
    method: PaymentMethod
    allocations: List[PaymentAllocation] = field(default_factory=list)
    loan_status_before: Optional[LoanStatus] = None
    days_overdue_before: int = 0
    status: PaymentStatus = PaymentStatus.COMPLETED
    reference: Optional[str] = None
    recorded_by: Optional[str] = None
    reversal_reason: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None

    _decimal_fields = ('amount', 'principal_portion', 'interest_portion', 'fee_portion', 'penalty_portion')

    @property
    def portions_total(self) -> Decimal:
        return self.principal_portion + self.interest_portion + self.fee_portion + self.penalty_portion

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: to_json_value(getattr(self, f.name)) for f in fields(self) if f.name != 'allocations'}
        result['allocations'] = [a.to_dict() for a in self.allocations]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        data['created_at'] = _load_datetime(data['created_at'])
        data['updated_at'] = _load_datetime(data['updated_at'])
        for name in cls._decimal_fields:
            data[name] = _load_decimal(data.get(name))
        data['payment_date'] = _load_date(data['payment_date'])
        data['method'] = PaymentMethod(data['method'])
        data['status'] = PaymentStatus(data['status'])
        data['allocations'] = [PaymentAllocation.from_dict(a) for a in data.get('allocations') or []]
        if data.get('loan_status_before'):
            data['loan_status_before'] = LoanStatus(data['loan_status_before'])
        data['reversed_at'] = _load_datetime(data.get('reversed_at'))
        return cls(**data)


@dataclass
class LoanModification(StorageRecord):
    """Restructure or rate change applied to a loan's unpaid schedule"""
    tenant_id: str
    loan_id: str
    modification_type: str               # restructure, rate_change, term_extension
    old_principal: Decimal
    new_principal: Decimal
    old_interest_rate: Decimal
    new_interest_rate: Decimal
    old_term_days: int
    new_term_days: int
    old_frequency: PaymentFrequency
    new_frequency: PaymentFrequency
    reason: Optional[str] = None
    created_by: Optional[str] = None

    _decimal_fields = ('old_principal', 'new_principal', 'old_interest_rate', 'new_interest_rate')

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: to_json_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanModification':
        data = dict(data)
        data['created_at'] = _load_datetime(data['created_at'])
        data['updated_at'] = _load_datetime(data['updated_at'])
        for name in cls._decimal_fields:
            data[name] = _load_decimal(data.get(name))
        data['old_frequency'] = PaymentFrequency(data['old_frequency'])
        data['new_frequency'] = PaymentFrequency(data['new_frequency'])
        return cls(**data)


@dataclass(frozen=True)
class LoanSnapshot:
    """
    In-memory view of one loan and its schedule.

    Ledger functions never mutate a snapshot they are given; they return a new
    one. The schedule is always ordered by installment number.
    """
    loan: Loan
    schedule: Tuple[RepaymentScheduleEntry, ...]

    @classmethod
    def of(cls, loan: Loan, schedule) -> 'LoanSnapshot':
        ordered = sorted(schedule, key=lambda e: e.installment_number)
        return cls(loan=loan, schedule=tuple(ordered))

    def copy(self) -> 'LoanSnapshot':
        """Deep copy for mutation by a ledger function"""
        return LoanSnapshot(
            loan=copy.deepcopy(self.loan),
            schedule=tuple(copy.deepcopy(e) for e in self.schedule)
        )

    def entry(self, installment_number: int) -> Optional[RepaymentScheduleEntry]:
        for e in self.schedule:
            if e.installment_number == installment_number:
                return e
        return None

    def unpaid_entries(self) -> List[RepaymentScheduleEntry]:
        return [e for e in self.schedule if not e.is_paid]

    def next_due_entry(self) -> Optional[RepaymentScheduleEntry]:
        unpaid = self.unpaid_entries()
        return unpaid[0] if unpaid else None


@dataclass
class LoanBalance:
    """Current position of a loan"""
    loan_id: str
    status: LoanStatus
    outstanding_balance: Decimal
    amount_paid: Decimal
    penalty_amount: Decimal
    penalty_waived_amount: Decimal = ZERO
    next_due_entry: Optional[RepaymentScheduleEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'status': self.status.value,
            'outstanding_balance': str(self.outstanding_balance),
            'amount_paid': str(self.amount_paid),
            'penalty_amount': str(self.penalty_amount),
            'penalty_waived_amount': str(self.penalty_waived_amount),
            'next_due_entry': self.next_due_entry.to_dict() if self.next_due_entry else None,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
