"""
Test suite for overdue detection

The scenario loan's first installment is due 2024-01-31 with a 3 day grace
period, so it becomes overdue from 2024-02-04.
"""

from decimal import Decimal
from datetime import date

from loan_ledger.events import DomainEvent
from loan_ledger.ledger import apply_payment, detect_overdue, suspend_loan, verify_invariants
from loan_ledger.models import InstallmentStatus, LoanStatus, PaymentMethod


class TestDetectOverdue:
    """Test overdue classification"""

    def test_five_days_past_grace_flags_installment_and_loan(self, snapshot):
        result = detect_overdue(snapshot, date(2024, 2, 8))
        verify_invariants(result.snapshot)

        first, second, third = result.snapshot.schedule
        assert first.status == InstallmentStatus.OVERDUE
        assert second.status == InstallmentStatus.PENDING
        assert third.status == InstallmentStatus.PENDING
        assert result.loan.status == LoanStatus.OVERDUE
        assert result.loan.days_overdue == 8
        assert [e.event_type for e in result.events] == [DomainEvent.LOAN_OVERDUE]

    def test_last_day_of_grace_is_not_overdue(self, snapshot):
        result = detect_overdue(snapshot, date(2024, 2, 3))
        assert result.snapshot is snapshot
        assert result.effects == []
        assert result.loan.status == LoanStatus.ACTIVE

    def test_first_day_after_grace_is_overdue(self, snapshot):
        result = detect_overdue(snapshot, date(2024, 2, 4))
        assert result.loan.status == LoanStatus.OVERDUE
        assert result.loan.days_overdue == 4

    def test_repeat_run_same_day_is_noop(self, snapshot):
        first = detect_overdue(snapshot, date(2024, 2, 8))
        second = detect_overdue(first.snapshot, date(2024, 2, 8))
        assert second.effects == []
        assert second.events == []

    def test_days_overdue_advances_without_new_event(self, snapshot):
        first = detect_overdue(snapshot, date(2024, 2, 8))
        second = detect_overdue(first.snapshot, date(2024, 2, 9))
        assert second.loan.days_overdue == 9
        assert second.events == []
        assert len(second.effects) == 1

    def test_days_counted_from_oldest_overdue_installment(self, snapshot):
        result = detect_overdue(snapshot, date(2024, 3, 10))
        statuses = [e.status for e in result.snapshot.schedule]
        assert statuses == [InstallmentStatus.OVERDUE, InstallmentStatus.OVERDUE, InstallmentStatus.PENDING]
        assert result.loan.days_overdue == 39

    def test_paid_installments_never_flagged(self, snapshot):
        paid = apply_payment(snapshot, Decimal('3433.34'), PaymentMethod.CASH, date(2024, 1, 30)).snapshot
        result = detect_overdue(paid, date(2024, 2, 8))
        assert result.loan.status == LoanStatus.ACTIVE
        assert result.effects == []

    def test_partially_paid_installment_flagged(self, snapshot):
        partial = apply_payment(snapshot, Decimal('1000'), PaymentMethod.CASH, date(2024, 1, 30)).snapshot
        result = detect_overdue(partial, date(2024, 2, 8))
        assert result.snapshot.schedule[0].status == InstallmentStatus.OVERDUE
        assert result.loan.status == LoanStatus.OVERDUE

    def test_suspended_loan_left_alone(self, snapshot):
        suspended = suspend_loan(snapshot).snapshot
        result = detect_overdue(suspended, date(2024, 6, 1))
        assert result.effects == []
        assert result.loan.status == LoanStatus.SUSPENDED


class TestOverdueRecovery:
    """Test leaving the overdue state through payments"""

    def test_partial_payment_keeps_loan_overdue(self, snapshot):
        overdue = detect_overdue(snapshot, date(2024, 2, 8)).snapshot
        first = apply_payment(overdue, Decimal('1000'), PaymentMethod.CASH, date(2024, 2, 9))
        second = apply_payment(first.snapshot, Decimal('10'), PaymentMethod.CASH, date(2024, 2, 10))

        assert second.snapshot.schedule[0].status == InstallmentStatus.OVERDUE
        assert second.loan.status == LoanStatus.OVERDUE

    def test_settling_overdue_installment_restores_active(self, snapshot):
        overdue = detect_overdue(snapshot, date(2024, 2, 8)).snapshot
        result = apply_payment(overdue, Decimal('3433.34'), PaymentMethod.CASH, date(2024, 2, 9))
        verify_invariants(result.snapshot)
        assert result.loan.status == LoanStatus.ACTIVE
        assert result.loan.days_overdue == 0
