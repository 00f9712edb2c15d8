"""
Test suite for the loan ledger service

End-to-end ledger operations against real storage backends: persistence,
atomicity, tenant isolation, audit and event publication.
"""

import gc
import threading

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger import ledger
from loan_ledger.audit import AuditEventType
from loan_ledger.errors import (
    AlreadyReversed, ConcurrentModification, InvalidLoanTerms, InvalidPaymentAmount,
    InvalidWaiverAmount, LoanNotFound, PaymentNotFound, PenaltyPeriodRequired, ProductNotFound
)
from loan_ledger.events import DomainEvent
from loan_ledger.ledger import LOANS_TABLE, PAYMENTS_TABLE, SCHEDULE_TABLE
from loan_ledger.models import (
    ApprovalTerms, ClosureType, InstallmentStatus, InterestType, LoanApplication, LoanStatus,
    PaymentFrequency, PaymentMethod, PaymentStatus
)
from loan_ledger.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Run every service test against both backends"""
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "ledger.db")
    yield store
    store.close()


class TestOrigination:
    """Test approval and disbursement"""

    def test_disburse_persists_loan_and_schedule(self, service, ctx, loan, storage):
        assert loan.status == LoanStatus.ACTIVE
        assert loan.outstanding_balance == Decimal('10300')

        stored = service.get_loan(ctx, loan.id)
        assert stored.version == loan.version
        assert stored.loan_number == loan.loan_number

        schedule = service.get_schedule(ctx, loan.id)
        assert [e.total_due for e in schedule] == [
            Decimal('3433.34'), Decimal('3433.33'), Decimal('3433.33')
        ]
        assert storage.count(SCHEDULE_TABLE) == 3

    def test_approve_then_activate(self, service, ctx, product):
        application = LoanApplication("cust-2", product.id, Decimal('5000'), 60)
        pending = service.approve_loan(ctx, application, ApprovalTerms(approved_amount=Decimal('5000')))
        assert pending.status == LoanStatus.PENDING_DISBURSEMENT
        assert service.get_schedule(ctx, pending.id) == []

        active = service.activate_loan(ctx, pending.id, date(2024, 1, 1))
        assert active.status == LoanStatus.ACTIVE
        assert len(service.get_schedule(ctx, pending.id)) == 2

    def test_invalid_terms_write_nothing(self, service, ctx, disburse, storage):
        with pytest.raises(InvalidLoanTerms):
            disburse(amount='500000')
        assert storage.count(LOANS_TABLE) == 0

    def test_more_installments_than_cents_rejected(self, service, ctx, storage):
        daily = service.catalog.create_product(
            ctx, name="Daily micro", code="DMC",
            min_amount=Decimal('1'), max_amount=Decimal('1000'),
            interest_rate=Decimal('1'), interest_type=InterestType.FLAT,
            min_term_days=1, max_term_days=365,
            payment_frequency=PaymentFrequency.DAILY
        )
        application = LoanApplication("cust-1", daily.id, Decimal('1.00'), 180)
        with pytest.raises(InvalidLoanTerms, match="cannot cover 180 installments"):
            service.disburse_loan(ctx, application, ApprovalTerms(
                approved_amount=Decimal('1.00'), disbursement_date=date(2024, 1, 1)
            ))
        assert storage.count(LOANS_TABLE) == 0
        assert storage.count(SCHEDULE_TABLE) == 0

    def test_unknown_product(self, service, ctx):
        application = LoanApplication("cust-1", "no-such-product", Decimal('1000'), 30)
        with pytest.raises(ProductNotFound):
            service.disburse_loan(ctx, application, ApprovalTerms(approved_amount=Decimal('1000')))


class TestPayments:
    """Test payment recording and reversal through the service"""

    def test_apply_payment_persists_everything(self, service, ctx, loan):
        payment = service.apply_payment(ctx, loan.id, Decimal('1000'), PaymentMethod.CASH, date(2024, 1, 20))

        assert payment.principal_portion == Decimal('970.87')
        stored_loan = service.get_loan(ctx, loan.id)
        assert stored_loan.amount_paid == Decimal('1000')
        assert stored_loan.outstanding_balance == Decimal('9300')
        assert service.get_schedule(ctx, loan.id)[0].status == InstallmentStatus.PARTIALLY_PAID
        assert service.get_payment(ctx, payment.id).amount == Decimal('1000')
        assert [p.id for p in service.get_payments(ctx, loan.id)] == [payment.id]

    def test_default_method_from_config(self, service, ctx, loan):
        payment = service.apply_payment(ctx, loan.id, "10.00", payment_date=date(2024, 1, 20))
        assert payment.method == PaymentMethod.BANK_TRANSFER

    def test_overpayment_leaves_storage_untouched(self, service, ctx, loan, storage):
        before = storage.load(LOANS_TABLE, loan.id)
        with pytest.raises(InvalidPaymentAmount):
            service.apply_payment(ctx, loan.id, Decimal('10300.01'), PaymentMethod.CASH, date(2024, 1, 20))
        assert storage.load(LOANS_TABLE, loan.id) == before
        assert storage.count(PAYMENTS_TABLE) == 0

    def test_pay_off_and_close(self, service, ctx, loan):
        service.apply_payment(ctx, loan.id, Decimal('10300'), PaymentMethod.CASH, date(2024, 3, 1))
        assert service.get_loan(ctx, loan.id).status == LoanStatus.PAID_OFF

        closed = service.close_loan(ctx, loan.id, ClosureType.SETTLED, "settled")
        assert closed.status == LoanStatus.CLOSED

    def test_reverse_payment(self, service, ctx, loan):
        payment = service.apply_payment(ctx, loan.id, Decimal('5000'), PaymentMethod.CASH, date(2024, 1, 20))
        restored = service.reverse_payment(ctx, payment.id, "bounced")

        assert restored.outstanding_balance == Decimal('10300')
        assert service.get_payment(ctx, payment.id).status == PaymentStatus.REVERSED
        assert all(e.status == InstallmentStatus.PENDING for e in service.get_schedule(ctx, loan.id))
        assert service.get_payments(ctx, loan.id, PaymentStatus.COMPLETED) == []

        with pytest.raises(AlreadyReversed):
            service.reverse_payment(ctx, payment.id, "bounced again")

    def test_reversal_restores_stored_rows_exactly(self, service, ctx, loan, storage):
        before = {e.installment_number: storage.load(SCHEDULE_TABLE, f"{loan.id}:{e.installment_number}")
                  for e in service.get_schedule(ctx, loan.id)}
        loan_before = storage.load(LOANS_TABLE, loan.id)

        payment = service.apply_payment(ctx, loan.id, Decimal('5000'), PaymentMethod.CASH, date(2024, 1, 20))
        service.reverse_payment(ctx, payment.id, "bounced")

        for number, row in before.items():
            assert storage.load(SCHEDULE_TABLE, f"{loan.id}:{number}") == row
        loan_after = storage.load(LOANS_TABLE, loan.id)
        for name in ('amount_paid', 'outstanding_balance', 'penalty_amount'):
            assert loan_after[name] == loan_before[name]

    def test_balance(self, service, ctx, loan):
        service.apply_payment(ctx, loan.id, Decimal('3433.34'), PaymentMethod.CASH, date(2024, 1, 20))
        balance = service.get_balance(ctx, loan.id)
        assert balance.outstanding_balance == Decimal('6866.66')
        assert balance.next_due_entry.installment_number == 2


class TestAtomicity:
    """Test that a failed operation writes nothing"""

    def test_audit_failure_rolls_back_payment(self, service, ctx, loan, storage, monkeypatch):
        before = storage.load(LOANS_TABLE, loan.id)

        def failing_log_event(**kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(service.audit_trail, "log_event", failing_log_event)
        with pytest.raises(RuntimeError):
            service.apply_payment(ctx, loan.id, Decimal('1000'), PaymentMethod.CASH, date(2024, 1, 20))

        assert storage.load(LOANS_TABLE, loan.id) == before
        assert storage.count(PAYMENTS_TABLE) == 0
        assert service.get_schedule(ctx, loan.id)[0].amount_paid == Decimal('0')

    def test_stale_version_rejected(self, service, ctx, loan, storage):
        stale = service._load_snapshot_for_update(ctx, loan.id)
        service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))

        result = ledger.apply_payment(stale, Decimal('200'), PaymentMethod.CASH, date(2024, 1, 20))
        with pytest.raises(ConcurrentModification):
            with storage.atomic():
                service._write(ctx, stale, result, AuditEventType.PAYMENT_RECORDED, {})

        assert service.get_loan(ctx, loan.id).amount_paid == Decimal('100')


class TestConcurrency:
    """Test that concurrent callers on one loan are serialized"""

    def test_parallel_payments_all_applied(self, service, ctx, loan):
        errors = []

        def pay():
            try:
                service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = service.get_loan(ctx, loan.id)
        assert stored.amount_paid == Decimal('2000')
        assert stored.outstanding_balance == Decimal('8300')
        assert len(service.get_payments(ctx, loan.id)) == 20
        assert service.verify_loan(ctx, loan.id)['valid'] is True

    def test_loan_locks_released_when_unused(self, service, ctx, loan):
        service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))
        gc.collect()
        assert loan.id not in service._loan_locks

        lock = service._loan_lock(loan.id)
        assert service._loan_lock(loan.id) is lock


class TestTenantIsolation:
    """Test that tenants cannot see each other's loans"""

    def test_other_tenant_cannot_read_or_pay(self, service, ctx, other_ctx, loan):
        with pytest.raises(LoanNotFound):
            service.get_loan(other_ctx, loan.id)
        with pytest.raises(LoanNotFound):
            service.apply_payment(other_ctx, loan.id, Decimal('10'), PaymentMethod.CASH, date(2024, 1, 20))
        assert service.list_loans(other_ctx) == []
        assert len(service.list_loans(ctx)) == 1

    def test_other_tenant_cannot_reverse(self, service, ctx, other_ctx, loan):
        payment = service.apply_payment(ctx, loan.id, Decimal('10'), PaymentMethod.CASH, date(2024, 1, 20))
        with pytest.raises(PaymentNotFound):
            service.reverse_payment(other_ctx, payment.id, "not mine")

    def test_other_tenant_cannot_use_product(self, service, other_ctx, product):
        with pytest.raises(ProductNotFound):
            service.catalog.get_product(other_ctx, product.id)


class TestOverdueAndPenalties:
    """Test overdue runs and penalties through the service"""

    def test_detect_overdue(self, service, ctx, loan):
        updated = service.detect_overdue(ctx, loan.id, date(2024, 2, 8))
        assert updated.status == LoanStatus.OVERDUE
        assert updated.days_overdue == 8
        assert service.get_loan(ctx, loan.id).status == LoanStatus.OVERDUE

    def test_detect_overdue_all(self, service, ctx, disburse):
        disburse()
        disburse(disbursement_date=date(2024, 2, 1))
        result = service.detect_overdue_all(ctx, date(2024, 2, 8))
        assert result == {"checked": 2, "newly_overdue": 1}

    def test_apply_late_penalty(self, service, ctx, loan):
        penalty = service.apply_late_penalty(ctx, loan.id, 1, date(2024, 2, 8), period_key="2024-02")
        assert penalty == Decimal('171.67')
        assert service.get_loan(ctx, loan.id).outstanding_balance == Decimal('10471.67')

    def test_waive_penalty(self, service, ctx, loan, audit_trail):
        service.apply_late_penalty(ctx, loan.id, 1, date(2024, 2, 8), period_key="2024-02")
        updated = service.waive_penalty(ctx, loan.id, 1, Decimal('71.67'), "first offence")

        assert updated.penalty_waived_amount == Decimal('71.67')
        assert service.get_loan(ctx, loan.id).outstanding_balance == Decimal('10400')
        assert service.get_schedule(ctx, loan.id)[0].outstanding_penalty == Decimal('100')
        assert service.get_balance(ctx, loan.id).penalty_waived_amount == Decimal('71.67')
        assert service.verify_loan(ctx, loan.id)['valid'] is True

        event = audit_trail.get_events_for_entity("loan", loan.id)[-1]
        assert event.event_type == AuditEventType.PENALTY_WAIVED
        assert event.metadata["reason"] == "first offence"
        assert event.user_id == "officer-1"

    def test_waiver_above_penalty_writes_nothing(self, service, ctx, loan, storage):
        service.apply_late_penalty(ctx, loan.id, 1, date(2024, 2, 8))
        before = storage.load(LOANS_TABLE, loan.id)
        with pytest.raises(InvalidWaiverAmount):
            service.waive_penalty(ctx, loan.id, None, Decimal('500'), "too much")
        assert storage.load(LOANS_TABLE, loan.id) == before

    def test_period_key_required_by_config(self, service, ctx, loan, config):
        config.require_penalty_period_key = True
        with pytest.raises(PenaltyPeriodRequired):
            service.apply_late_penalty(ctx, loan.id, 1, date(2024, 2, 8))


class TestAdministration:
    """Test suspension, write-off and restructuring"""

    def test_suspend_and_resume(self, service, ctx, loan):
        assert service.suspend_loan(ctx, loan.id, "review").status == LoanStatus.SUSPENDED
        assert service.resume_loan(ctx, loan.id).status == LoanStatus.ACTIVE

    def test_write_off(self, service, ctx, loan):
        written_off = service.close_loan(ctx, loan.id, ClosureType.WRITTEN_OFF, "uncollectable")
        assert written_off.written_off_amount == Decimal('10300')
        assert service.verify_loan(ctx, loan.id)['valid'] is True

    def test_recalculate_schedule(self, service, ctx, loan, storage):
        service.apply_payment(ctx, loan.id, Decimal('3433.34'), PaymentMethod.CASH, date(2024, 1, 31))
        modification = service.recalculate_schedule(ctx, loan.id, new_term_days=60, reason="hardship")

        assert modification.new_term_days == 60
        assert [e.installment_number for e in service.get_schedule(ctx, loan.id)] == [1, 2]
        assert storage.load(SCHEDULE_TABLE, f"{loan.id}:3") is None
        assert [m.id for m in service.get_modifications(ctx, loan.id)] == [modification.id]
        assert service.verify_loan(ctx, loan.id)['valid'] is True


class TestAuditAndEvents:
    """Test audit logging and post-commit events"""

    def test_operations_are_audited(self, service, ctx, loan, audit_trail):
        service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))

        events = audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_APPROVED, AuditEventType.LOAN_DISBURSED, AuditEventType.PAYMENT_RECORDED
        ]
        assert events[-1].tenant_id == "tenant-a"
        assert events[-1].user_id == "officer-1"
        assert events[-1].correlation_id == "req-1"
        assert audit_trail.verify_integrity()['valid'] is True

    def test_events_published_after_commit(self, service, ctx, loan, dispatcher):
        received = []
        dispatcher.subscribe_all(received.append)
        service.apply_payment(ctx, loan.id, Decimal('10300'), PaymentMethod.CASH, date(2024, 1, 20))
        assert [e.event_type for e in received] == [DomainEvent.PAYMENT_RECORDED, DomainEvent.LOAN_PAID_OFF]

    def test_no_events_when_operation_fails(self, service, ctx, loan, dispatcher):
        received = []
        dispatcher.subscribe_all(received.append)
        with pytest.raises(InvalidPaymentAmount):
            service.apply_payment(ctx, loan.id, Decimal('0'), PaymentMethod.CASH, date(2024, 1, 20))
        assert received == []

    def test_failing_subscriber_does_not_undo_payment(self, service, ctx, loan, dispatcher):
        def broken(event):
            raise RuntimeError("downstream failure")

        dispatcher.subscribe(DomainEvent.PAYMENT_RECORDED, broken)
        payment = service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))
        assert service.get_payment(ctx, payment.id).amount == Decimal('100')

    def test_publishing_disabled_by_config(self, service, ctx, loan, dispatcher, config):
        config.enable_event_publishing = False
        received = []
        dispatcher.subscribe_all(received.append)
        service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))
        assert received == []


class TestVerifyLoan:

    def test_consistent_loan(self, service, ctx, loan):
        service.apply_payment(ctx, loan.id, Decimal('100'), PaymentMethod.CASH, date(2024, 1, 20))
        assert service.verify_loan(ctx, loan.id) == {'loan_id': loan.id, 'valid': True, 'issues': []}

    def test_tampered_loan_reported(self, service, ctx, loan, storage):
        data = storage.load(LOANS_TABLE, loan.id)
        data['amount_paid'] = "50.00"
        storage.save(LOANS_TABLE, loan.id, data)

        result = service.verify_loan(ctx, loan.id)
        assert result['valid'] is False
        assert result['issues']
