"""
Loan Ledger Service

Runs the pure ledger operations against storage. Every mutating call:

1. takes the per-loan lock and opens ``storage.atomic()``,
2. loads the loan row with ``lock_record`` (``SELECT ... FOR UPDATE`` on
   PostgreSQL) together with its schedule,
3. runs the ledger function and verifies the resulting snapshot,
4. checks the stored loan version is still the one it read,
5. writes the effects and an audit event,
6. publishes domain events once the transaction has committed.

Any exception before commit rolls back every write of the operation.
Read-only calls (``get_schedule``, ``get_balance``...) run outside a
transaction.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union
from contextlib import contextmanager
import logging
import threading
import weakref

from . import ledger
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .errors import (
    ConcurrentModification, LedgerError, LoanNotFound, PaymentNotFound, ScheduleInconsistency
)
from .events import EventDispatcher, get_global_dispatcher
from .ledger import (
    LOANS_TABLE, SCHEDULE_TABLE, PAYMENTS_TABLE, MODIFICATIONS_TABLE, LedgerResult
)
from .logging_config import log_action
from .models import (
    ApprovalTerms, ClosureType, InstallmentStatus, LedgerContext, Loan, LoanApplication, LoanBalance,
    LoanModification, LoanSnapshot, LoanStatus, Payment, PaymentFrequency, PaymentMethod,
    PaymentStatus, RepaymentScheduleEntry
)
from .penalties import apply_late_penalty, waive_penalty
from .products import LoanProductCatalog
from .storage import StorageInterface


logger = logging.getLogger("loan_ledger.service")

Amount = Union[Decimal, int, str]


class LoanLedgerService:
    """
    External interface of the loan ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        catalog: Optional[LoanProductCatalog] = None,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.catalog = catalog or LoanProductCatalog(storage, self.audit_trail)
        self.dispatcher = dispatcher or get_global_dispatcher()

        # Dropped once no caller holds them
        self._loan_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # --- Origination -------------------------------------------------------

    def approve_loan(self, ctx: LedgerContext, application: LoanApplication,
                     approval_terms: ApprovalTerms) -> Loan:
        """Price an approved application into a loan awaiting disbursement"""
        product = self.catalog.get_product(ctx, application.product_id)
        result = ledger.approve_loan(ctx, application, approval_terms, product)

        with self._guard(ctx, "approve_loan", result.loan.id):
            with self.storage.atomic():
                self._write(ctx, None, result, AuditEventType.LOAN_APPROVED, {
                    "application_id": application.id,
                    "customer_id": application.customer_id,
                    "product_id": product.id,
                    "principal_amount": result.loan.principal_amount,
                    "total_amount": result.loan.total_amount,
                })

        self._publish(result)
        self._log(ctx, "info", f"Approved loan {result.loan.loan_number}", "approve_loan", result.loan.id)
        return result.loan

    def activate_loan(self, ctx: LedgerContext, loan_id: str,
                      disbursement_date: Optional[date] = None) -> Loan:
        """Disburse a pending loan and generate its schedule"""
        disbursement_date = disbursement_date or date.today()
        result = self._run(
            ctx, loan_id, "activate_loan",
            lambda snapshot: ledger.activate_loan(snapshot, disbursement_date),
            AuditEventType.LOAN_DISBURSED,
            lambda r: {
                "disbursement_date": disbursement_date,
                "maturity_date": r.loan.maturity_date,
                "installments": len(r.snapshot.schedule),
            }
        )
        return result.loan

    def disburse_loan(self, ctx: LedgerContext, application: LoanApplication,
                      approval_terms: ApprovalTerms) -> Loan:
        """
        Create a loan with its initial schedule from an approved application.

        Approval and disbursement commit together: either the loan exists
        active with a complete schedule, or nothing was written.
        """
        product = self.catalog.get_product(ctx, application.product_id)
        disbursement_date = approval_terms.disbursement_date or date.today()

        approved = ledger.approve_loan(ctx, application, approval_terms, product)
        activated = ledger.activate_loan(approved.snapshot, disbursement_date)

        with self._guard(ctx, "disburse_loan", approved.loan.id):
            with self._loan_lock(approved.loan.id):
                with self.storage.atomic():
                    self._write(ctx, None, approved, AuditEventType.LOAN_APPROVED, {
                        "application_id": application.id,
                        "product_id": product.id,
                        "principal_amount": approved.loan.principal_amount,
                    })
                    self._write(ctx, approved.snapshot, activated, AuditEventType.LOAN_DISBURSED, {
                        "disbursement_date": disbursement_date,
                        "total_amount": activated.loan.total_amount,
                        "installments": len(activated.snapshot.schedule),
                    })

        self._publish(approved)
        self._publish(activated)
        self._log(ctx, "info", f"Disbursed loan {activated.loan.loan_number}",
                  "disburse_loan", activated.loan.id)
        return activated.loan

    # --- Payments ----------------------------------------------------------

    def apply_payment(self, ctx: LedgerContext, loan_id: str, amount: Amount,
                      method: Optional[PaymentMethod] = None,
                      payment_date: Optional[date] = None,
                      reference: Optional[str] = None) -> Payment:
        """
        Record a payment and allocate it across the schedule

        Args:
            ctx: Caller identity
            loan_id: Loan ID
            amount: Amount received, at most the outstanding balance
            method: Payment method (defaults to configuration)
            payment_date: Date funds were received (defaults to today)
            reference: External reference

        Returns:
            Payment record with its allocation
        """
        method = method or PaymentMethod(self.config.default_payment_method)
        payment_date = payment_date or date.today()

        result = self._run(
            ctx, loan_id, "apply_payment",
            lambda snapshot: ledger.apply_payment(
                snapshot, amount, method, payment_date,
                reference=reference, recorded_by=ctx.user_id
            ),
            AuditEventType.PAYMENT_RECORDED,
            lambda r: {
                "payment_id": r.payment.id,
                "amount": r.payment.amount,
                "principal_portion": r.payment.principal_portion,
                "interest_portion": r.payment.interest_portion,
                "fee_portion": r.payment.fee_portion,
                "penalty_portion": r.payment.penalty_portion,
                "method": r.payment.method,
                "outstanding_balance": r.loan.outstanding_balance,
                "status": r.loan.status,
            }
        )
        return result.payment

    def reverse_payment(self, ctx: LedgerContext, payment_id: str, reason: str) -> Loan:
        """Reverse a completed payment and restore the ledger to its prior state"""
        payment = self.get_payment(ctx, payment_id)

        result = self._run(
            ctx, payment.loan_id, "reverse_payment",
            lambda snapshot: ledger.reverse_payment(
                snapshot, self.get_payment(ctx, payment_id), reason, reversed_by=ctx.user_id
            ),
            AuditEventType.PAYMENT_REVERSED,
            lambda r: {
                "payment_id": payment_id,
                "amount": r.payment.amount,
                "reason": reason,
                "outstanding_balance": r.loan.outstanding_balance,
                "status": r.loan.status,
            }
        )
        return result.loan

    # --- Overdue and penalties ---------------------------------------------

    def detect_overdue(self, ctx: LedgerContext, loan_id: str,
                       as_of_date: Optional[date] = None) -> Loan:
        """Re-evaluate overdue installments; returns the loan with its updated status"""
        as_of_date = as_of_date or date.today()
        result = self._run(
            ctx, loan_id, "detect_overdue",
            lambda snapshot: ledger.detect_overdue(snapshot, as_of_date),
            AuditEventType.LOAN_OVERDUE,
            lambda r: {
                "as_of_date": as_of_date,
                "days_overdue": r.loan.days_overdue,
                "overdue_installments": [
                    e.installment_number for e in r.snapshot.schedule
                    if e.status == InstallmentStatus.OVERDUE
                ],
            }
        )
        return result.loan

    def detect_overdue_all(self, ctx: LedgerContext, as_of_date: Optional[date] = None) -> Dict[str, int]:
        """
        Run overdue detection over every active or overdue loan of the tenant

        Returns:
            Counts of loans checked and loans newly overdue
        """
        as_of_date = as_of_date or date.today()
        results = {"checked": 0, "newly_overdue": 0}

        for data in self.storage.find(LOANS_TABLE, {"tenant_id": ctx.tenant_id}):
            if data.get("status") != LoanStatus.ACTIVE.value and data.get("status") != LoanStatus.OVERDUE.value:
                continue
            before = data["status"]
            loan = self.detect_overdue(ctx, data["id"], as_of_date)
            results["checked"] += 1
            if before == LoanStatus.ACTIVE.value and loan.status == LoanStatus.OVERDUE:
                results["newly_overdue"] += 1

        self._log(ctx, "info", f"Overdue run as of {as_of_date}: {results}", "detect_overdue_all", None)
        return results

    def apply_late_penalty(self, ctx: LedgerContext, loan_id: str, installment_number: int,
                           as_of_date: Optional[date] = None,
                           period_key: Optional[str] = None) -> Decimal:
        """Charge a late penalty on one installment; returns the amount charged"""
        as_of_date = as_of_date or date.today()
        result = self._run(
            ctx, loan_id, "apply_late_penalty",
            lambda snapshot: apply_late_penalty(
                snapshot, installment_number, as_of_date,
                period_key=period_key,
                require_period_key=self.config.require_penalty_period_key
            ),
            AuditEventType.PENALTY_APPLIED,
            lambda r: {
                "installment_number": installment_number,
                "penalty": r.penalty,
                "period_key": period_key,
                "as_of_date": as_of_date,
            }
        )
        return result.penalty

    def waive_penalty(self, ctx: LedgerContext, loan_id: str, installment_number: Optional[int],
                      amount: Amount, reason: str) -> Loan:
        """Forgive outstanding penalty on one installment, or across the loan when no number is given"""
        result = self._run(
            ctx, loan_id, "waive_penalty",
            lambda snapshot: waive_penalty(
                snapshot, installment_number, amount, reason, waived_by=ctx.user_id
            ),
            AuditEventType.PENALTY_WAIVED,
            lambda r: {
                "installment_number": installment_number,
                "amount": r.penalty,
                "reason": reason,
                "penalty_waived_amount": r.loan.penalty_waived_amount,
            }
        )
        return result.loan

    # --- Administration ----------------------------------------------------

    def close_loan(self, ctx: LedgerContext, loan_id: str, closure_type: ClosureType,
                   reason: Optional[str] = None) -> Loan:
        """Close a settled loan or write off its remaining balance"""
        audit_type = (AuditEventType.LOAN_WRITTEN_OFF if closure_type == ClosureType.WRITTEN_OFF
                      else AuditEventType.LOAN_CLOSED)
        result = self._run(
            ctx, loan_id, "close_loan",
            lambda snapshot: ledger.close_loan(snapshot, closure_type, reason),
            audit_type,
            lambda r: {
                "closure_type": closure_type,
                "reason": reason,
                "written_off_amount": r.loan.written_off_amount,
            }
        )
        return result.loan

    def suspend_loan(self, ctx: LedgerContext, loan_id: str, reason: Optional[str] = None) -> Loan:
        result = self._run(
            ctx, loan_id, "suspend_loan",
            lambda snapshot: ledger.suspend_loan(snapshot, reason),
            AuditEventType.LOAN_SUSPENDED,
            lambda r: {"reason": reason, "status_before": r.loan.status_before_suspension}
        )
        return result.loan

    def resume_loan(self, ctx: LedgerContext, loan_id: str, reason: Optional[str] = None) -> Loan:
        result = self._run(
            ctx, loan_id, "resume_loan",
            lambda snapshot: ledger.resume_loan(snapshot, reason),
            AuditEventType.LOAN_RESUMED,
            lambda r: {"reason": reason, "status": r.loan.status}
        )
        return result.loan

    def recalculate_schedule(self, ctx: LedgerContext, loan_id: str,
                             new_principal: Optional[Amount] = None,
                             new_rate: Optional[Amount] = None,
                             new_term_days: Optional[int] = None,
                             frequency: Optional[PaymentFrequency] = None,
                             modification_type: str = "restructure",
                             reason: Optional[str] = None) -> LoanModification:
        """Restructure a loan, keeping paid installments and rebuilding the rest"""
        result = self._run(
            ctx, loan_id, "recalculate_schedule",
            lambda snapshot: ledger.recalculate_schedule(
                snapshot,
                new_principal=new_principal,
                new_rate=new_rate,
                new_term_days=new_term_days,
                frequency=frequency,
                modification_type=modification_type,
                reason=reason,
                created_by=ctx.user_id
            ),
            AuditEventType.SCHEDULE_RECALCULATED,
            lambda r: {
                "modification_id": r.modification.id,
                "modification_type": modification_type,
                "principal_amount": r.loan.principal_amount,
                "interest_rate": r.loan.interest_rate,
                "term_days": r.loan.term_days,
                "outstanding_balance": r.loan.outstanding_balance,
            }
        )
        return result.modification

    # --- Reads -------------------------------------------------------------

    def get_loan(self, ctx: LedgerContext, loan_id: str) -> Loan:
        data = self.storage.load(LOANS_TABLE, loan_id)
        if not data or data.get('tenant_id') != ctx.tenant_id:
            raise LoanNotFound(loan_id)
        return Loan.from_dict(data)

    def get_schedule(self, ctx: LedgerContext, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Repayment schedule ordered by installment number"""
        self.get_loan(ctx, loan_id)
        return self._load_schedule(loan_id)

    def get_balance(self, ctx: LedgerContext, loan_id: str) -> LoanBalance:
        """Outstanding balance and the next installment due"""
        loan = self.get_loan(ctx, loan_id)
        snapshot = LoanSnapshot.of(loan, self._load_schedule(loan_id))
        return LoanBalance(
            loan_id=loan.id,
            status=loan.status,
            outstanding_balance=loan.outstanding_balance,
            amount_paid=loan.amount_paid,
            penalty_amount=loan.penalty_amount,
            penalty_waived_amount=loan.penalty_waived_amount,
            next_due_entry=snapshot.next_due_entry() if not loan.is_terminal else None
        )

    def get_payment(self, ctx: LedgerContext, payment_id: str) -> Payment:
        data = self.storage.load(PAYMENTS_TABLE, payment_id)
        if not data or data.get('tenant_id') != ctx.tenant_id:
            raise PaymentNotFound(payment_id)
        return Payment.from_dict(data)

    def get_payments(self, ctx: LedgerContext, loan_id: str,
                     status: Optional[PaymentStatus] = None) -> List[Payment]:
        """Payments of a loan in the order they were recorded"""
        self.get_loan(ctx, loan_id)
        filters = {"loan_id": loan_id}
        if status:
            filters["status"] = status.value
        payments = [Payment.from_dict(d) for d in self.storage.find(PAYMENTS_TABLE, filters)]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def get_modifications(self, ctx: LedgerContext, loan_id: str) -> List[LoanModification]:
        self.get_loan(ctx, loan_id)
        modifications = [LoanModification.from_dict(d)
                         for d in self.storage.find(MODIFICATIONS_TABLE, {"loan_id": loan_id})]
        modifications.sort(key=lambda m: m.created_at)
        return modifications

    def list_loans(self, ctx: LedgerContext, status: Optional[LoanStatus] = None,
                   customer_id: Optional[str] = None) -> List[Loan]:
        filters = {"tenant_id": ctx.tenant_id}
        if status:
            filters["status"] = status.value
        if customer_id:
            filters["customer_id"] = customer_id
        return [Loan.from_dict(d) for d in self.storage.find(LOANS_TABLE, filters)]

    def verify_loan(self, ctx: LedgerContext, loan_id: str) -> Dict[str, Any]:
        """
        Check a stored loan against its schedule and payment log

        Returns:
            Dictionary with ``valid`` and a list of ``issues``
        """
        loan = self.get_loan(ctx, loan_id)
        snapshot = LoanSnapshot.of(loan, self._load_schedule(loan_id))
        result = {'loan_id': loan_id, 'valid': True, 'issues': []}

        try:
            ledger.verify_invariants(snapshot)
        except ScheduleInconsistency as e:
            result['valid'] = False
            result['issues'].append(e.to_dict())

        completed = sum(
            (p.amount for p in self.get_payments(ctx, loan_id, PaymentStatus.COMPLETED)),
            Decimal('0')
        )
        if completed != loan.amount_paid:
            result['valid'] = False
            result['issues'].append({
                'code': ScheduleInconsistency.code,
                'message': "completed payments do not sum to loan amount paid",
                'details': {'expected': str(loan.amount_paid), 'actual': str(completed)}
            })

        if not result['valid']:
            self._log(ctx, "error", f"Loan {loan_id} failed verification", "verify_loan", loan_id,
                      {'issues': result['issues']})
        return result

    # --- Internals ---------------------------------------------------------

    def _loan_lock(self, loan_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._loan_locks.get(loan_id)
            if lock is None:
                lock = self._loan_locks[loan_id] = threading.RLock()
            return lock

    def _load_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        entries = [RepaymentScheduleEntry.from_dict(d)
                   for d in self.storage.find(SCHEDULE_TABLE, {"loan_id": loan_id})]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def _load_snapshot_for_update(self, ctx: LedgerContext, loan_id: str) -> LoanSnapshot:
        data = self.storage.lock_record(LOANS_TABLE, loan_id)
        if not data or data.get('tenant_id') != ctx.tenant_id:
            raise LoanNotFound(loan_id)
        return LoanSnapshot.of(Loan.from_dict(data), self._load_schedule(loan_id))

    @contextmanager
    def _guard(self, ctx: LedgerContext, action: str, loan_id: Optional[str]):
        """Log ledger failures with context and let them propagate"""
        try:
            yield
        except ScheduleInconsistency as e:
            self._log(ctx, "error", f"{action} aborted: {e}", action, loan_id, e.to_dict())
            raise
        except LedgerError as e:
            self._log(ctx, "warning", f"{action} rejected: {e}", action, loan_id, e.to_dict())
            raise

    def _run(self, ctx: LedgerContext, loan_id: str, action: str,
             operation: Callable[[LoanSnapshot], LedgerResult],
             audit_type: AuditEventType,
             audit_metadata: Callable[[LedgerResult], Dict[str, Any]]) -> LedgerResult:
        """Run one ledger operation as a single atomic, per-loan serialized unit"""
        with self._guard(ctx, action, loan_id):
            with self._loan_lock(loan_id):
                with self.storage.atomic():
                    snapshot = self._load_snapshot_for_update(ctx, loan_id)
                    result = operation(snapshot)
                    if result.effects:
                        self._write(ctx, snapshot, result, audit_type, audit_metadata(result))

        self._publish(result)
        if result.effects:
            self._log(ctx, "info", f"{action} on loan {result.loan.loan_number}", action, loan_id,
                      {'status': result.loan.status.value,
                       'outstanding_balance': str(result.loan.outstanding_balance)})
        return result

    def _write(self, ctx: LedgerContext, before: Optional[LoanSnapshot], result: LedgerResult,
               audit_type: AuditEventType, metadata: Dict[str, Any]) -> None:
        """Verify and persist a result; must run inside storage.atomic()"""
        ledger.verify_invariants(result.snapshot)

        loan = result.loan
        stored = self.storage.load(LOANS_TABLE, loan.id)
        stored_version = stored.get('version', 0) if stored else 0
        expected_version = before.loan.version if before else 0
        if stored_version != expected_version:
            raise ConcurrentModification(loan.id, expected_version, stored_version)

        for effect in result.effects:
            if effect.is_delete:
                self.storage.delete(effect.table, effect.record_id)
            else:
                self.storage.save(effect.table, effect.record_id, effect.record)

        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=audit_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                correlation_id=ctx.correlation_id
            )

    def _publish(self, result: LedgerResult) -> None:
        if not self.config.enable_event_publishing:
            return
        for event in result.events:
            self.dispatcher.publish(event)

    def _log(self, ctx: LedgerContext, level: str, message: str, action: str,
             loan_id: Optional[str], extra: Optional[dict] = None) -> None:
        log_action(
            logger, level, message,
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            action=action,
            resource=f"loan:{loan_id}" if loan_id else None,
            correlation_id=ctx.correlation_id,
            extra=extra
        )
