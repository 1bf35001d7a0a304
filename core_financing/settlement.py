"""
Payment Settlement Module

The only writer allowed to mark installments paid or to liquidate a loan.
Every operation re-reads the loan and its full installment set inside one
atomic block, recomputes the loan aggregates from those rows and writes the
loan back with a version check. A lost race rolls the block back and the
operation is retried from a fresh read.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .currency import ZERO
from .errors import ConcurrentModificationError, FinancingError, NotFoundError, StateConflictError, ValidationError
from .loans import Loan, LoanInstallment, LoanManager, LoanStatus
from .logging_config import log_action
from .rbac import AccessPolicy, CallerContext, Permission
from .storage import StorageInterface

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """Loan aggregates after a settlement operation"""
    loan_id: str
    paid_amount: Decimal
    balance_due: Decimal
    status: LoanStatus
    next_due_date: Optional[date] = None
    liquidated_at: Optional[datetime] = None
    installments_settled: int = 0
    changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'paid_amount': str(self.paid_amount),
            'balance_due': str(self.balance_due),
            'status': self.status.value,
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'liquidated_at': self.liquidated_at.isoformat() if self.liquidated_at else None,
            'installments_settled': self.installments_settled,
            'changed': self.changed,
        }


@dataclass
class LoanAggregates:
    """Loan-level values derived from the installment rows"""
    paid_amount: Decimal
    balance_due: Decimal
    status: LoanStatus
    next_due_date: Optional[date]
    all_paid: bool


def compute_aggregates(loan: Loan, installments: Sequence[LoanInstallment]) -> LoanAggregates:
    """
    Derive paid_amount, balance_due, status and next_due_date from the rows

    Reads only, so running it again over the same rows gives the same answer.
    A loan whose rows are all paid is liquidado with nothing left to pay; a
    payoff that went through early liquidation counts as the full total.
    """
    paid_rows = [i for i in installments if i.is_paid]
    unpaid_rows = [i for i in installments if not i.is_paid]
    all_paid = bool(installments) and not unpaid_rows

    total_paid = sum((i.paid_amount for i in paid_rows), ZERO)
    principal_settled = sum((i.principal_amount for i in paid_rows), ZERO)

    if all_paid:
        if any(i.is_early_payment for i in paid_rows):
            paid_amount = loan.total_amount
        else:
            paid_amount = loan.down_payment + total_paid
        # Rounding residue on the last row is absorbed here
        balance_due = ZERO
        status = LoanStatus.LIQUIDADO
    else:
        # The down payment is folded in once the first installment is settled
        paid_amount = loan.down_payment + total_paid if paid_rows else ZERO
        balance_due = max(ZERO, loan.financed_amount - principal_settled)
        status = LoanStatus.AL_DIA if paid_rows else LoanStatus.ACTIVO

    return LoanAggregates(
        paid_amount=paid_amount,
        balance_due=balance_due,
        status=status,
        next_due_date=unpaid_rows[0].due_date if unpaid_rows else None,
        all_paid=all_paid
    )


class PaymentSettlementService:
    """
    Settles installments and liquidates loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        access_policy: Optional[AccessPolicy] = None,
        max_retries: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.access = access_policy or loan_manager.access
        settings = get_config()
        self.max_retries = max_retries if max_retries is not None else settings.settlement_max_retries
        self.notes_max_length = settings.notes_max_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def pay_installment(
        self,
        caller: CallerContext,
        loan_id: str,
        installment_id: str,
        notes: Optional[str] = None
    ) -> SettlementResult:
        """
        Mark one installment paid at its scheduled amount

        Args:
            caller: Authenticated caller
            loan_id: Loan the installment belongs to
            installment_id: Installment to settle
            notes: Optional payment notes

        Returns:
            Loan aggregates recomputed from every installment

        Raises:
            AuthorizationError: Caller may not settle payments
            ValidationError: Missing ids
            NotFoundError: Unknown loan, or installment not on this loan
            StateConflictError: Loan closed or installment already paid
        """
        self.access.require(caller, Permission.SETTLE_PAYMENTS)
        if not loan_id or not installment_id:
            raise ValidationError("Missing loan_id or installment_id")
        notes = self._clean_notes(notes)

        def operation() -> SettlementResult:
            with self.storage.atomic():
                loan = self._load_open_loan(caller, loan_id)

                installments = self.loan_manager.load_installments(loan.id)
                target = next((i for i in installments if i.id == installment_id), None)
                if target is None:
                    raise NotFoundError("Installment not found")
                if target.is_paid:
                    raise StateConflictError("Installment already paid")

                now = self._clock()
                target.is_paid = True
                target.paid_amount = target.scheduled_payment
                target.paid_at = now
                target.payment_notes = notes
                target.updated_at = now
                self.loan_manager.save_installment(target)

                result = self._apply_aggregates(loan, installments, now)
                result.installments_settled = 1

                self.audit_trail.log_event(
                    event_type=AuditEventType.INSTALLMENT_PAID,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=caller.user_id,
                    tenant_id=loan.tenant_id,
                    metadata={
                        "installment_id": target.id,
                        "installment_number": target.installment_number,
                        "amount": target.paid_amount,
                        "balance_due": result.balance_due,
                        "status": result.status
                    }
                )
                return result

        return self._run(caller, "pay_installment", loan_id, operation)

    def liquidate_loan(self, caller: CallerContext, loan_id: str) -> SettlementResult:
        """
        Settle every unpaid installment at its principal, forgiving interest

        The installment batch is written before the loan row; both land in
        one atomic block.

        Raises:
            AuthorizationError: Caller may not settle payments
            ValidationError: Missing loan id
            NotFoundError: Unknown loan
            StateConflictError: Loan already liquidated or cancelled
        """
        self.access.require(caller, Permission.SETTLE_PAYMENTS)
        if not loan_id:
            raise ValidationError("Missing loan_id")

        def operation() -> SettlementResult:
            with self.storage.atomic():
                loan = self._load_open_loan(caller, loan_id)
                installments = self.loan_manager.load_installments(loan.id)

                now = self._clock()
                settled = 0
                forgiven = ZERO
                for installment in installments:
                    if installment.is_paid:
                        continue
                    installment.is_paid = True
                    installment.is_early_payment = True
                    installment.paid_amount = installment.principal_amount
                    installment.paid_at = now
                    installment.updated_at = now
                    self.loan_manager.save_installment(installment)
                    settled += 1
                    forgiven += installment.interest_amount

                result = self._apply_aggregates(loan, installments, now)
                result.installments_settled = settled

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_LIQUIDATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=caller.user_id,
                    tenant_id=loan.tenant_id,
                    metadata={
                        "installments_settled": settled,
                        "interest_forgiven": forgiven,
                        "paid_amount": result.paid_amount
                    }
                )
                return result

        return self._run(caller, "liquidate_loan", loan_id, operation)

    def reconcile_loan(self, caller: CallerContext, loan_id: str) -> SettlementResult:
        """
        Re-run the aggregate recompute over the stored installments

        Repairs a loan row left stale behind its installments. Writes only
        when a stored aggregate differs from the recomputed one.

        Raises:
            AuthorizationError: Caller may not reconcile loans
            NotFoundError: Unknown loan
            StateConflictError: Loan is cancelled
        """
        self.access.require(caller, Permission.RECONCILE_LOAN)
        if not loan_id:
            raise ValidationError("Missing loan_id")

        def operation() -> SettlementResult:
            with self.storage.atomic():
                loan = self.loan_manager.load_authorized(caller, loan_id, Permission.RECONCILE_LOAN)
                if loan.status == LoanStatus.CANCELADO:
                    raise StateConflictError("Loan is cancelled")

                installments = self.loan_manager.load_installments(loan.id)
                before = (loan.paid_amount, loan.balance_due, loan.status, loan.next_due_date)
                aggregates = compute_aggregates(loan, installments)
                after = (aggregates.paid_amount, aggregates.balance_due,
                         aggregates.status, aggregates.next_due_date)

                if before == after:
                    return self._result(loan, changed=False)

                result = self._apply_aggregates(loan, installments, self._clock())
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_RECONCILED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=caller.user_id,
                    tenant_id=loan.tenant_id,
                    metadata={
                        "previous_paid_amount": before[0],
                        "previous_balance_due": before[1],
                        "previous_status": before[2],
                        "paid_amount": result.paid_amount,
                        "balance_due": result.balance_due,
                        "status": result.status
                    }
                )
                return result

        return self._run(caller, "reconcile_loan", loan_id, operation)

    def _load_open_loan(self, caller: CallerContext, loan_id: str) -> Loan:
        loan = self.loan_manager.load_authorized(caller, loan_id, Permission.SETTLE_PAYMENTS)
        if loan.is_closed:
            raise StateConflictError("Loan is already closed")
        return loan

    def _apply_aggregates(self, loan: Loan, installments: List[LoanInstallment],
                          now: datetime) -> SettlementResult:
        """Recompute from the rows and write the loan with a version check"""
        aggregates = compute_aggregates(loan, installments)
        loan.paid_amount = aggregates.paid_amount
        loan.balance_due = aggregates.balance_due
        loan.status = aggregates.status
        loan.next_due_date = aggregates.next_due_date
        if aggregates.all_paid and loan.liquidated_at is None:
            loan.liquidated_at = now
        loan.updated_at = now
        self.loan_manager.save_loan(loan)
        return self._result(loan)

    @staticmethod
    def _result(loan: Loan, changed: bool = True) -> SettlementResult:
        return SettlementResult(
            loan_id=loan.id,
            paid_amount=loan.paid_amount,
            balance_due=loan.balance_due,
            status=loan.status,
            next_due_date=loan.next_due_date,
            liquidated_at=loan.liquidated_at,
            changed=changed
        )

    def _clean_notes(self, notes: Optional[str]) -> Optional[str]:
        if notes is None:
            return None
        if not isinstance(notes, str):
            raise ValidationError("Notes must be a string")
        notes = notes.strip()
        return notes[:self.notes_max_length] or None

    def _run(self, caller: CallerContext, action: str, loan_id: str,
             operation: Callable[[], SettlementResult]) -> SettlementResult:
        """Run an operation, retrying from a fresh read when a version check fails"""
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
            except ConcurrentModificationError as e:
                if attempt < self.max_retries:
                    logger.info("Retrying %s on loan %s after conflict (attempt %d)",
                                action, loan_id, attempt)
                    continue
                self._log_failure(caller, action, loan_id, e)
                raise
            except FinancingError as e:
                self._log_failure(caller, action, loan_id, e)
                raise

            log_action(
                logger, "info", f"{action} completed",
                user_id=caller.user_id,
                action=action,
                resource=f"loan:{loan_id}",
                extra={
                    "status": result.status.value,
                    "balance_due": str(result.balance_due),
                    "attempts": attempt
                }
            )
            return result

    @staticmethod
    def _log_failure(caller: CallerContext, action: str, loan_id: str, error: FinancingError) -> None:
        log_action(
            logger, "warning", f"{action} rejected: {error}",
            user_id=caller.user_id,
            action=action,
            resource=f"loan:{loan_id}",
            extra={"error": error.kind}
        )
