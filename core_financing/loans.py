"""
Loan Module

Installment loans for financed sales: terms, the persisted loan record with
its ordered installments, the status state machine and read-side views
(effective overdue status, portfolio summary).

Money moves only through the settlement service; this module creates loans,
reads them back and performs the administrative cancellation.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union
from enum import Enum
import logging
import uuid

from .amortization import MAX_INSTALLMENTS, InstallmentRow, generate_schedule
from .audit import AuditEvent, AuditTrail, AuditEventType
from .currency import ZERO, parse_amount, to_decimal
from .errors import (
    AuthorizationError, ConcurrentModificationError, NotFoundError, StateConflictError, ValidationError
)
from .periods import PaymentPeriod, parse_period
from .rbac import AccessPolicy, CallerContext, Permission
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVO = "activo"           # Just created, nothing paid yet
    AL_DIA = "al_dia"           # At least one installment paid, none overdue
    ATRASADO = "atrasado"       # Read-time only: an unpaid installment is past due
    LIQUIDADO = "liquidado"     # Every installment settled
    CANCELADO = "cancelado"     # Administrative cancellation


TERMINAL_STATUSES = {LoanStatus.LIQUIDADO, LoanStatus.CANCELADO}


@dataclass
class LoanTerms:
    """Terms agreed with the customer"""
    total_amount: Decimal
    down_payment: Decimal
    monthly_rate: Decimal              # Percent per month, e.g. 5 for 5%
    installment_count: int
    payment_period: PaymentPeriod
    start_date: date

    def __post_init__(self):
        self.total_amount = parse_amount(self.total_amount, 'total_amount')
        self.down_payment = parse_amount(self.down_payment, 'down_payment')
        self.monthly_rate = to_decimal(self.monthly_rate, 'monthly_rate')
        self.payment_period = parse_period(self.payment_period)

        if self.down_payment < 0:
            raise ValidationError("Down payment cannot be negative")
        if self.monthly_rate < 0:
            raise ValidationError("Monthly rate cannot be negative")
        if isinstance(self.installment_count, bool) or not isinstance(self.installment_count, int) \
                or self.installment_count < 1:
            raise ValidationError(f"Installment count must be a positive integer: {self.installment_count!r}")
        if self.installment_count > MAX_INSTALLMENTS:
            raise ValidationError(f"Installment count cannot exceed {MAX_INSTALLMENTS}: {self.installment_count}")
        if not isinstance(self.start_date, date):
            raise ValidationError(f"Invalid start date: {self.start_date!r}")
        if self.financed_amount <= 0:
            raise ValidationError("Financed amount must be greater than zero")

    @property
    def financed_amount(self) -> Decimal:
        return self.total_amount - self.down_payment

    def schedule(self) -> List[InstallmentRow]:
        """Authoritative schedule for these terms"""
        return generate_schedule(
            self.financed_amount,
            self.monthly_rate,
            self.payment_period,
            self.installment_count,
            self.start_date
        )


@dataclass
class Loan(StorageRecord):
    """Persisted loan with its derived aggregates"""
    tenant_id: str
    total_amount: Decimal
    down_payment: Decimal
    financed_amount: Decimal
    monthly_rate: Decimal
    installment_count: int
    payment_period: PaymentPeriod
    start_date: date

    # Aggregates, rewritten only by recomputation from the installment rows
    monthly_payment: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    status: LoanStatus = LoanStatus.ACTIVO
    next_due_date: Optional[date] = None
    liquidated_at: Optional[datetime] = None

    # Back-references, lookup only
    sale_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    item_description: Optional[str] = None
    created_by: Optional[str] = None

    version: int = 0                   # Optimistic concurrency token

    @property
    def is_closed(self) -> bool:
        """Liquidated and cancelled loans accept no further changes"""
        return self.status in TERMINAL_STATUSES


@dataclass
class LoanInstallment(StorageRecord):
    """One scheduled installment; schedule fields never change after creation"""
    loan_id: str
    tenant_id: str
    installment_number: int
    due_date: date
    opening_balance: Decimal
    interest_amount: Decimal
    principal_amount: Decimal
    closing_balance: Decimal
    scheduled_payment: Decimal

    # Settlement fields, set exactly once
    is_paid: bool = False
    paid_amount: Decimal = ZERO
    paid_at: Optional[datetime] = None
    is_early_payment: bool = False
    payment_notes: Optional[str] = None

    def is_overdue(self, as_of: date) -> bool:
        return not self.is_paid and self.due_date < as_of


@dataclass
class LoanDetail:
    """Loan, its installments and the status to display as of a date"""
    loan: Loan
    installments: List[LoanInstallment]
    effective_status: LoanStatus


@dataclass
class PortfolioSummary:
    """Financing KPIs for one tenant"""
    tenant_id: str
    active_loans: int = 0
    overdue_loans: int = 0
    liquidated_loans: int = 0
    total_balance_due: Decimal = ZERO
    total_collected: Decimal = ZERO


def effective_status(loan: Loan, installments: Sequence[LoanInstallment], as_of: date) -> LoanStatus:
    """
    Status to display as of a date

    atrasado is never stored: an open loan is overdue while any unpaid
    installment has a due date before ``as_of``.
    """
    if loan.is_closed:
        return loan.status
    if any(i.is_overdue(as_of) for i in installments):
        return LoanStatus.ATRASADO
    return loan.status


class LoanManager:
    """
    Creates and reads loans and their installment sets
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        access_policy: Optional[AccessPolicy] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.access = access_policy or AccessPolicy()

        self.loans_table = "loans"
        self.installments_table = "loan_installments"

    def create_loan(
        self,
        caller: CallerContext,
        tenant_id: str,
        terms: LoanTerms,
        schedule: Optional[Sequence[Union[InstallmentRow, Dict[str, Any]]]] = None,
        sale_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        item_description: Optional[str] = None
    ) -> Loan:
        """
        Persist a loan together with its full installment set

        The schedule is regenerated from the terms. A schedule supplied by the
        client (the preview it showed) is accepted only when it matches.

        Args:
            caller: Authenticated caller
            tenant_id: Tenant the loan belongs to
            terms: Loan terms
            schedule: Optional previewed schedule to check against the terms
            sale_id: Originating sale
            customer_id: Borrower
            customer_name: Borrower name as printed on the contract
            customer_phone: Borrower phone
            item_description: Financed item (brand, model, IMEI)

        Returns:
            Created Loan
        """
        self.access.require(caller, Permission.CREATE_LOAN)
        if not tenant_id:
            raise ValidationError("Missing tenant_id")
        if not self.access.can_access(caller, Permission.CREATE_LOAN, tenant_id):
            raise AuthorizationError("Insufficient permissions for tenant")

        rows = terms.schedule()
        if schedule is not None:
            supplied = [
                row if isinstance(row, InstallmentRow) else InstallmentRow.from_dict(row)
                for row in schedule
            ]
            if supplied != rows:
                raise ValidationError("Schedule does not match loan terms")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            total_amount=terms.total_amount,
            down_payment=terms.down_payment,
            financed_amount=terms.financed_amount,
            monthly_rate=terms.monthly_rate,
            installment_count=terms.installment_count,
            payment_period=terms.payment_period,
            start_date=terms.start_date,
            monthly_payment=rows[0].scheduled_payment,
            paid_amount=ZERO,
            balance_due=terms.financed_amount,
            status=LoanStatus.ACTIVO,
            next_due_date=rows[0].due_date,
            sale_id=sale_id,
            customer_id=customer_id,
            customer_name=customer_name,
            customer_phone=customer_phone,
            item_description=item_description,
            created_by=caller.user_id
        )

        installments = [
            LoanInstallment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                tenant_id=tenant_id,
                installment_number=row.installment_number,
                due_date=row.due_date,
                opening_balance=row.opening_balance,
                interest_amount=row.interest_amount,
                principal_amount=row.principal_amount,
                closing_balance=row.closing_balance,
                scheduled_payment=row.scheduled_payment
            )
            for row in rows
        ]

        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            for installment in installments:
                self.save_installment(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=caller.user_id,
                tenant_id=tenant_id,
                metadata={
                    "financed_amount": loan.financed_amount,
                    "monthly_rate": loan.monthly_rate,
                    "installments": loan.installment_count,
                    "payment_period": loan.payment_period,
                    "monthly_payment": loan.monthly_payment,
                    "sale_id": sale_id
                }
            )

        logger.info("Loan %s created for tenant %s (%s x %s)",
                    loan.id, tenant_id, loan.installment_count, loan.monthly_payment)
        return loan

    def get_loan(self, caller: CallerContext, loan_id: str) -> Loan:
        """Get a loan the caller may view"""
        self.access.require(caller, Permission.VIEW_FINANCIALS)
        return self.load_authorized(caller, loan_id, Permission.VIEW_FINANCIALS)

    def get_loan_detail(self, caller: CallerContext, loan_id: str,
                        as_of: Optional[date] = None) -> LoanDetail:
        """Loan with its installments and effective status"""
        loan = self.get_loan(caller, loan_id)
        return self._detail(loan, as_of or date.today())

    def get_loan_history(self, caller: CallerContext, loan_id: str) -> List[AuditEvent]:
        """Audit events recorded against a loan, oldest first"""
        loan = self.get_loan(caller, loan_id)
        return self.audit_trail.get_events_for_entity("loan", loan.id)

    def list_loans(
        self,
        caller: CallerContext,
        tenant_id: str,
        status: Optional[LoanStatus] = None,
        as_of: Optional[date] = None
    ) -> List[LoanDetail]:
        """
        List a tenant's loans, newest first

        Args:
            caller: Authenticated caller
            tenant_id: Tenant to list
            status: Filter on the effective status (so atrasado works)
            as_of: Date used to classify overdue loans (defaults to today)
        """
        self.access.require(caller, Permission.VIEW_FINANCIALS)
        if not self.access.can_access(caller, Permission.VIEW_FINANCIALS, tenant_id):
            raise AuthorizationError("Insufficient permissions for tenant")

        as_of = as_of or date.today()
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, {"tenant_id": tenant_id})]
        loans.sort(key=lambda l: l.created_at, reverse=True)

        details = [self._detail(loan, as_of) for loan in loans]
        if status is not None:
            details = [d for d in details if d.effective_status == status]
        return details

    def portfolio_summary(self, caller: CallerContext, tenant_id: str,
                          as_of: Optional[date] = None) -> PortfolioSummary:
        """Counts and totals across a tenant's loans"""
        summary = PortfolioSummary(tenant_id=tenant_id)
        for detail in self.list_loans(caller, tenant_id, as_of=as_of):
            loan = detail.loan
            summary.total_collected += loan.paid_amount
            if loan.status == LoanStatus.LIQUIDADO:
                summary.liquidated_loans += 1
            if loan.is_closed:
                continue
            summary.active_loans += 1
            summary.total_balance_due += loan.balance_due
            if detail.effective_status == LoanStatus.ATRASADO:
                summary.overdue_loans += 1
        return summary

    def cancel_loan(self, caller: CallerContext, loan_id: str, reason: Optional[str] = None) -> Loan:
        """
        Administrative cancellation

        Only open loans with no paid installment can be cancelled.
        """
        self.access.require(caller, Permission.CANCEL_LOAN)
        if not loan_id:
            raise ValidationError("Missing loan_id")

        with self.storage.atomic():
            loan = self.load_authorized(caller, loan_id, Permission.CANCEL_LOAN)
            if loan.is_closed:
                raise StateConflictError("Loan is already closed")
            if any(i.is_paid for i in self.load_installments(loan.id)):
                raise StateConflictError("Loan has paid installments and cannot be cancelled")

            loan.status = LoanStatus.CANCELADO
            loan.next_due_date = None
            loan.updated_at = datetime.now(timezone.utc)
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CANCELLED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=caller.user_id,
                tenant_id=loan.tenant_id,
                metadata={"reason": reason}
            )

        logger.info("Loan %s cancelled", loan.id)
        return loan

    def load_loan(self, loan_id: str) -> Optional[Loan]:
        """Read a loan straight from storage, no access checks"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def load_authorized(self, caller: CallerContext, loan_id: str, permission: Permission) -> Loan:
        """
        Read a loan the caller may act on

        Raises:
            NotFoundError: If missing or owned by a tenant outside the caller's scope
        """
        loan = self.load_loan(loan_id)
        if loan is None:
            raise NotFoundError("Loan not found")
        self.access.require_tenant(caller, permission, loan.tenant_id, "Loan")
        return loan

    def load_installments(self, loan_id: str) -> List[LoanInstallment]:
        """Read every installment of a loan fresh from storage, in repayment order"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [LoanInstallment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def save_installment(self, installment: LoanInstallment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def save_loan(self, loan: Loan) -> None:
        """
        Write the loan row if nobody else changed it since it was read

        Raises:
            ConcurrentModificationError: If the stored version moved on
        """
        expected = loan.version
        loan.version = expected + 1
        try:
            self.storage.compare_and_swap(self.loans_table, loan.id, loan.to_dict(), expected)
        except ConcurrentModificationError:
            loan.version = expected
            raise

    def _detail(self, loan: Loan, as_of: date) -> LoanDetail:
        installments = self.load_installments(loan.id)
        return LoanDetail(
            loan=loan,
            installments=installments,
            effective_status=effective_status(loan, installments, as_of)
        )
