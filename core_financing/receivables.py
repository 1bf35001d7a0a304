"""
Receivable Ledger Module

Open balances owed by customers outside the installment-loan mechanism,
paid down through any number of partial payments. Payments are append-only;
a receivable's paid_amount is always the sum of its payment rows.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .audit import AuditEvent, AuditTrail, AuditEventType
from .config import get_config
from .currency import ZERO, parse_amount
from .errors import (
    AuthorizationError, ConcurrentModificationError, FinancingError,
    NotFoundError, StateConflictError, ValidationError
)
from .logging_config import log_action
from .rbac import AccessPolicy, CallerContext, Permission
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)


class ReceivableStatus(Enum):
    """Receivable states, a pure function of balance vs original amount"""
    PENDIENTE = "pendiente"
    PARCIAL = "parcial"
    PAGADO = "pagado"


class PaymentMethod(Enum):
    """How the customer paid"""
    EFECTIVO = "efectivo"
    TRANSFERENCIA = "transferencia"
    TARJETA = "tarjeta"


def parse_payment_method(value: Union[PaymentMethod, str, None]) -> PaymentMethod:
    """
    Parse a payment method tag, defaulting to the configured method

    Raises:
        ValidationError: If the tag is not a known method
    """
    if isinstance(value, PaymentMethod):
        return value
    if value is None or (isinstance(value, str) and not value.strip()):
        value = get_config().default_payment_method
    try:
        return PaymentMethod(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid payment method: {value!r}")


def receivable_status(original_amount: Decimal, balance_due: Decimal) -> ReceivableStatus:
    if balance_due <= 0:
        return ReceivableStatus.PAGADO
    if balance_due < original_amount:
        return ReceivableStatus.PARCIAL
    return ReceivableStatus.PENDIENTE


@dataclass
class AccountReceivable(StorageRecord):
    """Open balance owed by a customer"""
    tenant_id: str
    description: str
    original_amount: Decimal
    paid_amount: Decimal = ZERO
    balance_due: Decimal = ZERO
    status: ReceivableStatus = ReceivableStatus.PENDIENTE
    due_date: Optional[date] = None
    sale_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 0


@dataclass
class ARPayment(StorageRecord):
    """One payment against a receivable, never mutated"""
    ar_id: str
    tenant_id: str
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: datetime
    notes: Optional[str] = None
    recorded_by: Optional[str] = None


@dataclass
class ReceivablePaymentResult:
    """Receivable aggregates after a payment, for immediate display"""
    ar_id: str
    payment_id: str
    paid_amount: Decimal
    balance_due: Decimal
    status: ReceivableStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ar_id': self.ar_id,
            'payment_id': self.payment_id,
            'paid_amount': str(self.paid_amount),
            'balance_due': str(self.balance_due),
            'status': self.status.value,
        }


class ReceivableLedger:
    """
    Creates receivables and records payments against them
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        access_policy: Optional[AccessPolicy] = None,
        max_retries: Optional[int] = None,
        clock=None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.access = access_policy or AccessPolicy()
        settings = get_config()
        self.max_retries = max_retries if max_retries is not None else settings.settlement_max_retries
        self.notes_max_length = settings.notes_max_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.receivables_table = "accounts_receivable"
        self.payments_table = "ar_payments"

    def create_receivable(
        self,
        caller: CallerContext,
        tenant_id: str,
        description: str,
        original_amount: Union[Decimal, str, int],
        due_date: Optional[date] = None,
        sale_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        notes: Optional[str] = None
    ) -> AccountReceivable:
        """
        Open a new receivable with nothing paid

        Raises:
            AuthorizationError: Caller may not create receivables in the tenant
            ValidationError: Missing description or non-positive amount
        """
        self.access.require(caller, Permission.CREATE_RECEIVABLE)
        if not tenant_id:
            raise ValidationError("Missing tenant_id")
        if not self.access.can_access(caller, Permission.CREATE_RECEIVABLE, tenant_id):
            raise AuthorizationError("Insufficient permissions for tenant")
        if not description or not description.strip():
            raise ValidationError("Description is required")

        amount = parse_amount(original_amount, 'original_amount')
        if amount <= 0:
            raise ValidationError("Original amount must be greater than zero")

        now = self._clock()
        receivable = AccountReceivable(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            description=description.strip(),
            original_amount=amount,
            paid_amount=ZERO,
            balance_due=amount,
            status=ReceivableStatus.PENDIENTE,
            due_date=due_date,
            sale_id=sale_id,
            customer_id=customer_id,
            customer_name=customer_name,
            customer_phone=customer_phone,
            notes=self._clean_notes(notes),
            created_by=caller.user_id
        )

        with self.storage.atomic():
            self.storage.save(self.receivables_table, receivable.id, receivable.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.RECEIVABLE_CREATED,
                entity_type="receivable",
                entity_id=receivable.id,
                user_id=caller.user_id,
                tenant_id=tenant_id,
                metadata={"original_amount": amount, "sale_id": sale_id}
            )

        logger.info("Receivable %s created for %s", receivable.id, amount)
        return receivable

    def record_payment(
        self,
        caller: CallerContext,
        ar_id: str,
        amount: Union[Decimal, str, int],
        payment_method: Union[PaymentMethod, str, None] = None,
        notes: Optional[str] = None
    ) -> ReceivablePaymentResult:
        """
        Append a payment and recompute the receivable from its payment rows

        Args:
            caller: Authenticated caller
            ar_id: Receivable being paid down
            amount: Payment amount, at most the current balance due
            payment_method: efectivo, transferencia or tarjeta
            notes: Optional notes, truncated to the configured length

        Returns:
            ReceivablePaymentResult with the recomputed aggregates

        Raises:
            AuthorizationError: Caller may not settle payments
            ValidationError: Non-positive amount or unknown payment method
            NotFoundError: Unknown receivable
            StateConflictError: Already fully paid, or amount exceeds balance due
        """
        self.access.require(caller, Permission.SETTLE_PAYMENTS)
        if not ar_id:
            raise ValidationError("Missing ar_id")
        try:
            amount = parse_amount(amount, 'amount')
        except ValidationError:
            raise ValidationError("Invalid payment amount")
        if amount <= 0:
            raise ValidationError("Invalid payment amount")
        method = parse_payment_method(payment_method)
        notes = self._clean_notes(notes)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._record_payment_once(caller, ar_id, amount, method, notes)
            except ConcurrentModificationError as e:
                if attempt < self.max_retries:
                    logger.info("Retrying payment on receivable %s after conflict (attempt %d)",
                                ar_id, attempt)
                    continue
                self._log_failure(caller, ar_id, e)
                raise
            except FinancingError as e:
                self._log_failure(caller, ar_id, e)
                raise

            log_action(
                logger, "info", "record_ar_payment completed",
                user_id=caller.user_id,
                action="record_ar_payment",
                resource=f"receivable:{ar_id}",
                extra={
                    "amount": str(amount),
                    "balance_due": str(result.balance_due),
                    "status": result.status.value
                }
            )
            return result

    def _record_payment_once(self, caller: CallerContext, ar_id: str, amount: Decimal,
                             method: PaymentMethod, notes: Optional[str]) -> ReceivablePaymentResult:
        with self.storage.atomic():
            receivable = self._load_authorized(caller, ar_id, Permission.SETTLE_PAYMENTS)

            # Preconditions checked against totals recomputed from the payment rows
            paid = self._sum_payments(receivable.id)
            balance = max(ZERO, receivable.original_amount - paid)
            if receivable.status == ReceivableStatus.PAGADO or balance <= 0:
                raise StateConflictError("Account already fully paid")
            if amount > balance:
                raise StateConflictError("Payment exceeds balance due")

            now = self._clock()
            payment = ARPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                ar_id=receivable.id,
                tenant_id=receivable.tenant_id,
                amount=amount,
                payment_method=method,
                payment_date=now,
                notes=notes,
                recorded_by=caller.user_id
            )
            self.storage.save(self.payments_table, payment.id, payment.to_dict())

            receivable.paid_amount = self._sum_payments(receivable.id)
            receivable.balance_due = max(ZERO, receivable.original_amount - receivable.paid_amount)
            receivable.status = receivable_status(receivable.original_amount, receivable.balance_due)
            receivable.updated_at = now
            self._save_receivable(receivable)

            self.audit_trail.log_event(
                event_type=AuditEventType.RECEIVABLE_PAYMENT_RECORDED,
                entity_type="receivable",
                entity_id=receivable.id,
                user_id=caller.user_id,
                tenant_id=receivable.tenant_id,
                metadata={
                    "payment_id": payment.id,
                    "amount": amount,
                    "payment_method": method,
                    "balance_due": receivable.balance_due,
                    "status": receivable.status
                }
            )

            return ReceivablePaymentResult(
                ar_id=receivable.id,
                payment_id=payment.id,
                paid_amount=receivable.paid_amount,
                balance_due=receivable.balance_due,
                status=receivable.status
            )

    def get_receivable(self, caller: CallerContext, ar_id: str) -> AccountReceivable:
        """Get a receivable the caller may view"""
        self.access.require(caller, Permission.VIEW_FINANCIALS)
        return self._load_authorized(caller, ar_id, Permission.VIEW_FINANCIALS)

    def get_history(self, caller: CallerContext, ar_id: str) -> List[AuditEvent]:
        """Audit events recorded against a receivable, oldest first"""
        receivable = self.get_receivable(caller, ar_id)
        return self.audit_trail.get_events_for_entity("receivable", receivable.id)

    def get_payments(self, caller: CallerContext, ar_id: str) -> List[ARPayment]:
        """Payment history of a receivable, newest first"""
        receivable = self.get_receivable(caller, ar_id)
        payments = [
            ARPayment.from_dict(row)
            for row in self.storage.find(self.payments_table, {"ar_id": receivable.id})
        ]
        payments.sort(key=lambda p: p.payment_date, reverse=True)
        return payments

    def list_receivables(
        self,
        caller: CallerContext,
        tenant_id: str,
        status: Optional[ReceivableStatus] = None
    ) -> List[AccountReceivable]:
        """A tenant's receivables, newest first"""
        self.access.require(caller, Permission.VIEW_FINANCIALS)
        if not self.access.can_access(caller, Permission.VIEW_FINANCIALS, tenant_id):
            raise AuthorizationError("Insufficient permissions for tenant")

        filters: Dict[str, Any] = {"tenant_id": tenant_id}
        if status is not None:
            filters["status"] = status.value
        receivables = [AccountReceivable.from_dict(row)
                       for row in self.storage.find(self.receivables_table, filters)]
        receivables.sort(key=lambda r: r.created_at, reverse=True)
        return receivables

    def total_pending(self, caller: CallerContext, tenant_id: str) -> Decimal:
        """Sum of open balances across a tenant's receivables"""
        return sum(
            (r.balance_due for r in self.list_receivables(caller, tenant_id)
             if r.status != ReceivableStatus.PAGADO),
            ZERO
        )

    def _load_authorized(self, caller: CallerContext, ar_id: str,
                         permission: Permission) -> AccountReceivable:
        data = self.storage.load(self.receivables_table, ar_id)
        if not data:
            raise NotFoundError("Receivable not found")
        receivable = AccountReceivable.from_dict(data)
        self.access.require_tenant(caller, permission, receivable.tenant_id, "Receivable")
        return receivable

    def _sum_payments(self, ar_id: str) -> Decimal:
        rows = self.storage.find(self.payments_table, {"ar_id": ar_id})
        return sum((Decimal(row["amount"]) for row in rows), ZERO)

    def _save_receivable(self, receivable: AccountReceivable) -> None:
        expected = receivable.version
        receivable.version = expected + 1
        try:
            self.storage.compare_and_swap(
                self.receivables_table, receivable.id, receivable.to_dict(), expected
            )
        except ConcurrentModificationError:
            receivable.version = expected
            raise

    def _clean_notes(self, notes: Optional[str]) -> Optional[str]:
        if notes is None:
            return None
        if not isinstance(notes, str):
            raise ValidationError("Notes must be a string")
        return notes.strip()[:self.notes_max_length] or None

    @staticmethod
    def _log_failure(caller: CallerContext, ar_id: str, error: FinancingError) -> None:
        log_action(
            logger, "warning", f"record_ar_payment rejected: {error}",
            user_id=caller.user_id,
            action="record_ar_payment",
            resource=f"receivable:{ar_id}",
            extra={"error": error.kind}
        )
