"""
Test suite for the receivable ledger

Tests receivable creation, partial payments recomputed from the payment
rows, the exact-balance and one-cent-over boundaries, monotonic balances
and the order in which invalid payments are rejected.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from core_financing.audit import AuditTrail, AuditEventType
from core_financing.errors import (
    AuthorizationError, ConcurrentModificationError, NotFoundError,
    StateConflictError, ValidationError
)
from core_financing.rbac import CallerContext, Role
from core_financing.receivables import (
    PaymentMethod, ReceivableLedger, ReceivableStatus, parse_payment_method, receivable_status
)
from core_financing.storage import InMemoryStorage


class TickingClock:
    """Clock advancing one minute per reading"""

    def __init__(self):
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


class RacingStorage(InMemoryStorage):
    """Storage where every versioned write loses its race"""

    def compare_and_swap(self, table, record_id, data, expected_version):
        raise ConcurrentModificationError(f"{table} record {record_id} was modified concurrently")


class TestReceivableCreation:
    """Test opening receivables"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = ReceivableLedger(self.storage, self.audit_trail)
        self.admin = CallerContext.for_role("USER001", Role.ADMIN, "TENANT_A")

    def test_create_receivable(self):
        receivable = self.ledger.create_receivable(
            self.admin, "TENANT_A", "Screen repair balance", "1500.00",
            due_date=date(2024, 4, 1), customer_name="Luis Gomez"
        )

        assert receivable.original_amount == Decimal('1500.00')
        assert receivable.paid_amount == Decimal('0.00')
        assert receivable.balance_due == Decimal('1500.00')
        assert receivable.status == ReceivableStatus.PENDIENTE
        assert receivable.version == 0

        loaded = self.ledger.get_receivable(self.admin, receivable.id)
        assert loaded == receivable

        events = self.audit_trail.get_events_for_entity("receivable", receivable.id)
        assert events[0].event_type == AuditEventType.RECEIVABLE_CREATED

    def test_history(self):
        receivable = self.ledger.create_receivable(self.admin, "TENANT_A", "Case", "50.00")
        history = self.ledger.get_history(self.admin, receivable.id)
        assert [e.event_type for e in history] == [AuditEventType.RECEIVABLE_CREATED]

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            self.ledger.create_receivable(self.admin, "TENANT_A", "Bad", "0")

    def test_description_required(self):
        with pytest.raises(ValidationError):
            self.ledger.create_receivable(self.admin, "TENANT_A", "   ", "100")

    def test_staff_cannot_create(self):
        staff = CallerContext.for_role("USER002", Role.STAFF, "TENANT_A")
        with pytest.raises(AuthorizationError):
            self.ledger.create_receivable(staff, "TENANT_A", "Repair", "100")


class TestRecordPayment:
    """Test partial payments"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = ReceivableLedger(self.storage, self.audit_trail, clock=TickingClock())
        self.admin = CallerContext.for_role("USER001", Role.ADMIN, "TENANT_A")
        self.receivable = self.ledger.create_receivable(
            self.admin, "TENANT_A", "Laptop repair", "1000.00"
        )

    def test_partial_payment(self):
        result = self.ledger.record_payment(self.admin, self.receivable.id, "250.00", "transferencia")

        assert result.paid_amount == Decimal('250.00')
        assert result.balance_due == Decimal('750.00')
        assert result.status == ReceivableStatus.PARCIAL

        payments = self.ledger.get_payments(self.admin, self.receivable.id)
        assert len(payments) == 1
        assert payments[0].payment_method == PaymentMethod.TRANSFERENCIA
        assert payments[0].recorded_by == "USER001"

    def test_exact_balance_pays_off(self):
        """Boundary: paying exactly the balance due closes the receivable"""
        self.ledger.record_payment(self.admin, self.receivable.id, "400.00")
        result = self.ledger.record_payment(self.admin, self.receivable.id, "600.00")

        assert result.balance_due == Decimal('0.00')
        assert result.status == ReceivableStatus.PAGADO
        assert result.paid_amount == Decimal('1000.00')

    def test_one_cent_over_rejected(self):
        """Boundary: one cent more than the balance fails and changes nothing"""
        self.ledger.record_payment(self.admin, self.receivable.id, "400.00")

        with pytest.raises(StateConflictError, match="Payment exceeds balance due"):
            self.ledger.record_payment(self.admin, self.receivable.id, "600.01")

        receivable = self.ledger.get_receivable(self.admin, self.receivable.id)
        assert receivable.balance_due == Decimal('600.00')
        assert len(self.ledger.get_payments(self.admin, self.receivable.id)) == 1

    def test_fully_paid_rejects_payments(self):
        self.ledger.record_payment(self.admin, self.receivable.id, "1000.00")
        with pytest.raises(StateConflictError, match="Account already fully paid"):
            self.ledger.record_payment(self.admin, self.receivable.id, "1.00")

    def test_balance_is_monotonic(self):
        """Balance never increases and pagado appears when it first reaches zero"""
        balances = []
        statuses = []
        for amount in ("100.00", "0.01", "399.99", "250.00", "250.00"):
            result = self.ledger.record_payment(self.admin, self.receivable.id, amount)
            balances.append(result.balance_due)
            statuses.append(result.status)

        assert balances == sorted(balances, reverse=True)
        assert balances[-1] == Decimal('0.00')
        assert statuses[:-1] == [ReceivableStatus.PARCIAL] * 4
        assert statuses[-1] == ReceivableStatus.PAGADO

    def test_paid_amount_is_sum_of_payment_rows(self):
        self.ledger.record_payment(self.admin, self.receivable.id, "100.00")
        self.ledger.record_payment(self.admin, self.receivable.id, "150.50")

        receivable = self.ledger.get_receivable(self.admin, self.receivable.id)
        payments = self.ledger.get_payments(self.admin, self.receivable.id)
        assert receivable.paid_amount == sum(p.amount for p in payments)
        assert receivable.version == 2

    def test_payments_newest_first(self):
        self.ledger.record_payment(self.admin, self.receivable.id, "100.00", notes="first")
        self.ledger.record_payment(self.admin, self.receivable.id, "200.00", notes="second")

        payments = self.ledger.get_payments(self.admin, self.receivable.id)
        assert [p.notes for p in payments] == ["second", "first"]

    def test_default_method_is_cash(self):
        self.ledger.record_payment(self.admin, self.receivable.id, "10.00")
        payment = self.ledger.get_payments(self.admin, self.receivable.id)[0]
        assert payment.payment_method == PaymentMethod.EFECTIVO

    def test_notes_truncated(self):
        self.ledger.record_payment(self.admin, self.receivable.id, "10.00", notes="n" * 700)
        payment = self.ledger.get_payments(self.admin, self.receivable.id)[0]
        assert len(payment.notes) == 500

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "10.001", "1e30"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError, match="Invalid payment amount"):
            self.ledger.record_payment(self.admin, self.receivable.id, amount)

    def test_invalid_method(self):
        with pytest.raises(ValidationError, match="Invalid payment method"):
            self.ledger.record_payment(self.admin, self.receivable.id, "10.00", "cheque")

    def test_validation_before_lookup(self):
        with pytest.raises(ValidationError):
            self.ledger.record_payment(self.admin, "missing", "0")
        with pytest.raises(NotFoundError, match="Receivable not found"):
            self.ledger.record_payment(self.admin, "missing", "10.00")

    def test_authorization_runs_first(self):
        technician = CallerContext.for_role("USER002", Role.TECHNICIAN, "TENANT_A")
        with pytest.raises(AuthorizationError):
            self.ledger.record_payment(technician, "missing", "0")

    def test_other_tenant_sees_not_found(self):
        outsider = CallerContext.for_role("USER003", Role.ADMIN, "TENANT_B")
        with pytest.raises(NotFoundError):
            self.ledger.record_payment(outsider, self.receivable.id, "10.00")

    def test_payment_audited(self):
        self.ledger.record_payment(self.admin, self.receivable.id, "10.00", "tarjeta")
        events = self.audit_trail.get_events_for_entity("receivable", self.receivable.id)
        assert events[-1].event_type == AuditEventType.RECEIVABLE_PAYMENT_RECORDED
        assert events[-1].metadata["payment_method"] == "tarjeta"
        assert events[-1].metadata["amount"] == "10.00"


class TestConcurrentPayments:
    """Lost races roll back the appended payment"""

    def test_conflict_leaves_no_payment_row(self):
        storage = RacingStorage()
        ledger = ReceivableLedger(storage, AuditTrail(storage), max_retries=2)
        admin = CallerContext.for_role("USER001", Role.ADMIN, "TENANT_A")
        receivable = ledger.create_receivable(admin, "TENANT_A", "Repair", "100.00")

        with pytest.raises(ConcurrentModificationError):
            ledger.record_payment(admin, receivable.id, "50.00")

        assert storage.count("ar_payments") == 0
        assert ledger.get_receivable(admin, receivable.id).balance_due == Decimal('100.00')


class TestListing:
    """Test listing and pending totals"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = ReceivableLedger(self.storage, AuditTrail(self.storage))
        self.admin = CallerContext.for_role("USER001", Role.ADMIN, "TENANT_A")

    def test_list_and_total_pending(self):
        first = self.ledger.create_receivable(self.admin, "TENANT_A", "One", "100.00")
        second = self.ledger.create_receivable(self.admin, "TENANT_A", "Two", "200.00")
        third = self.ledger.create_receivable(self.admin, "TENANT_A", "Three", "300.00")
        self.ledger.record_payment(self.admin, second.id, "50.00")
        self.ledger.record_payment(self.admin, third.id, "300.00")

        assert len(self.ledger.list_receivables(self.admin, "TENANT_A")) == 3
        partial = self.ledger.list_receivables(self.admin, "TENANT_A", ReceivableStatus.PARCIAL)
        assert [r.id for r in partial] == [second.id]
        pending = self.ledger.list_receivables(self.admin, "TENANT_A", ReceivableStatus.PENDIENTE)
        assert [r.id for r in pending] == [first.id]
        assert self.ledger.total_pending(self.admin, "TENANT_A") == Decimal('250.00')

    def test_other_tenant_listing_rejected(self):
        with pytest.raises(AuthorizationError):
            self.ledger.list_receivables(self.admin, "TENANT_B")


class TestHelpers:
    """Status derivation and method parsing"""

    def test_receivable_status(self):
        assert receivable_status(Decimal('100'), Decimal('100')) == ReceivableStatus.PENDIENTE
        assert receivable_status(Decimal('100'), Decimal('40')) == ReceivableStatus.PARCIAL
        assert receivable_status(Decimal('100'), Decimal('0')) == ReceivableStatus.PAGADO

    def test_parse_payment_method(self):
        assert parse_payment_method("Tarjeta") == PaymentMethod.TARJETA
        assert parse_payment_method(None) == PaymentMethod.EFECTIVO
        assert parse_payment_method("") == PaymentMethod.EFECTIVO
