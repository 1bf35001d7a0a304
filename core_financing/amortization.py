"""
Amortization Module

Fixed-payment, declining-balance amortization (French method). The generator
is a pure function: the same inputs always produce the same rows, so it
backs both the live preview shown before a loan is confirmed and the
authoritative schedule persisted when the loan is created.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, DecimalException, localcontext
from typing import Any, Dict, List, Optional, Sequence, Union

from .currency import ZERO, quantize_amount, to_decimal
from .errors import ValidationError
from .periods import PaymentPeriod, PeriodPolicy, get_period_policy

HUNDRED = Decimal('100')
MAX_INSTALLMENTS = 520  # Ten years of weekly payments


@dataclass(frozen=True)
class InstallmentRow:
    """One row of an amortization schedule, rounded to cents"""
    installment_number: int
    due_date: date
    opening_balance: Decimal
    interest_amount: Decimal
    principal_amount: Decimal
    closing_balance: Decimal
    scheduled_payment: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'opening_balance': str(self.opening_balance),
            'interest_amount': str(self.interest_amount),
            'principal_amount': str(self.principal_amount),
            'closing_balance': str(self.closing_balance),
            'scheduled_payment': str(self.scheduled_payment),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentRow':
        try:
            due = data['due_date']
            return cls(
                installment_number=int(data['installment_number']),
                due_date=due if isinstance(due, date) else date.fromisoformat(due),
                opening_balance=to_decimal(data['opening_balance'], 'opening_balance'),
                interest_amount=to_decimal(data['interest_amount'], 'interest_amount'),
                principal_amount=to_decimal(data['principal_amount'], 'principal_amount'),
                closing_balance=to_decimal(data['closing_balance'], 'closing_balance'),
                scheduled_payment=to_decimal(data['scheduled_payment'], 'scheduled_payment'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed schedule row: {e}")


@dataclass(frozen=True)
class ScheduleSummary:
    """Totals shown next to the schedule preview"""
    installment_count: int
    fixed_payment: Decimal
    total_interest: Decimal
    total_principal: Decimal
    total_payments: Decimal
    final_due_date: Optional[date]


def calculate_fixed_payment(principal: Decimal, periodic_rate: Decimal, installment_count: int) -> Decimal:
    """
    Fixed periodic payment, unrounded

    payment = P * r / (1 - (1 + r)^-n), or P / n when r is zero or too
    small for 1 + r to differ from 1 at working precision.
    """
    if periodic_rate == 0:
        return principal / Decimal(installment_count)
    denominator = Decimal('1') - (Decimal('1') + periodic_rate) ** -installment_count
    if denominator == 0:
        return principal / Decimal(installment_count)
    return principal * periodic_rate / denominator


def build_schedule(
    principal: Decimal,
    policy: PeriodPolicy,
    installment_count: int,
    start_date: date
) -> List[InstallmentRow]:
    """
    Build the amortization schedule for a financed amount

    The running balance carried from row to row keeps full precision; every
    monetary field is rounded to cents as its row is built, so each row's
    opening balance equals the previous row's closing balance exactly.

    Args:
        principal: Financed amount
        policy: Period policy supplying the per-period rate and due dates
        installment_count: Number of installments
        start_date: Date the schedule counts from (row k is due k periods later)

    Returns:
        Ordered rows; empty when there is nothing to finance

    Raises:
        ValidationError: Negative rate, too many installments, or terms whose
            amounts cannot be held at cent precision
    """
    if principal <= 0 or installment_count <= 0:
        return []
    if installment_count > MAX_INSTALLMENTS:
        raise ValidationError(
            f"Installment count cannot exceed {MAX_INSTALLMENTS}: {installment_count}"
        )
    rate = policy.periodic_rate
    if rate < 0:
        raise ValidationError(f"Interest rate cannot be negative: {rate}")

    try:
        return _build_rows(principal, policy, installment_count, start_date)
    except DecimalException as e:
        raise ValidationError(f"Loan terms out of range: {e!r}")


def _build_rows(
    principal: Decimal,
    policy: PeriodPolicy,
    installment_count: int,
    start_date: date
) -> List[InstallmentRow]:
    rate = policy.periodic_rate
    rows: List[InstallmentRow] = []
    with localcontext() as ctx:
        ctx.prec = 28
        payment = calculate_fixed_payment(principal, rate, installment_count)
        balance = principal

        for number in range(1, installment_count + 1):
            interest = balance * rate
            principal_part = payment - interest
            closing = balance - principal_part

            rows.append(InstallmentRow(
                installment_number=number,
                due_date=policy.due_date(start_date, number),
                opening_balance=quantize_amount(balance),
                interest_amount=quantize_amount(interest),
                principal_amount=quantize_amount(principal_part),
                # Floor absorbs the sub-cent residue left on the last row
                closing_balance=max(ZERO, quantize_amount(closing)),
                scheduled_payment=quantize_amount(payment),
            ))
            balance = closing

    return rows


def generate_schedule(
    principal: Union[Decimal, int, str],
    monthly_rate_percent: Union[Decimal, int, str],
    period: Union[PaymentPeriod, str],
    installment_count: int,
    start_date: date
) -> List[InstallmentRow]:
    """
    Generate a schedule from the terms a customer is quoted

    Args:
        principal: Amount to finance (total minus down payment)
        monthly_rate_percent: Nominal monthly rate in percent (5 means 5%/month)
        period: weekly, biweekly or monthly
        installment_count: Number of installments
        start_date: Loan start date

    Returns:
        Ordered list of InstallmentRow

    Raises:
        ValidationError: If an input cannot be parsed or the rate is negative
    """
    principal = to_decimal(principal, 'principal')
    rate_percent = to_decimal(monthly_rate_percent, 'monthly_rate')
    if rate_percent < 0:
        raise ValidationError(f"Monthly rate cannot be negative: {monthly_rate_percent}")
    if isinstance(installment_count, bool) or not isinstance(installment_count, int):
        raise ValidationError(f"Installment count must be an integer: {installment_count!r}")
    if not isinstance(start_date, date):
        raise ValidationError(f"Invalid start date: {start_date!r}")

    policy = get_period_policy(period, rate_percent / HUNDRED)
    return build_schedule(principal, policy, installment_count, start_date)


def summarize_schedule(rows: Sequence[InstallmentRow]) -> ScheduleSummary:
    """Totals for a schedule preview"""
    if not rows:
        return ScheduleSummary(
            installment_count=0,
            fixed_payment=ZERO,
            total_interest=ZERO,
            total_principal=ZERO,
            total_payments=ZERO,
            final_due_date=None
        )
    return ScheduleSummary(
        installment_count=len(rows),
        fixed_payment=rows[0].scheduled_payment,
        total_interest=sum((r.interest_amount for r in rows), ZERO),
        total_principal=sum((r.principal_amount for r in rows), ZERO),
        total_payments=sum((r.scheduled_payment for r in rows), ZERO),
        final_due_date=rows[-1].due_date
    )
