"""
Payment Period Module

Maps the payment cadence chosen for a loan to its per-period interest rate
and its due-date rule. Rates are always quoted per month; the period policy
turns that single quote into the rate for each installment.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Union
import calendar

from .errors import ValidationError


class PaymentPeriod(Enum):
    """Installment cadence"""
    WEEKLY = "weekly"        # Semanal
    BIWEEKLY = "biweekly"    # Quincenal
    MONTHLY = "monthly"      # Mensual


# (monthly rate divisor, days between installments; 0 means calendar months)
_PERIOD_RULES = {
    PaymentPeriod.WEEKLY: (Decimal('4'), 7),
    PaymentPeriod.BIWEEKLY: (Decimal('2'), 15),
    PaymentPeriod.MONTHLY: (Decimal('1'), 0),
}


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass(frozen=True)
class PeriodPolicy:
    """Per-period rate and due-date rule for one cadence"""
    period: PaymentPeriod
    periodic_rate: Decimal
    days_per_period: int

    def due_date(self, start_date: date, installment_number: int) -> date:
        """Due date of the k-th installment counted from the start date"""
        if self.days_per_period:
            return start_date + timedelta(days=self.days_per_period * installment_number)
        return add_months(start_date, installment_number)


def parse_period(value: Union[PaymentPeriod, str]) -> PaymentPeriod:
    """
    Parse a period tag

    Raises:
        ValidationError: If the tag is not weekly, biweekly or monthly
    """
    if isinstance(value, PaymentPeriod):
        return value
    try:
        return PaymentPeriod(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown payment period: {value!r}")


def get_period_policy(period: Union[PaymentPeriod, str], monthly_rate: Decimal) -> PeriodPolicy:
    """
    Build the policy for a cadence

    Args:
        period: Payment period tag
        monthly_rate: Nominal monthly rate as a fraction (0.05 for 5%)

    Returns:
        PeriodPolicy with the per-period rate and due-date rule
    """
    period = parse_period(period)
    divisor, days = _PERIOD_RULES[period]
    return PeriodPolicy(
        period=period,
        periodic_rate=monthly_rate / divisor,
        days_per_period=days
    )
