"""
Repayment Calculations Module

Pure functions used when a repayment is recorded or projected: daily interest
accrual, grace period, tiered late fee, projected late fee, and the
interest -> late fee -> principal payment waterfall.

Two late fee policies exist on purpose. ``calculate_late_fee`` (flat tiers)
is applied when a payment is recorded. ``project_late_fee`` (percentage of
the installment per day, capped) is only used to project fees on overdue
installments in the due-now summary. They are not reconciled.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .config import get_config
from .errors import ValidationError
from .money import ZERO, round_money, to_decimal


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of applying a payment through the waterfall"""
    interest_paid: Decimal
    late_fee_paid: Decimal
    principal_paid: Decimal
    unallocated: Decimal  # excess dropped after principal was covered

    @property
    def total_allocated(self) -> Decimal:
        return self.interest_paid + self.late_fee_paid + self.principal_paid


def calculate_daily_interest(principal, annual_rate, days: int, leap_year: bool = False) -> Decimal:
    """
    Simple interest accrued over a number of days.

    Args:
        principal: Outstanding principal
        annual_rate: Annual rate in percent (12 for 12%)
        days: Days of accrual
        leap_year: Use a 366-day year

    Returns:
        Interest rounded to cents
    """
    principal = to_decimal(principal, "principal")
    annual_rate = to_decimal(annual_rate, "interest_rate")
    if principal < ZERO:
        raise ValidationError("Principal amount cannot be negative")
    if days < 0:
        raise ValidationError("Days cannot be negative")
    if days == 0:
        return round_money(ZERO)

    days_in_year = Decimal('366') if leap_year else Decimal('365')
    daily_rate = annual_rate / Decimal('100') / days_in_year
    return round_money(principal * daily_rate * Decimal(days))


def apply_grace_period(raw_days_late: int, grace_days: Optional[int] = None) -> int:
    """Days late after subtracting the grace window (never negative)"""
    if grace_days is None:
        grace_days = get_config().grace_period_days
    return max(0, raw_days_late - grace_days)


def calculate_late_fee(days_late: int) -> Decimal:
    """
    Flat tiered late fee applied when recording a payment.

    0-3 days: no fee. Under 30 days: standard fee. 30+ days: severe fee.
    """
    if days_late < 0:
        raise ValidationError("Days late cannot be negative")

    cfg = get_config()
    if days_late <= cfg.grace_period_days:
        return round_money(ZERO)
    if days_late >= cfg.late_fee_severe_after_days:
        return round_money(Decimal(cfg.late_fee_severe))
    return round_money(Decimal(cfg.late_fee_standard))


def project_late_fee(installment_total, days_overdue: int) -> Decimal:
    """Projected fee on an overdue installment: a daily percentage of it, capped"""
    installment_total = to_decimal(installment_total, "installment_total")
    if days_overdue <= 0 or installment_total <= ZERO:
        return round_money(ZERO)

    cfg = get_config()
    daily = Decimal(cfg.projected_late_fee_daily_rate)
    cap = installment_total * Decimal(cfg.projected_late_fee_cap_rate)
    return round_money(min(installment_total * daily * Decimal(days_overdue), cap))


def allocate_payment(payment_amount, interest_due, late_fee_due, principal_remaining) -> PaymentAllocation:
    """
    Allocate a payment: interest first, then late fee, then principal.

    Anything left after principal is reported as ``unallocated`` and is not
    applied anywhere.

    Args:
        payment_amount: Amount tendered
        interest_due: Interest owed
        late_fee_due: Late fee owed
        principal_remaining: Principal that may still be repaid

    Returns:
        PaymentAllocation with each portion rounded to cents
    """
    payment_amount = to_decimal(payment_amount, "payment_amount")
    interest_due = to_decimal(interest_due, "interest_due")
    late_fee_due = to_decimal(late_fee_due, "late_fee_due")
    principal_remaining = to_decimal(principal_remaining, "principal_remaining")

    if payment_amount < ZERO:
        raise ValidationError("Payment amount cannot be negative")
    if interest_due < ZERO or late_fee_due < ZERO or principal_remaining < ZERO:
        raise ValidationError("Interest, late fee, and principal cannot be negative")

    remaining = payment_amount

    interest_paid = min(remaining, interest_due)
    remaining -= interest_paid

    late_fee_paid = min(remaining, late_fee_due)
    remaining -= late_fee_paid

    principal_paid = min(remaining, principal_remaining)
    remaining -= principal_paid

    return PaymentAllocation(
        interest_paid=round_money(interest_paid),
        late_fee_paid=round_money(late_fee_paid),
        principal_paid=round_money(principal_paid),
        unallocated=round_money(remaining),
    )
