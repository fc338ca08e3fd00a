"""
Amortization Schedule Module

Pure generation of equal-installment (French) amortization schedules.
All intermediate math is unrounded Decimal; amounts are rounded to cents
only when an entry is emitted.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List
import calendar

from .errors import ValidationError
from .money import ZERO, round_money, to_decimal


@dataclass(frozen=True)
class AmortizationEntry:
    """Single entry in amortization schedule"""
    installment_number: int
    due_date: date
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal

    def __post_init__(self):
        # Payment must equal principal + interest once rounded
        if abs(self.principal_amount + self.interest_amount - self.payment_amount) > Decimal('0.01'):
            raise ValueError(
                f"Payment amount {self.payment_amount} does not equal principal "
                f"{self.principal_amount} + interest {self.interest_amount}"
            )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Monthly rate as a fraction, from an annual percentage (12 -> 0.01)"""
    return to_decimal(annual_rate_percent, "interest_rate") / Decimal('12') / Decimal('100')


def level_payment(principal: Decimal, rate: Decimal, tenor: int) -> Decimal:
    """
    Standard annuity payment: P * m / (1 - (1 + m)^-N), or P / N without interest.
    """
    if rate == ZERO:
        return principal / Decimal(tenor)
    return principal * rate / (Decimal('1') - (Decimal('1') + rate) ** -tenor)


def build_amortization_schedule(
    principal,
    annual_rate,
    tenor: int,
    first_payment_date: date
) -> List[AmortizationEntry]:
    """
    Generate an equal-installment amortization schedule.

    The final installment takes whatever principal is left, so the emitted
    principal portions always add up to the principal to the cent.

    Args:
        principal: Amount disbursed
        annual_rate: Annual interest rate in percent (12 for 12%)
        tenor: Number of monthly installments (>= 1)
        first_payment_date: Due date of installment 1

    Returns:
        List of AmortizationEntry ordered by installment number
    """
    principal = to_decimal(principal, "principal")
    annual_rate = to_decimal(annual_rate, "interest_rate")

    if principal <= ZERO:
        raise ValidationError("Principal must be positive")
    if annual_rate < ZERO:
        raise ValidationError("Interest rate cannot be negative")
    if not isinstance(tenor, int) or tenor < 1:
        raise ValidationError("Tenor must be at least one month")

    rate = monthly_rate(annual_rate)
    payment = level_payment(principal, rate, tenor)

    remaining = principal
    emitted_principal = ZERO
    schedule = []

    for number in range(1, tenor + 1):
        interest = remaining * rate if rate != ZERO else ZERO

        if number == tenor:
            # Absorb all rounding drift in the last installment
            principal_portion = remaining
            principal_out = round_money(principal) - emitted_principal
        else:
            principal_portion = payment - interest
            principal_out = round_money(principal_portion)

        remaining = max(remaining - principal_portion, ZERO)
        interest_out = round_money(interest)
        emitted_principal += principal_out

        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=add_months(first_payment_date, number - 1),
            payment_amount=principal_out + interest_out,
            principal_amount=principal_out,
            interest_amount=interest_out,
            remaining_balance=round_money(remaining),
        ))

    return schedule


def schedule_principal_total(schedule: List[AmortizationEntry]) -> Decimal:
    """Sum of principal portions across a schedule"""
    return sum((entry.principal_amount for entry in schedule), ZERO)
