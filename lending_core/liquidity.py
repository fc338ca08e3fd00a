"""
Platform Liquidity Guard

Checks that money received by the platform covers a new disbursement.
Runs inside the disbursement's transaction so the totals it reads are the
ones the disbursement commits against.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .config import get_config
from .errors import InsufficientFundsError, ValidationError
from .money import ZERO, money_str, to_decimal
from .unit_of_work import TransactionContext


@dataclass(frozen=True)
class LiquiditySnapshot:
    """Platform funds at the moment of a check"""
    incoming_total: Decimal
    outgoing_total: Decimal

    @property
    def available(self) -> Decimal:
        return self.incoming_total - self.outgoing_total


async def platform_liquidity(ctx: TransactionContext, opening_balance: Optional[Decimal] = None) -> LiquiditySnapshot:
    """Incoming payments (plus opening balance) against all disbursements"""
    if opening_balance is None:
        opening_balance = Decimal(get_config().platform_opening_balance)
    incoming = await ctx.payments.total("amount")
    outgoing = await ctx.disbursements.total()
    return LiquiditySnapshot(incoming_total=opening_balance + incoming, outgoing_total=outgoing)


async def ensure_platform_funds(ctx: TransactionContext, requested_amount,
                                opening_balance: Optional[Decimal] = None) -> LiquiditySnapshot:
    """
    Reject a disbursement the platform cannot fund.

    Args:
        ctx: Transaction context of the disbursement
        requested_amount: Amount about to be disbursed
        opening_balance: Override for the configured opening balance

    Returns:
        The snapshot the decision was made on
    """
    requested = to_decimal(requested_amount, "amount")
    if requested < ZERO:
        raise ValidationError("Requested amount cannot be negative")

    snapshot = await platform_liquidity(ctx, opening_balance)
    # Equality is allowed
    if requested > snapshot.available:
        raise InsufficientFundsError(
            f"Insufficient platform funds: requested {money_str(requested)}, "
            f"available {money_str(snapshot.available)}"
        )
    return snapshot
