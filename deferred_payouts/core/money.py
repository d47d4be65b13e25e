"""
Money helpers.

All amounts inside the service are integer minor units (cents). Decimal
display amounts only exist at the API boundary.
"""
from decimal import ROUND_HALF_UP, Decimal

from deferred_payouts.core.domain import FeeSplit

BASIS_POINTS = 10000
_CENT = Decimal("0.01")


def split_fee(gross_cents: int, fee_rate_bp: int) -> FeeSplit:
    """
    Split a gross amount into platform fee and seller net.

    The fee is rounded half-up to a whole cent and the seller gets the rest,
    so any rounding remainder stays in the fee.

    Args:
        gross_cents: Gross sale amount in cents
        fee_rate_bp: Platform fee in basis points (1 bp = 0.01%)

    Returns:
        FeeSplit: Fee and net, summing exactly to gross

    Raises:
        ValueError: If an argument is out of range
    """
    if gross_cents < 0:
        raise ValueError("Gross amount must not be negative")
    if not 0 <= fee_rate_bp <= BASIS_POINTS:
        raise ValueError("Fee rate must be between 0 and 10000 basis points")

    fee_cents = (gross_cents * fee_rate_bp + BASIS_POINTS // 2) // BASIS_POINTS
    return FeeSplit(
        gross_cents=gross_cents,
        fee_cents=fee_cents,
        net_cents=gross_cents - fee_cents,
    )


def to_minor_units(amount: Decimal | str | int) -> int:
    """Convert a display amount (e.g. ``"127.50"``) to cents."""
    quantized = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(quantized * 100)


def format_minor_units(cents: int) -> str:
    """Render cents as a two-decimal display string."""
    return str((Decimal(cents) / 100).quantize(_CENT))
