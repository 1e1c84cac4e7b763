"""Platform fee policy.

The fee is a flat percentage of the gross hold amount, computed once when the
hold is created and stored on the row. Rounding is ROUND_HALF_UP to the cent;
the contractor payout is always ``gross - fee`` so the two add back to the
gross exactly.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from homepro.config import settings
from homepro.errors import ValidationError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    """Split of a gross amount into platform fee and contractor payout."""
    gross: Decimal
    platform_fee: Decimal
    contractor_payout: Decimal
    rate: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": str(self.gross),
            "platform_fee": str(self.platform_fee),
            "contractor_payout": str(self.contractor_payout),
            "rate_percent": str(self.rate * 100),
        }


@dataclass(frozen=True)
class FeePolicy:
    """Injectable fee policy. One rate for every job category."""
    rate: Decimal
    max_amount: Decimal = Decimal("1000000")

    def __post_init__(self) -> None:
        if not (Decimal("0") <= self.rate < Decimal("1")):
            raise ValueError(f"Fee rate must be in [0, 1), got {self.rate}")

    @classmethod
    def from_settings(cls) -> "FeePolicy":
        return cls(rate=settings.platform_fee_percent, max_amount=settings.max_hold_amount)

    def validate_gross(self, gross: Decimal) -> Decimal:
        """Reject amounts that cannot be held: non-positive, sub-cent, or over the cap."""
        if not isinstance(gross, Decimal):
            gross = Decimal(str(gross))
        if not gross.is_finite() or gross <= 0:
            raise ValidationError(f"Amount must be positive, got {gross}")
        if gross != gross.quantize(CENT):
            raise ValidationError(f"Amount must have at most two decimal places, got {gross}")
        if gross > self.max_amount:
            raise ValidationError(f"Amount exceeds the maximum of {self.max_amount}")
        return gross.quantize(CENT)

    def split(self, gross: Decimal) -> FeeBreakdown:
        gross = self.validate_gross(gross)
        fee = (gross * self.rate).quantize(CENT, rounding=ROUND_HALF_UP)
        return FeeBreakdown(
            gross=gross,
            platform_fee=fee,
            contractor_payout=gross - fee,
            rate=self.rate,
        )


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-place decimal amount to integer cents for the gateway."""
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def get_fee_schedule(policy: FeePolicy) -> dict:
    """Fee schedule for display to homeowners and contractors."""
    example = policy.split(Decimal("100.00"))
    return {
        "platform_fee": {
            "rate_percent": str(policy.rate * 100),
            "rounding": "half-up to the cent",
            "charged_to": "Contractor (deducted from the payout)",
            "charged_at": "Payment hold creation; fixed for the life of the hold",
            "example": f"On a $100.00 job the contractor receives ${example.contractor_payout} "
                       f"and the platform keeps ${example.platform_fee}",
        },
        "max_amount": str(policy.max_amount),
        "currency": settings.currency,
    }
