"""Deposit commission applied before crediting the issuer wallet."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from cardfund.common.config import settings


CENTS = Decimal("0.01")


@dataclass(frozen=True)
class DepositFee:
    fee_type: str = "FIXED"  # FIXED amount or PERCENT of the transfer
    rate: Decimal = Decimal("0")

    @classmethod
    def from_settings(cls) -> "DepositFee":
        return cls(fee_type=settings.deposit_fee_type.upper(), rate=Decimal(settings.deposit_fee_rate))

    def consumes(self, amount: Decimal) -> bool:
        """True when the fee leaves nothing to credit."""

        return self.net(amount) <= 0

    def net(self, amount: Decimal) -> Decimal:
        if self.fee_type == "FIXED":
            net = amount - self.rate
        elif self.fee_type == "PERCENT":
            net = amount * (Decimal(1) - self.rate / Decimal(100))
        else:
            raise ValueError(f"unknown fee type {self.fee_type}")
        return net.quantize(CENTS, rounding=ROUND_HALF_UP)
