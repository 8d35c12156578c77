"""
Three-way split of a gross amount into platform commission, processor fee and
provider payout. All values are integer minor currency units.
"""
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_FLOOR
from common.error_handling import InvalidAmountError

@dataclass(frozen=True)
class FeeSplit:
    commission: int
    processing_fee: int
    provider_amount: int

    @property
    def total(self) -> int:
        return self.commission + self.processing_fee + self.provider_amount

    def to_dict(self) -> dict:
        return asdict(self)

def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))

class FeeCalculator:
    def __init__(self, commission_rate, processing_fee_rate, processing_fee_flat: int):
        self.commission_rate = Decimal(str(commission_rate))
        self.processing_fee_rate = Decimal(str(processing_fee_rate))
        self.processing_fee_flat = int(processing_fee_flat)
        if not (0 <= self.commission_rate < 1 and 0 <= self.processing_fee_rate < 1):
            raise ValueError("fee rates must be in [0, 1)")
        if self.processing_fee_flat < 0:
            raise ValueError("flat processing fee cannot be negative")

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.commission_rate, settings.processing_fee_rate, settings.processing_fee_flat)

    def compute_split(self, gross_amount: int) -> FeeSplit:
        # bool is an int subclass; True must not pass for one cent
        if isinstance(gross_amount, bool) or not isinstance(gross_amount, int):
            raise InvalidAmountError("Amount must be an integer number of minor units")
        if gross_amount <= 0:
            raise InvalidAmountError()

        gross = Decimal(gross_amount)
        commission = _floor(gross * self.commission_rate)
        processing_fee = _floor(gross * self.processing_fee_rate) + self.processing_fee_flat
        # The truncation remainder lands here, so the parts always sum to gross
        provider_amount = gross_amount - commission - processing_fee
        if provider_amount < 0:
            raise InvalidAmountError("Amount is too small to cover platform and processing fees")

        return FeeSplit(commission=commission, processing_fee=processing_fee, provider_amount=provider_amount)
