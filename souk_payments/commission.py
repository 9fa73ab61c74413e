"""Commission split for a settled order payment.

All arithmetic is done on ``Decimal``. Each fee is rounded half-up to the
currency's minor unit and the vendor's share is whatever remains, so
``platform_fee + processing_fee + vendor_net == gross`` always holds exactly.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from souk_payments.errors import InvalidAmount, InvalidRequest

# ISO 4217 minor-unit exponents for currencies that differ from 2.
MINOR_UNITS = {"JPY": 0, "KRW": 0, "KWD": 3, "BHD": 3, "OMR": 3, "JOD": 3}


def minor_unit(currency: str) -> Decimal:
    exponent = MINOR_UNITS.get((currency or "").upper(), 2)
    return Decimal(1).scaleb(-exponent)


def to_money(value, currency: str = "EGP") -> Decimal:
    """Parse ``value`` into a non-negative Decimal at the currency's precision.

    Floats go through ``str`` first so 0.1 stays 0.1.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Amount {value!r} is not a number")
    if not amount.is_finite():
        raise InvalidAmount("Amount must be finite")
    if amount < 0:
        raise InvalidAmount("Amount must not be negative")
    quantum = minor_unit(currency)
    if amount != amount.quantize(quantum):
        raise InvalidAmount(f"Amount {amount} has more precision than {currency} allows")
    return amount.quantize(quantum)


@dataclass(frozen=True)
class FeeSchedule:
    platform_rate: Decimal
    processing_rate: Decimal
    processing_fixed_fee: Decimal

    def __post_init__(self):
        for name in ("platform_rate", "processing_rate", "processing_fixed_fee"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                value = Decimal(str(value))
                object.__setattr__(self, name, value)
            if not value.is_finite() or value < 0:
                raise InvalidRequest(f"{name} must be a non-negative number")

    @classmethod
    def from_settings(cls, settings) -> "FeeSchedule":
        return cls(
            platform_rate=settings.platform_rate,
            processing_rate=settings.processing_rate,
            processing_fixed_fee=settings.processing_fixed_fee,
        )


@dataclass(frozen=True)
class CommissionBreakdown:
    gross: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    vendor_net: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": str(self.gross),
            "platformFee": str(self.platform_fee),
            "processingFee": str(self.processing_fee),
            "vendorNet": str(self.vendor_net),
        }


def calculate_commission(gross, schedule: FeeSchedule, currency: str = "EGP") -> CommissionBreakdown:
    try:
        gross = gross if isinstance(gross, Decimal) else Decimal(str(gross))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Gross amount {gross!r} is not a number")
    if not gross.is_finite() or gross < 0:
        raise InvalidAmount("Gross amount must be a finite, non-negative number")

    quantum = minor_unit(currency)
    platform_fee = (gross * schedule.platform_rate).quantize(quantum, rounding=ROUND_HALF_UP)
    processing_fee = (gross * schedule.processing_rate + schedule.processing_fixed_fee).quantize(
        quantum, rounding=ROUND_HALF_UP
    )
    vendor_net = gross - platform_fee - processing_fee

    return CommissionBreakdown(
        gross=gross,
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        vendor_net=vendor_net,
    )
