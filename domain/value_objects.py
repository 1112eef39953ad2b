"""Domain Value Objects"""
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, Iterator, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from domain.errors import InvalidInterval


def quantize_amount(value: Decimal, places: int) -> Decimal:
    """Round a monetary amount half-up to ``places`` decimal places."""
    exponent = Decimal(1).scaleb(-places)
    return Decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


class DateRange(BaseModel):
    """Half-open stay interval [check_in, check_out)"""
    model_config = ConfigDict(frozen=True)

    check_in: date
    check_out: date

    @field_validator('check_out')
    @classmethod
    def check_out_after_check_in(cls, v, info):
        check_in = info.data.get('check_in')
        if check_in is not None and v <= check_in:
            raise ValueError('Check-out must be after check-in')
        return v

    @classmethod
    def of(cls, check_in: date, check_out: date) -> "DateRange":
        """Build a range, raising InvalidInterval instead of a schema error"""
        if check_out <= check_in:
            raise InvalidInterval(
                "Check-out must be after check-in",
                check_in=check_in,
                check_out=check_out,
            )
        return cls(check_in=check_in, check_out=check_out)

    def nights(self) -> int:
        """Calculate number of nights"""
        return (self.check_out - self.check_in).days

    def each_night(self) -> Iterator[date]:
        """Yield the date of every night in the stay"""
        for offset in range(self.nights()):
            yield self.check_in + timedelta(days=offset)

    def overlaps(self, other: "DateRange") -> bool:
        # Touching ranges (one ends the day the other starts) do not overlap
        return self.check_in < other.check_out and self.check_out > other.check_in

    def covers_night(self, night: date) -> bool:
        return self.check_in <= night < self.check_out

    def check_in_at(self) -> datetime:
        """Check-in instant, taken as midnight UTC of the check-in date"""
        return datetime.combine(self.check_in, time.min, tzinfo=timezone.utc)


class SurchargeRules(BaseModel):
    """Weekend and holiday multipliers declared on a resource"""
    model_config = ConfigDict(frozen=True)

    weekend_multiplier: Decimal = Decimal("1")
    holiday_multiplier: Decimal = Decimal("1")
    holidays: FrozenSet[date] = frozenset()


class NightlyCharge(BaseModel):
    """Priced line for a single night of a stay"""
    model_config = ConfigDict(frozen=True)

    night: date
    rate: Decimal
    multiplier: Decimal
    amount: Decimal


class PricingSnapshot(BaseModel):
    """Server-computed price of a reservation, fixed at creation time"""
    model_config = ConfigDict(frozen=True)

    nights: int = Field(ge=1)
    nightly_rate: Decimal
    base_amount: Decimal = Field(ge=0)
    taxes: Decimal = Field(ge=0)
    service_fee: Decimal = Field(ge=0)
    discount: Decimal = Field(ge=0)
    total: Decimal = Field(ge=0)
    currency: str
    tax_rate: Decimal
    service_fee_rate: Decimal
    promo_code: Optional[str] = None
    nightly_breakdown: Tuple[NightlyCharge, ...] = ()

    @model_validator(mode='after')
    def total_matches_components(self):
        expected = max(
            Decimal("0"),
            self.base_amount + self.taxes + self.service_fee - self.discount,
        )
        if self.total != expected:
            raise ValueError('Total must equal base amount + taxes + service fee - discount')
        if self.discount > self.base_amount:
            raise ValueError('Discount cannot exceed base amount')
        return self


class CancellationRecord(BaseModel):
    """What happened when a reservation was cancelled"""
    model_config = ConfigDict(frozen=True)

    reason: str
    refund_amount: Decimal = Field(ge=0)
    cancellation_fee: Decimal = Field(ge=0)
    fee_rate: Decimal = Field(ge=0, le=1)
    hours_until_check_in: float
    cancelled_by: str = "SYSTEM"
