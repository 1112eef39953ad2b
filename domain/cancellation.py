"""Cancellation / refund policy evaluation"""
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from domain.entities import Reservation
from domain.errors import PolicyViolation
from domain.value_objects import CancellationRecord, quantize_amount

DEFAULT_TIERS: Tuple[Tuple[int, Decimal], ...] = (
    (24, Decimal("0.50")),
    (72, Decimal("0.25")),
)


class CancellationTier(BaseModel):
    """Fee charged when cancelling less than ``within_hours`` before check-in"""
    model_config = ConfigDict(frozen=True)

    within_hours: int = Field(gt=0)
    fee_rate: Decimal = Field(ge=0, le=1)


class CancellationQuote(BaseModel):
    """Refund/fee split for cancelling a reservation at a given moment"""
    model_config = ConfigDict(frozen=True)

    reservation_id: str
    total: Decimal
    refund_amount: Decimal
    cancellation_fee: Decimal
    fee_rate: Decimal
    hours_until_check_in: float

    def to_record(self, reason: str, cancelled_by: str = "SYSTEM") -> CancellationRecord:
        return CancellationRecord(
            reason=reason,
            refund_amount=self.refund_amount,
            cancellation_fee=self.cancellation_fee,
            fee_rate=self.fee_rate,
            hours_until_check_in=self.hours_until_check_in,
            cancelled_by=cancelled_by,
        )


class CancellationPolicy:
    """Tiered cancellation policy.

    Tiers are checked from the tightest deadline outwards; the first tier
    whose window contains the cancellation moment sets the fee. Outside every
    tier the cancellation is free.
    """

    def __init__(self, tiers: Optional[Iterable[Tuple[int, Decimal]]] = None,
                 decimal_places: int = 0):
        raw = DEFAULT_TIERS if tiers is None else tiers
        self.tiers: List[CancellationTier] = sorted(
            (CancellationTier(within_hours=hours, fee_rate=rate) for hours, rate in raw),
            key=lambda tier: tier.within_hours,
        )
        self.decimal_places = decimal_places

    def evaluate(self, reservation: Reservation, now: datetime) -> CancellationQuote:
        if not reservation.is_cancellable():
            raise PolicyViolation(
                f"Reservation with status {reservation.status.value} cannot be cancelled",
                reservation_id=reservation.reservation_id,
                status=reservation.status.value,
            )

        hours = (reservation.date_range.check_in_at() - now).total_seconds() / 3600
        fee_rate = self.fee_rate_for(hours)

        total = reservation.pricing.total
        fee = quantize_amount(total * fee_rate, self.decimal_places)
        return CancellationQuote(
            reservation_id=str(reservation.reservation_id),
            total=total,
            refund_amount=total - fee,
            cancellation_fee=fee,
            fee_rate=fee_rate,
            hours_until_check_in=hours,
        )

    def fee_rate_for(self, hours_until_check_in: float) -> Decimal:
        for tier in self.tiers:
            if hours_until_check_in < tier.within_hours:
                return tier.fee_rate
        return Decimal("0")

    def expiry_quote(self, reservation: Reservation, now: datetime) -> CancellationQuote:
        """Quote for an unpaid reservation released by the payment TTL: no fee"""
        hours = (reservation.date_range.check_in_at() - now).total_seconds() / 3600
        return CancellationQuote(
            reservation_id=str(reservation.reservation_id),
            total=reservation.pricing.total,
            refund_amount=reservation.pricing.total,
            cancellation_fee=Decimal("0"),
            fee_rate=Decimal("0"),
            hours_until_check_in=hours,
        )
