"""Server-side pricing.

``PricingCalculator.price`` is a pure function of its inputs: it never reads
the clock, the store, or caller-supplied amounts, so a snapshot can be
recomputed later for audit and will come out identical.
"""
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional

import structlog

from domain.entities import Resource
from domain.errors import CapacityExceeded, PricingError
from domain.value_objects import DateRange, NightlyCharge, PricingSnapshot, quantize_amount

logger = structlog.get_logger(__name__)

ONE = Decimal("1")
ZERO = Decimal("0")


class SurchargePolicy(ABC):
    """Decides the rate multiplier applied to one night of a stay"""

    @abstractmethod
    def multiplier(self, resource: Resource, night: date) -> Decimal:
        pass


class FlatRate(SurchargePolicy):
    """Every night is charged at the plain nightly rate"""

    def multiplier(self, resource: Resource, night: date) -> Decimal:
        return ONE


class WeekendHolidaySurcharge(SurchargePolicy):
    """Applies the resource's holiday or weekend multiplier.

    A night that is both a holiday and a weekend night takes the holiday
    multiplier.
    """

    def __init__(self, weekend_nights: Iterable[int] = (4, 5)):
        self.weekend_nights = frozenset(weekend_nights)

    def multiplier(self, resource: Resource, night: date) -> Decimal:
        rules = resource.surcharge_rules
        if night in rules.holidays:
            return rules.holiday_multiplier
        if night.weekday() in self.weekend_nights:
            return rules.weekend_multiplier
        return ONE


class PromoCatalog:
    """Looks up the flat discount granted by a promo code"""

    def __init__(self, codes: Optional[Mapping[str, Decimal]] = None):
        self._codes = {code.upper(): Decimal(amount) for code, amount in (codes or {}).items()}

    def lookup(self, promo_code: Optional[str]) -> Decimal:
        if not promo_code:
            return ZERO
        amount = self._codes.get(promo_code.upper())
        if amount is None:
            logger.info("Unknown promo code ignored", promo_code=promo_code)
            return ZERO
        if amount < 0:
            raise PricingError("Promo discount cannot be negative", promo_code=promo_code)
        return amount


class PricingCalculator:
    """Computes the PricingSnapshot for a stay"""

    def __init__(
        self,
        tax_rate: Decimal,
        service_fee_rate: Decimal,
        surcharge_policy: Optional[SurchargePolicy] = None,
        promo_catalog: Optional[PromoCatalog] = None,
        decimal_places: int = 0,
    ):
        self.tax_rate = Decimal(tax_rate)
        self.service_fee_rate = Decimal(service_fee_rate)
        self.surcharge_policy = surcharge_policy or FlatRate()
        self.promo_catalog = promo_catalog or PromoCatalog()
        self.decimal_places = decimal_places

    @classmethod
    def from_settings(cls, pricing_settings) -> "PricingCalculator":
        return cls(
            tax_rate=pricing_settings.tax_rate,
            service_fee_rate=pricing_settings.service_fee_rate,
            surcharge_policy=WeekendHolidaySurcharge(pricing_settings.weekend_nights),
            promo_catalog=PromoCatalog(pricing_settings.promo_codes),
            decimal_places=pricing_settings.amount_decimal_places,
        )

    def price(
        self,
        resource: Resource,
        date_range: DateRange,
        guest_count: int,
        promo_code: Optional[str] = None,
    ) -> PricingSnapshot:
        if guest_count > resource.capacity:
            raise CapacityExceeded(
                f"Resource {resource.resource_id} holds at most {resource.capacity} guests",
                resource_id=resource.resource_id,
                capacity=resource.capacity,
                guest_count=guest_count,
            )
        self._validate_configuration(resource)

        breakdown = []
        for night in date_range.each_night():
            multiplier = self.surcharge_policy.multiplier(resource, night)
            if multiplier <= 0:
                raise PricingError(
                    "Surcharge multiplier must be positive",
                    resource_id=resource.resource_id,
                    night=night,
                )
            breakdown.append(NightlyCharge(
                night=night,
                rate=resource.nightly_rate,
                multiplier=multiplier,
                amount=resource.nightly_rate * multiplier,
            ))

        base_amount = self._round(sum((charge.amount for charge in breakdown), ZERO))
        taxes = self._round(base_amount * self.tax_rate)
        service_fee = self._round(base_amount * self.service_fee_rate)
        discount = min(self._round(self.promo_catalog.lookup(promo_code)), base_amount)
        total = max(ZERO, base_amount + taxes + service_fee - discount)

        return PricingSnapshot(
            nights=date_range.nights(),
            nightly_rate=resource.nightly_rate,
            base_amount=base_amount,
            taxes=taxes,
            service_fee=service_fee,
            discount=discount,
            total=total,
            currency=resource.currency,
            tax_rate=self.tax_rate,
            service_fee_rate=self.service_fee_rate,
            promo_code=promo_code,
            nightly_breakdown=tuple(breakdown),
        )

    def _validate_configuration(self, resource: Resource) -> None:
        if resource.nightly_rate <= 0:
            raise PricingError(
                "Nightly rate must be positive",
                resource_id=resource.resource_id,
                nightly_rate=resource.nightly_rate,
            )
        if self.tax_rate < 0 or self.service_fee_rate < 0:
            raise PricingError(
                "Tax and service fee rates cannot be negative",
                tax_rate=self.tax_rate,
                service_fee_rate=self.service_fee_rate,
            )

    def _round(self, value: Decimal) -> Decimal:
        return quantize_amount(value, self.decimal_places)
