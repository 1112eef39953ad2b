"""Domain Entities - Aggregates"""
import random
import string
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from domain import lifecycle
from domain.enums import (
    LedgerEntryStatus, LedgerEntryType, PaymentMethod, PaymentStatus, ReservationStatus,
)
from domain.errors import StateError
from domain.value_objects import CancellationRecord, DateRange, PricingSnapshot, SurchargeRules


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Resource(BaseModel):
    """Bookable room, owned by the hotel-management side and read-only here"""
    model_config = ConfigDict(from_attributes=True)

    resource_id: str
    name: str = ""
    capacity: int = Field(ge=1)
    nightly_rate: Decimal
    currency: str = "VND"
    surcharge_rules: SurchargeRules = SurchargeRules()
    is_active: bool = True


class Reservation(BaseModel):
    """Reservation Aggregate Root Entity"""
    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    # Identity
    reservation_id: UUID = Field(default_factory=uuid4)
    confirmation_code: str

    # References to other contexts
    resource_id: str
    requester_id: UUID

    # Value Objects
    date_range: DateRange
    guest_count: int = Field(ge=1)
    pricing: PricingSnapshot
    cancellation: Optional[CancellationRecord] = None

    # Status
    status: ReservationStatus = ReservationStatus.PENDING
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    promo_code: Optional[str] = None
    idempotency_key: Optional[str] = None

    # Lifecycle timestamps
    created_at: datetime = Field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    modified_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def create(
        resource_id: str,
        requester_id: UUID,
        date_range: DateRange,
        guest_count: int,
        pricing: PricingSnapshot,
        payment_method: PaymentMethod,
        now: datetime,
        promo_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> "Reservation":
        """Create a new PENDING reservation. Only the reservation engine calls this."""
        return Reservation(
            confirmation_code=Reservation._generate_confirmation_code(),
            resource_id=resource_id,
            requester_id=requester_id,
            date_range=date_range,
            guest_count=guest_count,
            pricing=pricing,
            payment_method=payment_method,
            promo_code=promo_code,
            idempotency_key=idempotency_key,
            status=ReservationStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            created_at=now,
            modified_at=now,
        )

    # ==================== STATE TRANSITION METHODS ====================
    def confirm(self, now: datetime) -> None:
        """Confirm reservation once payment has completed externally"""
        lifecycle.ensure_transition(self.status, ReservationStatus.CONFIRMED)

        self.status = ReservationStatus.CONFIRMED
        self.payment_status = PaymentStatus.COMPLETED
        self.confirmed_at = now
        self._touch(now)

    def check_in(self, now: datetime, window: timedelta) -> None:
        """Mark guest as checked in; only allowed close to the check-in date"""
        lifecycle.ensure_transition(self.status, ReservationStatus.CHECKED_IN)

        drift = abs(now - self.date_range.check_in_at())
        if drift > window:
            raise StateError(
                "Check-in is only allowed within "
                f"{window.total_seconds() / 3600:g} hours of the check-in date",
                check_in=self.date_range.check_in,
                attempted_at=now,
            )

        self.status = ReservationStatus.CHECKED_IN
        self.checked_in_at = now
        self._touch(now)

    def check_out(self, now: datetime) -> None:
        """Process guest check-out"""
        lifecycle.ensure_transition(self.status, ReservationStatus.CHECKED_OUT)

        self.status = ReservationStatus.CHECKED_OUT
        self.checked_out_at = now
        self._touch(now)

    def cancel(self, now: datetime, record: CancellationRecord) -> None:
        """Cancel reservation with an already evaluated refund/fee split"""
        lifecycle.ensure_transition(self.status, ReservationStatus.CANCELLED)

        if self.payment_status == PaymentStatus.COMPLETED:
            if record.cancellation_fee == 0:
                self.payment_status = PaymentStatus.REFUNDED
            elif record.refund_amount > 0:
                self.payment_status = PaymentStatus.PARTIALLY_REFUNDED
        else:
            # Nothing was collected, so nothing is owed back
            self.payment_status = PaymentStatus.VOIDED

        self.status = ReservationStatus.CANCELLED
        self.cancellation = record
        self.cancelled_at = now
        self._touch(now)

    def mark_no_show(self, now: datetime) -> None:
        """Mark guest as no-show once the check-in date has passed"""
        lifecycle.ensure_transition(self.status, ReservationStatus.NO_SHOW)

        if now < self.date_range.check_in_at():
            raise StateError(
                "Cannot mark as no-show before the check-in date",
                check_in=self.date_range.check_in,
                attempted_at=now,
            )

        self.status = ReservationStatus.NO_SHOW
        self.no_show_at = now
        self._touch(now)

    # ==================== QUERY METHODS ====================
    def occupies_resource(self) -> bool:
        return lifecycle.occupies(self.status)

    def is_cancellable(self) -> bool:
        return self.status in lifecycle.CANCELLABLE_STATUSES

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        """Pending for longer than the payment TTL"""
        return self.status == ReservationStatus.PENDING and now - self.created_at >= ttl

    def get_nights(self) -> int:
        return self.date_range.nights()

    def _touch(self, now: datetime) -> None:
        self.modified_at = now
        self.version += 1

    @staticmethod
    def _generate_confirmation_code() -> str:
        """Generate confirmation code"""
        return ''.join(random.choices(string.ascii_uppercase + string.digits, k=8))


class LedgerEntry(BaseModel):
    """Append-only financial record tied to one reservation"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    entry_id: UUID = Field(default_factory=uuid4)
    reservation_id: UUID
    resource_id: str
    entry_type: LedgerEntryType
    status: LedgerEntryStatus
    amount: Decimal = Field(ge=0)
    currency: str
    references_entry_id: Optional[UUID] = None
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def authorize_payment(reservation: Reservation, now: datetime) -> "LedgerEntry":
        return LedgerEntry(
            reservation_id=reservation.reservation_id,
            resource_id=reservation.resource_id,
            entry_type=LedgerEntryType.PAYMENT,
            status=LedgerEntryStatus.PENDING,
            amount=reservation.pricing.total,
            currency=reservation.pricing.currency,
            description=f"Payment due via {reservation.payment_method.value}",
            created_at=now,
        )

    @staticmethod
    def settle_payment(authorization: "LedgerEntry", now: datetime,
                       payment_reference: Optional[str] = None) -> "LedgerEntry":
        description = "Payment completed"
        if payment_reference:
            description = f"{description} ({payment_reference})"
        return LedgerEntry(
            reservation_id=authorization.reservation_id,
            resource_id=authorization.resource_id,
            entry_type=LedgerEntryType.PAYMENT,
            status=LedgerEntryStatus.COMPLETED,
            amount=authorization.amount,
            currency=authorization.currency,
            references_entry_id=authorization.entry_id,
            description=description,
            created_at=now,
        )

    @staticmethod
    def refund(payment: "LedgerEntry", amount: Decimal, now: datetime,
               reason: str) -> "LedgerEntry":
        """Refund offsetting ``payment``; voided when the payment never settled"""
        settled = payment.status == LedgerEntryStatus.COMPLETED
        return LedgerEntry(
            reservation_id=payment.reservation_id,
            resource_id=payment.resource_id,
            entry_type=LedgerEntryType.REFUND,
            status=LedgerEntryStatus.COMPLETED if settled else LedgerEntryStatus.VOIDED,
            amount=amount,
            currency=payment.currency,
            references_entry_id=payment.entry_id,
            description=reason,
            created_at=now,
        )

    @staticmethod
    def commission(reservation: Reservation, amount: Decimal, now: datetime) -> "LedgerEntry":
        return LedgerEntry(
            reservation_id=reservation.reservation_id,
            resource_id=reservation.resource_id,
            entry_type=LedgerEntryType.COMMISSION,
            status=LedgerEntryStatus.COMPLETED,
            amount=amount,
            currency=reservation.pricing.currency,
            description="Platform commission",
            created_at=now,
        )

    def counts_as_revenue(self) -> bool:
        return self.status == LedgerEntryStatus.COMPLETED and self.entry_type in (
            LedgerEntryType.PAYMENT, LedgerEntryType.REFUND,
        )

    def signed_amount(self) -> Decimal:
        """Contribution of this entry to recognized revenue"""
        if not self.counts_as_revenue():
            return Decimal("0")
        if self.entry_type == LedgerEntryType.REFUND:
            return -self.amount
        return self.amount


class DailyRevenueRollup(BaseModel):
    """Derived per-room, per-day aggregate; recomputed, never edited"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    resource_id: str
    date: date
    currency: str
    total_revenue: Decimal = Decimal("0")
    confirmed_revenue: Decimal = Decimal("0")
    completed_revenue: Decimal = Decimal("0")
    pending_revenue: Decimal = Decimal("0")
    total_bookings: int = 0
    bookings_by_status: Dict[ReservationStatus, int] = {}
    occupied: bool = False
    occupancy_rate: Decimal = Decimal("0")
    average_booking_value: Decimal = Decimal("0")
    cancellation_rate: Decimal = Decimal("0")

    @property
    def key(self):
        return (self.resource_id, self.date)


class IdempotencyRecord(BaseModel):
    """Remembers which reservation a client's idempotency key produced"""
    model_config = ConfigDict(frozen=True)

    requester_id: UUID
    key: str
    reservation_id: UUID
    fingerprint: str
    created_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def fingerprint_for(resource_id: str, check_in: date, check_out: date, guest_count: int,
                        payment_method: PaymentMethod, promo_code: Optional[str]) -> str:
        """Stable summary of the request a key was first used for"""
        return "|".join([
            resource_id,
            check_in.isoformat(),
            check_out.isoformat(),
            str(guest_count),
            PaymentMethod(payment_method).value,
            (promo_code or "").upper(),
        ])
