"""Application Services - Business use cases"""
import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel

from config.settings import Settings, settings as default_settings
from domain.availability import AvailabilityIndex
from domain.cancellation import CancellationPolicy
from domain.entities import (
    DailyRevenueRollup, IdempotencyRecord, LedgerEntry, Reservation, Resource, utcnow,
)
from domain.enums import LedgerEntryStatus, LedgerEntryType, PaymentMethod, ReservationStatus
from domain.errors import (
    CapacityExceeded, IdempotencyKeyReused, IntervalConflict, InvalidInterval,
    LedgerConstraintViolation, PersistenceError, ReservationNotFound, ResourceInactive,
    ResourceNotFound, RiskRejected, ValidationError,
)
from domain.events import (
    GUEST_CHECKED_IN, GUEST_CHECKED_OUT, RESERVATION_CANCELLED, RESERVATION_CONFIRMED,
    RESERVATION_CREATED, RESERVATION_NO_SHOW, reservation_event,
)
from domain.lifecycle import OCCUPYING_STATUSES
from domain.pricing import PricingCalculator
from domain.repositories import UnitOfWork
from domain.value_objects import DateRange, PricingSnapshot, quantize_amount

logger = structlog.get_logger(__name__)

UnitOfWorkFactory = Callable[[], UnitOfWork]
RiskGate = Callable[[UUID, str, DateRange], Awaitable[float]]
Clock = Callable[[], datetime]

ZERO = Decimal("0")


class CancellationOutcome(BaseModel):
    """Result of a successful cancellation"""
    reservation: Reservation
    refund_amount: Decimal
    cancellation_fee: Decimal
    fee_rate: Decimal
    refund_entry: LedgerEntry


class RevenueReport(BaseModel):
    """Daily rollups for a resource over a date range, with totals"""
    resource_id: str
    start_date: date
    end_date: date
    currency: str
    days: List[DailyRevenueRollup]
    total_revenue: Decimal
    total_bookings: int
    occupied_nights: int
    average_occupancy_rate: Decimal
    average_cancellation_rate: Decimal


class ReservationOverview(BaseModel):
    """Reservation counts per status for one resource or the whole hotel"""
    resource_id: Optional[str] = None
    total_reservations: int
    by_status: Dict[str, int]
    active_reservations: int
    booked_value: Decimal
    cancellation_rate: Decimal


# ==================== LEDGER HELPERS ====================
def recognized_revenue(entries: List[LedgerEntry]) -> Decimal:
    """Completed payments minus completed refunds"""
    return sum((entry.signed_amount() for entry in entries), ZERO)


def _latest_payment(entries: List[LedgerEntry], status: LedgerEntryStatus) -> Optional[LedgerEntry]:
    payments = [
        e for e in entries
        if e.entry_type == LedgerEntryType.PAYMENT and e.status == status
    ]
    return payments[-1] if payments else None


def build_refund_entry(entries: List[LedgerEntry], amount: Decimal, now: datetime,
                       reason: str) -> LedgerEntry:
    """Refund offsetting the settled payment, or voiding the authorization if nothing settled"""
    payment = (
        _latest_payment(entries, LedgerEntryStatus.COMPLETED)
        or _latest_payment(entries, LedgerEntryStatus.PENDING)
    )
    if payment is None:
        raise LedgerConstraintViolation("No payment entry to refund against")
    return LedgerEntry.refund(payment, amount, now, reason)


# ==================== RESOURCE CATALOG ====================
class ResourceCatalogService:
    """Write path of the hotel-management collaborator, plus lookups"""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self.uow_factory = uow_factory

    async def register_resource(self, resource: Resource) -> Resource:
        """Insert or replace a resource"""
        async with self.uow_factory() as uow:
            await uow.resources.save(resource)
        logger.info("Resource registered", resource_id=resource.resource_id,
                    is_active=resource.is_active)
        return resource

    async def get_resource(self, resource_id: str) -> Resource:
        async with self.uow_factory() as uow:
            resource = await uow.resources.find_by_id(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        return resource

    async def list_resources(self) -> List[Resource]:
        async with self.uow_factory() as uow:
            return await uow.resources.find_all()


# ==================== RESERVATION ENGINE ====================
class ReservationService:
    """Service for Reservation business use cases.

    Every write runs in its own unit of work. Retryable persistence failures
    (lock timeouts, version conflicts) are retried with exponential backoff;
    every other error propagates after the unit has rolled back.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        calculator: PricingCalculator,
        cancellation_policy: CancellationPolicy,
        config: Optional[Settings] = None,
        clock: Clock = utcnow,
        risk_gate: Optional[RiskGate] = None,
        risk_threshold: float = 0.8,
    ):
        config = config or default_settings
        self.uow_factory = uow_factory
        self.calculator = calculator
        self.cancellation_policy = cancellation_policy
        self.clock = clock
        self.risk_gate = risk_gate
        self.risk_threshold = risk_threshold

        self.max_stay_nights = config.reservation.max_stay_nights
        self.check_in_window = timedelta(hours=config.reservation.check_in_window_hours)
        self.commission_rate = config.ledger.commission_rate
        self.decimal_places = config.pricing.amount_decimal_places
        self.max_retries = max(1, config.persistence.max_retries)
        self.retry_backoff_seconds = config.persistence.retry_backoff_seconds

    async def _run_with_retry(self, operation: str, func: Callable[[], Awaitable], **context):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except PersistenceError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Persistence error, giving up",
                        operation=operation,
                        attempts=attempt,
                        error_code=e.code,
                        **context,
                    )
                    raise
                wait_time = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Persistence error, retrying",
                    operation=operation,
                    attempt=attempt,
                    wait_time=wait_time,
                    error_code=e.code,
                    **context,
                )
                await asyncio.sleep(wait_time)

    async def _load(self, uow: UnitOfWork, reservation_id: UUID) -> Reservation:
        reservation = await uow.reservations.find_by_id(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation

    # ==================== CREATE ====================
    async def create_reservation(
        self,
        resource_id: str,
        requester_id: UUID,
        check_in: date,
        check_out: date,
        guest_count: int,
        payment_method: PaymentMethod,
        promo_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reservation:
        """Create a PENDING reservation atomically.

        A repeated idempotency key returns the reservation it first produced.
        Among concurrent requests for overlapping intervals on one resource
        exactly one succeeds; the others get IntervalConflict.
        """
        fingerprint = IdempotencyRecord.fingerprint_for(
            resource_id, check_in, check_out, guest_count, payment_method, promo_code
        )
        if idempotency_key:
            async with self.uow_factory() as uow:
                replay = await self._find_replay(uow, requester_id, idempotency_key, fingerprint)
            if replay is not None:
                return replay

        # Validation errors never open a write transaction
        date_range = self._validate_request(check_in, check_out, guest_count, self.clock())

        if self.risk_gate is not None:
            score = await self.risk_gate(requester_id, resource_id, date_range)
            if score >= self.risk_threshold:
                logger.warning("Reservation rejected by risk gate", resource_id=resource_id,
                               requester_id=str(requester_id), score=score)
                raise RiskRejected(
                    "Reservation request rejected by risk assessment",
                    score=score,
                    threshold=self.risk_threshold,
                )

        async def attempt() -> Reservation:
            return await self._create_once(
                resource_id, requester_id, date_range, guest_count, payment_method,
                promo_code, idempotency_key, fingerprint,
            )

        try:
            return await self._run_with_retry("create_reservation", attempt, resource_id=resource_id)
        except IntervalConflict as e:
            logger.info(
                "Reservation rejected, interval already taken",
                resource_id=resource_id,
                check_in=str(check_in),
                check_out=str(check_out),
                conflicting_reservation_id=str(e.details.get("conflicting_reservation_id")),
            )
            raise

    async def _create_once(
        self,
        resource_id: str,
        requester_id: UUID,
        date_range: DateRange,
        guest_count: int,
        payment_method: PaymentMethod,
        promo_code: Optional[str],
        idempotency_key: Optional[str],
        fingerprint: str,
    ) -> Reservation:
        now = self.clock()
        async with self.uow_factory() as uow:
            await uow.lock_resource(resource_id)

            if idempotency_key:
                replay = await self._find_replay(uow, requester_id, idempotency_key, fingerprint)
                if replay is not None:
                    return replay

            resource = await uow.resources.find_by_id(resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)
            if not resource.is_active:
                raise ResourceInactive(resource_id)

            if guest_count > resource.capacity:
                raise CapacityExceeded(
                    f"Resource {resource_id} holds at most {resource.capacity} guests",
                    resource_id=resource_id,
                    capacity=resource.capacity,
                    guest_count=guest_count,
                )

            conflicts = await AvailabilityIndex(uow).find_conflicts(resource_id, date_range)
            if conflicts:
                raise IntervalConflict(
                    resource_id,
                    date_range.check_in,
                    date_range.check_out,
                    conflicting_reservation_id=conflicts[0].reservation_id,
                )

            pricing = self.calculator.price(resource, date_range, guest_count, promo_code)

            reservation = Reservation.create(
                resource_id=resource_id,
                requester_id=requester_id,
                date_range=date_range,
                guest_count=guest_count,
                pricing=pricing,
                payment_method=payment_method,
                now=now,
                promo_code=promo_code,
                idempotency_key=idempotency_key,
            )
            await uow.reservations.add(reservation)
            await uow.ledger.append(LedgerEntry.authorize_payment(reservation, now))

            if idempotency_key:
                await uow.idempotency.record(IdempotencyRecord(
                    requester_id=requester_id,
                    key=idempotency_key,
                    reservation_id=reservation.reservation_id,
                    fingerprint=fingerprint,
                    created_at=now,
                ))

            uow.collect(reservation_event(
                RESERVATION_CREATED, reservation, now, total=str(pricing.total),
            ))

        logger.info(
            "Reservation created",
            reservation_id=str(reservation.reservation_id),
            resource_id=resource_id,
            check_in=str(date_range.check_in),
            check_out=str(date_range.check_out),
            total=str(reservation.pricing.total),
        )
        return reservation

    async def _find_replay(self, uow: UnitOfWork, requester_id: UUID, key: str,
                           fingerprint: str) -> Optional[Reservation]:
        record = await uow.idempotency.find(requester_id, key)
        if record is None:
            return None
        if record.fingerprint != fingerprint:
            raise IdempotencyKeyReused(
                "Idempotency key was already used for a different request",
                idempotency_key=key,
            )
        reservation = await uow.reservations.find_by_id(record.reservation_id)
        if reservation is None:
            raise ReservationNotFound(record.reservation_id)
        logger.info("Idempotent replay", reservation_id=str(reservation.reservation_id),
                    idempotency_key=key)
        return reservation

    def _validate_request(self, check_in: date, check_out: date, guest_count: int,
                          now: datetime) -> DateRange:
        date_range = DateRange.of(check_in, check_out)
        if check_in < now.date():
            raise InvalidInterval("Check-in date cannot be in the past",
                                  check_in=check_in, today=now.date())
        if date_range.nights() > self.max_stay_nights:
            raise ValidationError(
                f"Maximum stay is {self.max_stay_nights} nights",
                nights=date_range.nights(),
            )
        if guest_count < 1:
            raise ValidationError("Guest count must be at least 1", guest_count=guest_count)
        return date_range

    # ==================== LIFECYCLE ====================
    async def confirm_reservation(self, reservation_id: UUID,
                                  payment_reference: Optional[str] = None) -> Reservation:
        """Confirm a PENDING reservation after payment completed externally"""

        async def attempt() -> Reservation:
            now = self.clock()
            async with self.uow_factory() as uow:
                reservation = await self._load(uow, reservation_id)
                reservation.confirm(now)
                await uow.reservations.update(reservation)

                entries = await uow.ledger.find_by_reservation(reservation_id)
                authorization = _latest_payment(entries, LedgerEntryStatus.PENDING)
                if authorization is None:
                    raise LedgerConstraintViolation(
                        "Reservation has no payment authorization to settle",
                        reservation_id=reservation_id,
                    )
                await uow.ledger.append(
                    LedgerEntry.settle_payment(authorization, now, payment_reference)
                )
                uow.collect(reservation_event(RESERVATION_CONFIRMED, reservation, now))
            return reservation

        reservation = await self._run_with_retry(
            "confirm_reservation", attempt, reservation_id=str(reservation_id)
        )
        logger.info("Reservation confirmed", reservation_id=str(reservation_id))
        return reservation

    async def check_in(self, reservation_id: UUID) -> Reservation:
        """Check in a CONFIRMED reservation within the check-in window"""

        async def attempt() -> Reservation:
            now = self.clock()
            async with self.uow_factory() as uow:
                reservation = await self._load(uow, reservation_id)
                reservation.check_in(now, self.check_in_window)
                await uow.reservations.update(reservation)
                uow.collect(reservation_event(GUEST_CHECKED_IN, reservation, now))
            return reservation

        reservation = await self._run_with_retry(
            "check_in", attempt, reservation_id=str(reservation_id)
        )
        logger.info("Guest checked in", reservation_id=str(reservation_id))
        return reservation

    async def check_out(self, reservation_id: UUID) -> Reservation:
        """Check out and book the platform commission on recognized revenue"""

        async def attempt() -> Reservation:
            now = self.clock()
            async with self.uow_factory() as uow:
                reservation = await self._load(uow, reservation_id)
                reservation.check_out(now)
                await uow.reservations.update(reservation)

                entries = await uow.ledger.find_by_reservation(reservation_id)
                commission = quantize_amount(
                    recognized_revenue(entries) * self.commission_rate, self.decimal_places
                )
                if commission > 0:
                    await uow.ledger.append(LedgerEntry.commission(reservation, commission, now))

                uow.collect(reservation_event(
                    GUEST_CHECKED_OUT, reservation, now, commission=str(commission),
                ))
            return reservation

        reservation = await self._run_with_retry(
            "check_out", attempt, reservation_id=str(reservation_id)
        )
        logger.info("Guest checked out", reservation_id=str(reservation_id))
        return reservation

    async def mark_no_show(self, reservation_id: UUID) -> Reservation:
        """Mark a CONFIRMED reservation as no-show once check-in has passed"""

        async def attempt() -> Reservation:
            now = self.clock()
            async with self.uow_factory() as uow:
                reservation = await self._load(uow, reservation_id)
                reservation.mark_no_show(now)
                await uow.reservations.update(reservation)
                uow.collect(reservation_event(RESERVATION_NO_SHOW, reservation, now))
            return reservation

        reservation = await self._run_with_retry(
            "mark_no_show", attempt, reservation_id=str(reservation_id)
        )
        logger.info("Reservation marked as no-show", reservation_id=str(reservation_id))
        return reservation

    async def cancel_reservation(
        self,
        reservation_id: UUID,
        reason: str = "Cancelled by guest",
        cancelled_by: str = "GUEST",
    ) -> CancellationOutcome:
        """Cancel with the tiered refund policy and record the refund in the ledger.

        Raises PolicyViolation, without writing anything, when the reservation
        is checked in or already finished.
        """

        async def attempt() -> CancellationOutcome:
            now = self.clock()
            async with self.uow_factory() as uow:
                reservation = await self._load(uow, reservation_id)
                quote = self.cancellation_policy.evaluate(reservation, now)

                reservation.cancel(now, quote.to_record(reason, cancelled_by))
                await uow.reservations.update(reservation)

                entries = await uow.ledger.find_by_reservation(reservation_id)
                refund_entry = build_refund_entry(entries, quote.refund_amount, now, reason)
                await uow.ledger.append(refund_entry)

                uow.collect(reservation_event(
                    RESERVATION_CANCELLED, reservation, now,
                    refund_amount=str(quote.refund_amount),
                    cancellation_fee=str(quote.cancellation_fee),
                    reason=reason,
                ))
            return CancellationOutcome(
                reservation=reservation,
                refund_amount=quote.refund_amount,
                cancellation_fee=quote.cancellation_fee,
                fee_rate=quote.fee_rate,
                refund_entry=refund_entry,
            )

        outcome = await self._run_with_retry(
            "cancel_reservation", attempt, reservation_id=str(reservation_id)
        )
        logger.info(
            "Reservation cancelled",
            reservation_id=str(reservation_id),
            refund_amount=str(outcome.refund_amount),
            cancellation_fee=str(outcome.cancellation_fee),
        )
        return outcome

    # ==================== QUERIES ====================
    async def get_reservation(self, reservation_id: UUID) -> Reservation:
        """Get reservation by ID"""
        async with self.uow_factory() as uow:
            return await self._load(uow, reservation_id)

    async def get_reservation_by_confirmation_code(self, code: str) -> Reservation:
        """Get reservation by confirmation code"""
        async with self.uow_factory() as uow:
            reservation = await uow.reservations.find_by_confirmation_code(code.upper())
        if reservation is None:
            raise ReservationNotFound(code)
        return reservation

    async def get_reservations_by_requester(self, requester_id: UUID) -> List[Reservation]:
        """Get all reservations made by a requester"""
        async with self.uow_factory() as uow:
            reservations = await uow.reservations.find_by_requester(requester_id)
        return sorted(reservations, key=lambda r: r.created_at)

    async def list_reservations(self, resource_id: Optional[str] = None,
                                status: Optional[ReservationStatus] = None) -> List[Reservation]:
        """Staff listing, optionally narrowed by resource and status, oldest first"""
        async with self.uow_factory() as uow:
            if resource_id is not None:
                if await uow.resources.find_by_id(resource_id) is None:
                    raise ResourceNotFound(resource_id)
                statuses = [status] if status is not None else None
                reservations = await uow.reservations.find_by_resource(resource_id, statuses=statuses)
            elif status is not None:
                reservations = await uow.reservations.find_by_status(status)
            else:
                reservations = await uow.reservations.find_all()
        return sorted(reservations, key=lambda r: r.created_at)

    async def reservation_overview(self, resource_id: Optional[str] = None) -> ReservationOverview:
        """Counts per status; booked value covers every reservation not cancelled"""
        reservations = await self.list_reservations(resource_id=resource_id)
        by_status = {status.value: 0 for status in ReservationStatus}
        for reservation in reservations:
            by_status[reservation.status.value] += 1

        total = len(reservations)
        cancelled = by_status[ReservationStatus.CANCELLED.value]
        return ReservationOverview(
            resource_id=resource_id,
            total_reservations=total,
            by_status=by_status,
            active_reservations=sum(1 for r in reservations if r.status in OCCUPYING_STATUSES),
            booked_value=sum(
                (r.pricing.total for r in reservations if r.status != ReservationStatus.CANCELLED),
                ZERO,
            ),
            cancellation_rate=(
                quantize_amount(Decimal(cancelled) * 100 / total, 2) if total else ZERO
            ),
        )

    async def quote(self, resource_id: str, check_in: date, check_out: date,
                    guest_count: int, promo_code: Optional[str] = None) -> PricingSnapshot:
        """Price preview; nothing is persisted"""
        date_range = DateRange.of(check_in, check_out)
        async with self.uow_factory() as uow:
            resource = await uow.resources.find_by_id(resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        if not resource.is_active:
            raise ResourceInactive(resource_id)
        return self.calculator.price(resource, date_range, guest_count, promo_code)

    async def is_available(self, resource_id: str, check_in: date, check_out: date) -> bool:
        """Advisory availability check outside any write transaction"""
        date_range = DateRange.of(check_in, check_out)
        async with self.uow_factory() as uow:
            resource = await uow.resources.find_by_id(resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)
            if not resource.is_active:
                return False
            return await AvailabilityIndex(uow).is_available(resource_id, date_range)

    async def current_reservation(self, resource_id: str,
                                  on_date: Optional[date] = None) -> Optional[Reservation]:
        """The reservation occupying the resource on ``on_date`` (default today)"""
        on_date = on_date or self.clock().date()
        async with self.uow_factory() as uow:
            if await uow.resources.find_by_id(resource_id) is None:
                raise ResourceNotFound(resource_id)
            return await AvailabilityIndex(uow).current_reservation(resource_id, on_date)


# ==================== PENDING TTL SWEEP ====================
class PendingReservationSweeper:
    """Cancels PENDING reservations whose payment did not arrive in time.

    Each expiry runs in its own unit of work and re-checks the status right
    before mutating, so overlapping sweeps and racing confirmations are safe:
    the loser sees a non-pending reservation or fails the version check.
    """

    EXPIRY_REASON = "PAYMENT_TIMEOUT"

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        cancellation_policy: CancellationPolicy,
        config: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        config = config or default_settings
        self.uow_factory = uow_factory
        self.cancellation_policy = cancellation_policy
        self.ttl = timedelta(minutes=config.reservation.pending_ttl_minutes)
        self.clock = clock

    async def sweep(self, now: Optional[datetime] = None) -> List[UUID]:
        """Expire stale PENDING reservations; returns the ids actually expired"""
        now = now or self.clock()
        async with self.uow_factory() as uow:
            candidates = await uow.reservations.find_by_status(ReservationStatus.PENDING)

        expired: List[UUID] = []
        for candidate in candidates:
            if not candidate.is_expired(now, self.ttl):
                continue
            try:
                if await self._expire(candidate.reservation_id, now):
                    expired.append(candidate.reservation_id)
            except PersistenceError as e:
                # Left for the next sweep; the status check runs again there
                logger.warning(
                    "Could not expire pending reservation",
                    reservation_id=str(candidate.reservation_id),
                    error_code=e.code,
                )

        if expired:
            logger.info("Expired pending reservations", count=len(expired))
        return expired

    async def _expire(self, reservation_id: UUID, now: datetime) -> bool:
        async with self.uow_factory() as uow:
            reservation = await uow.reservations.find_by_id(reservation_id)
            if reservation is None or not reservation.is_expired(now, self.ttl):
                return False

            quote = self.cancellation_policy.expiry_quote(reservation, now)
            reservation.cancel(now, quote.to_record(self.EXPIRY_REASON, "SYSTEM"))
            await uow.reservations.update(reservation)

            entries = await uow.ledger.find_by_reservation(reservation_id)
            await uow.ledger.append(
                build_refund_entry(entries, quote.refund_amount, now, self.EXPIRY_REASON)
            )
            uow.collect(reservation_event(
                RESERVATION_CANCELLED, reservation, now, reason=self.EXPIRY_REASON,
            ))

        logger.info("Pending reservation expired", reservation_id=str(reservation_id))
        return True

    async def run_forever(self, interval_seconds: float) -> None:
        """Sweep every ``interval_seconds`` until cancelled"""
        logger.info("Pending reservation sweeper started", interval_seconds=interval_seconds)
        try:
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    await self.sweep()
                except Exception:
                    logger.exception("Pending reservation sweep failed")
        finally:
            logger.info("Pending reservation sweeper stopped")


# ==================== REVENUE ====================
class RevenueService:
    """Ledger reads and the per-resource, per-day revenue rollup"""

    SOLD_STATUSES = frozenset({
        ReservationStatus.CONFIRMED,
        ReservationStatus.CHECKED_IN,
        ReservationStatus.CHECKED_OUT,
    })

    def __init__(self, uow_factory: UnitOfWorkFactory, config: Optional[Settings] = None):
        config = config or default_settings
        self.uow_factory = uow_factory
        self.decimal_places = config.pricing.amount_decimal_places

    async def ledger_for(self, reservation_id: UUID) -> List[LedgerEntry]:
        async with self.uow_factory() as uow:
            if await uow.reservations.find_by_id(reservation_id) is None:
                raise ReservationNotFound(reservation_id)
            return await uow.ledger.find_by_reservation(reservation_id)

    async def recognized_revenue(self, reservation_id: UUID) -> Decimal:
        return recognized_revenue(await self.ledger_for(reservation_id))

    async def recompute_rollup(self, resource_id: str, day: date) -> DailyRevenueRollup:
        """Rebuild and upsert the rollup for (resource_id, day).

        Reads committed data without taking any lock. Two runs over
        unchanged data produce equal records.
        """
        async with self.uow_factory() as uow:
            resource = await uow.resources.find_by_id(resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)

            reservations = [
                r for r in await uow.reservations.find_by_resource(resource_id)
                if r.date_range.covers_night(day)
            ]

            bookings_by_status: Dict[ReservationStatus, int] = {s: 0 for s in ReservationStatus}
            total_revenue = confirmed_revenue = completed_revenue = pending_revenue = ZERO

            for reservation in reservations:
                bookings_by_status[reservation.status] += 1
                nights = reservation.get_nights()

                if reservation.status == ReservationStatus.PENDING:
                    pending_revenue += self._round(reservation.pricing.total / nights)
                    continue

                entries = await uow.ledger.find_by_reservation(reservation.reservation_id)
                share = self._round(recognized_revenue(entries) / nights)
                total_revenue += share
                if reservation.status in (ReservationStatus.CONFIRMED, ReservationStatus.CHECKED_IN):
                    confirmed_revenue += share
                elif reservation.status == ReservationStatus.CHECKED_OUT:
                    completed_revenue += share

            total_bookings = len(reservations)
            occupied = any(r.status in self.SOLD_STATUSES for r in reservations)
            cancelled = bookings_by_status[ReservationStatus.CANCELLED]

            rollup = DailyRevenueRollup(
                resource_id=resource_id,
                date=day,
                currency=resource.currency,
                total_revenue=total_revenue,
                confirmed_revenue=confirmed_revenue,
                completed_revenue=completed_revenue,
                pending_revenue=pending_revenue,
                total_bookings=total_bookings,
                bookings_by_status=bookings_by_status,
                occupied=occupied,
                occupancy_rate=Decimal("100") if occupied else ZERO,
                average_booking_value=(
                    self._round(total_revenue / total_bookings) if total_bookings else ZERO
                ),
                cancellation_rate=(
                    quantize_amount(Decimal(cancelled) * 100 / total_bookings, 2)
                    if total_bookings else ZERO
                ),
            )
            await uow.rollups.upsert(rollup)

        logger.debug("Revenue rollup recomputed", resource_id=resource_id, day=str(day),
                     total_revenue=str(rollup.total_revenue))
        return rollup

    async def recompute_range(self, resource_id: str, start: date, end: date) -> List[DailyRevenueRollup]:
        """Recompute every day from start to end inclusive"""
        if end < start:
            raise InvalidInterval("End date must not be before start date", start=start, end=end)
        rollups = []
        day = start
        while day <= end:
            rollups.append(await self.recompute_rollup(resource_id, day))
            day += timedelta(days=1)
        return rollups

    async def revenue_report(self, resource_id: str, start: date, end: date) -> RevenueReport:
        """Stored rollups for start..end inclusive, with totals"""
        if end < start:
            raise InvalidInterval("End date must not be before start date", start=start, end=end)
        async with self.uow_factory() as uow:
            resource = await uow.resources.find_by_id(resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)
            days = await uow.rollups.find_range(resource_id, start, end)

        count = len(days)
        return RevenueReport(
            resource_id=resource_id,
            start_date=start,
            end_date=end,
            currency=resource.currency,
            days=days,
            total_revenue=sum((d.total_revenue for d in days), ZERO),
            total_bookings=sum(d.total_bookings for d in days),
            occupied_nights=sum(1 for d in days if d.occupied),
            average_occupancy_rate=(
                quantize_amount(sum((d.occupancy_rate for d in days), ZERO) / count, 2)
                if count else ZERO
            ),
            average_cancellation_rate=(
                quantize_amount(sum((d.cancellation_rate for d in days), ZERO) / count, 2)
                if count else ZERO
            ),
        )

    def _round(self, value: Decimal) -> Decimal:
        return quantize_amount(value, self.decimal_places)
