"""In-Memory Repository Implementations

``InMemoryStore`` owns the committed data. Every request works through an
``InMemoryUnitOfWork`` that stages its writes and applies them to the store
in one step at commit, after re-checking the store's constraints:

* no two occupying reservations on one resource overlap (exclusion constraint);
* a reservation update must start from the version that was loaded;
* an idempotency key is unique per requester;
* the ledger stays append-only and never goes below zero revenue.
"""
import asyncio
import threading
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

import structlog
from pydantic import BaseModel

from domain.entities import (
    DailyRevenueRollup, IdempotencyRecord, LedgerEntry, Reservation, Resource,
)
from domain.enums import LedgerEntryType, ReservationStatus
from domain.errors import (
    ConcurrentModification, IntervalConflict, LedgerConstraintViolation,
    PersistenceError, PersistenceTimeout,
)
from domain.events import DomainEvent
from domain.lifecycle import OCCUPYING_STATUSES
from domain.repositories import (
    IdempotencyRepository, LedgerRepository, ReservationRepository, ResourceRepository,
    RollupRepository, UnitOfWork,
)
from domain.value_objects import DateRange

logger = structlog.get_logger(__name__)


class StoreStats(BaseModel):
    """Per-store counters"""
    commits: int = 0
    rollbacks: int = 0
    conflicts: int = 0
    timeouts: int = 0


class InMemoryStore:
    """Committed state plus the per-resource locks guarding it"""

    def __init__(self, lock_timeout_seconds: float = 5.0, event_bus=None):
        self.lock_timeout_seconds = lock_timeout_seconds
        self.event_bus = event_bus
        self.stats = StoreStats()

        self.resources: Dict[str, Resource] = {}
        self.reservations: Dict[UUID, Reservation] = {}
        self.ledger: Dict[UUID, LedgerEntry] = {}
        self.rollups: Dict[Tuple[str, date], DailyRevenueRollup] = {}
        self.idempotency: Dict[Tuple[UUID, str], IdempotencyRecord] = {}

        self._resource_locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = threading.Lock()
        # Guards the apply step so a commit is never observed half-done
        self._commit_lock = threading.Lock()

    def resource_lock(self, resource_id: str) -> asyncio.Lock:
        with self._registry_lock:
            lock = self._resource_locks.get(resource_id)
            if lock is None:
                lock = asyncio.Lock()
                self._resource_locks[resource_id] = lock
            return lock

    def unit_of_work(self) -> "InMemoryUnitOfWork":
        return InMemoryUnitOfWork(self)

    def clear(self) -> None:
        with self._commit_lock:
            self.resources.clear()
            self.reservations.clear()
            self.ledger.clear()
            self.rollups.clear()
            self.idempotency.clear()
            self.stats = StoreStats()
        with self._registry_lock:
            self._resource_locks.clear()


# ==================== REPOSITORIES ====================
class InMemoryResourceRepository(ResourceRepository):
    """In-memory implementation of ResourceRepository"""

    def __init__(self, uow: "InMemoryUnitOfWork"):
        self._uow = uow

    async def find_by_id(self, resource_id: str) -> Optional[Resource]:
        staged = self._uow._staged_resources.get(resource_id)
        if staged is not None:
            return staged
        return self._uow.store.resources.get(resource_id)

    async def find_all(self) -> List[Resource]:
        merged = dict(self._uow.store.resources)
        merged.update(self._uow._staged_resources)
        return list(merged.values())

    async def save(self, resource: Resource) -> Resource:
        self._uow._staged_resources[resource.resource_id] = resource
        return resource


class InMemoryReservationRepository(ReservationRepository):
    """In-memory implementation of ReservationRepository"""

    def __init__(self, uow: "InMemoryUnitOfWork"):
        self._uow = uow

    def _load(self, reservation: Reservation) -> Reservation:
        staged = self._uow._staged_reservations.get(reservation.reservation_id)
        if staged is not None:
            return staged
        self._uow._loaded_versions.setdefault(reservation.reservation_id, reservation.version)
        return reservation.model_copy(deep=True)

    def _visible(self) -> Iterable[Reservation]:
        committed = self._uow.store.reservations
        for reservation_id, reservation in committed.items():
            if reservation_id not in self._uow._staged_reservations:
                yield reservation
        yield from self._uow._staged_reservations.values()

    async def add(self, reservation: Reservation) -> Reservation:
        reservation_id = reservation.reservation_id
        if reservation_id in self._uow.store.reservations or reservation_id in self._uow._new_reservations:
            raise PersistenceError("Reservation id already exists", reservation_id=reservation_id)
        self._uow._staged_reservations[reservation_id] = reservation
        self._uow._new_reservations.add(reservation_id)
        return reservation

    async def update(self, reservation: Reservation) -> Reservation:
        reservation_id = reservation.reservation_id
        if reservation_id not in self._uow._new_reservations:
            committed = self._uow.store.reservations.get(reservation_id)
            if committed is None:
                raise ConcurrentModification(
                    "Reservation does not exist in the store", reservation_id=reservation_id
                )
            self._uow._loaded_versions.setdefault(reservation_id, committed.version)
        self._uow._staged_reservations[reservation_id] = reservation
        return reservation

    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        staged = self._uow._staged_reservations.get(reservation_id)
        if staged is not None:
            return staged
        committed = self._uow.store.reservations.get(reservation_id)
        return self._load(committed) if committed else None

    async def find_by_confirmation_code(self, code: str) -> Optional[Reservation]:
        for reservation in self._visible():
            if reservation.confirmation_code == code:
                return self._load(reservation)
        return None

    async def find_by_requester(self, requester_id: UUID) -> List[Reservation]:
        return [self._load(r) for r in self._visible() if r.requester_id == requester_id]

    async def find_by_resource(
        self,
        resource_id: str,
        statuses: Optional[Iterable[ReservationStatus]] = None,
    ) -> List[Reservation]:
        wanted = set(statuses) if statuses is not None else None
        return [
            self._load(r) for r in self._visible()
            if r.resource_id == resource_id and (wanted is None or r.status in wanted)
        ]

    async def find_overlapping(
        self,
        resource_id: str,
        date_range: DateRange,
        statuses: Iterable[ReservationStatus],
    ) -> List[Reservation]:
        wanted = set(statuses)
        return [
            self._load(r) for r in self._visible()
            if r.resource_id == resource_id
            and r.status in wanted
            and r.date_range.overlaps(date_range)
        ]

    async def find_by_status(self, status: ReservationStatus) -> List[Reservation]:
        return [self._load(r) for r in self._visible() if r.status == status]

    async def find_all(self) -> List[Reservation]:
        return [self._load(r) for r in self._visible()]


class InMemoryLedgerRepository(LedgerRepository):
    """In-memory implementation of LedgerRepository (append only)"""

    def __init__(self, uow: "InMemoryUnitOfWork"):
        self._uow = uow

    def _visible(self) -> List[LedgerEntry]:
        return list(self._uow.store.ledger.values()) + self._uow._staged_ledger

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        self._uow._staged_ledger.append(entry)
        return entry

    async def find_by_reservation(self, reservation_id: UUID) -> List[LedgerEntry]:
        return [e for e in self._visible() if e.reservation_id == reservation_id]


class InMemoryRollupRepository(RollupRepository):
    """In-memory implementation of RollupRepository"""

    def __init__(self, uow: "InMemoryUnitOfWork"):
        self._uow = uow

    async def upsert(self, rollup: DailyRevenueRollup) -> DailyRevenueRollup:
        self._uow._staged_rollups[rollup.key] = rollup
        return rollup

    async def find_range(self, resource_id: str, start: date, end: date) -> List[DailyRevenueRollup]:
        merged = dict(self._uow.store.rollups)
        merged.update(self._uow._staged_rollups)
        found = [
            rollup for (rid, day), rollup in merged.items()
            if rid == resource_id and start <= day <= end
        ]
        return sorted(found, key=lambda r: r.date)


class InMemoryIdempotencyRepository(IdempotencyRepository):
    """In-memory implementation of IdempotencyRepository"""

    def __init__(self, uow: "InMemoryUnitOfWork"):
        self._uow = uow

    async def find(self, requester_id: UUID, key: str) -> Optional[IdempotencyRecord]:
        staged = self._uow._staged_idempotency.get((requester_id, key))
        if staged is not None:
            return staged
        return self._uow.store.idempotency.get((requester_id, key))

    async def record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        self._uow._staged_idempotency[(record.requester_id, record.key)] = record
        return record


# ==================== UNIT OF WORK ====================
class InMemoryUnitOfWork(UnitOfWork):
    """Stages writes against an InMemoryStore and applies them atomically"""

    def __init__(self, store: InMemoryStore):
        self.store = store
        self.resources = InMemoryResourceRepository(self)
        self.reservations = InMemoryReservationRepository(self)
        self.ledger = InMemoryLedgerRepository(self)
        self.rollups = InMemoryRollupRepository(self)
        self.idempotency = InMemoryIdempotencyRepository(self)
        self._reset()

    def _reset(self) -> None:
        self._staged_resources: Dict[str, Resource] = {}
        self._staged_reservations: Dict[UUID, Reservation] = {}
        self._new_reservations: set = set()
        self._loaded_versions: Dict[UUID, int] = {}
        self._staged_ledger: List[LedgerEntry] = []
        self._staged_rollups: Dict[Tuple[str, date], DailyRevenueRollup] = {}
        self._staged_idempotency: Dict[Tuple[UUID, str], IdempotencyRecord] = {}
        self._events: List[DomainEvent] = []
        self._held_locks: Dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        self._reset()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await super().__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self._release_locks()

    async def lock_resource(self, resource_id: str) -> None:
        if resource_id in self._held_locks:
            return
        lock = self.store.resource_lock(resource_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.store.lock_timeout_seconds)
        except asyncio.TimeoutError:
            self.store.stats.timeouts += 1
            raise PersistenceTimeout(
                "Timed out waiting for the resource lock",
                resource_id=resource_id,
                timeout_seconds=self.store.lock_timeout_seconds,
            )
        self._held_locks[resource_id] = lock

    def _release_locks(self) -> None:
        for lock in self._held_locks.values():
            if lock.locked():
                lock.release()
        self._held_locks.clear()

    def collect(self, event: DomainEvent) -> None:
        self._events.append(event)

    async def commit(self) -> None:
        events = list(self._events)
        try:
            with self.store._commit_lock:
                self._check_reservation_versions()
                self._check_exclusion_constraint()
                self._check_idempotency_uniqueness()
                self._check_ledger_constraints()
                self._apply()
        except Exception:
            await self.rollback()
            raise

        self.store.stats.commits += 1
        self._reset_staging()
        # Subscribers run with no resource lock held
        self._release_locks()

        if self.store.event_bus is not None and events:
            self.store.event_bus.dispatch(events)

    async def rollback(self) -> None:
        discarded = len(self._events)
        had_writes = bool(
            self._staged_reservations or self._staged_ledger or self._staged_rollups
            or self._staged_idempotency or self._staged_resources
        )
        self._reset_staging()
        self.store.stats.rollbacks += 1
        if had_writes:
            logger.debug("Unit of work rolled back", discarded_events=discarded)

    def _reset_staging(self) -> None:
        held = self._held_locks
        self._reset()
        self._held_locks = held

    # ==================== COMMIT-TIME CONSTRAINTS ====================
    def _check_reservation_versions(self) -> None:
        for reservation_id in self._staged_reservations:
            if reservation_id in self._new_reservations:
                continue
            committed = self.store.reservations.get(reservation_id)
            expected = self._loaded_versions.get(reservation_id)
            if committed is None or committed.version != expected:
                raise ConcurrentModification(
                    "Reservation was modified by another unit of work",
                    reservation_id=reservation_id,
                    expected_version=expected,
                    actual_version=committed.version if committed else None,
                )

    def _check_exclusion_constraint(self) -> None:
        merged = dict(self.store.reservations)
        merged.update(self._staged_reservations)
        occupying = [r for r in merged.values() if r.status in OCCUPYING_STATUSES]

        for staged in self._staged_reservations.values():
            if staged.status not in OCCUPYING_STATUSES:
                continue
            for other in occupying:
                if other.reservation_id == staged.reservation_id:
                    continue
                if other.resource_id == staged.resource_id and other.date_range.overlaps(staged.date_range):
                    self.store.stats.conflicts += 1
                    raise IntervalConflict(
                        staged.resource_id,
                        staged.date_range.check_in,
                        staged.date_range.check_out,
                        conflicting_reservation_id=other.reservation_id,
                    )

    def _check_idempotency_uniqueness(self) -> None:
        for key in self._staged_idempotency:
            if key in self.store.idempotency:
                raise PersistenceError(
                    "Idempotency key was committed concurrently",
                    requester_id=key[0],
                    idempotency_key=key[1],
                )

    def _check_ledger_constraints(self) -> None:
        if not self._staged_ledger:
            return

        known: Dict[UUID, LedgerEntry] = dict(self.store.ledger)
        refunded = {
            e.references_entry_id for e in known.values()
            if e.entry_type == LedgerEntryType.REFUND
        }
        touched = set()

        for entry in self._staged_ledger:
            if entry.entry_id in known:
                raise LedgerConstraintViolation("Duplicate ledger entry id", entry_id=entry.entry_id)

            if entry.entry_type == LedgerEntryType.REFUND:
                payment = known.get(entry.references_entry_id)
                if payment is None or payment.entry_type != LedgerEntryType.PAYMENT:
                    raise LedgerConstraintViolation(
                        "Refund must reference an existing payment entry",
                        entry_id=entry.entry_id,
                        references_entry_id=entry.references_entry_id,
                    )
                if payment.reservation_id != entry.reservation_id:
                    raise LedgerConstraintViolation(
                        "Refund references a payment of another reservation",
                        entry_id=entry.entry_id,
                    )
                if entry.references_entry_id in refunded:
                    raise LedgerConstraintViolation(
                        "Payment has already been refunded",
                        references_entry_id=entry.references_entry_id,
                    )
                refunded.add(entry.references_entry_id)

            known[entry.entry_id] = entry
            touched.add(entry.reservation_id)

        for reservation_id in touched:
            revenue = sum(
                (e.signed_amount() for e in known.values() if e.reservation_id == reservation_id),
                Decimal("0"),
            )
            if revenue < 0:
                raise LedgerConstraintViolation(
                    "Recognized revenue cannot be negative",
                    reservation_id=reservation_id,
                    revenue=revenue,
                )

    def _apply(self) -> None:
        store = self.store
        store.resources.update(self._staged_resources)
        store.reservations.update(self._staged_reservations)
        for entry in self._staged_ledger:
            store.ledger[entry.entry_id] = entry
        store.rollups.update(self._staged_rollups)
        store.idempotency.update(self._staged_idempotency)

