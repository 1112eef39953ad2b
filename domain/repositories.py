"""Domain Repository Interfaces"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable, List, Optional
from uuid import UUID

from domain.entities import (
    DailyRevenueRollup, IdempotencyRecord, LedgerEntry, Reservation, Resource,
)
from domain.enums import ReservationStatus
from domain.events import DomainEvent
from domain.value_objects import DateRange


class ResourceRepository(ABC):
    """Repository interface for the externally owned Resource"""

    @abstractmethod
    async def find_by_id(self, resource_id: str) -> Optional[Resource]:
        """Find resource by ID"""
        pass

    @abstractmethod
    async def find_all(self) -> List[Resource]:
        """Find all resources"""
        pass

    @abstractmethod
    async def save(self, resource: Resource) -> Resource:
        """Insert or replace a resource (hotel-management write path)"""
        pass


class ReservationRepository(ABC):
    """Repository interface for Reservation Aggregate.

    Has no delete: cancellation is a status.
    """

    @abstractmethod
    async def add(self, reservation: Reservation) -> Reservation:
        """Stage a new reservation"""
        pass

    @abstractmethod
    async def update(self, reservation: Reservation) -> Reservation:
        """Stage changes to a loaded reservation"""
        pass

    @abstractmethod
    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        """Find reservation by ID"""
        pass

    @abstractmethod
    async def find_by_confirmation_code(self, code: str) -> Optional[Reservation]:
        """Find reservation by confirmation code"""
        pass

    @abstractmethod
    async def find_by_requester(self, requester_id: UUID) -> List[Reservation]:
        """Find reservations made by a requester"""
        pass

    @abstractmethod
    async def find_by_resource(
        self,
        resource_id: str,
        statuses: Optional[Iterable[ReservationStatus]] = None,
    ) -> List[Reservation]:
        """Find reservations for a resource, optionally filtered by status"""
        pass

    @abstractmethod
    async def find_overlapping(
        self,
        resource_id: str,
        date_range: DateRange,
        statuses: Iterable[ReservationStatus],
    ) -> List[Reservation]:
        """Interval-overlap query used by the availability index"""
        pass

    @abstractmethod
    async def find_by_status(self, status: ReservationStatus) -> List[Reservation]:
        """Find reservations in a status"""
        pass

    @abstractmethod
    async def find_all(self) -> List[Reservation]:
        """Find every reservation"""
        pass


class LedgerRepository(ABC):
    """Append-only repository for ledger entries"""

    @abstractmethod
    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Stage a new entry"""
        pass

    @abstractmethod
    async def find_by_reservation(self, reservation_id: UUID) -> List[LedgerEntry]:
        """All entries of a reservation, oldest first"""
        pass


class RollupRepository(ABC):
    """Repository for DailyRevenueRollup keyed by (resource_id, date)"""

    @abstractmethod
    async def upsert(self, rollup: DailyRevenueRollup) -> DailyRevenueRollup:
        """Insert or replace the rollup for its key"""
        pass

    @abstractmethod
    async def find_range(self, resource_id: str, start: date, end: date) -> List[DailyRevenueRollup]:
        """Rollups for start <= date <= end, ordered by date"""
        pass


class IdempotencyRepository(ABC):
    """Repository for client idempotency keys"""

    @abstractmethod
    async def find(self, requester_id: UUID, key: str) -> Optional[IdempotencyRecord]:
        """Find the record for a requester's key"""
        pass

    @abstractmethod
    async def record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """Stage a new key"""
        pass


class UnitOfWork(ABC):
    """Atomic unit spanning every repository.

    Used as ``async with uow:``. Leaving the block normally commits; leaving
    it with an exception rolls back. Events collected during the unit are
    published only after a successful commit.
    """

    resources: ResourceRepository
    reservations: ReservationRepository
    ledger: LedgerRepository
    rollups: RollupRepository
    idempotency: IdempotencyRepository

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()

    @abstractmethod
    async def lock_resource(self, resource_id: str) -> None:
        """Hold the resource's reservation-set lock until the unit ends"""
        pass

    @abstractmethod
    def collect(self, event: DomainEvent) -> None:
        """Queue an event for publication after commit"""
        pass

    @abstractmethod
    async def commit(self) -> None:
        """Commit the unit"""
        pass

    @abstractmethod
    async def rollback(self) -> None:
        """Discard the unit"""
        pass
