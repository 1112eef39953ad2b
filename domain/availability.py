"""Availability Index - interval-overlap checks against occupying reservations"""
from datetime import date, timedelta
from typing import List, Optional
from uuid import UUID

from domain.entities import Reservation
from domain.lifecycle import OCCUPYING_STATUSES
from domain.repositories import UnitOfWork
from domain.value_objects import DateRange


class AvailabilityIndex:
    """Answers "is resource R free for interval I?".

    The index reads through the unit of work it is given. Inside the
    reservation engine that is the open transaction, so the answer reflects
    staged writes as well as committed ones. Outside a transaction the answer
    is advisory only.
    """

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def find_conflicts(
        self,
        resource_id: str,
        date_range: DateRange,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> List[Reservation]:
        overlapping = await self.uow.reservations.find_overlapping(
            resource_id, date_range, OCCUPYING_STATUSES
        )
        return [
            r for r in overlapping
            if r.reservation_id != exclude_reservation_id
        ]

    async def is_available(
        self,
        resource_id: str,
        date_range: DateRange,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> bool:
        conflicts = await self.find_conflicts(resource_id, date_range, exclude_reservation_id)
        return not conflicts

    async def current_reservation(self, resource_id: str, on_date: date) -> Optional[Reservation]:
        """The occupying reservation covering the night of ``on_date``, if any"""
        night = DateRange(check_in=on_date, check_out=on_date + timedelta(days=1))
        conflicts = await self.find_conflicts(resource_id, night)
        if not conflicts:
            return None
        # At most one can exist while the exclusion constraint holds
        return max(conflicts, key=lambda r: r.created_at)
