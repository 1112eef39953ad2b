"""Domain Events emitted by the reservation core"""
from datetime import datetime
from typing import Any, Dict
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

RESERVATION_CREATED = "reservation.created"
RESERVATION_CONFIRMED = "reservation.confirmed"
RESERVATION_CANCELLED = "reservation.cancelled"
RESERVATION_NO_SHOW = "reservation.no_show"
GUEST_CHECKED_IN = "guest.checked_in"
GUEST_CHECKED_OUT = "guest.checked_out"

EVENT_TYPES = (
    RESERVATION_CREATED, RESERVATION_CONFIRMED, RESERVATION_CANCELLED,
    RESERVATION_NO_SHOW, GUEST_CHECKED_IN, GUEST_CHECKED_OUT,
)


class DomainEvent(BaseModel):
    """Something that happened to a reservation, for audit/analytics subscribers"""
    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: str
    reservation_id: UUID
    resource_id: str
    occurred_at: datetime
    payload: Dict[str, Any] = {}


def reservation_event(event_type: str, reservation, occurred_at: datetime,
                      **payload: Any) -> DomainEvent:
    return DomainEvent(
        event_type=event_type,
        reservation_id=reservation.reservation_id,
        resource_id=reservation.resource_id,
        occurred_at=occurred_at,
        payload={"status": reservation.status.value, **payload},
    )
