"""Reservation lifecycle state machine.

The transition table below is the only source of truth for which status
changes are legal. Entities call ``ensure_transition`` before mutating, so a
rejected transition never touches the reservation.
"""
from typing import Dict, FrozenSet

from domain.enums import ReservationStatus
from domain.errors import StateError

TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset({
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
    }),
    ReservationStatus.CONFIRMED: frozenset({
        ReservationStatus.CHECKED_IN,
        ReservationStatus.CANCELLED,
        ReservationStatus.NO_SHOW,
    }),
    ReservationStatus.CHECKED_IN: frozenset({
        ReservationStatus.CHECKED_OUT,
    }),
    ReservationStatus.CHECKED_OUT: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.NO_SHOW: frozenset(),
}

# Statuses that hold the room. PENDING holds it while payment settles.
OCCUPYING_STATUSES: FrozenSet[ReservationStatus] = frozenset({
    ReservationStatus.PENDING,
    ReservationStatus.CONFIRMED,
    ReservationStatus.CHECKED_IN,
})

TERMINAL_STATUSES: FrozenSet[ReservationStatus] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

CANCELLABLE_STATUSES: FrozenSet[ReservationStatus] = frozenset(
    status for status, targets in TRANSITIONS.items()
    if ReservationStatus.CANCELLED in targets
)


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    """Raise StateError unless current -> target is an edge of the machine"""
    if not can_transition(current, target):
        raise StateError(
            f"Cannot move reservation from {current.value} to {target.value}",
            current_status=current.value,
            target_status=target.value,
        )


def occupies(status: ReservationStatus) -> bool:
    return status in OCCUPYING_STATUSES
