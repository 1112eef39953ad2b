"""Domain Errors - machine-readable error taxonomy for the reservation core"""
from typing import Any, Dict, Optional


class ReservationError(Exception):
    """Base class for every error the core surfaces to callers.

    ``kind`` is the coarse, machine-readable category used by transports to
    pick a status code. ``code`` names the specific failure. ``retryable``
    tells the caller whether repeating the same request can succeed.
    """

    kind = "reservation_error"
    code = "RESERVATION_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()},
        }


# ==================== VALIDATION ====================
class ValidationError(ReservationError):
    kind = "validation_error"
    code = "VALIDATION_ERROR"


class InvalidInterval(ValidationError):
    code = "INVALID_INTERVAL"


class CapacityExceeded(ValidationError):
    code = "CAPACITY_EXCEEDED"


# ==================== NOT FOUND ====================
class NotFoundError(ReservationError):
    kind = "not_found"
    code = "NOT_FOUND"


class ResourceNotFound(NotFoundError):
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource_id: str):
        super().__init__(f"Resource {resource_id} not found", resource_id=resource_id)


class ReservationNotFound(NotFoundError):
    code = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: Any):
        super().__init__(
            f"Reservation {reservation_id} not found", reservation_id=reservation_id
        )


# ==================== CONFLICT ====================
class ConflictError(ReservationError):
    kind = "conflict"
    code = "CONFLICT"


class IntervalConflict(ConflictError):
    code = "INTERVAL_CONFLICT"

    def __init__(self, resource_id: str, check_in: Any, check_out: Any,
                 conflicting_reservation_id: Optional[Any] = None):
        super().__init__(
            f"Resource {resource_id} is already reserved between {check_in} and {check_out}",
            resource_id=resource_id,
            check_in=check_in,
            check_out=check_out,
            conflicting_reservation_id=conflicting_reservation_id,
        )


class ResourceInactive(ConflictError):
    code = "RESOURCE_INACTIVE"

    def __init__(self, resource_id: str):
        super().__init__(f"Resource {resource_id} is not accepting reservations",
                         resource_id=resource_id)


class IdempotencyKeyReused(ConflictError):
    code = "IDEMPOTENCY_KEY_REUSED"


class LedgerConstraintViolation(ConflictError):
    code = "LEDGER_CONSTRAINT_VIOLATION"


# ==================== LIFECYCLE / POLICY ====================
class StateError(ReservationError):
    kind = "state_error"
    code = "ILLEGAL_TRANSITION"


class PolicyViolation(ReservationError):
    kind = "policy_violation"
    code = "POLICY_VIOLATION"


class RiskRejected(PolicyViolation):
    code = "RISK_REJECTED"


# ==================== INFRASTRUCTURE ====================
class PersistenceError(ReservationError):
    kind = "persistence_error"
    code = "PERSISTENCE_ERROR"
    retryable = True


class PersistenceTimeout(PersistenceError):
    code = "PERSISTENCE_TIMEOUT"


class ConcurrentModification(PersistenceError):
    code = "CONCURRENT_MODIFICATION"


class PricingError(ReservationError):
    kind = "pricing_error"
    code = "PRICING_MISCONFIGURED"
