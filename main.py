import asyncio
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.security import OAuth2PasswordRequestForm

from api.schemas import (
    # Reservation
    CreateReservationRequest, ConfirmReservationRequest, CancelReservationRequest,
    ReservationResponse, CancelReservationResponse, PricingResponse, NightlyChargeResponse,
    CancellationResponse, LedgerEntryResponse, LedgerResponse,
    # Resource
    RegisterResourceRequest, ResourceResponse, QuoteRequest, AvailabilityResponse,
    # Revenue
    RollupRequest, DailyRevenueResponse, RevenueReportResponse, SweepResponse,
    ReservationOverviewResponse,
    # Auth
    Token, UserResponse
)

from api.dependencies import (
    get_current_active_user, get_current_staff_user, fake_users_db, get_user,
)
from infrastructure.security import verify_password, create_access_token
from domain.auth import User

from application.services import (
    PendingReservationSweeper, ReservationService, ResourceCatalogService, RevenueService,
    recognized_revenue,
)
from config.logging import configure_logging, get_logger
from config.settings import settings
from domain.cancellation import CancellationPolicy
from domain.entities import Resource
from domain.enums import PaymentMethod, PaymentStatus, ReservationStatus
from domain.errors import ReservationError
from domain.events import EVENT_TYPES
from domain.pricing import PricingCalculator
from domain.value_objects import SurchargeRules
from infrastructure.event_bus import EventBus, log_domain_event
from infrastructure.repositories.in_memory_repositories import InMemoryStore

logger = get_logger(__name__)

# Initialize persistence and collaborators
event_bus = EventBus()
store = InMemoryStore(
    lock_timeout_seconds=settings.persistence.lock_timeout_seconds,
    event_bus=event_bus,
)
pricing_calculator = PricingCalculator.from_settings(settings.pricing)
cancellation_policy = CancellationPolicy(
    tiers=settings.reservation.cancellation_tiers,
    decimal_places=settings.pricing.amount_decimal_places,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    for event_type in EVENT_TYPES:
        event_bus.subscribe(event_type, log_domain_event)
    logger.info("Reservation API started", environment=settings.environment)

    sweeper_task = asyncio.create_task(
        get_sweeper().run_forever(settings.reservation.sweep_interval_seconds)
    )
    app.state.sweeper_task = sweeper_task
    try:
        yield
    finally:
        sweeper_task.cancel()
        await asyncio.gather(sweeper_task, return_exceptions=True)
        await event_bus.drain(timeout=5)
        logger.info("Reservation API stopped")


app = FastAPI(
    title="Hotel Reservation API",
    description="Reservation core: availability, pricing, lifecycle, cancellation and revenue",
    version="1.0.0",
    lifespan=lifespan,
)


# Dependency injection
def get_reservation_service() -> ReservationService:
    return ReservationService(store.unit_of_work, pricing_calculator, cancellation_policy)

def get_resource_service() -> ResourceCatalogService:
    return ResourceCatalogService(store.unit_of_work)

def get_revenue_service() -> RevenueService:
    return RevenueService(store.unit_of_work)

def get_sweeper() -> PendingReservationSweeper:
    return PendingReservationSweeper(store.unit_of_work, cancellation_policy)


# Error kind -> HTTP status
ERROR_STATUS_CODES = {
    "validation_error": 400,
    "not_found": 404,
    "conflict": 409,
    "state_error": 409,
    "policy_violation": 422,
    "persistence_error": 503,
    "pricing_error": 500,
}

def _to_http_exception(error: ReservationError) -> HTTPException:
    status_code = ERROR_STATUS_CODES.get(error.kind, 500)
    headers = {"Retry-After": "1"} if error.retryable else None
    return HTTPException(status_code=status_code, detail=error.to_dict(), headers=headers)

def _ensure_can_access(reservation, current_user: User) -> None:
    """Guests only see their own reservations; staff see all"""
    if not current_user.is_staff() and reservation.requester_id != current_user.user_id:
        raise HTTPException(status_code=403, detail="Not allowed to access this reservation")

# ============================================================================
# HEALTH & ENUM REFERENCE ENDPOINTS
# ============================================================================

@app.get("/api/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "message": "API is running", "store": store.stats.model_dump()}

@app.get("/api/enums/reservation-status", tags=["Enum Reference"])
async def get_reservation_statuses():
    """Get all ReservationStatus enum values"""
    return {
        "values": [item.name for item in ReservationStatus],
        "description": "Reservation status values: PENDING, CONFIRMED, CHECKED_IN, CHECKED_OUT, CANCELLED, NO_SHOW"
    }

@app.get("/api/enums/payment-status", tags=["Enum Reference"])
async def get_payment_statuses():
    """Get all PaymentStatus enum values"""
    return {
        "values": [item.name for item in PaymentStatus],
        "description": "Payment status values: PENDING, COMPLETED, PARTIALLY_REFUNDED, REFUNDED, VOIDED"
    }

@app.get("/api/enums/payment-method", tags=["Enum Reference"])
async def get_payment_methods():
    """Get all PaymentMethod enum values"""
    return {
        "values": [item.name for item in PaymentMethod],
        "description": "Payment method values: CASH, CREDIT_CARD, DEBIT_CARD, BANK_TRANSFER, E_WALLET"
    }

# ============================================================================
# AUTH ENDPOINTS
# ============================================================================

@app.post("/token", response_model=Token, tags=["Auth"])
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    user = get_user(fake_users_db, form_data.username)
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=401,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(data={"sub": user.username, "role": user.role.value})
    return {"access_token": access_token, "token_type": "bearer"}

@app.get("/users/me", response_model=UserResponse, tags=["Auth"])
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return current_user

# ============================================================================
# RESOURCE ENDPOINTS
# ============================================================================

@app.put("/api/resources/{resource_id}", response_model=ResourceResponse, tags=["Resources"])
async def register_resource(
    resource_id: str,
    request: RegisterResourceRequest,
    service: ResourceCatalogService = Depends(get_resource_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Register or replace a resource (hotel-management write path)"""
    resource = Resource(
        resource_id=resource_id,
        name=request.name,
        capacity=request.capacity,
        nightly_rate=request.nightly_rate,
        currency=request.currency,
        surcharge_rules=SurchargeRules(
            weekend_multiplier=request.surcharge_rules.weekend_multiplier,
            holiday_multiplier=request.surcharge_rules.holiday_multiplier,
            holidays=frozenset(request.surcharge_rules.holidays),
        ),
        is_active=request.is_active,
    )
    resource = await service.register_resource(resource)
    return _resource_to_response(resource)

@app.get("/api/resources", response_model=List[ResourceResponse], tags=["Resources"])
async def list_resources(
    service: ResourceCatalogService = Depends(get_resource_service),
    current_user: User = Depends(get_current_active_user)
):
    """List all resources"""
    resources = await service.list_resources()
    return [_resource_to_response(r) for r in resources]

@app.get("/api/resources/{resource_id}", response_model=ResourceResponse, tags=["Resources"])
async def get_resource(
    resource_id: str,
    service: ResourceCatalogService = Depends(get_resource_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get resource by ID"""
    try:
        return _resource_to_response(await service.get_resource(resource_id))
    except ReservationError as e:
        raise _to_http_exception(e)

@app.post("/api/resources/{resource_id}/quote", response_model=PricingResponse, tags=["Resources"])
async def quote_price(
    resource_id: str,
    request: QuoteRequest,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Preview the server-side price of a stay"""
    try:
        pricing = await service.quote(
            resource_id=resource_id,
            check_in=request.check_in,
            check_out=request.check_out,
            guest_count=request.guest_count,
            promo_code=request.promo_code
        )
        return _pricing_to_response(pricing)
    except ReservationError as e:
        raise _to_http_exception(e)

@app.get("/api/resources/{resource_id}/availability", response_model=AvailabilityResponse, tags=["Resources"])
async def check_availability(
    resource_id: str,
    check_in: date,
    check_out: date,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Advisory availability check for an interval"""
    try:
        available = await service.is_available(resource_id, check_in, check_out)
        return AvailabilityResponse(
            resource_id=resource_id, check_in=check_in, check_out=check_out, available=available
        )
    except ReservationError as e:
        raise _to_http_exception(e)

@app.get("/api/resources/{resource_id}/current-reservation", response_model=Optional[ReservationResponse], tags=["Resources"])
async def get_current_reservation(
    resource_id: str,
    on_date: Optional[date] = None,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Reservation occupying the resource on a date (default today)"""
    try:
        reservation = await service.current_reservation(resource_id, on_date)
        return _reservation_to_response(reservation) if reservation else None
    except ReservationError as e:
        raise _to_http_exception(e)

# ============================================================================
# RESERVATION ENDPOINTS
# ============================================================================

@app.post("/api/reservations", response_model=ReservationResponse, status_code=201, tags=["Reservations"])
async def create_reservation(
    request: CreateReservationRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Create new PENDING reservation for the authenticated requester"""
    try:
        reservation = await service.create_reservation(
            resource_id=request.resource_id,
            requester_id=current_user.user_id,
            check_in=request.check_in,
            check_out=request.check_out,
            guest_count=request.guest_count,
            payment_method=request.payment_method,
            promo_code=request.promo_code,
            idempotency_key=idempotency_key or request.idempotency_key
        )
        return _reservation_to_response(reservation)
    except ReservationError as e:
        raise _to_http_exception(e)

@app.get("/api/reservations", response_model=List[ReservationResponse], tags=["Reservations"])
async def list_reservations(
    resource_id: Optional[str] = Query(None),
    status: Optional[ReservationStatus] = Query(None),
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """List reservations, optionally filtered by resource and status (staff only)"""
    try:
        reservations = await service.list_reservations(resource_id=resource_id, status=status)
    except ReservationError as e:
        raise _to_http_exception(e)
    return [_reservation_to_response(r) for r in reservations]

@app.get("/api/reservations/overview", response_model=ReservationOverviewResponse, tags=["Reservations"])
async def get_reservation_overview(
    resource_id: Optional[str] = Query(None),
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Reservation counts per status and booked value (staff only)"""
    try:
        overview = await service.reservation_overview(resource_id=resource_id)
    except ReservationError as e:
        raise _to_http_exception(e)
    return ReservationOverviewResponse(**overview.model_dump())

@app.get("/api/reservations/mine", response_model=List[ReservationResponse], tags=["Reservations"])
async def get_my_reservations(
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get all reservations made by the authenticated requester"""
    reservations = await service.get_reservations_by_requester(current_user.user_id)
    return [_reservation_to_response(r) for r in reservations]

@app.get("/api/reservations/code/{confirmation_code}", response_model=ReservationResponse, tags=["Reservations"])
async def get_reservation_by_code(
    confirmation_code: str,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get reservation by confirmation code"""
    try:
        reservation = await service.get_reservation_by_confirmation_code(confirmation_code)
    except ReservationError as e:
        raise _to_http_exception(e)
    _ensure_can_access(reservation, current_user)
    return _reservation_to_response(reservation)

@app.get("/api/reservations/{reservation_id}", response_model=ReservationResponse, tags=["Reservations"])
async def get_reservation(
    reservation_id: UUID,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get reservation by ID"""
    try:
        reservation = await service.get_reservation(reservation_id)
    except ReservationError as e:
        raise _to_http_exception(e)
    _ensure_can_access(reservation, current_user)
    return _reservation_to_response(reservation)

@app.post("/api/reservations/{reservation_id}/confirm", response_model=ReservationResponse, tags=["Reservations"])
async def confirm_reservation(
    reservation_id: UUID,
    request: ConfirmReservationRequest,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Confirm reservation after payment completed"""
    try:
        reservation = await service.confirm_reservation(
            reservation_id=reservation_id,
            payment_reference=request.payment_reference
        )
        return _reservation_to_response(reservation)
    except ReservationError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/check-in", response_model=ReservationResponse, tags=["Reservations"])
async def check_in_guest(
    reservation_id: UUID,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Check in guest"""
    try:
        reservation = await service.check_in(reservation_id)
        return _reservation_to_response(reservation)
    except ReservationError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/check-out", response_model=ReservationResponse, tags=["Reservations"])
async def check_out_guest(
    reservation_id: UUID,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Check out guest"""
    try:
        reservation = await service.check_out(reservation_id)
        return _reservation_to_response(reservation)
    except ReservationError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/no-show", response_model=ReservationResponse, tags=["Reservations"])
async def mark_no_show(
    reservation_id: UUID,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Mark guest as no-show"""
    try:
        reservation = await service.mark_no_show(reservation_id)
        return _reservation_to_response(reservation)
    except ReservationError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/cancel", response_model=CancelReservationResponse, tags=["Reservations"])
async def cancel_reservation(
    reservation_id: UUID,
    request: CancelReservationRequest,
    service: ReservationService = Depends(get_reservation_service),
    current_user: User = Depends(get_current_active_user)
):
    """Cancel reservation with the tiered refund policy"""
    try:
        reservation = await service.get_reservation(reservation_id)
        _ensure_can_access(reservation, current_user)
        outcome = await service.cancel_reservation(
            reservation_id=reservation_id,
            reason=request.reason,
            cancelled_by=current_user.role.value
        )
        return CancelReservationResponse(
            reservation=_reservation_to_response(outcome.reservation),
            refund_amount=outcome.refund_amount,
            cancellation_fee=outcome.cancellation_fee,
            fee_rate=outcome.fee_rate,
            currency=outcome.reservation.pricing.currency
        )
    except ReservationError as e:
        raise _to_http_exception(e)

@app.get("/api/reservations/{reservation_id}/ledger", response_model=LedgerResponse, tags=["Reservations"])
async def get_reservation_ledger(
    reservation_id: UUID,
    service: RevenueService = Depends(get_revenue_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Get the append-only ledger of a reservation"""
    try:
        entries = await service.ledger_for(reservation_id)
        return LedgerResponse(
            reservation_id=reservation_id,
            entries=[_ledger_entry_to_response(e) for e in entries],
            recognized_revenue=recognized_revenue(entries)
        )
    except ReservationError as e:
        raise _to_http_exception(e)

# ============================================================================
# REVENUE & MAINTENANCE ENDPOINTS
# ============================================================================

@app.post("/api/resources/{resource_id}/rollups", response_model=List[DailyRevenueResponse], tags=["Revenue"])
async def recompute_rollups(
    resource_id: str,
    request: RollupRequest,
    service: RevenueService = Depends(get_revenue_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Recompute daily revenue rollups for a date range (inclusive)"""
    try:
        rollups = await service.recompute_range(resource_id, request.start_date, request.end_date)
        return [_rollup_to_response(r) for r in rollups]
    except ReservationError as e:
        raise _to_http_exception(e)

@app.get("/api/resources/{resource_id}/revenue", response_model=RevenueReportResponse, tags=["Revenue"])
async def get_revenue_report(
    resource_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: RevenueService = Depends(get_revenue_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Revenue report from stored rollups, with totals"""
    try:
        report = await service.revenue_report(resource_id, start_date, end_date)
        return RevenueReportResponse(
            resource_id=report.resource_id,
            start_date=report.start_date,
            end_date=report.end_date,
            currency=report.currency,
            days=[_rollup_to_response(d) for d in report.days],
            total_revenue=report.total_revenue,
            total_bookings=report.total_bookings,
            occupied_nights=report.occupied_nights,
            average_occupancy_rate=report.average_occupancy_rate,
            average_cancellation_rate=report.average_cancellation_rate
        )
    except ReservationError as e:
        raise _to_http_exception(e)

@app.post("/api/maintenance/expire-pending", response_model=SweepResponse, tags=["Maintenance"])
async def expire_pending_reservations(
    sweeper: PendingReservationSweeper = Depends(get_sweeper),
    current_user: User = Depends(get_current_staff_user)
):
    """Cancel PENDING reservations whose payment window has passed"""
    expired = await sweeper.sweep()
    return SweepResponse(expired_count=len(expired), expired_reservation_ids=expired)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _pricing_to_response(pricing) -> PricingResponse:
    """Convert PricingSnapshot to PricingResponse"""
    return PricingResponse(
        nights=pricing.nights,
        nightly_rate=pricing.nightly_rate,
        base_amount=pricing.base_amount,
        taxes=pricing.taxes,
        service_fee=pricing.service_fee,
        discount=pricing.discount,
        total=pricing.total,
        currency=pricing.currency,
        promo_code=pricing.promo_code,
        nightly_breakdown=[
            NightlyChargeResponse(
                night=charge.night,
                rate=charge.rate,
                multiplier=charge.multiplier,
                amount=charge.amount
            )
            for charge in pricing.nightly_breakdown
        ]
    )

def _reservation_to_response(reservation) -> ReservationResponse:
    """Convert Reservation entity to ReservationResponse"""
    cancellation = None
    if reservation.cancellation is not None:
        cancellation = CancellationResponse(**reservation.cancellation.model_dump())
    return ReservationResponse(
        reservation_id=reservation.reservation_id,
        confirmation_code=reservation.confirmation_code,
        resource_id=reservation.resource_id,
        requester_id=reservation.requester_id,
        check_in=reservation.date_range.check_in,
        check_out=reservation.date_range.check_out,
        nights=reservation.get_nights(),
        guest_count=reservation.guest_count,
        status=reservation.status.value,
        payment_method=reservation.payment_method.value,
        payment_status=reservation.payment_status.value,
        pricing=_pricing_to_response(reservation.pricing),
        cancellation=cancellation,
        created_at=reservation.created_at,
        confirmed_at=reservation.confirmed_at,
        checked_in_at=reservation.checked_in_at,
        checked_out_at=reservation.checked_out_at,
        cancelled_at=reservation.cancelled_at,
        no_show_at=reservation.no_show_at,
        modified_at=reservation.modified_at,
        version=reservation.version
    )

def _resource_to_response(resource) -> ResourceResponse:
    """Convert Resource entity to ResourceResponse"""
    return ResourceResponse(
        resource_id=resource.resource_id,
        name=resource.name,
        capacity=resource.capacity,
        nightly_rate=resource.nightly_rate,
        currency=resource.currency,
        weekend_multiplier=resource.surcharge_rules.weekend_multiplier,
        holiday_multiplier=resource.surcharge_rules.holiday_multiplier,
        holidays=sorted(resource.surcharge_rules.holidays),
        is_active=resource.is_active
    )

def _ledger_entry_to_response(entry) -> LedgerEntryResponse:
    """Convert LedgerEntry entity to LedgerEntryResponse"""
    return LedgerEntryResponse(
        entry_id=entry.entry_id,
        reservation_id=entry.reservation_id,
        resource_id=entry.resource_id,
        entry_type=entry.entry_type.value,
        status=entry.status.value,
        amount=entry.amount,
        currency=entry.currency,
        references_entry_id=entry.references_entry_id,
        description=entry.description,
        created_at=entry.created_at
    )

def _rollup_to_response(rollup) -> DailyRevenueResponse:
    """Convert DailyRevenueRollup to DailyRevenueResponse"""
    return DailyRevenueResponse(
        resource_id=rollup.resource_id,
        date=rollup.date,
        currency=rollup.currency,
        total_revenue=rollup.total_revenue,
        confirmed_revenue=rollup.confirmed_revenue,
        completed_revenue=rollup.completed_revenue,
        pending_revenue=rollup.pending_revenue,
        total_bookings=rollup.total_bookings,
        bookings_by_status={status.value: count for status, count in rollup.bookings_by_status.items()},
        occupied=rollup.occupied,
        occupancy_rate=rollup.occupancy_rate,
        average_booking_value=rollup.average_booking_value,
        cancellation_rate=rollup.cancellation_rate
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
