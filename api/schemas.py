"""API Schemas - Request and Response DTOs"""
from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID
from typing import Dict, List, Optional

from domain.enums import PaymentMethod, UserRole


# ============================================================================
# RESERVATION SCHEMAS
# ============================================================================

class CreateReservationRequest(BaseModel):
    """Create reservation request DTO.

    Carries no price fields: the total is always computed server-side.
    """
    model_config = ConfigDict(extra="forbid")

    resource_id: str
    check_in: date
    check_out: date
    guest_count: int = Field(ge=1, le=20)
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    promo_code: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)


class ConfirmReservationRequest(BaseModel):
    """Confirm reservation request DTO"""
    payment_reference: Optional[str] = None


class CancelReservationRequest(BaseModel):
    """Cancel reservation request DTO"""
    reason: str = "Guest changed plans"


class NightlyChargeResponse(BaseModel):
    """Nightly charge response DTO"""
    night: date
    rate: Decimal
    multiplier: Decimal
    amount: Decimal


class PricingResponse(BaseModel):
    """Pricing snapshot response DTO"""
    nights: int
    nightly_rate: Decimal
    base_amount: Decimal
    taxes: Decimal
    service_fee: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    promo_code: Optional[str] = None
    nightly_breakdown: List[NightlyChargeResponse] = []


class CancellationResponse(BaseModel):
    """Cancellation record response DTO"""
    reason: str
    refund_amount: Decimal
    cancellation_fee: Decimal
    fee_rate: Decimal
    hours_until_check_in: float
    cancelled_by: str


class ReservationResponse(BaseModel):
    """Reservation response DTO"""
    reservation_id: UUID
    confirmation_code: str
    resource_id: str
    requester_id: UUID
    check_in: date
    check_out: date
    nights: int
    guest_count: int
    status: str
    payment_method: str
    payment_status: str
    pricing: PricingResponse
    cancellation: Optional[CancellationResponse] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    modified_at: datetime
    version: int


class CancelReservationResponse(BaseModel):
    """Cancel reservation response DTO"""
    reservation: ReservationResponse
    refund_amount: Decimal
    cancellation_fee: Decimal
    fee_rate: Decimal
    currency: str


class LedgerEntryResponse(BaseModel):
    """Ledger entry response DTO"""
    model_config = ConfigDict(from_attributes=True)

    entry_id: UUID
    reservation_id: UUID
    resource_id: str
    entry_type: str
    status: str
    amount: Decimal
    currency: str
    references_entry_id: Optional[UUID] = None
    description: str
    created_at: datetime


class LedgerResponse(BaseModel):
    """Ledger of one reservation"""
    reservation_id: UUID
    entries: List[LedgerEntryResponse]
    recognized_revenue: Decimal


# ============================================================================
# RESOURCE SCHEMAS
# ============================================================================

class SurchargeRulesRequest(BaseModel):
    """Surcharge rules DTO"""
    weekend_multiplier: Decimal = Field(Decimal("1"), gt=0)
    holiday_multiplier: Decimal = Field(Decimal("1"), gt=0)
    holidays: List[date] = []


class RegisterResourceRequest(BaseModel):
    """Register resource request DTO"""
    name: str = ""
    capacity: int = Field(ge=1)
    nightly_rate: Decimal = Field(gt=0)
    currency: str = "VND"
    surcharge_rules: SurchargeRulesRequest = SurchargeRulesRequest()
    is_active: bool = True


class ResourceResponse(BaseModel):
    """Resource response DTO"""
    resource_id: str
    name: str
    capacity: int
    nightly_rate: Decimal
    currency: str
    weekend_multiplier: Decimal
    holiday_multiplier: Decimal
    holidays: List[date]
    is_active: bool


class QuoteRequest(BaseModel):
    """Price quote request DTO"""
    check_in: date
    check_out: date
    guest_count: int = Field(ge=1, le=20)
    promo_code: Optional[str] = None


class AvailabilityResponse(BaseModel):
    """Availability response DTO"""
    resource_id: str
    check_in: date
    check_out: date
    available: bool


# ============================================================================
# REVENUE SCHEMAS
# ============================================================================

class RollupRequest(BaseModel):
    """Recompute rollups request DTO"""
    start_date: date
    end_date: date


class DailyRevenueResponse(BaseModel):
    """Daily revenue rollup response DTO"""
    resource_id: str
    date: date
    currency: str
    total_revenue: Decimal
    confirmed_revenue: Decimal
    completed_revenue: Decimal
    pending_revenue: Decimal
    total_bookings: int
    bookings_by_status: Dict[str, int]
    occupied: bool
    occupancy_rate: Decimal
    average_booking_value: Decimal
    cancellation_rate: Decimal


class RevenueReportResponse(BaseModel):
    """Revenue report response DTO"""
    resource_id: str
    start_date: date
    end_date: date
    currency: str
    days: List[DailyRevenueResponse]
    total_revenue: Decimal
    total_bookings: int
    occupied_nights: int
    average_occupancy_rate: Decimal
    average_cancellation_rate: Decimal


class ReservationOverviewResponse(BaseModel):
    """Reservation status overview response DTO"""
    resource_id: Optional[str] = None
    total_reservations: int
    by_status: Dict[str, int]
    active_reservations: int
    booked_value: Decimal
    cancellation_rate: Decimal


class SweepResponse(BaseModel):
    """Pending sweep response DTO"""
    expired_count: int
    expired_reservation_ids: List[UUID]


# ============================================================================
# AUTH SCHEMAS
# ============================================================================

class Token(BaseModel):
    """Token response DTO"""
    access_token: str
    token_type: str


class TokenData(BaseModel):
    """Token payload DTO"""
    username: Optional[str] = None


class UserResponse(BaseModel):
    """User response DTO"""
    user_id: UUID
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: UserRole
    disabled: bool
