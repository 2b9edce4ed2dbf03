from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime


class Location(BaseModel):
    lat: float
    lon: float


class JourneyCreate(BaseModel):
    origin: Location
    destination: Location
    pickup_address: Optional[str] = Field(None, max_length=500)
    dropoff_address: Optional[str] = Field(None, max_length=500)
    preferred_vehicle_type: Optional[str] = Field(None, max_length=50)
    is_restricted: bool = False
    is_shareable: bool = False
    seats: int = Field(1, ge=1, le=4)
    scheduled_at: Optional[datetime] = None

    @field_validator('preferred_vehicle_type')
    @classmethod
    def normalize_vehicle_type(cls, v):
        return v.strip().lower() if v else None


class JourneyOut(BaseModel):
    id: int
    passenger_id: int
    origin: Location
    destination: Location
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    preferred_vehicle_type: Optional[str] = None
    is_restricted: bool
    is_shareable: bool
    seats: int
    booked_seats: int
    scheduled_at: Optional[datetime] = None
    status: str
    driver_id: Optional[int] = None
    agreed_fare: Optional[float] = None

    @classmethod
    def from_row(cls, journey: dict) -> "JourneyOut":
        return cls(
            origin=Location(lat=journey["origin_lat"], lon=journey["origin_lon"]),
            destination=Location(lat=journey["destination_lat"], lon=journey["destination_lon"]),
            **{k: journey[k] for k in cls.model_fields if k not in ("origin", "destination")},
        )


class SuggestedBid(BaseModel):
    min_bid: float
    recommended_bid: float
    max_bid: float
    currency: str


class MatchOut(BaseModel):
    driver_id: int
    name: Optional[str] = None
    vehicle_type: Optional[str] = None
    rating: Optional[float] = None
    distance_km: float
    score: float
    breakdown: dict


class BidCreate(BaseModel):
    amount: float
    message: Optional[str] = Field(None, max_length=500)
    expires_at: Optional[datetime] = None
    ttl_sec: Optional[int] = None


class BidOut(BaseModel):
    id: int
    journey_id: int
    driver_id: int
    amount: float
    message: Optional[str] = None
    status: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class BidAccepted(BaseModel):
    bid: BidOut
    journey_id: int
    ride_id: int
    merged: bool


class LegOut(BaseModel):
    passenger_id: int
    journey_id: int
    seats_booked: int
    fare_contribution: float
    status: str


class RideOut(BaseModel):
    id: int
    journey_id: int
    bid_id: int
    passenger_id: int
    driver_id: int
    ride_type: str
    capacity: int
    fare: float
    final_fare: Optional[float] = None
    distance_meters: Optional[float] = None
    pickup: Optional[dict] = None
    dropoff: Optional[dict] = None
    status: str
    paid: bool
    tip_amount: float = 0.0
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    legs: List[LegOut] = []


class EndRideRequest(BaseModel):
    final_fare: Optional[float] = None
    distance_meters: Optional[float] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class LegStatusUpdate(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def normalize_status(cls, v):
        return v.strip().lower()


class SettleRequest(BaseModel):
    voucher_code: Optional[str] = Field(None, max_length=50)


class TipRequest(BaseModel):
    amount: float


class PaymentOut(BaseModel):
    id: int
    ride_id: int
    payer_id: int
    payee_id: int
    payment_type: str
    amount: float
    discount_amount: float
    charged_amount: float
    commission: float
    driver_earnings: float
    currency: Optional[str] = None
    status: str
    provider: Optional[str] = None
    provider_reference: Optional[str] = None
    adjusts_payment_id: Optional[int] = None
    created_at: Optional[datetime] = None


class VoucherCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=255)
    discount_type: str
    discount_value: float
    max_discount_amount: Optional[float] = None
    min_ride_amount: float = 0.0
    expires_at: datetime
    usage_limit_per_user: int = 1
    total_usage_limit: Optional[int] = None

    @field_validator('code')
    @classmethod
    def upper_code(cls, v):
        return v.strip().upper()


class VoucherOut(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    max_discount_amount: Optional[float] = None
    min_ride_amount: float
    expires_at: datetime
    usage_limit_per_user: int
    total_usage_limit: Optional[int] = None
    is_active: bool


class VoucherGrant(BaseModel):
    user_id: int = Field(..., gt=0)


class UserVoucherOut(BaseModel):
    id: int
    user_id: int
    voucher_id: int
    status: str
    assigned_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None
    ride_id: Optional[int] = None
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    max_discount_amount: Optional[float] = None
    expires_at: Optional[datetime] = None


class VoucherValidate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    amount: float = Field(..., ge=0)


class VoucherQuote(BaseModel):
    code: str
    discount_amount: float
    final_amount: float


class DriverRegister(BaseModel):
    id: int = Field(..., gt=0)
    name: Optional[str] = Field(None, max_length=200)
    vehicle_type: Optional[str] = Field(None, max_length=50)
    rating: float = Field(0.0, ge=0, le=5)
    gender: Optional[str] = Field(None, max_length=20)
    accepts_restricted_rides: bool = False
    available: bool = True

    @field_validator('vehicle_type')
    @classmethod
    def normalize_vehicle_type(cls, v):
        return v.strip().lower() if v else None


class AvailabilityUpdate(BaseModel):
    available: bool
