from datetime import datetime, timezone
from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    Boolean,
    Text,
    MetaData,
    UniqueConstraint,
)


# Status constants
JOURNEY_OPEN = "open"
JOURNEY_MATCHED = "matched"
JOURNEY_COMPLETED = "completed"
JOURNEY_CANCELLED = "cancelled"

BID_PENDING = "pending"
BID_ACCEPTED = "accepted"
BID_REJECTED = "rejected"
BID_EXPIRED = "expired"

RIDE_REQUESTED = "requested"
RIDE_ACCEPTED = "accepted"
RIDE_DRIVER_ARRIVED = "driver_arrived"
RIDE_ONGOING = "ongoing"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED_BY_PASSENGER = "cancelled_by_passenger"
RIDE_CANCELLED_BY_DRIVER = "cancelled_by_driver"
RIDE_PASSENGER_NO_SHOW = "passenger_no_show"
RIDE_DRIVER_NO_SHOW = "driver_no_show"

RIDE_OPEN_STATUSES = (RIDE_REQUESTED, RIDE_ACCEPTED, RIDE_DRIVER_ARRIVED)

RIDE_PRIVATE = "private"
RIDE_SHARED = "shared"

LEG_WAITING = "waiting"
LEG_ON_BOARD = "on_board"
LEG_DROPPED_OFF = "dropped_off"
LEG_NO_SHOW = "no_show"

PAY_PENDING = "pending"
PAY_COMPLETED = "completed"
PAY_FAILED = "failed"
PAY_REFUNDED = "refunded"

PAYMENT_FARE = "fare"
PAYMENT_TIP = "tip"
PAYMENT_REFUND = "refund"

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED_AMOUNT = "fixed_amount"

VOUCHER_AVAILABLE = "available"
VOUCHER_ACTIVE = "active"
VOUCHER_REDEEMED = "redeemed"
VOUCHER_USED = "used"
VOUCHER_EXPIRED = "expired"

VOUCHER_REDEEMABLE = (VOUCHER_AVAILABLE, VOUCHER_ACTIVE)
VOUCHER_CONSUMED = (VOUCHER_REDEEMED, VOUCHER_USED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


metadata = MetaData()

drivers = Table(
    "drivers",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String, nullable=True),
    Column("available", Boolean, default=True),
    Column("rating", Float, default=0.0),
    Column("vehicle_type", String, nullable=True),
    Column("gender", String, nullable=True),
    Column("accepts_restricted_rides", Boolean, default=False),
    Column("total_rides", Integer, default=0),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
)

journeys = Table(
    "journeys",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("passenger_id", Integer, nullable=False, index=True),
    Column("origin_lat", Float, nullable=False),
    Column("origin_lon", Float, nullable=False),
    Column("destination_lat", Float, nullable=False),
    Column("destination_lon", Float, nullable=False),
    Column("pickup_address", String, nullable=True),
    Column("dropoff_address", String, nullable=True),
    Column("preferred_vehicle_type", String, nullable=True),
    Column("is_restricted", Boolean, default=False),
    Column("is_shareable", Boolean, default=False),
    Column("seats", Integer, default=1),
    Column("booked_seats", Integer, default=0),
    Column("scheduled_at", DateTime(timezone=True), nullable=True),
    Column("status", String, default=JOURNEY_OPEN),
    Column("driver_id", Integer, nullable=True),
    Column("agreed_fare", Float, nullable=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
)

bids = Table(
    "bids",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("journey_id", Integer, nullable=False, index=True),
    Column("driver_id", Integer, nullable=False, index=True),
    Column("amount", Float, nullable=False),
    Column("message", Text, nullable=True),
    Column("status", String, default=BID_PENDING),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
    UniqueConstraint("journey_id", "driver_id", name="uq_bids_journey_driver"),
)

rides = Table(
    "rides",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("journey_id", Integer, nullable=False),
    Column("bid_id", Integer, nullable=False, unique=True),
    Column("passenger_id", Integer, nullable=False, index=True),
    Column("driver_id", Integer, nullable=False, index=True),
    Column("ride_type", String, default=RIDE_PRIVATE),
    Column("capacity", Integer, default=1),
    Column("fare", Float, nullable=False),
    Column("final_fare", Float, nullable=True),
    Column("distance_meters", Float, nullable=True),
    Column("pickup", JSON),
    Column("dropoff", JSON),
    Column("scheduled_at", DateTime(timezone=True), nullable=True),
    Column("status", String, default=RIDE_REQUESTED),
    Column("paid", Boolean, default=False),
    Column("tip_amount", Float, default=0.0),
    Column("accepted_at", DateTime(timezone=True), nullable=True),
    Column("arrived_at", DateTime(timezone=True), nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
)

ride_legs = Table(
    "ride_legs",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, nullable=False, index=True),
    Column("journey_id", Integer, nullable=False),
    Column("passenger_id", Integer, nullable=False),
    Column("seats_booked", Integer, default=1),
    Column("fare_contribution", Float, default=0.0),
    Column("status", String, default=LEG_WAITING),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
    UniqueConstraint("ride_id", "passenger_id", name="uq_ride_legs_ride_passenger"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, nullable=False, index=True),
    Column("payer_id", Integer, nullable=False),
    Column("payee_id", Integer, nullable=False),
    Column("payment_type", String, default=PAYMENT_FARE),
    Column("amount", Float, nullable=False),
    Column("discount_amount", Float, default=0.0),
    Column("charged_amount", Float, nullable=False),
    Column("commission", Float, default=0.0),
    Column("driver_earnings", Float, nullable=False),
    Column("currency", String, nullable=True),
    Column("status", String, default=PAY_PENDING),
    Column("provider", String, nullable=True),
    Column("provider_reference", String, nullable=True),
    Column("adjusts_payment_id", Integer, nullable=True, unique=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
)

vouchers = Table(
    "vouchers",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("code", String, unique=True, nullable=False),
    Column("description", String, nullable=True),
    Column("discount_type", String, nullable=False),
    Column("discount_value", Float, nullable=False),
    Column("max_discount_amount", Float, nullable=True),
    Column("min_ride_amount", Float, default=0.0),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("usage_limit_per_user", Integer, default=1),
    Column("total_usage_limit", Integer, nullable=True),
    Column("is_active", Boolean, default=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
)

user_vouchers = Table(
    "user_vouchers",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("voucher_id", Integer, nullable=False, index=True),
    Column("status", String, default=VOUCHER_ACTIVE),
    Column("assigned_at", DateTime(timezone=True), default=utcnow),
    Column("redeemed_at", DateTime(timezone=True), nullable=True),
    Column("ride_id", Integer, nullable=True),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("key", String, unique=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("response", JSON, nullable=True),
)
