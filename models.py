from typing import Optional, List
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import Index, UniqueConstraint, text
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    # naive UTC, the way SQLite hands datetimes back
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class RideStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


RIDER_ACTIVE_STATUSES = (RideStatus.PENDING, RideStatus.ACCEPTED, RideStatus.IN_PROGRESS)
DRIVER_ACTIVE_STATUSES = (RideStatus.ACCEPTED, RideStatus.IN_PROGRESS)


class NegotiationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    WALLET = "WALLET"
    BANK_TRANSFER = "BANK_TRANSFER"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class VehicleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    account_status: AccountStatus = AccountStatus.ACTIVE
    total_rides: int = 0
    rating: Optional[float] = None
    last_active_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Driver(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    is_verified: bool = False
    is_online: bool = False
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    total_rides: int = 0
    total_earnings: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    rating: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)


class Vehicle(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    driver_id: int = Field(foreign_key="driver.id", index=True)
    plate_number: str = Field(unique=True)
    seats: int = 4
    status: VehicleStatus = VehicleStatus.ACTIVE
    is_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class PromoCode(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(unique=True)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = Field(max_digits=12, decimal_places=2)
    min_ride_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    max_discount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    usage_limit: Optional[int] = None
    usage_count: int = 0
    user_limit: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True


class UserPromo(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "promo_code_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    promo_code_id: int = Field(foreign_key="promocode.id")
    usage_count: int = 0
    last_used_at: Optional[datetime] = None


class Ride(SQLModel, table=True):
    # one active ride per rider and per driver, held by the database itself
    __table_args__ = (
        Index(
            "uq_ride_active_rider", "user_id", unique=True,
            sqlite_where=text("status IN ('PENDING', 'ACCEPTED', 'IN_PROGRESS')"),
            postgresql_where=text("status IN ('PENDING', 'ACCEPTED', 'IN_PROGRESS')"),
        ),
        Index(
            "uq_ride_active_driver", "driver_id", unique=True,
            sqlite_where=text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
            postgresql_where=text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    driver_id: Optional[int] = Field(default=None, foreign_key="driver.id", index=True)
    vehicle_id: Optional[int] = Field(default=None, foreign_key="vehicle.id")
    origin_address: str
    destination_address: str
    origin_lat: float
    origin_lng: float
    dest_lat: float
    dest_lng: float
    stop_points: Optional[List[dict]] = Field(default=None, sa_column=Column(JSON))
    notes: Optional[str] = None
    seats: int = 1
    original_fare: Decimal = Field(max_digits=12, decimal_places=2)
    negotiated_fare: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    final_fare: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    promo_code_id: Optional[int] = Field(default=None, foreign_key="promocode.id")
    status: RideStatus = Field(default=RideStatus.PENDING, index=True)
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    ride_time: Optional[int] = None  # minutes
    distance: Optional[float] = None  # km
    scheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None  # rider, driver


class Negotiation(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_negotiation_pending_ride", "ride_id", unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", index=True)
    user_id: int = Field(foreign_key="user.id")
    proposed_price: Decimal = Field(max_digits=12, decimal_places=2)
    status: NegotiationStatus = NegotiationStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    responded_at: Optional[datetime] = None
    responded_by: Optional[int] = Field(default=None, foreign_key="driver.id")


class Payment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", unique=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    method: PaymentMethod = PaymentMethod.CASH
    status: PaymentStatus = PaymentStatus.PENDING
    promo_discount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    platform_fee: Decimal = Field(max_digits=12, decimal_places=2)
    driver_earning: Decimal = Field(max_digits=12, decimal_places=2)
    transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Earning(SQLModel, table=True):
    """Per-driver rollup of one calendar day (UTC)."""

    __table_args__ = (UniqueConstraint("driver_id", "day"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    driver_id: int = Field(foreign_key="driver.id", index=True)
    day: date
    amount: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    ride_count: int = 0
    total_fares: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    platform_fees: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)


class RecentLocation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    address: str
    latitude: float
    longitude: float
    created_at: datetime = Field(default_factory=utcnow)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    message: str
    type: str = "ride"
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Wallet(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    balance: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    total_spent: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    is_active: bool = True


class WalletTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    wallet_id: int = Field(foreign_key="wallet.id", index=True)
    type: str  # ride_payment, refund
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    description: str = ""
    reference_id: Optional[int] = None
    balance_before: Decimal = Field(max_digits=14, decimal_places=2)
    balance_after: Decimal = Field(max_digits=14, decimal_places=2)
    created_at: datetime = Field(default_factory=utcnow)


class Rating(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", unique=True)
    user_id: int = Field(foreign_key="user.id")
    target_user_id: int = Field(foreign_key="user.id", index=True)
    rating: int
    comment: Optional[str] = None
    is_user_to_driver: bool = True
    created_at: datetime = Field(default_factory=utcnow)
