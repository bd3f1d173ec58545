"""Request types, one per action.

Payloads are parsed into these before they reach the engine, so each operation
receives exactly the fields it understands. Range checks (fare > 0, seats in
1..8, coordinates) stay in the engine, which raises its own ValidationError.
The PATCH actions on a ride share one endpoint and are told apart by their
``action`` tag.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, field_validator
from sqlmodel import SQLModel

from models import PaymentMethod, PaymentStatus, RideStatus


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CreateRide(SQLModel):
    user_id: int
    origin_address: str
    destination_address: str
    origin_lat: float
    origin_lng: float
    dest_lat: float
    dest_lng: float
    fare: Decimal
    seats: int = 1
    promo_code_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    stop_points: Optional[List[dict]] = None
    notes: Optional[str] = None

    @field_validator("scheduled_at")
    @classmethod
    def _scheduled_utc(cls, value):
        return _naive_utc(value)


class AcceptRide(SQLModel):
    driver_id: int
    vehicle_id: Optional[int] = None


class StartRide(SQLModel):
    driver_id: int


class CompleteRide(SQLModel):
    driver_id: int
    final_fare: Optional[Decimal] = None
    ride_time: Optional[int] = None
    distance: Optional[float] = None
    payment_method: Optional[PaymentMethod] = None


class CancelRide(SQLModel):
    user_id: Optional[int] = None
    driver_id: Optional[int] = None
    reason: Optional[str] = None


class ProposeNegotiation(SQLModel):
    action: Literal["negotiate"]
    user_id: int
    proposed_price: Decimal


class RespondNegotiation(SQLModel):
    action: Literal["respond-negotiation"]
    negotiation_id: int
    driver_id: int
    accept: bool


class UpdatePayment(SQLModel):
    action: Literal["update-payment"]
    payment_status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None


class RateRide(SQLModel):
    action: Literal["rate"]
    user_id: int
    rating: int
    comment: Optional[str] = None
    is_user_to_driver: bool = True


RideAction = Annotated[
    Union[ProposeNegotiation, RespondNegotiation, UpdatePayment, RateRide],
    Field(discriminator="action"),
]

_ride_action = TypeAdapter(RideAction)


def parse_ride_action(payload: dict):
    return _ride_action.validate_python(payload)


class RideFilters(SQLModel):
    user_id: Optional[int] = None
    driver_id: Optional[int] = None
    status: Optional[RideStatus] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 20
    offset: int = 0

    @field_validator("date_from", "date_to")
    @classmethod
    def _dates_utc(cls, value):
        return _naive_utc(value)


class GeoQuery(SQLModel):
    latitude: float
    longitude: float
    radius: Optional[float] = None
    limit: int = 10


class DriverLocation(SQLModel):
    latitude: float
    longitude: float


class DriverOnline(SQLModel):
    is_online: bool


class RefundPayment(SQLModel):
    reason: str = ""
