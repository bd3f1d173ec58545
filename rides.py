"""Ride lifecycle state machine.

    PENDING     --accept-->   ACCEPTED
    PENDING     --cancel-->   CANCELLED
    ACCEPTED    --start-->    IN_PROGRESS
    ACCEPTED    --cancel-->   CANCELLED
    IN_PROGRESS --complete--> COMPLETED

Every operation resolves its preconditions before the first write and runs in a
single transaction. Status changes are compare-and-swap updates on the status
the operation observed, so two racing requests cannot both move a ride out of
the same state. Notifications are committed with the change and dispatched
after it.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select, or_

import config
from db import get_session, transaction
from errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from matching import validate_point
from models import (
    AccountStatus, Driver, DRIVER_ACTIVE_STATUSES, Earning, Negotiation, Payment,
    PaymentMethod, PaymentStatus, PromoCode, Rating, RecentLocation, Ride,
    RIDER_ACTIVE_STATUSES, RideStatus, User, UserPromo, Vehicle, VehicleStatus, utcnow,
)
from negotiation import expire_stale_negotiations
from notifications import Outbox, driver_topic, rider_topic
from pricing import (
    CENT, PromoRule, Settlement, ZERO, check_promo_eligibility, parse_amount,
    promo_discount, settle,
)

logger = logging.getLogger(__name__)

TRANSITIONS = {
    RideStatus.PENDING: (RideStatus.ACCEPTED, RideStatus.CANCELLED),
    RideStatus.ACCEPTED: (RideStatus.IN_PROGRESS, RideStatus.CANCELLED),
    RideStatus.IN_PROGRESS: (RideStatus.COMPLETED,),
    RideStatus.COMPLETED: (),
    RideStatus.CANCELLED: (),
}

MAX_SEATS = 8
MAX_PAGE_SIZE = 100


def can_transition(current: RideStatus, target: RideStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: RideStatus, target: RideStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


@dataclass
class CreatedRide:
    ride: Ride
    promo_discount: Decimal
    estimated_final_price: Decimal


@dataclass
class RideCompletion:
    ride: Ride
    payment: Payment
    settlement: Settlement


@dataclass
class RideDetail:
    ride: Ride
    negotiations: List[Negotiation] = field(default_factory=list)
    payment: Optional[Payment] = None
    promo_code: Optional[PromoCode] = None
    rating: Optional[Rating] = None


@dataclass
class RidePage:
    rides: List[Ride]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


@dataclass
class RideTracking:
    ride: Ride
    driver: Optional[Driver] = None
    vehicle: Optional[Vehicle] = None

    @property
    def driver_location(self) -> Optional[dict]:
        if self.driver is None or self.driver.current_lat is None or self.driver.current_lng is None:
            return None
        return {"latitude": self.driver.current_lat, "longitude": self.driver.current_lng}


# ────────────────────────── helpers ─────────────────────────────────────────

def _get_ride(session, ride_id: int) -> Ride:
    ride = session.get(Ride, ride_id)
    if not ride:
        raise NotFound("ride not found", ride_id=ride_id)
    return ride


def _transition(session, ride: Ride, target: RideStatus, **values) -> None:
    """Move ``ride`` to ``target`` only if nobody moved it since we read it."""
    check_transition(ride.status, target)
    observed = ride.status
    changed = session.exec(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == observed)
        .values(status=target, **values)
    ).rowcount
    session.refresh(ride)
    if changed != 1:
        raise InvalidTransition(ride.status.value, target.value, f"ride is no longer {observed.value}")
    logger.info("ride %s: %s -> %s", ride.id, observed.value, target.value)


def _active_rider_ride(session, user_id: int) -> Optional[Ride]:
    return session.exec(
        select(Ride).where(Ride.user_id == user_id, Ride.status.in_(RIDER_ACTIVE_STATUSES))
    ).first()


def _active_driver_ride(session, driver_id: int) -> Optional[Ride]:
    return session.exec(
        select(Ride).where(Ride.driver_id == driver_id, Ride.status.in_(DRIVER_ACTIVE_STATUSES))
    ).first()


def _touch(session, user_id: int, now: datetime) -> None:
    session.exec(update(User).where(User.id == user_id).values(last_active_at=now))


def _seats(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= MAX_SEATS:
        raise ValidationError(f"seats must be between 1 and {MAX_SEATS}")
    return value


def _stop_points(points) -> Optional[List[dict]]:
    if points is None:
        return None
    if not isinstance(points, list):
        raise ValidationError("stop points must be a list")
    cleaned = []
    for i, point in enumerate(points):
        if not isinstance(point, dict):
            raise ValidationError(f"stop point {i} must be an object")
        validate_point(point.get("latitude"), point.get("longitude"), f"stop point {i}")
        cleaned.append({
            "address": point.get("address", ""),
            "latitude": point["latitude"],
            "longitude": point["longitude"],
        })
    return cleaned


def _payment_method(value) -> Optional[PaymentMethod]:
    if value is None or isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"unknown payment method {value!r}")


def _ride_status(value) -> Optional[RideStatus]:
    if value is None or isinstance(value, RideStatus):
        return value
    try:
        return RideStatus(value)
    except ValueError:
        raise ValidationError(f"unknown ride status {value!r}")


def _consume_promo(session, promo: PromoCode, user_id: int, now: datetime) -> None:
    claimed = session.exec(
        update(PromoCode)
        .where(PromoCode.id == promo.id)
        .where(or_(PromoCode.usage_limit.is_(None), PromoCode.usage_count < PromoCode.usage_limit))
        .values(usage_count=PromoCode.usage_count + 1)
    ).rowcount
    if claimed != 1:
        raise ValidationError("promo code usage limit exceeded", promo_code_id=promo.id)
    bumped = session.exec(
        update(UserPromo)
        .where(UserPromo.user_id == user_id, UserPromo.promo_code_id == promo.id)
        .values(usage_count=UserPromo.usage_count + 1, last_used_at=now)
    ).rowcount
    if not bumped:
        session.add(UserPromo(user_id=user_id, promo_code_id=promo.id, usage_count=1, last_used_at=now))


def _pick_vehicle(session, driver: Driver, vehicle_id: Optional[int]) -> Vehicle:
    if vehicle_id is not None:
        vehicle = session.get(Vehicle, vehicle_id)
        if not vehicle or vehicle.driver_id != driver.id:
            raise NotFound("vehicle not found", vehicle_id=vehicle_id)
        if vehicle.status != VehicleStatus.ACTIVE or not vehicle.is_verified:
            raise Forbidden("vehicle must be active and verified", vehicle_id=vehicle_id)
        return vehicle
    vehicle = session.exec(
        select(Vehicle)
        .where(Vehicle.driver_id == driver.id)
        .where(Vehicle.status == VehicleStatus.ACTIVE, Vehicle.is_verified == True)  # noqa: E712
        .order_by(Vehicle.created_at, Vehicle.id)
    ).first()
    if not vehicle:
        raise NotFound("no available verified vehicle found", driver_id=driver.id)
    return vehicle


def _record_daily_earning(session, driver_id: int, settlement: Settlement, now: datetime) -> None:
    day = now.date()
    earning = session.exec(
        select(Earning)
        .where(Earning.driver_id == driver_id, Earning.day == day)
        .execution_options(populate_existing=True)
    ).first()
    if earning is None:
        session.add(Earning(
            driver_id=driver_id,
            day=day,
            amount=settlement.driver_earning,
            ride_count=1,
            total_fares=settlement.final_amount,
            platform_fees=settlement.platform_fee,
        ))
        return
    # sums stay in Decimal; SQLite keeps Numeric columns as REAL
    earning.amount = (earning.amount + settlement.driver_earning).quantize(CENT)
    earning.ride_count += 1
    earning.total_fares = (earning.total_fares + settlement.final_amount).quantize(CENT)
    earning.platform_fees = (earning.platform_fees + settlement.platform_fee).quantize(CENT)
    session.add(earning)


# ────────────────────────── rider operations ────────────────────────────────

def create_ride(user_id: int, origin_address: str, destination_address: str,
                origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float,
                fare, seats: int = 1, promo_code_id: Optional[int] = None,
                scheduled_at: Optional[datetime] = None, stop_points: Optional[list] = None,
                notes: Optional[str] = None, now: Optional[datetime] = None) -> CreatedRide:
    if not origin_address or not destination_address:
        raise ValidationError("origin and destination addresses are required")
    validate_point(origin_lat, origin_lng, "origin")
    validate_point(dest_lat, dest_lng, "destination")
    fare = parse_amount(fare, "fare")
    seats = _seats(seats)
    stops = _stop_points(stop_points)
    now = now or utcnow()

    try:
        with transaction() as session:
            outbox = Outbox(session)
            user = session.get(User, user_id)
            if not user:
                raise NotFound("user not found", user_id=user_id)
            if user.account_status != AccountStatus.ACTIVE:
                raise Forbidden("user account is not active")
            active = _active_rider_ride(session, user_id)
            if active:
                raise Conflict("user already has an active ride", active_ride_id=active.id)

            discount = ZERO
            promo = None
            if promo_code_id is not None:
                promo = session.get(PromoCode, promo_code_id)
                if not promo:
                    raise ValidationError("invalid promo code", promo_code_id=promo_code_id)
                usage = session.exec(
                    select(UserPromo).where(UserPromo.user_id == user_id, UserPromo.promo_code_id == promo.id)
                ).first()
                check_promo_eligibility(promo, fare, usage.usage_count if usage else 0, now)
                discount = promo_discount(fare, PromoRule.from_code(promo))

            ride = Ride(
                user_id=user_id,
                origin_address=origin_address,
                destination_address=destination_address,
                origin_lat=origin_lat,
                origin_lng=origin_lng,
                dest_lat=dest_lat,
                dest_lng=dest_lng,
                original_fare=fare,
                seats=seats,
                scheduled_at=scheduled_at,
                stop_points=stops,
                notes=notes,
                promo_code_id=promo_code_id,
                created_at=now,
            )
            session.add(ride)
            session.flush()
            if promo is not None:
                _consume_promo(session, promo, user_id, now)
            session.add(RecentLocation(
                user_id=user_id, address=origin_address, latitude=origin_lat, longitude=origin_lng, created_at=now,
            ))
            if destination_address != origin_address:
                session.add(RecentLocation(
                    user_id=user_id, address=destination_address, latitude=dest_lat, longitude=dest_lng, created_at=now,
                ))
            outbox.publish(rider_topic(user_id), "ride_created", ride=ride)
    except IntegrityError as exc:
        raise Conflict("user already has an active ride") from exc

    outbox.deliver()
    logger.info("ride %s created for user %s (fare=%s, discount=%s)", ride.id, user_id, fare, discount)
    return CreatedRide(ride=ride, promo_discount=discount, estimated_final_price=fare - discount)


def cancel_ride(ride_id: int, user_id: Optional[int] = None, driver_id: Optional[int] = None,
                reason: Optional[str] = None, now: Optional[datetime] = None) -> Ride:
    if (user_id is None) == (driver_id is None):
        raise ValidationError("exactly one of user_id or driver_id is required")
    now = now or utcnow()
    by_rider = user_id is not None

    with transaction() as session:
        outbox = Outbox(session)
        ride = _get_ride(session, ride_id)
        if by_rider and ride.user_id != user_id:
            raise Forbidden("this ride does not belong to you")
        if not by_rider and ride.driver_id != driver_id:
            raise Forbidden("this ride is not assigned to you")
        _transition(
            session, ride, RideStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason=reason or ("Cancelled by user" if by_rider else "Cancelled by driver"),
            cancelled_by="rider" if by_rider else "driver",
        )
        if by_rider and ride.driver_id is not None:
            driver = session.get(Driver, ride.driver_id)
            rider = session.get(User, ride.user_id)
            outbox.notify(
                driver.user_id, "Ride Cancelled", f"{rider.name} cancelled the ride",
                data={"ride_id": ride_id, "cancelled_by": "rider"},
            )
            outbox.publish(driver_topic(ride.driver_id), "ride_cancelled", ride=ride)
        elif not by_rider:
            outbox.notify(
                ride.user_id, "Ride Cancelled", f"Your driver cancelled the ride. {reason or ''}".strip(),
                data={"ride_id": ride_id, "cancelled_by": "driver"},
            )
            outbox.publish(rider_topic(ride.user_id), "ride_cancelled", ride=ride)

    outbox.deliver()
    return ride


# ────────────────────────── driver operations ───────────────────────────────

def accept_ride(ride_id: int, driver_id: int, vehicle_id: Optional[int] = None,
                now: Optional[datetime] = None) -> Ride:
    now = now or utcnow()
    try:
        with transaction() as session:
            outbox = Outbox(session)
            ride = _get_ride(session, ride_id)
            check_transition(ride.status, RideStatus.ACCEPTED)
            driver = session.get(Driver, driver_id)
            if not driver:
                raise NotFound("driver not found", driver_id=driver_id)
            if not driver.is_verified or not driver.is_online:
                raise Forbidden("driver must be verified and online to accept rides")
            driver_user = session.get(User, driver.user_id)
            if driver_user.account_status != AccountStatus.ACTIVE:
                raise Forbidden("driver account is not active")
            busy = _active_driver_ride(session, driver_id)
            if busy:
                raise Conflict("driver already has an active ride", active_ride_id=busy.id)
            vehicle = _pick_vehicle(session, driver, vehicle_id)
            if vehicle.seats < ride.seats:
                raise ValidationError("vehicle does not have enough seats for this ride",
                                      vehicle_seats=vehicle.seats, ride_seats=ride.seats)

            _transition(
                session, ride, RideStatus.ACCEPTED,
                driver_id=driver_id, vehicle_id=vehicle.id, accepted_at=now,
            )
            outbox.notify(
                ride.user_id, "Ride Accepted", f"Your ride has been accepted by {driver_user.name}",
                data={"ride_id": ride_id, "driver_id": driver_id},
            )
            outbox.publish(rider_topic(ride.user_id), "ride_accepted", ride=ride)
            outbox.publish(driver_topic(driver_id), "ride_accepted", ride=ride)
    except IntegrityError as exc:
        raise Conflict("driver already has an active ride", driver_id=driver_id) from exc

    outbox.deliver()
    return ride


def start_ride(ride_id: int, driver_id: int, now: Optional[datetime] = None) -> Ride:
    now = now or utcnow()
    with transaction() as session:
        outbox = Outbox(session)
        ride = _get_ride(session, ride_id)
        if ride.driver_id != driver_id:
            raise Forbidden("this ride is not assigned to you")
        _transition(session, ride, RideStatus.IN_PROGRESS, started_at=now)
        outbox.notify(ride.user_id, "Ride Started", "Your ride has started", data={"ride_id": ride_id})
        outbox.publish(rider_topic(ride.user_id), "ride_started", ride=ride)
        outbox.publish(driver_topic(driver_id), "ride_started", ride=ride)
    outbox.deliver()
    return ride


def complete_ride(ride_id: int, driver_id: int, final_fare=None, ride_time: Optional[int] = None,
                  distance: Optional[float] = None, payment_method=None,
                  now: Optional[datetime] = None) -> RideCompletion:
    if final_fare is not None:
        final_fare = parse_amount(final_fare, "final fare")
    if ride_time is not None and (isinstance(ride_time, bool) or not isinstance(ride_time, int) or ride_time < 0):
        raise ValidationError("ride time must be a non-negative number of minutes")
    if distance is not None and (isinstance(distance, bool) or not isinstance(distance, (int, float)) or distance < 0):
        raise ValidationError("distance must be a non-negative number of kilometres")
    method = _payment_method(payment_method) or PaymentMethod.CASH
    now = now or utcnow()
    paid = method == PaymentMethod.CASH
    payment_status = PaymentStatus.PAID if paid else PaymentStatus.PENDING

    with transaction() as session:
        outbox = Outbox(session)
        ride = _get_ride(session, ride_id)
        if ride.driver_id != driver_id:
            raise Forbidden("this ride is not assigned to you")
        check_transition(ride.status, RideStatus.COMPLETED)
        promo = session.get(PromoCode, ride.promo_code_id) if ride.promo_code_id else None
        settlement = settle(
            ride.original_fare, ride.negotiated_fare, final_fare,
            promo=PromoRule.from_code(promo) if promo else None,
            commission_rate=config.COMMISSION_RATE,
        )
        driver = session.get(Driver, driver_id)

        _transition(
            session, ride, RideStatus.COMPLETED,
            final_fare=settlement.final_amount,
            payment_method=method,
            payment_status=payment_status,
            ride_time=ride_time,
            distance=distance,
            completed_at=now,
        )
        payment = Payment(
            ride_id=ride_id,
            amount=settlement.final_amount,
            method=method,
            status=payment_status,
            promo_discount=settlement.promo_discount,
            platform_fee=settlement.platform_fee,
            driver_earning=settlement.driver_earning,
            processed_at=now if paid else None,
            created_at=now,
        )
        session.add(payment)
        session.exec(update(User).where(User.id == ride.user_id).values(total_rides=User.total_rides + 1))
        driver.total_rides += 1
        driver.total_earnings = (driver.total_earnings + settlement.driver_earning).quantize(CENT)
        session.add(driver)
        _record_daily_earning(session, driver_id, settlement, now)
        outbox.notify(
            ride.user_id, "Ride Completed",
            f"Your ride has been completed. Amount: {settlement.final_amount}",
            data={"ride_id": ride_id, "amount": str(settlement.final_amount)},
        )
        outbox.notify(
            driver.user_id, "Ride Completed",
            f"You completed a ride. Earnings: {settlement.driver_earning}",
            data={"ride_id": ride_id, "earnings": str(settlement.driver_earning)},
        )
        outbox.publish(rider_topic(ride.user_id), "ride_completed", ride=ride)
        outbox.publish(driver_topic(driver_id), "ride_completed", ride=ride)
        session.flush()

    outbox.deliver()
    return RideCompletion(ride=ride, payment=payment, settlement=settlement)


# ────────────────────────── read side ───────────────────────────────────────

def get_ride(ride_id: int, actor_user_id: Optional[int] = None, now: Optional[datetime] = None) -> RideDetail:
    now = now or utcnow()
    with transaction() as session:
        ride = _get_ride(session, ride_id)
        expire_stale_negotiations(session, now, ride_id)
        negotiations = session.exec(
            select(Negotiation)
            .where(Negotiation.ride_id == ride_id)
            .order_by(Negotiation.created_at.desc(), Negotiation.id.desc())
        ).all()
        payment = session.exec(select(Payment).where(Payment.ride_id == ride_id)).first()
        rating = session.exec(select(Rating).where(Rating.ride_id == ride_id)).first()
        promo = session.get(PromoCode, ride.promo_code_id) if ride.promo_code_id else None
        if actor_user_id is not None:
            _touch(session, actor_user_id, now)
    return RideDetail(ride=ride, negotiations=list(negotiations), payment=payment, promo_code=promo, rating=rating)


def list_rides(user_id: Optional[int] = None, driver_id: Optional[int] = None, status=None,
               date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
               limit: int = 20, offset: int = 0, actor_user_id: Optional[int] = None,
               now: Optional[datetime] = None) -> RidePage:
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset must not be negative")
    status = _ride_status(status)

    filters = []
    if user_id is not None:
        filters.append(Ride.user_id == user_id)
    if driver_id is not None:
        filters.append(Ride.driver_id == driver_id)
    if status is not None:
        filters.append(Ride.status == status)
    if date_from is not None:
        filters.append(Ride.created_at >= date_from)
    if date_to is not None:
        filters.append(Ride.created_at <= date_to)

    with transaction() as session:
        total = session.exec(select(func.count()).select_from(Ride).where(*filters)).one()
        rides = session.exec(
            select(Ride)
            .where(*filters)
            .order_by(Ride.created_at.desc(), Ride.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        if actor_user_id is not None:
            _touch(session, actor_user_id, now or utcnow())
    return RidePage(rides=list(rides), total=total, limit=limit, offset=offset)


def get_ride_tracking(ride_id: int, user_id: int) -> RideTracking:
    with get_session() as session:
        ride = _get_ride(session, ride_id)
        driver = session.get(Driver, ride.driver_id) if ride.driver_id else None
        if ride.user_id != user_id and (driver is None or driver.user_id != user_id):
            raise Forbidden("not allowed to track this ride")
        vehicle = session.get(Vehicle, ride.vehicle_id) if ride.vehicle_id else None
    return RideTracking(ride=ride, driver=driver, vehicle=vehicle)


# ────────────────────────── ratings ─────────────────────────────────────────

def rate_ride(ride_id: int, user_id: int, rating: int, comment: Optional[str] = None,
              is_user_to_driver: bool = True, now: Optional[datetime] = None) -> Rating:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("rating must be between 1 and 5")
    now = now or utcnow()
    try:
        with transaction() as session:
            ride = _get_ride(session, ride_id)
            if ride.status != RideStatus.COMPLETED:
                raise InvalidTransition(ride.status.value, "rate", "can only rate completed rides")
            if session.exec(select(Rating).where(Rating.ride_id == ride_id)).first():
                raise Conflict("ride has already been rated")
            driver = session.get(Driver, ride.driver_id)
            if is_user_to_driver:
                if ride.user_id != user_id:
                    raise Forbidden("you are not the rider")
                target = driver.user_id
            else:
                if driver.user_id != user_id:
                    raise Forbidden("you are not the driver")
                target = ride.user_id
            entry = Rating(
                ride_id=ride_id, user_id=user_id, target_user_id=target, rating=rating,
                comment=comment, is_user_to_driver=is_user_to_driver, created_at=now,
            )
            session.add(entry)
            session.flush()
            average = session.exec(
                select(func.avg(Rating.rating))
                .where(Rating.target_user_id == target, Rating.is_user_to_driver == is_user_to_driver)
            ).one()
            session.exec(update(User).where(User.id == target).values(rating=average))
            if is_user_to_driver:
                session.exec(update(Driver).where(Driver.id == driver.id).values(rating=average))
    except IntegrityError as exc:
        raise Conflict("ride has already been rated") from exc
    return entry
