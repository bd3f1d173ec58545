from dataclasses import dataclass, field
from datetime import datetime, timedelta
from math import radians, degrees, sin, cos, sqrt, atan2
from typing import List, Optional, Tuple

from sqlmodel import select, or_

import config
from db import transaction
from errors import ValidationError
from models import (
    AccountStatus, Driver, Negotiation, NegotiationStatus, Ride, RideStatus,
    User, Vehicle, VehicleStatus, utcnow,
)
from negotiation import expire_stale_negotiations

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    R = EARTH_RADIUS_KM
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return R * c


def distance_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Haversine distance rounded to 2 decimals, the figure radius checks use."""
    return round(haversine_km(a, b), 2)


def validate_point(lat, lng, label: str = "location") -> None:
    if isinstance(lat, bool) or isinstance(lng, bool) or not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        raise ValidationError(f"{label} latitude and longitude must be numbers")
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError(f"invalid {label} coordinates", latitude=lat, longitude=lng)


def _validate_search(lat, lng, radius_km, limit) -> None:
    validate_point(lat, lng, "search")
    if radius_km <= 0:
        raise ValidationError("radius must be greater than 0")
    if limit < 1:
        raise ValidationError("limit must be at least 1")


def _latitude_band(lat: float, radius_km: float) -> Tuple[float, float]:
    # great-circle distance is never shorter than the latitude gap; the extra
    # half-metre covers points that only make the radius after rounding
    margin = degrees((radius_km + 0.005) / EARTH_RADIUS_KM)
    return lat - margin, lat + margin


@dataclass
class DriverMatch:
    driver: Driver
    user: User
    distance_km: float
    vehicles: List[Vehicle] = field(default_factory=list)


@dataclass
class RideMatch:
    ride: Ride
    distance_km: float
    negotiation: Optional[Negotiation] = None


def nearby_drivers(lat: float, lng: float, radius_km: float = None, limit: int = 10) -> List[DriverMatch]:
    """Online, verified, active drivers within ``radius_km`` of the point, closest first."""
    radius_km = config.NEARBY_DRIVER_RADIUS_KM if radius_km is None else radius_km
    _validate_search(lat, lng, radius_km, limit)
    low, high = _latitude_band(lat, radius_km)
    with transaction() as session:
        rows = session.exec(
            select(Driver, User)
            .where(Driver.user_id == User.id)
            .where(Driver.is_online == True)  # noqa: E712
            .where(Driver.is_verified == True)  # noqa: E712
            .where(User.account_status == AccountStatus.ACTIVE)
            .where(Driver.current_lat.is_not(None), Driver.current_lng.is_not(None))
            .where(Driver.current_lat >= low, Driver.current_lat <= high)
        ).all()
        matches = []
        for driver, user in rows:
            d = distance_km((driver.current_lat, driver.current_lng), (lat, lng))
            if d <= radius_km:
                matches.append(DriverMatch(driver=driver, user=user, distance_km=d))
        matches.sort(key=lambda m: (m.distance_km, m.driver.created_at, m.driver.id))
        matches = matches[:limit]
        if matches:
            vehicles = session.exec(
                select(Vehicle)
                .where(Vehicle.driver_id.in_([m.driver.id for m in matches]))
                .where(Vehicle.status == VehicleStatus.ACTIVE, Vehicle.is_verified == True)  # noqa: E712
                .order_by(Vehicle.created_at)
            ).all()
            by_driver = {}
            for v in vehicles:
                by_driver.setdefault(v.driver_id, []).append(v)
            for m in matches:
                m.vehicles = by_driver.get(m.driver.id, [])
    return matches


def available_rides(lat: float, lng: float, radius_km: float = None, limit: int = 10,
                    now: Optional[datetime] = None) -> List[RideMatch]:
    """Unmatched pending rides due soon whose origin is within ``radius_km`` of the driver."""
    radius_km = config.AVAILABLE_RIDE_RADIUS_KM if radius_km is None else radius_km
    _validate_search(lat, lng, radius_km, limit)
    now = now or utcnow()
    horizon = now + timedelta(minutes=config.AVAILABLE_RIDE_WINDOW_MINUTES)
    low, high = _latitude_band(lat, radius_km)
    with transaction() as session:
        expire_stale_negotiations(session, now)
        rides = session.exec(
            select(Ride)
            .where(Ride.status == RideStatus.PENDING, Ride.driver_id.is_(None))
            .where(or_(Ride.scheduled_at.is_(None), Ride.scheduled_at <= horizon))
            .where(Ride.origin_lat >= low, Ride.origin_lat <= high)
        ).all()
        matches = []
        for ride in rides:
            d = distance_km((ride.origin_lat, ride.origin_lng), (lat, lng))
            if d <= radius_km:
                matches.append(RideMatch(ride=ride, distance_km=d))
        matches.sort(key=lambda m: (m.distance_km, m.ride.created_at, m.ride.id))
        matches = matches[:limit]
        if matches:
            pending = session.exec(
                select(Negotiation)
                .where(Negotiation.ride_id.in_([m.ride.id for m in matches]))
                .where(Negotiation.status == NegotiationStatus.PENDING)
            ).all()
            current = {n.ride_id: n for n in pending}
            for m in matches:
                m.negotiation = current.get(m.ride.id)
    return matches
