"""Row factories shared by the test modules."""
from datetime import datetime, timedelta
from decimal import Decimal

from db import get_session
from models import (
    AccountStatus, Driver, DiscountType, PromoCode, User, Vehicle, VehicleStatus, Wallet,
)
import rides

# Lagos, the city the demo data lives in
LAGOS = (6.5244, 3.3792)
VICTORIA_ISLAND = (6.4281, 3.4219)

T0 = datetime(2026, 3, 2, 8, 0, 0)


def _save(obj):
    session = get_session()
    session.add(obj)
    session.commit()
    session.refresh(obj)
    session.close()
    return obj


def fetch(model, pk):
    session = get_session()
    obj = session.get(model, pk)
    session.close()
    return obj


def make_user(name="Ada", status=AccountStatus.ACTIVE):
    return _save(User(name=name, account_status=status))


def make_driver(name="Dayo", at=LAGOS, verified=True, online=True, seats=4,
                vehicle=True, status=AccountStatus.ACTIVE, created_at=None):
    user = make_user(name, status=status)
    driver = Driver(
        user_id=user.id,
        is_verified=verified,
        is_online=online,
        current_lat=at[0] if at else None,
        current_lng=at[1] if at else None,
    )
    if created_at is not None:
        driver.created_at = created_at
    driver = _save(driver)
    if vehicle:
        make_vehicle(driver.id, seats=seats)
    return driver


def make_vehicle(driver_id, seats=4, plate=None, status=VehicleStatus.ACTIVE, verified=True):
    plate = plate or f"LAG-{driver_id}-{seats}-{status.value[:1]}{int(verified)}"
    return _save(Vehicle(driver_id=driver_id, plate_number=plate, seats=seats, status=status, is_verified=verified))


def make_promo(code="SAVE10", discount_type=DiscountType.PERCENTAGE, value="10", max_discount="80",
               min_ride_amount=None, usage_limit=None, user_limit=None, active=True):
    return _save(PromoCode(
        code=code,
        discount_type=discount_type,
        discount_value=Decimal(value),
        max_discount=Decimal(max_discount) if max_discount is not None else None,
        min_ride_amount=Decimal(min_ride_amount) if min_ride_amount is not None else None,
        usage_limit=usage_limit,
        user_limit=user_limit,
        valid_from=T0 - timedelta(days=1),
        valid_until=T0 + timedelta(days=1),
        is_active=active,
    ))


def make_wallet(user_id, balance="0"):
    return _save(Wallet(user_id=user_id, balance=Decimal(balance)))


def make_ride(user_id, fare="1000", origin=LAGOS, now=T0, **kwargs):
    created = rides.create_ride(
        user_id=user_id,
        origin_address=kwargs.pop("origin_address", "Ikeja City Mall"),
        destination_address=kwargs.pop("destination_address", "Eko Hotel"),
        origin_lat=origin[0],
        origin_lng=origin[1],
        dest_lat=VICTORIA_ISLAND[0],
        dest_lng=VICTORIA_ISLAND[1],
        fare=fare,
        now=now,
        **kwargs,
    )
    return created.ride


def ride_in_progress(rider=None, driver=None, fare="1000", now=T0):
    rider = rider or make_user("Rider")
    driver = driver or make_driver("Driver")
    ride = make_ride(rider.id, fare=fare, now=now)
    rides.accept_ride(ride.id, driver.id, now=now + timedelta(minutes=1))
    rides.start_ride(ride.id, driver.id, now=now + timedelta(minutes=5))
    return ride, rider, driver
