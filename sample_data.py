from datetime import timedelta
from decimal import Decimal
import random

from db import init_db, get_session
from models import Driver, DiscountType, PromoCode, User, Vehicle, Wallet, utcnow
import rides


def seed():
    init_db()
    session = get_session()
    # add riders, each with a funded wallet
    riders = [User(name=f"rider{i}") for i in range(1, 11)]
    session.add_all(riders)
    session.commit()
    session.add_all([Wallet(user_id=r.id, balance=Decimal("5000.00")) for r in riders])

    # drivers scattered around Lagos Island, all verified and online
    center = (6.4541, 3.3947)
    driver_users = [User(name=f"driver{i}") for i in range(1, 6)]
    session.add_all(driver_users)
    session.commit()
    drivers = []
    for u in driver_users:
        d = Driver(
            user_id=u.id,
            is_verified=True,
            is_online=True,
            current_lat=center[0] + (random.random() - 0.5) * 0.08,
            current_lng=center[1] + (random.random() - 0.5) * 0.08,
        )
        drivers.append(d)
    session.add_all(drivers)
    session.commit()
    for i, d in enumerate(drivers, start=1):
        session.add(Vehicle(driver_id=d.id, plate_number=f"LAG-{100 + i}", seats=4, is_verified=True))

    now = utcnow()
    promo = PromoCode(
        code="WELCOME10",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("10"),
        max_discount=Decimal("80"),
        usage_limit=100,
        user_limit=1,
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=30),
    )
    session.add(promo)
    session.commit()
    promo_id = promo.id
    rider_ids = [r.id for r in riders]
    session.close()

    # pending ride requests near the drivers, the first few using the promo
    for i, user_id in enumerate(rider_ids[:6]):
        lat = center[0] + (random.random() - 0.5) * 0.1
        lng = center[1] + (random.random() - 0.5) * 0.1
        rides.create_ride(
            user_id=user_id,
            origin_address=f"Pickup {i + 1}, Lagos Island",
            destination_address="Murtala Muhammed Airport",
            origin_lat=lat,
            origin_lng=lng,
            dest_lat=6.5774,
            dest_lng=3.3212,
            fare=Decimal(random.choice(["1000", "1500", "2500"])),
            promo_code_id=promo_id if i < 3 else None,
        )
    print("Seeded sample data")


if __name__ == "__main__":
    seed()
