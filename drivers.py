"""Driver presence: where a driver is and whether they take rides.

These writes feed ``matching.nearby_drivers``; the lifecycle engine only reads them.
"""
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import update

from db import transaction
from errors import Forbidden, NotFound, ValidationError
from matching import validate_point
from models import AccountStatus, Driver, User, utcnow
from notifications import Outbox, driver_topic

logger = logging.getLogger(__name__)


def _get_driver(session, driver_id: int) -> Driver:
    driver = session.get(Driver, driver_id)
    if not driver:
        raise NotFound("driver not found", driver_id=driver_id)
    return driver


def update_driver_location(driver_id: int, latitude: float, longitude: float,
                           now: Optional[datetime] = None) -> Driver:
    validate_point(latitude, longitude, "driver")
    now = now or utcnow()
    with transaction() as session:
        outbox = Outbox(session)
        driver = _get_driver(session, driver_id)
        driver.current_lat = latitude
        driver.current_lng = longitude
        session.add(driver)
        session.exec(update(User).where(User.id == driver.user_id).values(last_active_at=now))
        outbox.publish(
            driver_topic(driver_id), "driver_location_updated",
            driver_id=driver_id, location={"latitude": latitude, "longitude": longitude},
        )
    outbox.deliver()
    return driver


def set_driver_online(driver_id: int, is_online: bool, now: Optional[datetime] = None) -> Driver:
    if not isinstance(is_online, bool):
        raise ValidationError("is_online must be a boolean")
    now = now or utcnow()
    with transaction() as session:
        outbox = Outbox(session)
        driver = _get_driver(session, driver_id)
        if is_online:
            if not driver.is_verified:
                raise Forbidden("driver must be verified before going online")
            user = session.get(User, driver.user_id)
            if user.account_status != AccountStatus.ACTIVE:
                raise Forbidden("user account must be active to go online")
        else:
            # an offline driver has no position worth matching on
            driver.current_lat = None
            driver.current_lng = None
        driver.is_online = is_online
        session.add(driver)
        session.exec(update(User).where(User.id == driver.user_id).values(last_active_at=now))
        outbox.publish(driver_topic(driver_id), "driver_online_status_changed",
                       driver_id=driver_id, is_online=is_online)
    outbox.deliver()
    logger.info("driver %s is now %s", driver_id, "online" if is_online else "offline")
    return driver
