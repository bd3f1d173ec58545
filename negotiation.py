"""Rider counter-offers on a pending ride.

Expiry is resolved lazily: a PENDING negotiation whose ``expires_at`` has passed
is flipped to EXPIRED by whichever read or respond touches it first. A
negotiation is respondable while ``now <= expires_at``.
"""
from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

import config
from db import transaction
from errors import Conflict, Expired, Forbidden, InvalidTransition, NotFound, ValidationError
from models import Driver, Negotiation, NegotiationStatus, Ride, RideStatus, utcnow
from notifications import Outbox, rider_topic
from pricing import parse_amount, to_money

logger = logging.getLogger(__name__)


def expire_stale_negotiations(session, now: datetime, ride_id: Optional[int] = None) -> int:
    stmt = (
        update(Negotiation)
        .where(Negotiation.status == NegotiationStatus.PENDING)
        .where(Negotiation.expires_at < now)
        .values(status=NegotiationStatus.EXPIRED)
    )
    if ride_id is not None:
        stmt = stmt.where(Negotiation.ride_id == ride_id)
    expired = session.exec(stmt).rowcount
    if expired:
        logger.debug("expired %d stale negotiation(s)", expired)
    return expired


def propose_negotiation(ride_id: int, user_id: int, proposed_price, now: Optional[datetime] = None) -> Negotiation:
    price = parse_amount(proposed_price, "proposed price")
    now = now or utcnow()
    try:
        with transaction() as session:
            ride = session.get(Ride, ride_id)
            if not ride:
                raise NotFound("ride not found", ride_id=ride_id)
            if ride.user_id != user_id:
                raise Forbidden("this ride does not belong to you")
            if ride.status != RideStatus.PENDING:
                raise InvalidTransition(ride.status.value, "negotiate", "can only negotiate pending rides")
            expire_stale_negotiations(session, now, ride_id)
            outstanding = session.exec(
                select(Negotiation)
                .where(Negotiation.ride_id == ride_id)
                .where(Negotiation.status == NegotiationStatus.PENDING)
            ).first()
            if outstanding:
                raise Conflict("an active negotiation already exists for this ride", negotiation_id=outstanding.id)
            negotiation = Negotiation(
                ride_id=ride_id,
                user_id=user_id,
                proposed_price=price,
                created_at=now,
                expires_at=now + timedelta(minutes=config.NEGOTIATION_WINDOW_MINUTES),
            )
            session.add(negotiation)
            session.flush()
    except IntegrityError as exc:
        raise Conflict("an active negotiation already exists for this ride") from exc
    logger.info("ride %s: negotiation %s proposed at %s", ride_id, negotiation.id, price)
    return negotiation


def respond_negotiation(ride_id: int, negotiation_id: int, driver_id: int, accept: bool,
                        now: Optional[datetime] = None) -> Negotiation:
    if not isinstance(accept, bool):
        raise ValidationError("accept must be a boolean")
    now = now or utcnow()
    target = NegotiationStatus.ACCEPTED if accept else NegotiationStatus.REJECTED
    expired = False
    with transaction() as session:
        outbox = Outbox(session)
        negotiation = session.get(Negotiation, negotiation_id)
        if not negotiation:
            raise NotFound("negotiation not found", negotiation_id=negotiation_id)
        if not session.get(Driver, driver_id):
            raise NotFound("driver not found", driver_id=driver_id)
        if negotiation.status != NegotiationStatus.PENDING:
            raise InvalidTransition(negotiation.status.value, target.value, "negotiation is no longer pending")
        if now > negotiation.expires_at:
            # the expiry is committed even though the response fails
            expire_stale_negotiations(session, now, negotiation.ride_id)
            expired = True
        else:
            if negotiation.ride_id != ride_id:
                raise ValidationError("negotiation does not belong to this ride", negotiation_id=negotiation_id)
            ride = session.get(Ride, ride_id)
            if ride.status != RideStatus.PENDING:
                raise InvalidTransition(ride.status.value, "negotiate", "ride is no longer pending")
            resolved = session.exec(
                update(Negotiation)
                .where(Negotiation.id == negotiation_id, Negotiation.status == NegotiationStatus.PENDING)
                .values(status=target, responded_at=now, responded_by=driver_id)
            ).rowcount
            if resolved != 1:
                raise InvalidTransition(NegotiationStatus.PENDING.value, target.value, "negotiation was already answered")
            if accept:
                priced = session.exec(
                    update(Ride)
                    .where(Ride.id == ride_id, Ride.status == RideStatus.PENDING)
                    .values(negotiated_fare=negotiation.proposed_price)
                ).rowcount
                if priced != 1:
                    raise InvalidTransition(ride.status.value, "negotiate", "ride is no longer pending")
                session.refresh(ride)
                outbox.notify(
                    negotiation.user_id, "Price Negotiation Accepted",
                    f"Your price negotiation of {to_money(negotiation.proposed_price)} has been accepted",
                    data={"ride_id": ride_id, "negotiation_id": negotiation_id, "accepted": True},
                )
            else:
                outbox.notify(
                    negotiation.user_id, "Price Negotiation Rejected",
                    "Your price negotiation has been rejected",
                    data={"ride_id": ride_id, "negotiation_id": negotiation_id, "accepted": False},
                )
            session.refresh(negotiation)
            outbox.publish(rider_topic(negotiation.user_id), "negotiation_responded", negotiation=negotiation)
    if expired:
        raise Expired("negotiation has expired", negotiation_id=negotiation_id)
    outbox.deliver()
    logger.info("ride %s: negotiation %s %s by driver %s", ride_id, negotiation_id, target.value, driver_id)
    return negotiation
