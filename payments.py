"""Payment follow-ups after a ride is settled.

A ride's Payment row is created by ``rides.complete_ride``; this module moves it
through PENDING -> PAID/FAILED and PAID -> REFUNDED. Wallet debits and credits
happen in the same transaction as the status change. Balances are computed in
``Decimal`` and written back guarded on the balance that was read, so a balance
never goes negative and never picks up float drift from the column type.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import update
from sqlmodel import select

from db import transaction
from errors import Conflict, InsufficientFunds, InvalidTransition, NotFound, ValidationError
from models import (
    Driver, Payment, PaymentMethod, PaymentStatus, Ride, Wallet, WalletTransaction, utcnow,
)
from notifications import Outbox, rider_topic
from pricing import CENT

logger = logging.getLogger(__name__)

# REFUNDED is reachable only through refund_payment
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: (PaymentStatus.PAID, PaymentStatus.FAILED),
    PaymentStatus.FAILED: (PaymentStatus.PAID, PaymentStatus.FAILED),
    PaymentStatus.PAID: (),
    PaymentStatus.REFUNDED: (),
}


def _enum(enum_cls, value, label: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"unknown {label} {value!r}")


def _claim_status(session, payment: Payment, target: PaymentStatus, **values) -> None:
    observed = payment.status
    changed = session.exec(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == observed)
        .values(status=target, **values)
    ).rowcount
    session.refresh(payment)
    if changed != 1:
        raise InvalidTransition(payment.status.value, target.value, "payment changed concurrently")


def _load_wallet(session, user_id: int) -> Optional[Wallet]:
    return session.exec(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    ).first()


def _move_balance(session, wallet: Wallet, delta: Decimal, spent: Decimal = Decimal("0.00")) -> Decimal:
    """Write ``balance + delta`` computed in Decimal, guarded on the balance that was read."""
    observed = wallet.balance
    balance = (observed + delta).quantize(CENT)
    moved = session.exec(
        update(Wallet)
        .where(Wallet.id == wallet.id, Wallet.balance == observed)
        .values(balance=balance, total_spent=(wallet.total_spent + spent).quantize(CENT))
    ).rowcount
    if moved != 1:
        raise Conflict("wallet balance changed concurrently", wallet_id=wallet.id)
    session.refresh(wallet)
    return observed


def _debit_wallet(session, user_id: int, amount: Decimal, ride: Ride, now: datetime) -> WalletTransaction:
    wallet = _load_wallet(session, user_id)
    if not wallet or not wallet.is_active:
        raise InsufficientFunds("rider has no active wallet", user_id=user_id)
    if wallet.balance < amount:
        raise InsufficientFunds("insufficient wallet balance", balance=str(wallet.balance), amount=str(amount))
    before = _move_balance(session, wallet, -amount, spent=amount)
    entry = WalletTransaction(
        wallet_id=wallet.id,
        type="ride_payment",
        amount=amount,
        description=f"Payment for ride from {ride.origin_address} to {ride.destination_address}",
        reference_id=ride.id,
        balance_before=before,
        balance_after=wallet.balance,
        created_at=now,
    )
    session.add(entry)
    return entry


def _credit_wallet(session, user_id: int, amount: Decimal, ride_id: int, reason: str,
                   now: datetime) -> Optional[WalletTransaction]:
    wallet = _load_wallet(session, user_id)
    if not wallet:
        return None
    before = _move_balance(session, wallet, amount)
    entry = WalletTransaction(
        wallet_id=wallet.id,
        type="refund",
        amount=amount,
        description=f"Refund for ride payment - {reason}",
        reference_id=ride_id,
        balance_before=before,
        balance_after=wallet.balance,
        created_at=now,
    )
    session.add(entry)
    return entry


def update_payment_status(ride_id: int, status, transaction_id: Optional[str] = None,
                          method=None, now: Optional[datetime] = None) -> Payment:
    status = _enum(PaymentStatus, status, "payment status")
    if status is None:
        raise ValidationError("payment status is required")
    method = _enum(PaymentMethod, method, "payment method")
    now = now or utcnow()

    with transaction() as session:
        outbox = Outbox(session)
        ride = session.get(Ride, ride_id)
        if not ride:
            raise NotFound("ride not found", ride_id=ride_id)
        payment = session.exec(select(Payment).where(Payment.ride_id == ride_id)).first()
        if not payment:
            raise NotFound("no payment record found for this ride", ride_id=ride_id)
        if status not in PAYMENT_TRANSITIONS[payment.status]:
            raise InvalidTransition(payment.status.value, status.value)
        method = method or payment.method

        _claim_status(
            session, payment, status,
            transaction_id=transaction_id or payment.transaction_id,
            method=method,
            processed_at=now if status == PaymentStatus.PAID else payment.processed_at,
        )
        session.exec(update(Ride).where(Ride.id == ride_id).values(payment_status=status, payment_method=method))
        if method == PaymentMethod.WALLET and status == PaymentStatus.PAID:
            _debit_wallet(session, ride.user_id, payment.amount, ride, now)

        if status == PaymentStatus.PAID:
            outbox.notify(
                ride.user_id, "Payment Successful", f"Payment of {payment.amount} has been processed",
                type="payment", data={"ride_id": ride_id, "payment_id": payment.id},
            )
            if ride.driver_id is not None:
                driver = session.get(Driver, ride.driver_id)
                outbox.notify(
                    driver.user_id, "Payment Received", "Payment for your ride has been processed",
                    type="payment", data={"ride_id": ride_id, "earnings": str(payment.driver_earning)},
                )
        elif status == PaymentStatus.FAILED:
            outbox.notify(
                ride.user_id, "Payment Failed", "Your payment could not be processed. Please try again.",
                type="payment", data={"ride_id": ride_id, "payment_id": payment.id},
            )
        outbox.publish(rider_topic(ride.user_id), "payment_updated", payment=payment)

    outbox.deliver()
    logger.info("ride %s: payment %s is now %s (%s)", ride_id, payment.id, status.value, method.value)
    return payment


def refund_payment(payment_id: int, reason: str = "", now: Optional[datetime] = None) -> Payment:
    now = now or utcnow()
    with transaction() as session:
        outbox = Outbox(session)
        payment = session.get(Payment, payment_id)
        if not payment:
            raise NotFound("payment not found", payment_id=payment_id)
        if payment.status != PaymentStatus.PAID:
            raise InvalidTransition(payment.status.value, PaymentStatus.REFUNDED.value, "only paid payments can be refunded")
        ride = session.get(Ride, payment.ride_id)
        _claim_status(session, payment, PaymentStatus.REFUNDED)
        session.exec(update(Ride).where(Ride.id == ride.id).values(payment_status=PaymentStatus.REFUNDED))
        _credit_wallet(session, ride.user_id, payment.amount, ride.id, reason, now)
        message = f"Your payment of {payment.amount} has been refunded."
        if reason:
            message += f" Reason: {reason}"
        outbox.notify(
            ride.user_id, "Payment Refunded", message,
            type="payment", data={"ride_id": ride.id, "payment_id": payment.id},
        )
    outbox.deliver()
    logger.info("payment %s refunded (%s)", payment_id, reason or "no reason given")
    return payment
