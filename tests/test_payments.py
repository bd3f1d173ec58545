from datetime import timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

from db import get_session
from errors import InsufficientFunds, InvalidTransition, NotFound, ValidationError
from models import Driver, Earning, Payment, PaymentMethod, PaymentStatus, Ride, Wallet, WalletTransaction
import payments
import rides
from helpers import T0, fetch, make_wallet, ride_in_progress


def _ledger(wallet_id):
    session = get_session()
    rows = session.exec(
        select(WalletTransaction).where(WalletTransaction.wallet_id == wallet_id).order_by(WalletTransaction.id)
    ).all()
    session.close()
    return rows


def _completed(method, fare="1000"):
    ride, rider, driver = ride_in_progress(fare=fare)
    done = rides.complete_ride(ride.id, driver.id, payment_method=method)
    return done, rider


# ────────────────────────── wallet payments ─────────────────────────────────

def test_wallet_payment_debits_balance(notified):
    done, rider = _completed(PaymentMethod.WALLET)
    wallet = make_wallet(rider.id, balance="1500")
    assert done.payment.status == PaymentStatus.PENDING

    paid = payments.update_payment_status(done.ride.id, "PAID", transaction_id="txn-1")
    assert paid.status == PaymentStatus.PAID
    assert paid.transaction_id == "txn-1"
    assert paid.processed_at is not None
    assert fetch(Ride, done.ride.id).payment_status == PaymentStatus.PAID

    stored = fetch(Wallet, wallet.id)
    assert stored.balance == Decimal("500.00")
    assert stored.total_spent == Decimal("1000.00")
    [entry] = _ledger(wallet.id)
    assert entry.type == "ride_payment"
    assert entry.balance_before == Decimal("1500.00")
    assert entry.balance_after == Decimal("500.00")
    assert "Payment Successful" in notified.titles_for(rider.id)


def test_insufficient_balance_rolls_back():
    done, rider = _completed(PaymentMethod.WALLET)
    wallet = make_wallet(rider.id, balance="999.99")
    with pytest.raises(InsufficientFunds):
        payments.update_payment_status(done.ride.id, PaymentStatus.PAID)
    assert fetch(Payment, done.payment.id).status == PaymentStatus.PENDING
    assert fetch(Wallet, wallet.id).balance == Decimal("999.99")
    assert _ledger(wallet.id) == []


def test_wallet_debits_stay_exact_to_the_cent():
    ride, rider, driver = ride_in_progress(fare="0.40")
    wallet = make_wallet(rider.id, balance="0.70")
    rides.complete_ride(ride.id, driver.id, payment_method=PaymentMethod.WALLET, now=T0 + timedelta(minutes=30))
    payments.update_payment_status(ride.id, PaymentStatus.PAID)
    assert fetch(Wallet, wallet.id).balance == Decimal("0.30")

    # 0.70 - 0.40 is 0.29999999999999993 in binary floating point
    second, _, _ = ride_in_progress(rider=rider, driver=driver, fare="0.30")
    rides.complete_ride(second.id, driver.id, payment_method=PaymentMethod.WALLET, now=T0 + timedelta(minutes=30))
    payments.update_payment_status(second.id, PaymentStatus.PAID)

    stored = fetch(Wallet, wallet.id)
    assert stored.balance == Decimal("0.00")
    assert stored.total_spent == Decimal("0.70")
    assert [e.balance_after for e in _ledger(wallet.id)] == [Decimal("0.30"), Decimal("0.00")]
    assert fetch(Driver, driver.id).total_earnings == Decimal("0.59")
    session = get_session()
    [day] = session.exec(select(Earning).where(Earning.driver_id == driver.id)).all()
    session.close()
    assert (day.amount, day.ride_count, day.total_fares) == (Decimal("0.59"), 2, Decimal("0.70"))


def test_wallet_method_without_wallet():
    done, _ = _completed(PaymentMethod.WALLET)
    with pytest.raises(InsufficientFunds):
        payments.update_payment_status(done.ride.id, "PAID")


def test_method_switch_to_wallet_is_debited():
    done, rider = _completed(PaymentMethod.CARD)
    wallet = make_wallet(rider.id, balance="2000")
    payments.update_payment_status(done.ride.id, "PAID", method="WALLET")
    assert fetch(Wallet, wallet.id).balance == Decimal("1000.00")
    assert fetch(Payment, done.payment.id).method == PaymentMethod.WALLET


def test_failed_payment_can_be_retried(notified):
    done, rider = _completed(PaymentMethod.CARD)
    failed = payments.update_payment_status(done.ride.id, "FAILED")
    assert failed.status == PaymentStatus.FAILED
    assert "Payment Failed" in notified.titles_for(rider.id)
    assert payments.update_payment_status(done.ride.id, "PAID").status == PaymentStatus.PAID
    with pytest.raises(InvalidTransition):
        payments.update_payment_status(done.ride.id, "FAILED")


def test_update_payment_rejects_bad_input():
    done, _ = _completed(PaymentMethod.CARD)
    with pytest.raises(ValidationError):
        payments.update_payment_status(done.ride.id, "LOST")
    with pytest.raises(ValidationError):
        payments.update_payment_status(done.ride.id, None)
    with pytest.raises(NotFound):
        payments.update_payment_status(999, "PAID")
    with pytest.raises(InvalidTransition):
        payments.update_payment_status(done.ride.id, "REFUNDED")


def test_payment_requires_completed_ride():
    ride, _, _ = ride_in_progress()
    with pytest.raises(NotFound):
        payments.update_payment_status(ride.id, "PAID")


# ────────────────────────── refunds ─────────────────────────────────────────

def test_refund_credits_wallet(notified):
    done, rider = _completed(PaymentMethod.CASH)
    wallet = make_wallet(rider.id, balance="10")
    refunded = payments.refund_payment(done.payment.id, reason="driver no-show")
    assert refunded.status == PaymentStatus.REFUNDED
    assert fetch(Ride, done.ride.id).payment_status == PaymentStatus.REFUNDED
    assert fetch(Wallet, wallet.id).balance == Decimal("1010.00")
    [entry] = _ledger(wallet.id)
    assert entry.type == "refund"
    assert entry.amount == Decimal("1000.00")
    [note] = [n for n in notified.sent if n["title"] == "Payment Refunded"]
    assert note["message"].endswith("Reason: driver no-show")


def test_refund_without_wallet_or_reason(notified):
    done, _ = _completed(PaymentMethod.CASH)
    assert payments.refund_payment(done.payment.id).status == PaymentStatus.REFUNDED
    [note] = [n for n in notified.sent if n["title"] == "Payment Refunded"]
    assert "Reason" not in note["message"]


def test_only_paid_payments_refund():
    done, _ = _completed(PaymentMethod.CARD)
    with pytest.raises(InvalidTransition):
        payments.refund_payment(done.payment.id)
    payments.update_payment_status(done.ride.id, "PAID")
    payments.refund_payment(done.payment.id)
    with pytest.raises(InvalidTransition):
        payments.refund_payment(done.payment.id)
    with pytest.raises(NotFound):
        payments.refund_payment(999)
