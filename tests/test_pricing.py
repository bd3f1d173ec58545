from datetime import timedelta
from decimal import Decimal

import pytest

from errors import ValidationError
from models import DiscountType, PromoCode
from pricing import (
    PromoRule, base_fare, check_promo_eligibility, parse_amount, promo_discount, settle,
)
from helpers import T0


def _promo(**overrides):
    fields = dict(
        id=1, code="P", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"),
        max_discount=None, min_ride_amount=None, usage_limit=None, usage_count=0, user_limit=None,
        valid_from=T0 - timedelta(days=1), valid_until=T0 + timedelta(days=1), is_active=True,
    )
    fields.update(overrides)
    return PromoCode(**fields)


# ────────────────────────── settlement ──────────────────────────────────────

def test_capped_percentage_promo_settlement():
    s = settle(Decimal("1000"), promo=PromoRule("percentage", Decimal("10"), Decimal("80")),
               commission_rate=Decimal("0.15"))
    assert s.promo_discount == Decimal("80.00")
    assert s.final_amount == Decimal("920.00")
    assert s.platform_fee == Decimal("138.00")
    assert s.driver_earning == Decimal("782.00")


@pytest.mark.parametrize("fare", ["0.01", "19.99", "333.33", "1234.57", "99999.99"])
def test_fee_and_earning_add_up_to_final_amount(fare):
    s = settle(Decimal(fare), commission_rate=Decimal("0.15"))
    assert s.platform_fee + s.driver_earning == s.final_amount
    assert s.platform_fee == s.platform_fee.quantize(Decimal("0.01"))


def test_base_fare_prefers_override_then_negotiated():
    assert base_fare(Decimal("1000")) == Decimal("1000.00")
    assert base_fare(Decimal("1000"), Decimal("900")) == Decimal("900.00")
    assert base_fare(Decimal("1000"), Decimal("900"), Decimal("1100")) == Decimal("1100.00")


def test_negotiated_fare_drives_settlement():
    s = settle(Decimal("1000"), negotiated_fare=Decimal("800"), commission_rate=Decimal("0.10"))
    assert s.base_fare == Decimal("800.00")
    assert s.platform_fee == Decimal("80.00")
    assert s.driver_earning == Decimal("720.00")


def test_fixed_discount_never_exceeds_fare():
    rule = PromoRule("fixed", Decimal("500"))
    assert promo_discount(Decimal("300"), rule) == Decimal("300.00")
    s = settle(Decimal("300"), promo=rule)
    assert s.final_amount == Decimal("0.00")
    assert s.platform_fee == Decimal("0.00")


def test_uncapped_percentage_discount():
    assert promo_discount(Decimal("1000"), PromoRule("percentage", Decimal("10"))) == Decimal("100.00")


def test_commission_rate_is_configurable():
    s = settle(Decimal("200"), commission_rate=Decimal("0.2"))
    assert s.platform_fee == Decimal("40.00")
    assert settle(Decimal("200"), commission_rate=Decimal("0")).driver_earning == Decimal("200.00")


@pytest.mark.parametrize("rate", ["-0.01", "1.5"])
def test_commission_rate_out_of_range(rate):
    with pytest.raises(ValidationError):
        settle(Decimal("100"), commission_rate=Decimal(rate))


def test_settle_rejects_non_positive_fare():
    with pytest.raises(ValidationError):
        settle(Decimal("0"))


def test_fee_rounds_half_up():
    # 0.15 * 10.10 == 1.515
    assert settle(Decimal("10.10")).platform_fee == Decimal("1.52")


# ────────────────────────── amounts ─────────────────────────────────────────

def test_parse_amount_quantizes():
    assert parse_amount("12.345") == Decimal("12.35")
    assert parse_amount(7) == Decimal("7.00")


@pytest.mark.parametrize("bad", ["abc", 0, -5, True, None, "NaN"])
def test_parse_amount_rejects(bad):
    with pytest.raises(ValidationError):
        parse_amount(bad, "fare")


# ────────────────────────── promo eligibility ───────────────────────────────

def test_eligible_promo_passes():
    check_promo_eligibility(_promo(), Decimal("500"), 0, T0)


@pytest.mark.parametrize("overrides, usage, message", [
    ({"is_active": False}, 0, "not active"),
    ({"valid_until": T0 - timedelta(seconds=1)}, 0, "expired"),
    ({"valid_from": T0 + timedelta(hours=1)}, 0, "not active"),
    ({"usage_limit": 5, "usage_count": 5}, 0, "usage limit"),
    ({"user_limit": 1}, 1, "maximum number"),
    ({"min_ride_amount": Decimal("1000")}, 0, "minimum ride amount"),
])
def test_ineligible_promo(overrides, usage, message):
    with pytest.raises(ValidationError) as exc:
        check_promo_eligibility(_promo(**overrides), Decimal("500"), usage, T0)
    assert message in exc.value.detail
