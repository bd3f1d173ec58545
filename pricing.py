"""Fare and settlement arithmetic.

Everything here is a pure function of its arguments so it can be tested without
a database. Money is ``Decimal`` quantized to cents; the platform fee is the
only rounded figure and the driver earning is derived from it by subtraction,
so ``platform_fee + driver_earning == final_amount`` always holds.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value, label: str = "amount") -> Decimal:
    """Strictly positive money amount from client input."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{label} must be a number")
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{label} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{label} must be greater than 0")
    return amount


@dataclass(frozen=True)
class PromoRule:
    discount_type: str  # percentage, fixed
    discount_value: Decimal
    max_discount: Optional[Decimal] = None

    @classmethod
    def from_code(cls, promo) -> "PromoRule":
        return cls(
            discount_type=getattr(promo.discount_type, "value", promo.discount_type),
            discount_value=Decimal(promo.discount_value),
            max_discount=Decimal(promo.max_discount) if promo.max_discount is not None else None,
        )


@dataclass(frozen=True)
class Settlement:
    base_fare: Decimal
    promo_discount: Decimal
    final_amount: Decimal
    platform_fee: Decimal
    driver_earning: Decimal


def base_fare(original_fare, negotiated_fare=None, final_fare=None) -> Decimal:
    """Driver override wins, then an accepted negotiation, then the rider's offer."""
    for candidate in (final_fare, negotiated_fare, original_fare):
        if candidate is not None:
            return to_money(candidate)
    raise ValidationError("ride has no fare")


def promo_discount(fare: Decimal, rule: Optional[PromoRule]) -> Decimal:
    if rule is None:
        return ZERO
    if rule.discount_type == "percentage":
        discount = fare * rule.discount_value / Decimal(100)
    else:
        discount = rule.discount_value
    if rule.max_discount is not None and discount > rule.max_discount:
        discount = rule.max_discount
    # a discount never pushes the fare below zero
    return to_money(min(discount, fare))


def settle(original_fare, negotiated_fare=None, final_fare=None,
           promo: Optional[PromoRule] = None, commission_rate: Decimal = Decimal("0.15")) -> Settlement:
    fare = base_fare(original_fare, negotiated_fare, final_fare)
    if fare <= 0:
        raise ValidationError("fare must be greater than 0", fare=str(fare))
    rate = Decimal(commission_rate)
    if rate < 0 or rate > 1:
        raise ValidationError("commission rate must be within [0, 1]", commission_rate=str(rate))
    discount = promo_discount(fare, promo)
    final_amount = fare - discount
    platform_fee = to_money(final_amount * rate)
    return Settlement(
        base_fare=fare,
        promo_discount=discount,
        final_amount=final_amount,
        platform_fee=platform_fee,
        driver_earning=final_amount - platform_fee,
    )


def check_promo_eligibility(promo, fare: Decimal, user_usage_count: int, now: datetime) -> None:
    """Raise ValidationError when ``promo`` cannot be applied to a ride of ``fare``."""
    if not promo.is_active or now < promo.valid_from or now > promo.valid_until:
        raise ValidationError("promo code is not active or has expired", promo_code_id=promo.id)
    if promo.usage_limit is not None and promo.usage_count >= promo.usage_limit:
        raise ValidationError("promo code usage limit exceeded", promo_code_id=promo.id)
    if promo.user_limit is not None and user_usage_count >= promo.user_limit:
        raise ValidationError("promo code already used the maximum number of times", promo_code_id=promo.id)
    if promo.min_ride_amount is not None and fare < Decimal(promo.min_ride_amount):
        raise ValidationError(
            f"minimum ride amount of {to_money(promo.min_ride_amount)} required for this promo",
            promo_code_id=promo.id,
        )
