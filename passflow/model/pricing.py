"""
Pricing engine and the typed pass configuration.

Configuration documents arrive as loosely typed JSON written by the admin
surface. ``parse_configuration`` turns one into a ``PassConfiguration`` once,
at load time; everything downstream works on the typed model.

Pricing is pure: the same (pricing, guests, days) always yields the same
amount, to the cent. Commission is a flat amount added before tax, which is
how existing configurations have always been priced.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Union

from ..errors import (
    InvalidConfiguration, InvalidDeliveryMethod, InvalidGuestsOrDays,
)
from ..helpers import quantize, to_decimal
from .db import BOTH, DELIVERY_METHODS, DIRECT, DEFAULT_CONFIGURATION

FIXED = "FIXED"
VARIABLE = "VARIABLE"

ZERO = Decimal("0")


@dataclass(frozen=True)
class FixedPricing:
    price: Decimal
    kind: str = field(default=FIXED, init=False)


@dataclass(frozen=True)
class VariablePricing:
    base_price: Decimal
    guest_increase: Decimal = ZERO
    day_increase: Decimal = ZERO
    commission: Decimal = ZERO
    include_tax: bool = False
    tax_percentage: Decimal = ZERO
    kind: str = field(default=VARIABLE, init=False)


Pricing = Union[FixedPricing, VariablePricing]


@dataclass(frozen=True)
class PriceBreakdown:
    base: Decimal
    guests: Decimal
    days: Decimal
    commission: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class PassConfiguration:
    id: str
    name: str
    pricing: Pricing
    delivery_method: str = DIRECT
    min_guests: int = 1
    max_guests: int = 10
    min_days: int = 1
    max_days: int = 30
    guests_locked: bool = False
    guests_default: int = 1
    days_locked: bool = False
    days_default: int = 1
    send_rebuy_email: bool = False

    @property
    def is_default(self) -> bool:
        return self.id == DEFAULT_CONFIGURATION

    def validate(self, guests: int, days: int) -> None:
        if guests < self.min_guests or guests > self.max_guests:
            raise InvalidGuestsOrDays(
                guests, days,
                f"guests must be {self.min_guests}..{self.max_guests}"
            )
        if days < self.min_days or days > self.max_days:
            raise InvalidGuestsOrDays(
                guests, days, f"days must be {self.min_days}..{self.max_days}"
            )
        if self.guests_locked and guests != self.guests_default:
            raise InvalidGuestsOrDays(
                guests, days, f"guests locked to {self.guests_default}"
            )
        if self.days_locked and days != self.days_default:
            raise InvalidGuestsOrDays(
                guests, days, f"days locked to {self.days_default}"
            )

    def delivery_for(self, requested: str | None) -> str:
        """Delivery method for a seller request; BOTH lets the seller pick."""
        if not requested:
            return self.delivery_method
        requested = requested.upper()
        if requested not in DELIVERY_METHODS:
            raise InvalidDeliveryMethod(requested, self.delivery_method)
        if self.delivery_method != BOTH and requested != self.delivery_method:
            raise InvalidDeliveryMethod(requested, self.delivery_method)
        return requested


# processor orders carry no seller configuration: free pass, direct delivery
BUILTIN_DEFAULT = PassConfiguration(
    id=DEFAULT_CONFIGURATION,
    name="Default Configuration",
    pricing=FixedPricing(price=ZERO),
    delivery_method=DIRECT,
    max_guests=50,
    max_days=365,
)


# ----------------------------
# Pricing
# ----------------------------
def breakdown(pricing: Pricing, guests: int, days: int) -> PriceBreakdown:
    if isinstance(pricing, FixedPricing):
        price = quantize(pricing.price)
        return PriceBreakdown(price, ZERO, ZERO, ZERO, ZERO, price)

    extra_guests = max(0, guests - 1)
    extra_days = max(0, days - 1)
    guest_amount = pricing.guest_increase * extra_guests
    day_amount = pricing.day_increase * extra_days
    amount = pricing.base_price + guest_amount + day_amount

    commission = ZERO
    if pricing.commission > 0:
        commission = pricing.commission
        amount += commission

    tax = ZERO
    if pricing.include_tax and pricing.tax_percentage > 0:
        tax = quantize(amount * pricing.tax_percentage / 100)
        amount += tax

    return PriceBreakdown(
        base=quantize(pricing.base_price),
        guests=quantize(guest_amount),
        days=quantize(day_amount),
        commission=quantize(commission),
        tax=tax,
        total=quantize(amount),
    )


def price(pricing: Pricing, guests: int, days: int) -> Decimal:
    return breakdown(pricing, guests, days).total


# ----------------------------
# Boundary parsing
# ----------------------------
def _amount(doc: Dict[str, Any], key: str) -> Decimal:
    try:
        value = to_decimal(doc.get(key))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidConfiguration(f"{key} is not a number: {doc.get(key)!r}")
    if value < 0:
        raise InvalidConfiguration(f"{key} must not be negative")
    return value


def _int(doc: Dict[str, Any], key: str, default: int) -> int:
    raw = doc.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidConfiguration(f"{key} is not an integer: {raw!r}")


def parse_pricing(doc: Dict[str, Any]) -> Pricing:
    kind = str(doc.get("button2PricingType") or FIXED).upper()
    if kind == FIXED:
        return FixedPricing(price=_amount(doc, "button2FixedPrice"))
    if kind == VARIABLE:
        return VariablePricing(
            base_price=_amount(doc, "button2VariableBasePrice"),
            guest_increase=_amount(doc, "button2VariableGuestIncrease"),
            day_increase=_amount(doc, "button2VariableDayIncrease"),
            commission=_amount(doc, "button2VariableCommission"),
            include_tax=bool(doc.get("button2IncludeTax")),
            tax_percentage=_amount(doc, "button2TaxPercentage"),
        )
    raise InvalidConfiguration(f"unknown pricing type {kind!r}")


def parse_configuration(
        config_id: str, name: str, doc: Dict[str, Any]
) -> PassConfiguration:
    if not isinstance(doc, dict):
        raise InvalidConfiguration(f"configuration {config_id} is not a map")

    delivery = str(doc.get("button3DeliveryMethod") or DIRECT).upper()
    if delivery not in DELIVERY_METHODS:
        raise InvalidConfiguration(f"unknown delivery method {delivery!r}")

    max_guests = _int(doc, "button1GuestsRangeMax", 10)
    max_days = _int(doc, "button1DaysRangeMax", 30)
    if max_guests < 1 or max_days < 1:
        raise InvalidConfiguration("guest/day range must allow at least 1")

    return PassConfiguration(
        id=config_id,
        name=name,
        pricing=parse_pricing(doc),
        delivery_method=delivery,
        max_guests=max_guests,
        max_days=max_days,
        guests_locked=bool(doc.get("button1GuestsLocked")),
        guests_default=_int(doc, "button1GuestsDefault", 1),
        days_locked=bool(doc.get("button1DaysLocked")),
        days_default=_int(doc, "button1DaysDefault", 1),
        send_rebuy_email=bool(doc.get("button5SendRebuyEmail")),
    )
