from decimal import Decimal

import pytest

from passflow.errors import (
    InvalidConfiguration, InvalidDeliveryMethod, InvalidGuestsOrDays,
)
from passflow.model.pricing import (
    BUILTIN_DEFAULT, FIXED, VARIABLE, FixedPricing, VariablePricing,
    breakdown, parse_configuration, price,
)


def test_fixed_price_ignores_guests_and_days():
    p = FixedPricing(price=Decimal("25"))
    assert price(p, 1, 1) == Decimal("25.00")
    assert price(p, 7, 30) == Decimal("25.00")
    assert breakdown(p, 7, 30).tax == 0


def test_variable_price_adds_increments_beyond_first():
    p = VariablePricing(
        base_price=Decimal("10"),
        guest_increase=Decimal("5"),
        day_increase=Decimal("3"),
    )
    # 10 + 2*5 + 4*3
    assert price(p, 3, 5) == Decimal("32.00")
    assert price(p, 1, 1) == Decimal("10.00")


def test_commission_is_flat_and_taxed():
    p = VariablePricing(
        base_price=Decimal("10"),
        commission=Decimal("2"),
        include_tax=True,
        tax_percentage=Decimal("10"),
    )
    b = breakdown(p, 1, 1)
    assert b.commission == Decimal("2.00")
    assert b.tax == Decimal("1.20")
    assert b.total == Decimal("13.20")


def test_tax_disabled_keeps_percentage_out():
    p = VariablePricing(base_price=Decimal("10"),
                        tax_percentage=Decimal("16"))
    assert price(p, 1, 1) == Decimal("10.00")


def test_rounds_half_up_to_cents():
    p = VariablePricing(base_price=Decimal("10"),
                        guest_increase=Decimal("0.333"))
    assert price(p, 3, 1) == Decimal("10.67")


def test_pricing_is_deterministic():
    p = VariablePricing(
        base_price=Decimal("12.5"),
        guest_increase=Decimal("3.1"),
        day_increase=Decimal("1.7"),
        commission=Decimal("0.9"),
        include_tax=True,
        tax_percentage=Decimal("8.25"),
    )
    assert len({price(p, 4, 6) for _ in range(20)}) == 1


def test_parse_variable_configuration():
    cfg = parse_configuration("cfg-1", "Beach", {
        "button2PricingType": "variable",
        "button2VariableBasePrice": "10",
        "button2VariableGuestIncrease": 5,
        "button2VariableDayIncrease": "3",
        "button2VariableCommission": 0,
        "button2IncludeTax": True,
        "button2TaxPercentage": "16",
        "button3DeliveryMethod": "url",
        "button1GuestsRangeMax": 6,
        "button1DaysRangeMax": 14,
        "button5SendRebuyEmail": True,
    })
    assert cfg.pricing.kind == VARIABLE
    assert cfg.pricing.base_price == Decimal("10")
    assert cfg.delivery_method == "URL"
    assert (cfg.max_guests, cfg.max_days) == (6, 14)
    assert cfg.send_rebuy_email is True
    assert not cfg.is_default


def test_parse_defaults_to_fixed():
    cfg = parse_configuration("cfg-2", "Plain", {"button2FixedPrice": 15})
    assert cfg.pricing.kind == FIXED
    assert cfg.pricing.price == Decimal("15")


@pytest.mark.parametrize("doc", [
    {"button2PricingType": "TIERED"},
    {"button2PricingType": "FIXED", "button2FixedPrice": "cheap"},
    {"button2PricingType": "VARIABLE", "button2VariableBasePrice": "-1"},
    {"button3DeliveryMethod": "PIGEON"},
    {"button1GuestsRangeMax": "many"},
])
def test_parse_rejects_malformed_documents(doc):
    with pytest.raises(InvalidConfiguration):
        parse_configuration("bad", "Bad", doc)


def test_validate_bounds():
    cfg = parse_configuration("cfg", "Cfg", {
        "button1GuestsRangeMax": 4, "button1DaysRangeMax": 7,
    })
    cfg.validate(4, 7)
    with pytest.raises(InvalidGuestsOrDays):
        cfg.validate(0, 1)
    with pytest.raises(InvalidGuestsOrDays):
        cfg.validate(5, 1)
    with pytest.raises(InvalidGuestsOrDays):
        cfg.validate(1, 8)


def test_validate_locked_values():
    cfg = parse_configuration("cfg", "Cfg", {
        "button1GuestsLocked": True, "button1GuestsDefault": 2,
    })
    cfg.validate(2, 3)
    with pytest.raises(InvalidGuestsOrDays):
        cfg.validate(3, 3)


def test_builtin_default_is_free_and_direct():
    assert BUILTIN_DEFAULT.is_default
    assert price(BUILTIN_DEFAULT.pricing, 10, 100) == Decimal("0.00")
    assert BUILTIN_DEFAULT.delivery_method == "DIRECT"


def test_delivery_method_follows_configuration():
    both = parse_configuration("c", "C", {"button3DeliveryMethod": "BOTH"})
    assert both.delivery_for(None) == "BOTH"
    assert both.delivery_for("url") == "URL"
    assert both.delivery_for("DIRECT") == "DIRECT"

    direct = parse_configuration("d", "D", {"button3DeliveryMethod": "DIRECT"})
    assert direct.delivery_for(None) == "DIRECT"
    with pytest.raises(InvalidDeliveryMethod):
        direct.delivery_for("URL")
    with pytest.raises(InvalidDeliveryMethod):
        both.delivery_for("CARRIER_PIGEON")
