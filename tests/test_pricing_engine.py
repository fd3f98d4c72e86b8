import pytest

import pricing_config as cfg
from exceptions import ValidationError
from pricing_engine import (
    PriceInputs,
    base_cost_mxn,
    calculate_price,
    card_price,
    catalog_base_cost,
    is_equipment,
    line_total,
    normalize_tier,
    price_for_tier,
    profit_margin,
    tier_discount_percent,
    with_tax,
)

UNSET = (None, None, None, None, None)


class TestPriceForTier:
    @pytest.mark.parametrize("tier", cfg.PRICING_TIERS)
    @pytest.mark.parametrize("base", [0.0, 0.01, 19.99, 100.0, 1234.56])
    def test_price_stays_between_zero_and_base(self, base, tier):
        price = price_for_tier(base, (0, 5, 12.5, 30, 45), tier)
        assert 0 <= price <= base
        assert price == round(price, 2)

    def test_unset_discount_uses_fallback_table(self):
        assert price_for_tier(100.0, UNSET, 3) == 80.00
        assert price_for_tier(100.0, UNSET, 5) == 70.00

    def test_explicit_zero_is_not_treated_as_unset(self):
        assert price_for_tier(100.0, (0, 0, 0, 0, 0), 3) == 100.00

    def test_configured_discount_is_clamped(self):
        assert tier_discount_percent((50, None, -10, None, None), 1) == cfg.MAX_TIER_DISCOUNT
        assert tier_discount_percent((50, None, -10, None, None), 3) == cfg.MIN_TIER_DISCOUNT
        assert price_for_tier(100.0, (50, None, None, None, None), 1) == 70.00

    @pytest.mark.parametrize("tier", [0, 6, -1, 99])
    def test_unknown_tier_gets_no_discount(self, tier):
        assert price_for_tier(100.0, UNSET, tier) == 100.00

    def test_negative_base_is_rejected(self):
        with pytest.raises(ValidationError):
            price_for_tier(-1.0, UNSET, 1)

    def test_tier_two_example(self):
        unit = price_for_tier(50.00, (None, 15, None, None, None), 2)
        assert unit == 42.50
        assert line_total(3, unit) == 127.50


class TestCardPrice:
    def test_tier_three_card_price(self):
        discounts = (None, None, 20, None, None)
        assert price_for_tier(100.0, discounts, 3) == 80.00
        assert card_price(100.0, discounts, 3) == 72.00

    def test_card_price_rounds_to_cents(self):
        assert card_price(33.33, UNSET, 1) == round(round(33.33 * 0.9, 2) * 0.9, 2)


class TestHelpers:
    def test_with_tax(self):
        assert with_tax(100) == {"subtotal": 100.0, "tax": 16.0, "total": 116.0}

    @pytest.mark.parametrize("raw,expected", [(3, 3), ("2", 2), (None, 1), ("", 1), ("abc", 1), (0, 1)])
    def test_normalize_tier(self, raw, expected):
        assert normalize_tier(raw) == expected

    def test_catalog_base_cost_prefers_selling_price(self):
        assert catalog_base_cost({"price": 120.0, "base_price_mxn": 90.0}) == 120.0
        assert catalog_base_cost({"price": None, "base_price_mxn": 90.0}) == 90.0
        assert catalog_base_cost({}) == 0.0

    def test_equipment_categories(self):
        assert is_equipment("Sensor")
        assert is_equipment("dispositivo")
        assert not is_equipment("servicio")
        assert not is_equipment(None)

    def test_usd_cost_is_converted(self):
        cost = base_cost_mxn("USD", supplier_list_price=100, supplier_discount_pct=10, exchange_rate=20)
        assert cost == pytest.approx(1800.0)
        assert base_cost_mxn("MXN", cost_price_mxn=250) == 250.0

    def test_unsupported_currency(self):
        with pytest.raises(ValidationError):
            base_cost_mxn("EUR", cost_price_mxn=1)

    def test_profit_margin(self):
        assert profit_margin(80, 100) == 25.0
        assert profit_margin(0, 100) == 0.0


def test_calculate_price_breakdown():
    result = calculate_price(
        PriceInputs(base_cost=50.0, tier=2, tier_discounts=(10, 15, 20, 25, 30), quantity=3, card_discount=True)
    )
    assert result["tier_discount_pct"] == 15
    assert result["tier_unit_price"] == 42.50
    assert result["unit_price"] == 38.25
    assert result["line_total"] == 114.75
    assert result["total_with_tax"] == pytest.approx(133.11)


def test_calculate_price_rejects_bad_input():
    with pytest.raises(ValidationError):
        calculate_price(PriceInputs(base_cost=10.0, quantity=0))
    with pytest.raises(ValidationError):
        calculate_price(PriceInputs(base_cost=10.0, tier_discounts=(10, 15)))
