# pricing_engine.py
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence

import pricing_config as cfg
from exceptions import ValidationError


@dataclass(frozen=True)
class PriceInputs:
    base_cost: float
    tier: int = cfg.DEFAULT_PRICING_TIER
    tier_discounts: Sequence[Optional[float]] = field(default_factory=lambda: (None,) * 5)
    quantity: int = 1
    card_discount: bool = False


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ValidationError(msg)


def _money(x: float) -> float:
    return round(float(x), 2)


def clamp_discount(percent: float) -> float:
    return min(max(float(percent), cfg.MIN_TIER_DISCOUNT), cfg.MAX_TIER_DISCOUNT)


def tier_discount_percent(tier_discounts: Sequence[Optional[float]], tier: int) -> float:
    """
    Percent that applies to `tier`.

    Unknown tiers get no discount. A tier whose value is missing falls back
    to TIER_DISCOUNT_FALLBACK instead of 0.
    """
    if tier not in cfg.PRICING_TIERS:
        return 0.0

    idx = tier - 1
    configured = tier_discounts[idx] if idx < len(tier_discounts) else None
    if configured is None:
        return cfg.TIER_DISCOUNT_FALLBACK[tier]

    return clamp_discount(configured)


def price_for_tier(base_cost: float, tier_discounts: Sequence[Optional[float]], tier: int) -> float:
    _require(base_cost is not None and base_cost >= 0, "base cost must be >= 0")
    pct = tier_discount_percent(tier_discounts, tier)
    return _money(base_cost * (1 - pct / 100))


def card_price(base_cost: float, tier_discounts: Sequence[Optional[float]], tier: int) -> float:
    tier_price = price_for_tier(base_cost, tier_discounts, tier)
    return _money(tier_price * cfg.CARD_DISCOUNT_MULTIPLIER)


def line_total(quantity: float, unit_price: float) -> float:
    return _money(quantity * unit_price)


def order_total(labor_cost: Optional[float], materials_cost: Optional[float]) -> float:
    return _money((labor_cost or 0) + (materials_cost or 0))


def with_tax(amount: float) -> Dict[str, float]:
    tax = _money(amount * cfg.TAX_RATE)
    return {"subtotal": _money(amount), "tax": tax, "total": _money(amount * (1 + cfg.TAX_RATE))}


# ----------------------------
# Catalog rows
# ----------------------------
def normalize_tier(raw: Any) -> int:
    try:
        tier = int(raw)
    except (TypeError, ValueError):
        return cfg.DEFAULT_PRICING_TIER
    return tier or cfg.DEFAULT_PRICING_TIER


def tier_discounts_of(item: Mapping[str, Any]) -> list:
    return [item.get(f"discount_tier_{t}") for t in cfg.PRICING_TIERS]


def catalog_base_cost(item: Mapping[str, Any]) -> float:
    # Public selling price wins over the normalized cost
    return float(item.get("price") or item.get("base_price_mxn") or 0)


def is_equipment(category: Optional[str]) -> bool:
    return (category or "").strip().lower() in cfg.EQUIPMENT_CATEGORIES


def supplier_cost_usd(list_price: float, supplier_discount_pct: float = 0.0) -> float:
    return list_price * (1 - (supplier_discount_pct or 0) / 100)


def base_cost_mxn(
    currency: str,
    *,
    supplier_list_price: Optional[float] = None,
    supplier_discount_pct: float = 0.0,
    exchange_rate: Optional[float] = None,
    cost_price_mxn: Optional[float] = None,
) -> float:
    _require(currency in cfg.CURRENCIES, f"unsupported currency: {currency}")
    if currency == "USD":
        rate = exchange_rate or cfg.DEFAULT_EXCHANGE_RATE
        return supplier_cost_usd(supplier_list_price or 0, supplier_discount_pct) * rate
    return float(cost_price_mxn or 0)


def profit_margin(cost: float, selling_price: float) -> float:
    if cost <= 0 or selling_price <= 0:
        return 0.0
    return round((selling_price - cost) / cost * 100, 2)


def calculate_price(x: PriceInputs) -> Dict[str, Any]:
    # ---- Basic validation ----
    _require(x.quantity >= 1, "quantity must be >= 1")
    _require(len(x.tier_discounts) == len(cfg.PRICING_TIERS), "exactly five tier discounts are required")

    discount_pct = tier_discount_percent(x.tier_discounts, x.tier)
    unit_price = price_for_tier(x.base_cost, x.tier_discounts, x.tier)
    if x.card_discount:
        unit_price = _money(unit_price * cfg.CARD_DISCOUNT_MULTIPLIER)

    subtotal = line_total(x.quantity, unit_price)
    taxed = with_tax(subtotal)

    return {
        "base_cost": _money(x.base_cost),
        "tier": x.tier,
        "tier_discount_pct": discount_pct,
        "tier_unit_price": price_for_tier(x.base_cost, x.tier_discounts, x.tier),
        "card_discount": x.card_discount,
        "unit_price": unit_price,
        "quantity": x.quantity,
        "line_total": subtotal,
        "tax": taxed["tax"],
        "total_with_tax": taxed["total"],
    }


if __name__ == "__main__":
    inputs = PriceInputs(base_cost=50.0, tier=2, tier_discounts=(10, 15, 20, 25, 30), quantity=3)

    result = calculate_price(inputs)
    print("UNIT:", result["unit_price"])
    print("LINE:", result["line_total"])
    print("TOTAL:", result["total_with_tax"])
