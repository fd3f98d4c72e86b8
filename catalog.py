# catalog.py
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import pricing_config as cfg
from exceptions import ConflictError, StoreError, ValidationError
from pricing_engine import base_cost_mxn, supplier_cost_usd
from store import Store, eq, ilike

logger = logging.getLogger(__name__)

ITEMS = "price_list"
HISTORY = "price_history"

PRICE_FIELDS = ("cost_price_usd", "cost_price_mxn", "base_price_mxn", "exchange_rate")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _num(data: Mapping[str, Any], key: str, default: float = 0.0) -> float:
    value = data.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be a number") from e


def _tier_discounts(data: Mapping[str, Any]) -> Dict[str, Optional[float]]:
    out: Dict[str, Optional[float]] = {}
    for tier in cfg.PRICING_TIERS:
        key = f"discount_tier_{tier}"
        out[key] = None if data.get(key) is None else _num(data, key)
    return out


def validate_catalog_item(data: Mapping[str, Any]) -> None:
    if not (data.get("code") or "").strip():
        raise ValidationError("code is required")
    if not (data.get("name") or "").strip():
        raise ValidationError("name is required")

    currency = data.get("currency") or "MXN"
    if currency not in cfg.CURRENCIES:
        raise ValidationError(f"unsupported currency: {currency}")
    if currency == "USD":
        if _num(data, "supplier_list_price") <= 0:
            raise ValidationError("supplier list price is required for USD items")
        if _num(data, "exchange_rate", cfg.DEFAULT_EXCHANGE_RATE) <= 0:
            raise ValidationError("exchange rate must be greater than zero")
    elif _num(data, "cost_price_mxn") <= 0:
        raise ValidationError("MXN cost price is required")

    category = data.get("category") or "dispositivo"
    if category not in cfg.CATALOG_CATEGORIES:
        raise ValidationError(f"unsupported category: {category}")

    for key, value in _tier_discounts(data).items():
        if value is not None and not (cfg.MIN_TIER_DISCOUNT <= value <= cfg.MAX_TIER_DISCOUNT):
            raise ValidationError(
                f"tier discounts must be between {cfg.MIN_TIER_DISCOUNT:g}% and {cfg.MAX_TIER_DISCOUNT:g}% ({key}={value:g})"
            )

    if _num(data, "stock_quantity") < 0:
        raise ValidationError("stock quantity cannot be negative")


def save_catalog_item(store: Store, data: Mapping[str, Any], item_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Create or update a price-list item.

    USD items are costed as list price minus the supplier discount, converted
    with the item's exchange rate. The public selling price, when given,
    becomes the MXN base price; otherwise the normalized cost does.
    """
    validate_catalog_item(data)

    code = data["code"].strip().upper()
    current = store.get(ITEMS, item_id) if item_id else None
    if current is None or current["code"] != code:
        if store.select_one(ITEMS, [eq("code", code)], "id"):
            raise ConflictError(f"a catalog item with code {code} already exists")

    currency = data.get("currency") or "MXN"
    exchange_rate = _num(data, "exchange_rate", cfg.DEFAULT_EXCHANGE_RATE) or cfg.DEFAULT_EXCHANGE_RATE
    supplier_list_price = _num(data, "supplier_list_price") if currency == "USD" else None
    supplier_discount = _num(data, "supplier_discount_percentage")

    cost_mxn = base_cost_mxn(
        currency,
        supplier_list_price=supplier_list_price,
        supplier_discount_pct=supplier_discount,
        exchange_rate=exchange_rate,
        cost_price_mxn=_num(data, "cost_price_mxn"),
    )
    selling_price = _num(data, "price")

    category = data.get("category") or "dispositivo"
    stocked = category in cfg.STOCKED_CATEGORIES
    # stock fields left out of an update keep their stored values
    kept_stock = (current or {}).get("stock_quantity") or 0
    kept_min_level = cfg.DEFAULT_MIN_STOCK_LEVEL
    if current is not None and current.get("category") in cfg.STOCKED_CATEGORIES:
        kept_min_level = current.get("min_stock_level") or 0

    row: Dict[str, Any] = {
        "code": code,
        "name": data["name"].strip(),
        "description": data.get("description") or None,
        "brand": data.get("brand") or None,
        "model": data.get("model") or None,
        "category": category,
        "currency": currency,
        "supplier_list_price": supplier_list_price,
        "supplier_discount_percentage": supplier_discount,
        "cost_price_usd": round(supplier_cost_usd(supplier_list_price, supplier_discount), 2) if currency == "USD" else None,
        "cost_price_mxn": round(cost_mxn, 2),
        "exchange_rate": exchange_rate,
        "price": selling_price or None,
        "base_price_mxn": round(selling_price if selling_price > 0 else cost_mxn, 2),
        "stock_quantity": int(_num(data, "stock_quantity", kept_stock)) if stocked else 0,
        "min_stock_level": int(_num(data, "min_stock_level", kept_min_level)) if stocked else 0,
        "is_active": bool(data.get("is_active", True)),
        "updated_at": _now(),
    }
    row.update(_tier_discounts(data))

    if current is None:
        item = store.insert_one(ITEMS, row)
        logger.info("Created catalog item %s", code)
        return item

    item = store.update_by_id(ITEMS, current["id"], row)
    if any(current.get(k) != item.get(k) for k in PRICE_FIELDS):
        _record_price_change(store, current, item, data.get("change_reason"))
    logger.info("Updated catalog item %s", code)
    return item


def _record_price_change(store: Store, old: Mapping[str, Any], new: Mapping[str, Any], reason: Optional[str]) -> None:
    entry = {"price_list_id": new["id"], "change_reason": reason, "changed_at": _now()}
    for field in PRICE_FIELDS:
        entry[f"old_{field}"] = old.get(field)
        entry[f"new_{field}"] = new.get(field)
    try:
        with store.savepoint():
            store.insert_one(HISTORY, entry)
    except StoreError:
        logger.warning("Could not record price history for %s", new["id"], exc_info=True)


def adjust_stock(store: Store, item_id: str, delta: int) -> Dict[str, Any]:
    item = store.get(ITEMS, item_id, "id, code, stock_quantity")
    new_qty = (item.get("stock_quantity") or 0) + int(delta)
    if new_qty < 0:
        raise ValidationError(
            f"not enough stock for {item['code']}: {item.get('stock_quantity') or 0} available, {-int(delta)} requested"
        )
    return store.update_by_id(ITEMS, item_id, {"stock_quantity": new_qty, "updated_at": _now()})


def low_stock_items(store: Store) -> List[Dict[str, Any]]:
    items = store.select(ITEMS, filters=[eq("is_active", True)], order_by="name")
    return [
        i
        for i in items
        if i.get("category") in cfg.STOCKED_CATEGORIES
        and (i.get("stock_quantity") or 0) <= (i.get("min_stock_level") or 0)
    ]


def search_catalog(
    store: Store,
    text: Optional[str] = None,
    category: Optional[str] = None,
    *,
    page: int = 1,
    page_size: int = 25,
    active_only: bool = True,
) -> List[Dict[str, Any]]:
    if page < 1 or page_size < 1:
        raise ValidationError("page and page_size must be >= 1")

    filters = []
    if active_only:
        filters.append(eq("is_active", True))
    if text and text.strip():
        filters.append(ilike("name", f"%{text.strip()}%"))
    if category:
        filters.append(eq("category", category))

    return store.select(
        ITEMS,
        filters=filters,
        order_by="name",
        offset=(page - 1) * page_size,
        limit=page_size,
    )
