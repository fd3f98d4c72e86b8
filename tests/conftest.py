import itertools
import os
import sys
from datetime import datetime, timezone

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.append(ROOT)

from store import SqlStore  # noqa: E402

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    # fresh in-memory database per test
    return SqlStore("sqlite://", create_schema=True)


@pytest.fixture
def make_customer(store):
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        row = {
            "name": f"Cliente {n}",
            "email": f"cliente{n}@example.com",
            "account_number": 40 + n,
            "pricing_tier": 1,
        }
        row.update(fields)
        return store.insert_one("customers", row)

    return _make


@pytest.fixture
def make_item(store):
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        row = {
            "code": f"ITEM-{n:03d}",
            "name": f"Sensor PIR {n}",
            "category": "dispositivo",
            "currency": "MXN",
            "cost_price_mxn": 60.0,
            "base_price_mxn": 100.0,
            "stock_quantity": 10,
            "min_stock_level": 5,
            "is_active": True,
        }
        row.update(fields)
        return store.insert_one("price_list", row)

    return _make


@pytest.fixture
def make_order(store):
    counter = itertools.count(1)

    def _make(customer, **fields):
        n = next(counter)
        row = {
            "order_number": f"OS-{n:04d}",
            "customer_id": customer["id"],
            "technician_id": "tech-1",
            "service_type": "maintenance",
            "status": "in_progress",
            "description": "Revisión de panel",
            "labor_cost": 0.0,
            "materials_cost": 0.0,
            "total_cost": 0.0,
        }
        row.update(fields)
        return store.insert_one("service_orders", row)

    return _make


@pytest.fixture
def add_line(store):
    """Insert a material line directly, bypassing pricing and stock."""

    def _add(order, item, quantity=1, unit_cost=None, **fields):
        unit = item["base_price_mxn"] if unit_cost is None else unit_cost
        row = {
            "service_order_id": order["id"],
            "inventory_item_id": item["id"],
            "quantity_used": quantity,
            "unit_cost": unit,
            "total_cost": round(quantity * unit, 2),
        }
        row.update(fields)
        return store.insert_one("service_order_materials", row)

    return _add
