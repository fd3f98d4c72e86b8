import pytest

from catalog import adjust_stock, low_stock_items, save_catalog_item, search_catalog, validate_catalog_item
from exceptions import ConflictError, ValidationError
from store import eq


def _usd_item(**overrides):
    data = {
        "code": "pir-100",
        "name": "Sensor PIR Bosch",
        "category": "sensor",
        "currency": "USD",
        "supplier_list_price": 100.0,
        "supplier_discount_percentage": 10.0,
        "exchange_rate": 20.0,
        "discount_tier_3": 20.0,
        "stock_quantity": 8,
    }
    data.update(overrides)
    return data


class TestValidateCatalogItem:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"code": " "},
            {"name": ""},
            {"currency": "EUR"},
            {"supplier_list_price": 0},
            {"currency": "MXN", "cost_price_mxn": None},
            {"category": "juguete"},
            {"discount_tier_1": 35},
            {"discount_tier_5": -1},
            {"stock_quantity": -2},
            {"exchange_rate": "abc"},
        ],
    )
    def test_rejects(self, overrides):
        with pytest.raises(ValidationError):
            validate_catalog_item(_usd_item(**overrides))

    def test_accepts_boundary_discounts(self):
        validate_catalog_item(_usd_item(discount_tier_1=0, discount_tier_5=30))


class TestSaveCatalogItem:
    def test_usd_item_is_normalized(self, store):
        item = save_catalog_item(store, _usd_item())

        assert item["code"] == "PIR-100"
        assert item["cost_price_usd"] == 90.0
        assert item["cost_price_mxn"] == 1800.0
        assert item["base_price_mxn"] == 1800.0
        assert item["price"] is None
        assert item["discount_tier_3"] == 20.0
        assert item["discount_tier_1"] is None
        assert item["stock_quantity"] == 8
        assert item["min_stock_level"] == 5

    def test_selling_price_becomes_base_price(self, store):
        item = save_catalog_item(store, _usd_item(price=2500.0))
        assert item["base_price_mxn"] == 2500.0

    def test_services_carry_no_stock(self, store):
        item = save_catalog_item(
            store,
            {"code": "srv-1", "name": "Visita", "category": "servicio", "cost_price_mxn": 300, "stock_quantity": 4},
        )
        assert item["stock_quantity"] == 0
        assert item["min_stock_level"] == 0

    def test_duplicate_code(self, store):
        save_catalog_item(store, _usd_item())
        with pytest.raises(ConflictError):
            save_catalog_item(store, _usd_item(name="Otro"))

    def test_update_keeps_code_and_records_price_change(self, store):
        item = save_catalog_item(store, _usd_item())

        updated = save_catalog_item(store, _usd_item(exchange_rate=21.0, change_reason="Tipo de cambio"), item["id"])

        assert updated["id"] == item["id"]
        assert updated["cost_price_mxn"] == 1890.0
        history = store.select("price_history", filters=[eq("price_list_id", item["id"])])
        assert len(history) == 1
        assert history[0]["old_cost_price_mxn"] == 1800.0
        assert history[0]["new_cost_price_mxn"] == 1890.0
        assert history[0]["change_reason"] == "Tipo de cambio"

    def test_update_without_price_change_has_no_history(self, store):
        item = save_catalog_item(store, _usd_item())
        save_catalog_item(store, _usd_item(name="Sensor PIR Bosch v2"), item["id"])
        assert store.select("price_history", filters=[eq("price_list_id", item["id"])]) == []

    def test_update_without_stock_fields_keeps_stock(self, store):
        item = save_catalog_item(store, _usd_item(min_stock_level=3))
        updated = save_catalog_item(store, _usd_item(name="Sensor PIR Bosch v2", stock_quantity=None), item["id"])

        assert updated["name"] == "Sensor PIR Bosch v2"
        assert updated["stock_quantity"] == 8
        assert updated["min_stock_level"] == 3


class TestStock:
    def test_adjust(self, store, make_item):
        item = make_item(stock_quantity=3)
        assert adjust_stock(store, item["id"], 2)["stock_quantity"] == 5
        assert adjust_stock(store, item["id"], -5)["stock_quantity"] == 0

    def test_never_below_zero(self, store, make_item):
        item = make_item(stock_quantity=1)
        with pytest.raises(ValidationError):
            adjust_stock(store, item["id"], -2)
        assert store.get("price_list", item["id"])["stock_quantity"] == 1

    def test_low_stock(self, store, make_item):
        low = make_item(stock_quantity=2, min_stock_level=5)
        make_item(stock_quantity=20)
        make_item(stock_quantity=0, is_active=False)
        make_item(category="servicio", stock_quantity=0)

        assert [i["id"] for i in low_stock_items(store)] == [low["id"]]


class TestSearch:
    def test_filters_and_pages(self, store, make_item):
        for name in ("Panel DSC", "Sensor PIR", "Sensor magnético", "Teclado LCD"):
            make_item(name=name)
        make_item(name="Sensor retirado", is_active=False)

        sensors = search_catalog(store, "sensor")
        assert [i["name"] for i in sensors] == ["Sensor PIR", "Sensor magnético"]

        assert [i["name"] for i in search_catalog(store, page=2, page_size=3)] == ["Teclado LCD"]
        assert len(search_catalog(store, active_only=False)) == 5

    def test_category_filter(self, store, make_item):
        make_item(category="servicio", name="Visita")
        make_item(name="Sensor")
        assert [i["name"] for i in search_catalog(store, category="servicio")] == ["Visita"]

    def test_bad_page(self, store):
        with pytest.raises(ValidationError):
            search_catalog(store, page=0)
