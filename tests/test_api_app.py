import pytest
from fastapi.testclient import TestClient

import api_app
from api_app import app, get_gateway, get_store


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(api_app, "API_KEY", "")
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: None
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_api_key_is_enforced(client, monkeypatch):
    monkeypatch.setattr(api_app, "API_KEY", "secret")
    body = {"base_cost": 100}
    assert client.post("/price", json=body).status_code == 401
    assert client.post("/price", json=body, headers={"x-api-key": "wrong"}).status_code == 401
    assert client.post("/price", json=body, headers={"x-api-key": "secret"}).status_code == 200


def test_price(client):
    resp = client.post("/price", json={"base_cost": 100, "tier": 3, "tier_discounts": [None, None, 20, None, None]})
    assert resp.status_code == 200
    assert resp.json()["unit_price"] == 80.0


def test_price_validation_error(client):
    resp = client.post("/price", json={"base_cost": -1})
    assert resp.status_code == 400
    assert resp.json() == {"detail": "base cost must be >= 0"}


def test_catalog_roundtrip(client):
    created = client.post(
        "/catalog",
        json={"code": "pnl-1", "name": "Panel DSC", "cost_price_mxn": 1500, "stock_quantity": 2},
    )
    assert created.status_code == 201
    item = created.json()
    assert item["code"] == "PNL-1"

    assert client.post("/catalog", json={"code": "PNL-1", "name": "Otro", "cost_price_mxn": 10}).status_code == 409

    updated = client.put(f"/catalog/{item['id']}", json={"code": "PNL-1", "name": "Panel DSC PC1864", "cost_price_mxn": 1500})
    assert updated.json()["name"] == "Panel DSC PC1864"
    assert updated.json()["stock_quantity"] == 2

    assert [i["code"] for i in client.get("/catalog", params={"q": "panel"}).json()] == ["PNL-1"]
    assert [i["code"] for i in client.get("/catalog/low-stock").json()] == ["PNL-1"]
    assert client.post(f"/catalog/{item['id']}/stock", json={"delta": 10}).json()["stock_quantity"] == 12
    assert client.post(f"/catalog/{item['id']}/stock", json={"delta": -13}).status_code == 400


def test_service_order_flow(client, make_customer, make_item, make_order):
    customer = make_customer(pricing_tier=2)
    item = make_item(base_price_mxn=50.0, discount_tier_2=15)
    order = make_order(customer, labor_cost=100.0, total_cost=100.0)

    resp = client.post(
        f"/service-orders/{order['id']}/materials",
        json={"materials": [{"inventory_item_id": item["id"], "quantity": 3}]},
    )
    assert resp.status_code == 201
    assert resp.json()["order"]["total_cost"] == 227.5

    card = client.post(f"/customers/{customer['id']}/cards", json={}).json()
    presented = client.post(
        f"/service-orders/{order['id']}/card-presentations",
        json={"qr_payload": card["qr_code_data"]},
    )
    assert presented.status_code == 200
    assert presented.json()["discount_applied"] is True
    # 42.50 * 0.90 = 38.25 per unit
    assert presented.json()["total_cost"] == 214.75

    assert client.post(f"/service-orders/{order['id']}/card-discount").status_code == 409

    done = client.post(
        f"/service-orders/{order['id']}/complete",
        json={"signer_name": "Ana", "signature_data": "data:image/png;base64,AAA", "payment_method": "cash"},
    )
    assert done.status_code == 200
    assert done.json()["invoice"]["status"] == "paid"
    assert done.json()["assets_created"] == 3

    material_id = resp.json()["materials"][0]["id"]
    assert client.delete(f"/service-orders/materials/{material_id}").status_code == 409


def test_card_presentation_needs_payload(client, make_customer, make_order):
    order = make_order(make_customer())
    assert client.post(f"/service-orders/{order['id']}/card-presentations", json={}).status_code == 400


def test_card_lifecycle(client, make_customer):
    customer = make_customer()
    card = client.post(f"/customers/{customer['id']}/cards", json={"card_type": "titular"}).json()

    assert client.post(f"/cards/{card['id']}/block", json={"reason": " "}).status_code == 400
    blocked = client.post(f"/cards/{card['id']}/block", json={"reason": "Robo"})
    assert blocked.json()["is_active"] is False

    rejected = client.post("/cards/validate", json={"card_number": card["card_number"]})
    assert rejected.status_code == 422

    client.post(f"/cards/{card['id']}/activate")
    assert client.post("/cards/validate", json={"card_number": card["card_number"]}).json()["valid"] is True

    cards = client.get(f"/customers/{customer['id']}/cards").json()
    assert [(c["card_number"], c["usage_count"]) for c in cards] == [(card["card_number"], 0)]

    assert client.post(f"/cards/{card['id']}/send", json={}).json() == {"sent": False}


def test_register_payment(client, store, make_customer):
    document = store.insert_one(
        "billing_documents",
        {
            "folio": "INV-1",
            "customer_id": make_customer()["id"],
            "document_type": "ticket_remision",
            "total": 116.0,
            "balance": 116.0,
        },
    )

    resp = client.post(f"/billing-documents/{document['id']}/payments", json={"amount": 16, "payment_method": "cheque"})

    assert resp.status_code == 201
    assert resp.json()["document"]["balance"] == 100.0
    assert client.post(f"/billing-documents/{document['id']}/payments", json={"amount": 101}).status_code == 400


def test_not_found(client):
    resp = client.post("/cards/missing/activate")
    assert resp.status_code == 404
    assert "missing" in resp.json()["detail"]
