import logging
import os
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import billing
import catalog
import digital_cards
import service_orders
from exceptions import BackOfficeError
from notifications import NotificationGateway, gateway_from_env
from pricing_engine import PriceInputs, calculate_price
from store import Store, store_from_env


# ----------------------------
# App + config
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Alarm Back-Office API", version="1.0.0")

ALLOWED_ORIGINS = [o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Optional API key protection
API_KEY = os.environ.get("API_KEY", "")

_store: Optional[Store] = None
_gateway: Optional[NotificationGateway] = None
_gateway_loaded = False


# ----------------------------
# Helpers
# ----------------------------
def _require_api_key(x_api_key: Optional[str]) -> None:
    if API_KEY:
        if not x_api_key or x_api_key != API_KEY:
            raise HTTPException(status_code=401, detail="Unauthorized")


def get_store() -> Store:
    global _store
    if _store is None:
        _store = store_from_env()
    return _store


def get_gateway() -> Optional[NotificationGateway]:
    global _gateway, _gateway_loaded
    if not _gateway_loaded:
        _gateway = gateway_from_env()
        _gateway_loaded = True
    return _gateway


@app.exception_handler(BackOfficeError)
async def backoffice_error_handler(request: Request, exc: BackOfficeError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# ----------------------------
# Request models
# ----------------------------
class PriceRequest(BaseModel):
    base_cost: float
    tier: int = 1
    tier_discounts: List[Optional[float]] = Field(default_factory=lambda: [None] * 5)
    quantity: int = 1
    card_discount: bool = False


class CatalogItemRequest(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    category: str = "dispositivo"
    currency: str = "MXN"
    supplier_list_price: Optional[float] = None
    supplier_discount_percentage: float = 0.0
    cost_price_mxn: Optional[float] = None
    exchange_rate: Optional[float] = None
    price: Optional[float] = None
    discount_tier_1: Optional[float] = None
    discount_tier_2: Optional[float] = None
    discount_tier_3: Optional[float] = None
    discount_tier_4: Optional[float] = None
    discount_tier_5: Optional[float] = None
    stock_quantity: Optional[int] = None
    min_stock_level: Optional[int] = None
    is_active: bool = True
    change_reason: Optional[str] = None


class StockAdjustment(BaseModel):
    delta: int


class MaterialLine(BaseModel):
    inventory_item_id: str
    quantity: int
    unit_cost: Optional[float] = None
    serial_number: Optional[str] = None
    installation_notes: Optional[str] = None


class AddMaterialsRequest(BaseModel):
    materials: List[MaterialLine]


class CardPresentationRequest(BaseModel):
    # either the decoded QR object or the raw scanned text
    qr_payload: Optional[Dict[str, Any]] = None
    qr_text: Optional[str] = None


class EquipmentInstallRequest(BaseModel):
    material_id: str
    will_install: bool = True
    serial_number: Optional[str] = None


class CompleteServiceRequest(BaseModel):
    signer_name: str
    signature_data: str
    payment_method: str = "cash"
    payment_terms: Optional[str] = None
    partial_payment: float = 0.0
    equipment: Optional[List[EquipmentInstallRequest]] = None
    send_report: bool = False


class IssueCardRequest(BaseModel):
    card_type: str = "titular"
    holder_name: Optional[str] = None
    relationship: Optional[str] = None


class BlockCardRequest(BaseModel):
    reason: str


class ValidateCardRequest(BaseModel):
    card_number: str
    valid_until: Optional[str] = None


class SendCardRequest(BaseModel):
    card_image: Optional[str] = None  # base64 PNG


class PaymentCreateRequest(BaseModel):
    amount: float
    payment_method: str = "efectivo"
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    authorization_code: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    receipt_number: Optional[str] = None
    notes: Optional[str] = None
    send_receipt: bool = False
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None


# ----------------------------
# Routes: pricing + catalog
# ----------------------------
@app.get("/health")
def health():
    return {"ok": True}


@app.post("/price")
def price(req: PriceRequest, x_api_key: Optional[str] = Header(default=None)):
    _require_api_key(x_api_key)
    data = req.model_dump()
    data["tier_discounts"] = tuple(data["tier_discounts"])
    return calculate_price(PriceInputs(**data))


@app.get("/catalog")
def list_catalog(
    q: Optional[str] = None,
    category: Optional[str] = None,
    page: int = 1,
    page_size: int = 25,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return catalog.search_catalog(store, q, category, page=page, page_size=page_size)


@app.post("/catalog", status_code=201)
def create_catalog_item(
    req: CatalogItemRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return catalog.save_catalog_item(store, req.model_dump(exclude_none=True))


@app.put("/catalog/{item_id}")
def update_catalog_item(
    item_id: str,
    req: CatalogItemRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return catalog.save_catalog_item(store, req.model_dump(exclude_none=True), item_id=item_id)


@app.get("/catalog/low-stock")
def low_stock(x_api_key: Optional[str] = Header(default=None), store: Store = Depends(get_store)):
    _require_api_key(x_api_key)
    return catalog.low_stock_items(store)


@app.post("/catalog/{item_id}/stock")
def adjust_stock(
    item_id: str,
    req: StockAdjustment,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return catalog.adjust_stock(store, item_id, req.delta)


# ----------------------------
# Routes: service orders
# ----------------------------
@app.post("/service-orders/{order_id}/materials", status_code=201)
def add_materials(
    order_id: str,
    req: AddMaterialsRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    materials = [service_orders.MaterialRequest(**m.model_dump()) for m in req.materials]
    return service_orders.add_materials(store, order_id, materials)


@app.delete("/service-orders/materials/{material_id}")
def remove_material(
    material_id: str,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return service_orders.remove_material(store, material_id)


@app.post("/service-orders/{order_id}/card-discount")
def apply_card_discount(
    order_id: str,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    total = service_orders.apply_card_discount(store, order_id)
    return {"order_id": order_id, "total_cost": total}


@app.post("/service-orders/{order_id}/card-presentations")
def present_card(
    order_id: str,
    req: CardPresentationRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    if req.qr_text:
        payload = digital_cards.decode_qr_payload(req.qr_text)
    elif req.qr_payload:
        payload = req.qr_payload
    else:
        raise HTTPException(status_code=400, detail="qr_payload or qr_text is required")

    result = service_orders.present_card(store, order_id, payload)
    return {
        "card_number": result.card["card_number"],
        "cardholder_name": result.card["cardholder_name"],
        "card_type": result.card["card_type"],
        "discount_applied": result.discount_applied,
        "total_cost": result.total_cost,
        "message": result.message,
    }


@app.post("/service-orders/{order_id}/complete")
def complete_service(
    order_id: str,
    req: CompleteServiceRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
    gateway: Optional[NotificationGateway] = Depends(get_gateway),
):
    _require_api_key(x_api_key)
    data = req.model_dump()
    if req.equipment is not None:
        data["equipment"] = [service_orders.EquipmentInstall(**e.model_dump()) for e in req.equipment]
    completion = service_orders.CompletionRequest(**data)
    return asdict(service_orders.complete_service(store, order_id, completion, gateway=gateway))


# ----------------------------
# Routes: digital cards
# ----------------------------
@app.get("/customers/{customer_id}/cards")
def customer_cards(
    customer_id: str,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    cards = digital_cards.list_cards(store, customer_id)
    usage = digital_cards.card_usage_counts(store, customer_id)
    return [{**c, "usage_count": usage.get(c["id"], 0)} for c in cards]


@app.post("/customers/{customer_id}/cards", status_code=201)
def issue_card(
    customer_id: str,
    req: IssueCardRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return digital_cards.issue_card(store, customer_id, req.card_type, req.holder_name, req.relationship)


@app.post("/cards/{card_id}/block")
def block_card(
    card_id: str,
    req: BlockCardRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return digital_cards.block_card(store, card_id, req.reason)


@app.post("/cards/{card_id}/activate")
def activate_card(
    card_id: str,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    return digital_cards.activate_card(store, card_id)


@app.post("/cards/{card_id}/send")
def send_card(
    card_id: str,
    req: SendCardRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
    gateway: Optional[NotificationGateway] = Depends(get_gateway),
):
    _require_api_key(x_api_key)
    return {"sent": digital_cards.send_card(store, card_id, gateway, req.card_image)}


@app.post("/cards/validate")
def validate_card(
    req: ValidateCardRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
):
    _require_api_key(x_api_key)
    card = digital_cards.validate_presentation(store, req.card_number, req.valid_until)
    return {"valid": True, "card": card}


# ----------------------------
# Routes: billing
# ----------------------------
@app.post("/billing-documents/{document_id}/payments", status_code=201)
def register_payment(
    document_id: str,
    req: PaymentCreateRequest,
    x_api_key: Optional[str] = Header(default=None),
    store: Store = Depends(get_store),
    gateway: Optional[NotificationGateway] = Depends(get_gateway),
):
    _require_api_key(x_api_key)
    payment = billing.PaymentRequest(**req.model_dump(exclude={"send_receipt", "customer_email", "customer_name"}))
    return billing.register_payment(
        store,
        document_id,
        payment,
        gateway,
        send_receipt=req.send_receipt,
        customer_email=req.customer_email,
        customer_name=req.customer_name,
    )
