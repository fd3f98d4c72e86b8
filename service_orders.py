# service_orders.py
"""
Work-order operations: materials, digital-card re-pricing and completion.

Every mutation of one order runs under that order's lock and inside a store
transaction, so two requests against the same order cannot interleave their
writes.
"""
import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import pricing_config as cfg
from catalog import ITEMS, adjust_stock
from digital_cards import record_usage, validate_presentation
from exceptions import ConflictError, DiscountAlreadyAppliedError, NotFoundError, StoreError, ValidationError
from notifications import SERVICE_REPORT, NotificationGateway, notify
from pricing_engine import (
    card_price,
    catalog_base_cost,
    is_equipment,
    line_total,
    normalize_tier,
    order_total,
    price_for_tier,
    tier_discounts_of,
    with_tax,
)
from store import Store, eq, in_, row_mutation

logger = logging.getLogger(__name__)

ORDERS = "service_orders"
MATERIALS = "service_order_materials"
HISTORY = "service_order_status_history"
SIGNATURES = "service_order_signatures"
CUSTOMERS = "customers"
ASSETS = "assets"
EQUIPMENT = "customer_equipment"
INVOICES = "invoices"
DOCUMENTS = "billing_documents"
BILLING_PAYMENTS = "billing_payments"
TRANSACTIONS = "payment_transactions"
PAYMENT_HISTORY = "customer_payment_history"

CLOSED_STATUSES = ("completed", "cancelled")
PAYMENT_METHODS = ("cash", "credit")


@dataclass
class MaterialRequest:
    inventory_item_id: str
    quantity: int
    unit_cost: Optional[float] = None  # None -> customer's tier price
    serial_number: Optional[str] = None
    installation_notes: Optional[str] = None


@dataclass
class EquipmentInstall:
    material_id: str
    will_install: bool = True
    serial_number: Optional[str] = None


@dataclass
class CompletionRequest:
    signer_name: str
    signature_data: str
    payment_method: str = "cash"
    payment_terms: Optional[str] = None
    partial_payment: float = 0.0
    # None installs every equipment-category material with its stored serial
    equipment: Optional[List[EquipmentInstall]] = None
    send_report: bool = False


@dataclass
class CardPresentation:
    card: Dict[str, Any]
    discount_applied: bool
    total_cost: float
    message: Optional[str] = None


@dataclass
class CompletionResult:
    order: Dict[str, Any]
    invoice: Dict[str, Any]
    billing_document: Dict[str, Any]
    assets_created: int
    report_sent: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------
# Per-order serialization
# ----------------------------
@contextmanager
def order_mutation(store: Store, order_id: str) -> Iterator[None]:
    with row_mutation(store, ORDERS, order_id):
        yield


# ----------------------------
# Helpers
# ----------------------------
def customer_tier(store: Store, customer_id: Optional[str]) -> int:
    customer = store.select_one(CUSTOMERS, [eq("id", customer_id)], "pricing_tier") if customer_id else None
    return normalize_tier(customer.get("pricing_tier") if customer else None)


def quote_material_price(item: Mapping[str, Any], tier: int) -> float:
    return price_for_tier(catalog_base_cost(item), tier_discounts_of(item), tier)


def _items_by_id(store: Store, ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    unique = sorted(set(ids))
    if not unique:
        return {}
    return {i["id"]: i for i in store.select(ITEMS, filters=[in_("id", unique)])}


def _tracks_stock(item: Mapping[str, Any]) -> bool:
    return item.get("category") in cfg.STOCKED_CATEGORIES


def _require_open(order: Mapping[str, Any]) -> None:
    if order.get("status") in CLOSED_STATUSES:
        raise ConflictError(f"order {order.get('order_number')} is {order['status']}")


def _log_activity(store: Store, order_id: str, new_status: str, reason: str, previous_status: str = "activity") -> None:
    try:
        with store.savepoint():
            store.insert_one(
                HISTORY,
                {
                    "service_order_id": order_id,
                    "previous_status": previous_status,
                    "new_status": new_status,
                    "reason": reason,
                },
            )
    except StoreError:
        logger.warning("Could not log %s for order %s", new_status, order_id, exc_info=True)


# ----------------------------
# Materials
# ----------------------------
def add_materials(store: Store, order_id: str, materials: Sequence[MaterialRequest]) -> Dict[str, Any]:
    if not materials:
        raise ValidationError("at least one material is required")
    if any(not m.inventory_item_id or m.quantity <= 0 for m in materials):
        raise ValidationError("every material needs a product and a quantity > 0")
    if any(m.unit_cost is not None and m.unit_cost < 0 for m in materials):
        raise ValidationError("unit cost cannot be negative")

    with order_mutation(store, order_id):
        order = store.get(ORDERS, order_id)
        _require_open(order)

        tier = customer_tier(store, order.get("customer_id"))
        items = _items_by_id(store, [m.inventory_item_id for m in materials])

        requested: Dict[str, int] = defaultdict(int)
        for m in materials:
            item = items.get(m.inventory_item_id)
            if item is None or not item.get("is_active"):
                raise NotFoundError(f"catalog item not available: {m.inventory_item_id}")
            requested[m.inventory_item_id] += m.quantity

        for item_id, qty in requested.items():
            item = items[item_id]
            if _tracks_stock(item) and qty > (item.get("stock_quantity") or 0):
                raise ValidationError(
                    f"not enough stock for {item['code']}: {item.get('stock_quantity') or 0} available, {qty} requested"
                )

        rows = []
        for m in materials:
            item = items[m.inventory_item_id]
            unit_cost = round(m.unit_cost, 2) if m.unit_cost is not None else quote_material_price(item, tier)
            equipment = is_equipment(item.get("category"))
            rows.append(
                {
                    "service_order_id": order_id,
                    "inventory_item_id": m.inventory_item_id,
                    "quantity_used": m.quantity,
                    "unit_cost": unit_cost,
                    "total_cost": line_total(m.quantity, unit_cost),
                    "serial_number": (m.serial_number or None) if equipment else None,
                    "installation_notes": (m.installation_notes or None) if equipment else None,
                }
            )

        inserted = store.insert(MATERIALS, rows)
        for item_id, qty in requested.items():
            if _tracks_stock(items[item_id]):
                adjust_stock(store, item_id, -qty)

        added = sum(r["total_cost"] for r in rows)
        materials_cost = round((order.get("materials_cost") or 0) + added, 2)
        updated = store.update_by_id(
            ORDERS,
            order_id,
            {"materials_cost": materials_cost, "total_cost": order_total(order.get("labor_cost"), materials_cost)},
        )
        _log_activity(store, order_id, "material_added", f"Se agregaron {len(rows)} material(es)")

    logger.info("Added %d material(s) to order %s (+%.2f)", len(rows), order_id, added)
    return {"order": updated, "materials": inserted}


def remove_material(store: Store, material_id: str) -> Dict[str, Any]:
    order_id = store.get(MATERIALS, material_id, "id, service_order_id")["service_order_id"]

    with order_mutation(store, order_id):
        material = store.get(MATERIALS, material_id)
        order = store.get(ORDERS, order_id)
        _require_open(order)

        store.delete(MATERIALS, [eq("id", material_id)])

        item = store.select_one(ITEMS, [eq("id", material["inventory_item_id"])], "id, category")
        if item is not None and _tracks_stock(item):
            adjust_stock(store, item["id"], material["quantity_used"])

        materials_cost = max(round((order.get("materials_cost") or 0) - (material.get("total_cost") or 0), 2), 0.0)
        updated = store.update_by_id(
            ORDERS,
            order_id,
            {"materials_cost": materials_cost, "total_cost": order_total(order.get("labor_cost"), materials_cost)},
        )
        _log_activity(store, order_id, "material_removed", f"Se eliminó un material ({material['quantity_used']} pza)")

    logger.info("Removed material %s from order %s", material_id, order_id)
    return updated


# ----------------------------
# Digital-card discount
# ----------------------------
def apply_card_discount(store: Store, order_id: str) -> float:
    """
    Re-price the order's equipment at the card price and return the new total.

    Equipment lines get the customer's tier price times
    CARD_DISCOUNT_MULTIPLIER; every other line keeps its stored total. The
    order is flagged so the reduction never compounds.
    """
    with order_mutation(store, order_id):
        order = store.get(ORDERS, order_id)
        _require_open(order)
        if order.get("discount_applied_digital_card"):
            raise DiscountAlreadyAppliedError(f"card discount already applied to order {order.get('order_number')}")

        tier = customer_tier(store, order.get("customer_id"))
        lines = store.select(MATERIALS, filters=[eq("service_order_id", order_id)])
        items = _items_by_id(store, [line["inventory_item_id"] for line in lines])

        materials_cost = 0.0
        repriced = 0
        for line in lines:
            item = items.get(line["inventory_item_id"])
            if item is not None and is_equipment(item.get("category")):
                unit_cost = card_price(catalog_base_cost(item), tier_discounts_of(item), tier)
                total = line_total(line["quantity_used"], unit_cost)
                store.update_by_id(MATERIALS, line["id"], {"unit_cost": unit_cost, "total_cost": total})
                repriced += 1
            elif line.get("total_cost") is not None:
                total = line["total_cost"]
            else:
                total = line_total(line["quantity_used"], line.get("unit_cost") or 0)
            materials_cost += total

        materials_cost = round(materials_cost, 2)
        new_total = order_total(order.get("labor_cost"), materials_cost)
        store.update_by_id(
            ORDERS,
            order_id,
            {"materials_cost": materials_cost, "total_cost": new_total, "discount_applied_digital_card": True},
        )
        _log_activity(store, order_id, "card_discount_applied", f"Descuento de tarjeta digital en {repriced} equipo(s)")

    logger.info("Card discount on order %s: %d line(s) re-priced, total %.2f", order_id, repriced, new_total)
    return new_total


def present_card(
    store: Store,
    order_id: str,
    qr_payload: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> CardPresentation:
    card_number = (qr_payload.get("cardNumber") or "").strip()
    if not card_number:
        raise ValidationError("QR payload has no card number")

    order = store.get(ORDERS, order_id)
    _require_open(order)
    card = validate_presentation(store, card_number, qr_payload.get("validUntil"), now)
    record_usage(
        store,
        card["id"],
        location="Servicio completado",
        notes=f"Orden de servicio #{order.get('order_number') or order_id}",
        now=now,
    )

    if order.get("service_type") == "installation":
        return CardPresentation(card, False, order.get("total_cost") or 0, "card discount does not apply to installations")

    try:
        total = apply_card_discount(store, order_id)
    except DiscountAlreadyAppliedError:
        current = store.get(ORDERS, order_id, "id, total_cost")
        return CardPresentation(card, False, current.get("total_cost") or 0, "card discount already applied")

    return CardPresentation(card, True, total)


# ----------------------------
# Completion
# ----------------------------
def credit_days(payment_terms: Optional[str]) -> int:
    terms = payment_terms or ""
    for token, days in cfg.CREDIT_TERM_DAYS:
        if token in terms:
            return days
    return cfg.DEFAULT_CREDIT_DAYS


def _validate_completion(c: CompletionRequest) -> None:
    if not (c.signer_name or "").strip():
        raise ValidationError("signer name is required")
    if not c.signature_data:
        raise ValidationError("customer signature is required")
    if c.payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"unsupported payment method: {c.payment_method}")
    if c.payment_method == "credit" and not (c.payment_terms or "").strip():
        raise ValidationError("credit terms are required")
    if (c.partial_payment or 0) < 0:
        raise ValidationError("partial payment cannot be negative")


def _asset_models(category: str, name: str) -> Dict[str, str]:
    # alarm_model is mandatory on assets; specific fields are filled when known
    c = category.lower()
    if "alarm" in c or "panel" in c:
        return {"alarm_model": name}
    if "keyboard" in c or "keypad" in c:
        return {"alarm_model": f"Sistema con {name}", "keyboard_model": name}
    if "communicator" in c:
        return {"alarm_model": f"Sistema con {name}", "communicator_model": name}
    if "camera" in c:
        return {"alarm_model": f"Cámara: {name}"}
    if "sensor" in c:
        return {"alarm_model": f"Sensor: {name}"}
    return {"alarm_model": name}


def _equipment_type(category: str) -> str:
    c = category.lower()
    if "sensor" in c:
        return "sensor"
    if "camera" in c:
        return "camera"
    if "keyboard" in c:
        return "keyboard"
    if "alarm" in c or "panel" in c:
        return "alarm"
    return "other"


def _asset_serial(user_serial: str, quantity: int, order_number: str, material_id: str, n: int) -> str:
    if user_serial:
        return user_serial if quantity == 1 else f"{user_serial}-{n}"
    return f"INST-{order_number}-{material_id}-{n}"


def _install_line(
    store: Store,
    order: Mapping[str, Any],
    line: Mapping[str, Any],
    item: Mapping[str, Any],
    serial: str,
    completed_at: datetime,
) -> int:
    name = item.get("name") or ""
    category = item.get("category") or ""
    quantity = int(line.get("quantity_used") or 0)
    created = 0

    for n in range(1, quantity + 1):
        asset = {
            "customer_id": order["customer_id"],
            "service_order_id": order["id"],
            "installation_date": completed_at,
            "serial_number": _asset_serial(serial, quantity, order["order_number"], line["id"], n),
            "status": "active",
            "is_eol": False,
            "installation_cost": line.get("unit_cost") or 0,
            "installed_by": order.get("technician_id"),
        }
        asset.update(_asset_models(category, name))
        store.insert_one(ASSETS, asset)
        created += 1

    notes = f"Instalado en servicio {order['order_number']}"
    if (line.get("installation_notes") or "").strip():
        notes += f" - {line['installation_notes'].strip()}"
    if serial:
        notes += f" - S/N: {serial}"

    store.insert_one(
        EQUIPMENT,
        {
            "customer_id": order["customer_id"],
            "service_order_id": order["id"],
            "equipment_type": _equipment_type(category),
            "brand": item.get("brand") or "",
            "model": name,
            "quantity": quantity,
            "serial_number": serial or None,
            "installation_date": completed_at,
            "notes": notes,
            "installation_cost": line.get("unit_cost") or 0,
            "installed_by": order.get("technician_id"),
        },
    )
    return created


def _register_equipment(
    store: Store,
    order: Mapping[str, Any],
    lines: Sequence[Mapping[str, Any]],
    items: Mapping[str, Mapping[str, Any]],
    selections: Optional[Sequence[EquipmentInstall]],
    completed_at: datetime,
) -> int:
    chosen = {s.material_id: s for s in selections} if selections is not None else None
    created = 0

    for line in lines:
        item = items.get(line["inventory_item_id"]) or {}
        if chosen is None:
            if not is_equipment(item.get("category")):
                continue
            serial = line.get("serial_number")
        else:
            selection = chosen.get(line["id"])
            if selection is None or not selection.will_install:
                continue
            serial = selection.serial_number if selection.serial_number is not None else line.get("serial_number")

        try:
            with store.savepoint():
                created += _install_line(store, order, line, item, (serial or "").strip(), completed_at)
        except StoreError:
            logger.warning("Could not register equipment for material %s", line["id"], exc_info=True)

    return created


def _create_invoice(
    store: Store,
    order: Mapping[str, Any],
    completion: CompletionRequest,
    partial: float,
    completed_at: datetime,
):
    number = f"INV-{order['order_number']}"
    cash = completion.payment_method == "cash"
    amounts = with_tax(order.get("total_cost") or 0)
    days = 0 if cash else credit_days(completion.payment_terms)
    due_date = completed_at + timedelta(days=days)

    invoice = store.select_one(INVOICES, [eq("invoice_number", number)])
    if invoice is None:
        invoice = store.insert_one(
            INVOICES,
            {
                "customer_id": order["customer_id"],
                "service_order_id": order["id"],
                "invoice_number": number,
                "invoice_type": order.get("service_type"),
                "payment_type": completion.payment_method,
                "amount": amounts["subtotal"],
                "tax_amount": amounts["tax"],
                "total_amount": amounts["total"],
                "due_date": due_date,
                "paid_date": completed_at if cash else None,
                "status": "paid" if cash else "pending",
                "days_overdue": 0,
            },
        )

    if cash:
        document_type = "ticket_contado"
    elif order.get("service_type") == "installation":
        document_type = "factura_credito_local"
    else:
        document_type = "ticket_remision"

    paid = amounts["total"] if cash else partial
    balance = round(amounts["total"] - paid, 2)

    document = store.insert_one(
        DOCUMENTS,
        {
            "folio": number,
            "customer_id": order["customer_id"],
            "service_order_id": order["id"],
            "document_type": document_type,
            "issue_date": completed_at,
            "due_date": due_date,
            "subtotal": amounts["subtotal"],
            "tax": amounts["tax"],
            "discount": 0,
            "total": amounts["total"],
            "paid_amount": paid,
            "balance": balance,
            "payment_status": "paid" if cash else ("partial" if paid > 0 else "pending"),
            "concept": f"Servicio {order.get('service_type')} - Orden {order['order_number']}",
            "description": order.get("description"),
            "credit_days": days,
            "is_annual": False,
        },
    )

    if paid > 0:
        if cash:
            tx_note = f"Pago al contado por servicio {order['order_number']}"
            note = "Pago al contado por servicio completado"
        else:
            tx_note = f"Anticipo por servicio {order['order_number']}"
            note = f"Anticipo - Saldo pendiente: ${balance:.2f}"

        store.insert_one(
            TRANSACTIONS,
            {
                "invoice_id": invoice["id"],
                "customer_id": order["customer_id"],
                "amount": paid,
                "payment_method": "cash",
                "transaction_date": completed_at,
                "notes": tx_note,
            },
        )
        store.insert_one(
            PAYMENT_HISTORY,
            {
                "customer_id": order["customer_id"],
                "invoice_id": invoice["id"],
                "payment_date": completed_at,
                "amount": paid,
                "payment_method": "cash",
                "reference": number,
                "notes": note,
            },
        )
        store.insert_one(
            BILLING_PAYMENTS,
            {
                "billing_document_id": document["id"],
                "amount": paid,
                "payment_method": "efectivo",
                "payment_date": completed_at,
                "notes": note,
            },
        )
        if not cash:
            invoice = store.update_by_id(
                INVOICES,
                invoice["id"],
                {"status": "partial", "notes": f"Anticipo de ${paid:.2f} recibido. Saldo: ${balance:.2f}"},
            )

    return invoice, document


def _send_service_report(
    store: Store,
    gateway: Optional[NotificationGateway],
    order: Mapping[str, Any],
    lines: Sequence[Mapping[str, Any]],
    items: Mapping[str, Mapping[str, Any]],
    completed_at: datetime,
) -> bool:
    customer = store.select_one(CUSTOMERS, [eq("id", order["customer_id"])], "id, name, email")
    if not customer or not customer.get("email"):
        logger.info("Order %s: customer has no e-mail; report not sent", order["id"])
        return False

    materials_used = []
    for line in lines:
        item = items.get(line["inventory_item_id"]) or {}
        materials_used.append(
            {
                "name": item.get("name") or "",
                "sku": item.get("code") or "",
                "quantity": line["quantity_used"],
                "unit_cost": line["unit_cost"],
                "total_cost": line["total_cost"],
            }
        )

    payload = {
        "orderId": order["id"],
        "customerEmail": customer["email"],
        "customerName": customer["name"],
        "reportData": {
            "report_number": order["order_number"],
            "customer_name": customer["name"],
            "service_date": completed_at.isoformat(),
            "service_description": order.get("description") or "",
            "materials_used": materials_used,
            "labor_cost": order.get("labor_cost") or 0,
            "materials_cost": order.get("materials_cost") or 0,
            "total_cost": order.get("total_cost") or 0,
        },
    }
    return notify(gateway, SERVICE_REPORT, payload)


def complete_service(
    store: Store,
    order_id: str,
    completion: CompletionRequest,
    *,
    gateway: Optional[NotificationGateway] = None,
    now: Optional[datetime] = None,
) -> CompletionResult:
    _validate_completion(completion)
    completed_at = now or _now()
    credit = completion.payment_method == "credit"

    with order_mutation(store, order_id):
        order = store.get(ORDERS, order_id)
        _require_open(order)
        previous_status = order.get("status")

        partial = round(completion.partial_payment or 0, 2) if credit else 0.0
        if partial > with_tax(order.get("total_cost") or 0)["total"]:
            raise ValidationError("partial payment exceeds the order total")

        order = store.update_by_id(
            ORDERS,
            order_id,
            {
                "status": "completed",
                "completed_at": completed_at,
                "payment_method": completion.payment_method,
                "payment_terms": completion.payment_terms if credit else None,
                "partial_payment": partial,
            },
        )
        store.insert_one(
            SIGNATURES,
            {
                "service_order_id": order_id,
                "signature_data": completion.signature_data,
                "signer_name": completion.signer_name.strip(),
                "signer_role": "customer",
                "signed_at": completed_at,
            },
        )

        lines = store.select(MATERIALS, filters=[eq("service_order_id", order_id)])
        items = _items_by_id(store, [line["inventory_item_id"] for line in lines])
        assets_created = _register_equipment(store, order, lines, items, completion.equipment, completed_at)
        invoice, document = _create_invoice(store, order, completion, partial, completed_at)

    _log_activity(store, order_id, "completed", "Servicio completado", previous_status=previous_status)
    logger.info(
        "Completed order %s (%s): invoice %s, %d asset(s)",
        order["order_number"],
        completion.payment_method,
        invoice["invoice_number"],
        assets_created,
    )

    report_sent = False
    if completion.send_report:
        report_sent = _send_service_report(store, gateway, order, lines, items, completed_at)

    return CompletionResult(order, invoice, document, assets_created, report_sent)
