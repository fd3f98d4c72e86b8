# digital_cards.py
"""
Digital membership cards.

A card is either Active or Blocked. Blocking stamps `validUntil` in the QR
payload with the blocking time, so a copy of the QR taken earlier stops
validating as well; activating clears it again.
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from exceptions import CardRejectedError, ConflictError, StoreError, ValidationError
from notifications import DIGITAL_CARD, NotificationGateway, notify
from store import Store, eq, in_

logger = logging.getLogger(__name__)

CARDS = "customer_digital_cards"
USAGE = "digital_card_usage"
CUSTOMERS = "customers"

CARD_TYPES = ("titular", "familiar")

RELATIONSHIPS = {
    "spouse": "Esposo/a",
    "child": "Hijo/a",
    "parent": "Padre/Madre",
    "sibling": "Hermano/a",
    "other": "Otro",
}


class CardState(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"invalid timestamp: {value}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_card_number(account_number: int, sequence: int) -> str:
    return f"CARD-{int(account_number):05d}-{int(sequence):03d}"


def qr_code_data(
    card_number: str,
    customer_id: str,
    account_number: int,
    card_type: str,
    holder_name: str,
    is_active: bool = True,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "cardNumber": card_number,
        "customerId": customer_id,
        "accountNumber": account_number,
        "cardType": card_type,
        "holderName": holder_name,
        "validUntil": None if is_active else (now or _now()).isoformat(),
    }


def decode_qr_payload(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError("QR code does not contain card data") from e
    if not isinstance(data, dict) or not data.get("cardNumber"):
        raise ValidationError("QR code does not contain card data")
    return data


# ----------------------------
# State
# ----------------------------
def card_state(card: Dict[str, Any]) -> CardState:
    return CardState.ACTIVE if card.get("is_active") else CardState.BLOCKED


def valid_until(card: Dict[str, Any]) -> Optional[datetime]:
    return parse_timestamp((card.get("qr_code_data") or {}).get("validUntil"))


def is_card_valid(card: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    if card_state(card) is not CardState.ACTIVE:
        return False
    until = valid_until(card)
    return until is None or until > (now or _now())


def block_card(store: Store, card_id: str, reason: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("a block reason is required")

    card = store.get(CARDS, card_id)
    if card_state(card) is CardState.BLOCKED:
        raise ConflictError(f"card {card['card_number']} is already blocked")

    now = now or _now()
    qr = dict(card.get("qr_code_data") or {})
    qr["validUntil"] = now.isoformat()

    updated = store.update_by_id(
        CARDS,
        card_id,
        {"is_active": False, "block_reason": reason, "qr_code_data": qr, "updated_at": now},
    )
    logger.info("Blocked card %s: %s", card["card_number"], reason)
    return updated


def activate_card(store: Store, card_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    card = store.get(CARDS, card_id)
    qr = dict(card.get("qr_code_data") or {})
    qr["validUntil"] = None

    updated = store.update_by_id(
        CARDS,
        card_id,
        {"is_active": True, "block_reason": None, "qr_code_data": qr, "updated_at": now or _now()},
    )
    logger.info("Activated card %s", card["card_number"])
    return updated


# ----------------------------
# Issuing / lookup
# ----------------------------
def list_cards(store: Store, customer_id: str) -> List[Dict[str, Any]]:
    return store.select(CARDS, filters=[eq("customer_id", customer_id)], order_by="created_at")


def issue_card(
    store: Store,
    customer_id: str,
    card_type: str = "titular",
    holder_name: Optional[str] = None,
    relationship: Optional[str] = None,
) -> Dict[str, Any]:
    if card_type not in CARD_TYPES:
        raise ValidationError(f"unsupported card type: {card_type}")

    customer = store.get(CUSTOMERS, customer_id)
    existing = store.select(CARDS, "id, card_type", [eq("customer_id", customer_id)])

    if card_type == "titular":
        if any(c["card_type"] == "titular" for c in existing):
            raise ConflictError("customer already has a titular card")
        holder = customer["name"]
        relationship = None
    else:
        holder = (holder_name or "").strip()
        if not holder:
            raise ValidationError("family cards need the holder name")
        if relationship not in RELATIONSHIPS:
            raise ValidationError(f"unsupported relationship: {relationship}")

    account_number = customer.get("account_number") or 0
    card_number = generate_card_number(account_number, len(existing) + 1)

    card = store.insert_one(
        CARDS,
        {
            "customer_id": customer_id,
            "customer_name": customer["name"],
            "account_number": account_number,
            "card_number": card_number,
            "card_type": card_type,
            "cardholder_name": holder,
            "relationship": relationship,
            "qr_code_data": qr_code_data(card_number, customer_id, account_number, card_type, holder),
            "is_active": True,
        },
    )
    logger.info("Issued %s card %s for customer %s", card_type, card_number, customer_id)
    return card


def validate_presentation(
    store: Store,
    card_number: str,
    presented_valid_until: Any = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Card accepted at a service visit, or CardRejectedError.

    Both the stored card and the validity carried by the scanned QR have to
    be current.
    """
    now = now or _now()
    card = store.select_one(CARDS, [eq("card_number", card_number), eq("is_active", True)])
    if card is None:
        raise CardRejectedError("card not found or inactive")

    presented = parse_timestamp(presented_valid_until)
    if (presented is not None and presented <= now) or not is_card_valid(card, now):
        raise CardRejectedError(f"card {card_number} has expired or is blocked")

    return card


def record_usage(
    store: Store,
    card_id: str,
    location: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    try:
        with store.savepoint():
            return store.insert_one(
                USAGE,
                {"card_id": card_id, "used_at": now or _now(), "location": location, "notes": notes},
            )
    except StoreError:
        logger.warning("Could not record usage of card %s", card_id, exc_info=True)
        return None


def send_card(
    store: Store,
    card_id: str,
    gateway: Optional[NotificationGateway],
    card_image: Optional[str] = None,
) -> bool:
    card = store.get(CARDS, card_id)
    customer = store.get(CUSTOMERS, card["customer_id"], "id, name, email")
    if not customer.get("email"):
        raise ValidationError("customer has no e-mail address")

    payload = {
        "cardId": card["id"],
        "customerEmail": customer["email"],
        "customerName": customer["name"],
        "cardNumber": card["card_number"],
    }
    if card_image:
        payload["cardImage"] = card_image
    return notify(gateway, DIGITAL_CARD, payload)


def card_usage_counts(store: Store, customer_id: str) -> Dict[str, int]:
    cards = store.select(CARDS, "id", [eq("customer_id", customer_id)])
    counts = {c["id"]: 0 for c in cards}
    if not counts:
        return counts

    for usage in store.select(USAGE, "card_id", [in_("card_id", counts)]):
        counts[usage["card_id"]] += 1
    return counts
