# billing.py
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from exceptions import ConflictError, ValidationError
from notifications import PAYMENT_RECEIPT, NotificationGateway, notify
from store import Store, eq, row_mutation

logger = logging.getLogger(__name__)

DOCUMENTS = "billing_documents"
PAYMENTS = "billing_payments"

PAYMENT_METHOD_LABELS = {
    "efectivo": "Efectivo",
    "transferencia": "Transferencia",
    "tarjeta_debito": "Tarjeta de débito",
    "tarjeta_credito": "Tarjeta de crédito",
    "cheque": "Cheque",
    "whatsapp": "WhatsApp",
    "deposito": "Depósito",
    "otro": "Otro",
}


@dataclass
class PaymentRequest:
    amount: float
    payment_method: str = "efectivo"
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    authorization_code: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    receipt_number: Optional[str] = None
    notes: Optional[str] = None


def register_payment(
    store: Store,
    document_id: str,
    payment: PaymentRequest,
    gateway: Optional[NotificationGateway] = None,
    *,
    send_receipt: bool = False,
    customer_email: Optional[str] = None,
    customer_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record a payment against a billing document and update its balance.

    The receipt e-mail is best-effort: a failed send is reported as
    `receipt_sent=False`, the payment stays registered.
    """
    if payment.amount is None or payment.amount <= 0:
        raise ValidationError("payment amount must be greater than zero")
    if payment.payment_method not in PAYMENT_METHOD_LABELS:
        raise ValidationError(f"unsupported payment method: {payment.payment_method}")

    paid_on = payment.payment_date or datetime.now(timezone.utc)
    amount = round(payment.amount, 2)

    with row_mutation(store, DOCUMENTS, document_id):
        document = store.get(DOCUMENTS, document_id)
        stored_balance = document.get("balance")
        previous_balance = round(stored_balance or 0, 2)
        if amount > previous_balance:
            raise ValidationError(f"payment {amount:.2f} exceeds the outstanding balance {previous_balance:.2f}")

        row = store.insert_one(
            PAYMENTS,
            {
                "billing_document_id": document_id,
                "amount": amount,
                "payment_method": payment.payment_method,
                "payment_date": paid_on,
                "reference_number": payment.reference_number or None,
                "authorization_code": payment.authorization_code or None,
                "bank_name": payment.bank_name or None,
                "account_number": payment.account_number or None,
                "receipt_number": payment.receipt_number or None,
                "notes": payment.notes or None,
            },
        )

        new_balance = round(previous_balance - amount, 2)
        # the balance filter rejects the write if another process paid in between
        updated = store.update(
            DOCUMENTS,
            {
                "paid_amount": round((document.get("paid_amount") or 0) + amount, 2),
                "balance": new_balance,
                "payment_status": "paid" if new_balance <= 0 else "partial",
            },
            [eq("id", document_id), eq("balance", stored_balance)],
        )
        if not updated:
            raise ConflictError(f"balance of {document['folio']} changed while registering the payment; retry")
        document = updated[0]

    logger.info("Payment of %.2f on %s (balance %.2f)", amount, document["folio"], new_balance)

    receipt_sent = False
    if send_receipt:
        if not customer_email:
            logger.info("No e-mail for %s; receipt not sent", document["folio"])
        else:
            receipt_sent = notify(
                gateway,
                PAYMENT_RECEIPT,
                {
                    "to_email": customer_email,
                    "customer_name": customer_name,
                    "folio": document["folio"],
                    "payment_amount": amount,
                    "payment_method": PAYMENT_METHOD_LABELS[payment.payment_method],
                    "payment_date": paid_on.date().isoformat(),
                    "reference_number": payment.reference_number,
                    "previous_balance": previous_balance,
                    "new_balance": new_balance,
                    "total_invoice": document.get("total"),
                    "is_fully_paid": new_balance <= 0,
                },
            )

    return {"payment": row, "document": document, "receipt_sent": receipt_sent}
