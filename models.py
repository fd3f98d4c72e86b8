# models.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------
# Catalog / CRM
# ----------------------------
class PriceListItem(Base):
    __tablename__ = "price_list"

    id = Column(String, primary_key=True, default=_uuid)
    code = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    brand = Column(String, nullable=True)
    model = Column(String, nullable=True)
    category = Column(String, nullable=False, default="dispositivo")

    currency = Column(String, nullable=False, default="MXN")  # USD / MXN
    supplier_list_price = Column(Float, nullable=True)
    supplier_discount_percentage = Column(Float, nullable=False, default=0)
    cost_price_usd = Column(Float, nullable=True)
    cost_price_mxn = Column(Float, nullable=True)
    exchange_rate = Column(Float, nullable=False, default=21.0)
    price = Column(Float, nullable=True)  # public selling price
    base_price_mxn = Column(Float, nullable=False, default=0)

    # percent, 0..30; NULL means "use the tier fallback"
    discount_tier_1 = Column(Float, nullable=True)
    discount_tier_2 = Column(Float, nullable=True)
    discount_tier_3 = Column(Float, nullable=True)
    discount_tier_4 = Column(Float, nullable=True)
    discount_tier_5 = Column(Float, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    min_stock_level = Column(Integer, nullable=False, default=5)

    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)


class PriceHistory(Base):
    __tablename__ = "price_history"

    id = Column(String, primary_key=True, default=_uuid)
    price_list_id = Column(String, index=True, nullable=False)
    old_cost_price_usd = Column(Float, nullable=True)
    old_cost_price_mxn = Column(Float, nullable=True)
    old_base_price_mxn = Column(Float, nullable=True)
    old_exchange_rate = Column(Float, nullable=True)
    new_cost_price_usd = Column(Float, nullable=True)
    new_cost_price_mxn = Column(Float, nullable=True)
    new_base_price_mxn = Column(Float, nullable=True)
    new_exchange_rate = Column(Float, nullable=True)
    change_reason = Column(String, nullable=True)
    changed_at = Column(DateTime(timezone=True), default=_now)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    account_number = Column(Integer, nullable=True)
    pricing_tier = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_now)


class DigitalCard(Base):
    __tablename__ = "customer_digital_cards"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, index=True, nullable=False)
    customer_name = Column(String, nullable=True)
    account_number = Column(Integer, nullable=True)
    card_number = Column(String, unique=True, index=True, nullable=False)
    card_type = Column(String, nullable=False)  # titular / familiar
    cardholder_name = Column(String, nullable=False)
    relationship = Column(String, nullable=True)
    qr_code_data = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    block_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)


class DigitalCardUsage(Base):
    __tablename__ = "digital_card_usage"

    id = Column(String, primary_key=True, default=_uuid)
    card_id = Column(String, index=True, nullable=False)
    used_at = Column(DateTime(timezone=True), default=_now)
    location = Column(String, nullable=True)
    notes = Column(String, nullable=True)


# ----------------------------
# Field service
# ----------------------------
class ServiceOrder(Base):
    __tablename__ = "service_orders"

    id = Column(String, primary_key=True, default=_uuid)
    order_number = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=False)
    technician_id = Column(String, nullable=True)
    service_type = Column(String, nullable=False, default="maintenance")
    status = Column(String, nullable=False, default="pending")
    description = Column(Text, nullable=True)

    labor_cost = Column(Float, nullable=False, default=0)
    materials_cost = Column(Float, nullable=False, default=0)
    total_cost = Column(Float, nullable=False, default=0)
    discount_applied_digital_card = Column(Boolean, nullable=False, default=False)

    payment_method = Column(String, nullable=True)  # cash / credit
    payment_terms = Column(String, nullable=True)
    partial_payment = Column(Float, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class ServiceOrderMaterial(Base):
    __tablename__ = "service_order_materials"

    id = Column(String, primary_key=True, default=_uuid)
    service_order_id = Column(String, index=True, nullable=False)
    inventory_item_id = Column(String, index=True, nullable=False)
    quantity_used = Column(Integer, nullable=False)
    unit_cost = Column(Float, nullable=False)
    total_cost = Column(Float, nullable=False)
    serial_number = Column(String, nullable=True)
    installation_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class ServiceOrderStatusHistory(Base):
    __tablename__ = "service_order_status_history"

    id = Column(String, primary_key=True, default=_uuid)
    service_order_id = Column(String, index=True, nullable=False)
    previous_status = Column(String, nullable=True)
    new_status = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)


class ServiceOrderSignature(Base):
    __tablename__ = "service_order_signatures"

    id = Column(String, primary_key=True, default=_uuid)
    service_order_id = Column(String, index=True, nullable=False)
    signature_data = Column(Text, nullable=False)
    signer_name = Column(String, nullable=False)
    signer_role = Column(String, nullable=False, default="customer")
    signed_at = Column(DateTime(timezone=True), default=_now)


class Asset(Base):
    __tablename__ = "assets"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, index=True, nullable=False)
    service_order_id = Column(String, nullable=True)
    installation_date = Column(DateTime(timezone=True), nullable=True)
    serial_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    is_eol = Column(Boolean, nullable=False, default=False)
    installation_cost = Column(Float, nullable=False, default=0)
    installed_by = Column(String, nullable=True)
    alarm_model = Column(String, nullable=False)
    keyboard_model = Column(String, nullable=True)
    communicator_model = Column(String, nullable=True)


class CustomerEquipment(Base):
    __tablename__ = "customer_equipment"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, index=True, nullable=False)
    service_order_id = Column(String, nullable=True)
    equipment_type = Column(String, nullable=False)
    brand = Column(String, nullable=True)
    model = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    serial_number = Column(String, nullable=True)
    installation_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    installation_cost = Column(Float, nullable=False, default=0)
    installed_by = Column(String, nullable=True)


# ----------------------------
# Billing
# ----------------------------
class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, index=True, nullable=False)
    service_order_id = Column(String, nullable=True)
    invoice_number = Column(String, unique=True, index=True, nullable=False)
    invoice_type = Column(String, nullable=True)
    payment_type = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    tax_amount = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    paid_date = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default="pending")
    days_overdue = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)


class BillingDocument(Base):
    __tablename__ = "billing_documents"

    id = Column(String, primary_key=True, default=_uuid)
    folio = Column(String, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=False)
    service_order_id = Column(String, nullable=True)
    document_type = Column(String, nullable=False)
    issue_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    subtotal = Column(Float, nullable=False, default=0)
    tax = Column(Float, nullable=False, default=0)
    discount = Column(Float, nullable=False, default=0)
    total = Column(Float, nullable=False, default=0)
    paid_amount = Column(Float, nullable=False, default=0)
    balance = Column(Float, nullable=False, default=0)
    payment_status = Column(String, nullable=False, default="pending")
    concept = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    credit_days = Column(Integer, nullable=False, default=0)
    is_annual = Column(Boolean, nullable=False, default=False)


class BillingPayment(Base):
    __tablename__ = "billing_payments"

    id = Column(String, primary_key=True, default=_uuid)
    billing_document_id = Column(String, index=True, nullable=False)
    amount = Column(Float, nullable=False)
    payment_method = Column(String, nullable=False)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    reference_number = Column(String, nullable=True)
    authorization_code = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    receipt_number = Column(String, nullable=True)
    notes = Column(Text, nullable=True)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String, primary_key=True, default=_uuid)
    invoice_id = Column(String, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=False)
    amount = Column(Float, nullable=False)
    payment_method = Column(String, nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)


class CustomerPaymentHistory(Base):
    __tablename__ = "customer_payment_history"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, index=True, nullable=False)
    invoice_id = Column(String, nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Float, nullable=False)
    payment_method = Column(String, nullable=False)
    reference = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
