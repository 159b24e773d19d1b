from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from ..crypto import EncryptedString


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Listing(Base):
    __tablename__ = "listings"
    id = Column(String, primary_key=True)
    company_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    brand = Column(String, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    denominations = Column(JSON, nullable=False)  # cents
    discount_percentage = Column(Float, nullable=False, default=0.0)
    seller_fee_percentage = Column(Float, nullable=False, default=0.0)
    seller_fee_fixed = Column(Integer, nullable=False, default=0)  # cents
    auto_fulfill = Column(Boolean, nullable=False, default=True)
    # active | inactive
    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    # insertion sequence: FIFO tie-break for equal created_at
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)
    company_id = Column(String, nullable=False)
    listing_id = Column(String, nullable=False)
    denomination = Column(Integer, nullable=False)  # cents

    code = Column(EncryptedString, nullable=False)
    pin = Column(EncryptedString, nullable=True)
    serial_number = Column(String, nullable=True)

    # available | reserved | sold | invalid | expired
    status = Column(String, nullable=False, default="available")
    # manual | bulk_upload | api
    source = Column(String, nullable=False, default="bulk_upload")
    expires_at = Column(Float, nullable=True)

    reservation_id = Column(String, nullable=True, index=True)
    reserved_at = Column(Float, nullable=True)

    order_id = Column(String, nullable=True, index=True)
    sold_at = Column(Float, nullable=True)
    sold_to = Column(String, nullable=True)

    uploaded_by = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index(
            "ix_inventory_alloc",
            "listing_id", "denomination", "status", "created_at", "seq",
        ),
        Index("ix_inventory_expires", "expires_at"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    company_id = Column(String, nullable=False, index=True)
    listing_id = Column(String, nullable=False, index=True)
    listing_title = Column(String, nullable=False)
    brand = Column(String, nullable=False)

    denomination = Column(Integer, nullable=False)  # cents
    quantity = Column(Integer, nullable=False)
    price_per_unit = Column(Integer, nullable=False)
    discount_percentage = Column(Float, nullable=False, default=0.0)
    subtotal = Column(Integer, nullable=False)
    discount = Column(Integer, nullable=False, default=0)
    fee = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    customer_email = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=True)

    # stripe | paypal | crypto | pgpay | mock
    payment_method = Column(String, nullable=False)
    payment_reference = Column(String, nullable=True)
    # pending | processing | completed | failed | refunded | disputed
    payment_status = Column(String, nullable=False, default="pending")
    payment_failure_reason = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)

    # pending | fulfilled | failed
    fulfillment_status = Column(String, nullable=False, default="pending")
    fulfillment_failure_reason = Column(String, nullable=True)
    fulfilled_at = Column(Float, nullable=True)
    fulfilled_by = Column(String, nullable=True)
    # [{"inventory_id", "code", "pin", "serial_number"}], encrypted as a blob
    gift_card_codes = Column(EncryptedString, nullable=True)

    # fulfillment gate: one attempt at a time
    fulfillment_claim = Column(String, nullable=True)
    fulfillment_claimed_at = Column(Float, nullable=True)

    expires_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_orders_status", "payment_status", "fulfillment_status"),
    )


class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"
    id = Column(String, primary_key=True)
    company_id = Column(String, nullable=False, index=True)
    url = Column(String, nullable=False)
    description = Column(String, nullable=True)
    secret = Column(EncryptedString, nullable=False)
    events = Column(JSON, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    # active | disabled | failed
    status = Column(String, nullable=False, default="active")

    consecutive_failures = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(Float, nullable=True)
    last_failure_at = Column(Float, nullable=True)
    last_failure_reason = Column(String, nullable=True)

    created_by = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(String, nullable=False)
    company_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event = Column(String, nullable=False)
    url = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(String, nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_deliveries_endpoint", "endpoint_id", "created_at"),
        Index("ix_deliveries_created", "created_at"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(String, nullable=False, index=True)
    actor = Column(String, nullable=False)
    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
