from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    Index,
)


Base = declarative_base()

# delivery methods
DIRECT = "DIRECT"
URL = "URL"
BOTH = "BOTH"
DELIVERY_METHODS = (DIRECT, URL, BOTH)

# sentinels for processor-originated orders
SYSTEM_SELLER = "system"
DEFAULT_CONFIGURATION = "default"


# ----------------------------
# ORM models
# ----------------------------
class ScheduledIssuance(Base):
    __tablename__ = "scheduled_issuances"
    id = Column(String, primary_key=True)
    scheduled_for = Column(Float, nullable=False)
    client_name = Column(String, nullable=False)
    client_email = Column(String, nullable=False)
    guests = Column(Integer, nullable=False)
    days = Column(Integer, nullable=False)
    seller_id = Column(String, nullable=False, default=SYSTEM_SELLER)
    configuration_id = Column(
        String, nullable=False, default=DEFAULT_CONFIGURATION
    )
    delivery_method = Column(String, nullable=False, default=DIRECT)
    order_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)

    # PENDING -> CLAIMED (claimed_at) -> PROCESSED (is_processed)
    # only ever written through ScheduledIssuanceStore.reserve/finalize
    claimed_at = Column(Float, nullable=True)
    is_processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(Float, nullable=True)
    created_pass_id = Column(String, nullable=True, unique=True)

    dispatch_message_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_scheduled_due", "is_processed", "scheduled_for"),
    )


class Pass(Base):
    __tablename__ = "passes"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    seller_id = Column(String, nullable=False)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    guests = Column(Integer, nullable=False)
    days = Column(Integer, nullable=False)
    cost = Column(Integer, nullable=False)  # cents
    expires_at = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    landing_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class AccessCredential(Base):
    __tablename__ = "access_credentials"
    token = Column(String, primary_key=True)
    pass_id = Column(String, nullable=False, index=True)
    customer_email = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=False)
    expires_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)


class AnalyticsRecord(Base):
    __tablename__ = "pass_analytics"
    id = Column(String, primary_key=True)
    pass_id = Column(String, nullable=False, unique=True)
    pass_code = Column(String, nullable=False)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    guests = Column(Integer, nullable=False)
    days = Column(Integer, nullable=False)
    cost = Column(Integer, nullable=False)  # cents
    expires_at = Column(Float, nullable=False)
    delivery_method = Column(String, nullable=False)

    seller_id = Column(String, nullable=False)
    seller_name = Column(String, nullable=True)
    seller_email = Column(String, nullable=True)
    location_name = Column(String, nullable=True)
    distributor_name = Column(String, nullable=True)
    configuration_id = Column(String, nullable=False)
    configuration_name = Column(String, nullable=True)

    # pricing breakdown, all cents
    pricing_type = Column(String, nullable=False)
    base_amount = Column(Integer, nullable=False, default=0)
    guest_amount = Column(Integer, nullable=False, default=0)
    day_amount = Column(Integer, nullable=False, default=0)
    commission_amount = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)

    magic_link_url = Column(String, nullable=True)
    landing_url = Column(String, nullable=True)
    welcome_email_sent = Column(Boolean, nullable=False, default=False)
    rebuy_email_scheduled = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    # external transaction id; NULL when the channel did not carry one
    payment_id = Column(String, nullable=True, unique=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="USD")
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    guests = Column(Integer, nullable=False)
    days = Column(Integer, nullable=False)
    # now | future
    delivery_type = Column(String, nullable=False, default="now")
    delivery_at = Column(Float, nullable=True)
    seller_id = Column(String, nullable=False, default=SYSTEM_SELLER)
    # webhook | return
    source = Column(String, nullable=False)

    # PAID
    status = Column(String, nullable=False, default="PAID")
    created_at = Column(Float, nullable=False)

    # set by whichever confirmation wins the right to route the order
    routed_at = Column(Float, nullable=True)
    pass_id = Column(String, nullable=True)
    scheduled_issuance_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_orders_dedup", "customer_email", "amount", "created_at"),
    )


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


# ----------------------------
# configuration store (read-only from the pipeline's side)
# ----------------------------
class Seller(Base):
    __tablename__ = "sellers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    location_name = Column(String, nullable=True)
    distributor_name = Column(String, nullable=True)
    configuration_id = Column(String, nullable=True)


class PassConfigurationRow(Base):
    __tablename__ = "pass_configurations"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    document = Column(Text, nullable=False)  # JSON


class EmailTemplate(Base):
    __tablename__ = "email_templates"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    configuration_id = Column(String, nullable=True, index=True)
    subject = Column(String, nullable=True)
    html = Column(Text, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)
