from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)

from marketplace.database import Base, utcnow


class OrderStatus:
    PENDING = "pending"
    ORDER_PLACED = "order placed"
    CONFIRM = "confirm"
    PROCESSING = "processing"
    DELIVERY = "delivery"
    SUCCESS = "success"
    CANCEL = "cancel"
    EXPIRED = "expired"
    REFUND = "refund"
    REFUND_FAILED = "refund_failed"


class PaymentMethod:
    UNPAID = "unpaid"
    STRIPE = "stripe"
    COD = "cod"


class ProductStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"
    OUT_OF_STOCK = "out_of_stock"


class Seller(Base):
    __tablename__ = "sellers"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_seller_balance_non_negative"),
    )

    id = Column(String(64), primary_key=True)
    business_name = Column(String(255), nullable=False)
    balance = Column(Integer, nullable=False, default=0)    # minor units


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("inventory >= 0", name="ck_product_inventory_non_negative"),
        CheckConstraint("reserved_inventory >= 0", name="ck_product_reserved_non_negative"),
    )

    id = Column(String(36), primary_key=True)
    name = Column(String(120), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    images = Column(JSON, nullable=True)
    inventory = Column(Integer, nullable=False, default=0)
    reserved_inventory = Column(Integer, nullable=False, default=0)
    sold_count = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default=ProductStatus.ACTIVE)
    cash_on_delivery = Column(Boolean, nullable=False, default=False)
    merchant_id = Column(String(64), ForeignKey("sellers.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Order(Base):
    """One product line of an order group; lines share ``code``."""

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_quantity_positive"),
    )

    id = Column(String(36), primary_key=True)
    code = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    merchant_id = Column(String(64), ForeignKey("sellers.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)              # unit price snapshot
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING, index=True)
    payment = Column(String(16), nullable=False, default=PaymentMethod.UNPAID)
    is_paid = Column(Boolean, nullable=False, default=False)
    inventory_reserved = Column(Boolean, nullable=False, default=False)
    stripe_session_id = Column(String(255), nullable=True, index=True)
    refund_reason = Column(String(255), nullable=True)
    reserved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PaymentHistory(Base):
    __tablename__ = "payment_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(64), nullable=False)
    merchant_id = Column(String(64), ForeignKey("sellers.id"), nullable=False, index=True)
    payment_method = Column(String(16), nullable=False)
    amount = Column(Integer, nullable=False)                    # minor units
    order_code = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False)                 # income | withdraw
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    receiver_id = Column(String(64), nullable=False, index=True)
    type = Column(String(16), nullable=False)
    link = Column(String(255), nullable=True)
    message = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="unread")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Analytic(Base):
    __tablename__ = "analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(16), nullable=False)                   # purchase | order | view | search
    product_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    day = Column(String(10), nullable=False)                    # YYYY-MM-DD, dedup key
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(String(128), primary_key=True)                  # e.g. order:<code>
    queue = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="queued")   # queued | active | failed
    run_at = Column(DateTime, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    locked_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
