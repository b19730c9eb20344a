import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    JSON,
    func,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from .db import Base


def _json_type():
    """JSON type compatible with Postgres and SQLite."""
    return JSON().with_variant(JSONB, "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


ORDER_STATUSES = (
    "Pending",
    "Processing",
    "Shipped",
    "Delivered",
    "Cancel Requested",
    "Cancelled",
    "Return Requested",
    "Return Approved",
    "Return Completed",
)
PAYMENT_METHODS = ("COD", "UPI", "ONLINE", "WALLET")


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False, default="customer")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    orders = relationship("Order", back_populates="user")


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_nonnegative"),
        CheckConstraint("price_cents >= 0", name="ck_products_price_nonnegative"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    sku = Column(String(64), unique=True, nullable=False, index=True)
    short_description = Column(Text, nullable=True)
    long_description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False)
    original_price_cents = Column(Integer, nullable=True)
    stock = Column(Integer, nullable=False, default=0)
    sizes = Column(_json_type(), nullable=False, default=list)
    status = Column(String(16), nullable=False, default="Active", index=True)
    fabric = Column(String(128), nullable=True)
    images = Column(_json_type(), nullable=False, default=list)
    image = Column(String(512), nullable=True)
    category = Column(String(64), nullable=False, index=True)
    gender = Column(String(16), nullable=False, default="unisex", index=True)
    featured = Column(Boolean, nullable=False, default=False)
    is_new = Column(Boolean, nullable=False, default=False)
    in_stock = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class ProductImage(Base):
    __tablename__ = "product_images"

    id = Column(String(36), primary_key=True, default=_uuid)
    filename = Column(String(255), nullable=True)
    content_type = Column(String(128), nullable=False, default="application/octet-stream")
    data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", "size", name="uq_cart_items_user_product_size"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    size = Column(String(32), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    added_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    product = relationship("Product", lazy="joined")


class WishlistItem(Base):
    __tablename__ = "wishlist_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_wishlist_items_user_product"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    added_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    product = relationship("Product", lazy="joined")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        # Same checkout key from the same user always maps to one order.
        UniqueConstraint("user_id", "checkout_key", name="uq_orders_user_checkout_key"),
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_user_created", "user_id", "created_at"),
    )

    id = Column(String(32), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    customer_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=False)
    alternate_phone = Column(String(32), nullable=True)
    address = Column(Text, nullable=True)
    house_flat = Column(String(255), nullable=True)
    street = Column(String(255), nullable=True)
    landmark = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(128), nullable=True)
    pincode = Column(String(16), nullable=True)
    subtotal_cents = Column(Integer, nullable=False, default=0)
    shipping_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default="Pending")
    version = Column(Integer, nullable=False, default=1)
    payment_method = Column(String(16), nullable=False)
    courier = Column(String(128), nullable=True)
    tracking_id = Column(String(128), nullable=True, index=True)
    notes = Column(Text, nullable=True)
    checkout_key = Column(String(128), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all,delete-orphan", order_by="OrderItem.position")
    activity = relationship("OrderActivity", back_populates="order", cascade="all,delete-orphan", order_by="OrderActivity.id")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=False)
    sku = Column(String(64), nullable=True)
    size = Column(String(32), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, default="Pending")
    # Denormalized product data at purchase time
    product = Column(_json_type(), nullable=True)

    order = relationship("Order", back_populates="items")


class OrderActivity(Base):
    __tablename__ = "order_activity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    note = Column(Text, nullable=True)
    actor = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    order = relationship("Order", back_populates="activity")


class CancelRequest(Base):
    __tablename__ = "cancel_requests"
    __table_args__ = (
        Index("ix_cancel_requests_status_requested", "status", "requested_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    item_id = Column(String(36), ForeignKey("order_items.id"), nullable=True)
    user_id = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="Pending")
    previous_status = Column(String(32), nullable=False)
    refund_method = Column(String(16), nullable=False, default="wallet")
    refund_amount_cents = Column(Integer, nullable=False, default=0)
    refund_status = Column(String(16), nullable=False, default="Pending")
    refund_reference = Column(String(128), nullable=True)
    admin_note = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order")
    item = relationship("OrderItem")


class ReturnRequest(Base):
    __tablename__ = "return_requests"
    __table_args__ = (
        Index("ix_return_requests_status_requested", "status", "requested_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    item_id = Column(String(36), ForeignKey("order_items.id"), nullable=True)
    user_id = Column(String(36), nullable=True)
    reason = Column(String(32), nullable=False)
    resolution = Column(String(16), nullable=False)
    comment = Column(Text, nullable=True)
    images = Column(_json_type(), nullable=True)
    status = Column(String(16), nullable=False, default="Pending")
    previous_status = Column(String(32), nullable=False)
    refund_method = Column(String(16), nullable=True)
    bank_details = Column(_json_type(), nullable=True)
    refund_amount_cents = Column(Integer, nullable=False, default=0)
    refund_status = Column(String(16), nullable=False, default="Pending")
    refund_reference = Column(String(128), nullable=True)
    admin_note = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order")
    item = relationship("OrderItem")


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_wallets_balance_nonnegative"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), unique=True, nullable=False, index=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        # A caller-supplied operation id is applied at most once per user.
        UniqueConstraint("user_id", "operation_id", name="uq_wallet_transactions_user_operation"),
        CheckConstraint("amount_cents > 0", name="ck_wallet_transactions_amount_positive"),
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(String(40), primary_key=True)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False)
    user_id = Column(String(36), nullable=False)
    kind = Column(String(8), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    balance_after_cents = Column(Integer, nullable=False)
    # Wallet version right after this entry; gives a total order per wallet.
    sequence = Column(Integer, nullable=False)
    description = Column(String(255), nullable=False)
    order_id = Column(String(32), nullable=True)
    operation_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())


class Announcement(Base):
    __tablename__ = "announcements"

    id = Column(String(36), primary_key=True, default=_uuid)
    text = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Subscriber(Base):
    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    source = Column(String(64), nullable=False, default="Stay Updated")
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())


class AppSetting(Base):
    """
    Simple key/value settings store (JSON value).

    Used for the shop configuration:
      key = "shop"
      value = {"shipping_enabled": true, "shipping_charge_cents": 9900, "free_shipping_threshold_cents": 200000}
    """

    __tablename__ = "app_settings"

    key = Column(String(255), primary_key=True)
    value = Column(_json_type(), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
