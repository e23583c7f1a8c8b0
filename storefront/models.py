"""
SQLAlchemy database models.
These are the authoritative source of truth for all storefront data.

Money is stored as integer cents everywhere (``*_cents`` columns).

The database is authoritative for:
- Catalog (products, variants, categories, brands)
- Inventory (on-hand and reserved quantities)
- Carts, orders and order items
- Payments and the webhook event ledger
"""

import uuid
from enum import Enum

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from storefront.database import Base


def _uuid() -> str:
    return uuid.uuid4().hex


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class ProductStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class CouponType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# Payments in these states can still be moved by provider events
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


class User(Base):
    """
    Account holder. Identity itself is owned by the upstream auth gateway;
    this row carries role and the provider customer mapping.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255))
    role = Column(String(20), nullable=False, default=UserRole.CUSTOMER.value)
    stripe_customer_id = Column(String(255), unique=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    addresses = relationship("Address", back_populates="user")
    profile = relationship("UserProfile", uselist=False, back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)


class UserProfile(Base):
    """Personal details, created on the first profile update."""
    __tablename__ = "user_profiles"

    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(40))
    date_of_birth = Column(Date)
    locale = Column(String(10))
    timezone = Column(String(50))

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="profile")


class Address(Base):
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255))
    line1 = Column(String(255), nullable=False)
    line2 = Column(String(255))
    city = Column(String(120), nullable=False)
    region = Column(String(120))
    postal_code = Column(String(20), nullable=False)
    country = Column(String(2), nullable=False, default="US")

    user = relationship("User", back_populates="addresses")


class Category(Base):
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    slug = Column(String(140), nullable=False, unique=True, index=True)
    description = Column(Text)
    parent_id = Column(String(36), ForeignKey("categories.id"), index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    products = relationship("Product", back_populates="category")


class Brand(Base):
    __tablename__ = "brands"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    slug = Column(String(140), nullable=False, unique=True, index=True)

    products = relationship("Product", back_populates="brand")


class Product(Base):
    """
    Catalog entry. ``price_cents`` is the authoritative unit price unless a
    variant overrides it.
    """
    __tablename__ = "products"
    __table_args__ = (
        Index("ix_products_status_category", "status", "category_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    sku = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(280), nullable=False, index=True)
    description = Column(Text)
    short_description = Column(String(500))

    price_cents = Column(Integer, nullable=False)
    compare_price_cents = Column(Integer)
    currency = Column(String(3), nullable=False, default="USD")

    category_id = Column(String(36), ForeignKey("categories.id"), nullable=False, index=True)
    brand_id = Column(String(36), ForeignKey("brands.id"), index=True)

    status = Column(String(20), nullable=False, default=ProductStatus.DRAFT.value, index=True)
    is_featured = Column(Boolean, nullable=False, default=False)

    # Inventory policy
    track_inventory = Column(Boolean, nullable=False, default=True)
    allow_out_of_stock = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    category = relationship("Category", back_populates="products")
    brand = relationship("Brand", back_populates="products")
    variants = relationship("ProductVariant", back_populates="product", order_by="ProductVariant.sku")
    inventory = relationship(
        "Inventory",
        primaryjoin="and_(Product.id == Inventory.product_id, Inventory.variant_id.is_(None))",
        uselist=False,
        viewonly=True,
    )

    @property
    def available_quantity(self) -> int:
        return self.inventory.available if self.inventory else 0

    @property
    def in_stock(self) -> bool:
        if not self.track_inventory or self.allow_out_of_stock:
            return True
        return self.available_quantity > 0

    @property
    def is_low_stock(self) -> bool:
        if not self.track_inventory or self.inventory is None:
            return False
        return self.available_quantity <= self.inventory.low_stock_threshold


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    sku = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    # NULL means "use the product price"
    price_cents = Column(Integer)
    attributes = Column(JSON, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    product = relationship("Product", back_populates="variants")
    inventory = relationship("Inventory", uselist=False, viewonly=True)

    @property
    def effective_price_cents(self) -> int:
        return self.price_cents if self.price_cents is not None else self.product.price_cents

    @property
    def available_quantity(self) -> int:
        return self.inventory.available if self.inventory else 0


class Inventory(Base):
    """
    Stock for exactly one product (variant_id NULL) or one variant.

    Invariant: 0 <= reserved_quantity <= quantity for products that do not
    allow selling out of stock. Every mutation goes through a guarded
    UPDATE in storefront.inventory.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", name="uq_inventory_product_variant"),
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    variant_id = Column(String(36), ForeignKey("product_variants.id"), unique=True)

    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=10)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def available(self) -> int:
        return self.quantity - self.reserved_quantity


class CartItem(Base):
    """
    One line of a user's cart. At most one row per (user, product, variant);
    the cart service merges quantities instead of inserting duplicates.
    """
    __tablename__ = "cart_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    variant_id = Column(String(36), ForeignKey("product_variants.id"))
    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product")
    variant = relationship("ProductVariant")

    @property
    def unit_price_cents(self) -> int:
        if self.variant is not None:
            return self.variant.effective_price_cents
        return self.product.price_cents

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def available_quantity(self) -> int:
        source = self.variant if self.variant is not None else self.product
        return source.available_quantity

    @property
    def in_stock(self) -> bool:
        if not self.product.track_inventory or self.product.allow_out_of_stock:
            return True
        return self.available_quantity >= self.quantity


class Coupon(Base):
    """
    Discount code.

    ``value`` is whole percent for PERCENTAGE and cents for FIXED_AMOUNT;
    ignored for FREE_SHIPPING. ``usage_limit`` NULL means unlimited.
    """
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(String(255))
    type = Column(String(20), nullable=False)
    value = Column(Integer, nullable=False, default=0)
    max_discount_cents = Column(Integer)
    minimum_amount_cents = Column(Integer)
    usage_limit = Column(Integer)
    usage_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_to = Column(DateTime(timezone=True), nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    currency = Column(String(3), nullable=False, default="USD")

    subtotal_cents = Column(Integer, nullable=False)
    tax_cents = Column(Integer, nullable=False, default=0)
    shipping_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)

    shipping_address_id = Column(String(36), ForeignKey("addresses.id"), nullable=False)
    billing_address_id = Column(String(36), ForeignKey("addresses.id"))
    coupon_code = Column(String(50))
    notes = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")
    shipping_address = relationship("Address", foreign_keys=[shipping_address_id])
    billing_address = relationship("Address", foreign_keys=[billing_address_id])


class OrderItem(Base):
    """
    Order line with the price and product data frozen at order time.
    ``inventory_reserved`` is true while this line holds reserved stock; it is
    cleared when the reservation is committed or released.
    """
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    variant_id = Column(String(36), ForeignKey("product_variants.id"))
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    total_price_cents = Column(Integer, nullable=False)
    product_snapshot = Column(JSON, nullable=False)
    inventory_reserved = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    """
    One provider payment attempt for an order. Provider data lives in typed
    columns (transaction id, client secret, customer id, raw provider status).
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    payment_method = Column(String(30), nullable=False, default="card")
    provider = Column(String(30), nullable=False, default="stripe")
    provider_transaction_id = Column(String(255), unique=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    client_secret = Column(String(255))
    provider_customer_id = Column(String(255))
    provider_status = Column(String(50))
    last_error = Column(Text)
    refunded_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payments")


class WebhookEvent(Base):
    """Ledger of processed provider events; a repeated event id is a no-op."""
    __tablename__ = "webhook_events"

    id = Column(String(255), primary_key=True)
    type = Column(String(100), nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
