"""
Database Models
===============

Defines the storefront schema using SQLAlchemy ORM.

Tables:
- users: Discord-authenticated customers and admins
- products: Catalog items with live stock
- cart_items: One row per (user, product) in a user's cart
- orders: Placed orders and their lifecycle status
- order_items: Frozen snapshot of each purchased line
- payments: Manual payment record (proof + admin verification)
- coupons: Discount codes
- applied_coupons: The discount a user has applied for their next checkout
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from storefront.database import Base

# ============================================================================
# STATUS VALUES
# ============================================================================

ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_COMPLETED,
    ORDER_CANCELLED,
)

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"


# ============================================================================
# USER MODEL
# ============================================================================

class User(Base):
    """
    A customer or admin, keyed by Discord identity.

    is_admin is recomputed on every login from ADMIN_DISCORD_IDS.
    Banned users cannot sign in or act.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    discord_id = Column(String(64), unique=True, nullable=False, index=True)
    username = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True)
    avatar = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_banned = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    cart_items = relationship("CartItem", back_populates="user", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="user")


# ============================================================================
# PRODUCT MODEL
# ============================================================================

class Product(Base):
    """
    Products available for purchase.

    stock never goes below zero: checkout decrements it with a guarded
    UPDATE and the CHECK constraint backs that up at the database level.
    """
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(100), nullable=True, index=True)
    brand = Column(String(100), nullable=True, index=True)
    image_url = Column(String(255), nullable=True)
    stock = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    cart_items = relationship("CartItem", back_populates="product", cascade="all, delete-orphan")
    order_items = relationship("OrderItem", back_populates="product")


# ============================================================================
# CART MODEL
# ============================================================================

class CartItem(Base):
    """One line of a user's cart. Repeat adds bump quantity on the same row."""
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    added_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="cart_items")
    product = relationship("Product", back_populates="cart_items")


# ============================================================================
# ORDER MODEL
# ============================================================================

class Order(Base):
    """
    Customer orders.

    Attributes:
        order_number: Human-facing unique reference (ORD<ms><3 digits>)
        subtotal, tax_amount, shipping_fee, discount_amount, total_amount:
            total_amount = subtotal + tax_amount + shipping_fee - discount_amount
        status: pending, processing, shipped, delivered, completed, cancelled
        payment_proof: Reference path of the uploaded proof, if any
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in ORDER_STATUSES) + ")",
            name="ck_orders_status",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)

    subtotal = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), nullable=False)
    shipping_fee = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    coupon_code = Column(String(64), nullable=True)

    status = Column(String(20), default=ORDER_PENDING, nullable=False, index=True)
    payment_method = Column(String(50), nullable=False)
    payment_proof = Column(String(255), nullable=True)
    shipping_address = Column(Text, nullable=False)
    phone = Column(String(32), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payment = relationship("Payment", back_populates="order", uselist=False, cascade="all, delete-orphan")


# ============================================================================
# ORDER ITEM MODEL
# ============================================================================

class OrderItem(Base):
    """
    Immutable snapshot of a purchased line.

    price_at_purchase and product_name are frozen at checkout; later catalog
    edits do not touch them. product_id is cleared if the product is deleted.
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    product_name = Column(String(200), nullable=False)

    quantity = Column(Integer, nullable=False)
    price_at_purchase = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", back_populates="order_items")


# ============================================================================
# PAYMENT MODEL
# ============================================================================

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String(50), nullable=False)
    payment_proof = Column(String(255), nullable=True)
    status = Column(String(20), default=PAYMENT_PENDING, nullable=False)
    transaction_id = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    verified_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="payment")


# ============================================================================
# COUPON MODELS
# ============================================================================

class Coupon(Base):
    """
    Discount code.

    discount_type "percentage": discount_value is a percent of the subtotal,
    capped at max_discount when set. "fixed": discount_value is an amount.
    usage_limit is a global cap (None = unlimited).
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True)
    discount_type = Column(String(16), nullable=False, default=DISCOUNT_PERCENTAGE)
    discount_value = Column(Numeric(10, 2), nullable=False)

    min_order_amount = Column(Numeric(10, 2), nullable=True)
    max_discount = Column(Numeric(10, 2), nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AppliedCoupon(Base):
    """The discount a user has applied, consumed by their next checkout."""
    __tablename__ = "applied_coupons"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    applied_at = Column(DateTime(timezone=True), server_default=func.now())

    coupon = relationship("Coupon")
