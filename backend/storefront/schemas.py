"""
Pydantic Schemas
================

Request bodies are validated here before any service runs; response models
define what the API returns. ORM rows are serialised with
``from_attributes=True``.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storefront import config

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "completed", "cancelled"]


# ============================================================================
# USERS
# ============================================================================

class DiscordLogin(BaseModel):
    """Identity handed over by the OAuth callback."""
    discord_id: str = Field(..., min_length=1, max_length=64)
    username: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255)
    avatar: Optional[str] = Field(None, max_length=255)


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    discord_id: str
    username: str
    email: Optional[str] = None
    avatar: Optional[str] = None
    is_admin: bool
    is_banned: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class AdminUser(User):
    order_count: int = 0
    total_spent: Decimal = Decimal("0")


class ProfileStats(BaseModel):
    total_orders: int = 0
    total_spent: Decimal = Decimal("0")


class BanRequest(BaseModel):
    action: Literal["ban", "unban"]


# ============================================================================
# PRODUCTS
# ============================================================================

class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    category: Optional[str] = Field(None, max_length=100)
    brand: Optional[str] = Field(None, max_length=100)
    image_url: Optional[str] = Field("/images/default-product.jpg", max_length=255)
    stock: int = Field(0, ge=0)


class ProductCreate(ProductBase):
    pass


class ProductUpdate(BaseModel):
    """Partial update: only fields the client sends are changed."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    category: Optional[str] = Field(None, max_length=100)
    brand: Optional[str] = Field(None, max_length=100)
    image_url: Optional[str] = Field(None, max_length=255)
    stock: Optional[int] = Field(None, ge=0)


class Product(ProductBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductDetail(Product):
    related: List[Product] = []


class CatalogFacets(BaseModel):
    categories: List[str]
    brands: List[str]


# ============================================================================
# CART
# ============================================================================

class CartAdd(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=1)


class CartLine(BaseModel):
    id: int
    product_id: int
    name: str
    image_url: Optional[str] = None
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class PriceBreakdown(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


class Cart(BaseModel):
    items: List[CartLine]
    item_count: int
    coupon_code: Optional[str] = None
    coupon_error: Optional[str] = None
    pricing: PriceBreakdown


class CartCount(BaseModel):
    count: int


# ============================================================================
# COUPONS
# ============================================================================

class CouponApply(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    min_order_amount: Optional[Decimal] = Field(None, ge=0)
    max_discount: Optional[Decimal] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalise_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def check_values(self):
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class Coupon(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    discount_type: str
    discount_value: Decimal
    min_order_amount: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = None
    used_count: int
    is_active: bool


class AppliedDiscount(BaseModel):
    code: str
    discount: Decimal
    subtotal: Decimal


# ============================================================================
# ORDERS & PAYMENTS
# ============================================================================

class CheckoutRequest(BaseModel):
    payment_method: str
    shipping_address: str = Field(..., min_length=5, max_length=1000)
    phone: Optional[str] = Field(None, max_length=32, pattern=r"^\+?[0-9 ()-]{6,32}$")

    @field_validator("payment_method")
    @classmethod
    def known_method(cls, value: str) -> str:
        if value not in config.PAYMENT_METHODS:
            raise ValueError(f"payment_method must be one of: {', '.join(config.PAYMENT_METHODS)}")
        return value


class OrderItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    price_at_purchase: Decimal


class Payment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    payment_method: str
    payment_proof: Optional[str] = None
    status: str
    transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    order_number: str
    total_amount: Decimal
    status: str
    payment_method: str
    created_at: Optional[datetime] = None
    item_count: int = 0
    username: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    order_number: str
    subtotal: Decimal
    tax_amount: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    coupon_code: Optional[str] = None
    status: str
    payment_method: str
    payment_proof: Optional[str] = None
    shipping_address: str
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItem] = []
    payment: Optional[Payment] = None


class StatusUpdate(BaseModel):
    status: OrderStatus


class PaymentVerification(BaseModel):
    outcome: Literal["completed", "failed"]
    transaction_id: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentLink(BaseModel):
    order_number: str
    amount: Decimal
    upi_id: str
    upi_url: str


# ============================================================================
# ADMIN
# ============================================================================

class DashboardStats(BaseModel):
    total_users: int
    total_orders: int
    total_products: int
    total_revenue: Decimal
    recent_orders: List[OrderSummary]
    recent_users: List[User]


class RestoreResult(BaseModel):
    success: bool
    message: str
