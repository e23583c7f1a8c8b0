"""
Pydantic v2 schemas for strict request/response validation.

All request schemas use extra="forbid" to reject unknown fields.
Response payloads are wrapped in the standard envelope by ``success()``.
Money fields ending in ``_cents`` are integer cents.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront.models import OrderStatus, ProductStatus


#
# Envelope helpers
#

def success(data: Any = None, message: Optional[str] = None, pagination: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the success envelope returned by every endpoint."""
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def paginate(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


#
# Requests
#

# Upper bound for client-submitted unit prices, in currency units
MAX_UNIT_PRICE = 1_000_000


class AddToCartRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1, le=100)


class UpdateCartItemRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # 0 removes the line
    quantity: int = Field(..., ge=0, le=100)


class OrderItemInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1, le=100)
    unit_price: float = Field(
        ..., ge=0, le=MAX_UNIT_PRICE, allow_inf_nan=False,
        description="Client-side unit price in currency units, re-checked server side",
    )


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: List[OrderItemInput] = Field(..., min_length=1)
    shipping_address_id: str = Field(..., min_length=1)
    billing_address_id: Optional[str] = None
    coupon_code: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=500)


class UpdateOrderStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str
    notes: Optional[str] = Field(None, max_length=500)


class VariantInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sku: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    price_cents: Optional[int] = Field(None, ge=0)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    initial_quantity: int = Field(0, ge=0)


class CreateProductRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    sku: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=500)
    price_cents: int = Field(..., ge=0)
    compare_price_cents: Optional[int] = Field(None, ge=0)
    category_id: str
    brand_id: Optional[str] = None
    status: ProductStatus = ProductStatus.DRAFT
    is_featured: bool = False
    track_inventory: bool = True
    allow_out_of_stock: bool = False
    initial_quantity: int = Field(0, ge=0)
    low_stock_threshold: int = Field(10, ge=0)
    variants: List[VariantInput] = Field(default_factory=list)


class UpdateProductRequest(BaseModel):
    """
    Partial product update; only fields present in the body change.
    Non-nullable columns default to None but reject an explicit null.
    """
    model_config = ConfigDict(extra="forbid")

    name: str = Field(None, min_length=1, max_length=255)
    sku: str = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=500)
    price_cents: int = Field(None, ge=0)
    compare_price_cents: Optional[int] = Field(None, ge=0)
    category_id: str = Field(None, min_length=1)
    brand_id: Optional[str] = None
    status: ProductStatus = None
    is_featured: bool = None
    track_inventory: bool = None
    allow_out_of_stock: bool = None


class CreateCategoryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: Optional[str] = Field(None, max_length=500)
    parent_id: Optional[str] = None
    is_active: bool = True
    sort_order: int = Field(0, ge=0)


class UpdateProfileRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=2, max_length=50)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=40)
    date_of_birth: Optional[date] = None
    locale: Optional[str] = Field(None, max_length=10)
    timezone: Optional[str] = Field(None, max_length=50)


class CreateIntentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_id: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_id: str = Field(..., min_length=1)
    payment_intent_id: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # None refunds the remaining balance
    amount_cents: Optional[int] = Field(None, gt=0)
    reason: Literal["duplicate", "fraudulent", "requested_by_customer"] = "requested_by_customer"


class PerformanceMetricInput(BaseModel):
    """A web-vitals sample posted by the storefront client."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=20)
    value: float
    rating: Literal["good", "needs-improvement", "poor"]
    delta: float = 0.0
    id: str
    navigation_type: Optional[str] = Field(None, alias="navigationType")
    url: str
    timestamp: Optional[int] = None


#
# Responses
#

class _ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CategoryOut(_ORMModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    sort_order: int = 0


class BrandOut(_ORMModel):
    id: str
    name: str
    slug: str


class VariantOut(_ORMModel):
    id: str
    sku: str
    name: str
    price_cents: Optional[int] = None
    effective_price_cents: int
    attributes: Optional[Dict[str, Any]] = None
    is_active: bool
    available_quantity: int


class ProductSummaryOut(_ORMModel):
    id: str
    sku: str
    name: str
    slug: str
    short_description: Optional[str] = None
    price_cents: int
    compare_price_cents: Optional[int] = None
    currency: str
    status: str
    is_featured: bool
    category: Optional[CategoryOut] = None
    brand: Optional[BrandOut] = None
    available_quantity: int
    in_stock: bool


class ProductDetailOut(ProductSummaryOut):
    description: Optional[str] = None
    track_inventory: bool
    allow_out_of_stock: bool
    is_low_stock: bool
    variants: List[VariantOut] = Field(default_factory=list)


class ProfileOut(_ORMModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    locale: Optional[str] = None
    timezone: Optional[str] = None


class UserOut(_ORMModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    created_at: Optional[datetime] = None
    profile: Optional[ProfileOut] = None


class CartProductOut(_ORMModel):
    id: str
    name: str
    slug: str
    sku: str
    price_cents: int


class CartVariantOut(_ORMModel):
    id: str
    name: str
    sku: str
    price_cents: Optional[int] = None


class CartItemOut(_ORMModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    available_quantity: int
    in_stock: bool
    product: CartProductOut
    variant: Optional[CartVariantOut] = None


class CartSummaryOut(BaseModel):
    total_items: int
    subtotal_cents: int
    item_count: int


class CartOut(BaseModel):
    items: List[CartItemOut]
    summary: CartSummaryOut


class AddressOut(_ORMModel):
    id: str
    name: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    region: Optional[str] = None
    postal_code: str
    country: str


class OrderItemOut(_ORMModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    unit_price_cents: int
    total_price_cents: int
    product_snapshot: Dict[str, Any]


class PaymentOut(_ORMModel):
    """Payment as seen in order detail. The client secret is only returned by create-intent."""
    id: str
    order_id: str
    payment_method: str
    provider: str
    provider_transaction_id: Optional[str] = None
    amount_cents: int
    currency: str
    status: str
    provider_status: Optional[str] = None
    last_error: Optional[str] = None
    refunded_cents: int
    created_at: Optional[datetime] = None


class OrderSummaryOut(_ORMModel):
    id: str
    order_number: str
    user_id: str
    status: str
    currency: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class OrderDetailOut(OrderSummaryOut):
    items: List[OrderItemOut]
    payments: List[PaymentOut] = Field(default_factory=list)
    shipping_address: Optional[AddressOut] = None
    billing_address: Optional[AddressOut] = None


VALID_ORDER_STATUSES = [status.value for status in OrderStatus]
