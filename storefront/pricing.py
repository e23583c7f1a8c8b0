"""
Authoritative order pricing: unit prices, stock pre-check, tax, shipping and
coupon discounts. All arithmetic is in integer cents.

    total = subtotal + tax + shipping - discount

Submitted unit prices are only a consistency check: the catalog price always
wins, and a deviation beyond the tolerance rejects the whole order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from storefront.config import Settings
from storefront.errors import BusinessRuleViolation, InsufficientStock, InvalidCoupon, PriceMismatch
from storefront.inventory import available_quantity
from storefront.models import Coupon, CouponType, Product, ProductStatus, ProductVariant
from storefront.schemas import OrderItemInput


@dataclass
class PricedLine:
    product: Product
    variant: Optional[ProductVariant]
    quantity: int
    unit_price_cents: int

    @property
    def total_price_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def reserves_stock(self) -> bool:
        return bool(self.product.track_inventory)

    def snapshot(self) -> Dict:
        """Product data frozen onto the order line."""
        data = {
            "product_id": self.product.id,
            "name": self.product.name,
            "sku": self.product.sku,
            "slug": self.product.slug,
            "unit_price_cents": self.unit_price_cents,
            "currency": self.product.currency,
        }
        if self.variant is not None:
            data["variant"] = {
                "id": self.variant.id,
                "name": self.variant.name,
                "sku": self.variant.sku,
                "attributes": self.variant.attributes or {},
            }
        return data


@dataclass
class OrderQuote:
    lines: List[PricedLine]
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    coupon: Optional[Coupon] = None
    currency: str = "USD"


def to_cents(amount: float) -> Decimal:
    """Exact cents value of a client-supplied price. Not rounded; may be fractional."""
    return Decimal(str(amount)) * 100


def calculate_tax(subtotal_cents: int, tax_rate: float) -> int:
    return int(round(subtotal_cents * tax_rate))


def calculate_shipping(subtotal_cents: int, settings: Settings) -> int:
    """Flat fee below the free-shipping threshold, free at or above it."""
    if subtotal_cents >= settings.free_shipping_threshold_cents:
        return 0
    return settings.shipping_fee_cents


def compute_discount(coupon: Coupon, subtotal_cents: int, shipping_cents: int) -> int:
    """
    Discount for a valid coupon.

    PERCENTAGE    -> subtotal * value% capped at max_discount
    FIXED_AMOUNT  -> value, never more than the subtotal
    FREE_SHIPPING -> exactly the computed shipping
    """
    if coupon.type == CouponType.PERCENTAGE.value:
        discount = int(round(subtotal_cents * coupon.value / 100))
        if coupon.max_discount_cents is not None:
            discount = min(discount, coupon.max_discount_cents)
        return discount
    if coupon.type == CouponType.FIXED_AMOUNT.value:
        return min(coupon.value, subtotal_cents)
    if coupon.type == CouponType.FREE_SHIPPING.value:
        return shipping_cents
    return 0


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def ensure_coupon_valid(coupon: Optional[Coupon], subtotal_cents: int, now: Optional[datetime] = None) -> Coupon:
    """Raise InvalidCoupon unless the coupon is active, in its window, not used up and the minimum is met."""
    if coupon is None or not coupon.is_active:
        raise InvalidCoupon()

    now = now or datetime.now(timezone.utc)
    if not (_as_utc(coupon.valid_from) <= now <= _as_utc(coupon.valid_to)):
        raise InvalidCoupon()
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise InvalidCoupon()
    if coupon.minimum_amount_cents is not None and subtotal_cents < coupon.minimum_amount_cents:
        raise InvalidCoupon(
            "Order does not meet the coupon minimum",
            details={"minimum_amount_cents": coupon.minimum_amount_cents, "subtotal_cents": subtotal_cents},
        )
    return coupon


def consume_coupon(db: Session, coupon_id: str) -> bool:
    """
    Increment usage_count only while it is still below usage_limit.
    Returns False when another order took the last use first.
    """
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def price_line(db: Session, item: OrderItemInput, settings: Settings) -> PricedLine:
    """Resolve one submitted line against the catalog and check price and stock."""
    product = db.get(Product, item.product_id)
    if product is None or product.status != ProductStatus.PUBLISHED.value:
        raise BusinessRuleViolation(
            f"Product {item.product_id} is not available",
            code="PRODUCT_NOT_AVAILABLE",
        )

    variant = None
    if item.variant_id:
        variant = db.get(ProductVariant, item.variant_id)
        if variant is None or variant.product_id != product.id or not variant.is_active:
            raise BusinessRuleViolation(
                f"Variant {item.variant_id} is not available",
                code="PRODUCT_NOT_AVAILABLE",
            )

    actual_cents = variant.effective_price_cents if variant is not None else product.price_cents
    submitted = to_cents(item.unit_price)
    if abs(submitted - actual_cents) > settings.price_tolerance_cents:
        rounded = int(submitted.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        raise PriceMismatch(product.name, rounded, actual_cents)

    if product.track_inventory and not product.allow_out_of_stock:
        available = available_quantity(db, product.id, item.variant_id)
        if available < item.quantity:
            raise InsufficientStock(product.name, available, item.quantity)

    return PricedLine(product=product, variant=variant, quantity=item.quantity, unit_price_cents=actual_cents)


def quote_order(
    db: Session,
    items: Sequence[OrderItemInput],
    settings: Settings,
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OrderQuote:
    """Price every line, then apply tax, shipping and the optional coupon."""
    lines = [price_line(db, item, settings) for item in items]

    subtotal = sum(line.total_price_cents for line in lines)
    tax = calculate_tax(subtotal, settings.tax_rate)
    shipping = calculate_shipping(subtotal, settings)

    coupon = None
    discount = 0
    if coupon_code:
        coupon = db.query(Coupon).filter(Coupon.code == coupon_code.strip().upper()).first()
        ensure_coupon_valid(coupon, subtotal, now=now)
        discount = compute_discount(coupon, subtotal, shipping)

    currency = lines[0].product.currency if lines else settings.currency
    return OrderQuote(
        lines=lines,
        subtotal_cents=subtotal,
        tax_cents=tax,
        shipping_cents=shipping,
        discount_cents=discount,
        total_cents=subtotal + tax + shipping - discount,
        coupon=coupon,
        currency=currency,
    )
