"""
Per-user cart store.

Cart prices are always live (variant price, falling back to the product
price); nothing is frozen until an order is placed. Adding a product that is
already in the cart merges into the existing line, and the stock check runs
against the merged quantity.
"""

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, selectinload

from storefront.errors import BusinessRuleViolation, InsufficientStock, NotFound
from storefront.logger import get_logger
from storefront.models import CartItem, Product, ProductStatus, ProductVariant, User
from storefront.schemas import AddToCartRequest, CartItemOut, CartOut, CartSummaryOut

logger = get_logger(__name__)


def _check_stock(product: Product, variant: Optional[ProductVariant], requested: int, in_cart: int = 0) -> None:
    if not product.track_inventory or product.allow_out_of_stock:
        return
    available = variant.available_quantity if variant is not None else product.available_quantity
    if available < requested:
        error = InsufficientStock(product.name, available, requested)
        if in_cart:
            error.details["current_quantity"] = in_cart
        raise error


class CartService:
    def __init__(self, db: Session):
        self.db = db

    def _items(self, user: User):
        return (
            self.db.query(CartItem)
            .options(
                selectinload(CartItem.product).selectinload(Product.inventory),
                selectinload(CartItem.variant).selectinload(ProductVariant.inventory),
            )
            .filter(CartItem.user_id == user.id)
            .order_by(CartItem.created_at, CartItem.id)
            .all()
        )

    def get_cart(self, user: User) -> Dict[str, Any]:
        items = self._items(user)
        cart = CartOut(
            items=[CartItemOut.model_validate(item) for item in items],
            summary=CartSummaryOut(
                total_items=sum(item.quantity for item in items),
                subtotal_cents=sum(item.line_total_cents for item in items),
                item_count=len(items),
            ),
        )
        return cart.model_dump(mode="json")

    def add_item(self, user: User, data: AddToCartRequest) -> Dict[str, Any]:
        product = self.db.get(Product, data.product_id)
        if product is None:
            raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
        if product.status != ProductStatus.PUBLISHED.value:
            raise BusinessRuleViolation("Product is not available for purchase", code="PRODUCT_NOT_AVAILABLE")

        variant = None
        if data.variant_id:
            variant = self.db.get(ProductVariant, data.variant_id)
            if variant is None or variant.product_id != product.id or not variant.is_active:
                raise NotFound("Variant not found or unavailable", code="VARIANT_NOT_FOUND")

        existing = (
            self.db.query(CartItem)
            .filter(
                CartItem.user_id == user.id,
                CartItem.product_id == product.id,
                CartItem.variant_id.is_(None) if variant is None else CartItem.variant_id == variant.id,
            )
            .first()
        )

        if existing is not None:
            new_quantity = existing.quantity + data.quantity
            _check_stock(product, variant, new_quantity, in_cart=existing.quantity)
            existing.quantity = new_quantity
            item = existing
        else:
            _check_stock(product, variant, data.quantity)
            item = CartItem(
                user_id=user.id,
                product_id=product.id,
                variant_id=variant.id if variant else None,
                quantity=data.quantity,
            )
            self.db.add(item)

        self.db.commit()
        self.db.refresh(item)
        logger.debug("Cart %s: %s x%d", user.id, product.id, item.quantity)
        return CartItemOut.model_validate(item).model_dump(mode="json")

    def _owned_item(self, user: User, item_id: str) -> CartItem:
        item = self.db.get(CartItem, item_id)
        if item is None or item.user_id != user.id:
            raise NotFound("Cart item not found", code="CART_ITEM_NOT_FOUND")
        return item

    def update_item(self, user: User, item_id: str, quantity: int) -> Optional[Dict[str, Any]]:
        """Set a line's quantity; 0 removes the line and returns None."""
        item = self._owned_item(user, item_id)
        if quantity == 0:
            self.db.delete(item)
            self.db.commit()
            return None

        _check_stock(item.product, item.variant, quantity)
        item.quantity = quantity
        self.db.commit()
        self.db.refresh(item)
        return CartItemOut.model_validate(item).model_dump(mode="json")

    def remove_item(self, user: User, item_id: str) -> None:
        item = self._owned_item(user, item_id)
        self.db.delete(item)
        self.db.commit()

    def clear(self, user: User) -> int:
        deleted = self.db.query(CartItem).filter(CartItem.user_id == user.id).delete(synchronize_session=False)
        self.db.commit()
        return deleted
