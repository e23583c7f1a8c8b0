"""Cart endpoints. Every route acts on the authenticated user's own cart."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.cart import CartService
from storefront.database import get_db
from storefront.dependencies import get_current_user
from storefront.models import User
from storefront.schemas import AddToCartRequest, UpdateCartItemRequest, success

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("")
def get_cart(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return success(CartService(db).get_cart(user))


@router.post("")
def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    item = CartService(db).add_item(user, request)
    return success(item, message="Added to cart")


@router.delete("")
def clear_cart(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    removed = CartService(db).clear(user)
    return success({"removed": removed}, message="Cart cleared")


@router.put("/{item_id}")
def update_cart_item(
    item_id: str,
    request: UpdateCartItemRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    item = CartService(db).update_item(user, item_id, request.quantity)
    if item is None:
        return success(None, message="Item removed from cart")
    return success(item, message="Cart updated")


@router.delete("/{item_id}")
def remove_cart_item(
    item_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    CartService(db).remove_item(user, item_id)
    return success(None, message="Item removed from cart")
