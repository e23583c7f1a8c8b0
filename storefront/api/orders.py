"""Order endpoints: create (201), list, detail and admin status updates."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from storefront.cache import CacheClient
from storefront.config import Settings
from storefront.database import get_db
from storefront.dependencies import get_app_settings, get_cache, get_current_user, require_admin
from storefront.models import OrderStatus, User
from storefront.orders import OrderService
from storefront.schemas import CreateOrderRequest, UpdateOrderStatusRequest, paginate, success

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status: Optional[OrderStatus] = None,
    sort_by: Literal["created_at", "total", "status"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    user: User = Depends(get_current_user),
):
    orders, total = OrderService(db, settings).list_orders(
        user,
        page=page,
        limit=limit,
        status=status.value if status else None,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return success(orders, pagination=paginate(page, limit, total))


@router.post("", status_code=201)
def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cache: CacheClient = Depends(get_cache),
    user: User = Depends(get_current_user),
):
    order = OrderService(db, settings, cache).create_order(user, request)
    return success(order, message="Order created")


@router.get("/{order_id}")
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    user: User = Depends(get_current_user),
):
    return success(OrderService(db, settings).get_order(user, order_id))


@router.put("/{order_id}")
def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cache: CacheClient = Depends(get_cache),
    admin: User = Depends(require_admin),
):
    order = OrderService(db, settings, cache).update_order_status(order_id, request.status, request.notes)
    return success(order, message="Order status updated")
