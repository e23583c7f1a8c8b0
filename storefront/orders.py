"""
Order transaction and order queries.

create_order runs every business check first (addresses, prices, stock,
coupon), then writes in one transaction:

    (a) Order row (PENDING, fresh order number)
    (b) OrderItems with frozen product snapshots
    (c) guarded inventory reservation per line
    (d) guarded coupon usage increment
    (e) the user's cart is emptied

A failed guard in (c) or (d) means a concurrent order got there first; the
whole transaction is rolled back and nothing is persisted.
"""

import secrets
import string
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, selectinload

from storefront import inventory
from storefront.cache import CacheClient
from storefront.config import Settings
from storefront.errors import BusinessRuleViolation, InsufficientStock, InvalidCoupon, NotFound
from storefront.logger import get_logger
from storefront.models import Address, CartItem, Order, OrderItem, OrderStatus, User
from storefront.pricing import consume_coupon, quote_order
from storefront.schemas import CreateOrderRequest, OrderDetailOut, OrderSummaryOut, VALID_ORDER_STATUSES
from storefront.structured_logger import audit_logger

logger = get_logger(__name__)

# Orders awaiting payment; provider events may still move them
ACTIVE_ORDER_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)

# Closed orders cannot be reopened and hold no stock
CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)

ORDER_SORT_COLUMNS = {
    "created_at": Order.created_at,
    "total": Order.total_cents,
    "status": Order.status,
}

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """ORD-<last 8 digits of the ms timestamp>-<4 random uppercase alphanumerics>."""
    timestamp = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"ORD-{timestamp}-{suffix}"


def advance_order(db: Session, order_id: str, target: str, from_statuses: Iterable[str]) -> bool:
    """Move an order to ``target`` only if it is still in one of ``from_statuses``."""
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status.in_(list(from_statuses)))
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def settle_reservations(db: Session, order_id: str, action: str) -> List[str]:
    """
    Commit or release the stock still reserved for the lines of an order.

    Each line's ``inventory_reserved`` flag is cleared with a guarded UPDATE
    before its stock moves, so a line is settled at most once whatever the
    order status says. Returns the product ids whose inventory was touched.
    """
    items = (
        db.query(OrderItem)
        .filter(OrderItem.order_id == order_id, OrderItem.inventory_reserved.is_(True))
        .all()
    )
    apply = inventory.commit_reservation if action == "commit" else inventory.release_reservation
    touched = []
    for item in items:
        claimed = db.execute(
            update(OrderItem)
            .where(OrderItem.id == item.id, OrderItem.inventory_reserved.is_(True))
            .values(inventory_reserved=False)
            .execution_options(synchronize_session=False)
        ).rowcount > 0
        if claimed and apply(db, item):
            touched.append(item.product_id)
    return touched


class OrderService:
    def __init__(self, db: Session, settings: Settings, cache: Optional[CacheClient] = None):
        self.db = db
        self.settings = settings
        self.cache = cache

    def _owned_address(self, user: User, address_id: str, code: str, label: str) -> Address:
        address = (
            self.db.query(Address)
            .filter(Address.id == address_id, Address.user_id == user.id)
            .first()
        )
        if address is None:
            raise BusinessRuleViolation(f"{label} address not found", code=code)
        return address

    def create_order(self, user: User, data: CreateOrderRequest) -> Dict[str, Any]:
        self._owned_address(user, data.shipping_address_id, "ADDRESS_NOT_FOUND", "Shipping")
        if data.billing_address_id:
            self._owned_address(user, data.billing_address_id, "BILLING_ADDRESS_NOT_FOUND", "Billing")

        quote = quote_order(self.db, data.items, self.settings, coupon_code=data.coupon_code)

        try:
            order = Order(
                order_number=generate_order_number(),
                user_id=user.id,
                status=OrderStatus.PENDING.value,
                currency=quote.currency,
                subtotal_cents=quote.subtotal_cents,
                tax_cents=quote.tax_cents,
                shipping_cents=quote.shipping_cents,
                discount_cents=quote.discount_cents,
                total_cents=quote.total_cents,
                shipping_address_id=data.shipping_address_id,
                billing_address_id=data.billing_address_id,
                coupon_code=quote.coupon.code if quote.coupon else None,
                notes=data.notes,
            )
            self.db.add(order)
            self.db.flush()

            items = [
                OrderItem(
                    order_id=order.id,
                    product_id=line.product.id,
                    variant_id=line.variant.id if line.variant else None,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    total_price_cents=line.total_price_cents,
                    product_snapshot=line.snapshot(),
                    inventory_reserved=line.reserves_stock,
                )
                for line in quote.lines
            ]
            self.db.add_all(items)
            self.db.flush()

            for line, item in zip(quote.lines, items):
                if not line.reserves_stock:
                    continue
                oversell = bool(line.product.allow_out_of_stock)
                reserved = inventory.reserve(self.db, item.product_id, item.variant_id, item.quantity, allow_oversell=oversell)
                if reserved:
                    continue
                if oversell:
                    # No inventory row to reserve against
                    item.inventory_reserved = False
                    continue
                raise InsufficientStock(
                    line.product.name,
                    inventory.available_quantity(self.db, item.product_id, item.variant_id),
                    item.quantity,
                )

            if quote.coupon is not None and not consume_coupon(self.db, quote.coupon.id):
                raise InvalidCoupon("Coupon usage limit reached")

            self.db.query(CartItem).filter(CartItem.user_id == user.id).delete(synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if self.cache:
            self.cache.invalidate_products(line.product.id for line in quote.lines)
        audit_logger.log_order_created(order.id, order.order_number, user.id, order.total_cents, len(items))
        return self._detail(order.id)

    def _detail(self, order_id: str) -> Dict[str, Any]:
        order = (
            self.db.query(Order)
            .options(
                selectinload(Order.items),
                selectinload(Order.payments),
                selectinload(Order.shipping_address),
                selectinload(Order.billing_address),
            )
            .filter(Order.id == order_id)
            .first()
        )
        return OrderDetailOut.model_validate(order).model_dump(mode="json")

    def list_orders(
        self,
        user: User,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = self.db.query(Order).filter(Order.user_id == user.id)
        if status:
            query = query.filter(Order.status == status)
        total = query.count()

        column = ORDER_SORT_COLUMNS.get(sort_by, Order.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        orders = query.order_by(ordering, Order.id).offset((page - 1) * limit).limit(limit).all()
        return [OrderSummaryOut.model_validate(o).model_dump(mode="json") for o in orders], total

    def get_order(self, user: User, order_id: str) -> Dict[str, Any]:
        order = self.db.get(Order, order_id)
        if order is None or (order.user_id != user.id and not user.is_admin):
            raise NotFound("Order not found", code="ORDER_NOT_FOUND")
        return self._detail(order.id)

    def update_order_status(self, order_id: str, status: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Admin status change. Closed orders (cancelled, refunded) cannot be
        reopened; closing an order releases whatever stock its lines still hold.
        """
        if status not in VALID_ORDER_STATUSES:
            raise BusinessRuleViolation(
                "Invalid order status",
                code="INVALID_STATUS",
                details={"valid_statuses": VALID_ORDER_STATUSES},
            )
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found", code="ORDER_NOT_FOUND")

        values: Dict[str, Any] = {"status": status}
        if notes is not None:
            values["notes"] = notes

        touched: List[str] = []
        try:
            moved = self.db.execute(
                update(Order)
                .where(Order.id == order.id, or_(Order.status == status, Order.status.notin_(CLOSED_ORDER_STATUSES)))
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount > 0
            if not moved:
                current = self.db.query(Order.status).filter(Order.id == order.id).scalar()
                raise BusinessRuleViolation(
                    f"Order is {current} and cannot be moved to {status}",
                    code="INVALID_STATUS",
                    details={"status": current, "requested": status},
                )
            if status in CLOSED_ORDER_STATUSES:
                touched = settle_reservations(self.db, order.id, "release")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if self.cache and touched:
            self.cache.invalidate_products(touched)
        logger.info("Order %s status set to %s", order.order_number, status)
        return self._detail(order.id)
