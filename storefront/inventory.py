"""
Guarded inventory mutations.

Every change to ``inventory`` is a single conditional UPDATE whose WHERE
clause re-checks the invariant at write time; the affected row count tells
the caller whether the guard held. Nothing here commits: callers own the
transaction.

- reserve:  reserved += n       WHERE quantity - reserved >= n   (unless overselling is allowed)
- commit:   quantity -= n, reserved -= n   WHERE reserved >= n
- release:  reserved -= n       WHERE reserved >= n
"""

from typing import Optional

from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from storefront.models import Inventory, OrderItem
from storefront.structured_logger import audit_logger


def _inventory_row(product_id: str, variant_id: Optional[str]):
    """Variant stock when a variant was chosen, otherwise the product's own row."""
    if variant_id:
        return Inventory.variant_id == variant_id
    return and_(Inventory.product_id == product_id, Inventory.variant_id.is_(None))


def reserve(db: Session, product_id: str, variant_id: Optional[str], quantity: int, allow_oversell: bool = False) -> bool:
    """
    Reserve ``quantity`` units. Returns False when the stock guard fails
    (or no inventory row exists).
    """
    stmt = (
        update(Inventory)
        .where(_inventory_row(product_id, variant_id))
        .values(reserved_quantity=Inventory.reserved_quantity + quantity)
    )
    if not allow_oversell:
        stmt = stmt.where(Inventory.quantity - Inventory.reserved_quantity >= quantity)
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount > 0


def commit_reservation(db: Session, item: OrderItem) -> bool:
    """Turn a reservation into a sale: stock and reservation both drop by the line quantity."""
    stmt = (
        update(Inventory)
        .where(
            _inventory_row(item.product_id, item.variant_id),
            Inventory.reserved_quantity >= item.quantity,
        )
        .values(
            quantity=Inventory.quantity - item.quantity,
            reserved_quantity=Inventory.reserved_quantity - item.quantity,
        )
    )
    applied = db.execute(stmt.execution_options(synchronize_session=False)).rowcount > 0
    if not applied:
        audit_logger.log_inventory_guard("commit", item.order_id, item.product_id, item.variant_id, item.quantity)
    return applied


def release_reservation(db: Session, item: OrderItem) -> bool:
    """Give reserved units back to the available pool."""
    stmt = (
        update(Inventory)
        .where(
            _inventory_row(item.product_id, item.variant_id),
            Inventory.reserved_quantity >= item.quantity,
        )
        .values(reserved_quantity=Inventory.reserved_quantity - item.quantity)
    )
    applied = db.execute(stmt.execution_options(synchronize_session=False)).rowcount > 0
    if not applied:
        audit_logger.log_inventory_guard("release", item.order_id, item.product_id, item.variant_id, item.quantity)
    return applied


def available_quantity(db: Session, product_id: str, variant_id: Optional[str]) -> int:
    """Read straight from the table; ORM instances may predate a guarded UPDATE."""
    row = (
        db.query(Inventory.quantity, Inventory.reserved_quantity)
        .filter(_inventory_row(product_id, variant_id))
        .first()
    )
    if row is None:
        return 0
    return max(row.quantity - row.reserved_quantity, 0)
