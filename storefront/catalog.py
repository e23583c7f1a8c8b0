"""
Catalog store: product listing and detail, admin product create, update and
delete, and categories.

Product detail is cached in Redis (when configured); admin edits, order and
payment flows invalidate the entry whenever the product or its stock changes.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, or_
from sqlalchemy.orm import Session, selectinload

from storefront.cache import CacheClient
from storefront.errors import BusinessRuleViolation, NotFound
from storefront.logger import get_logger
from storefront.models import (
    Brand, CartItem, Category, Inventory, OrderItem, Product, ProductStatus, ProductVariant,
)
from storefront.schemas import (
    CategoryOut, CreateCategoryRequest, CreateProductRequest, ProductDetailOut, ProductSummaryOut,
    UpdateProductRequest,
)

logger = get_logger(__name__)

SORT_COLUMNS = {
    "name": Product.name,
    "price": Product.price_cents,
    "created_at": Product.created_at,
}


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "product"


class CatalogService:
    def __init__(self, db: Session, cache: Optional[CacheClient] = None):
        self.db = db
        self.cache = cache

    def list_products(
        self,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = ProductStatus.PUBLISHED.value,
        min_price_cents: Optional[int] = None,
        max_price_cents: Optional[int] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of product summaries and the total match count."""
        query = self.db.query(Product)

        if status:
            query = query.filter(Product.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Product.name.ilike(pattern),
                Product.description.ilike(pattern),
                Product.sku.ilike(pattern),
            ))
        if category:
            query = query.join(Category, Product.category_id == Category.id).filter(
                or_(Category.id == category, Category.slug == category)
            )
        if min_price_cents is not None:
            query = query.filter(Product.price_cents >= min_price_cents)
        if max_price_cents is not None:
            query = query.filter(Product.price_cents <= max_price_cents)

        total = query.count()

        column = SORT_COLUMNS.get(sort_by, Product.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        products = (
            query.options(
                selectinload(Product.category),
                selectinload(Product.brand),
                selectinload(Product.inventory),
            )
            .order_by(ordering, Product.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return [ProductSummaryOut.model_validate(p).model_dump(mode="json") for p in products], total

    def _load_detail(self, product_id: str) -> Dict[str, Any]:
        product = (
            self.db.query(Product)
            .options(selectinload(Product.variants).selectinload(ProductVariant.inventory))
            .filter(Product.id == product_id)
            .first()
        )
        if product is None:
            raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
        payload = ProductDetailOut.model_validate(product).model_dump(mode="json")
        payload["variants"] = [v for v in payload["variants"] if v["is_active"]]
        return payload

    def get_product(self, product_id: str) -> Dict[str, Any]:
        cached = self.cache.get_product(product_id) if self.cache else None
        if cached is not None:
            return cached

        payload = self._load_detail(product_id)
        if self.cache:
            self.cache.set_product(product_id, payload)
        return payload

    def create_product(self, data: CreateProductRequest) -> Dict[str, Any]:
        if self.db.query(Product).filter(Product.sku == data.sku).first():
            raise BusinessRuleViolation("SKU already exists", code="SKU_EXISTS")
        variant_skus = [v.sku for v in data.variants]
        if len(set(variant_skus)) != len(variant_skus) or (
            variant_skus and self.db.query(ProductVariant).filter(ProductVariant.sku.in_(variant_skus)).first()
        ):
            raise BusinessRuleViolation("Variant SKU already exists", code="SKU_EXISTS")
        if self.db.get(Category, data.category_id) is None:
            raise BusinessRuleViolation("Category not found", code="CATEGORY_NOT_FOUND")
        if data.brand_id and self.db.get(Brand, data.brand_id) is None:
            raise BusinessRuleViolation("Brand not found", code="BRAND_NOT_FOUND")

        slug = self._unique_slug(data.name, data.sku)

        try:
            product = Product(
                sku=data.sku,
                name=data.name,
                slug=slug,
                description=data.description,
                short_description=data.short_description,
                price_cents=data.price_cents,
                compare_price_cents=data.compare_price_cents,
                category_id=data.category_id,
                brand_id=data.brand_id,
                status=data.status.value,
                is_featured=data.is_featured,
                track_inventory=data.track_inventory,
                allow_out_of_stock=data.allow_out_of_stock,
            )
            self.db.add(product)
            self.db.flush()

            if data.track_inventory:
                self.db.add(Inventory(
                    product_id=product.id,
                    quantity=data.initial_quantity,
                    low_stock_threshold=data.low_stock_threshold,
                ))

            for variant_data in data.variants:
                variant = ProductVariant(
                    product_id=product.id,
                    sku=variant_data.sku,
                    name=variant_data.name,
                    price_cents=variant_data.price_cents,
                    attributes=variant_data.attributes,
                )
                self.db.add(variant)
                self.db.flush()
                if data.track_inventory:
                    self.db.add(Inventory(
                        product_id=product.id,
                        variant_id=variant.id,
                        quantity=variant_data.initial_quantity,
                        low_stock_threshold=data.low_stock_threshold,
                    ))

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Created product %s (sku=%s)", product.id, product.sku)
        if self.cache:
            self.cache.invalidate_products([product.id])
        return self._load_detail(product.id)

    def _unique_slug(self, name: str, sku: str, exclude_id: Optional[str] = None) -> str:
        slug = slugify(name)
        query = self.db.query(Product).filter(Product.slug == slug)
        if exclude_id:
            query = query.filter(Product.id != exclude_id)
        if query.first():
            slug = f"{slug}-{slugify(sku)}"
        return slug

    def _ensure_inventory(self, product: Product) -> None:
        """Add zero-stock rows for the product and any variant that has none."""
        existing = {
            variant_id
            for (variant_id,) in self.db.query(Inventory.variant_id).filter(Inventory.product_id == product.id)
        }
        if None not in existing:
            self.db.add(Inventory(product_id=product.id, quantity=0))
        for variant in product.variants:
            if variant.id not in existing:
                self.db.add(Inventory(product_id=product.id, variant_id=variant.id, quantity=0))

    def update_product(self, product_id: str, data: UpdateProductRequest) -> Dict[str, Any]:
        """
        Apply a partial update. Order lines keep their snapshots; only new
        orders and carts see the changed price. The cached detail is dropped.
        """
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")

        changes = data.model_dump(mode="json", exclude_unset=True)
        if "sku" in changes and changes["sku"] != product.sku:
            if self.db.query(Product).filter(Product.sku == changes["sku"]).first():
                raise BusinessRuleViolation("SKU already exists", code="SKU_EXISTS")
        if "category_id" in changes and self.db.get(Category, changes["category_id"]) is None:
            raise BusinessRuleViolation("Category not found", code="CATEGORY_NOT_FOUND")
        if changes.get("brand_id") and self.db.get(Brand, changes["brand_id"]) is None:
            raise BusinessRuleViolation("Brand not found", code="BRAND_NOT_FOUND")
        if "name" in changes and changes["name"] != product.name:
            changes["slug"] = self._unique_slug(changes["name"], changes.get("sku", product.sku), exclude_id=product.id)

        try:
            for field, value in changes.items():
                setattr(product, field, value)
            if changes.get("track_inventory"):
                self._ensure_inventory(product)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Updated product %s: %s", product_id, ", ".join(sorted(changes)) or "no changes")
        if self.cache:
            self.cache.invalidate_products([product_id])
        return self._load_detail(product_id)

    def delete_product(self, product_id: str) -> None:
        """Delete a product that no order references, with its variants, stock and cart lines."""
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")
        sku = product.sku
        if self.db.query(OrderItem.id).filter(OrderItem.product_id == product_id).first():
            raise BusinessRuleViolation(
                "Product has orders and cannot be deleted; archive it instead",
                code="PRODUCT_HAS_ORDERS",
            )

        try:
            for model in (CartItem, Inventory, ProductVariant):
                self.db.execute(
                    delete(model).where(model.product_id == product_id).execution_options(synchronize_session=False)
                )
            self.db.execute(delete(Product).where(Product.id == product_id).execution_options(synchronize_session=False))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Deleted product %s (sku=%s)", product_id, sku)
        if self.cache:
            self.cache.invalidate_products([product_id])

    def list_categories(self) -> List[Dict[str, Any]]:
        categories = (
            self.db.query(Category)
            .filter(Category.is_active.is_(True))
            .order_by(Category.sort_order, Category.name)
            .all()
        )
        return [CategoryOut.model_validate(c).model_dump(mode="json") for c in categories]

    def create_category(self, data: CreateCategoryRequest) -> Dict[str, Any]:
        if self.db.query(Category).filter(Category.slug == data.slug).first():
            raise BusinessRuleViolation("Category slug already exists", code="SLUG_EXISTS")
        if data.parent_id and self.db.get(Category, data.parent_id) is None:
            raise BusinessRuleViolation("Parent category not found", code="PARENT_NOT_FOUND")

        category = Category(**data.model_dump())
        self.db.add(category)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(category)
        logger.info("Created category %s (slug=%s)", category.id, category.slug)
        return CategoryOut.model_validate(category).model_dump(mode="json")
