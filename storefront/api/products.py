"""
Catalog endpoints: product listing and detail, admin product create, update
and delete, and categories.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from storefront.cache import CacheClient
from storefront.catalog import CatalogService
from storefront.database import get_db
from storefront.dependencies import get_cache, require_admin
from storefront.models import ProductStatus, User
from storefront.schemas import (
    CreateCategoryRequest, CreateProductRequest, UpdateProductRequest, paginate, success,
)

router = APIRouter(prefix="/api", tags=["catalog"])


@router.get("/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    category: Optional[str] = None,
    status: ProductStatus = ProductStatus.PUBLISHED,
    min_price_cents: Optional[int] = Query(None, ge=0),
    max_price_cents: Optional[int] = Query(None, ge=0),
    sort_by: Literal["name", "price", "created_at"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    db: Session = Depends(get_db),
):
    products, total = CatalogService(db).list_products(
        page=page,
        limit=limit,
        search=search,
        category=category,
        status=status.value,
        min_price_cents=min_price_cents,
        max_price_cents=max_price_cents,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return success(products, pagination=paginate(page, limit, total))


@router.post("/products", status_code=201)
def create_product(
    request: CreateProductRequest,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    admin: User = Depends(require_admin),
):
    product = CatalogService(db, cache).create_product(request)
    return success(product, message="Product created")


@router.get("/products/{product_id}")
def get_product(
    product_id: str,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return success(CatalogService(db, cache).get_product(product_id))


@router.put("/products/{product_id}")
def update_product(
    product_id: str,
    request: UpdateProductRequest,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    admin: User = Depends(require_admin),
):
    product = CatalogService(db, cache).update_product(product_id, request)
    return success(product, message="Product updated")


@router.delete("/products/{product_id}")
def delete_product(
    product_id: str,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    admin: User = Depends(require_admin),
):
    CatalogService(db, cache).delete_product(product_id)
    return success(message="Product deleted")


@router.get("/categories")
def list_categories(db: Session = Depends(get_db)):
    return success(CatalogService(db).list_categories())


@router.post("/categories", status_code=201)
def create_category(
    request: CreateCategoryRequest,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return success(CatalogService(db).create_category(request), message="Category created")
