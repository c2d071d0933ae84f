"""Products API router."""
from decimal import Decimal
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from opentelemetry import trace

from auth import Principal, get_principal, require_admin
from database import get_db
from dependencies import get_catalog_service
from schemas import (
    ProductCreate,
    ProductListResponse,
    ProductResponse,
    ProductUpdate,
    RestockRequest,
    ReviewCreate,
    ReviewResponse,
)
from monitoring import product_views_counter
from services.catalog_service import MAX_PAGE_SIZE, CatalogService, ProductQuery
from services.inventory import find_product

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=ProductListResponse)
async def get_products(
    search: Optional[str] = Query(None, description="Matches name or description"),
    category: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    in_stock: bool = False,
    sort: str = Query("id", description="Column to sort by, prefix with - for descending"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """List the active product catalog."""
    result = catalog.list_products(db, ProductQuery(
        search=search,
        category=category,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
        sort=sort,
        page=page,
        limit=limit
    ))

    span = trace.get_current_span()
    span.set_attribute("product.count", len(result.products))
    span.set_attribute("endpoint.type", "product_catalog")

    product_views_counter.add(1, {"view": "catalog"})

    return {
        "products": result.products,
        "count": len(result.products),
        "total": result.total,
        "page": result.page,
        "pages": result.pages
    }


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db)
):
    """Get product details."""
    product = find_product(db, product_id)

    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)

    product_views_counter.add(1, {"view": "detail", "category": product.category or "none"})

    return product


@router.post("", response_model=ProductResponse, status_code=201)
async def create_product(
    request: ProductCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Add a product to the catalog - admin only."""
    return catalog.create_product(db, principal, request.model_dump())


@router.patch("/{product_id}", response_model=ProductResponse)
async def update_product(
    request: ProductUpdate,
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Edit name, description, category, price or availability - admin only."""
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    return catalog.update_product(db, principal, product_id, changes)


@router.delete("/{product_id}", response_model=ProductResponse)
async def deactivate_product(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Take a product off sale - admin only. Order history keeps referring to it."""
    return catalog.deactivate_product(db, principal, product_id)


@router.post("/{product_id}/restock", response_model=ProductResponse)
async def restock_product(
    request: RestockRequest,
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Record newly received units - admin only."""
    return catalog.restock_product(db, principal, product_id, request.quantity)


@router.get("/{product_id}/reviews", response_model=List[ReviewResponse])
async def get_reviews(
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    catalog: CatalogService = Depends(get_catalog_service)
):
    return catalog.list_reviews(db, product_id)


@router.post("/{product_id}/reviews", response_model=ReviewResponse, status_code=201)
async def add_review(
    request: ReviewCreate,
    product_id: int = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Review a product; each user reviews a product once."""
    return catalog.add_review(db, principal, product_id, request.rating, request.comment)


@router.delete("/{product_id}/reviews/{review_id}", response_model=ProductResponse)
async def delete_review(
    product_id: int = Path(..., description="Product ID"),
    review_id: int = Path(..., description="Review ID"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    catalog: CatalogService = Depends(get_catalog_service)
):
    """Delete a review (author or admin); returns the product with its refreshed rating."""
    return catalog.delete_review(db, principal, product_id, review_id)
