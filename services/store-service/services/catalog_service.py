"""Product catalog management: listing, admin edits and reviews."""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import Principal
from errors import AuthorizationError, NotFoundError, ValidationError
from models import Product, Review
from pricing import has_at_most_two_decimals
from services.inventory import find_product, restock

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
RATING_PRECISION = Decimal("0.01")

SORT_COLUMNS = {
    "id": Product.id,
    "name": Product.name,
    "price": Product.price,
    "rating": Product.rating,
    "sold": Product.sold,
    "created_at": Product.created_at,
}

# Stock only moves through the inventory ledger
UPDATABLE_FIELDS = frozenset({"name", "description", "category", "price", "is_active"})


@dataclass(frozen=True)
class ProductQuery:
    """Catalog listing filters. ``sort`` is a column name, ``-`` prefixed for descending."""
    search: Optional[str] = None
    category: Optional[str] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    in_stock: bool = False
    sort: str = "id"
    page: int = 1
    limit: int = 20


@dataclass(frozen=True)
class ProductPage:
    products: List[Product]
    total: int
    page: int
    pages: int


def recompute_rating(product: Product) -> None:
    """Refresh ``num_reviews`` and the average ``rating`` from the product's reviews."""
    ratings = [review.rating for review in product.reviews]
    product.num_reviews = len(ratings)
    if ratings:
        average = Decimal(sum(ratings)) / len(ratings)
        product.rating = average.quantize(RATING_PRECISION, rounding=ROUND_HALF_UP)
    else:
        product.rating = Decimal("0.00")


def _check_price(price: Any) -> Decimal:
    price = Decimal(str(price))
    if price <= 0 or not has_at_most_two_decimals(price):
        raise ValidationError("Price must be positive with at most two decimals")
    return price


class CatalogService:
    """Service for the product catalog."""

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def _ordering(self, sort: str):
        descending = sort.startswith("-")
        column = SORT_COLUMNS.get(sort.lstrip("-"))
        if column is None:
            raise ValidationError(f"Cannot sort by {sort!r}")
        primary = column.desc() if descending else column.asc()
        return primary, Product.id.asc()

    def list_products(self, db: Session, query: ProductQuery) -> ProductPage:
        """
        Active products matching ``query``, one page at a time.

        ``search`` matches name or description case-insensitively.

        Raises:
            ValidationError: On an unknown sort key, a bad page/limit or an
                inverted price range
        """
        if query.page < 1 or not 1 <= query.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        if query.min_price is not None and query.max_price is not None and query.min_price > query.max_price:
            raise ValidationError("min_price cannot exceed max_price")
        ordering = self._ordering(query.sort)

        with self.tracer.start_as_current_span("db.query.list_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")

            q = db.query(Product).filter(Product.is_active.is_(True))
            if query.search:
                pattern = f"%{query.search}%"
                q = q.filter(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
            if query.category:
                q = q.filter(Product.category == query.category)
            if query.min_price is not None:
                q = q.filter(Product.price >= query.min_price)
            if query.max_price is not None:
                q = q.filter(Product.price <= query.max_price)
            if query.in_stock:
                q = q.filter(Product.stock > 0)

            total = q.count()
            products = (
                q.order_by(*ordering)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(products))

        return ProductPage(
            products=products,
            total=total,
            page=query.page,
            pages=math.ceil(total / query.limit) if total else 0
        )

    def create_product(self, db: Session, principal: Principal, fields: Dict[str, Any]) -> Product:
        if fields.get("stock", 0) < 0:
            raise ValidationError("Stock cannot be negative")
        product = Product(
            name=fields["name"],
            description=fields.get("description", ""),
            category=fields.get("category", ""),
            price=_check_price(fields["price"]),
            stock=fields.get("stock", 0),
            sold=0,
            is_active=True
        )
        db.add(product)
        db.commit()

        logger.info("Product created", extra={
            "product_id": product.id,
            "product_name": product.name,
            "created_by": principal.id
        })
        return product

    def update_product(
        self,
        db: Session,
        principal: Principal,
        product_id: int,
        changes: Dict[str, Any]
    ) -> Product:
        """
        Apply catalog edits to a product (admin).

        Only the product row changes; orders keep the name and price they
        were placed with.

        Raises:
            NotFoundError: If the product doesn't exist
            ValidationError: On an unknown or invalid field
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "price" in changes:
            changes = dict(changes, price=_check_price(changes["price"]))

        product = find_product(db, product_id)
        for field, value in changes.items():
            setattr(product, field, value)
        db.commit()

        logger.info("Product updated", extra={
            "product_id": product_id,
            "fields": sorted(changes),
            "updated_by": principal.id
        })
        return product

    def deactivate_product(self, db: Session, principal: Principal, product_id: int) -> Product:
        """
        Take a product off sale (admin).

        The row is kept so that carts can detect it and order history stays
        intact; it no longer lists and can no longer be ordered.
        """
        product = find_product(db, product_id)
        if product.is_active:
            product.is_active = False
            db.commit()
            logger.info("Product deactivated", extra={
                "product_id": product_id,
                "deactivated_by": principal.id
            })
        return product

    def restock_product(self, db: Session, principal: Principal, product_id: int, quantity: int) -> Product:
        restock(db, product_id, quantity)
        db.commit()
        product = find_product(db, product_id)
        logger.info("Restock recorded", extra={
            "product_id": product_id,
            "quantity": quantity,
            "stock": product.stock,
            "recorded_by": principal.id
        })
        return product

    def list_reviews(self, db: Session, product_id: int) -> List[Review]:
        return list(find_product(db, product_id).reviews)

    def add_review(
        self,
        db: Session,
        principal: Principal,
        product_id: int,
        rating: int,
        comment: str
    ) -> Review:
        """
        Review a product once per user and refresh its average rating.

        Raises:
            NotFoundError: If the product doesn't exist or is inactive
            ValidationError: If the rating is outside 1-5, the comment is
                blank or the user already reviewed the product
        """
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        if not comment or not comment.strip():
            raise ValidationError("Review must have a comment")

        product = find_product(db, product_id, active_only=True)
        if any(review.user_id == principal.id for review in product.reviews):
            raise ValidationError("Product already reviewed")

        review = Review(user_id=principal.id, rating=rating, comment=comment.strip())
        product.reviews.append(review)
        recompute_rating(product)
        db.commit()

        logger.info("Review added", extra={
            "product_id": product_id,
            "user_id": principal.id,
            "rating": rating,
            "product_rating": str(product.rating)
        })
        return review

    def delete_review(self, db: Session, principal: Principal, product_id: int, review_id: int) -> Product:
        """
        Remove a review (its author or an admin) and refresh the average rating.

        Raises:
            NotFoundError: If the product or the review doesn't exist
            AuthorizationError: If the caller is neither author nor admin
        """
        product = find_product(db, product_id)
        review = next((r for r in product.reviews if r.id == review_id), None)
        if review is None:
            raise NotFoundError("Review", review_id)
        if not principal.can_access(review.user_id):
            raise AuthorizationError("Not authorized to delete this review")

        product.reviews.remove(review)
        recompute_rating(product)
        db.commit()

        logger.info("Review deleted", extra={
            "product_id": product_id,
            "review_id": review_id,
            "deleted_by": principal.id
        })
        return product
