"""Cart management service."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.orm import Session
import redis
from opentelemetry import trace

from config import CART_CACHE_TTL_SECONDS
from errors import EmptyCartError, InsufficientStockError, NotFoundError, ValidationError
from models import Cart, CartItem, Product
from monitoring import cart_additions_counter, cart_merges_counter
from services.inventory import OrderLine, find_product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartOwner:
    """Identifies a cart by registered user or anonymous session, never both."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValidationError("A cart belongs to exactly one user or session")

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"


@dataclass(frozen=True)
class MaterializedCart:
    """Cart contents re-checked against live stock, ready to become an order."""
    cart_id: int
    lines: Tuple[OrderLine, ...]
    total: Decimal


class CartService:
    """Service for managing shopping carts."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize cart service.

        Args:
            redis_client: Redis client for caching
        """
        self.redis_client = redis_client
        self.tracer = trace.get_tracer(__name__)

    def _find_cart(self, db: Session, owner: CartOwner) -> Optional[Cart]:
        with self.tracer.start_as_current_span("db.query.get_cart") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "carts")
            db_span.set_attribute("cart.owner", owner.key)

            query = db.query(Cart)
            if owner.user_id:
                cart = query.filter(Cart.user_id == owner.user_id).first()
            else:
                cart = query.filter(Cart.session_id == owner.session_id).first()

            db_span.set_attribute("db.rows_returned", 1 if cart else 0)
            return cart

    def _get_or_create_cart(self, db: Session, owner: CartOwner) -> Cart:
        cart = self._find_cart(db, owner)
        if cart is None:
            cart = Cart(user_id=owner.user_id, session_id=owner.session_id)
            db.add(cart)
            logger.info("Created cart", extra={"owner": owner.key})
        return cart

    @staticmethod
    def _cache_key(owner_key: str) -> str:
        return f"cart:{owner_key}"

    def _invalidate(self, owner_key: str) -> None:
        cache_key = self._cache_key(owner_key)
        with self.tracer.start_as_current_span("cache.delete") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "DELETE")
            cache_span.set_attribute("cache.key", cache_key)

            self.redis_client.delete(cache_key)

    @staticmethod
    def _owner_key_of(cart: Cart) -> str:
        if cart.user_id:
            return f"user:{cart.user_id}"
        return f"session:{cart.session_id}"

    def add_item(
        self,
        db: Session,
        owner: CartOwner,
        product_id: int,
        quantity: int
    ) -> Cart:
        """
        Add item to the owner's cart.

        Args:
            db: Database session
            owner: Cart owner
            product_id: Product identifier
            quantity: Quantity to add

        Returns:
            Updated cart

        Raises:
            ValidationError: If quantity is not positive
            NotFoundError: If product not found or inactive
            InsufficientStockError: If the resulting line exceeds current stock
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        product = find_product(db, product_id, active_only=True)

        cart = self._find_cart(db, owner)
        existing = cart.find_item(product_id) if cart else None
        requested = quantity + (existing.quantity if existing else 0)
        if requested > product.stock:
            raise InsufficientStockError(product_id, requested, product.stock)

        with self.tracer.start_as_current_span("db.query.upsert_cart_item") as db_span:
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("product.id", product_id)

            if cart is None:
                cart = self._get_or_create_cart(db, owner)

            if existing:
                db_span.set_attribute("db.operation", "UPDATE")
                existing.quantity = requested
            else:
                db_span.set_attribute("db.operation", "INSERT")
                cart.items.append(CartItem(
                    product_id=product.id,
                    name=product.name,
                    quantity=quantity,
                    price_at_addition=product.price
                ))
            db.commit()

        self._invalidate(owner.key)

        cart_additions_counter.add(quantity, {"product_id": str(product_id)})

        logger.info("Added product to cart", extra={
            "owner": owner.key,
            "product_id": product_id,
            "product_name": product.name,
            "quantity": quantity,
            "line_quantity": requested
        })

        return cart

    def update_item_quantity(
        self,
        db: Session,
        owner: CartOwner,
        product_id: int,
        quantity: int
    ) -> Cart:
        """
        Set a line's quantity, clamped to current stock. Zero removes the line.

        Raises:
            ValidationError: If quantity is negative
            NotFoundError: If the cart, the line or the product doesn't exist
        """
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")

        cart = self._find_cart(db, owner)
        if cart is None:
            raise NotFoundError("Cart")

        item = cart.find_item(product_id)
        if item is None:
            raise NotFoundError("Cart item", product_id)

        if quantity > 0:
            product = find_product(db, product_id)
            quantity = min(quantity, product.stock)

        if quantity == 0:
            cart.items.remove(item)
        else:
            item.quantity = quantity
        db.commit()

        self._invalidate(owner.key)

        logger.info("Updated cart item quantity", extra={
            "owner": owner.key,
            "product_id": product_id,
            "quantity": quantity
        })
        return cart

    def remove_item(self, db: Session, owner: CartOwner, product_id: int) -> Optional[Cart]:
        """Remove a line. Removing an absent line or from an absent cart is a no-op."""
        cart = self._find_cart(db, owner)
        if cart is None:
            return None

        item = cart.find_item(product_id)
        if item is not None:
            cart.items.remove(item)
            db.commit()
            self._invalidate(owner.key)
        return cart

    def clear(self, db: Session, owner: CartOwner) -> None:
        """
        Delete the owner's cart.

        Args:
            db: Database session
            owner: Cart owner
        """
        with self.tracer.start_as_current_span("db.query.delete_cart") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "carts")
            db_span.set_attribute("cart.owner", owner.key)

            cart = self._find_cart(db, owner)
            if cart is not None:
                db.delete(cart)
                db.commit()

            db_span.set_attribute("db.rows_affected", 1 if cart else 0)

        self._invalidate(owner.key)

    def discard(self, db: Session, cart_id: int) -> None:
        """Delete a cart inside the caller's transaction (no commit)."""
        cart = db.get(Cart, cart_id)
        if cart is None:
            return
        owner_key = self._owner_key_of(cart)
        db.delete(cart)
        self._invalidate(owner_key)

    def merge(
        self,
        db: Session,
        user_id: str,
        guest_session_id: str,
        caller_session_id: Optional[str] = None
    ) -> Optional[Cart]:
        """
        Fold a guest cart into the user's cart.

        Shared products add their quantities; other lines are copied over.
        The guest cart is deleted whenever it exists, so a retried merge is a
        no-op that returns the user cart.

        Args:
            db: Database session
            user_id: Receiving user
            guest_session_id: Session whose cart is absorbed
            caller_session_id: Session the request itself came from, if sent

        Returns:
            The user's cart, or None if neither cart exists
        """
        user_owner = CartOwner(user_id=user_id)
        guest_owner = CartOwner(session_id=guest_session_id)

        guest_cart = self._find_cart(db, guest_owner)
        if guest_cart is None:
            return self._find_cart(db, user_owner)

        if caller_session_id and caller_session_id != guest_session_id:
            logger.warning("Merging guest cart from another session", extra={
                "user_id": user_id,
                "source_session_id": guest_session_id,
                "caller_session_id": caller_session_id
            })

        user_cart = self._get_or_create_cart(db, user_owner)

        moved = 0
        for guest_item in guest_cart.items:
            existing = user_cart.find_item(guest_item.product_id)
            if existing:
                existing.quantity += guest_item.quantity
            else:
                user_cart.items.append(CartItem(
                    product_id=guest_item.product_id,
                    name=guest_item.name,
                    quantity=guest_item.quantity,
                    price_at_addition=guest_item.price_at_addition,
                    added_at=guest_item.added_at
                ))
            moved += 1

        db.delete(guest_cart)
        db.commit()

        self._invalidate(user_owner.key)
        self._invalidate(guest_owner.key)

        cart_merges_counter.add(1)
        logger.info("Merged guest cart", extra={
            "user_id": user_id,
            "session_id": guest_session_id,
            "merged_lines": moved
        })
        return user_cart

    def get_cart(self, db: Session, owner: CartOwner) -> Dict[str, Any]:
        """
        Get cart contents checked against live stock.

        Quantities are clamped to current stock and lines whose product no
        longer exists are left out. Nothing is written back.

        Returns:
            Cart contents with items and total
        """
        cart = self._find_cart(db, owner)

        items = []
        total = Decimal("0")

        for item in cart.items if cart else []:
            product = db.get(Product, item.product_id)
            if product is None:
                continue

            quantity = min(item.quantity, product.stock)
            subtotal = item.price_at_addition * quantity
            total += subtotal
            items.append({
                "product_id": item.product_id,
                "name": product.name,
                "price": item.price_at_addition,
                "quantity": quantity,
                "stock": product.stock,
                "subtotal": subtotal
            })

        return {
            "user_id": owner.user_id,
            "session_id": owner.session_id,
            "items": items,
            "total": total,
            "item_count": sum(item["quantity"] for item in items)
        }

    def item_count(self, db: Session, owner: CartOwner) -> int:
        """Units in the cart, served from the redis cache when present."""
        cache_key = self._cache_key(owner.key)
        with self.tracer.start_as_current_span("cache.get") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.key", cache_key)

            cached = self.redis_client.get(cache_key)
            cache_span.set_attribute("cache.hit", cached is not None)

        if cached is not None:
            return int(cached)

        cart = self._find_cart(db, owner)
        count = sum(item.quantity for item in cart.items) if cart else 0
        self.redis_client.set(cache_key, count, ex=CART_CACHE_TTL_SECONDS)
        return count

    def materialize_for_order(self, db: Session, owner: CartOwner) -> MaterializedCart:
        """
        Turn the cart into immutable order lines.

        Each line becomes ``min(requested, available)``; lines whose product
        is gone, inactive or out of stock are dropped.

        Raises:
            EmptyCartError: If the cart is missing, empty, or nothing is orderable
        """
        cart = self._find_cart(db, owner)
        if cart is None or not cart.items:
            raise EmptyCartError()

        lines = []
        for item in cart.items:
            product = db.get(Product, item.product_id)
            if product is None or not product.is_active:
                continue

            quantity = min(item.quantity, product.stock)
            if quantity < 1:
                continue

            lines.append(OrderLine(
                product_id=product.id,
                name=product.name,
                quantity=quantity,
                price=item.price_at_addition
            ))

        if not lines:
            raise EmptyCartError("No valid items found in cart")

        return MaterializedCart(
            cart_id=cart.id,
            lines=tuple(lines),
            total=sum((line.subtotal for line in lines), Decimal("0"))
        )
