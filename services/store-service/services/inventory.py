"""Inventory ledger: the product stock and sold counters."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List

from sqlalchemy import case
from sqlalchemy.orm import Session
from opentelemetry import trace

from errors import InsufficientStockError, NotFoundError, StoreError, ValidationError
from models import Product
from monitoring import inventory_reservation_failures_counter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class OrderLine:
    """Immutable line snapshot handed from a cart or item list to an order."""
    product_id: int
    name: str
    quantity: int
    price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


def find_product(db: Session, product_id: int, active_only: bool = False) -> Product:
    """
    Load a product.

    Raises:
        NotFoundError: If the product doesn't exist (or is inactive when
            ``active_only`` is set)
    """
    product = db.get(Product, product_id)
    if product is None or (active_only and not product.is_active):
        raise NotFoundError("Product", product_id)
    return product


def reserve(db: Session, product_id: int, quantity: int) -> None:
    """
    Move ``quantity`` units from stock to sold.

    The check and the decrement are one conditional UPDATE, so two
    concurrent reservations can never drive stock below zero.

    Raises:
        InsufficientStockError: If stock can't cover the quantity
        NotFoundError: If the product doesn't exist or is inactive
    """
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    with tracer.start_as_current_span("db.query.reserve_stock") as span:
        span.set_attribute("db.operation", "UPDATE")
        span.set_attribute("db.table", "products")
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        updated = (
            db.query(Product)
            .filter(
                Product.id == product_id,
                Product.is_active.is_(True),
                Product.stock >= quantity,
            )
            .update(
                {
                    Product.stock: Product.stock - quantity,
                    Product.sold: Product.sold + quantity,
                },
                synchronize_session="fetch",
            )
        )
        span.set_attribute("db.rows_affected", updated)

        if updated:
            return

        product = db.get(Product, product_id, populate_existing=True)
        if product is None or not product.is_active:
            raise NotFoundError("Product", product_id)

        inventory_reservation_failures_counter.add(1, {"product_id": str(product_id)})
        logger.warning("Stock reservation rejected", extra={
            "product_id": product_id,
            "requested": quantity,
            "available": product.stock
        })
        raise InsufficientStockError(product_id, quantity, product.stock)


def release(db: Session, product_id: int, quantity: int) -> None:
    """Return ``quantity`` units from sold to stock. ``sold`` never drops below zero."""
    with tracer.start_as_current_span("db.query.release_stock") as span:
        span.set_attribute("db.operation", "UPDATE")
        span.set_attribute("db.table", "products")
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        updated = (
            db.query(Product)
            .filter(Product.id == product_id)
            .update(
                {
                    Product.stock: Product.stock + quantity,
                    Product.sold: case(
                        (Product.sold >= quantity, Product.sold - quantity),
                        else_=0,
                    ),
                },
                synchronize_session="fetch",
            )
        )
        span.set_attribute("db.rows_affected", updated)

    if not updated:
        logger.warning("Cannot release stock for missing product", extra={
            "product_id": product_id,
            "quantity": quantity
        })


def restock(db: Session, product_id: int, quantity: int) -> None:
    """Add newly received units to stock. ``sold`` is left alone."""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    with tracer.start_as_current_span("db.query.restock") as span:
        span.set_attribute("db.operation", "UPDATE")
        span.set_attribute("db.table", "products")
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        updated = (
            db.query(Product)
            .filter(Product.id == product_id)
            .update({Product.stock: Product.stock + quantity}, synchronize_session="fetch")
        )

    if not updated:
        raise NotFoundError("Product", product_id)
    logger.info("Product restocked", extra={"product_id": product_id, "quantity": quantity})


def reserve_batch(db: Session, lines: Iterable[OrderLine]) -> None:
    """
    Reserve every line or none of them.

    On the first rejected line the lines already reserved by this call are
    released again before the error propagates.
    """
    reserved: List[OrderLine] = []
    try:
        for line in lines:
            reserve(db, line.product_id, line.quantity)
            reserved.append(line)
    except StoreError:
        for line in reversed(reserved):
            release(db, line.product_id, line.quantity)
        if reserved:
            logger.info("Rolled back partial reservation", extra={
                "released_lines": len(reserved)
            })
        raise


def release_batch(db: Session, lines: Iterable[OrderLine]) -> None:
    for line in lines:
        release(db, line.product_id, line.quantity)
