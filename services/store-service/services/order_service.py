"""Order management service."""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import extract, func
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import Principal
from config import CANCELLATION_REFUND_RATE, CANCELLATION_WINDOW_HOURS, MIN_DEPOSIT_RATIO
from errors import (
    AlreadyPaidError,
    AuthorizationError,
    CancellationWindowExpiredError,
    InsufficientPaymentError,
    NotFoundError,
    PaymentError,
    StateConflictError,
    StoreError,
    ValidationError,
)
from models import Order, OrderItem, OrderStatus, Payment, PaymentKind, PaymentMethod, RefundReason, utcnow
from monitoring import (
    order_amount_histogram,
    order_status_changes_counter,
    orders_cancelled_counter,
    orders_placed_counter,
)
from pricing import calculate_totals, has_at_most_two_decimals, minimum_deposit, to_money
from services.cart_service import CartOwner, CartService
from services.inventory import OrderLine, find_product, release_batch, reserve_batch
from services.notification_service import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    PAYMENT_COMPLETED,
    NotificationClient,
)
from services.payment_service import PaymentService, amount_paid, recompute_payment_due

logger = logging.getLogger(__name__)

# No status change may leave these
TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED, OrderStatus.REFUNDED})
OPEN_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED})
ADMIN_SETTABLE_STATUSES = frozenset(OrderStatus) - {OrderStatus.REFUNDED}


@dataclass(frozen=True)
class ItemRequest:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class ShippingInfo:
    address: str
    city: str
    state: str
    postal_code: str
    phone: str
    country: str = "US"


@dataclass(frozen=True)
class CancellationResult:
    order: Order
    refund_amount: Decimal
    refund: Optional[Payment]


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"


def is_sale(order: Order) -> bool:
    """An order counts as a sale once it is delivered and fully paid."""
    return order.order_status == OrderStatus.DELIVERED.value and order.payment_due == 0


class OrderService:
    """Service for managing orders."""

    def __init__(
        self,
        cart_service: CartService,
        payment_service: PaymentService,
        notifier: NotificationClient,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize order service.

        Args:
            cart_service: Cart service instance
            payment_service: Payment service instance
            notifier: Notification client
            clock: Source of the current UTC time
        """
        self.cart_service = cart_service
        self.payment_service = payment_service
        self.notifier = notifier
        self.clock = clock
        self.tracer = trace.get_tracer(__name__)

    def _load(self, db: Session, order_id: int) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def get_order(self, db: Session, principal: Principal, order_id: int) -> Order:
        order = self._load(db, order_id)
        if not principal.can_access(order.user_id):
            raise AuthorizationError("Not authorized to access this order")
        return order

    def list_user_orders(self, db: Session, user_id: str) -> List[Order]:
        with self.tracer.start_as_current_span("db.query.get_user_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            orders = (
                db.query(Order)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    def list_all_orders(self, db: Session) -> Tuple[List[Order], Decimal]:
        """All orders, newest first, with the total of sale-counted orders."""
        orders = db.query(Order).order_by(Order.created_at.desc(), Order.id.desc()).all()
        total_sales = sum((order.total_price for order in orders if is_sale(order)), Decimal("0.00"))
        return orders, total_sales

    def monthly_sales(self, db: Session) -> List[Dict[str, Any]]:
        """Sales totals per calendar month of ``created_at``."""
        year = extract("year", Order.created_at)
        month = extract("month", Order.created_at)
        rows = (
            db.query(
                year.label("year"),
                month.label("month"),
                func.sum(Order.total_price).label("total_sales"),
                func.count(Order.id).label("count"),
            )
            .filter(
                Order.order_status == OrderStatus.DELIVERED.value,
                Order.payment_due == 0,
            )
            .group_by(year, month)
            .order_by(year, month)
            .all()
        )
        return [
            {
                "year": int(row.year),
                "month": int(row.month),
                "total_sales": to_money(row.total_sales),
                "count": row.count
            }
            for row in rows
        ]

    def _lines_from_items(self, db: Session, items: Sequence[ItemRequest]) -> List[OrderLine]:
        lines = []
        for item in items:
            if item.quantity < 1:
                raise ValidationError("Quantity must be at least 1")
            product = find_product(db, item.product_id, active_only=True)
            lines.append(OrderLine(
                product_id=product.id,
                name=product.name,
                quantity=item.quantity,
                price=product.price
            ))
        return lines

    def _resolve_deposit(self, total: Decimal, initial_payment: Optional[Decimal]) -> Decimal:
        minimum = minimum_deposit(total, MIN_DEPOSIT_RATIO)
        if initial_payment is None:
            return minimum

        deposit = Decimal(str(initial_payment))
        if not has_at_most_two_decimals(deposit):
            raise ValidationError("Initial payment must have at most two decimal places")
        if deposit < minimum:
            raise InsufficientPaymentError(deposit, minimum)
        if deposit > total:
            raise ValidationError(f"Initial payment {deposit} exceeds order total {total}")
        return deposit

    async def create_order(
        self,
        db: Session,
        principal: Principal,
        shipping: ShippingInfo,
        items: Optional[Sequence[ItemRequest]] = None,
        initial_payment: Optional[Decimal] = None,
        payment_method: str = PaymentMethod.CARD.value
    ) -> Order:
        """
        Place an order from a direct item list or, when none is given, from
        the caller's cart.

        Stock for every line is reserved together with the order insert; the
        deposit is then charged without holding the transaction open. A
        declined deposit cancels the order and puts the stock back.

        Raises:
            EmptyCartError: If ordering from an empty cart
            InsufficientPaymentError: If the deposit is below the minimum share
            InsufficientStockError: If any line can't be reserved (nothing is)
            PaymentError: If the deposit charge fails
        """
        span = trace.get_current_span()
        span.set_attribute("user.id", principal.id)
        span.set_attribute("payment.method", payment_method)

        cart_id = None
        if items:
            lines = self._lines_from_items(db, items)
        else:
            materialized = self.cart_service.materialize_for_order(db, CartOwner(user_id=principal.id))
            lines = list(materialized.lines)
            cart_id = materialized.cart_id

        totals = calculate_totals(lines)
        deposit = self._resolve_deposit(totals.total_price, initial_payment)
        try:
            PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {payment_method}")

        # Step 1: reserve stock and persist the order with its deposit record
        try:
            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "INSERT")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("order.total_price", float(totals.total_price))

                reserve_batch(db, lines)

                order = Order(
                    order_number=generate_order_number(),
                    user_id=principal.id,
                    shipping_address=shipping.address,
                    shipping_city=shipping.city,
                    shipping_state=shipping.state,
                    shipping_country=shipping.country,
                    shipping_postal_code=shipping.postal_code,
                    shipping_phone=shipping.phone,
                    items_price=totals.items_price,
                    tax_price=totals.tax_price,
                    shipping_price=totals.shipping_price,
                    total_price=totals.total_price,
                    payment_due=totals.total_price,
                    order_status=OrderStatus.PENDING.value,
                    is_confirmed=False,
                    created_at=self.clock(),
                    items=[
                        OrderItem(
                            product_id=line.product_id,
                            name=line.name,
                            quantity=line.quantity,
                            price=line.price
                        )
                        for line in lines
                    ]
                )
                db.add(order)
                db.flush()

                payment = self.payment_service.create(
                    db, order, deposit, payment_method, PaymentKind.INITIAL
                )
                db.flush()
                order.payment_id = payment.id
                db.commit()

                db_span.set_attribute("order.id", order.id)
        except StoreError:
            db.rollback()
            orders_placed_counter.add(1, {"status": "rejected"})
            raise
        except Exception as e:
            db.rollback()
            logger.error("Failed to create order", extra={
                "user_id": principal.id,
                "amount": str(totals.total_price),
                "error": str(e)
            })
            raise

        # Step 2: charge the deposit (no open transaction)
        try:
            await self.payment_service.process(db, payment)
        except BaseException as e:
            # The reservation is already committed; whatever went wrong, undo it
            self._abandon_order(db, order)
            outcome = "payment_failed" if isinstance(e, PaymentError) else "error"
            orders_placed_counter.add(1, {"status": outcome})
            logger.warning("Order cancelled after deposit failure", extra={
                "order_id": order.id,
                "user_id": principal.id,
                "deposit": str(deposit),
                "error": repr(e)
            })
            raise

        # Step 3: confirm the order and drop the source cart
        order.order_status = OrderStatus.PROCESSING.value
        order.is_confirmed = True
        recompute_payment_due(order)
        if cart_id is not None:
            self.cart_service.discard(db, cart_id)
        db.commit()

        orders_placed_counter.add(1, {"status": "confirmed"})
        order_amount_histogram.record(float(order.total_price), {"payment_method": payment_method})
        logger.info("Order placed", extra={
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": principal.id,
            "total_price": str(order.total_price),
            "deposit": str(deposit),
            "payment_due": str(order.payment_due),
            "item_count": len(lines),
            "from_cart": cart_id is not None
        })

        await self.notifier.notify(ORDER_CONFIRMED, order, {"deposit": str(deposit)})
        return order

    def _release_stock(self, db: Session, order: Order) -> bool:
        """Put the order's units back on the shelf, at most once per order."""
        if order.stock_released:
            return False
        release_batch(db, [
            OrderLine(item.product_id, item.name, item.quantity, item.price)
            for item in order.items
        ])
        order.stock_released = True
        return True

    def _abandon_order(self, db: Session, order: Order) -> None:
        """Cancel an order whose deposit was never collected and restock it."""
        self._release_stock(db, order)
        order.order_status = OrderStatus.CANCELLED.value
        order.is_canceled = True
        order.canceled_at = self.clock()
        db.commit()

    async def cancel_order(self, db: Session, principal: Principal, order_id: int) -> CancellationResult:
        """
        Cancel an order within the cancellation window.

        Used by both the customer endpoint and the admin status update. Stock
        is released and a refund record for the refundable share of the
        amount paid is created. A repeated call fails without side effects.

        Raises:
            AuthorizationError: If the caller is neither owner nor admin
            StateConflictError: If the order is delivered or already closed
            CancellationWindowExpiredError: If the window has passed
        """
        order = self.get_order(db, principal, order_id)
        status = OrderStatus(order.order_status)

        if status == OrderStatus.CANCELLED:
            raise StateConflictError(f"Order {order_id} already cancelled")
        if status not in OPEN_STATUSES:
            raise StateConflictError(f"Order {order_id} is {status.value} and cannot be cancelled")

        now = self.clock()
        if now - order.created_at > timedelta(hours=CANCELLATION_WINDOW_HOURS):
            raise CancellationWindowExpiredError(order_id, CANCELLATION_WINDOW_HOURS)

        try:
            with self.tracer.start_as_current_span("db.transaction.cancel_order") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("order.id", order_id)

                # Compare-and-set on the status seen above
                updated = (
                    db.query(Order)
                    .filter(Order.id == order.id, Order.order_status == status.value)
                    .update(
                        {
                            Order.order_status: OrderStatus.CANCELLED.value,
                            Order.is_canceled: True,
                            Order.canceled_at: now,
                        },
                        synchronize_session="fetch",
                    )
                )
                if not updated:
                    raise StateConflictError(f"Order {order_id} was modified concurrently")

                self._release_stock(db, order)

                paid = amount_paid(order)
                refund_amount = to_money(paid * CANCELLATION_REFUND_RATE)
                refund = None
                if refund_amount > 0:
                    refund = self.payment_service.record_refund(db, order, refund_amount)
                db.commit()
        except Exception:
            db.rollback()
            raise

        orders_cancelled_counter.add(1, {"actor_role": principal.role})
        logger.info("Order cancelled", extra={
            "order_id": order.id,
            "cancelled_by": principal.id,
            "actor_role": principal.role,
            "amount_paid": str(paid),
            "refund_amount": str(refund_amount)
        })

        await self.notifier.notify(ORDER_CANCELLED, order, {"refund_amount": str(refund_amount)})
        return CancellationResult(order=order, refund_amount=refund_amount, refund=refund)

    async def complete_payment(self, db: Session, principal: Principal, order_id: int) -> Payment:
        """
        Collect the outstanding balance of a delivered order.

        Raises:
            StateConflictError: If the order hasn't been delivered
            AlreadyPaidError: If nothing is due
            PaymentError: If the charge fails (the balance stays due)
        """
        order = self.get_order(db, principal, order_id)
        if order.order_status != OrderStatus.DELIVERED.value:
            raise StateConflictError(f"Order {order_id} not delivered yet")
        if order.payment_due <= 0:
            raise AlreadyPaidError(order_id)

        remaining = order.payment_due
        initial = db.get(Payment, order.payment_id) if order.payment_id else None
        method = initial.method if initial else PaymentMethod.CARD.value

        payment = self.payment_service.create(db, order, remaining, method, PaymentKind.FINAL)
        db.commit()

        try:
            await self.payment_service.process(db, payment)
        except BaseException:
            # Persist the failed record; the balance stays due
            db.commit()
            raise

        recompute_payment_due(order)
        db.commit()

        logger.info("Final payment completed", extra={
            "order_id": order.id,
            "user_id": order.user_id,
            "amount": str(remaining)
        })
        await self.notifier.notify(PAYMENT_COMPLETED, order, {"amount": str(remaining)})
        return payment

    async def refund_payment(
        self,
        db: Session,
        payment_id: int,
        reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    ) -> Payment:
        """
        Refund a collected payment in full (admin).

        The order's balance is recomputed; an order that is still open moves
        to ``refunded`` and, unless delivered, releases its stock.
        """
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.order.order_status == OrderStatus.CANCELLED.value:
            raise StateConflictError("Cancelled orders are refunded on cancellation")

        try:
            await self.payment_service.refund_record(db, payment_id, reason)

            order = payment.order
            recompute_payment_due(order)
            if OrderStatus(order.order_status) not in TERMINAL_STATUSES:
                if not order.is_delivered:
                    self._release_stock(db, order)
                order.order_status = OrderStatus.REFUNDED.value
            db.commit()
        except Exception:
            db.rollback()
            raise
        return payment

    async def update_status(
        self,
        db: Session,
        principal: Principal,
        order_id: int,
        new_status: str
    ) -> Order:
        """
        Move an order to a new status (admin).

        Open orders may move freely; delivered orders may only be returned.
        Cancelling goes through ``cancel_order``.
        """
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid order status: {new_status}")
        if target not in ADMIN_SETTABLE_STATUSES:
            raise ValidationError(f"Orders cannot be set to {target.value} directly")

        order = self._load(db, order_id)
        current = OrderStatus(order.order_status)
        if target == current:
            return order

        if current in TERMINAL_STATUSES:
            raise StateConflictError(f"Order {order_id} is {current.value} and can no longer change")
        if current == OrderStatus.DELIVERED and target != OrderStatus.RETURNED:
            raise StateConflictError(f"Delivered order {order_id} can only be returned")

        if target == OrderStatus.CANCELLED:
            result = await self.cancel_order(db, principal, order_id)
            order_status_changes_counter.add(1, {"from": current.value, "to": target.value})
            return result.order

        order.order_status = target.value
        if target == OrderStatus.DELIVERED:
            order.is_delivered = True
            order.delivered_at = self.clock()
        db.commit()

        order_status_changes_counter.add(1, {"from": current.value, "to": target.value})
        logger.info("Order status updated", extra={
            "order_id": order_id,
            "from_status": current.value,
            "to_status": target.value,
            "updated_by": principal.id
        })
        return order

    def delete_order(self, db: Session, order_id: int) -> None:
        """
        Hard-delete an order (admin).

        Only allowed while no money is held for it: either nothing was ever
        collected, or the order was cancelled or refunded. Stock still
        reserved by an order that never shipped is released first; units of
        a delivered order stay sold whatever its later status.
        """
        order = self._load(db, order_id)
        settled = order.order_status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)
        if amount_paid(order) > 0 and not settled:
            raise StateConflictError(
                f"Order {order_id} has recorded payments; cancel or refund it before deleting"
            )

        if not order.is_delivered:
            self._release_stock(db, order)
        db.delete(order)
        db.commit()

        logger.info("Order deleted", extra={"order_id": order_id})
