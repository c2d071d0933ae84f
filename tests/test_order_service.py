"""Tests for order placement, cancellation and the payment lifecycle."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import (
    AlreadyPaidError,
    AuthorizationError,
    CancellationWindowExpiredError,
    EmptyCartError,
    InsufficientPaymentError,
    InsufficientStockError,
    NotFoundError,
    PaymentError,
    StateConflictError,
    ValidationError,
)
from models import Cart, Order, Payment, Product
from services.cart_service import CartOwner
from services.notification_service import ORDER_CANCELLED, ORDER_CONFIRMED, PAYMENT_COMPLETED
from services.order_service import ItemRequest, OrderService, is_sale
from services.payment_processor import MockPaymentProcessor
from services.payment_service import PaymentService


def run(coro):
    return asyncio.run(coro)


def counters(db, product_id):
    db.expire_all()
    product = db.get(Product, product_id)
    return product.stock, product.sold


def payments_of(db, order_id):
    db.expire_all()
    return db.query(Payment).filter(Payment.order_id == order_id).order_by(Payment.id).all()


@pytest.fixture
def product(make_product):
    return make_product(price="50.00", stock=10)


@pytest.fixture
def place(db, order_service, user, shipping, product):
    """Place a direct order for ``quantity`` units of the default product."""

    def _place(quantity=3, principal=None, **kwargs):
        return run(order_service.create_order(
            db,
            principal or user,
            shipping,
            items=[ItemRequest(product.id, quantity)],
            **kwargs
        ))

    return _place


def deliver(db, order_service, admin, order_id):
    return run(order_service.update_status(db, admin, order_id, "delivered"))


class BrokenProcessor(MockPaymentProcessor):
    """Processor whose charge blows up with an arbitrary exception."""

    def __init__(self, error):
        super().__init__(success_rate=1.0, delay=0)
        self.error = error

    async def charge(self, amount, currency, method, reference):
        raise self.error


class TestCartCheckoutScenario:
    def test_place_then_cancel(self, db, order_service, cart_service, notifier, user, shipping, product):
        owner = CartOwner(user_id=user.id)
        cart_service.add_item(db, owner, product.id, 3)
        assert cart_service.get_cart(db, owner)["total"] == Decimal("150.00")

        order = run(order_service.create_order(db, user, shipping))

        assert order.total_price == Decimal("150.00")
        assert order.payment_due == Decimal("75.00")
        assert order.order_status == "processing"
        assert order.is_confirmed is True
        assert order.order_number.startswith("ORD-")
        assert counters(db, product.id) == (7, 3)
        assert db.query(Cart).count() == 0
        initial = payments_of(db, order.id)[0]
        assert (initial.kind, initial.amount, initial.status) == ("initial", Decimal("75.00"), "paid")
        assert order.payment_id == initial.id

        result = run(order_service.cancel_order(db, user, order.id))

        assert result.refund_amount == Decimal("73.50")
        assert counters(db, product.id) == (10, 0)
        cancelled = db.get(Order, order.id)
        assert cancelled.order_status == "cancelled"
        assert cancelled.is_canceled is True
        assert cancelled.canceled_at is not None
        refund = payments_of(db, order.id)[-1]
        assert (refund.kind, refund.amount, refund.status) == ("refund", Decimal("73.50"), "refunded")
        assert notifier.names() == [ORDER_CONFIRMED, ORDER_CANCELLED]


class TestCreateOrder:
    def test_snapshot_lines_from_items(self, db, place, product):
        order = place(quantity=2)

        assert len(order.items) == 1
        item = order.items[0]
        assert (item.product_id, item.name, item.quantity, item.price) == (
            product.id, "Widget Deluxe", 2, Decimal("50.00")
        )
        assert order.items_price + order.tax_price + order.shipping_price == order.total_price

    def test_custom_deposit(self, db, place):
        order = place(quantity=2, initial_payment=Decimal("80.00"))

        assert order.payment_due == Decimal("20.00")

    def test_full_deposit_leaves_nothing_due(self, db, place):
        order = place(quantity=2, initial_payment=Decimal("100.00"))

        assert order.payment_due == Decimal("0.00")

    def test_deposit_below_half_rejected_without_side_effects(self, db, place, product):
        with pytest.raises(InsufficientPaymentError) as exc_info:
            place(quantity=3, initial_payment=Decimal("74.99"))

        assert exc_info.value.minimum == Decimal("75.00")
        assert counters(db, product.id) == (10, 0)
        assert db.query(Order).count() == 0

    def test_deposit_above_total_rejected(self, db, place):
        with pytest.raises(ValidationError):
            place(quantity=1, initial_payment=Decimal("50.01"))

    def test_unknown_method_rejected(self, db, place, product):
        with pytest.raises(ValidationError):
            place(quantity=1, payment_method="cheque")
        assert counters(db, product.id) == (10, 0)

    def test_partial_reservation_failure_reserves_nothing(
        self, db, order_service, user, shipping, make_product, product
    ):
        scarce = make_product(name="Widget Scarce", stock=1)

        with pytest.raises(InsufficientStockError):
            run(order_service.create_order(db, user, shipping, items=[
                ItemRequest(product.id, 2),
                ItemRequest(scarce.id, 2),
            ]))

        assert counters(db, product.id) == (10, 0)
        assert counters(db, scarce.id) == (1, 0)
        assert db.query(Order).count() == 0
        assert db.query(Payment).count() == 0

    def test_inactive_product_rejected(self, db, order_service, user, shipping, make_product):
        retired = make_product(name="Widget Retired", is_active=False)

        with pytest.raises(NotFoundError):
            run(order_service.create_order(db, user, shipping, items=[ItemRequest(retired.id, 1)]))

    def test_empty_cart(self, db, order_service, user, shipping):
        with pytest.raises(EmptyCartError):
            run(order_service.create_order(db, user, shipping))

    def test_declined_deposit_cancels_and_restocks(
        self, db, order_service, cart_service, processor, notifier, user, shipping, product
    ):
        processor.success_rate = 0.0
        cart_service.add_item(db, CartOwner(user_id=user.id), product.id, 3)

        with pytest.raises(PaymentError):
            run(order_service.create_order(db, user, shipping))

        order = db.query(Order).one()
        assert order.order_status == "cancelled"
        assert order.stock_released is True
        assert counters(db, product.id) == (10, 0)
        assert payments_of(db, order.id)[0].status == "failed"
        # The cart survives a failed checkout
        assert db.query(Cart).count() == 1
        assert notifier.events == []

    @pytest.mark.parametrize("error, raised", [
        (KeyError("transaction_id"), PaymentError),
        (ValueError("Expecting value"), PaymentError),
        (RuntimeError("connection reset"), RuntimeError),
    ])
    def test_unexpected_gateway_failure_restocks(
        self, db, cart_service, notifier, clock, user, shipping, product, error, raised
    ):
        service = OrderService(
            cart_service, PaymentService(BrokenProcessor(error)), notifier, clock=clock
        )

        with pytest.raises(raised):
            run(service.create_order(db, user, shipping, items=[ItemRequest(product.id, 3)]))

        assert counters(db, product.id) == (10, 0)
        order = db.query(Order).one()
        assert order.order_status == "cancelled"
        assert order.stock_released is True
        assert payments_of(db, order.id)[0].status == "failed"
        assert notifier.events == []

    def test_default_clock_is_naive_utc(self, cart_service, payment_service, notifier):
        service = OrderService(cart_service, payment_service, notifier)

        now = service.clock()

        assert now.tzinfo is None
        assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)


class TestCancelOrder:
    def test_window_expired_leaves_state_unchanged(self, db, order_service, clock, user, place, product):
        order = place()
        clock.advance(hours=24, seconds=1)

        with pytest.raises(CancellationWindowExpiredError):
            run(order_service.cancel_order(db, user, order.id))

        assert db.get(Order, order.id).order_status == "processing"
        assert counters(db, product.id) == (7, 3)
        assert len(payments_of(db, order.id)) == 1

    def test_window_boundary_is_inclusive(self, db, order_service, clock, user, place):
        order = place()
        clock.advance(hours=24)

        result = run(order_service.cancel_order(db, user, order.id))

        assert result.order.order_status == "cancelled"

    def test_second_cancel_has_no_side_effects(self, db, order_service, user, place, product):
        order = place()
        run(order_service.cancel_order(db, user, order.id))

        with pytest.raises(StateConflictError):
            run(order_service.cancel_order(db, user, order.id))

        assert counters(db, product.id) == (10, 0)
        refunds = [p for p in payments_of(db, order.id) if p.kind == "refund"]
        assert len(refunds) == 1

    def test_other_user_cannot_cancel(self, db, order_service, other_user, place):
        order = place()

        with pytest.raises(AuthorizationError):
            run(order_service.cancel_order(db, other_user, order.id))

    def test_admin_can_cancel(self, db, order_service, admin, place):
        order = place()

        result = run(order_service.cancel_order(db, admin, order.id))

        assert result.refund_amount == Decimal("73.50")

    def test_delivered_order_cannot_be_cancelled(self, db, order_service, admin, user, place):
        order = place()
        deliver(db, order_service, admin, order.id)

        with pytest.raises(StateConflictError):
            run(order_service.cancel_order(db, user, order.id))

    def test_missing_order(self, db, order_service, user):
        with pytest.raises(NotFoundError):
            run(order_service.cancel_order(db, user, 404))


class TestCompletePayment:
    def test_requires_delivery(self, db, order_service, user, place):
        order = place()

        with pytest.raises(StateConflictError):
            run(order_service.complete_payment(db, user, order.id))

    def test_pays_remaining_balance(self, db, order_service, notifier, admin, user, place):
        order = place()
        deliver(db, order_service, admin, order.id)

        payment = run(order_service.complete_payment(db, user, order.id))

        assert (payment.kind, payment.amount, payment.status) == ("final", Decimal("75.00"), "paid")
        order = db.get(Order, order.id)
        assert order.payment_due == Decimal("0.00")
        assert is_sale(order)
        assert notifier.names()[-1] == PAYMENT_COMPLETED

        with pytest.raises(AlreadyPaidError):
            run(order_service.complete_payment(db, user, order.id))

    def test_fully_prepaid_order(self, db, order_service, admin, user, place):
        order = place(quantity=2, initial_payment=Decimal("100.00"))
        deliver(db, order_service, admin, order.id)

        with pytest.raises(AlreadyPaidError):
            run(order_service.complete_payment(db, user, order.id))

    def test_declined_final_payment_keeps_balance(self, db, order_service, processor, admin, user, place):
        order = place()
        deliver(db, order_service, admin, order.id)
        processor.success_rate = 0.0

        with pytest.raises(PaymentError):
            run(order_service.complete_payment(db, user, order.id))

        assert db.get(Order, order.id).payment_due == Decimal("75.00")
        assert payments_of(db, order.id)[-1].status == "failed"


class TestUpdateStatus:
    def test_delivered_stamps_delivery(self, db, order_service, clock, admin, place):
        order = place()

        updated = deliver(db, order_service, admin, order.id)

        assert updated.order_status == "delivered"
        assert updated.is_delivered is True
        assert updated.delivered_at == clock.now

    def test_same_status_is_noop(self, db, order_service, admin, place):
        order = place()

        updated = run(order_service.update_status(db, admin, order.id, "processing"))

        assert updated.order_status == "processing"

    def test_delivered_only_moves_to_returned(self, db, order_service, admin, place, product):
        order = place()
        deliver(db, order_service, admin, order.id)

        with pytest.raises(StateConflictError):
            run(order_service.update_status(db, admin, order.id, "shipped"))

        returned = run(order_service.update_status(db, admin, order.id, "returned"))
        assert returned.order_status == "returned"
        assert counters(db, product.id) == (7, 3)

        with pytest.raises(StateConflictError):
            run(order_service.update_status(db, admin, order.id, "processing"))

    def test_cancel_goes_through_cancellation(self, db, order_service, admin, place, product):
        order = place()

        updated = run(order_service.update_status(db, admin, order.id, "cancelled"))

        assert updated.order_status == "cancelled"
        assert counters(db, product.id) == (10, 0)
        assert payments_of(db, order.id)[-1].amount == Decimal("73.50")

    def test_invalid_status(self, db, order_service, admin, place):
        order = place()

        with pytest.raises(ValidationError):
            run(order_service.update_status(db, admin, order.id, "teleported"))
        with pytest.raises(ValidationError):
            run(order_service.update_status(db, admin, order.id, "refunded"))


class TestDeleteAndRefund:
    def test_paid_open_order_cannot_be_deleted(self, db, order_service, place):
        order = place()

        with pytest.raises(StateConflictError):
            order_service.delete_order(db, order.id)

    def test_cancelled_order_can_be_deleted(self, db, order_service, user, place, product):
        order = place()
        run(order_service.cancel_order(db, user, order.id))

        order_service.delete_order(db, order.id)

        assert db.query(Order).count() == 0
        assert db.query(Payment).count() == 0
        assert counters(db, product.id) == (10, 0)

    def test_admin_refund_of_deposit(self, db, order_service, place, product):
        order = place()
        deposit_id = order.payment_id

        payment = run(order_service.refund_payment(db, deposit_id))

        assert payment.status == "refunded"
        refunded = db.get(Order, order.id)
        assert refunded.order_status == "refunded"
        assert refunded.payment_due == Decimal("150.00")
        assert counters(db, product.id) == (10, 0)

        with pytest.raises(StateConflictError):
            run(order_service.refund_payment(db, deposit_id))

    def test_deleting_delivered_then_refunded_order_keeps_units_sold(
        self, db, order_service, admin, place, product
    ):
        order = place()
        deliver(db, order_service, admin, order.id)
        run(order_service.refund_payment(db, order.payment_id))
        assert counters(db, product.id) == (7, 3)

        order_service.delete_order(db, order.id)

        assert db.query(Order).count() == 0
        assert counters(db, product.id) == (7, 3)

    def test_deleting_refunded_undelivered_order_restocks_once(self, db, order_service, place, product):
        order = place()
        run(order_service.refund_payment(db, order.payment_id))

        order_service.delete_order(db, order.id)

        assert counters(db, product.id) == (10, 0)

    def test_refund_of_cancelled_order_rejected(self, db, order_service, user, place):
        order = place()
        deposit_id = order.payment_id
        run(order_service.cancel_order(db, user, order.id))

        with pytest.raises(StateConflictError):
            run(order_service.refund_payment(db, deposit_id))


class TestReporting:
    def test_sales_count_delivered_and_paid_orders_only(self, db, order_service, admin, user, place):
        sold = place(quantity=2)
        deliver(db, order_service, admin, sold.id)
        run(order_service.complete_payment(db, user, sold.id))
        unpaid = place(quantity=1)
        deliver(db, order_service, admin, unpaid.id)
        place(quantity=1)

        orders, total_sales = order_service.list_all_orders(db)

        assert len(orders) == 3
        assert total_sales == Decimal("100.00")
        assert order_service.monthly_sales(db) == [
            {"year": 2024, "month": 3, "total_sales": Decimal("100.00"), "count": 1}
        ]

    def test_user_orders_are_scoped(self, db, order_service, user, other_user, place):
        place(quantity=1)
        place(quantity=1, principal=other_user)

        orders = order_service.list_user_orders(db, user.id)

        assert len(orders) == 1
        assert orders[0].user_id == user.id

    def test_get_order_checks_owner(self, db, order_service, other_user, admin, place):
        order = place()

        with pytest.raises(AuthorizationError):
            order_service.get_order(db, other_user, order.id)
        assert order_service.get_order(db, admin, order.id).id == order.id
