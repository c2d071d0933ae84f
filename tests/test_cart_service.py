"""Tests for the cart service."""

import logging
from decimal import Decimal

import pytest

from errors import EmptyCartError, InsufficientStockError, NotFoundError, ValidationError
from models import Cart, Product
from services.cart_service import CartOwner


@pytest.fixture
def owner():
    return CartOwner(user_id="user_user-token")


@pytest.fixture
def guest():
    return CartOwner(session_id="guest-session-1")


def cart_lines(cart_service, db, owner):
    db.expire_all()
    return {item["product_id"]: item["quantity"] for item in cart_service.get_cart(db, owner)["items"]}


class TestCartOwner:
    def test_requires_exactly_one_identity(self):
        with pytest.raises(ValidationError):
            CartOwner()
        with pytest.raises(ValidationError):
            CartOwner(user_id="u", session_id="s")

    def test_keys(self):
        assert CartOwner(user_id="u1").key == "user:u1"
        assert CartOwner(session_id="s1").key == "session:s1"


class TestAddItem:
    def test_creates_cart_with_line(self, db, cart_service, owner, make_product):
        product = make_product(price="50.00", stock=10)

        cart_service.add_item(db, owner, product.id, 3)

        cart = cart_service.get_cart(db, owner)
        assert cart["items"][0]["quantity"] == 3
        assert cart["items"][0]["price"] == Decimal("50.00")
        assert cart["total"] == Decimal("150.00")
        assert cart["item_count"] == 3

    def test_same_product_adds_quantities(self, db, cart_service, owner, make_product):
        product = make_product(stock=10)

        cart_service.add_item(db, owner, product.id, 2)
        cart_service.add_item(db, owner, product.id, 3)

        assert cart_lines(cart_service, db, owner) == {product.id: 5}

    def test_more_than_stock_leaves_cart_unchanged(self, db, cart_service, owner, make_product):
        product = make_product(stock=3)

        with pytest.raises(InsufficientStockError) as exc_info:
            cart_service.add_item(db, owner, product.id, 5)

        assert (exc_info.value.product_id, exc_info.value.requested, exc_info.value.available) == (
            product.id, 5, 3
        )
        assert db.query(Cart).count() == 0

    def test_existing_line_counts_against_stock(self, db, cart_service, owner, make_product):
        product = make_product(stock=3)
        cart_service.add_item(db, owner, product.id, 2)

        with pytest.raises(InsufficientStockError) as exc_info:
            cart_service.add_item(db, owner, product.id, 2)

        assert exc_info.value.requested == 4
        assert cart_lines(cart_service, db, owner) == {product.id: 2}

    def test_rejects_non_positive_quantity(self, db, cart_service, owner, make_product):
        product = make_product()

        with pytest.raises(ValidationError):
            cart_service.add_item(db, owner, product.id, 0)

    def test_unknown_product(self, db, cart_service, owner):
        with pytest.raises(NotFoundError):
            cart_service.add_item(db, owner, 12345, 1)


class TestUpdateAndRemove:
    def test_quantity_clamped_to_stock(self, db, cart_service, owner, make_product):
        product = make_product(stock=4)
        cart_service.add_item(db, owner, product.id, 1)

        cart_service.update_item_quantity(db, owner, product.id, 10)

        assert cart_lines(cart_service, db, owner) == {product.id: 4}

    def test_zero_removes_line(self, db, cart_service, owner, make_product):
        product = make_product()
        cart_service.add_item(db, owner, product.id, 1)

        cart_service.update_item_quantity(db, owner, product.id, 0)

        assert cart_lines(cart_service, db, owner) == {}

    def test_negative_rejected(self, db, cart_service, owner, make_product):
        product = make_product()
        cart_service.add_item(db, owner, product.id, 1)

        with pytest.raises(ValidationError):
            cart_service.update_item_quantity(db, owner, product.id, -1)

    def test_missing_line(self, db, cart_service, owner, make_product):
        product = make_product()
        cart_service.add_item(db, owner, product.id, 1)

        with pytest.raises(NotFoundError):
            cart_service.update_item_quantity(db, owner, product.id + 1, 1)

    def test_remove_is_idempotent(self, db, cart_service, owner, make_product):
        product = make_product()
        cart_service.add_item(db, owner, product.id, 1)

        cart_service.remove_item(db, owner, product.id)
        cart_service.remove_item(db, owner, product.id)

        assert cart_lines(cart_service, db, owner) == {}

    def test_clear_deletes_cart(self, db, cart_service, owner, make_product):
        product = make_product()
        cart_service.add_item(db, owner, product.id, 1)

        cart_service.clear(db, owner)
        cart_service.clear(db, owner)

        assert db.query(Cart).count() == 0


class TestMerge:
    def test_adds_quantities_and_deletes_guest_cart(self, db, cart_service, owner, guest, make_product):
        shared = make_product(name="Widget Alpha", stock=10)
        guest_only = make_product(name="Widget Bravo", stock=10)
        cart_service.add_item(db, owner, shared.id, 1)
        cart_service.add_item(db, guest, shared.id, 2)
        cart_service.add_item(db, guest, guest_only.id, 4)

        cart_service.merge(db, owner.user_id, guest.session_id)

        assert cart_lines(cart_service, db, owner) == {shared.id: 3, guest_only.id: 4}
        assert db.query(Cart).filter(Cart.session_id == guest.session_id).count() == 0

    def test_creates_user_cart_when_missing(self, db, cart_service, owner, guest, make_product):
        product = make_product()
        cart_service.add_item(db, guest, product.id, 2)

        cart_service.merge(db, owner.user_id, guest.session_id)

        assert cart_lines(cart_service, db, owner) == {product.id: 2}

    def test_retry_is_noop(self, db, cart_service, owner, guest, make_product):
        product = make_product()
        cart_service.add_item(db, guest, product.id, 2)

        cart_service.merge(db, owner.user_id, guest.session_id)
        cart = cart_service.merge(db, owner.user_id, guest.session_id)

        assert cart is not None
        assert cart_lines(cart_service, db, owner) == {product.id: 2}

    def test_merge_from_foreign_session_is_logged(self, db, cart_service, owner, guest, make_product, caplog):
        product = make_product()
        cart_service.add_item(db, guest, product.id, 1)

        with caplog.at_level(logging.WARNING, logger="services.cart_service"):
            cart_service.merge(db, owner.user_id, guest.session_id, caller_session_id="guest-session-2")

        warnings = [r for r in caplog.records if r.getMessage() == "Merging guest cart from another session"]
        assert len(warnings) == 1
        assert warnings[0].source_session_id == guest.session_id
        assert cart_lines(cart_service, db, owner) == {product.id: 1}

    def test_merge_from_own_session_is_quiet(self, db, cart_service, owner, guest, make_product, caplog):
        product = make_product()
        cart_service.add_item(db, guest, product.id, 1)

        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="services.cart_service"):
            cart_service.merge(db, owner.user_id, guest.session_id, caller_session_id=guest.session_id)

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


class TestReadModel:
    def test_quantity_clamped_to_current_stock(self, db, cart_service, owner, make_product):
        product = make_product(stock=5)
        cart_service.add_item(db, owner, product.id, 5)
        db.query(Product).filter(Product.id == product.id).update({Product.stock: 2})
        db.commit()

        cart = cart_service.get_cart(db, owner)

        assert cart["items"][0]["quantity"] == 2
        assert cart["total"] == Decimal("100.00")

    def test_deleted_product_is_skipped(self, db, cart_service, owner, make_product):
        kept = make_product(name="Widget Alpha")
        gone = make_product(name="Widget Bravo")
        cart_service.add_item(db, owner, kept.id, 1)
        cart_service.add_item(db, owner, gone.id, 1)
        gone_id = gone.id
        db.delete(gone)
        db.commit()

        assert cart_lines(cart_service, db, owner) == {kept.id: 1}
        assert gone_id not in cart_lines(cart_service, db, owner)

    def test_item_count_is_cached(self, db, cart_service, owner, make_product, redis_client):
        product = make_product()
        cart_service.add_item(db, owner, product.id, 2)

        assert cart_service.item_count(db, owner) == 2
        assert redis_client.get("cart:user:user_user-token") == "2"

        cart_service.add_item(db, owner, product.id, 1)
        assert redis_client.get("cart:user:user_user-token") is None
        assert cart_service.item_count(db, owner) == 3


class TestMaterialize:
    def test_empty_cart(self, db, cart_service, owner):
        with pytest.raises(EmptyCartError):
            cart_service.materialize_for_order(db, owner)

    def test_nothing_orderable(self, db, cart_service, owner, make_product):
        product = make_product(stock=2)
        cart_service.add_item(db, owner, product.id, 2)
        db.query(Product).filter(Product.id == product.id).update({Product.stock: 0})
        db.commit()

        with pytest.raises(EmptyCartError, match="No valid items"):
            cart_service.materialize_for_order(db, owner)

    def test_lines_use_snapshot_price_and_clamped_quantity(self, db, cart_service, owner, make_product):
        product = make_product(price="50.00", stock=5)
        inactive = make_product(name="Widget Retired", stock=5)
        cart_service.add_item(db, owner, product.id, 4)
        cart_service.add_item(db, owner, inactive.id, 1)
        db.query(Product).filter(Product.id == product.id).update(
            {Product.stock: 3, Product.price: Decimal("60.00")}
        )
        db.query(Product).filter(Product.id == inactive.id).update({Product.is_active: False})
        db.commit()
        db.expire_all()

        materialized = cart_service.materialize_for_order(db, owner)

        assert len(materialized.lines) == 1
        line = materialized.lines[0]
        assert line.quantity == 3
        assert line.price == Decimal("50.00")
        assert materialized.total == Decimal("150.00")
