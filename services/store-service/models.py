"""Database models for the store service."""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

Money = Numeric(12, 2)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, Enum):
    """Order status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class PaymentKind(str, Enum):
    """Which money movement a payment record represents."""
    INITIAL = "initial"
    FINAL = "final"
    REFUND = "refund"


class PaymentMethod(str, Enum):
    CARD = "card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"


class RefundReason(str, Enum):
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    OTHER = "other"


SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "JPY")


class Product(Base):
    """Product model. Carries the inventory ledger counters."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), index=True, nullable=False)
    description = Column(Text, default="")
    category = Column(String, default="")
    price = Column(Money, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    sold = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    rating = Column(Numeric(3, 2), nullable=False, default=0)
    num_reviews = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    reviews = relationship(
        "Review",
        back_populates="product",
        order_by="Review.id",
        cascade="all, delete-orphan",
    )


class Review(Base):
    """Customer review; one per user and product."""
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("product_id", "user_id", name="uq_review_product_user"),)

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product", back_populates="reviews")


class Cart(Base):
    """Cart model, owned by a user or an anonymous session."""
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=True)
    session_id = Column(String, unique=True, index=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItem",
        back_populates="cart",
        order_by="CartItem.id",
        cascade="all, delete-orphan",
    )

    def find_item(self, product_id: int):
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None


class CartItem(Base):
    """Cart item model."""
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    # Plain reference: deleted products must be detectable when the cart is read
    product_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price_at_addition = Column(Money, nullable=False)
    added_at = Column(DateTime, default=utcnow)

    cart = relationship("Cart", back_populates="items")


class Order(Base):
    """Order model."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)

    shipping_address = Column(String, nullable=False)
    shipping_city = Column(String, nullable=False)
    shipping_state = Column(String, nullable=False)
    shipping_country = Column(String, nullable=False, default="US")
    shipping_postal_code = Column(String, nullable=False)
    shipping_phone = Column(String, nullable=False)

    items_price = Column(Money, nullable=False, default=0)
    tax_price = Column(Money, nullable=False, default=0)
    shipping_price = Column(Money, nullable=False, default=0)
    total_price = Column(Money, nullable=False, default=0)
    payment_due = Column(Money, nullable=False, default=0)

    order_status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    is_confirmed = Column(Boolean, nullable=False, default=False)
    payment_id = Column(Integer, nullable=True)

    is_delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime, nullable=True)
    is_canceled = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True)
    stock_released = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    payments = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.id",
        cascade="all, delete-orphan",
    )

    @property
    def shipping_info(self) -> dict:
        return {
            "address": self.shipping_address,
            "city": self.shipping_city,
            "state": self.shipping_state,
            "country": self.shipping_country,
            "postal_code": self.shipping_postal_code,
            "phone": self.shipping_phone,
        }


class OrderItem(Base):
    """Order line snapshot."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    """Payment record: one money movement tied to an order."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, index=True, nullable=False)
    kind = Column(String, nullable=False, default=PaymentKind.INITIAL.value)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    method = Column(String, nullable=False, default=PaymentMethod.CARD.value)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value, index=True)
    transaction_id = Column(String, unique=True, nullable=True)
    gateway = Column(String, nullable=False, default="mock_processor")

    refund_amount = Column(Money, nullable=True)
    refund_reason = Column(String, nullable=True)
    refund_status = Column(String, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payments")
