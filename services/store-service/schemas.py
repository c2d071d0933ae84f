"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from models import PaymentMethod, RefundReason


class ProductCreate(BaseModel):
    """Schema for creating a product."""
    name: str = Field(min_length=5, max_length=100)
    description: str = ""
    category: str = ""
    price: Decimal = Field(gt=0, decimal_places=2)
    stock: int = Field(ge=0)


class ProductUpdate(BaseModel):
    """Partial catalog edit; omitted fields are left as they are."""
    name: Optional[str] = Field(None, min_length=5, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    is_active: Optional[bool] = None


class RestockRequest(BaseModel):
    quantity: int = Field(ge=1)


class ProductResponse(BaseModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    category: str
    price: float
    stock: int
    sold: int
    is_active: bool
    rating: float
    num_reviews: int


class ProductListResponse(BaseModel):
    """One page of the catalog."""
    products: List[ProductResponse]
    count: int
    total: int
    page: int
    pages: int


class ReviewCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = Field(min_length=1, max_length=2000)


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    user_id: str
    rating: int
    comment: str
    created_at: datetime


class AddToCartRequest(BaseModel):
    """Schema for add to cart request."""
    product_id: int
    quantity: int = 1


class UpdateCartItemRequest(BaseModel):
    """Schema for setting a cart line's quantity."""
    quantity: int


class MergeCartRequest(BaseModel):
    """Schema for merging a guest cart into the caller's cart."""
    session_id: str = Field(min_length=1)


class CartItemResponse(BaseModel):
    """Schema for cart item in response."""
    product_id: int
    name: str
    price: float
    quantity: int
    stock: int
    subtotal: float


class CartResponse(BaseModel):
    """Schema for cart response."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemResponse]
    total: float
    item_count: int


class AddToCartResponse(BaseModel):
    """Schema for add to cart response."""
    message: str
    session_id: Optional[str] = None
    cart: CartResponse


class CartCountResponse(BaseModel):
    count: int


class ShippingInfoSchema(BaseModel):
    """Shipping destination."""
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    country: str = "US"


class OrderItemRequest(BaseModel):
    product_id: int
    quantity: int


class CreateOrderRequest(BaseModel):
    """
    Schema for placing an order.

    Without ``items`` the order is built from the caller's cart. Without
    ``initial_payment`` the minimum deposit is charged.
    """
    shipping_info: ShippingInfoSchema
    items: Optional[List[OrderItemRequest]] = None
    initial_payment: Optional[Decimal] = None
    payment_method: PaymentMethod = PaymentMethod.CARD


class PaymentResponse(BaseModel):
    """Schema for payment record response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    user_id: str
    kind: str
    amount: float
    currency: str
    method: str
    status: str
    transaction_id: Optional[str] = None
    gateway: str
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    refund_status: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    name: str
    quantity: int
    price: float


class OrderResponse(BaseModel):
    """Schema for order response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: str
    shipping_info: ShippingInfoSchema
    items: List[OrderItemResponse]
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float
    payment_due: float
    order_status: str
    is_confirmed: bool
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    is_canceled: bool
    canceled_at: Optional[datetime] = None
    created_at: datetime
    payments: List[PaymentResponse]


class OrdersListResponse(BaseModel):
    """Schema for orders list response."""
    orders: List[OrderResponse]


class AdminOrdersResponse(BaseModel):
    """All orders plus the total of delivered, fully paid ones."""
    orders: List[OrderResponse]
    total_sales: float


class CancelOrderResponse(BaseModel):
    message: str
    refund_amount: float
    order: OrderResponse


class UpdateOrderStatusRequest(BaseModel):
    status: str


class RefundRequest(BaseModel):
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER


class PaymentStatusResponse(BaseModel):
    """Payment summary for one order."""
    order_id: int
    status: str
    total_price: float
    amount_paid: float
    payment_due: float
    payments: List[PaymentResponse]


class MonthlySales(BaseModel):
    year: int
    month: int
    total_sales: float
    count: int


class MonthlySalesResponse(BaseModel):
    months: List[MonthlySales]
