"""Orders API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    CancelOrderResponse,
    CreateOrderRequest,
    OrderResponse,
    OrdersListResponse,
    PaymentResponse,
)
from auth import Principal, get_principal
from dependencies import get_order_service
from services.order_service import ItemRequest, OrderService, ShippingInfo

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Place an order and charge the deposit - requires authentication.

    Orders the listed items, or the caller's cart when no items are given.
    """
    items = None
    if request.items:
        items = [ItemRequest(item.product_id, item.quantity) for item in request.items]

    return await order_service.create_order(
        db=db,
        principal=principal,
        shipping=ShippingInfo(**request.shipping_info.model_dump()),
        items=items,
        initial_payment=request.initial_payment,
        payment_method=request.payment_method.value
    )


@router.get("", response_model=OrdersListResponse)
async def get_orders(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Get user's orders - requires authentication."""
    return {"orders": order_service.list_user_orders(db, principal.id)}


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Get one order - owner or admin."""
    return order_service.get_order(db, principal, order_id)


@router.post("/{order_id}/cancel", response_model=CancelOrderResponse)
async def cancel_order(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Cancel an order within the cancellation window - owner or admin."""
    result = await order_service.cancel_order(db, principal, order_id)
    return {
        "message": "Order cancelled",
        "refund_amount": result.refund_amount,
        "order": result.order
    }


@router.post("/{order_id}/complete-payment", response_model=PaymentResponse)
async def complete_payment(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Pay the outstanding balance of a delivered order."""
    return await order_service.complete_payment(db, principal, order_id)
