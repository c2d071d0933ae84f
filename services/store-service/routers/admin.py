"""Admin API router. Every endpoint requires the admin role."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from auth import Principal, require_admin
from database import get_db
from dependencies import get_order_service
from schemas import (
    AdminOrdersResponse,
    MonthlySalesResponse,
    OrderResponse,
    PaymentResponse,
    RefundRequest,
    UpdateOrderStatusRequest,
)
from services.order_service import OrderService

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/orders", response_model=AdminOrdersResponse)
async def list_orders(
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """All orders plus total sales."""
    orders, total_sales = order_service.list_all_orders(db)
    return {"orders": orders, "total_sales": total_sales}


@router.get("/orders/monthly-sales", response_model=MonthlySalesResponse)
async def monthly_sales(
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """Sales per calendar month."""
    return {"months": order_service.monthly_sales(db)}


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    request: UpdateOrderStatusRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Move an order to a new status."""
    return await order_service.update_status(db, principal, order_id, request.status)


@router.delete("/orders/{order_id}")
async def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """Hard-delete an order that holds no money."""
    order_service.delete_order(db, order_id)
    return {"message": "Order deleted", "order_id": order_id}


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: int,
    request: Optional[RefundRequest] = None,
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """Refund a collected payment in full."""
    reason = request.reason if request else RefundRequest().reason
    return await order_service.refund_payment(db, payment_id, reason)
