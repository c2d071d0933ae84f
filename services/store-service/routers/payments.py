"""Payments API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from auth import Principal, get_principal
from database import get_db
from dependencies import get_payment_service
from schemas import PaymentResponse, PaymentStatusResponse
from services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=List[PaymentResponse])
async def list_payments(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Caller's payment records (all records for admins)."""
    return payment_service.list_payments(db, principal)


@router.get("/orders/{order_id}", response_model=PaymentStatusResponse)
async def get_order_payment_status(
    order_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Paid/partial/unpaid summary for one order - owner or admin."""
    return payment_service.payment_status(db, order_id, principal)
