"""Cart API router.

Authenticated callers work on their user cart; guests send ``X-Session-Id``.
A guest adding to a cart without a session id gets a new one back.
"""
import uuid
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session
from typing import Optional

from auth import Principal, get_principal
from database import get_db
from dependencies import get_cart_owner, get_cart_service
from errors import NotFoundError
from schemas import (
    AddToCartRequest,
    AddToCartResponse,
    CartCountResponse,
    CartResponse,
    MergeCartRequest,
    UpdateCartItemRequest,
)
from services.cart_service import CartOwner, CartService

router = APIRouter(prefix="/cart", tags=["cart"])


def _empty_cart() -> dict:
    return {"items": [], "total": 0, "item_count": 0}


@router.post("/items", response_model=AddToCartResponse)
async def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    owner: Optional[CartOwner] = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add item to cart."""
    if owner is None:
        owner = CartOwner(session_id=uuid.uuid4().hex)

    cart_service.add_item(db, owner, request.product_id, request.quantity)

    return {
        "message": "Item added to cart",
        "session_id": owner.session_id,
        "cart": cart_service.get_cart(db, owner)
    }


@router.get("", response_model=CartResponse)
async def get_cart(
    db: Session = Depends(get_db),
    owner: Optional[CartOwner] = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get the caller's cart with quantities checked against stock."""
    if owner is None:
        return _empty_cart()
    return cart_service.get_cart(db, owner)


@router.get("/count", response_model=CartCountResponse)
async def get_cart_count(
    db: Session = Depends(get_db),
    owner: Optional[CartOwner] = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Number of units in the caller's cart."""
    if owner is None:
        return {"count": 0}
    return {"count": cart_service.item_count(db, owner)}


@router.patch("/items/{product_id}", response_model=CartResponse)
async def update_cart_item(
    product_id: int,
    request: UpdateCartItemRequest,
    db: Session = Depends(get_db),
    owner: Optional[CartOwner] = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Set a line's quantity (clamped to stock, zero removes it)."""
    if owner is None:
        raise NotFoundError("Cart")
    cart_service.update_item_quantity(db, owner, product_id, request.quantity)
    return cart_service.get_cart(db, owner)


@router.delete("/items/{product_id}", response_model=CartResponse)
async def remove_cart_item(
    product_id: int,
    db: Session = Depends(get_db),
    owner: Optional[CartOwner] = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove a line from the cart."""
    if owner is None:
        return _empty_cart()
    cart_service.remove_item(db, owner, product_id)
    return cart_service.get_cart(db, owner)


@router.delete("")
async def clear_cart(
    db: Session = Depends(get_db),
    owner: Optional[CartOwner] = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Delete the caller's cart."""
    if owner is not None:
        cart_service.clear(db, owner)
    return {"message": "Cart cleared"}


@router.post("/merge", response_model=CartResponse)
async def merge_cart(
    request: MergeCartRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
    x_session_id: Optional[str] = Header(None),
    cart_service: CartService = Depends(get_cart_service)
):
    """Fold a guest session cart into the authenticated user's cart."""
    cart_service.merge(db, principal.id, request.session_id, caller_session_id=x_session_id)
    return cart_service.get_cart(db, CartOwner(user_id=principal.id))
