"""Dependency injection for services."""
from typing import Optional
import redis
import httpx
from fastapi import Depends, Header, Request

from auth import Principal, get_optional_principal
from services.cart_service import CartOwner, CartService
from services.catalog_service import CatalogService
from services.notification_service import NotificationClient
from services.order_service import OrderService
from services.payment_processor import PaymentProcessor
from services.payment_service import PaymentService


def get_redis(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_payment_processor(request: Request) -> PaymentProcessor:
    return request.app.state.payment_processor


def get_notification_client(request: Request) -> NotificationClient:
    return request.app.state.notification_client


def get_catalog_service() -> CatalogService:
    return CatalogService()


def get_cart_service(redis_client: redis.Redis = Depends(get_redis)) -> CartService:
    """Get cart service instance."""
    return CartService(redis_client)


def get_payment_service(processor: PaymentProcessor = Depends(get_payment_processor)) -> PaymentService:
    """Get payment service instance."""
    return PaymentService(processor)


def get_order_service(
    cart_service: CartService = Depends(get_cart_service),
    payment_service: PaymentService = Depends(get_payment_service),
    notifier: NotificationClient = Depends(get_notification_client)
) -> OrderService:
    """Get order service instance."""
    return OrderService(cart_service, payment_service, notifier)


def get_cart_owner(
    principal: Optional[Principal] = Depends(get_optional_principal),
    x_session_id: Optional[str] = Header(None)
) -> Optional[CartOwner]:
    """
    Cart owner for the request.

    Authenticated callers own their user cart; guests are identified by the
    ``X-Session-Id`` header. None when the caller is neither.
    """
    if principal is not None:
        return CartOwner(user_id=principal.id)
    if x_session_id:
        return CartOwner(session_id=x_session_id)
    return None
