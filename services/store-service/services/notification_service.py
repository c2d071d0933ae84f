"""Notification service communication layer."""
import httpx
import logging
import time
from typing import Any, Dict, Optional

from config import NOTIFICATION_SERVICE_URL
from models import Order
from monitoring import external_notification_duration_histogram

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = "order_confirmed"
PAYMENT_COMPLETED = "payment_completed"
ORDER_CANCELLED = "order_cancelled"


class NotificationClient:
    """Best-effort client for customer notifications (emails and the like)."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = NOTIFICATION_SERVICE_URL):
        """
        Initialize notification client.

        Args:
            http_client: Async HTTP client
            base_url: Notification service base URL
        """
        self.http_client = http_client
        self.base_url = base_url

    async def notify(
        self,
        event: str,
        order: Order,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an order event to the notification service.

        Failures are logged and reported through the return value only; an
        order operation never fails because a notification could not be sent.

        Args:
            event: Event name
            order: Order the event is about
            details: Extra event payload

        Returns:
            True if the notification service accepted the event
        """
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        payload = {
            "event": event,
            "user_id": order.user_id,
            "order_id": order.id,
            "order_number": order.order_number,
            "total_price": str(order.total_price),
            "payment_due": str(order.payment_due),
            "details": details or {}
        }
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/notifications",
                json=payload
            )
            status_code = response.status_code
            if response.status_code >= 400:
                status = "error"
                logger.warning("Notification service returned error status", extra={
                    "status_code": response.status_code,
                    "event": event,
                    "order_id": order.id
                })
                return False
            return True
        except Exception as e:
            status = "error"
            status_code = 0  # Connection failure
            logger.error("Failed to send notification", extra={
                "event": event,
                "order_id": order.id,
                "user_id": order.user_id,
                "error": str(e)
            })
            return False
        finally:
            duration = time.time() - start_time
            external_notification_duration_histogram.record(
                duration,
                {
                    "event": event,
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )
