"""Payment processor implementations.

The order and payment services only talk to the ``PaymentProcessor``
interface; the concrete processor lives on ``app.state`` and is chosen by
``PAYMENT_PROCESSOR``.
"""
import asyncio
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from config import PAYMENT_DELAY_SECONDS, PAYMENT_PROVIDER_URL, PAYMENT_SUCCESS_RATE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorResult:
    success: bool
    transaction_id: str
    message: str


class PaymentProcessor(ABC):
    """Capability for moving money through a gateway."""

    gateway = "other"

    @abstractmethod
    async def charge(
        self,
        amount: Decimal,
        currency: str,
        method: str,
        reference: str
    ) -> ProcessorResult:
        """Charge ``amount``. Declines are reported, not raised."""

    @abstractmethod
    async def refund(self, transaction_id: str, amount: Decimal) -> ProcessorResult:
        """Return ``amount`` of an earlier charge."""


def _transaction_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class MockPaymentProcessor(PaymentProcessor):
    """
    Simulated gateway.

    Approves a charge with probability ``success_rate`` after ``delay``
    seconds of simulated network latency. Pass a seeded ``random.Random``
    (or a rate of 0 or 1) for deterministic behaviour.
    """

    gateway = "mock_processor"

    def __init__(
        self,
        success_rate: float = PAYMENT_SUCCESS_RATE,
        delay: float = PAYMENT_DELAY_SECONDS,
        rng: Optional[random.Random] = None
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self.delay = delay
        self.rng = rng or random.Random()

    async def charge(self, amount, currency, method, reference) -> ProcessorResult:
        if self.delay > 0:
            await asyncio.sleep(self.delay)

        success = self.rng.random() < self.success_rate
        return ProcessorResult(
            success=success,
            transaction_id=_transaction_id("mock"),
            message="Payment processed successfully" if success else "Card declined"
        )

    async def refund(self, transaction_id, amount) -> ProcessorResult:
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        return ProcessorResult(
            success=True,
            transaction_id=_transaction_id("mock_refund"),
            message="Refund processed successfully"
        )


class HttpPaymentProcessor(PaymentProcessor):
    """Gateway reached over HTTP at ``PAYMENT_PROVIDER_URL``."""

    gateway = "http"

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = PAYMENT_PROVIDER_URL):
        """
        Initialize the processor.

        Args:
            http_client: Async HTTP client
            base_url: Payment provider base URL
        """
        self.http_client = http_client
        self.base_url = base_url

    async def charge(self, amount, currency, method, reference) -> ProcessorResult:
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        response = await self.http_client.post(
            f"{self.base_url}/api/payments/process",
            json={
                "amount": str(amount),
                "currency": currency,
                "payment_method": method,
                "reference": reference
            }
        )
        if response.status_code == 402:
            data = response.json()
            return ProcessorResult(
                success=False,
                transaction_id=data.get("transaction_id", ""),
                message=data.get("message", "Payment declined")
            )
        response.raise_for_status()
        data = response.json()
        return ProcessorResult(
            success=True,
            transaction_id=data["transaction_id"],
            message=data.get("message", "Payment processed successfully")
        )

    async def refund(self, transaction_id, amount) -> ProcessorResult:
        response = await self.http_client.post(
            f"{self.base_url}/api/payments/refund",
            json={"transaction_id": transaction_id, "amount": str(amount)}
        )
        response.raise_for_status()
        data = response.json()
        return ProcessorResult(
            success=data.get("status", "processed") == "processed",
            transaction_id=data.get("refund_id", transaction_id),
            message=data.get("message", "Refund processed")
        )
