"""Payment record management."""
import asyncio
import logging
import time
from decimal import Decimal
from typing import Dict, List, Set

import httpx
from sqlalchemy.orm import Session
from opentelemetry import trace

from auth import Principal
from config import DEFAULT_CURRENCY, PAYMENT_TIMEOUT_SECONDS
from errors import AuthorizationError, NotFoundError, PaymentError, StateConflictError, ValidationError
from models import (
    SUPPORTED_CURRENCIES,
    Order,
    Payment,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    RefundReason,
    utcnow,
)
from monitoring import payment_duration_histogram, payments_counter, refund_amount_histogram
from pricing import has_at_most_two_decimals
from services.payment_processor import PaymentProcessor, ProcessorResult

logger = logging.getLogger(__name__)

# Forward-only payment lifecycle; failed and refunded are dead ends
PAYMENT_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED, PaymentStatus.DISPUTED},
    PaymentStatus.DISPUTED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

COLLECTED_KINDS = (PaymentKind.INITIAL.value, PaymentKind.FINAL.value)


def transition(payment: Payment, new_status: PaymentStatus) -> None:
    current = PaymentStatus(payment.status)
    if new_status not in PAYMENT_TRANSITIONS[current]:
        raise StateConflictError(
            f"Payment {payment.id} cannot move from {current.value} to {new_status.value}"
        )
    payment.status = new_status.value


def amount_paid(order: Order) -> Decimal:
    """Money collected for the order and not refunded."""
    return sum(
        (
            payment.amount
            for payment in order.payments
            if payment.kind in COLLECTED_KINDS and payment.status == PaymentStatus.PAID.value
        ),
        Decimal("0.00"),
    )


def recompute_payment_due(order: Order) -> Decimal:
    order.payment_due = order.total_price - amount_paid(order)
    return order.payment_due


class PaymentService:
    """Service for creating, processing and refunding payment records."""

    def __init__(self, processor: PaymentProcessor, timeout: float = PAYMENT_TIMEOUT_SECONDS):
        """
        Initialize payment service.

        Args:
            processor: Gateway used for charges and refunds
            timeout: Seconds to wait for the gateway before failing the payment
        """
        self.processor = processor
        self.timeout = timeout
        self.tracer = trace.get_tracer(__name__)

    def create(
        self,
        db: Session,
        order: Order,
        amount: Decimal,
        method: str = PaymentMethod.CARD.value,
        kind: PaymentKind = PaymentKind.INITIAL,
        currency: str = DEFAULT_CURRENCY
    ) -> Payment:
        """Add a pending payment record to the order (no commit)."""
        if amount <= 0 or not has_at_most_two_decimals(amount):
            raise ValidationError("Payment amount must be positive with at most two decimals")
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")
        try:
            method = PaymentMethod(method).value
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {method}")

        payment = Payment(
            user_id=order.user_id,
            kind=kind.value,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING.value,
            gateway=self.processor.gateway
        )
        order.payments.append(payment)
        db.add(payment)
        return payment

    async def _call_gateway(self, coro, payment: Payment) -> ProcessorResult:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("Payment gateway timed out", extra={
                "payment_id": payment.id,
                "timeout_seconds": self.timeout
            })
            raise PaymentError("payment processor timed out", payment.method)
        except httpx.HTTPError as e:
            logger.error("Payment gateway error", extra={
                "payment_id": payment.id,
                "error": str(e)
            })
            raise PaymentError("payment service unavailable", payment.method)
        except (KeyError, ValueError) as e:
            logger.error("Payment gateway returned a malformed response", extra={
                "payment_id": payment.id,
                "error": repr(e)
            })
            raise PaymentError("invalid response from payment service", payment.method)

    async def process(self, db: Session, payment: Payment) -> Payment:
        """
        Charge a pending payment through the processor.

        The move to ``processing`` is committed before the gateway call; the
        final ``paid``/``failed`` status is left for the caller to commit
        together with its own changes.

        Any exception out of the gateway call leaves the payment ``failed``.

        Raises:
            PaymentError: If the charge is declined, times out, the gateway
                is unreachable or its answer is malformed
        """
        transition(payment, PaymentStatus.PROCESSING)
        db.commit()

        started = time.time()
        with self.tracer.start_as_current_span("payment.charge") as span:
            span.set_attribute("payment.id", payment.id)
            span.set_attribute("payment.kind", payment.kind)
            span.set_attribute("payment.method", payment.method)
            span.set_attribute("payment.amount", float(payment.amount))

            try:
                result = await self._call_gateway(
                    self.processor.charge(
                        payment.amount,
                        payment.currency,
                        payment.method,
                        f"order-{payment.order_id}-payment-{payment.id}"
                    ),
                    payment
                )
            except BaseException:
                transition(payment, PaymentStatus.FAILED)
                self._record(payment, started)
                raise

            span.set_attribute("payment.success", result.success)

        payment.transaction_id = result.transaction_id or None
        if not result.success:
            transition(payment, PaymentStatus.FAILED)
            self._record(payment, started)
            logger.warning("Payment declined", extra={
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "amount": str(payment.amount),
                "reason": result.message
            })
            raise PaymentError(result.message, payment.method)

        transition(payment, PaymentStatus.PAID)
        self._record(payment, started)
        logger.info("Payment captured", extra={
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "kind": payment.kind,
            "amount": str(payment.amount),
            "transaction_id": payment.transaction_id
        })
        return payment

    def _record(self, payment: Payment, started: float) -> None:
        attributes = {"kind": payment.kind, "method": payment.method, "status": payment.status}
        payment_duration_histogram.record(time.time() - started, attributes)
        payments_counter.add(1, attributes)

    async def refund_record(
        self,
        db: Session,
        payment_id: int,
        reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    ) -> Payment:
        """
        Refund a collected payment in full through the processor (no commit).

        Raises:
            NotFoundError: If the payment doesn't exist
            StateConflictError: If the payment is already refunded or was
                never paid
            PaymentError: If the processor rejects the refund
        """
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.status == PaymentStatus.REFUNDED.value:
            raise StateConflictError(f"Payment {payment_id} already refunded")
        if payment.status not in (PaymentStatus.PAID.value, PaymentStatus.DISPUTED.value):
            raise StateConflictError("Only paid payments can be refunded")

        result = await self._call_gateway(
            self.processor.refund(payment.transaction_id, payment.amount),
            payment
        )
        if not result.success:
            raise PaymentError(result.message, payment.method)

        payment.refund_amount = payment.amount
        payment.refund_reason = reason.value
        payment.refund_status = "processed"
        payment.refunded_at = utcnow()
        transition(payment, PaymentStatus.REFUNDED)

        refund_amount_histogram.record(float(payment.amount), {"reason": reason.value})
        logger.info("Payment refunded", extra={
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "amount": str(payment.amount),
            "reason": reason.value
        })
        return payment

    def record_refund(
        self,
        db: Session,
        order: Order,
        amount: Decimal,
        reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    ) -> Payment:
        """Add a settled refund record for money returned on the order (no commit)."""
        source = next(
            (
                p for p in reversed(order.payments)
                if p.kind in COLLECTED_KINDS and p.status == PaymentStatus.PAID.value
            ),
            None
        )
        refund = Payment(
            user_id=order.user_id,
            kind=PaymentKind.REFUND.value,
            amount=amount,
            currency=source.currency if source else DEFAULT_CURRENCY,
            method=source.method if source else PaymentMethod.CARD.value,
            status=PaymentStatus.REFUNDED.value,
            gateway=self.processor.gateway,
            refund_amount=amount,
            refund_reason=reason.value,
            refund_status="processed",
            refunded_at=utcnow()
        )
        order.payments.append(refund)
        db.add(refund)

        refund_amount_histogram.record(float(amount), {"reason": reason.value})
        return refund

    def list_payments(self, db: Session, principal: Principal) -> List[Payment]:
        """All payments for admins, the caller's own payments otherwise."""
        query = db.query(Payment)
        if not principal.is_admin:
            query = query.filter(Payment.user_id == principal.id)
        return query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()

    def payment_status(self, db: Session, order_id: int, principal: Principal) -> Dict:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if not principal.can_access(order.user_id):
            raise AuthorizationError("Not authorized to view this payment")

        paid = amount_paid(order)
        if order.payment_due <= 0:
            status = "paid"
        elif paid > 0:
            status = "partial"
        else:
            status = "unpaid"

        return {
            "order_id": order.id,
            "status": status,
            "total_price": order.total_price,
            "amount_paid": paid,
            "payment_due": order.payment_due,
            "payments": list(order.payments)
        }
