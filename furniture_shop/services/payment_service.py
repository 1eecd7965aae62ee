"""
Payment Service - bridges M-Pesa push payments to the order status machine
"""
import logging
from datetime import timedelta
from typing import Dict, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from furniture_shop.config import settings
from furniture_shop.errors import (
    AlreadyPaid,
    AmountMismatch,
    GatewayAuthFailed,
    GatewayUnavailable,
    InvalidState,
    NotFound,
    PaymentInProgress,
    PaymentQueryFailed,
    ShopError,
)
from furniture_shop.models.order import Order, PaymentAttempt, AttemptStatus, OrderStatus, PaymentStatus
from furniture_shop.repositories.order_repository import OrderRepository
from furniture_shop.schemas.payment import (
    CallbackAck,
    PaymentOutcome,
    PaymentStatusResponse,
    PollSummary,
    ReconcileResult,
    StkPushResponse,
)
from furniture_shop.services.mpesa_client import MpesaClient, parse_stk_callback, round_amount
from furniture_shop.services.order_service import OrderService
from furniture_shop.time_utils import utcnow
from furniture_shop.validators import normalize_phone_number

logger = logging.getLogger(__name__)


class PaymentService:
    """Service layer for push-payment initiation and reconciliation"""

    def __init__(self, db: Session, gateway: MpesaClient, order_service: Optional[OrderService] = None):
        self.db = db
        self.repository = OrderRepository(db)
        self.gateway = gateway
        self.order_service = order_service or OrderService(db)

    # Initiation

    async def initiate(self, order_id: int, phone: str, amount: float, actor) -> StkPushResponse:
        """
        Start an STK push for an order

        The order is charged its own total; `amount` only has to agree with
        it within the configured tolerance.

        Raises:
            NotFound / Forbidden: If the order is absent or not the actor's
            AlreadyPaid: If the order is paid
            InvalidState: If the order is cancelled
            AmountMismatch: If amount differs from the order total
            InvalidPhoneNumber: If phone cannot be normalized
            PaymentInProgress: If an earlier push still awaits its outcome
            PaymentInitiationFailed / GatewayAuthFailed / GatewayUnavailable:
                If the gateway rejects or cannot be reached
        """
        order = self.order_service.get_order(order_id)
        OrderService.ensure_access(order, actor, allow_admin=False)

        if order.payment_status == PaymentStatus.PAID.value:
            raise AlreadyPaid(f"Order {order.order_number} is already paid")
        if order.order_status == OrderStatus.CANCELLED.value:
            raise InvalidState("Cannot pay for a cancelled order", order.order_status)
        if abs(amount - order.total) > settings.PAYMENT_AMOUNT_TOLERANCE:
            raise AmountMismatch("Payment amount does not match order total")

        formatted_phone = normalize_phone_number(phone)

        claimed_at = utcnow()
        stale_before = claimed_at - timedelta(seconds=settings.PAYMENT_ATTEMPT_TIMEOUT_SECONDS)
        if not self.repository.claim_payment_slot(order.id, claimed_at, stale_before):
            self.repository.rollback()
            self.repository.refresh(order)
            if order.payment_status == PaymentStatus.PAID.value:
                raise AlreadyPaid(f"Order {order.order_number} is already paid")
            if order.order_status == OrderStatus.CANCELLED.value:
                raise InvalidState("Cannot pay for a cancelled order", order.order_status)
            raise PaymentInProgress(
                "A payment request for this order is already awaiting confirmation on your phone"
            )
        self.repository.commit()

        try:
            result = await self.gateway.push_payment(
                formatted_phone,
                order.total,
                order.order_number,
                f"Payment for order {order.order_number}"
            )
        except ShopError:
            self.repository.release_payment_slot(order.id, claimed_at)
            self.repository.commit()
            raise

        self._record_attempt(order, result, formatted_phone)
        return result

    def _record_attempt(self, order: Order, result: StkPushResponse, phone: str) -> None:
        """Log the accepted attempt and point the order at it"""
        now = utcnow()
        superseded = self.repository.supersede_open_attempts(order.id, now)
        if superseded:
            logger.info("Order %s: superseded %d earlier payment attempt(s)", order.order_number, superseded)

        self.repository.add_attempt(PaymentAttempt(
            order_id=order.id,
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            phone_number=phone,
            amount=round_amount(order.total),
            status=AttemptStatus.INITIATED.value,
            initiated_at=now,
        ))

        order.transaction_id = result.checkout_request_id
        order.merchant_request_id = result.merchant_request_id
        order.payment_phone_number = phone
        if order.payment_status == PaymentStatus.FAILED.value:
            order.payment_status = PaymentStatus.PENDING.value
            order.payment_failure_reason = None
        self.repository.commit()

        logger.info(
            "Payment initiated for order %s (CheckoutRequestID %s)",
            order.order_number, result.checkout_request_id
        )

    # Reconciliation

    def reconcile(self, outcome: PaymentOutcome) -> ReconcileResult:
        """
        Apply a payment outcome to its order

        Safe to call any number of times with the same outcome, and in any
        order relative to a status poll for the same attempt.
        """
        attempt = self.repository.get_attempt(outcome.correlation_id)
        order = attempt.order if attempt else self.repository.get_by_transaction_id(outcome.correlation_id)

        if order is None:
            logger.warning("No order found for CheckoutRequestID %s", outcome.correlation_id)
            return ReconcileResult(action="unmatched", detail="No order for this checkout request")

        if outcome.success:
            return self._apply_success(order, attempt, outcome)
        return self._apply_failure(order, attempt, outcome)

    def _apply_success(self, order: Order, attempt: Optional[PaymentAttempt], outcome: PaymentOutcome) -> ReconcileResult:
        gaps = list(outcome.missing_fields)
        if outcome.amount is not None and abs(float(outcome.amount) - order.total) > settings.PAYMENT_AMOUNT_TOLERANCE:
            logger.warning(
                "Order %s: paid amount %s differs from total %.2f",
                order.order_number, outcome.amount, order.total
            )
            gaps.append("AmountMismatch")
        if gaps:
            logger.warning("Order %s: payment outcome lacks %s", order.order_number, ", ".join(gaps))

        first_report = True
        if attempt is not None:
            first_report = self.repository.close_attempt(
                outcome.correlation_id,
                AttemptStatus.SUCCEEDED.value,
                result_code=outcome.result_code,
                result_desc=outcome.result_desc,
                receipt_number=outcome.receipt_number,
                completed_at=utcnow(),
            )
            self.repository.commit()

        details: Dict = {
            "mpesa_receipt_number": outcome.receipt_number,
            "mpesa_transaction_date": outcome.transaction_date,
            "transaction_id": outcome.correlation_id,
            "payment_phone_number": outcome.phone_number,
            "amount_paid": float(outcome.amount) if outcome.amount is not None else None,
        }
        recorded_before = (order.mpesa_receipt_number, order.payment_gaps)
        if self.order_service.mark_as_paid(order, details, gaps=gaps):
            return ReconcileResult(action="paid", order_number=order.order_number)

        if OrderService.is_other_payment(order, details) and first_report:
            logger.warning(
                "Order %s charged again by %s (receipt %s) after payment %s; refund required",
                order.order_number, outcome.correlation_id,
                outcome.receipt_number or "missing", order.mpesa_receipt_number or order.transaction_id
            )
            return ReconcileResult(
                action="overpaid", order_number=order.order_number, detail="Order was already paid by another charge"
            )
        if (order.mpesa_receipt_number, order.payment_gaps) != recorded_before:
            return ReconcileResult(action="backfilled", order_number=order.order_number)
        logger.info("Duplicate payment outcome for order %s ignored", order.order_number)
        return ReconcileResult(action="duplicate", order_number=order.order_number)

    def _apply_failure(self, order: Order, attempt: Optional[PaymentAttempt], outcome: PaymentOutcome) -> ReconcileResult:
        reason = outcome.result_desc or f"Payment failed (code {outcome.result_code})"

        if attempt is not None:
            self.repository.close_attempt(
                outcome.correlation_id,
                AttemptStatus.FAILED.value,
                result_code=outcome.result_code,
                result_desc=outcome.result_desc,
                completed_at=utcnow(),
            )

        if order.payment_status == PaymentStatus.PAID.value:
            self.repository.commit()
            logger.info("Failure outcome for already paid order %s ignored", order.order_number)
            return ReconcileResult(action="ignored", order_number=order.order_number, detail="Order already paid")

        if order.transaction_id != outcome.correlation_id:
            self.repository.commit()
            logger.info(
                "Failure of superseded attempt %s for order %s ignored",
                outcome.correlation_id, order.order_number
            )
            return ReconcileResult(action="ignored", order_number=order.order_number, detail="Attempt superseded")

        if not self.repository.mark_failed_if_pending(order.id, outcome.correlation_id, reason):
            self.repository.commit()
            return ReconcileResult(action="duplicate", order_number=order.order_number)

        self.repository.commit()
        logger.info("Payment failed for order %s: %s", order.order_number, reason)
        return ReconcileResult(action="failed", order_number=order.order_number, detail=reason)

    def handle_callback(self, payload: Dict) -> CallbackAck:
        """
        Process an STK callback body

        Always returns the Accepted acknowledgement; internal failures are
        logged, since the gateway would otherwise keep retrying.
        """
        try:
            outcome = parse_stk_callback(payload)
            result = self.reconcile(outcome)
            logger.info("M-Pesa callback %s: %s", outcome.correlation_id, result.action)
        except Exception:
            self.db.rollback()
            logger.exception("M-Pesa callback processing failed")
        return CallbackAck()

    # Polling

    async def check_status(self, checkout_request_id: str, actor) -> PaymentStatusResponse:
        """
        Report a payment's status, polling the gateway when no outcome is stored

        Raises:
            NotFound / Forbidden: If no order has this attempt or it is not the actor's
        """
        attempt = self.repository.get_attempt(checkout_request_id)
        order = attempt.order if attempt else self.repository.get_by_transaction_id(checkout_request_id)
        if order is None:
            raise NotFound("Order not found")
        OrderService.ensure_access(order, actor)

        if order.payment_status == PaymentStatus.PAID.value:
            return PaymentStatusResponse(
                status="paid",
                mpesa_receipt_number=order.mpesa_receipt_number,
                paid_at=order.paid_at,
            )

        outcome = await self.gateway.query_status(checkout_request_id)
        if outcome is None:
            return PaymentStatusResponse(status="pending", result_desc="The transaction is being processed")

        await run_in_threadpool(self.reconcile, outcome)
        self.repository.refresh(order)
        return PaymentStatusResponse(
            status="success" if outcome.success else "failed",
            result_code=outcome.result_code,
            result_desc=outcome.result_desc,
            mpesa_receipt_number=order.mpesa_receipt_number,
            paid_at=order.paid_at,
        )

    async def poll_pending(self, older_than_seconds: Optional[int] = None) -> PollSummary:
        """Query the gateway for every open attempt that has waited too long for a callback"""
        wait = settings.PAYMENT_POLL_AFTER_SECONDS if older_than_seconds is None else older_than_seconds
        initiated_before = utcnow() - timedelta(seconds=wait)
        summary = PollSummary()

        for attempt in self.repository.get_open_attempts(initiated_before):
            summary.checked += 1
            try:
                outcome = await self.gateway.query_status(attempt.checkout_request_id)
            except (GatewayUnavailable, GatewayAuthFailed, PaymentQueryFailed) as e:
                logger.warning("Polling %s failed: %s", attempt.checkout_request_id, e)
                summary.errors += 1
                continue

            if outcome is None:
                summary.pending += 1
                continue

            result = await run_in_threadpool(self.reconcile, outcome)
            if outcome.success:
                summary.paid += 1
            else:
                summary.failed += 1
            logger.info("Polled %s: %s", attempt.checkout_request_id, result.action)

        return summary
