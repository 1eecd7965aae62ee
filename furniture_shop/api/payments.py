"""
M-Pesa payment API endpoints
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from furniture_shop.api.dependencies import Actor, get_current_actor, get_payment_service, require_admin
from furniture_shop.schemas.payment import (
    CallbackAck,
    PaymentStatusResponse,
    PollSummary,
    StkPushRequest,
    StkPushResponse,
)
from furniture_shop.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/mpesa", tags=["payments"])


@router.post("/stk-push", response_model=StkPushResponse, summary="Initiate M-Pesa STK push")
async def initiate_payment(
    payment_request: StkPushRequest,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    """
    Prompt the payer's phone to authorize payment for an order
    
    - **orderId**: Order ID (required, must belong to the caller)
    - **phone**: M-Pesa phone number (required)
    - **amount**: Amount in KES, must match the order total (required)
    """
    return await service.initiate(
        payment_request.order_id, payment_request.phone, payment_request.amount, actor
    )


@router.post("/callback", response_model=CallbackAck, summary="M-Pesa payment callback")
async def mpesa_callback(
    request: Request,
    service: PaymentService = Depends(get_payment_service)
):
    """
    Receive the STK push outcome from Safaricom
    
    Always answers `{"ResultCode": 0, "ResultDesc": "Accepted"}`, even for
    bodies that are not JSON. Reconciliation runs in the threadpool.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Unreadable M-Pesa callback body: %s", e)
        payload = {}
    return await run_in_threadpool(service.handle_callback, payload)


@router.get("/status/{checkout_request_id}", response_model=PaymentStatusResponse, summary="Check payment status")
async def check_payment_status(
    checkout_request_id: str,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    """
    Report the payment status, querying M-Pesa if no outcome has arrived
    
    - **checkout_request_id**: CheckoutRequestID returned by the STK push
    """
    return await service.check_status(checkout_request_id, actor)


@router.post("/poll-pending", response_model=PollSummary, summary="Poll outstanding payments")
async def poll_pending_payments(
    actor: Actor = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service)
):
    """Query M-Pesa for every attempt that has waited too long for its callback (admin)"""
    return await service.poll_pending()
