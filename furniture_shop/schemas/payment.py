"""
Pydantic schemas for M-Pesa payment requests, outcomes and acknowledgements
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Literal
from datetime import datetime


class StkPushRequest(BaseModel):
    """Schema for starting an STK push against an order"""
    order_id: int = Field(..., gt=0, alias="orderId")
    phone: str = Field(..., min_length=1)
    amount: float = Field(..., ge=1, description="Amount in KES, at least 1")
    
    model_config = ConfigDict(populate_by_name=True)


class StkPushResponse(BaseModel):
    """Accepted-for-processing push; the payer still has to authorize it"""
    message: str = "STK Push sent successfully"
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    customer_message: Optional[str] = None


class PaymentOutcome(BaseModel):
    """Outcome of a push payment, from a callback or a status query"""
    correlation_id: str
    merchant_request_id: Optional[str] = None
    success: bool
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    amount: Optional[float] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    source: Literal['callback', 'query'] = 'callback'
    missing_fields: List[str] = []


class ReconcileResult(BaseModel):
    """What reconciliation did with an outcome"""
    action: Literal['paid', 'failed', 'duplicate', 'backfilled', 'overpaid', 'ignored', 'unmatched', 'pending']
    order_number: Optional[str] = None
    detail: Optional[str] = None


class CallbackAck(BaseModel):
    """Mandatory acknowledgement returned to the gateway"""
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class PaymentStatusResponse(BaseModel):
    status: str
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    paid_at: Optional[datetime] = None


class PollSummary(BaseModel):
    """Result of polling outstanding payment attempts"""
    checked: int = 0
    paid: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
