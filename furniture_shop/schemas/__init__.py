"""
Schemas package
"""
from furniture_shop.schemas.order import (
    CustomerInfo,
    OrderItemCreate,
    OrderCreate,
    OrderStatusUpdate,
    OrderCancel,
    OrderResponse,
    OrderListResponse,
    ExpirySweepResponse,
)
from furniture_shop.schemas.payment import (
    StkPushRequest,
    StkPushResponse,
    PaymentOutcome,
    ReconcileResult,
    CallbackAck,
    PaymentStatusResponse,
    PollSummary,
)

__all__ = [
    "CustomerInfo",
    "OrderItemCreate",
    "OrderCreate",
    "OrderStatusUpdate",
    "OrderCancel",
    "OrderResponse",
    "OrderListResponse",
    "ExpirySweepResponse",
    "StkPushRequest",
    "StkPushResponse",
    "PaymentOutcome",
    "ReconcileResult",
    "CallbackAck",
    "PaymentStatusResponse",
    "PollSummary",
]
