"""
Pydantic schemas for order request/response validation
"""
from pydantic import BaseModel, Field, EmailStr, ConfigDict, field_validator
from typing import List, Optional, Literal
from datetime import datetime

from furniture_shop.errors import InvalidPhoneNumber
from furniture_shop.validators import normalize_phone_number

OrderStatusLiteral = Literal['pending', 'confirmed', 'processing', 'shipped', 'delivered', 'cancelled']


class CustomerInfo(BaseModel):
    """Delivery and contact details captured with the order"""
    full_name: str = Field(..., min_length=1, max_length=255, alias="fullName")
    email: EmailStr
    phone: str = Field(..., description="Kenyan mobile number")
    address: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    county: Optional[str] = Field(None, max_length=100)
    
    model_config = ConfigDict(populate_by_name=True)
    
    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        try:
            return normalize_phone_number(value)
        except InvalidPhoneNumber as e:
            raise ValueError(str(e))


class OrderItemCreate(BaseModel):
    """Requested line item"""
    product_id: int = Field(..., gt=0, alias="product", description="Product ID")
    quantity: int = Field(..., ge=1, description="Quantity to order")
    
    model_config = ConfigDict(populate_by_name=True)


class OrderCreate(BaseModel):
    """Schema for creating a new order"""
    customer: CustomerInfo
    items: List[OrderItemCreate] = Field(..., min_length=1)
    payment_method: Literal['mpesa', 'card', 'cod'] = Field('mpesa', alias="paymentMethod")
    notes: Optional[str] = Field(None, max_length=1000)
    
    model_config = ConfigDict(populate_by_name=True)


class OrderStatusUpdate(BaseModel):
    """Schema for updating order status"""
    status: OrderStatusLiteral = Field(..., description="Order status")
    note: Optional[str] = Field(None, max_length=500)


class OrderCancel(BaseModel):
    """Schema for cancelling an order"""
    reason: Optional[str] = Field(None, max_length=500)


class OrderItemResponse(BaseModel):
    product_id: int
    name: str
    price: float
    quantity: int
    image: str
    
    model_config = ConfigDict(from_attributes=True)


class StatusHistoryResponse(BaseModel):
    status: str
    note: Optional[str]
    actor_id: Optional[str]
    timestamp: datetime
    
    model_config = ConfigDict(from_attributes=True)


class PaymentDetailsResponse(BaseModel):
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    transaction_id: Optional[str] = None
    phone_number: Optional[str] = None
    amount_paid: Optional[float] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    gaps: List[str] = []


class DeliveryEstimateResponse(BaseModel):
    """Earliest and latest expected delivery"""
    min: datetime
    max: datetime


class OrderResponse(BaseModel):
    """Schema for order response"""
    id: int
    order_number: str
    user_id: str
    customer: CustomerInfo
    items: List[OrderItemResponse]
    subtotal: float
    delivery_fee: float
    total: float
    payment_method: str
    payment_status: str
    payment_details: PaymentDetailsResponse
    order_status: str
    status_history: List[StatusHistoryResponse]
    notes: Optional[str]
    cancel_reason: Optional[str]
    delivery_estimate: DeliveryEstimateResponse
    is_completed: bool
    can_be_cancelled: bool
    created_at: datetime
    updated_at: datetime
    
    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            customer=CustomerInfo.model_construct(
                full_name=order.customer_full_name,
                email=order.customer_email,
                phone=order.customer_phone,
                address=order.customer_address,
                city=order.customer_city,
                county=order.customer_county,
            ),
            items=[OrderItemResponse.model_validate(item) for item in order.items],
            subtotal=order.subtotal,
            delivery_fee=order.delivery_fee,
            total=order.total,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            payment_details=PaymentDetailsResponse(
                mpesa_receipt_number=order.mpesa_receipt_number,
                transaction_date=order.mpesa_transaction_date,
                transaction_id=order.transaction_id,
                phone_number=order.payment_phone_number,
                amount_paid=order.amount_paid,
                paid_at=order.paid_at,
                failure_reason=order.payment_failure_reason,
                gaps=order.payment_gaps.split(",") if order.payment_gaps else [],
            ),
            order_status=order.order_status,
            status_history=[StatusHistoryResponse.model_validate(h) for h in order.status_history],
            notes=order.notes,
            cancel_reason=order.cancel_reason,
            delivery_estimate=DeliveryEstimateResponse(**order.delivery_estimate),
            is_completed=order.is_completed,
            can_be_cancelled=order.can_be_cancelled,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class OrderListResponse(BaseModel):
    """Schema for list of orders response"""
    orders: list[OrderResponse]
    total: int


class ExpirySweepResponse(BaseModel):
    """Result of releasing reservations held by unpaid orders"""
    expired: List[str]
    total: int
