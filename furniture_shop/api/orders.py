"""
Order API endpoints
"""
from fastapi import APIRouter, Depends, status, Query
from typing import List, Optional

from furniture_shop.api.dependencies import Actor, get_current_actor, get_order_service, require_admin
from furniture_shop.schemas.order import (
    OrderCreate,
    OrderStatusUpdate,
    OrderCancel,
    OrderResponse,
    OrderListResponse,
    OrderStatusLiteral,
    ExpirySweepResponse,
)
from furniture_shop.services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED, summary="Create order")
def create_order(
    order_data: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    """
    Create a new order
    
    Process:
    1. Validate each product exists and has enough stock
    2. Reserve stock per line item (all or nothing)
    3. Calculate subtotal, delivery fee and total
    4. Save order with its first status history entry
    5. Publish OrderCreated event
    
    - **customer**: Delivery and contact details (required)
    - **items**: Products and quantities (required, at least one)
    - **paymentMethod**: mpesa, card or cod (default: mpesa)
    - **notes**: Delivery notes (optional)
    """
    order = service.create_order(order_data, user_id=actor.user_id)
    return OrderResponse.from_order(order)


@router.get("/my-orders", response_model=List[OrderResponse], summary="Get current user's orders")
def get_my_orders(
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    """Get the 50 most recent orders of the caller"""
    return [OrderResponse.from_order(o) for o in service.get_user_orders(actor.user_id)]


@router.get("", response_model=OrderListResponse, summary="Get all orders")
def get_orders(
    status_filter: Optional[OrderStatusLiteral] = Query(None, alias="status", description="Filter by order status"),
    skip: int = Query(0, ge=0, description="Number of orders to skip"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of orders to return"),
    actor: Actor = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    """
    Retrieve all orders with pagination (admin)
    
    - **status**: Order status filter (optional)
    - **skip**: Number of orders to skip (default: 0)
    - **limit**: Maximum number of orders to return (default: 50, max: 1000)
    """
    orders, total = service.get_all_orders(skip=skip, limit=limit, status=status_filter)
    return OrderListResponse(orders=[OrderResponse.from_order(o) for o in orders], total=total)


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order by ID")
def get_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    """
    Retrieve a specific order by ID (owner or admin)
    
    - **order_id**: Order ID
    """
    return OrderResponse.from_order(service.get_order(order_id, actor))


@router.put("/{order_id}/status", response_model=OrderResponse, summary="Update order status")
def update_order_status(
    order_id: int,
    status_data: OrderStatusUpdate,
    actor: Actor = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    """
    Move an order forward along its fulfillment path (admin)
    
    - **order_id**: Order ID
    - **status**: New status (confirmed, processing, shipped, delivered)
    - **note**: Note for the status history (optional)
    """
    order = service.update_status(order_id, status_data.status, status_data.note, actor.user_id)
    return OrderResponse.from_order(order)


@router.delete("/{order_id}", response_model=OrderResponse, summary="Cancel order")
def cancel_order(
    order_id: int,
    cancel_data: Optional[OrderCancel] = None,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_order_service)
):
    """
    Cancel an order and return its stock (owner or admin)
    
    - **order_id**: Order ID
    - **reason**: Cancellation reason (optional)
    """
    reason = cancel_data.reason if cancel_data else None
    order = service.cancel_order(order_id, reason, actor=actor)
    return OrderResponse.from_order(order)


@router.post("/maintenance/expire-unpaid", response_model=ExpirySweepResponse, summary="Release expired reservations")
def expire_unpaid_orders(
    actor: Actor = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    """Cancel prepaid orders left unpaid past the reservation TTL, returning their stock (admin)"""
    expired = service.expire_unpaid_orders()
    return ExpirySweepResponse(expired=expired, total=len(expired))
