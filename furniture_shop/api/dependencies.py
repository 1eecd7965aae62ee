"""
Shared FastAPI dependencies: actor identity and service construction
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from furniture_shop.database import get_db
from furniture_shop.errors import Forbidden, Unauthorized
from furniture_shop.publishers.event_publisher import EventPublisher
from furniture_shop.services.mpesa_client import MpesaClient
from furniture_shop.services.order_service import OrderService
from furniture_shop.services.payment_service import PaymentService

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, as asserted by the upstream auth layer"""
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Dependency resolving the caller from X-User-Id / X-User-Role"""
    if not x_user_id:
        raise Unauthorized("Not authorized to access this route. Please login.")
    return Actor(user_id=x_user_id, role=(x_user_role or "customer").lower())


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise Forbidden("Admin access required")
    return actor


def get_event_publisher() -> EventPublisher:
    return EventPublisher()


def get_order_service(
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
) -> OrderService:
    """Dependency to get OrderService instance"""
    return OrderService(db, event_publisher=publisher)


def get_mpesa_client(request: Request) -> MpesaClient:
    """The gateway client built at startup; it holds the cached access token"""
    return request.app.state.mpesa_client


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: MpesaClient = Depends(get_mpesa_client),
    order_service: OrderService = Depends(get_order_service),
) -> PaymentService:
    """Dependency to get PaymentService instance"""
    return PaymentService(db, gateway, order_service=order_service)
