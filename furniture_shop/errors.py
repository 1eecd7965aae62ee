"""
Error taxonomy shared by services and API layer
"""


class ShopError(Exception):
    """Base exception; carries the HTTP status the API layer responds with"""
    status_code = 500
    
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    """Bad caller input"""
    status_code = 400


class InvalidPhoneNumber(ValidationError):
    """Phone number cannot be normalized to 254XXXXXXXXX"""


class AmountMismatch(ValidationError):
    """Requested payment amount differs from the order total"""


class NotFound(ShopError):
    """Order or product absent"""
    status_code = 404


class Unauthorized(ShopError):
    status_code = 401


class Forbidden(ShopError):
    status_code = 403


class InsufficientStock(ShopError):
    """Requested quantity exceeds available stock"""
    status_code = 409
    
    def __init__(self, product_id: int, product_name: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product_name}. "
            f"Requested: {requested}, Available: {available}"
        )
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available


class InvalidState(ShopError):
    """Operation not allowed in the order's current status"""
    status_code = 409
    
    def __init__(self, message: str, current_status: str):
        super().__init__(message)
        self.current_status = current_status


class InvalidTransition(InvalidState):
    """Fulfillment status change not in the transition table"""


class AlreadyPaid(ShopError):
    status_code = 409


class PaymentInProgress(ShopError):
    """A push payment for the order is still awaiting its outcome"""
    status_code = 409


class PaymentInitiationFailed(ShopError):
    """Gateway rejected the push request"""
    status_code = 400


class GatewayAuthFailed(ShopError):
    """Gateway did not issue an access token"""
    status_code = 502


class GatewayUnavailable(ShopError):
    """Gateway unreachable or timed out; the caller may retry"""
    status_code = 503


class PaymentQueryFailed(ShopError):
    """Gateway rejected a payment status query"""
    status_code = 400
