"""
HTTP client for the M-Pesa Daraja API (OAuth, STK push, STK query)
"""
import asyncio
import base64
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from furniture_shop.config import MpesaConfig
from furniture_shop.errors import (
    GatewayAuthFailed,
    GatewayUnavailable,
    PaymentInitiationFailed,
    PaymentQueryFailed,
    ValidationError,
)
from furniture_shop.schemas.payment import PaymentOutcome, StkPushResponse
from furniture_shop.time_utils import gateway_timestamp
from furniture_shop.validators import normalize_phone_number

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"
# Daraja answers a status query with this error code until the payer responds
STILL_PROCESSING_CODE = "500.001.1001"
TOKEN_EXPIRY_MARGIN = 60
DEFAULT_TOKEN_LIFETIME = 3599
CALLBACK_FIELDS = ("Amount", "MpesaReceiptNumber", "TransactionDate", "PhoneNumber")

RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.ConnectError)


def round_amount(amount: float) -> int:
    """Gateway amounts are whole shillings, rounded half up"""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(shortcode + passkey + timestamp)"""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def parse_stk_callback(payload: Dict) -> PaymentOutcome:
    """
    Turn an STK callback body into a PaymentOutcome

    Metadata items missing from a success callback are listed in
    `missing_fields` instead of failing the parse.

    Raises:
        ValidationError: If the body has no stkCallback or CheckoutRequestID
    """
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
    except (KeyError, TypeError):
        raise ValidationError("Malformed STK callback body")

    result_code = callback.get("ResultCode")
    success = str(result_code) == SUCCESS_CODE

    outcome = {
        "correlation_id": checkout_request_id,
        "merchant_request_id": callback.get("MerchantRequestID"),
        "success": success,
        "result_code": None if result_code is None else str(result_code),
        "result_desc": callback.get("ResultDesc"),
        "source": "callback",
    }

    if success:
        metadata = (callback.get("CallbackMetadata") or {}).get("Item") or []
        values = {
            item.get("Name"): item.get("Value")
            for item in metadata
            if isinstance(item, dict) and item.get("Value") is not None
        }
        outcome["amount"] = values.get("Amount")
        outcome["receipt_number"] = _as_text(values.get("MpesaReceiptNumber"))
        outcome["transaction_date"] = _as_text(values.get("TransactionDate"))
        outcome["phone_number"] = _as_text(values.get("PhoneNumber"))
        outcome["missing_fields"] = [name for name in CALLBACK_FIELDS if name not in values]

    return PaymentOutcome(**outcome)


def _as_text(value) -> Optional[str]:
    return None if value is None else str(value)


class MpesaClient:
    """Client for the Daraja STK push API"""

    def __init__(self, config: MpesaConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.timeout = config.timeout
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        # Created on first use so it binds to the serving event loop
        self._token_lock: Optional[asyncio.Lock] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_delay, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True
        )

    def password_and_timestamp(self) -> Tuple[str, str]:
        """Fresh password/timestamp pair; the gateway rejects stale timestamps"""
        timestamp = gateway_timestamp(self.config.utc_offset_hours)
        password = generate_password(self.config.shortcode, self.config.passkey, timestamp)
        return password, timestamp

    # Access token

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Get a bearer token, reusing the cached one until shortly before it expires

        Raises:
            GatewayAuthFailed: If the gateway rejects the credentials or answers malformed
            GatewayUnavailable: If the gateway cannot be reached
        """
        if self._token_lock is None:
            self._token_lock = asyncio.Lock()
        async with self._token_lock:
            if not force_refresh and self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            data = await self._request_token()
            token = data.get("access_token") if isinstance(data, dict) else None
            if not token:
                raise GatewayAuthFailed("Gateway returned no access token")

            try:
                lifetime = int(data.get("expires_in", DEFAULT_TOKEN_LIFETIME))
            except (TypeError, ValueError):
                lifetime = DEFAULT_TOKEN_LIFETIME

            self._access_token = token
            self._token_expires_at = time.monotonic() + max(lifetime - TOKEN_EXPIRY_MARGIN, 0)
            return token

    async def _request_token(self) -> Dict:
        credentials = base64.b64encode(
            f"{self.config.consumer_key}:{self.config.consumer_secret}".encode()
        ).decode()

        try:
            async for attempt in self._retrying():
                with attempt:
                    async with self._client() as client:
                        response = await client.get(
                            self.config.oauth_url,
                            headers={"Authorization": f"Basic {credentials}"}
                        )
        except httpx.TransportError as e:
            logger.error("M-Pesa token request failed: %s", e)
            raise GatewayUnavailable("Payment service temporarily unavailable, please retry")

        if not response.is_success:
            logger.error("M-Pesa token request rejected: HTTP %s", response.status_code)
            raise GatewayAuthFailed(f"Failed to generate M-Pesa access token (HTTP {response.status_code})")

        try:
            return response.json()
        except ValueError:
            raise GatewayAuthFailed("Malformed M-Pesa token response")

    async def _post_signed(self, url: str, payload: Dict, retry_transport: bool) -> httpx.Response:
        """
        POST with a bearer token; a 401 refreshes the token and retries once

        Transport errors surface as GatewayUnavailable. Only idempotent calls
        pass retry_transport=True.
        """
        for refreshed in (False, True):
            token = await self.get_access_token(force_refresh=refreshed)
            headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
            try:
                if retry_transport:
                    async for attempt in self._retrying():
                        with attempt:
                            response = await self._send(url, payload, headers)
                else:
                    response = await self._send(url, payload, headers)
            except httpx.TransportError as e:
                logger.error("M-Pesa request to %s failed: %s", url, e)
                raise GatewayUnavailable("Payment service temporarily unavailable, please retry")

            if response.status_code != 401:
                return response
            logger.warning("M-Pesa rejected access token, refreshing")
            self.invalidate_token()

        raise GatewayAuthFailed("M-Pesa rejected a freshly issued access token")

    async def _send(self, url: str, payload: Dict, headers: Dict) -> httpx.Response:
        async with self._client() as client:
            return await client.post(url, json=payload, headers=headers)

    # STK push

    async def push_payment(
        self,
        phone: str,
        amount: float,
        account_reference: str,
        transaction_desc: Optional[str] = None,
    ) -> StkPushResponse:
        """
        Send an STK push prompt to the payer's phone

        A success only means the prompt was delivered; the payment outcome
        arrives later by callback or status query.

        Raises:
            InvalidPhoneNumber: If phone cannot be normalized
            ValidationError: If amount is below 1 or reference is missing
            PaymentInitiationFailed: If the gateway rejects the request
            GatewayAuthFailed / GatewayUnavailable: On upstream failure
        """
        if not account_reference:
            raise ValidationError("Account reference is required")
        if amount is None or amount < 1:
            raise ValidationError("Amount must be at least 1 KES")

        formatted_phone = normalize_phone_number(phone)
        password, timestamp = self.password_and_timestamp()

        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self.config.transaction_type,
            "Amount": round_amount(amount),
            "PartyA": formatted_phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc or self.config.transaction_desc,
        }

        response = await self._post_signed(self.config.stk_push_url, payload, retry_transport=False)
        data = self._json_or_unavailable(response)

        if str(data.get("ResponseCode")) == SUCCESS_CODE and data.get("CheckoutRequestID"):
            logger.info(
                "STK push accepted for %s (CheckoutRequestID %s)",
                account_reference, data["CheckoutRequestID"]
            )
            return StkPushResponse(
                checkout_request_id=data["CheckoutRequestID"],
                merchant_request_id=data.get("MerchantRequestID"),
                customer_message=data.get("CustomerMessage"),
            )

        message = data.get("errorMessage") or data.get("ResponseDescription") or "STK Push failed"
        logger.warning("STK push rejected for %s: %s", account_reference, message)
        raise PaymentInitiationFailed(f"M-Pesa payment failed: {message}")

    # STK query

    async def query_status(self, checkout_request_id: str) -> Optional[PaymentOutcome]:
        """
        Poll the outcome of a push payment

        Returns:
            The outcome, or None while the payer has not yet responded

        Raises:
            PaymentQueryFailed: If the gateway rejects the query
            GatewayAuthFailed / GatewayUnavailable: On upstream failure
        """
        password, timestamp = self.password_and_timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        response = await self._post_signed(self.config.stk_query_url, payload, retry_transport=True)
        data = self._json_or_unavailable(response)

        if "ResultCode" in data:
            result_code = str(data["ResultCode"])
            success = result_code == SUCCESS_CODE
            return PaymentOutcome(
                correlation_id=checkout_request_id,
                merchant_request_id=data.get("MerchantRequestID"),
                success=success,
                result_code=result_code,
                result_desc=data.get("ResultDesc"),
                source="query",
                # The query response carries no receipt metadata
                missing_fields=list(CALLBACK_FIELDS) if success else [],
            )

        if data.get("errorCode") == STILL_PROCESSING_CODE:
            return None

        message = data.get("errorMessage") or "Failed to query payment status"
        logger.warning("STK query rejected for %s: %s", checkout_request_id, message)
        raise PaymentQueryFailed(message)

    @staticmethod
    def _json_or_unavailable(response: httpx.Response) -> Dict:
        """Gateway business answers are JSON; anything else is an upstream outage"""
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error("Non-JSON M-Pesa response: HTTP %s", response.status_code)
            raise GatewayUnavailable("Payment service temporarily unavailable, please retry")
        return data
