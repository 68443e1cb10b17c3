"""
Razorpay API Client

Thin wrapper over the Razorpay REST API:
- HTTP Basic auth with key id / key secret
- Bounded timeout on every call
- Structured error mapping to the application error taxonomy
- Request logging with duration

Calls are never retried here; callers decide what a failure means.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..utils.errors import GatewayUnavailable, ValidationError
from ..utils.logging_config import get_logger
from ..utils.security import verify_hmac_signature

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


@dataclass
class GatewayErrorSpec:
    code: str
    message: str
    client_fault: bool = False


# Error mapping for Razorpay responses
ERROR_MAP = {
    400: GatewayErrorSpec("bad_request", "Payment gateway rejected the request", client_fault=True),
    401: GatewayErrorSpec("unauthorized", "Payment gateway credentials were rejected"),
    403: GatewayErrorSpec("forbidden", "Payment gateway denied access"),
    404: GatewayErrorSpec("not_found", "Payment gateway resource not found"),
    429: GatewayErrorSpec("rate_limited", "Payment gateway is rate limiting requests"),
    500: GatewayErrorSpec("server_error", "Payment gateway server error"),
    502: GatewayErrorSpec("bad_gateway", "Payment gateway error"),
    503: GatewayErrorSpec("service_unavailable", "Payment gateway unavailable"),
}


class RazorpayClient:
    """Client for Razorpay orders and RazorpayX payouts."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        account_number: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = (base_url or settings.razorpay_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.razorpay_timeout_seconds
        self.account_number = account_number if account_number is not None else settings.razorpay_account_number
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self._transport,
        )

    def _error_description(self, response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("description")
        return None

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        start = time.time()
        status_code = None
        try:
            with self._client() as client:
                response = client.request(method, endpoint, json=payload, headers=headers, params=params)
            status_code = response.status_code
        except httpx.TimeoutException as e:
            logger.warning(f"Razorpay {method} {endpoint} timed out after {self.timeout}s: {e}")
            raise GatewayUnavailable("Payment gateway timed out, please try again")
        except httpx.HTTPError as e:
            logger.warning(f"Razorpay {method} {endpoint} transport error: {e}")
            raise GatewayUnavailable()
        finally:
            structured_logger.gateway_call(method, endpoint, status_code, round((time.time() - start) * 1000, 2))

        if response.is_success:
            return response.json()

        error_spec = ERROR_MAP.get(status_code) or GatewayErrorSpec("unexpected", f"Unexpected gateway status {status_code}")
        description = self._error_description(response)
        logger.error(f"Razorpay {method} {endpoint} failed: {status_code} {error_spec.code} {description or ''}".rstrip())

        if error_spec.client_fault:
            raise ValidationError(description or error_spec.message)
        raise GatewayUnavailable(error_spec.message)

    # ==================
    # Orders
    # ==================

    def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway order. ``amount_minor`` is in paise.

        Returns the gateway descriptor:
        {id, amount, amount_paid, amount_due, currency, receipt, status}
        """
        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        if notes:
            payload["notes"] = notes
        order = self._request("POST", "/orders", payload)
        logger.info(f"Created Razorpay order {order.get('id')} for {amount_minor} {currency} ({receipt})")
        return order

    # ==================
    # RazorpayX payouts
    # ==================

    def create_contact(
        self,
        name: str,
        reference_id: str,
        contact_type: str = "vendor",
        email: Optional[str] = None,
        contact: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {"name": name, "type": contact_type, "reference_id": reference_id}
        if email:
            payload["email"] = email
        if contact:
            payload["contact"] = contact
        return self._request("POST", "/contacts", payload)

    def create_fund_account(self, contact_id: str, vpa: str) -> Dict[str, Any]:
        payload = {
            "contact_id": contact_id,
            "account_type": "vpa",
            "vpa": {"address": vpa},
        }
        return self._request("POST", "/fund_accounts", payload)

    def create_payout(
        self,
        fund_account_id: str,
        amount_minor: int,
        currency: str,
        purpose: str,
        reference_id: str,
        idempotency_key: str,
        mode: str = "UPI",
        narration: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "account_number": self.account_number,
            "fund_account_id": fund_account_id,
            "amount": amount_minor,
            "currency": currency,
            "mode": mode,
            "purpose": purpose,
            "queue_if_low_balance": True,
            "reference_id": reference_id,
        }
        if narration:
            payload["narration"] = narration[:30]
        return self._request("POST", "/payouts", payload, headers={"X-Payout-Idempotency": idempotency_key})

    def fetch_payout(self, payout_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/payouts/{payout_id}")

    def find_payout_by_reference(self, reference_id: str) -> Optional[Dict[str, Any]]:
        """Most recent payout carrying ``reference_id``, or None if the gateway has none."""
        result = self._request(
            "GET",
            "/payouts",
            params={"account_number": self.account_number, "reference_id": reference_id},
        )
        items = result.get("items") or []
        return items[0] if items else None


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Razorpay signs the raw body with HMAC-SHA256 using the webhook secret."""
    return verify_hmac_signature(body, signature, secret)


def get_razorpay_client() -> RazorpayClient:
    """
    Build a client from settings. Raises GatewayUnavailable when keys are missing.
    """
    if not settings.has_razorpay_credentials:
        logger.error("Razorpay credentials are not configured")
        raise GatewayUnavailable("Payment gateway is not configured")
    return RazorpayClient(settings.razorpay_key_id, settings.razorpay_key_secret)
