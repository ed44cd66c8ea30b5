"""
Razorpay payment gateway client.

Thin synchronous wrapper over the provider's REST API plus the signature
checks that decide whether a confirmation event can be trusted.
"""
import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import Settings
from app.core.exceptions import GatewayRejectedError, GatewayUnavailableError
from app.schemas.booking import CheckoutOrder
from app.schemas.payment import ProviderPaymentStatus

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (rupees) to minor units (paise)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    """Client for order creation, payment lookup and signature checks."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        api_base: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        callback_url: str = "",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self.callback_url = callback_url
        self._client = httpx.Client(
            base_url=api_base,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RazorpayClient":
        return cls(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            api_base=settings.RAZORPAY_API_BASE,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            callback_url=settings.callback_url,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Razorpay {method} {path} timed out: {e}")
            raise GatewayUnavailableError() from e
        except httpx.TransportError as e:
            logger.error(f"Razorpay {method} {path} failed: {e}")
            raise GatewayUnavailableError() from e

        if response.status_code >= 500:
            logger.error(f"Razorpay {method} {path} returned {response.status_code}: {response.text}")
            raise GatewayUnavailableError()
        if response.is_error:
            logger.error(f"Razorpay {method} {path} rejected with {response.status_code}: {response.text}")
            raise GatewayRejectedError()

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Razorpay {method} {path} returned a non-JSON body")
            raise GatewayRejectedError() from e

    def create_order(
        self,
        correlation_token: str,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Open a provider order tagged with the booking's correlation token.

        The provider does not echo foreign ids on every event, so the token
        travels both as ``receipt`` and inside ``notes``.

        Returns:
            Provider order id

        Raises:
            GatewayUnavailableError: Network failure or timeout (retryable)
            GatewayRejectedError: Provider refused the order
        """
        notes = {key: str(value) for key, value in (metadata or {}).items()}
        notes["correlation_token"] = correlation_token
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": correlation_token,
            "notes": notes,
        }
        logger.info(f"Creating Razorpay order for receipt {correlation_token}, amount {payload['amount']} {currency}")

        order = self._request("POST", "/orders", json=payload)
        order_id = order.get("id")
        if not order_id:
            logger.error(f"Order ID not found in Razorpay response for receipt {correlation_token}")
            raise GatewayRejectedError()
        logger.info(f"Razorpay order {order_id} created for receipt {correlation_token}")
        return order_id

    def checkout_options(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        correlation_token: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> CheckoutOrder:
        return CheckoutOrder(
            key_id=self.key_id,
            order_id=order_id,
            amount=to_minor_units(amount),
            currency=currency,
            correlation_token=correlation_token,
            callback_url=self.callback_url,
            notes={key: str(value) for key, value in (notes or {}).items()},
        )

    def verify_signature(self, order_id: Optional[str], payment_id: Optional[str], signature: Optional[str]) -> bool:
        """Check the checkout signature: HMAC-SHA256 of ``order_id|payment_id``."""
        if not (order_id and payment_id and signature and self._key_secret):
            return False
        expected = hmac_sha256_hex(self._key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected, signature.strip().lower())

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str], timestamp: Optional[str]) -> bool:
        """Check a webhook signature over ``timestamp|raw_body`` exactly as received."""
        if not (signature and timestamp and self._webhook_secret):
            return False
        expected = hmac_sha256_hex(self._webhook_secret, timestamp.encode("utf-8") + b"|" + raw_body)
        return hmac.compare_digest(expected, signature.strip().lower())

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/payments/{payment_id}")

    def query_payment_status(self, payment_id: str) -> ProviderPaymentStatus:
        """
        Ask the provider for the current status of a payment.

        Raises:
            GatewayUnavailableError: The status could not be fetched; callers
                must treat the payment as indeterminate, never as failed.
        """
        payment = self.fetch_payment(payment_id)
        status = ProviderPaymentStatus.parse(payment.get("status"))
        logger.info(f"Payment status for {payment_id}: {payment.get('status')} -> {status.value}")
        return status

    def list_order_payments(self, order_id: str) -> List[Dict[str, Any]]:
        """Payments attempted against an order, newest first."""
        body = self._request("GET", f"/orders/{order_id}/payments")
        items = body.get("items") or []
        return sorted(items, key=lambda item: item.get("created_at") or 0, reverse=True)
