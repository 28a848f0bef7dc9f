# evently/infrastructure/gateway/razorpay_gateway.py

import logging
from abc import ABC, abstractmethod
from uuid import uuid4

import razorpay
import requests

from evently.domain.exceptions import (
    GatewayTimeoutError,
    GatewayUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PROVIDER = "RAZORPAY"


class PaymentGateway(ABC):
    """Order creation and callback verification against the payment provider."""

    key_id: str
    webhook_secret: str | None = None

    @abstractmethod
    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict | None = None) -> str:
        ...

    @abstractmethod
    def fetch_order(self, order_id: str) -> str:
        ...

    @abstractmethod
    def verify_payment_signature(self, order_id: str, gateway_payment_id: str, signature: str) -> bool:
        ...

    @abstractmethod
    def verify_webhook_signature(self, body: str, signature: str) -> bool:
        ...


class RazorpayGateway(PaymentGateway):

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        webhook_secret: str | None = None,
    ):
        if not key_id or not key_secret:
            raise ValueError("Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.")
        self.key_id = key_id
        self.timeout = timeout
        self.webhook_secret = webhook_secret
        self._client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict | None = None) -> str:
        try:
            order = self._client.order.create(
                {
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes or {},
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise GatewayTimeoutError(f"Order creation timed out after {self.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            raise GatewayUnavailableError(f"Order creation failed: {exc}") from exc
        except razorpay.errors.BadRequestError as exc:
            raise ValidationError(f"Gateway rejected order: {exc}") from exc
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError) as exc:
            raise GatewayUnavailableError(f"Order creation failed: {exc}") from exc

        order_id = order.get("id")
        if not order_id:
            raise GatewayUnavailableError("Gateway returned an order without id")
        logger.info("Razorpay order created. order_id=%s receipt=%s", order_id, receipt)
        return order_id

    def fetch_order(self, order_id: str) -> str:
        try:
            order = self._client.order.fetch(order_id, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise GatewayTimeoutError(f"Order fetch timed out after {self.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            raise GatewayUnavailableError(f"Order fetch failed: {exc}") from exc
        except razorpay.errors.BadRequestError as exc:
            raise ValidationError(f"Gateway rejected order fetch: {exc}") from exc
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError) as exc:
            raise GatewayUnavailableError(f"Order fetch failed: {exc}") from exc
        return order.get("status", "unknown")

    def verify_payment_signature(self, order_id: str, gateway_payment_id: str, signature: str) -> bool:
        # HMAC-SHA256 over "order_id|payment_id", compared in constant time.
        try:
            return bool(
                self._client.utility.verify_payment_signature(
                    {
                        "razorpay_order_id": order_id,
                        "razorpay_payment_id": gateway_payment_id,
                        "razorpay_signature": signature,
                    }
                )
            )
        except razorpay.errors.SignatureVerificationError:
            return False

    def verify_webhook_signature(self, body: str, signature: str) -> bool:
        if not self.webhook_secret:
            return False
        if not signature:
            return False
        try:
            return bool(
                self._client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
            )
        except razorpay.errors.SignatureVerificationError:
            return False


class MockRazorpayGateway(RazorpayGateway):
    """
    Offline gateway for local runs and tests. Orders are fabricated;
    signature verification is the real HMAC check and never bypassed.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        webhook_secret: str | None = None,
    ):
        super().__init__(key_id, key_secret, timeout=timeout, webhook_secret=webhook_secret)
        self.orders: dict[str, dict] = {}

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict | None = None) -> str:
        order_id = "order_" + uuid4().hex[:18]
        self.orders[order_id] = {
            "id": order_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        logger.info("MOCK: Order created. order_id=%s amount=%s %s", order_id, amount_minor, currency)
        return order_id

    def fetch_order(self, order_id: str) -> str:
        order = self.orders.get(order_id)
        if order is None:
            raise ValidationError(f"Unknown order: {order_id}")
        return order["status"]
