"""Payment gateway adapters."""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from config import require_payten_credentials, settings
from services.billing_errors import GatewayUnavailableError
from services.payments.types import PaymentSession, PaymentSessionRequest, PaymentStatus

logger = logging.getLogger(__name__)

KNOWN_STATUSES = ("pending", "completed", "failed", "refunded")


class BasePaymentGateway(ABC):
    provider_name: str

    @abstractmethod
    async def create_session(self, request: PaymentSessionRequest) -> PaymentSession:
        """Open a hosted payment session. Raises GatewayUnavailableError."""
        raise NotImplementedError

    @abstractmethod
    async def verify_status(self, external_payment_id: str) -> PaymentStatus:
        """Ask the gateway for a payment's status. Raises GatewayUnavailableError."""
        raise NotImplementedError

    @abstractmethod
    def validate_webhook_signature(self, raw_body: bytes, signature_header: str) -> bool:
        raise NotImplementedError


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def get_payten_api_url(environment: str) -> str:
    if environment == "production":
        return "https://api.payten.com/v1"
    return "https://sandbox.payten.com/v1"


class PaytenGateway(BasePaymentGateway):
    """Payten REST adapter. Webhooks are HMAC-SHA256 signed with the API key."""

    provider_name = "payten"

    def __init__(
        self,
        *,
        api_key: str,
        merchant_id: str,
        environment: str = "sandbox",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.merchant_id = merchant_id
        self.base_url = get_payten_api_url(environment)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Merchant-Id": self.merchant_id,
        }

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=self._headers())
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Payten %s %s failed: %s", method, path, exc)
            raise GatewayUnavailableError(f"Payment gateway request failed: {exc}") from exc

    async def create_session(self, request: PaymentSessionRequest) -> PaymentSession:
        data = await self._request(
            "POST",
            "/payments",
            json={
                "amount": request.amount,
                "currency": request.currency,
                "order_id": request.order_id,
                "customer_id": request.customer_id,
                "return_url": request.return_url,
                "cancel_url": request.cancel_url,
                "description": request.description,
                "metadata": request.metadata,
            },
        )
        payment_id = str(data.get("id") or "").strip()
        payment_url = str(data.get("payment_url") or "").strip()
        if not payment_id or not payment_url:
            raise GatewayUnavailableError("Payment gateway returned an incomplete session.")
        return PaymentSession(external_payment_id=payment_id, redirect_url=payment_url)

    async def verify_status(self, external_payment_id: str) -> PaymentStatus:
        data = await self._request("GET", f"/payments/{external_payment_id}")
        status = str(data.get("status") or "").strip().lower()
        if status not in KNOWN_STATUSES:
            logger.warning("Payten returned unrecognised status %r for %s", status, external_payment_id)
            return "pending"
        return status

    def validate_webhook_signature(self, raw_body: bytes, signature_header: str) -> bool:
        if not signature_header:
            return False
        expected = sign_payload(raw_body, self.api_key)
        return hmac.compare_digest(expected, signature_header.strip().lower())


def get_payment_gateway() -> BasePaymentGateway:
    """FastAPI dependency returning the configured gateway."""
    try:
        api_key, merchant_id = require_payten_credentials()
    except ValueError as exc:
        raise GatewayUnavailableError(str(exc)) from exc
    return PaytenGateway(
        api_key=api_key,
        merchant_id=merchant_id,
        environment=settings.PAYTEN_ENVIRONMENT,
        timeout_seconds=settings.PAYTEN_TIMEOUT_SECONDS,
    )
