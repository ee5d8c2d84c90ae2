"""Public payment gateway utilities."""

from services.payments.gateway import BasePaymentGateway, PaytenGateway, get_payment_gateway, sign_payload
from services.payments.types import (
    EVENT_TARGET_STATUS,
    PaymentSession,
    PaymentSessionRequest,
    PaymentStatus,
    WebhookEventType,
    WebhookPayload,
)

__all__ = [
    "BasePaymentGateway",
    "EVENT_TARGET_STATUS",
    "PaymentSession",
    "PaymentSessionRequest",
    "PaymentStatus",
    "PaytenGateway",
    "WebhookEventType",
    "WebhookPayload",
    "get_payment_gateway",
    "sign_payload",
]
