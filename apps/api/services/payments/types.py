"""Payment gateway contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


PaymentStatus = Literal["pending", "completed", "failed", "refunded"]


class WebhookEventType(str, Enum):
    COMPLETED = "payment.completed"
    FAILED = "payment.failed"
    REFUNDED = "payment.refunded"


EVENT_TARGET_STATUS: Dict[WebhookEventType, PaymentStatus] = {
    WebhookEventType.COMPLETED: "completed",
    WebhookEventType.FAILED: "failed",
    WebhookEventType.REFUNDED: "refunded",
}


@dataclass(frozen=True)
class PaymentSessionRequest:
    amount: int
    currency: str
    order_id: str
    customer_id: str
    return_url: str
    cancel_url: str
    description: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentSession:
    external_payment_id: str
    redirect_url: str


class WebhookPayload(BaseModel):
    """Inbound gateway notification body."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: str = Field(alias="eventType")
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    order_id: str = Field(alias="orderId")
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    timestamp: Optional[str] = None

    def known_event_type(self) -> Optional[WebhookEventType]:
        try:
            return WebhookEventType(self.event_type)
        except ValueError:
            return None
