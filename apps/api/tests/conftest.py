import json
from typing import Dict, List, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.user import User
from routers import rate_limit
from services.billing_errors import GatewayUnavailableError
from services.payments.gateway import BasePaymentGateway, sign_payload
from services.payments.types import PaymentSession, PaymentSessionRequest


WEBHOOK_SECRET = "test-webhook-secret"


class FakeGateway(BasePaymentGateway):
    """In-memory gateway that signs webhooks with a shared secret."""

    provider_name = "fake"

    def __init__(self, secret: str = WEBHOOK_SECRET) -> None:
        self.secret = secret
        self.sessions: List[PaymentSessionRequest] = []
        self.statuses: Dict[str, str] = {}
        self.verify_calls: List[str] = []
        self.fail_next_session = False

    async def create_session(self, request: PaymentSessionRequest) -> PaymentSession:
        if self.fail_next_session:
            self.fail_next_session = False
            raise GatewayUnavailableError("Payment gateway request failed: connection reset")
        self.sessions.append(request)
        payment_id = f"pay_{len(self.sessions)}_{request.order_id[:8]}"
        self.statuses[payment_id] = "pending"
        return PaymentSession(
            external_payment_id=payment_id,
            redirect_url=f"https://pay.example.test/checkout/{payment_id}",
        )

    async def verify_status(self, external_payment_id: str) -> str:
        self.verify_calls.append(external_payment_id)
        return self.statuses.get(external_payment_id, "pending")

    def validate_webhook_signature(self, raw_body: bytes, signature_header: str) -> bool:
        return bool(signature_header) and sign_payload(raw_body, self.secret) == signature_header

    def webhook(self, event_type: str, order_id: str, payment_id: Optional[str] = None) -> tuple:
        """Return (raw_body, signature) for a gateway notification."""
        body = json.dumps(
            {"eventType": event_type, "orderId": order_id, "paymentId": payment_id}
        ).encode("utf-8")
        return body, sign_payload(body, self.secret)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Isolated SQLite database; out-of-band sessions point at it as well."""
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with patch("services.error_log.async_session_maker", maker), \
         patch("services.reading_pipeline.async_session_maker", maker), \
         patch("services.reading_queue.async_session_maker", maker):
        yield maker

    await engine.dispose()


@pytest.fixture
def make_account(session_maker):
    """Insert an account row with the given balance."""

    async def _make(user_id: str, credits: int = 0, **fields) -> None:
        async with session_maker() as session:
            session.add(
                User(
                    id=user_id,
                    email=f"{user_id}@example.com",
                    available_credits=credits,
                    total_credits_purchased=0,
                    **fields,
                )
            )
            await session.commit()

    return _make


@pytest.fixture
def gateway():
    return FakeGateway()
