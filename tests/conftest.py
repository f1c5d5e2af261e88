import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("WHATSAPP_FLOW_ID", "flow-123")

from app.core.config import Settings  # noqa: E402
from app.deps import Services  # noqa: E402
from app.storage.memory import InMemorySessionStore  # noqa: E402
from tests.factories import WEBHOOK_SECRET  # noqa: E402
from tests.fakes import FakeLedger, FakeLogistics, FakeMessenger, FakePayments  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings(
        VERIFY_TOKEN="test-verify-token",
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
        WHATSAPP_FLOW_ID="flow-123",
        ORIGIN_PINCODE="110001",
        COD_FEE_PAISE=15000,
        PAYMENT_LINK_EXPIRY_SECONDS=1200,
    )


@pytest.fixture
def services(settings) -> Services:
    return Services(
        settings=settings,
        store=InMemorySessionStore(),
        messenger=FakeMessenger(),
        payments=FakePayments(),
        logistics=FakeLogistics(),
        ledger=FakeLedger(),
    )


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_services
    from app.main import app
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
