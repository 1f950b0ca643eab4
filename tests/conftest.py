"""Pytest configuration and fixtures."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test")
os.environ.setdefault("GOOGLE_API_KEY", "test-key")
os.environ.setdefault("OWNER_ID", "test-owner")

from perla.clients.base import CompletionResult, LLMClient  # noqa: E402
from perla.gateway import AssistantGateway  # noqa: E402
from perla.ledger import InMemoryLedgerStore, Ledger, LedgerSync  # noqa: E402
from perla.models import SaleRecord  # noqa: E402
from perla.session import SalesSession  # noqa: E402


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.post = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def cookie_sale():
    """A sale of 2 cookies at 3000 each."""
    return SaleRecord(
        id="sale-1700000000000-abc1234",
        product="cookies",
        amount=2,
        unit_price=3000,
        total_price=6000,
        date="2026-01-15",
        client="Cliente",
        payment_method="Efectivo",
    )


@pytest.fixture
def empanada_sale():
    return SaleRecord(
        id="sale-1700000000001-def5678",
        product="empanadas",
        amount=12,
        unit_price=1500,
        total_price=18000,
        date="2026-01-14",
        client="María",
        payment_method="Transferencia",
    )


@pytest.fixture
def mock_llm_client():
    """LLM client whose ``complete`` is an AsyncMock."""
    client = MagicMock(spec=LLMClient)
    client.provider = "openai"
    client.complete = AsyncMock(return_value=CompletionResult(content='{"message": "Hola"}'))
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_gateway():
    """Gateway double; set ``ask.return_value`` to an AssistantResponse."""
    gateway = MagicMock(spec=AssistantGateway)
    gateway.ask = AsyncMock()
    gateway.insights = AsyncMock(return_value="")
    gateway.close = AsyncMock()
    return gateway


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def make_session(mock_gateway, store):
    """Factory building a session over an in-memory ledger."""

    def _make(*records: SaleRecord, **kwargs) -> SalesSession:
        ledger = Ledger("test-owner", records)
        return SalesSession(
            mock_gateway,
            ledger,
            sync=LedgerSync(store, "test-owner"),
            timeout=kwargs.pop("timeout", 5.0),
            **kwargs,
        )

    return _make
