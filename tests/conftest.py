"""
Pytest configuration and fixtures.
"""
import os
import tempfile
from typing import Any, AsyncGenerator, Callable, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool
from tenacity import wait_none

from myfamily_payments.config import Settings
from myfamily_payments.core.cascade import CascadePaymentEngine
from myfamily_payments.core.ledger import SQLLedgerStore
from myfamily_payments.database.connection import create_session_factory, init_db
from myfamily_payments.integrations.models import GatewayResult
from myfamily_payments.integrations.zcredit_client import ZCreditClient


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrency tests against a shared database file")
    config.addinivalue_line("markers", "integration: tests spanning several components")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        zcredit_terminal_number="0882016016",
        zcredit_password="Z0882016016",
        zcredit_api_url="https://zcredit.test/WebService/SecurePayment.asmx",
        zcredit_timeout_seconds=5.0,
        database_url="sqlite+aiosqlite:///:memory:",
        rollback_max_attempts=3,
        app_name="myfamily-payments-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def production_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"app_env": "production"})


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """SQLite file database, one connection per session, for concurrency tests."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()
    os.unlink(path)


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> SQLLedgerStore:
    return SQLLedgerStore(session_factory)


@pytest.fixture
def make_funded_family(ledger: SQLLedgerStore) -> Callable[..., Any]:
    """Create a family fund holding ``balance`` through a regular deposit."""

    async def _make(family_id: int = 1, balance: int = 0, user_id: int = 100) -> int:
        fund = await ledger.create_fund(family_id)
        if balance:
            await ledger.credit(
                fund_id=fund.id,
                amount=balance,
                user_id=user_id,
                description="Initial deposit",
            )
        return fund.id

    return _make


def approved_result(
    reference_number: str = "REF-123",
    masked_card: Optional[str] = "4580XXXXXXXX1234",
    card_brand: Optional[str] = "Visa",
) -> GatewayResult:
    return GatewayResult(
        approved=True,
        return_code=0,
        return_message="עסקה אושרה",
        reference_number=reference_number,
        masked_card=masked_card,
        card_brand=card_brand,
    )


def declined_result(message: str = "עסקה לא אושרה", return_code: int = 800) -> GatewayResult:
    return GatewayResult(approved=False, return_code=return_code, return_message=message)


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Gateway double that approves every charge."""
    gateway = AsyncMock(spec=ZCreditClient)
    gateway.charge.return_value = approved_result()
    return gateway


@pytest.fixture
def engine(
    ledger: SQLLedgerStore, mock_gateway: AsyncMock, test_settings: Settings
) -> CascadePaymentEngine:
    return CascadePaymentEngine(
        ledger=ledger,
        gateway=mock_gateway,
        settings=test_settings,
        rollback_wait=wait_none(),
    )


@pytest.fixture
def sample_card() -> dict[str, Any]:
    """Sample card details as posted by the web layer."""
    return {
        "card_number": "4580 0000 0000 1234",
        "exp_date": "1230",
        "cvv": "123",
        "holder_id": "000000018",
    }
