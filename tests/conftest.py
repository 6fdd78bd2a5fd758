"""Pytest fixtures and utilities for the arbitrage ledger test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal

from src.core.config import RiskDefaultsConfig, SecurityConfig
from src.core.models import (
    Execution, ExecutionStatus, Opportunity, Trade, TradeResults, TradeRisk,
    TradeWallet, UserAccount, WalletLink, create_trade,
)
from src.accounts.security import AccountSecurityGuard
from src.accounts.stats import AccountStatsAggregator
from src.risk.evaluator import RiskEvaluator
from src.services.ledger import ArbitrageLedger
from src.storage.database import Database
from src.trades.lifecycle import TradeLifecycle


WALLET = "GBRPYHIL2CI3FNQ4BXLFMNDLFJUNPU2HY3ZMFSHONUCEOASW7QC7OX2H"


class PlainTextHasher:
    """Plain-text password hasher that counts verify calls."""

    def __init__(self):
        self.verify_calls = 0

    def hash(self, plaintext: str) -> str:
        return f"plain${plaintext}"

    def verify(self, plaintext: str, hashed: str) -> bool:
        self.verify_calls += 1
        return hashed == f"plain${plaintext}"


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def now():
    """Fixed clock for deterministic transitions."""
    return datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def risk_defaults():
    return RiskDefaultsConfig(
        max_slippage=Decimal("0.01"),
        min_profit_threshold=Decimal("0.001"),
    )


@pytest.fixture
def security_settings():
    return SecurityConfig(
        max_login_attempts=5,
        lock_duration_hours=2,
        bcrypt_rounds=4,
        api_key_bytes=32,
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def evaluator(risk_defaults):
    return RiskEvaluator(risk_defaults)


@pytest.fixture
def lifecycle(evaluator):
    return TradeLifecycle(evaluator)


@pytest.fixture
def guard(security_settings):
    return AccountSecurityGuard(security_settings)


@pytest.fixture
def aggregator():
    return AccountStatsAggregator()


@pytest.fixture
def hasher():
    return PlainTextHasher()


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def pending_trade(now, risk_defaults):
    """XLM -> USDC -> XLM cycle with 100 XLM before execution."""
    return create_trade(
        tx_hash="a1b2c3d4e5f60718293a4b5c6d7e8f90a1b2c3d4e5f60718293a4b5c6d7e8f90",
        loop=["XLM", "USDC", "XLM"],
        wallet_address=WALLET,
        profit_percent=Decimal("1.8"),
        expected_profit=Decimal("1.8"),
        max_executable_amount=Decimal("100"),
        balance_before={"XLM": Decimal("100"), "USDC": Decimal("0")},
        risk_defaults=risk_defaults,
        created_at=now - timedelta(seconds=10),
        execution=Execution(submitted_at=now - timedelta(seconds=10)),
    )


@pytest.fixture
def account(now):
    return UserAccount(
        username="stellartrader",
        email="Trader@Example.com",
        password_hash="plain$correct-horse",
        wallets=[WalletLink(address=WALLET, connected_at=now, last_used=now)],
        created_at=now,
        updated_at=now,
    )


def _make_completed_trade(
    tx_hash: str,
    loop,
    actual_profit: Decimal,
    actual_profit_percent: Decimal,
    success: bool = True,
    profit_percent: Decimal = Decimal("1"),
    created_at: datetime = None,
    execution_seconds: float = 5.0,
) -> Trade:
    """Build a terminal trade directly, bypassing the lifecycle."""
    created_at = created_at or datetime(2024, 3, 1, 12, 0, 0)
    return Trade(
        tx_hash=tx_hash,
        opportunity=Opportunity(
            loop=loop,
            profit_percent=profit_percent,
            max_executable_amount=Decimal("100"),
            expected_profit=actual_profit,
        ),
        wallet=TradeWallet(address=WALLET),
        risk=TradeRisk(max_slippage=Decimal("0.01"), min_profit_threshold=Decimal("0.001")),
        execution=Execution(
            status=ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILED,
            submitted_at=created_at,
            completed_at=created_at + timedelta(seconds=execution_seconds),
        ),
        results=TradeResults(
            actual_profit=actual_profit,
            actual_profit_percent=actual_profit_percent,
            success=success,
        ),
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture
def make_trade():
    """Factory for terminal trades."""
    return _make_completed_trade


@pytest.fixture
def wallet_address():
    return WALLET


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def ledger(test_database, hasher, lifecycle, guard, aggregator, security_settings):
    return ArbitrageLedger(
        test_database,
        hasher=hasher,
        lifecycle=lifecycle,
        guard=guard,
        aggregator=aggregator,
        config=security_settings,
    )
