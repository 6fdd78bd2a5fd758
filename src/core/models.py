"""Data models for the Stellar arbitrage ledger.

This module defines the records tracked by the ledger:
- Trade: one arbitrage execution attempt and its outcome
- UserAccount: a trading participant with stats, security and API state
- Report models returned by the fleet reporter

All monetary values use Decimal for precision.
All timestamps are naive UTC datetime objects.
"""

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.core.config import RiskDefaultsConfig, risk_config


# Asset code with optional issuer, e.g. "XLM", "USDC", "USDC:GA5Z...".
ASSET_ID_PATTERN = re.compile(r"^[A-Z0-9]{1,12}(:[A-Z0-9]{56})?$")


# =============================================================================
# Enums
# =============================================================================

class ExecutionStatus(str, Enum):
    """Trade execution lifecycle status."""
    PENDING = "pending"           # Recorded, not yet sent to the network
    SUBMITTED = "submitted"       # Transaction sent, awaiting confirmation
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"           # No confirmation before the deadline


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT}
)


class ResultFlag(str, Enum):
    """Conditions that left a result field unmeasured."""
    PROFIT_UNMEASURABLE = "profit_unmeasurable"       # Balance snapshots missing
    ZERO_BASE_BALANCE = "zero_base_balance"           # Profit % divides by zero
    SLIPPAGE_UNMEASURABLE = "slippage_unmeasurable"   # Expected/actual profit missing
    NO_SLIPPAGE_REFERENCE = "no_slippage_reference"   # Expected profit is zero


class RiskTolerance(str, Enum):
    """User risk tolerance."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AccountStatus(str, Enum):
    """Account standing."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


def validate_asset_id(asset: str) -> str:
    """Validate a Stellar asset identifier and return it unchanged."""
    if not isinstance(asset, str) or not ASSET_ID_PATTERN.match(asset):
        raise ValueError(f"Invalid asset identifier: {asset!r}")
    return asset


# =============================================================================
# Trade Models
# =============================================================================

class Opportunity(BaseModel):
    """Arbitrage cycle as proposed by the path-discovery engine.

    Attributes:
        loop: Ordered asset identifiers; loop[0] is the anchor asset
        profit_percent: Predicted profit percentage
        max_executable_amount: Largest amount the order books can absorb
        expected_profit: Predicted profit in units of the anchor asset
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    loop: List[str] = Field(..., min_length=2, description="Asset cycle")
    profit_percent: Decimal = Field(..., description="Predicted profit %")
    max_executable_amount: Decimal = Field(..., ge=0, description="Max executable amount")
    expected_profit: Decimal = Field(..., description="Predicted profit")

    @field_validator("loop")
    @classmethod
    def validate_loop(cls, v: List[str]) -> List[str]:
        """Every loop entry must be a known asset identifier."""
        return [validate_asset_id(asset) for asset in v]

    @property
    def anchor_asset(self) -> str:
        """Asset the cycle starts and is measured in."""
        return self.loop[0]


class Execution(BaseModel):
    """On-chain execution details."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    gas_used: Optional[Decimal] = Field(default=None)
    gas_price: Optional[Decimal] = Field(default=None)
    total_fees: Optional[Decimal] = Field(default=None)


class TradeResults(BaseModel):
    """Measured outcome, populated once when the trade reaches a terminal state."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    actual_profit: Optional[Decimal] = Field(default=None)
    actual_profit_percent: Optional[Decimal] = Field(default=None)
    slippage: Optional[Decimal] = Field(default=None)
    final_amount: Optional[Decimal] = Field(default=None)
    success: bool = Field(default=False)
    flags: List[ResultFlag] = Field(default_factory=list)

    def flag(self, flag: ResultFlag) -> None:
        if flag not in self.flags:
            self.flags.append(flag)


class TradeWallet(BaseModel):
    """Wallet that executed the trade, with balance snapshots keyed by asset."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    address: str = Field(..., min_length=1)
    balance_before: Optional[Dict[str, Decimal]] = Field(default=None)
    balance_after: Optional[Dict[str, Decimal]] = Field(default=None)


class TradeRisk(BaseModel):
    """Risk limits captured for this trade."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    max_slippage: Decimal = Field(..., ge=0)
    min_profit_threshold: Decimal = Field(..., ge=0)
    slippage_exceeded: bool = Field(default=False)

    @classmethod
    def from_config(cls, config: Optional[RiskDefaultsConfig] = None) -> "TradeRisk":
        config = config or risk_config
        return cls(
            max_slippage=config.max_slippage,
            min_profit_threshold=config.min_profit_threshold,
        )


class TradeMetadata(BaseModel):
    """Request context captured when the trade was recorded."""

    network: str = Field(default="testnet")
    contract_address: Optional[str] = Field(default=None)
    analysis_time_ms: Optional[float] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    ip_address: Optional[str] = Field(default=None)


class Trade(BaseModel):
    """One arbitrage execution attempt.

    ``results`` is present exactly when the execution status is terminal
    and ``completed_at`` is set.

    Attributes:
        tx_hash: Ledger transaction hash
        opportunity: The cycle that was executed
        wallet: Executing wallet and balance snapshots
        risk: Risk limits for the trade
        execution: Execution status and costs
        results: Measured outcome (None until terminal)
        metadata: Request context
        created_at: Record creation time
        updated_at: Last update time
        stats_applied_at: When the outcome was rolled into account stats
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    tx_hash: str = Field(..., min_length=1, description="Transaction hash")
    opportunity: Opportunity
    wallet: TradeWallet
    risk: TradeRisk
    execution: Execution = Field(default_factory=Execution)
    results: Optional[TradeResults] = Field(default=None)
    metadata: TradeMetadata = Field(default_factory=TradeMetadata)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    stats_applied_at: Optional[datetime] = Field(default=None)

    @model_validator(mode="after")
    def check_consistency(self) -> "Trade":
        """Balance keys must belong to the loop; results only on terminal trades."""
        loop_assets = set(self.opportunity.loop)
        for snapshot in (self.wallet.balance_before, self.wallet.balance_after):
            if snapshot:
                unknown = set(snapshot) - loop_assets
                if unknown:
                    raise ValueError(f"Balance assets not in loop: {sorted(unknown)}")

        terminal = self.execution.status in TERMINAL_STATUSES
        if terminal and (self.results is None or self.execution.completed_at is None):
            raise ValueError("Terminal trade requires results and completed_at")
        if not terminal and self.results is not None:
            raise ValueError(f"Trade in status {self.execution.status.value} cannot carry results")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.execution.status in TERMINAL_STATUSES

    @property
    def execution_time(self) -> Optional[float]:
        """Seconds from submission to completion (None if not completed)."""
        if self.execution.submitted_at and self.execution.completed_at:
            return (self.execution.completed_at - self.execution.submitted_at).total_seconds()
        return None

    @property
    def is_profitable(self) -> bool:
        """True if the measured profit is positive."""
        if self.results is None or self.results.actual_profit is None:
            return False
        return self.results.actual_profit > 0

    @property
    def profit_ratio(self) -> Optional[Decimal]:
        """Actual over expected profit."""
        if self.results is None or self.results.actual_profit is None:
            return None
        if not self.opportunity.expected_profit:
            return None
        return self.results.actual_profit / self.opportunity.expected_profit


# =============================================================================
# Account Models
# =============================================================================

class WalletLink(BaseModel):
    """A Stellar wallet connected to an account."""

    address: str = Field(..., min_length=1)
    network: str = Field(default="testnet")
    is_active: bool = Field(default=True)
    connected_at: datetime = Field(default_factory=datetime.utcnow)
    last_used: datetime = Field(default_factory=datetime.utcnow)


class NotificationPreferences(BaseModel):
    email: bool = True
    push: bool = False
    trades: bool = True
    opportunities: bool = False


class TradingPreferences(BaseModel):
    """User trading preferences."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    risk_tolerance: RiskTolerance = Field(default=RiskTolerance.MEDIUM)
    max_slippage: Decimal = Field(default_factory=lambda: risk_config.max_slippage, ge=0)
    min_profit_threshold: Decimal = Field(
        default_factory=lambda: risk_config.min_profit_threshold, ge=0
    )
    max_trade_amount: Decimal = Field(default=Decimal("1000"), gt=0, description="In XLM")
    auto_execute: bool = Field(default=False)
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)


class AccountStats(BaseModel):
    """Running trading statistics.

    ``average_profit`` and ``success_rate`` are recomputed on every update
    and are not set independently. ``applied_trade_ids`` lists the trades
    already counted, written in the same update as the totals.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_trades: int = Field(default=0, ge=0)
    successful_trades: int = Field(default=0, ge=0)
    total_profit: Decimal = Field(default=Decimal("0"))
    total_volume: Decimal = Field(default=Decimal("0"))
    average_profit: Decimal = Field(default=Decimal("0"))
    success_rate: Decimal = Field(default=Decimal("0"))
    last_trade_at: Optional[datetime] = Field(default=None)
    joined_at: datetime = Field(default_factory=datetime.utcnow)
    applied_trade_ids: List[str] = Field(default_factory=list)

    def has_applied(self, trade_id: Optional[str]) -> bool:
        return trade_id is not None and trade_id in self.applied_trade_ids


class AccountSecurity(BaseModel):
    """Login attempt counter and lockout state."""

    login_attempts: int = Field(default=0, ge=0)
    lock_until: Optional[datetime] = Field(default=None)
    last_login_at: Optional[datetime] = Field(default=None)
    last_login_ip: Optional[str] = Field(default=None)
    password_changed_at: datetime = Field(default_factory=datetime.utcnow)
    two_factor_enabled: bool = Field(default=False)


class ApiAccess(BaseModel):
    """Programmatic API credentials."""

    enabled: bool = Field(default=False)
    api_key: Optional[str] = Field(default=None)
    api_secret: Optional[str] = Field(default=None)
    rate_limit: int = Field(default=100, ge=0, description="Requests per minute")
    last_api_call: Optional[datetime] = Field(default=None)


class UserAccount(BaseModel):
    """A trading participant."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    username: str = Field(..., min_length=3, max_length=30)
    email: str = Field(..., min_length=3)
    password_hash: str = Field(..., min_length=1)

    id: str = Field(default_factory=lambda: str(uuid4()))
    wallets: List[WalletLink] = Field(default_factory=list)
    preferences: TradingPreferences = Field(default_factory=TradingPreferences)
    stats: AccountStats = Field(default_factory=AccountStats)
    security: AccountSecurity = Field(default_factory=AccountSecurity)
    api_access: ApiAccess = Field(default_factory=ApiAccess)
    status: AccountStatus = Field(default=AccountStatus.ACTIVE)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        """Emails are unique case-insensitively, so store them lowercase."""
        if isinstance(v, str):
            v = v.strip().lower()
            if "@" not in v:
                raise ValueError("Invalid email address")
        return v

    @field_validator("wallets")
    @classmethod
    def unique_wallets(cls, v: List[WalletLink]) -> List[WalletLink]:
        addresses = [w.address for w in v]
        if len(addresses) != len(set(addresses)):
            raise ValueError("Wallet addresses must be unique per account")
        return v

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """True while a lock is in place and has not expired."""
        now = now or datetime.utcnow()
        return self.security.lock_until is not None and self.security.lock_until > now

    @property
    def active_wallet(self) -> Optional[WalletLink]:
        return next((w for w in self.wallets if w.is_active), None)

    @property
    def wallet_count(self) -> int:
        return len(self.wallets)

    def public_dict(self) -> Dict[str, Any]:
        """JSON-safe view without the password hash or API secret."""
        data = self.model_dump(mode="json", exclude={"password_hash"})
        data["api_access"].pop("api_secret", None)
        data["is_locked"] = self.is_locked()
        data["wallet_count"] = self.wallet_count
        return data


# =============================================================================
# Outcome and Report Models
# =============================================================================

class TradeOutcome(BaseModel):
    """Outcome of one terminal trade as fed into account statistics."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    success: bool
    profit: Decimal = Field(default=Decimal("0"))
    volume: Decimal = Field(default=Decimal("0"), ge=0)
    trade_id: Optional[str] = Field(default=None)


class LoginResult(BaseModel):
    """Result of recording a login attempt."""

    success: bool
    locked: bool
    lock_until: Optional[datetime] = None
    login_attempts: int = 0


class FleetStats(BaseModel):
    """Totals across all trades."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_trades: int = 0
    successful_trades: int = 0
    total_profit: Decimal = Decimal("0")
    average_profit_percent: Optional[Decimal] = None
    average_execution_time: Optional[float] = None


class AssetPerformance(BaseModel):
    """Aggregated results of successful trades that touched an asset."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str
    trade_count: int
    average_profit_percent: Optional[Decimal] = None
    total_profit: Decimal = Decimal("0")


class AccountFleetStats(BaseModel):
    """Totals across all accounts."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_accounts: int = 0
    active_accounts: int = 0
    total_trades: int = 0
    total_profit: Decimal = Decimal("0")
    average_success_rate: Optional[Decimal] = None


# =============================================================================
# Utility Functions
# =============================================================================

def create_trade(
    tx_hash: str,
    loop: List[str],
    wallet_address: str,
    profit_percent: Decimal,
    expected_profit: Decimal,
    max_executable_amount: Decimal,
    balance_before: Optional[Dict[str, Decimal]] = None,
    risk_defaults: Optional[RiskDefaultsConfig] = None,
    **kwargs
) -> Trade:
    """Factory function to create a pending trade.

    Args:
        tx_hash: Ledger transaction hash
        loop: Asset cycle, anchor asset first
        wallet_address: Executing wallet
        profit_percent: Predicted profit %
        expected_profit: Predicted profit in the anchor asset
        max_executable_amount: Max executable amount
        balance_before: Balance snapshot taken before submission
        risk_defaults: Source of max slippage / min profit (global config if None)
        **kwargs: Additional Trade fields (metadata, created_at, ...)

    Returns:
        Trade in the pending state
    """
    return Trade(
        tx_hash=tx_hash,
        opportunity=Opportunity(
            loop=loop,
            profit_percent=profit_percent,
            max_executable_amount=max_executable_amount,
            expected_profit=expected_profit,
        ),
        wallet=TradeWallet(address=wallet_address, balance_before=balance_before),
        risk=TradeRisk.from_config(risk_defaults),
        **kwargs
    )
