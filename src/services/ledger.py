"""Arbitrage ledger service.

Composes the trade lifecycle, account security, stats rollup and fleet
reporting over the database. Each trade or account change is a single
atomic read-modify-write. A trade completion, the owner's stats update and
the trade's ``stats_applied_at`` stamp are separate writes. The stats update
records the trade id on the account in the same write, so replaying it is a
no-op; ``reconcile_stats`` uses the missing stamp to find trades to replay.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from src.accounts.credentials import ApiKeyIssuer, BcryptPasswordHasher, PasswordHasher
from src.accounts.security import AccountSecurityGuard
from src.accounts.stats import AccountStatsAggregator, outcome_from_trade
from src.accounts.wallets import link_wallet, unlink_wallet
from src.core.config import SecurityConfig, security_config
from src.core.exceptions import AccountLocked, LedgerError, NotFound
from src.core.models import (
    AccountFleetStats, AccountStats, AssetPerformance, FleetStats, LoginResult,
    Trade, TradeOutcome, UserAccount,
)
from src.reporting.fleet import FleetStatsReporter
from src.storage.database import Database
from src.trades.lifecycle import TradeLifecycle

logger = structlog.get_logger(__name__)


class ArbitrageLedger:
    """
    Entry point for recording trade outcomes and account activity.

    Args:
        database: Initialized storage backend
        hasher: Password hasher (bcrypt by default)
        lifecycle: Trade state machine
        guard: Login lockout rules
        aggregator: Account stats rollup
        api_keys: API credential issuer
        config: Security settings
    """

    def __init__(
        self,
        database: Database,
        hasher: Optional[PasswordHasher] = None,
        lifecycle: Optional[TradeLifecycle] = None,
        guard: Optional[AccountSecurityGuard] = None,
        aggregator: Optional[AccountStatsAggregator] = None,
        api_keys: Optional[ApiKeyIssuer] = None,
        config: Optional[SecurityConfig] = None,
    ):
        self.database = database
        self.config = config or security_config
        self.hasher = hasher or BcryptPasswordHasher(self.config.bcrypt_rounds)
        self.lifecycle = lifecycle or TradeLifecycle()
        self.guard = guard or AccountSecurityGuard(self.config)
        self.aggregator = aggregator or AccountStatsAggregator()
        self.api_keys = api_keys or ApiKeyIssuer(config=self.config)
        self.reporter = FleetStatsReporter(database)

    # =========================================================================
    # Trades
    # =========================================================================

    async def record_trade(self, trade: Trade) -> Trade:
        """Store a newly submitted trade (pending or submitted)."""
        if trade.is_terminal:
            raise LedgerError(f"Trade {trade.tx_hash} must be recorded before completion")
        await self.database.create_trade(trade)
        logger.info(
            "trade.recorded",
            tx_hash=trade.tx_hash,
            loop=trade.opportunity.loop,
            expected_profit=str(trade.opportunity.expected_profit),
        )
        return trade

    async def submit_trade(self, tx_hash: str, now: Optional[datetime] = None) -> Trade:
        return await self.database.update_trade(
            tx_hash, lambda trade: self.lifecycle.mark_submitted(trade, now)
        )

    async def complete_trade(
        self,
        tx_hash: str,
        success: bool,
        final_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
        balance_after: Optional[Dict[str, Decimal]] = None,
        gas_used: Optional[Decimal] = None,
        gas_price: Optional[Decimal] = None,
        total_fees: Optional[Decimal] = None,
    ) -> Trade:
        """Finalize a trade and roll its outcome into the owner's stats.

        Raises:
            NotFound: Unknown tx hash
            InvalidStateTransition: Trade already terminal
            InvalidTradeReport: balance_after names assets outside the loop
        """
        now = now or datetime.utcnow()
        trade = await self.database.update_trade(
            tx_hash,
            lambda current: self.lifecycle.complete(
                current,
                success,
                final_amount,
                now=now,
                balance_after=balance_after,
                gas_used=gas_used,
                gas_price=gas_price,
                total_fees=total_fees,
            ),
        )
        return await self._roll_into_stats(trade, now)

    async def timeout_trade(self, tx_hash: str, now: Optional[datetime] = None) -> Trade:
        """Finalize a trade whose confirmation deadline passed."""
        now = now or datetime.utcnow()
        trade = await self.database.update_trade(
            tx_hash, lambda current: self.lifecycle.mark_timeout(current, now)
        )
        return await self._roll_into_stats(trade, now)

    async def get_trade(self, tx_hash: str) -> Trade:
        trade = await self.database.get_trade(tx_hash)
        if trade is None:
            raise NotFound("trade", tx_hash)
        return trade

    async def reconcile_stats(self, now: Optional[datetime] = None) -> int:
        """Apply every terminal trade whose outcome never reached account stats.

        Returns:
            Number of trades applied
        """
        now = now or datetime.utcnow()
        applied = 0
        for trade in await self.database.get_unapplied_terminal_trades():
            updated = await self._roll_into_stats(trade, now)
            if updated.stats_applied_at is not None:
                applied += 1
        logger.info("ledger.stats_reconciled", applied=applied)
        return applied

    async def _roll_into_stats(self, trade: Trade, now: datetime) -> Trade:
        account = await self.database.find_account_by_wallet(trade.wallet.address)
        if account is None:
            logger.warning(
                "ledger.no_account_for_wallet",
                tx_hash=trade.tx_hash,
                address=trade.wallet.address,
            )
            return trade

        self.aggregator.ensure_unapplied(trade)
        outcome = outcome_from_trade(trade)
        await self.database.update_account(
            account.id,
            lambda current: self.aggregator.apply_trade_outcome(current, outcome, now),
        )
        return await self.database.update_trade(
            trade.tx_hash, lambda current: self.aggregator.mark_applied(current, now)
        )

    # =========================================================================
    # Accounts
    # =========================================================================

    async def register_account(
        self, username: str, email: str, password: str, now: Optional[datetime] = None
    ) -> UserAccount:
        """Create an account with a hashed password.

        Raises:
            ValueError: Password too short or invalid username/email
            DuplicateEntity: Username or email taken
        """
        if len(password) < self.config.min_password_length:
            raise ValueError(
                f"Password must be at least {self.config.min_password_length} characters"
            )
        now = now or datetime.utcnow()
        account = UserAccount(
            username=username,
            email=email,
            password_hash=self.hasher.hash(password),
            created_at=now,
            updated_at=now,
        )
        account.security.password_changed_at = now
        account.stats.joined_at = now
        account.api_access.rate_limit = self.config.api_rate_limit

        await self.database.create_account(account)
        logger.info("account.registered", account_id=account.id, username=account.username)
        return account

    async def get_account(self, account_id: str) -> UserAccount:
        account = await self.database.get_account(account_id)
        if account is None:
            raise NotFound("account", account_id)
        return account

    async def find_account(self, identifier: str) -> UserAccount:
        """Look up an account by username, email, wallet address or API key."""
        lookups = (
            self.database.find_account_by_username,
            self.database.find_account_by_email,
            self.database.find_account_by_wallet,
            self.database.find_account_by_api_key,
        )
        for lookup in lookups:
            account = await lookup(identifier)
            if account is not None:
                return account
        raise NotFound("account", identifier)

    async def record_login_attempt(
        self,
        account_id: str,
        success: bool,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Record an externally verified login attempt."""
        return await self._record_attempt(
            account_id, success, now or datetime.utcnow(), ip_address, reject_locked=False
        )

    async def _record_attempt(
        self,
        account_id: str,
        success: bool,
        now: datetime,
        ip_address: Optional[str],
        reject_locked: bool,
    ) -> LoginResult:
        outcome: Dict[str, LoginResult] = {}

        def apply(current: UserAccount) -> UserAccount:
            # Lock state is re-read inside the write; an earlier snapshot may be stale
            if reject_locked and self.guard.is_locked(current, now):
                logger.warning("account.login_rejected_locked", account_id=current.id)
                raise AccountLocked(current.id, current.security.lock_until)
            updated, result = self.guard.record_login_attempt(current, success, now, ip_address)
            outcome["result"] = result
            return updated

        await self.database.update_account(account_id, apply)
        return outcome["result"]

    async def authenticate(
        self,
        identifier: str,
        password: str,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Verify credentials for a username or email.

        The password is verified against the account as last read. If the
        account was locked by another attempt before this one is written,
        ``AccountLocked`` is raised and the attempt is not recorded.

        Raises:
            NotFound: Unknown account
            AccountLocked: Account locked
        """
        now = now or datetime.utcnow()
        account = await self.database.find_account_by_username(identifier)
        if account is None:
            account = await self.database.find_account_by_email(identifier)
        if account is None:
            raise NotFound("account", identifier)

        if self.guard.is_locked(account, now):
            logger.warning("account.login_rejected_locked", account_id=account.id)
            raise AccountLocked(account.id, account.security.lock_until)

        verified = self.hasher.verify(password, account.password_hash)
        result = await self._record_attempt(
            account.id, verified, now, ip_address, reject_locked=True
        )
        logger.info(
            "account.login",
            account_id=account.id,
            success=result.success,
            attempts=result.login_attempts,
        )
        return result

    async def apply_trade_outcome(
        self,
        account_id: str,
        outcome: TradeOutcome,
        now: Optional[datetime] = None,
    ) -> AccountStats:
        """Roll an outcome into an account's stats.

        When ``outcome.trade_id`` names a recorded trade, the trade is marked
        applied and a second application is rejected.

        Raises:
            NotFound: Unknown account or trade
            InvalidStateTransition: Trade already applied
        """
        now = now or datetime.utcnow()
        if outcome.trade_id is not None:
            self.aggregator.ensure_unapplied(await self.get_trade(outcome.trade_id))

        account = await self.database.update_account(
            account_id,
            lambda current: self.aggregator.apply_trade_outcome(current, outcome, now),
        )
        if outcome.trade_id is not None:
            await self.database.update_trade(
                outcome.trade_id, lambda current: self.aggregator.mark_applied(current, now)
            )
        return account.stats

    async def add_wallet(
        self,
        account_id: str,
        address: str,
        network: str = "testnet",
        now: Optional[datetime] = None,
    ) -> UserAccount:
        return await self.database.update_account(
            account_id, lambda current: link_wallet(current, address, network, now)
        )

    async def remove_wallet(
        self, account_id: str, address: str, now: Optional[datetime] = None
    ) -> UserAccount:
        return await self.database.update_account(
            account_id, lambda current: unlink_wallet(current, address, now)
        )

    async def issue_api_key(self, account_id: str, now: Optional[datetime] = None) -> UserAccount:
        """Issue new API credentials; the returned account carries the secret."""
        return await self.database.update_account(
            account_id, lambda current: self.api_keys.issue(current, now)
        )

    async def revoke_api_key(self, account_id: str, now: Optional[datetime] = None) -> UserAccount:
        return await self.database.update_account(
            account_id, lambda current: self.api_keys.revoke(current, now)
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    async def get_fleet_stats(self) -> FleetStats:
        return await self.reporter.fleet_stats()

    async def get_top_assets(self, limit: int = 10) -> List[AssetPerformance]:
        return await self.reporter.top_assets(limit)

    async def get_recent_trades(
        self, hours: float = 24, limit: int = 100, now: Optional[datetime] = None
    ) -> List[Trade]:
        return await self.reporter.recent_trades(hours, limit, now)

    async def get_trades_in_profit_range(
        self, min_profit: Decimal, max_profit: Decimal
    ) -> List[Trade]:
        return await self.reporter.trades_in_profit_range(min_profit, max_profit)

    async def get_account_fleet_stats(self) -> AccountFleetStats:
        return await self.reporter.account_stats()
