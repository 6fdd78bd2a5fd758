"""
Integration tests for the arbitrage ledger service over a real database.
"""
import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from src.core.exceptions import (
    AccountLocked, DuplicateEntity, InvalidStateTransition, InvalidTradeReport,
    LedgerError, NotFound, StorageFailure,
)
from src.core.models import ExecutionStatus, TradeOutcome, create_trade


AFTER = {"XLM": Decimal("102"), "USDC": Decimal("0")}
UNLINKED_WALLET = "GDQNY3PBOJOKYZSRMK2S7LHHGWZIUISD4QORETLMXEWXBI7KFZZMKTL3"


async def register_trader(ledger, wallet_address, now):
    account = await ledger.register_account("stellartrader", "trader@example.com", "correct-horse", now)
    return await ledger.add_wallet(account.id, wallet_address, now=now)


def unlinked_trade(pending_trade):
    trade = pending_trade.model_copy(deep=True)
    trade.tx_hash = "f" * 64
    trade.wallet.address = UNLINKED_WALLET
    return trade


def fail_mark_applied_once(monkeypatch, aggregator):
    mark_applied = aggregator.mark_applied
    calls = []

    def flaky(trade, now=None):
        calls.append(trade.tx_hash)
        if len(calls) == 1:
            raise StorageFailure("disk I/O error")
        return mark_applied(trade, now)

    monkeypatch.setattr(aggregator, "mark_applied", flaky)


# =============================================================================
# Trade Lifecycle
# =============================================================================

class TestTradeFlow:
    """Test recording and completing trades."""

    @pytest.mark.asyncio
    async def test_full_trade_flow(self, ledger, pending_trade, wallet_address, now):
        account = await register_trader(ledger, wallet_address, now)

        await ledger.record_trade(pending_trade)
        submitted = await ledger.submit_trade(pending_trade.tx_hash, now)
        assert submitted.execution.status == ExecutionStatus.SUBMITTED

        completed = await ledger.complete_trade(
            pending_trade.tx_hash, True, now=now + timedelta(seconds=5), balance_after=AFTER
        )
        assert completed.execution.status == ExecutionStatus.SUCCESS
        assert completed.results.actual_profit == Decimal("2")
        assert completed.stats_applied_at == now + timedelta(seconds=5)

        stats = (await ledger.get_account(account.id)).stats
        assert stats.total_trades == 1
        assert stats.successful_trades == 1
        assert stats.total_profit == Decimal("2")
        assert stats.total_volume == Decimal("100")
        assert stats.success_rate == Decimal("100")

        stored = await ledger.get_trade(pending_trade.tx_hash)
        assert stored.execution_time == 5.0
        assert stored.risk.slippage_exceeded is True

    @pytest.mark.asyncio
    async def test_recompletion_does_not_double_count(
        self, ledger, pending_trade, wallet_address, now
    ):
        account = await register_trader(ledger, wallet_address, now)
        await ledger.record_trade(pending_trade)
        await ledger.complete_trade(pending_trade.tx_hash, True, now=now, balance_after=AFTER)

        with pytest.raises(InvalidStateTransition):
            await ledger.complete_trade(pending_trade.tx_hash, False, now=now)

        assert (await ledger.get_account(account.id)).stats.total_trades == 1
        stored = await ledger.get_trade(pending_trade.tx_hash)
        assert stored.execution.status == ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_snapshot_with_foreign_asset_rejected(
        self, ledger, pending_trade, wallet_address, now
    ):
        account = await register_trader(ledger, wallet_address, now)
        await ledger.record_trade(pending_trade)

        with pytest.raises(InvalidTradeReport):
            await ledger.complete_trade(
                pending_trade.tx_hash,
                True,
                now=now,
                balance_after={"XLM": Decimal("102"), "BTC": Decimal("1")},
            )

        stored = await ledger.get_trade(pending_trade.tx_hash)
        assert stored.execution.status == ExecutionStatus.PENDING
        assert stored.wallet.balance_after is None
        assert (await ledger.get_fleet_stats()).total_trades == 1
        assert (await ledger.get_account(account.id)).stats.total_trades == 0

        completed = await ledger.complete_trade(
            pending_trade.tx_hash, True, now=now, balance_after=AFTER
        )
        assert completed.results.actual_profit == Decimal("2")

    @pytest.mark.asyncio
    async def test_timeout(self, ledger, pending_trade, wallet_address, now):
        account = await register_trader(ledger, wallet_address, now)
        await ledger.record_trade(pending_trade)

        timed_out = await ledger.timeout_trade(pending_trade.tx_hash, now)

        assert timed_out.execution.status == ExecutionStatus.TIMEOUT
        assert timed_out.results.actual_profit is None
        stats = (await ledger.get_account(account.id)).stats
        assert stats.total_trades == 1
        assert stats.successful_trades == 0
        assert stats.total_volume == Decimal("0")

    @pytest.mark.asyncio
    async def test_record_duplicate_trade(self, ledger, pending_trade):
        await ledger.record_trade(pending_trade)
        with pytest.raises(DuplicateEntity):
            await ledger.record_trade(pending_trade)

    @pytest.mark.asyncio
    async def test_record_terminal_trade_rejected(self, ledger, make_trade):
        trade = make_trade("t1", ["XLM", "USDC", "XLM"], Decimal("1"), Decimal("1"))
        with pytest.raises(LedgerError):
            await ledger.record_trade(trade)

    @pytest.mark.asyncio
    async def test_unknown_trade(self, ledger, now):
        with pytest.raises(NotFound):
            await ledger.get_trade("missing")
        with pytest.raises(NotFound):
            await ledger.complete_trade("missing", True, now=now)


# =============================================================================
# Stats Reconciliation
# =============================================================================

class TestStatsReconciliation:
    """Test exactly-once stats application."""

    @pytest.mark.asyncio
    async def test_trade_without_account_left_unapplied(self, ledger, pending_trade, now):
        await ledger.record_trade(pending_trade)
        completed = await ledger.complete_trade(
            pending_trade.tx_hash, True, now=now, balance_after=AFTER
        )
        assert completed.stats_applied_at is None

    @pytest.mark.asyncio
    async def test_reconcile_applies_once(self, ledger, pending_trade, wallet_address, now):
        await ledger.record_trade(pending_trade)
        await ledger.complete_trade(pending_trade.tx_hash, True, now=now, balance_after=AFTER)
        account = await register_trader(ledger, wallet_address, now)

        assert await ledger.reconcile_stats(now) == 1
        assert await ledger.reconcile_stats(now) == 0

        stats = (await ledger.get_account(account.id)).stats
        assert stats.total_trades == 1
        assert stats.total_profit == Decimal("2")

    @pytest.mark.asyncio
    async def test_reconcile_skips_unowned(self, ledger, pending_trade, now):
        await ledger.record_trade(pending_trade)
        await ledger.complete_trade(pending_trade.tx_hash, False, now=now)
        assert await ledger.reconcile_stats(now) == 0

    @pytest.mark.asyncio
    async def test_apply_outcome_for_trade_once(
        self, ledger, pending_trade, wallet_address, now
    ):
        account = await register_trader(ledger, wallet_address, now)
        trade = unlinked_trade(pending_trade)
        await ledger.record_trade(trade)
        await ledger.complete_trade(trade.tx_hash, True, now=now)

        outcome = TradeOutcome(
            success=True, profit=Decimal("3"), volume=Decimal("100"), trade_id=trade.tx_hash
        )
        stats = await ledger.apply_trade_outcome(account.id, outcome, now)
        assert stats.total_trades == 1
        assert stats.average_profit == Decimal("3")

        with pytest.raises(InvalidStateTransition):
            await ledger.apply_trade_outcome(account.id, outcome, now)

        assert (await ledger.get_account(account.id)).stats.total_trades == 1
        assert (await ledger.get_trade(trade.tx_hash)).stats_applied_at == now

    @pytest.mark.asyncio
    async def test_apply_outcome_without_trade(self, ledger, wallet_address, now):
        account = await register_trader(ledger, wallet_address, now)
        outcome = TradeOutcome(success=False, volume=Decimal("10"))

        await ledger.apply_trade_outcome(account.id, outcome, now)
        stats = await ledger.apply_trade_outcome(account.id, outcome, now)

        assert stats.total_trades == 2
        assert stats.success_rate == Decimal("0")

    @pytest.mark.asyncio
    async def test_reconcile_after_interrupted_completion(
        self, ledger, aggregator, monkeypatch, pending_trade, wallet_address, now
    ):
        account = await register_trader(ledger, wallet_address, now)
        await ledger.record_trade(pending_trade)
        fail_mark_applied_once(monkeypatch, aggregator)

        with pytest.raises(StorageFailure):
            await ledger.complete_trade(
                pending_trade.tx_hash, True, now=now, balance_after=AFTER
            )

        stored = await ledger.get_trade(pending_trade.tx_hash)
        assert stored.execution.status == ExecutionStatus.SUCCESS
        assert stored.stats_applied_at is None
        assert (await ledger.get_account(account.id)).stats.total_trades == 1

        assert await ledger.reconcile_stats(now + timedelta(minutes=1)) == 1
        assert await ledger.reconcile_stats(now + timedelta(minutes=2)) == 0

        stats = (await ledger.get_account(account.id)).stats
        assert stats.total_trades == 1
        assert stats.total_profit == Decimal("2")
        assert stats.applied_trade_ids == [pending_trade.tx_hash]
        stored = await ledger.get_trade(pending_trade.tx_hash)
        assert stored.stats_applied_at == now + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_retry_after_interrupted_outcome(
        self, ledger, aggregator, monkeypatch, pending_trade, wallet_address, now
    ):
        account = await register_trader(ledger, wallet_address, now)
        trade = unlinked_trade(pending_trade)
        await ledger.record_trade(trade)
        await ledger.complete_trade(trade.tx_hash, True, now=now)
        fail_mark_applied_once(monkeypatch, aggregator)

        outcome = TradeOutcome(
            success=True, profit=Decimal("3"), volume=Decimal("100"), trade_id=trade.tx_hash
        )
        with pytest.raises(StorageFailure):
            await ledger.apply_trade_outcome(account.id, outcome, now)

        stats = await ledger.apply_trade_outcome(account.id, outcome, now)

        assert stats.total_trades == 1
        assert stats.total_profit == Decimal("3")
        assert (await ledger.get_trade(trade.tx_hash)).stats_applied_at == now

    @pytest.mark.asyncio
    async def test_concurrent_outcomes_all_counted(self, ledger, wallet_address, now):
        account = await register_trader(ledger, wallet_address, now)
        outcome = TradeOutcome(success=False, volume=Decimal("10"))

        await asyncio.gather(
            *(ledger.apply_trade_outcome(account.id, outcome, now) for _ in range(3))
        )

        stats = (await ledger.get_account(account.id)).stats
        assert stats.total_trades == 3
        assert stats.total_volume == Decimal("30")

    @pytest.mark.asyncio
    async def test_apply_outcome_unknown_account(self, ledger, now):
        with pytest.raises(NotFound):
            await ledger.apply_trade_outcome("missing", TradeOutcome(success=True), now)


# =============================================================================
# Accounts and Authentication
# =============================================================================

class TestAccounts:
    """Test registration, lookup and credentials."""

    @pytest.mark.asyncio
    async def test_register_hashes_password(self, ledger, now):
        account = await ledger.register_account("alice", "Alice@Example.com", "s3cret!", now)

        assert account.password_hash == "plain$s3cret!"
        assert account.email == "alice@example.com"
        assert account.stats.joined_at == now

    @pytest.mark.asyncio
    async def test_register_duplicate(self, ledger, now):
        await ledger.register_account("alice", "alice@example.com", "s3cret!", now)

        with pytest.raises(DuplicateEntity):
            await ledger.register_account("alice", "other@example.com", "s3cret!", now)
        with pytest.raises(DuplicateEntity):
            await ledger.register_account("alice2", "ALICE@example.com", "s3cret!", now)

    @pytest.mark.asyncio
    async def test_register_short_password(self, ledger, now):
        with pytest.raises(ValueError):
            await ledger.register_account("alice", "alice@example.com", "abc", now)

    @pytest.mark.asyncio
    async def test_find_account(self, ledger, wallet_address, now):
        account = await register_trader(ledger, wallet_address, now)
        issued = await ledger.issue_api_key(account.id, now)

        for identifier in (
            "stellartrader",
            "Trader@Example.com",
            wallet_address,
            issued.api_access.api_key,
        ):
            assert (await ledger.find_account(identifier)).id == account.id

        await ledger.revoke_api_key(account.id, now)
        with pytest.raises(NotFound):
            await ledger.find_account(issued.api_access.api_key)

    @pytest.mark.asyncio
    async def test_remove_wallet(self, ledger, wallet_address, now):
        account = await register_trader(ledger, wallet_address, now)
        updated = await ledger.remove_wallet(account.id, wallet_address, now)

        assert updated.wallet_count == 0
        with pytest.raises(NotFound):
            await ledger.find_account(wallet_address)


class TestAuthentication:
    """Test login tracking through the database."""

    @pytest.mark.asyncio
    async def test_login_success(self, ledger, now):
        await ledger.register_account("alice", "alice@example.com", "s3cret!", now)
        result = await ledger.authenticate("alice@example.com", "s3cret!", now, "10.0.0.1")

        assert result.success is True
        account = await ledger.find_account("alice")
        assert account.security.last_login_ip == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_lockout_and_expiry(self, ledger, hasher, now):
        account = await ledger.register_account("alice", "alice@example.com", "s3cret!", now)

        for _ in range(5):
            result = await ledger.authenticate("alice", "wrong", now)
        assert result.locked is True
        assert result.lock_until == now + timedelta(hours=2)
        assert hasher.verify_calls == 5

        with pytest.raises(AccountLocked):
            await ledger.authenticate("alice", "s3cret!", now + timedelta(hours=1))
        assert hasher.verify_calls == 5

        result = await ledger.authenticate("alice", "s3cret!", now + timedelta(hours=2, seconds=1))
        assert result.success is True
        stored = await ledger.get_account(account.id)
        assert stored.security.login_attempts == 0
        assert stored.security.lock_until is None

    @pytest.mark.asyncio
    async def test_record_login_attempt_while_locked(self, ledger, now):
        account = await ledger.register_account("alice", "alice@example.com", "s3cret!", now)
        for _ in range(5):
            await ledger.record_login_attempt(account.id, False, now)

        result = await ledger.record_login_attempt(account.id, True, now + timedelta(minutes=1))

        assert result.success is False
        assert result.locked is True
        assert (await ledger.get_account(account.id)).security.login_attempts == 5

    @pytest.mark.asyncio
    async def test_lock_rechecked_at_write(self, ledger, test_database, monkeypatch, now):
        snapshot = await ledger.register_account("alice", "alice@example.com", "s3cret!", now)
        for _ in range(5):
            await ledger.record_login_attempt(snapshot.id, False, now)

        async def stale_lookup(identifier):
            return snapshot

        monkeypatch.setattr(test_database, "find_account_by_username", stale_lookup)

        with pytest.raises(AccountLocked):
            await ledger.authenticate("alice", "s3cret!", now + timedelta(minutes=1))

        stored = await ledger.get_account(snapshot.id)
        assert stored.security.login_attempts == 5
        assert stored.security.last_login_at is None

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger, now):
        with pytest.raises(NotFound):
            await ledger.authenticate("nobody", "pw", now)


# =============================================================================
# Reporting
# =============================================================================

class TestReporting:
    """Test fleet reports over stored trades."""

    @pytest.fixture
    def trades(self, make_trade, now):
        return [
            make_trade("a", ["XLM", "USDC", "BTC", "XLM"], Decimal("10"), Decimal("5"),
                       profit_percent=Decimal("4"), created_at=now - timedelta(hours=30)),
            make_trade("b", ["XLM", "USDC", "XLM"], Decimal("2"), Decimal("2"),
                       profit_percent=Decimal("1"), created_at=now - timedelta(hours=2)),
            make_trade("c", ["XLM", "ETH", "XLM"], Decimal("-1"), Decimal("-1"),
                       success=False, profit_percent=Decimal("0.5"),
                       created_at=now - timedelta(minutes=10)),
        ]

    @pytest.mark.asyncio
    async def test_fleet_stats(self, ledger, test_database, trades):
        for trade in trades:
            await test_database.save_trade(trade)

        stats = await ledger.get_fleet_stats()
        assert stats.total_trades == 3
        assert stats.successful_trades == 2
        assert stats.total_profit == Decimal("12")

    @pytest.mark.asyncio
    async def test_top_assets(self, ledger, test_database, trades):
        for trade in trades:
            await test_database.save_trade(trade)

        ranked = await ledger.get_top_assets(limit=2)
        assert [a.asset for a in ranked] == ["USDC", "XLM"]
        assert ranked[0].total_profit == Decimal("12")
        assert ranked[0].trade_count == 2

    @pytest.mark.asyncio
    async def test_recent_and_profit_range(self, ledger, test_database, trades, now):
        for trade in trades:
            await test_database.save_trade(trade)

        recent = await ledger.get_recent_trades(hours=24, now=now)
        assert [t.tx_hash for t in recent] == ["c", "b"]

        in_range = await ledger.get_trades_in_profit_range(Decimal("0.5"), Decimal("1"))
        assert [t.tx_hash for t in in_range] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_account_fleet_stats(self, ledger, pending_trade, wallet_address, now):
        await register_trader(ledger, wallet_address, now)
        await ledger.register_account("alice", "alice@example.com", "s3cret!", now)
        await ledger.record_trade(pending_trade)
        await ledger.complete_trade(pending_trade.tx_hash, True, now=now, balance_after=AFTER)

        stats = await ledger.get_account_fleet_stats()
        assert stats.total_accounts == 2
        assert stats.active_accounts == 2
        assert stats.total_trades == 1
        assert stats.total_profit == Decimal("2")
        assert stats.average_success_rate == Decimal("50")
