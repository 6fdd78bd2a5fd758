"""Read-only reporting across all trades and accounts.

The aggregation functions are pure and operate on lists of records;
``FleetStatsReporter`` fetches those lists from the database on demand.
Nothing here writes to storage.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog

from src.core.models import (
    AccountFleetStats, AccountStatus, AssetPerformance, FleetStats, Trade, UserAccount,
)
from src.storage.database import Database

logger = structlog.get_logger(__name__)


def _mean(values: List[Decimal]) -> Optional[Decimal]:
    if not values:
        return None
    return sum(values, Decimal("0")) / len(values)


def summarize_trades(trades: Iterable[Trade]) -> FleetStats:
    """Totals over a set of trades.

    Profit and profit percent are taken over successful trades only;
    execution time is averaged over every trade that has one.
    """
    total = 0
    successful = 0
    total_profit = Decimal("0")
    profit_percents: List[Decimal] = []
    execution_times: List[float] = []

    for trade in trades:
        total += 1
        if trade.execution_time is not None:
            execution_times.append(trade.execution_time)
        if trade.results is None or not trade.results.success:
            continue
        successful += 1
        if trade.results.actual_profit is not None:
            total_profit += trade.results.actual_profit
        if trade.results.actual_profit_percent is not None:
            profit_percents.append(trade.results.actual_profit_percent)

    return FleetStats(
        total_trades=total,
        successful_trades=successful,
        total_profit=total_profit,
        average_profit_percent=_mean(profit_percents),
        average_execution_time=(
            sum(execution_times) / len(execution_times) if execution_times else None
        ),
    )


def rank_assets(trades: Iterable[Trade], limit: int = 10) -> List[AssetPerformance]:
    """Per-asset performance of successful trades.

    A trade counts once toward every distinct asset in its loop, with its
    full profit credited to each.
    """
    counts: Dict[str, int] = {}
    profits: Dict[str, Decimal] = {}
    percents: Dict[str, List[Decimal]] = {}

    for trade in trades:
        if trade.results is None or not trade.results.success:
            continue
        profit = trade.results.actual_profit or Decimal("0")
        for asset in dict.fromkeys(trade.opportunity.loop):
            counts[asset] = counts.get(asset, 0) + 1
            profits[asset] = profits.get(asset, Decimal("0")) + profit
            if trade.results.actual_profit_percent is not None:
                percents.setdefault(asset, []).append(trade.results.actual_profit_percent)

    ranked = [
        AssetPerformance(
            asset=asset,
            trade_count=counts[asset],
            average_profit_percent=_mean(percents.get(asset, [])),
            total_profit=profits[asset],
        )
        for asset in counts
    ]
    ranked.sort(key=lambda a: (-a.total_profit, a.asset))
    return ranked[:limit]


def summarize_accounts(accounts: Iterable[UserAccount]) -> AccountFleetStats:
    """Totals over a set of accounts."""
    total = 0
    active = 0
    trades = 0
    profit = Decimal("0")
    rates: List[Decimal] = []

    for account in accounts:
        total += 1
        if account.status == AccountStatus.ACTIVE:
            active += 1
        trades += account.stats.total_trades
        profit += account.stats.total_profit
        rates.append(account.stats.success_rate)

    return AccountFleetStats(
        total_accounts=total,
        active_accounts=active,
        total_trades=trades,
        total_profit=profit,
        average_success_rate=_mean(rates),
    )


class FleetStatsReporter:
    """Fleet-wide reports backed by the database."""

    def __init__(self, database: Database):
        self.database = database

    async def fleet_stats(self) -> FleetStats:
        stats = summarize_trades(await self.database.get_all_trades())
        logger.debug("report.fleet_stats", total_trades=stats.total_trades)
        return stats

    async def top_assets(self, limit: int = 10) -> List[AssetPerformance]:
        trades = await self.database.get_successful_trades(limit=None)
        return rank_assets(trades, limit)

    async def recent_trades(
        self, hours: float = 24, limit: int = 100, now: Optional[datetime] = None
    ) -> List[Trade]:
        since = (now or datetime.utcnow()) - timedelta(hours=hours)
        return await self.database.get_trades_since(since, limit)

    async def trades_in_profit_range(
        self, min_profit: Decimal, max_profit: Decimal
    ) -> List[Trade]:
        return await self.database.get_trades_in_profit_range(min_profit, max_profit)

    async def successful_trades(self, limit: int = 100) -> List[Trade]:
        return await self.database.get_successful_trades(limit)

    async def trades_by_wallet(self, address: str, limit: int = 50) -> List[Trade]:
        return await self.database.get_trades_by_wallet(address, limit)

    async def top_traders(self, limit: int = 10) -> List[UserAccount]:
        return await self.database.get_top_accounts(limit)

    async def recent_accounts(
        self, days: float = 7, limit: int = 100, now: Optional[datetime] = None
    ) -> List[UserAccount]:
        since = (now or datetime.utcnow()) - timedelta(days=days)
        return await self.database.get_accounts_since(since, limit)

    async def account_stats(self) -> AccountFleetStats:
        return summarize_accounts(await self.database.get_all_accounts())
