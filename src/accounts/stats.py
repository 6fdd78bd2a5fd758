"""Per-account trading statistics rollup."""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

import structlog

from src.core.exceptions import InvalidStateTransition
from src.core.models import AccountStats, ExecutionStatus, Trade, TradeOutcome, UserAccount

logger = structlog.get_logger(__name__)


def outcome_from_trade(trade: Trade) -> TradeOutcome:
    """Derive the stats outcome of a terminal trade.

    Profit is the measured actual profit (0 when unmeasured). Volume is the
    final amount when reported, otherwise the opportunity's executable amount;
    timed-out trades contribute no volume.
    """
    if not trade.is_terminal:
        raise InvalidStateTransition(
            f"Trade {trade.tx_hash} is not terminal",
            current_state=trade.execution.status.value,
        )
    results = trade.results
    profit = results.actual_profit if results.actual_profit is not None else Decimal("0")

    if trade.execution.status == ExecutionStatus.TIMEOUT:
        volume = Decimal("0")
    elif results.final_amount:
        volume = results.final_amount
    else:
        volume = trade.opportunity.max_executable_amount

    return TradeOutcome(
        success=results.success,
        profit=profit,
        volume=volume,
        trade_id=trade.tx_hash,
    )


class AccountStatsAggregator:
    """Rolls trade outcomes into ``UserAccount.stats``."""

    def apply_trade_outcome(
        self,
        account: UserAccount,
        outcome: TradeOutcome,
        now: Optional[datetime] = None,
    ) -> UserAccount:
        """Add one outcome to the account's stats.

        An outcome whose ``trade_id`` is already in ``applied_trade_ids``
        leaves the account unchanged. Outcomes without a ``trade_id`` are
        always counted.
        """
        if account.stats.has_applied(outcome.trade_id):
            logger.info(
                "account.stats_already_applied",
                account_id=account.id,
                trade_id=outcome.trade_id,
            )
            return account

        now = now or datetime.utcnow()
        updated = account.model_copy(deep=True)
        stats = updated.stats

        if outcome.trade_id is not None:
            stats.applied_trade_ids.append(outcome.trade_id)
        stats.total_trades += 1
        if outcome.success:
            stats.successful_trades += 1
            stats.total_profit += outcome.profit
        stats.total_volume += outcome.volume
        stats.last_trade_at = now

        self._recompute_derived(stats)
        updated.updated_at = now

        logger.info(
            "account.stats_updated",
            account_id=account.id,
            trade_id=outcome.trade_id,
            total_trades=stats.total_trades,
            success_rate=str(stats.success_rate),
        )
        return updated

    def apply_trade(
        self,
        account: UserAccount,
        trade: Trade,
        now: Optional[datetime] = None,
    ) -> Tuple[UserAccount, Trade]:
        """Apply a terminal trade's outcome exactly once.

        Returns:
            Updated account and the trade stamped with ``stats_applied_at``

        Raises:
            InvalidStateTransition: If the trade is not terminal or was already applied
        """
        self.ensure_unapplied(trade)
        now = now or datetime.utcnow()
        outcome = outcome_from_trade(trade)
        updated_account = self.apply_trade_outcome(account, outcome, now)
        return updated_account, self.mark_applied(trade, now)

    def ensure_unapplied(self, trade: Trade) -> None:
        """Raise if the trade's outcome already reached account stats."""
        if trade.stats_applied_at is not None:
            raise InvalidStateTransition(
                f"Trade {trade.tx_hash} already applied to stats at "
                f"{trade.stats_applied_at.isoformat()}",
                current_state="applied",
            )

    def mark_applied(self, trade: Trade, now: Optional[datetime] = None) -> Trade:
        """Return the trade stamped as rolled into account stats."""
        self.ensure_unapplied(trade)
        now = now or datetime.utcnow()
        marked = trade.model_copy(deep=True)
        marked.stats_applied_at = now
        marked.updated_at = now
        return marked

    @staticmethod
    def _recompute_derived(stats: AccountStats) -> None:
        # average_profit keeps its previous value while there are no successes
        if stats.successful_trades > 0:
            stats.average_profit = stats.total_profit / stats.successful_trades
        if stats.total_trades > 0:
            stats.success_rate = Decimal(100 * stats.successful_trades) / stats.total_trades
        else:
            stats.success_rate = Decimal("0")
