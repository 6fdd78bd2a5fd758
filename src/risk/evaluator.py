"""Profit and slippage evaluation for completed arbitrage trades.

The evaluator is stateless apart from the risk defaults it was built with.
Missing inputs are not errors: the corresponding result fields stay unset and
a ``ResultFlag`` records why.
"""
from decimal import Decimal
from typing import Optional

import structlog

from src.core.config import RiskDefaultsConfig, risk_config
from src.core.models import ResultFlag, Trade, TradeResults, TradeRisk

logger = structlog.get_logger(__name__)


class RiskEvaluator:
    """
    Computes actual profit, profit percentage and slippage for a trade.

    Profit is measured in the cycle's anchor asset (``opportunity.loop[0]``)
    as the difference between the after and before balance snapshots.
    Slippage is the relative deviation of actual profit from expected profit.
    """

    def __init__(self, risk_defaults: Optional[RiskDefaultsConfig] = None):
        self.risk_defaults = risk_defaults or risk_config

    def default_risk(self) -> TradeRisk:
        """Risk limits for a newly recorded trade."""
        return TradeRisk.from_config(self.risk_defaults)

    def compute_actual_profit(self, trade: Trade) -> Optional[Decimal]:
        """Compute actual profit from the balance snapshots.

        Writes ``results.actual_profit`` and ``results.actual_profit_percent``.

        Args:
            trade: Trade whose results are being filled in (mutated)

        Returns:
            Actual profit, or None when either snapshot is missing
        """
        results = self._results(trade)
        before_snapshot = trade.wallet.balance_before
        after_snapshot = trade.wallet.balance_after

        if before_snapshot is None or after_snapshot is None:
            results.flag(ResultFlag.PROFIT_UNMEASURABLE)
            logger.debug("risk.profit_unmeasurable", tx_hash=trade.tx_hash)
            return None

        asset = trade.opportunity.anchor_asset
        before = before_snapshot.get(asset, Decimal("0"))
        after = after_snapshot.get(asset, Decimal("0"))

        results.actual_profit = after - before
        if before == 0:
            results.actual_profit_percent = None
            results.flag(ResultFlag.ZERO_BASE_BALANCE)
            logger.warning(
                "risk.zero_base_balance",
                tx_hash=trade.tx_hash,
                asset=asset,
                actual_profit=str(results.actual_profit),
            )
        else:
            results.actual_profit_percent = (results.actual_profit / before) * 100

        return results.actual_profit

    def compute_slippage(self, trade: Trade) -> Optional[Decimal]:
        """Compute slippage against the expected profit.

        Writes ``results.slippage`` and ``risk.slippage_exceeded``.

        Args:
            trade: Trade whose results are being filled in (mutated)

        Returns:
            Slippage as a fraction, or None when it cannot be measured
        """
        results = self._results(trade)
        expected = trade.opportunity.expected_profit
        actual = results.actual_profit

        if expected is None or actual is None:
            results.flag(ResultFlag.SLIPPAGE_UNMEASURABLE)
            return None

        if expected == 0:
            results.slippage = None
            results.flag(ResultFlag.NO_SLIPPAGE_REFERENCE)
            logger.warning("risk.no_slippage_reference", tx_hash=trade.tx_hash)
            return None

        results.slippage = abs(expected - actual) / expected
        trade.risk.slippage_exceeded = results.slippage > trade.risk.max_slippage

        if trade.risk.slippage_exceeded:
            logger.warning(
                "risk.slippage_exceeded",
                tx_hash=trade.tx_hash,
                slippage=str(results.slippage),
                max_slippage=str(trade.risk.max_slippage),
            )
        return results.slippage

    def evaluate(self, trade: Trade) -> Trade:
        """Run profit then slippage computation in place and return the trade."""
        self.compute_actual_profit(trade)
        self.compute_slippage(trade)
        return trade

    def meets_profit_threshold(self, trade: Trade) -> bool:
        """True if the measured profit percentage reaches the trade's minimum."""
        if trade.results is None or trade.results.actual_profit_percent is None:
            return False
        return trade.results.actual_profit_percent / 100 >= trade.risk.min_profit_threshold

    @staticmethod
    def _results(trade: Trade) -> TradeResults:
        if trade.results is None:
            trade.results = TradeResults()
        return trade.results
