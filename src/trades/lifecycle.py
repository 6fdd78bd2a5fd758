"""Trade execution state machine.

    pending -> submitted -> success | failed | timeout

Terminal states are final. Every transition returns a new Trade; the
input snapshot is left untouched so callers can persist or discard the
result as a single write.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

import structlog

from src.core.exceptions import InvalidStateTransition, InvalidTradeReport
from src.core.models import ExecutionStatus, Trade, TradeResults
from src.risk.evaluator import RiskEvaluator

logger = structlog.get_logger(__name__)


class TradeLifecycle:
    """Applies execution status transitions to trades."""

    def __init__(self, evaluator: Optional[RiskEvaluator] = None):
        self.evaluator = evaluator or RiskEvaluator()

    def mark_submitted(self, trade: Trade, now: Optional[datetime] = None) -> Trade:
        """Move a pending trade to submitted once the transaction is sent."""
        if trade.execution.status != ExecutionStatus.PENDING:
            raise InvalidStateTransition(
                f"Trade {trade.tx_hash} cannot be submitted from {trade.execution.status.value}",
                current_state=trade.execution.status.value,
            )
        now = now or datetime.utcnow()
        updated = trade.model_copy(deep=True)
        updated.execution.status = ExecutionStatus.SUBMITTED
        updated.execution.submitted_at = now
        updated.updated_at = now

        logger.info("trade.submitted", tx_hash=trade.tx_hash)
        return updated

    def complete(
        self,
        trade: Trade,
        success: bool,
        final_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
        balance_after: Optional[Dict[str, Decimal]] = None,
        gas_used: Optional[Decimal] = None,
        gas_price: Optional[Decimal] = None,
        total_fees: Optional[Decimal] = None,
    ) -> Trade:
        """Finalize a trade and measure its profit and slippage.

        Args:
            trade: Pending or submitted trade
            success: Whether the ledger confirmed the transaction
            final_amount: Amount of the anchor asset received (ignored if falsy)
            now: Completion time (defaults to now)
            balance_after: Post-trade balance snapshot from the execution engine
            gas_used: Reported gas/ops used
            gas_price: Reported fee per op
            total_fees: Reported total fees

        Returns:
            New Trade in the success or failed state with results populated

        Raises:
            InvalidStateTransition: If the trade is already terminal
            InvalidTradeReport: If balance_after names assets outside the loop
        """
        status = ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILED
        updated = self._finalize(trade, status, now)
        updated.results.success = success

        if final_amount:
            updated.results.final_amount = final_amount
        if balance_after is not None:
            self._check_snapshot(trade, balance_after)
            updated.wallet.balance_after = dict(balance_after)
        if gas_used is not None:
            updated.execution.gas_used = gas_used
        if gas_price is not None:
            updated.execution.gas_price = gas_price
        if total_fees is not None:
            updated.execution.total_fees = total_fees

        self.evaluator.evaluate(updated)

        logger.info(
            "trade.completed",
            tx_hash=updated.tx_hash,
            status=status.value,
            actual_profit=str(updated.results.actual_profit),
            slippage=str(updated.results.slippage),
            slippage_exceeded=updated.risk.slippage_exceeded,
            flags=[f.value for f in updated.results.flags],
        )
        return updated

    def mark_timeout(self, trade: Trade, now: Optional[datetime] = None) -> Trade:
        """Finalize a trade whose confirmation never arrived.

        No profit or slippage computation is attempted.
        """
        updated = self._finalize(trade, ExecutionStatus.TIMEOUT, now)
        updated.results.success = False

        logger.warning("trade.timeout", tx_hash=updated.tx_hash)
        return updated

    @staticmethod
    def _check_snapshot(trade: Trade, snapshot: Dict[str, Decimal]) -> None:
        unknown = set(snapshot) - set(trade.opportunity.loop)
        if unknown:
            logger.warning(
                "trade.invalid_snapshot", tx_hash=trade.tx_hash, assets=sorted(unknown)
            )
            raise InvalidTradeReport(
                f"Trade {trade.tx_hash} balance_after has assets not in loop: {sorted(unknown)}"
            )

    def _finalize(
        self, trade: Trade, status: ExecutionStatus, now: Optional[datetime]
    ) -> Trade:
        if trade.is_terminal:
            raise InvalidStateTransition(
                f"Trade {trade.tx_hash} is already {trade.execution.status.value}",
                current_state=trade.execution.status.value,
            )
        now = now or datetime.utcnow()
        updated = trade.model_copy(deep=True)
        updated.execution.status = status
        updated.execution.completed_at = now
        updated.results = TradeResults()
        updated.updated_at = now
        return updated
