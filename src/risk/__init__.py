"""Risk evaluation for completed arbitrage trades.

Measures actual profit against the before/after balance snapshots and
slippage against the predicted profit.
"""

from src.risk.evaluator import RiskEvaluator

__all__ = [
    'RiskEvaluator',
]
