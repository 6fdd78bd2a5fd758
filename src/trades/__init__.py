"""Trade execution lifecycle."""

from src.trades.lifecycle import TradeLifecycle

__all__ = [
    'TradeLifecycle',
]
