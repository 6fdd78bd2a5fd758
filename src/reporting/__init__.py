"""Fleet-wide read-only reports."""

from src.reporting.fleet import (
    FleetStatsReporter,
    rank_assets,
    summarize_accounts,
    summarize_trades,
)

__all__ = [
    'FleetStatsReporter',
    'rank_assets',
    'summarize_accounts',
    'summarize_trades',
]
