"""
Stellar Arbitrage Ledger - Command Line Entry Point

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Fleet-wide trade totals
    python main.py --stats

    # Top assets by profit
    python main.py --top-assets 10

    # Trades from the last 6 hours
    python main.py --recent 6

    # Trades with predicted profit between 0.5% and 2%
    python main.py --profit-range 0.5 2

    # Apply terminal trades missing from account stats
    python main.py --reconcile

    # Time out a trade whose confirmation never arrived
    python main.py --timeout <tx_hash>
"""

import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

# Add src to path
sys.path.insert(0, str(Path(__file__).parent))

import structlog

from src.core.config import ledger_config
from src.core.exceptions import LedgerError
from src.core.models import Trade
from src.services.ledger import ArbitrageLedger
from src.storage.database import Database
from src.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = ledger_config.validate_configuration()
    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "environment": ledger_config.system.environment,
        "network": ledger_config.system.network,
        "max_slippage": ledger_config.risk.max_slippage,
        "min_profit_threshold": ledger_config.risk.min_profit_threshold,
        "max_login_attempts": ledger_config.security.max_login_attempts,
        "lock_duration_hours": ledger_config.security.lock_duration_hours,
    }


def print_trades(title: str, trades: List[Trade]):
    """Print a compact trade table."""
    print("\n" + "=" * 72)
    print(f"  {title} ({len(trades)})")
    print("=" * 72)
    for trade in trades:
        results = trade.results
        profit = results.actual_profit if results and results.actual_profit is not None else "-"
        print(
            f"{trade.created_at:%Y-%m-%d %H:%M}  {trade.tx_hash[:16]:<16}  "
            f"{' > '.join(trade.opportunity.loop):<28} "
            f"{trade.execution.status.value:<9} "
            f"pred {trade.opportunity.profit_percent}%  actual {profit}"
        )


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Stellar Arbitrage Ledger - trade outcomes and account risk state"
    )

    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--stats", action="store_true", help="Show fleet trade and account totals"
    )
    parser.add_argument(
        "--top-assets", type=int, metavar="N", help="Show the N most profitable assets"
    )
    parser.add_argument(
        "--recent", type=float, metavar="HOURS", help="Show trades from the last HOURS"
    )
    parser.add_argument(
        "--profit-range",
        nargs=2,
        type=Decimal,
        metavar=("MIN", "MAX"),
        help="Show trades with predicted profit %% in [MIN, MAX]",
    )
    parser.add_argument(
        "--limit", type=int, default=100, help="Row limit for listings (default: 100)"
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Apply terminal trades that never reached account stats",
    )
    parser.add_argument(
        "--timeout", metavar="TX_HASH", help="Mark a trade as timed out"
    )

    args = parser.parse_args()

    setup_logging()

    if args.check:
        config_check = check_configuration()
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration issues:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")
        print(f"\nEnvironment: {config_check['environment']}")
        print(f"Network: {config_check['network']}")
        print(f"Max slippage: {config_check['max_slippage']}")
        print(f"Min profit threshold: {config_check['min_profit_threshold']}")
        print(
            f"Lockout: {config_check['max_login_attempts']} attempts, "
            f"{config_check['lock_duration_hours']}h"
        )
        print("\n" + "=" * 60)
        return

    db = Database()
    await db.initialize()

    if args.init_db:
        print("✓ Database initialized successfully")
        await db.close()
        return

    ledger = ArbitrageLedger(db)

    try:
        if args.stats:
            stats = await ledger.get_fleet_stats()
            accounts = await ledger.get_account_fleet_stats()
            print("\n📊 Trades")
            print(f"   Total: {stats.total_trades}")
            print(f"   Successful: {stats.successful_trades}")
            print(f"   Total profit: {stats.total_profit}")
            print(f"   Avg profit %: {stats.average_profit_percent}")
            print(f"   Avg execution time (s): {stats.average_execution_time}")
            print("\n👤 Accounts")
            print(f"   Total: {accounts.total_accounts} (active {accounts.active_accounts})")
            print(f"   Trades: {accounts.total_trades}")
            print(f"   Profit: {accounts.total_profit}")
            print(f"   Avg success rate: {accounts.average_success_rate}")

        if args.top_assets:
            print("\n🏆 Top assets")
            for rank, asset in enumerate(await ledger.get_top_assets(args.top_assets), 1):
                print(
                    f"   {rank:>2}. {asset.asset:<14} trades {asset.trade_count:<5} "
                    f"profit {asset.total_profit}  avg % {asset.average_profit_percent}"
                )

        if args.recent is not None:
            trades = await ledger.get_recent_trades(args.recent, args.limit)
            print_trades(f"Trades in the last {args.recent}h", trades)

        if args.profit_range:
            low, high = args.profit_range
            trades = await ledger.get_trades_in_profit_range(low, high)
            print_trades(f"Trades with predicted profit in [{low}, {high}]%", trades)

        if args.timeout:
            trade = await ledger.timeout_trade(args.timeout)
            print(f"✓ {trade.tx_hash} marked {trade.execution.status.value}")

        if args.reconcile:
            applied = await ledger.reconcile_stats()
            print(f"✓ Applied {applied} trade(s) to account stats")

    except LedgerError as e:
        logger.error("main.error", error=str(e))
        print(f"\n✗ {e}")
        sys.exit(1)
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
