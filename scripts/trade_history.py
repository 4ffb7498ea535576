#!/usr/bin/env python
"""Closed-trade history and profit reporter.

Usage:
    python scripts/trade_history.py --db state/trailbot.db summary
    python scripts/trade_history.py --db state/trailbot.db list
    python scripts/trade_history.py --db state/trailbot.db list --instrument SOLUSD
"""
import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from trailbot.persistence_sqlite import PositionStore
from trailbot.pnl import summarize


def summary(store):
    """Show aggregate profit across closed positions."""
    agg = summarize(store.list_history())

    if not agg.total_closed:
        print("No closed trades found")
        return

    print("\n=== Trading Summary ===")
    print(f"Closed Trades: {agg.total_closed}")
    print(f"Winners / Losers: {agg.winners} / {agg.losers}")
    print(f"Total Return: {agg.total_profit_percent:.2f}%")
    print(f"Avg Return: {agg.average_profit_percent:.2f}%")


def list_trades(store, instrument=None):
    """List every position that has left ``active``, newest first."""
    history = [p for p in store.list_history() if instrument is None or p.instrument == instrument]

    if not history:
        print("No trades found")
        return

    print(
        f"\n{'Closed At':<34} {'Instrument':<12} {'Status':<10} {'Qty':<14} "
        f"{'Entry':<12} {'Exit':<12} {'Return':<9}"
    )
    print("-" * 108)
    for pos in history:
        ret = f"{pos.exit_profit_percent:.2f}%" if pos.exit_profit_percent is not None else "-"
        exit_price = f"{pos.exit_price:.2f}" if pos.exit_price is not None else "-"
        print(
            f"{pos.updated_at.isoformat():<34} {pos.instrument:<12} {pos.status.value:<10} "
            f"{pos.quantity:<14.8f} {pos.entry_price:<12.2f} {exit_price:<12} {ret:<9}"
        )
        if pos.error_reason:
            print(f"    error: {pos.error_reason}")

    print(f"\nTotal: {len(history)}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Trade history and profit reporter")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    parser.add_argument(
        "--password-env",
        default="TRAILBOT_DB_PASSWORD",
        help="Environment variable holding the sqlcipher password (if encrypted)",
    )

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("summary")
    lst = sub.add_parser("list")
    lst.add_argument("--instrument", help="Only show one instrument, e.g. SOLUSD")

    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        return 1

    store = PositionStore(db_path, password=os.getenv(args.password_env))
    try:
        if args.cmd == "summary":
            summary(store)
        elif args.cmd == "list":
            list_trades(store, instrument=args.instrument.upper() if args.instrument else None)
        else:
            parser.print_help()
            return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
