#!/usr/bin/env python
"""Position status CLI: query positions and their audit trail from the store.

Usage:
    python scripts/position_status.py --db state/trailbot.db list
    python scripts/position_status.py --db state/trailbot.db list --all
    python scripts/position_status.py --db state/trailbot.db show <position_id>
"""
import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from trailbot.persistence_sqlite import PositionStore


def format_decimal(d, decimals=2):
    """Format decimal for display."""
    return f"{d:.{decimals}f}" if d is not None else "-"


def list_positions(store, include_closed=False):
    """List active positions (or every position with ``include_closed``)."""
    positions = store.list_all() if include_closed else store.list_active()

    if not positions:
        print("No positions" if include_closed else "No active positions")
        return

    print(
        f"\n{'Position ID':<34} {'Instrument':<12} {'Qty':<14} {'Entry':<12} "
        f"{'High':<12} {'Stop':<12} {'Status':<10}"
    )
    print("-" * 110)

    for pos in positions:
        print(
            f"{pos.id:<34} "
            f"{pos.instrument:<12} "
            f"{format_decimal(pos.quantity, 8):<14} "
            f"{format_decimal(pos.entry_price):<12} "
            f"{format_decimal(pos.high_water_mark):<12} "
            f"{format_decimal(pos.stop_price):<12} "
            f"{pos.status.value:<10}"
        )


def show_position(store, position_id):
    """Show detailed position info and its event history."""
    pos = store.get(position_id)

    if not pos:
        print(f"Position not found: {position_id}")
        return False

    print(f"\n=== Position: {position_id} ===")
    print(f"Instrument: {pos.instrument}")
    print(f"Status: {pos.status.value}")
    print(f"Quantity: {format_decimal(pos.quantity, 8)}")
    print(f"Entry Price: {format_decimal(pos.entry_price)} (order {pos.entry_order_ref})")
    print(f"High-Water Mark: {format_decimal(pos.high_water_mark)}")
    print(f"Trailing Stop: {pos.stop_percent}% -> {format_decimal(pos.stop_price)}")
    if pos.status.is_closed:
        print(f"Exit Price: {format_decimal(pos.exit_price)} (order {pos.exit_order_ref or '-'})")
        print(f"Profit: {format_decimal(pos.exit_profit_percent)}%")
    if pos.error_reason:
        print(f"Error: {pos.error_reason}")
    if pos.exit_claim:
        print(f"Exit claim held: {pos.exit_claim}")

    events = store.list_events(position_id)
    if events:
        print(f"\nEvents ({len(events)}):")
        print(f"{'When':<34} {'Event':<18} Detail")
        print("-" * 90)
        for event in events:
            detail = ", ".join(f"{k}={v}" for k, v in event["detail"].items())
            print(f"{event['created_at']:<34} {event['event']:<18} {detail}")
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Position status CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    parser.add_argument(
        "--password-env",
        default="TRAILBOT_DB_PASSWORD",
        help="Environment variable holding the sqlcipher password (if encrypted)",
    )

    sub = parser.add_subparsers(dest="cmd")

    lst = sub.add_parser("list")
    lst.add_argument("--all", action="store_true", help="Include closed and errored positions")
    show = sub.add_parser("show")
    show.add_argument("position_id")

    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        return 1

    store = PositionStore(db_path, password=os.getenv(args.password_env))
    try:
        if args.cmd == "list":
            list_positions(store, include_closed=args.all)
        elif args.cmd == "show":
            if not show_position(store, args.position_id):
                return 1
        else:
            parser.print_help()
            return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
