"""Profit aggregation over closed positions."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable

from .position import Position


@dataclass
class Summary:
    """Aggregate results of closed (``completed`` or ``manual``) positions.

    Break-even exits count as neither winners nor losers.
    """
    total_closed: int = 0
    total_profit_percent: Decimal = Decimal("0")
    average_profit_percent: Decimal = Decimal("0")
    winners: int = 0
    losers: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_closed": self.total_closed,
            "total_profit_percent": str(self.total_profit_percent),
            "average_profit_percent": str(self.average_profit_percent),
            "winners": self.winners,
            "losers": self.losers,
        }


def summarize(positions: Iterable[Position]) -> Summary:
    """Aggregate ``exit_profit_percent`` across closed positions.

    Active and errored positions are ignored; an empty input yields zeros.

    Args:
        positions: Any positions; only closed ones contribute

    Returns:
        Summary with totals and the win/loss split
    """
    profits = [
        p.exit_profit_percent
        for p in positions
        if p.status.is_closed and p.exit_profit_percent is not None
    ]
    if not profits:
        return Summary()

    total = sum(profits, Decimal("0"))
    return Summary(
        total_closed=len(profits),
        total_profit_percent=total,
        average_profit_percent=total / len(profits),
        winners=len([p for p in profits if p > 0]),
        losers=len([p for p in profits if p < 0]),
    )
