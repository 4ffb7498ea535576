"""
Position record and trailing-stop arithmetic.

A Position is one open-to-close cycle for an instrument. While ``active``
the monitoring tick raises its high-water mark and compares the polled
price against a stop placed ``stop_percent`` below that mark:

    stop_price = high_water_mark * (1 - stop_percent / 100)

The high-water mark only moves upward, so the stop never moves down.

Examples:
    >>> from decimal import Decimal
    >>> stop_price(Decimal("12"), Decimal("5"))
    Decimal('11.40')
    >>> profit_percent(Decimal("10"), Decimal("11.3"))
    Decimal('13.00')
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, getcontext
from enum import Enum
from typing import Dict, Optional

getcontext().prec = 28

LOT_DECIMALS = 8
HUNDRED = Decimal("100")


class PositionStatus(str, Enum):
    """Lifecycle status of a position."""

    ACTIVE = "active"  # monitored by the tick
    COMPLETED = "completed"  # closed by the trailing stop
    MANUAL = "manual"  # closed by an explicit close request
    ERRORED = "errored"  # terminal failure, kept for audit

    @property
    def is_closed(self) -> bool:
        return self in (PositionStatus.COMPLETED, PositionStatus.MANUAL)


def floor_to_decimals(value: Decimal, decimals: int = LOT_DECIMALS) -> Decimal:
    """Truncate ``value`` towards zero to ``decimals`` fractional digits.

    Exchanges reject volumes with more precision than the lot size, and
    rounding up could ask for more than the account holds.

    >>> floor_to_decimals(Decimal("1.123456789"))
    Decimal('1.12345678')
    """
    quantum = Decimal(1).scaleb(-decimals)
    return value.quantize(quantum, rounding=ROUND_DOWN)


def stop_price(high_water_mark: Decimal, stop_percent: Decimal) -> Decimal:
    """Trigger price ``stop_percent`` below the high-water mark."""
    return high_water_mark * (Decimal(1) - stop_percent / HUNDRED)


def profit_percent(entry_price: Decimal, exit_price: Decimal) -> Decimal:
    """Percentage gain (negative for a loss) of exiting at ``exit_price``."""
    return (exit_price - entry_price) / entry_price * HUNDRED


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Position:
    """A single trailing-stop position as stored.

    Attributes:
        id: Opaque identifier assigned at creation
        instrument: Normalised trading-pair symbol, e.g. ``"SOLUSD"``
        quantity: Base-asset amount bought at open
        stop_percent: Trailing distance below the high-water mark, in percent
        entry_price: Price the position was opened at
        high_water_mark: Highest price observed since open
        entry_order_ref: Exchange order id of the opening buy
        status: Current lifecycle status
        exit_price: Price used for the exit (closed positions only)
        exit_profit_percent: Profit of the exit against ``entry_price``
        exit_order_ref: Exchange order id of the exit sell
        error_reason: Why the position was moved to ``errored``
        exit_claim: Token of the caller currently allowed to submit the exit
        opened_at: Creation time (UTC)
        updated_at: Time of the last stored change (UTC)

    Invariants:
        - high_water_mark >= entry_price and is non-decreasing while active
        - exit_price / exit_profit_percent are set iff status is closed
    """

    id: str
    instrument: str
    quantity: Decimal
    stop_percent: Decimal
    entry_price: Decimal
    high_water_mark: Decimal
    entry_order_ref: str
    status: PositionStatus = PositionStatus.ACTIVE
    exit_price: Optional[Decimal] = None
    exit_profit_percent: Optional[Decimal] = None
    exit_order_ref: Optional[str] = None
    error_reason: Optional[str] = None
    exit_claim: Optional[str] = None
    opened_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def stop_price(self) -> Decimal:
        return stop_price(self.high_water_mark, self.stop_percent)

    def observe(self, last_price: Decimal) -> "Position":
        """Return a copy with the high-water mark raised to ``last_price`` if higher."""
        if last_price > self.high_water_mark:
            return replace(self, high_water_mark=last_price)
        return self

    def is_stop_hit(self, last_price: Decimal) -> bool:
        return last_price <= self.stop_price

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Serialise for JSON responses; Decimals become strings."""

        def _s(value):
            return str(value) if value is not None else None

        return {
            "id": self.id,
            "instrument": self.instrument,
            "quantity": str(self.quantity),
            "stop_percent": str(self.stop_percent),
            "entry_price": str(self.entry_price),
            "high_water_mark": str(self.high_water_mark),
            "stop_price": str(self.stop_price),
            "entry_order_ref": self.entry_order_ref,
            "status": self.status.value,
            "exit_price": _s(self.exit_price),
            "exit_profit_percent": _s(self.exit_profit_percent),
            "exit_order_ref": self.exit_order_ref,
            "error_reason": self.error_reason,
            "opened_at": self.opened_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @staticmethod
    def from_row(row) -> "Position":
        """Build a Position from a ``sqlite3.Row`` of the positions table."""

        def _d(value):
            return Decimal(value) if value is not None else None

        return Position(
            id=row["id"],
            instrument=row["instrument"],
            quantity=Decimal(row["quantity"]),
            stop_percent=Decimal(row["stop_percent"]),
            entry_price=Decimal(row["entry_price"]),
            high_water_mark=Decimal(row["high_water_mark"]),
            entry_order_ref=row["entry_order_ref"],
            status=PositionStatus(row["status"]),
            exit_price=_d(row["exit_price"]),
            exit_profit_percent=_d(row["exit_profit_percent"]),
            exit_order_ref=row["exit_order_ref"],
            error_reason=row["error_reason"],
            exit_claim=row["exit_claim"],
            opened_at=datetime.fromisoformat(row["opened_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
