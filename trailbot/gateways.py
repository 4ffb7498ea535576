"""
Exchange-facing interfaces used by the lifecycle engine.

Two seams are kept separate because they fail differently: the market
data gateway is a pure read, while the order gateway has side effects and
is not idempotent (market orders carry no client dedup token), so callers
must never submit the same exit twice.

``InMemoryExchange`` implements both for tests and paper trading.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional

from .exceptions import (
    ExchangeUnavailable,
    InstrumentNotFound,
    InsufficientFunds,
)
from .instruments import split_instrument


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class OrderResult:
    """Outcome of a submitted market order.

    Attributes:
        order_ref: Exchange order id
        fill_price: Average fill price when the exchange reports one
    """

    order_ref: str
    fill_price: Optional[Decimal] = None


class MarketDataGateway(ABC):
    """Read-only access to last-traded prices."""

    @abstractmethod
    async def get_last_price(self, instrument: str) -> Decimal:
        """Return the last-traded price of ``instrument``.

        Raises:
            InstrumentNotFound: If the exchange does not list the pair
            PriceUnavailable: If the quote could not be fetched
        """


class ExchangeOrderGateway(ABC):
    """Market order submission and balance lookup."""

    @abstractmethod
    async def submit_market_order(self, instrument: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        """Submit a market order for ``quantity`` units of the base asset.

        Returns once the exchange has accepted the order; the fill price is
        filled in only when the acceptance already carries it.

        Raises:
            OrderRejected: If the exchange refuses the order
            OrderOutcomeUnknown: If the order may have been accepted
            ExchangeUnavailable: If the request could not be completed
        """

    async def get_fill_price(self, order_ref: str) -> Optional[Decimal]:
        """Best-effort average fill price of ``order_ref``; None when unknown."""
        return None

    @abstractmethod
    async def get_balance(self, asset: str) -> Decimal:
        """Return the free balance of ``asset`` (0 when the account holds none)."""


class InMemoryExchange(MarketDataGateway, ExchangeOrderGateway):
    """A simple exchange double that records calls and lets tests drive prices.

    Prices are scripted per instrument: ``set_prices("ABCUSD", [10, 12])``
    serves 10, then 12, then keeps returning the last value. Buys credit
    the base-asset balance and sells debit it; a sell larger than the
    balance raises ``InsufficientFunds`` like the real exchange.
    """

    def __init__(self, prices: Optional[Dict[str, Iterable]] = None, quote_currencies=None):
        self._prices: Dict[str, Deque[Decimal]] = {}
        self._last: Dict[str, Decimal] = {}
        self.balances: Dict[str, Decimal] = defaultdict(Decimal)
        self.orders: List[Dict] = []
        self.price_requests: List[str] = []
        self.fail_prices: Dict[str, Exception] = {}
        self.fail_next_order: Optional[Exception] = None
        self.report_fill_price = True
        self.order_delay = 0.0
        self.next_id = 1
        self._quotes = quote_currencies
        for instrument, series in (prices or {}).items():
            self.set_prices(instrument, series)

    def _split(self, instrument: str):
        if self._quotes:
            return split_instrument(instrument, self._quotes)
        return split_instrument(instrument)

    def set_prices(self, instrument: str, series: Iterable) -> None:
        self._last.pop(instrument, None)
        self._prices[instrument] = deque(Decimal(str(p)) for p in series)

    def orders_for(self, instrument: str, side: Optional[OrderSide] = None) -> List[Dict]:
        return [
            o for o in self.orders
            if o["instrument"] == instrument and (side is None or o["side"] == side)
        ]

    def _peek(self, instrument: str) -> Decimal:
        if instrument in self._last:
            return self._last[instrument]
        series = self._prices.get(instrument)
        if not series:
            raise InstrumentNotFound(f"Unknown pair {instrument}")
        return series[0]

    async def get_last_price(self, instrument: str) -> Decimal:
        self.price_requests.append(instrument)
        if instrument in self.fail_prices:
            raise self.fail_prices[instrument]
        series = self._prices.get(instrument)
        if not series:
            raise InstrumentNotFound(f"Unknown pair {instrument}")
        price = series[0]
        if len(series) > 1:
            series.popleft()
        self._last[instrument] = price
        return price

    async def submit_market_order(self, instrument: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        if self.order_delay:
            await asyncio.sleep(self.order_delay)
        if self.fail_next_order is not None:
            exc, self.fail_next_order = self.fail_next_order, None
            raise exc
        base, _ = self._split(instrument)
        if side == OrderSide.SELL and self.balances[base] < quantity:
            raise InsufficientFunds("EOrder:Insufficient funds")
        try:
            price = self._peek(instrument)
        except InstrumentNotFound as e:
            raise ExchangeUnavailable(str(e))
        if side == OrderSide.BUY:
            self.balances[base] += quantity
        else:
            self.balances[base] -= quantity
        ref = f"M{self.next_id:06d}"
        self.next_id += 1
        self.orders.append(
            {"order_ref": ref, "instrument": instrument, "side": side, "quantity": quantity, "price": price}
        )
        return OrderResult(order_ref=ref, fill_price=price if self.report_fill_price else None)

    async def get_balance(self, asset: str) -> Decimal:
        return self.balances[asset]


__all__ = [
    "ExchangeOrderGateway",
    "InMemoryExchange",
    "MarketDataGateway",
    "OrderResult",
    "OrderSide",
]
