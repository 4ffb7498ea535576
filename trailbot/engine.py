"""Position lifecycle engine: open, monitor and close trailing-stop positions.

The engine owns no state of its own beyond a few in-process guards; the
store is the source of truth. Every transition out of ``active`` goes
through one of the store's conditional updates, so overlapping ticks,
manual closes and a second process against the same database cannot
submit two exit orders for one position.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Dict, List, Optional, Sequence, Type
from uuid import uuid4

from .exceptions import (
    ExchangeUnavailable,
    ExternalDependencyError,
    NoActivePosition,
    OrderOutcomeUnknown,
    OrderRejected,
    PersistenceError,
    PriceUnavailable,
    ValidationError,
)
from .gateways import ExchangeOrderGateway, MarketDataGateway, OrderResult, OrderSide
from .instruments import DEFAULT_QUOTE_CURRENCIES, normalize_instrument, split_instrument
from .logging_setup import logger
from .persistence_sqlite import ActivePositionExists, PositionStore
from .pnl import Summary, summarize
from .position import (
    HUNDRED,
    LOT_DECIMALS,
    Position,
    PositionStatus,
    floor_to_decimals,
    profit_percent,
)


@dataclass
class OpenResult:
    """Outcome of ``open_position``.

    ``skipped`` is True when the instrument already had an active position;
    ``position_id`` then names that existing position.
    """
    instrument: str
    position_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    entry_price: Optional[Decimal] = None
    entry_order_ref: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, object]:
        data = {"instrument": self.instrument, "position_id": self.position_id}
        if self.skipped:
            data["skipped"] = True
            return data
        data.update(
            quantity=str(self.quantity),
            entry_price=str(self.entry_price),
            entry_order_ref=self.entry_order_ref,
        )
        return data


@dataclass
class CloseResult:
    position_id: str
    instrument: str
    quantity_sold: Decimal
    exit_price: Decimal
    profit_percent: Decimal
    exit_order_ref: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "position_id": self.position_id,
            "instrument": self.instrument,
            "quantity_sold": str(self.quantity_sold),
            "exit_price": str(self.exit_price),
            "profit_percent": str(self.profit_percent),
            "exit_order_ref": self.exit_order_ref,
        }


@dataclass
class TickReport:
    """Position ids touched by one monitoring tick."""
    checked: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)  # high-water mark raised
    closed: List[str] = field(default_factory=list)
    errored: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)  # left active, retried next tick
    skipped: bool = False  # another tick was still running

    def to_dict(self) -> Dict[str, object]:
        return {
            "checked": list(self.checked),
            "updated": list(self.updated),
            "closed": list(self.closed),
            "errored": list(self.errored),
            "failed": list(self.failed),
            "skipped": self.skipped,
        }


@dataclass
class _PendingClose:
    position_id: str
    token: str
    status: PositionStatus
    exit_price: Decimal
    exit_profit_percent: Decimal
    exit_order_ref: str


def to_decimal(value, name: str) -> Decimal:
    """Parse a user-supplied number (int, float, str or Decimal) strictly.

    Raises:
        ValidationError: For booleans, non-numeric text, NaN or infinity
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{name} must be a number, got {value!r}")
    else:
        raise ValidationError(f"{name} must be a number, got {type(value).__name__}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite")
    return result


class PositionLifecycleEngine:
    """Open, monitor and close positions against the exchange gateways.

    Store calls are synchronous and run in worker threads via
    ``asyncio.to_thread``; every gateway call is bounded by
    ``call_timeout``.

    Usage:
        engine = PositionLifecycleEngine(exchange, exchange, store)
        await engine.recover()
        await engine.open_position("SOLUSD", 5, notional=100)
        report = await engine.tick()
    """

    def __init__(
        self,
        market_data: MarketDataGateway,
        exchange: ExchangeOrderGateway,
        store: PositionStore,
        *,
        quote_currencies: Sequence[str] = DEFAULT_QUOTE_CURRENCIES,
        lot_decimals: int = LOT_DECIMALS,
        call_timeout: float = 15.0,
        fill_timeout: float = 5.0,
        max_tick_concurrency: int = 4,
    ):
        self.market_data = market_data
        self.exchange = exchange
        self.store = store
        self.quote_currencies = tuple(quote_currencies)
        self.lot_decimals = lot_decimals
        self.call_timeout = call_timeout
        self.fill_timeout = fill_timeout
        self.max_tick_concurrency = max_tick_concurrency
        self.started_at = time.monotonic()
        self._instrument_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tick_lock = asyncio.Lock()
        # confirmed exchange actions whose store write failed; keyed for idempotency
        self._pending_opens: Dict[str, Position] = {}
        self._pending_closes: Dict[str, _PendingClose] = {}

    # --- helpers ---
    async def _call(self, awaitable: Awaitable, what: str, timeout_exc: Type[Exception]):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise timeout_exc(f"{what} timed out after {self.call_timeout}s")

    async def _store_call(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    async def _fetch_price(self, instrument: str) -> Decimal:
        return await self._call(
            self.market_data.get_last_price(instrument), f"Price fetch for {instrument}", PriceUnavailable
        )

    async def _submit(self, instrument: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        # a timed-out submission may still execute on the exchange
        return await self._call(
            self.exchange.submit_market_order(instrument, side, quantity),
            f"Market {side.value} of {quantity} {instrument}",
            OrderOutcomeUnknown,
        )

    async def _fill_price(self, order: OrderResult) -> Optional[Decimal]:
        """Fill price of an accepted order, or None; never raises."""
        if order.fill_price is not None:
            return order.fill_price
        try:
            return await asyncio.wait_for(
                self.exchange.get_fill_price(order.order_ref), timeout=self.fill_timeout
            )
        except Exception as e:
            logger.warning(f"Fill price for order {order.order_ref} unavailable: {e!r}")
            return None

    def _pending_instruments(self) -> List[str]:
        return [p.instrument for p in self._pending_opens.values()]

    # --- open ---
    async def open_position(
        self,
        instrument: str,
        stop_percent,
        *,
        notional=None,
        quantity=None,
    ) -> OpenResult:
        """Buy ``instrument`` at market and start trailing it.

        Exactly one of ``notional`` (quote-currency amount) or ``quantity``
        (base-asset amount) sizes the order.

        Raises:
            ValidationError: Bad input; raised before any external call
            InstrumentNotFound, PriceUnavailable: Quote failed, nothing bought
            OrderRejected, ExchangeUnavailable: Buy failed, nothing stored
            PersistenceError: Buy confirmed but the row could not be written
        """
        symbol = normalize_instrument(instrument, self.quote_currencies)
        stop = to_decimal(stop_percent, "stop_percent")
        if not Decimal(0) < stop < HUNDRED:
            raise ValidationError(f"stop_percent must be between 0 and 100 (exclusive), got {stop}")
        if (notional is None) == (quantity is None):
            raise ValidationError("exactly one of notional or quantity is required")
        amount_name = "notional" if notional is not None else "quantity"
        amount = to_decimal(notional if notional is not None else quantity, amount_name)
        if amount <= 0:
            raise ValidationError(f"{amount_name} must be positive, got {amount}")

        async with self._instrument_locks[symbol]:
            existing = await self._store_call(self.store.get_active, symbol)
            if existing is not None:
                logger.info(f"Open skipped | {symbol} already active as {existing.id}")
                return OpenResult(instrument=symbol, position_id=existing.id, skipped=True)
            if symbol in self._pending_instruments():
                logger.warning(f"Open skipped | {symbol} has an unrecorded open awaiting persistence")
                return OpenResult(instrument=symbol, skipped=True)

            price = await self._fetch_price(symbol)
            if notional is not None:
                qty = floor_to_decimals(amount / price, self.lot_decimals)
            else:
                qty = floor_to_decimals(amount, self.lot_decimals)
            if qty <= 0:
                raise ValidationError(f"{amount_name} {amount} is below the minimum lot at price {price}")

            try:
                order = await self._submit(symbol, OrderSide.BUY, qty)
            except OrderOutcomeUnknown as e:
                logger.error(f"Buy outcome unknown | {symbol} qty={qty}: {e}; check the exchange")
                raise
            entry_price = await self._fill_price(order) or price
            position = Position(
                id=uuid4().hex,
                instrument=symbol,
                quantity=qty,
                stop_percent=stop,
                entry_price=entry_price,
                high_water_mark=entry_price,
                entry_order_ref=order.order_ref,
            )

            try:
                stored = await self._store_call(self.store.create_position, position)
            except ActivePositionExists:
                logger.critical(
                    f"Store/exchange divergence | bought {qty} {symbol} (order {order.order_ref}) "
                    f"but another active position exists"
                )
                raise
            except Exception as e:
                self._pending_opens[order.order_ref] = position
                logger.critical(
                    f"Store/exchange divergence | bought {qty} {symbol} (order {order.order_ref}) "
                    f"but could not record it: {e}; queued for re-apply"
                )
                raise PersistenceError(
                    f"Bought {qty} {symbol} but the position could not be stored", order_ref=order.order_ref
                ) from e

        logger.info(
            f"Position opened | {symbol} id={stored.id} qty={qty} entry={entry_price} "
            f"stop={stop}% order={order.order_ref}"
        )
        return OpenResult(
            instrument=symbol,
            position_id=stored.id,
            quantity=stored.quantity,
            entry_price=stored.entry_price,
            entry_order_ref=stored.entry_order_ref,
        )

    # --- monitoring ---
    async def tick(self) -> TickReport:
        """Re-price every active position once and fire triggered stops.

        Never raises for a single position's failure; see the report.
        """
        if self._tick_lock.locked():
            logger.warning("Tick skipped | previous tick still running")
            return TickReport(skipped=True)

        async with self._tick_lock:
            report = TickReport()
            await self._reapply_pending()
            try:
                positions = await self._store_call(self.store.list_active)
            except Exception as e:
                logger.error(f"Tick aborted | could not load active positions: {e}")
                return report
            if not positions:
                logger.debug("Tick | no active positions")
                return report

            semaphore = asyncio.Semaphore(self.max_tick_concurrency)

            async def guarded(position: Position):
                async with semaphore:
                    await self._check_isolated(position, report)

            await asyncio.gather(*(guarded(p) for p in positions))
            logger.info(
                f"Tick done | checked={len(report.checked)} updated={len(report.updated)} "
                f"closed={len(report.closed)} errored={len(report.errored)} failed={len(report.failed)}"
            )
            return report

    async def _check_isolated(self, position: Position, report: TickReport) -> None:
        try:
            await self._check_position(position, report)
        except ExternalDependencyError as e:
            report.failed.append(position.id)
            logger.warning(f"Tick | {position.instrument} ({position.id}) left active: {e}")
        except PersistenceError as e:
            report.failed.append(position.id)
            logger.error(f"Tick | {position.instrument} ({position.id}) persistence failed: {e}")
        except Exception:
            report.failed.append(position.id)
            logger.exception(f"Tick | unexpected error on {position.instrument} ({position.id})")

    async def _check_position(self, position: Position, report: TickReport) -> None:
        current = await self._store_call(self.store.get, position.id)
        if current is None or current.status != PositionStatus.ACTIVE or current.exit_claim:
            return
        report.checked.append(current.id)

        price = await self._fetch_price(current.instrument)
        hwm = await self._store_call(self.store.raise_high_water_mark, current.id, price)
        if hwm is None:
            return  # closed elsewhere meanwhile
        tracked = current.observe(hwm)
        if tracked.high_water_mark > current.high_water_mark:
            report.updated.append(current.id)
            logger.info(f"High-water mark raised | {current.instrument} {current.high_water_mark} -> {hwm}")

        logger.debug(f"Tick | {current.instrument} price={price} hwm={hwm} stop={tracked.stop_price}")
        if not tracked.is_stop_hit(price):
            return

        logger.info(f"Stop triggered | {current.instrument} price={price} <= stop={tracked.stop_price}")
        token = uuid4().hex
        if not await self._store_call(self.store.claim_exit, current.id, token):
            logger.info(f"Exit already in progress | {current.instrument} ({current.id})")
            return

        try:
            order = await self._submit(current.instrument, OrderSide.SELL, current.quantity)
        except (OrderRejected, OrderOutcomeUnknown) as e:
            await self._mark_errored(current, str(e), token)
            report.errored.append(current.id)
            return
        except Exception:
            await self._release_claim(current, token)
            raise

        profit = profit_percent(current.entry_price, price)
        await self._record_close(
            _PendingClose(current.id, token, PositionStatus.COMPLETED, price, profit, order.order_ref)
        )
        report.closed.append(current.id)
        fill = await self._fill_price(order)
        logger.info(
            f"Position completed | {current.instrument} id={current.id} exit={price} "
            f"profit={profit:.2f}% fill={fill} order={order.order_ref}"
        )

    async def _mark_errored(self, position: Position, reason: str, token: Optional[str]) -> None:
        logger.error(f"Exit failed | {position.instrument} ({position.id}) moved to errored: {reason}")
        if not await self._store_call(self.store.mark_errored, position.id, reason, token):
            logger.critical(f"Could not mark {position.id} errored; it no longer holds claim {token}")

    async def _release_claim(self, position: Position, token: str) -> None:
        try:
            await self._store_call(self.store.release_exit_claim, position.id, token)
        except Exception as e:
            # the claim stays set; recover() errors the row on restart
            logger.critical(f"Could not release exit claim on {position.id}: {e}")

    async def _record_close(self, pending: _PendingClose) -> None:
        try:
            won = await self._store_call(
                self.store.close_position,
                pending.position_id,
                pending.token,
                pending.status,
                pending.exit_price,
                pending.exit_profit_percent,
                pending.exit_order_ref,
            )
        except Exception as e:
            self._pending_closes[pending.position_id] = pending
            logger.critical(
                f"Store/exchange divergence | sold {pending.position_id} (order {pending.exit_order_ref}) "
                f"but could not record it: {e}; queued for re-apply"
            )
            raise PersistenceError(
                f"Exit of {pending.position_id} succeeded but could not be stored",
                order_ref=pending.exit_order_ref,
            ) from e
        if not won:
            logger.critical(
                f"Exit order {pending.exit_order_ref} sent but {pending.position_id} no longer held the claim"
            )

    async def _reapply_pending(self) -> None:
        """Retry store writes that failed after a confirmed exchange action."""
        for order_ref, position in list(self._pending_opens.items()):
            try:
                await self._store_call(self.store.upsert_position, position)
            except ActivePositionExists:
                del self._pending_opens[order_ref]
                logger.critical(
                    f"Dropping queued open {order_ref}: {position.instrument} already has an active position"
                )
            except Exception as e:
                logger.error(f"Re-apply of open {order_ref} failed again: {e}")
            else:
                del self._pending_opens[order_ref]
                logger.warning(f"Re-applied open {order_ref} for {position.instrument}")

        for position_id, pending in list(self._pending_closes.items()):
            try:
                won = await self._store_call(
                    self.store.close_position,
                    pending.position_id,
                    pending.token,
                    pending.status,
                    pending.exit_price,
                    pending.exit_profit_percent,
                    pending.exit_order_ref,
                )
            except Exception as e:
                logger.error(f"Re-apply of close {position_id} failed again: {e}")
                continue
            del self._pending_closes[position_id]
            if won:
                logger.warning(f"Re-applied {pending.status.value} close for {position_id}")
            else:
                logger.critical(f"Queued close for {position_id} no longer applies; row changed meanwhile")

    # --- manual close ---
    async def close_position(self, instrument: str, percent_of_holdings=100) -> CloseResult:
        """Sell ``percent_of_holdings`` of the base-asset balance and close.

        Raises:
            ValidationError: Bad input or the volume floors to zero
            NoActivePosition: No active position for ``instrument``
            ExternalDependencyError, OrderRejected: Sell failed; row stays active
            PersistenceError: Sell confirmed but the close could not be written
        """
        symbol = normalize_instrument(instrument, self.quote_currencies)
        percent = to_decimal(percent_of_holdings, "percent")
        if not Decimal(0) < percent <= HUNDRED:
            raise ValidationError(f"percent must be in (0, 100], got {percent}")

        async with self._instrument_locks[symbol]:
            position = await self._store_call(self.store.get_active, symbol)
            if position is None:
                raise NoActivePosition(f"No active position for {symbol}")

            base, _ = split_instrument(symbol, self.quote_currencies)
            balance = await self._call(
                self.exchange.get_balance(base), f"Balance lookup for {base}", ExchangeUnavailable
            )
            volume = floor_to_decimals(balance * percent / HUNDRED, self.lot_decimals)
            if volume <= 0:
                raise ValidationError(f"{base} balance {balance} is too small to sell {percent}%")

            price = await self._fetch_price(symbol)
            token = uuid4().hex
            if not await self._store_call(self.store.claim_exit, position.id, token):
                raise NoActivePosition(f"{symbol} is already being closed")

            try:
                order = await self._submit(symbol, OrderSide.SELL, volume)
            except OrderOutcomeUnknown as e:
                await self._mark_errored(position, str(e), token)
                raise
            except Exception:
                await self._release_claim(position, token)
                raise

            profit = profit_percent(position.entry_price, price)
            await self._record_close(
                _PendingClose(position.id, token, PositionStatus.MANUAL, price, profit, order.order_ref)
            )
            fill = await self._fill_price(order)

        logger.info(
            f"Position closed manually | {symbol} id={position.id} sold={volume} exit={price} "
            f"fill={fill} profit={profit:.2f}% order={order.order_ref}"
        )
        return CloseResult(
            position_id=position.id,
            instrument=symbol,
            quantity_sold=volume,
            exit_price=price,
            profit_percent=profit,
            exit_order_ref=order.order_ref,
        )

    # --- startup ---
    async def recover(self) -> List[str]:
        """Move rows stuck between exit claim and close to ``errored``.

        A claimed row means a sell may have been sent before the process
        stopped; it is surfaced for manual review rather than sold again.
        """
        stale = await self._store_call(self.store.list_claimed_active)
        recovered = []
        for position in stale:
            reason = "exit outcome unknown after restart"
            if await self._store_call(self.store.mark_errored, position.id, reason, position.exit_claim):
                recovered.append(position.id)
                logger.critical(f"Recovered {position.instrument} ({position.id}) as errored: {reason}")
        if not recovered:
            logger.info("Startup reconcile | no interrupted exits")
        return recovered

    # --- reads ---
    async def get_summary(self) -> Summary:
        history = await self._store_call(self.store.list_history)
        return summarize(history)

    async def get_history(self) -> List[Position]:
        return await self._store_call(self.store.list_history)

    async def list_active(self) -> List[Position]:
        return await self._store_call(self.store.list_active)

    async def list_all(self) -> List[Position]:
        return await self._store_call(self.store.list_all)

    async def status(self) -> Dict[str, object]:
        active = await self._store_call(self.store.count_active)
        return {
            "active_count": active,
            "uptime": round(time.monotonic() - self.started_at, 3),
            "pending_writes": len(self._pending_opens) + len(self._pending_closes),
        }

    async def delete_position(self, position_id: str) -> bool:
        deleted = await self._store_call(self.store.delete_position, position_id)
        if deleted:
            logger.warning(f"Position {position_id} deleted by administrator")
        return deleted
