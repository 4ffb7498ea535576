from decimal import Decimal

import pytest

from trailbot.exceptions import ExchangeUnavailable, InstrumentNotFound, InsufficientFunds
from trailbot.gateways import InMemoryExchange, OrderSide


@pytest.mark.asyncio
async def test_scripted_prices_hold_the_last_value():
    exchange = InMemoryExchange({"ABCUSD": [10, "10.5", 9]})

    prices = [await exchange.get_last_price("ABCUSD") for _ in range(5)]

    assert prices == [Decimal("10"), Decimal("10.5"), Decimal("9"), Decimal("9"), Decimal("9")]
    assert exchange.price_requests == ["ABCUSD"] * 5


@pytest.mark.asyncio
async def test_unknown_instrument():
    exchange = InMemoryExchange()
    with pytest.raises(InstrumentNotFound):
        await exchange.get_last_price("XYZUSD")


@pytest.mark.asyncio
async def test_buy_then_sell_moves_base_balance():
    exchange = InMemoryExchange({"SOLUSD": [150]})
    await exchange.get_last_price("SOLUSD")

    buy = await exchange.submit_market_order("SOLUSD", OrderSide.BUY, Decimal("2"))
    assert buy.fill_price == Decimal("150")
    assert await exchange.get_balance("SOL") == Decimal("2")

    sell = await exchange.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("0.5"))
    assert sell.order_ref != buy.order_ref
    assert await exchange.get_balance("SOL") == Decimal("1.5")
    assert [o["side"] for o in exchange.orders_for("SOLUSD")] == [OrderSide.BUY, OrderSide.SELL]


@pytest.mark.asyncio
async def test_oversized_sell_is_insufficient_funds():
    exchange = InMemoryExchange({"SOLUSD": [150]})
    with pytest.raises(InsufficientFunds):
        await exchange.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))
    assert exchange.orders == []


@pytest.mark.asyncio
async def test_fail_next_order_fires_once():
    exchange = InMemoryExchange({"SOLUSD": [150]})
    exchange.fail_next_order = ExchangeUnavailable("down")

    with pytest.raises(ExchangeUnavailable):
        await exchange.submit_market_order("SOLUSD", OrderSide.BUY, Decimal("1"))
    result = await exchange.submit_market_order("SOLUSD", OrderSide.BUY, Decimal("1"))
    assert result.order_ref == "M000001"


@pytest.mark.asyncio
async def test_fill_price_can_be_withheld():
    exchange = InMemoryExchange({"SOLUSD": [150]})
    exchange.report_fill_price = False
    result = await exchange.submit_market_order("SOLUSD", OrderSide.BUY, Decimal("1"))
    assert result.fill_price is None


@pytest.mark.asyncio
async def test_custom_quote_currencies_split_balances():
    exchange = InMemoryExchange({"ABCXYZ": [1]}, quote_currencies=["XYZ"])
    await exchange.submit_market_order("ABCXYZ", OrderSide.BUY, Decimal("3"))
    assert await exchange.get_balance("ABC") == Decimal("3")
