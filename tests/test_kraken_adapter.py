import asyncio
import base64
import hashlib
import hmac
import json
import urllib.parse
from decimal import Decimal

import aiohttp
import pytest

from trailbot.exceptions import (
    ExchangeUnavailable,
    InstrumentNotFound,
    InsufficientFunds,
    OrderOutcomeUnknown,
    OrderRejected,
    PriceUnavailable,
)
from trailbot.engine import PositionLifecycleEngine
from trailbot.gateways import OrderSide
from trailbot.kraken_adapter import KrakenAdapter, KrakenAPIError
from trailbot.position import PositionStatus
from trailbot.rate_limit_policy import RateLimitManager, RateLimitQuota
from trailbot.secrets import KrakenCredentials

from conftest import make_position

SECRET = base64.b64encode(b"kraken-test-secret").decode()


class FakeResponse:
    def __init__(self, payload=None, status=200, text=None, delay=0.0):
        self.status = status
        self.delay = delay
        self._payload = payload if payload is not None else {"error": [], "result": {}}
        self._text = text

    async def json(self, content_type=None):
        return self._payload

    async def text(self):
        return self._text if self._text is not None else json.dumps(self._payload)

    async def __aenter__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Replays canned responses and records each request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self):
        pass


def ok(result):
    return FakeResponse({"error": [], "result": result})


def err(*errors):
    return FakeResponse({"error": list(errors)})


def make_adapter(*responses, **kwargs):
    limiter = RateLimitManager({
        "private": RateLimitQuota(requests_per_window=100, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=100, window_seconds=1),
    })
    adapter = KrakenAdapter("key", SECRET, rate_limiter=limiter, max_backoff_seconds=0.01, **kwargs)
    adapter.session = FakeSession(*responses)
    return adapter


def test_jittered_backoff_respects_max():
    backoff = KrakenAdapter._jittered_backoff(10, base=1.0, max_backoff=5.0)
    assert 0 <= backoff <= 5.0 * 1.25


def test_from_credentials():
    adapter = KrakenAdapter.from_credentials(KrakenCredentials("k", SECRET), timeout=3)
    assert adapter.api_key == "k"
    assert adapter.timeout == 3


def test_sign_matches_kraken_scheme():
    adapter = make_adapter()
    data = {"nonce": "1616492376594", "ordertype": "market", "pair": "XBTUSD"}
    path = "/0/private/AddOrder"

    postdata = urllib.parse.urlencode(data)
    sha = hashlib.sha256((data["nonce"] + postdata).encode()).digest()
    expected = base64.b64encode(
        hmac.new(base64.b64decode(SECRET), path.encode() + sha, hashlib.sha512).digest()
    ).decode()

    assert adapter._sign(path, data) == expected


def test_nonce_strictly_increases():
    adapter = make_adapter()
    nonces = [int(adapter._nonce()) for _ in range(50)]
    assert nonces == sorted(set(nonces))


@pytest.mark.asyncio
async def test_context_manager_initializes_session():
    adapter = KrakenAdapter("key", SECRET)
    assert adapter.session is None
    async with adapter:
        assert adapter.session is not None
    assert adapter.session.closed


@pytest.mark.asyncio
async def test_request_without_session_raises():
    adapter = KrakenAdapter("key", SECRET)
    with pytest.raises(KrakenAPIError, match="Session not initialized"):
        await adapter.get_balance("BTC")


@pytest.mark.asyncio
async def test_get_last_price_reads_last_trade():
    adapter = make_adapter(ok({"XXBTZUSD": {"a": ["50001.0"], "c": ["50000.1", "0.01"]}}))

    price = await adapter.get_last_price("XBTUSD")

    assert price == Decimal("50000.1")
    call = adapter.session.calls[0]
    assert call["method"] == "GET"
    assert call["url"].endswith("/0/public/Ticker")
    assert call["params"] == {"pair": "XBTUSD"}
    assert "API-Key" not in call["headers"]


@pytest.mark.asyncio
async def test_unknown_pair_maps_to_instrument_not_found():
    adapter = make_adapter(err("EQuery:Unknown asset pair"))
    with pytest.raises(InstrumentNotFound):
        await adapter.get_last_price("NOPEUSD")


@pytest.mark.asyncio
async def test_malformed_ticker_is_price_unavailable():
    adapter = make_adapter(ok({"SOLUSD": {"c": []}}))
    with pytest.raises(PriceUnavailable):
        await adapter.get_last_price("SOLUSD")


@pytest.mark.asyncio
async def test_ticker_timeout_is_price_unavailable():
    adapter = make_adapter(asyncio.TimeoutError())
    with pytest.raises(PriceUnavailable):
        await adapter.get_last_price("SOLUSD")


@pytest.mark.asyncio
async def test_public_request_retries_on_5xx():
    adapter = make_adapter(
        FakeResponse(status=503, text="unavailable"),
        err("EService:Busy"),
        ok({"SOLUSD": {"c": ["150.5", "1"]}}),
    )
    assert await adapter.get_last_price("SOLUSD") == Decimal("150.5")
    assert len(adapter.session.calls) == 3


@pytest.mark.asyncio
async def test_retries_exhausted_raise():
    adapter = make_adapter(*[FakeResponse(status=502, text="bad gateway")] * 3, max_retries=2)
    with pytest.raises(PriceUnavailable):
        await adapter.get_last_price("SOLUSD")


@pytest.mark.asyncio
async def test_market_order_is_signed_and_returns_on_acceptance():
    adapter = make_adapter(
        ok({"descr": {"order": "buy 1.5 SOLUSD @ market"}, "txid": ["OQCLML-BW3P3-BUCMWZ"]}),
    )

    result = await adapter.submit_market_order("SOLUSD", OrderSide.BUY, Decimal("1.50000000"))

    assert result.order_ref == "OQCLML-BW3P3-BUCMWZ"
    assert result.fill_price is None
    assert len(adapter.session.calls) == 1
    call = adapter.session.calls[0]
    assert call["method"] == "POST"
    assert call["url"].endswith("/0/private/AddOrder")
    body = dict(urllib.parse.parse_qsl(call["data"]))
    assert body["pair"] == "SOLUSD"
    assert body["type"] == "buy"
    assert body["ordertype"] == "market"
    assert body["volume"] == "1.50000000"
    assert "nonce" in body
    assert call["headers"]["API-Key"] == "key"
    assert call["headers"]["API-Sign"] == adapter._sign("/0/private/AddOrder", body)


@pytest.mark.asyncio
async def test_order_without_txid_is_unknown_outcome():
    adapter = make_adapter(ok({"descr": {"order": "sell 1 SOLUSD @ market"}}))
    with pytest.raises(OrderOutcomeUnknown):
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))


@pytest.mark.asyncio
async def test_get_fill_price_reads_query_orders():
    adapter = make_adapter(ok({"OABC": {"status": "closed", "price": "150.25"}}))

    assert await adapter.get_fill_price("OABC") == Decimal("150.25")
    call = adapter.session.calls[0]
    assert call["url"].endswith("/0/private/QueryOrders")
    assert dict(urllib.parse.parse_qsl(call["data"]))["txid"] == "OABC"


@pytest.mark.asyncio
async def test_get_fill_price_failure_is_not_fatal():
    adapter = make_adapter(asyncio.TimeoutError())
    assert await adapter.get_fill_price("OABC") is None


@pytest.mark.asyncio
async def test_get_fill_price_is_not_retried():
    adapter = make_adapter(FakeResponse(status=503, text="unavailable"), ok({"OABC": {"price": "1"}}))
    assert await adapter.get_fill_price("OABC") is None
    assert len(adapter.session.calls) == 1


@pytest.mark.asyncio
async def test_unfilled_order_has_no_fill_price():
    adapter = make_adapter(ok({"OABC": {"status": "open", "price": "0.00000"}}))
    assert await adapter.get_fill_price("OABC") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("error", ["EOrder:Rate limit exceeded", "EOrder:Orders limit exceeded"])
async def test_order_rate_limits_are_transient(error):
    adapter = make_adapter(err(error))
    with pytest.raises(KrakenAPIError) as exc:
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))
    assert not isinstance(exc.value, (OrderRejected, OrderOutcomeUnknown))


@pytest.mark.asyncio
async def test_order_rate_limit_is_retried_on_other_private_calls():
    adapter = make_adapter(err("EOrder:Rate limit exceeded"), ok({"ZUSD": "5"}))
    assert await adapter.get_balance("USD") == Decimal("5")
    assert len(adapter.session.calls) == 2


@pytest.mark.asyncio
async def test_insufficient_funds_maps_to_taxonomy():
    adapter = make_adapter(err("EOrder:Insufficient funds"))
    with pytest.raises(InsufficientFunds):
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))


@pytest.mark.asyncio
async def test_other_order_errors_are_rejections():
    adapter = make_adapter(err("EOrder:Order minimum not met"))
    with pytest.raises(OrderRejected):
        await adapter.submit_market_order("SOLUSD", OrderSide.BUY, Decimal("0.0001"))


@pytest.mark.asyncio
async def test_order_is_never_retried_after_timeout():
    adapter = make_adapter(asyncio.TimeoutError(), ok({"txid": ["never"]}))
    with pytest.raises(OrderOutcomeUnknown):
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))
    assert len(adapter.session.calls) == 1


@pytest.mark.asyncio
async def test_order_dropped_connection_is_unknown_outcome():
    adapter = make_adapter(aiohttp.ClientConnectionError("reset by peer"))
    with pytest.raises(OrderOutcomeUnknown):
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))


@pytest.mark.asyncio
async def test_rate_limited_order_is_unavailable_not_unknown():
    adapter = make_adapter(err("EAPI:Rate limit exceeded"))
    with pytest.raises(ExchangeUnavailable) as exc:
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))
    assert not isinstance(exc.value, OrderOutcomeUnknown)


@pytest.mark.asyncio
async def test_local_rate_limit_refusal_sends_nothing():
    limiter = RateLimitManager({"private": RateLimitQuota(requests_per_window=1, window_seconds=60)})
    adapter = KrakenAdapter("key", SECRET, rate_limiter=limiter, max_backoff_seconds=0.01)
    adapter.session = FakeSession(ok({"ZUSD": "1"}))
    await adapter.get_balance("USD")

    with pytest.raises(ExchangeUnavailable) as exc:
        await adapter.submit_market_order("SOLUSD", OrderSide.SELL, Decimal("1"))
    assert not isinstance(exc.value, OrderOutcomeUnknown)
    assert len(adapter.session.calls) == 1


@pytest.mark.asyncio
async def test_get_balance_resolves_asset_aliases():
    adapter = make_adapter(ok({"XXBT": "0.5", "ZUSD": "1000.12"}))
    assert await adapter.get_balance("BTC") == Decimal("0.5")

    adapter.session = FakeSession(ok({"SOL": "12.3"}))
    assert await adapter.get_balance("SOL") == Decimal("12.3")

    adapter.session = FakeSession(ok({}))
    assert await adapter.get_balance("ETH") == Decimal("0")


def ticker(instrument, last):
    return ok({instrument: {"c": [last, "1"]}})


@pytest.mark.asyncio
async def test_stop_exit_completes_when_fill_lookup_fails(store):
    store.create_position(make_position(high_water_mark=Decimal("12")))
    adapter = make_adapter(
        ticker("ABCUSD", "11.3"),
        ok({"txid": ["OSELL-1"]}),
        FakeResponse(status=503, text="unavailable"),
    )
    engine = PositionLifecycleEngine(adapter, adapter, store, call_timeout=0.3, fill_timeout=0.1)

    report = await engine.tick()

    assert report.closed == ["p1"]
    assert report.errored == []
    pos = store.get("p1")
    assert pos.status == PositionStatus.COMPLETED
    assert pos.exit_price == Decimal("11.3")
    assert pos.exit_order_ref == "OSELL-1"
    assert pos.exit_profit_percent == Decimal("13")


@pytest.mark.asyncio
async def test_stop_exit_completes_when_fill_lookup_stalls(store):
    store.create_position(make_position(high_water_mark=Decimal("12")))
    adapter = make_adapter(
        ticker("ABCUSD", "11.3"),
        ok({"txid": ["OSELL-1"]}),
        FakeResponse({"error": [], "result": {"OSELL-1": {"price": "11.29"}}}, delay=5),
    )
    engine = PositionLifecycleEngine(adapter, adapter, store, call_timeout=0.3, fill_timeout=0.1)

    report = await engine.tick()

    assert report.closed == ["p1"]
    assert store.get("p1").status == PositionStatus.COMPLETED


@pytest.mark.asyncio
async def test_open_is_recorded_when_fill_lookup_stalls(store):
    adapter = make_adapter(
        ticker("ABCUSD", "10"),
        ok({"txid": ["OBUY-1"]}),
        FakeResponse({"error": [], "result": {}}, delay=5),
    )
    engine = PositionLifecycleEngine(adapter, adapter, store, call_timeout=0.3, fill_timeout=0.1)

    result = await engine.open_position("ABCUSD", 5, notional=100)

    pos = store.get_by_entry_order_ref("OBUY-1")
    assert pos is not None
    assert pos.id == result.position_id
    assert pos.entry_price == Decimal("10")
    assert pos.quantity == Decimal("10")


@pytest.mark.asyncio
async def test_order_rate_limit_keeps_position_for_next_tick(store):
    store.create_position(make_position(high_water_mark=Decimal("12")))
    adapter = make_adapter(
        ticker("ABCUSD", "11.3"),
        err("EOrder:Rate limit exceeded"),
    )
    engine = PositionLifecycleEngine(adapter, adapter, store, call_timeout=0.3, fill_timeout=0.1)

    first = await engine.tick()

    assert first.failed == ["p1"]
    pos = store.get("p1")
    assert pos.status == PositionStatus.ACTIVE
    assert pos.exit_claim is None

    adapter.session = FakeSession(
        ticker("ABCUSD", "11.2"),
        ok({"txid": ["OSELL-2"]}),
        ok({"OSELL-2": {"price": "11.2"}}),
    )
    second = await engine.tick()

    assert second.closed == ["p1"]
    assert store.get("p1").exit_order_ref == "OSELL-2"
