import asyncio
import base64
import hashlib
import hmac
import random
import time
import urllib.parse
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import aiohttp

from .exceptions import (
    ExchangeUnavailable,
    InstrumentNotFound,
    InsufficientFunds,
    OrderOutcomeUnknown,
    OrderRejected,
    PriceUnavailable,
)
from .gateways import ExchangeOrderGateway, MarketDataGateway, OrderResult, OrderSide
from .logging_setup import logger
from .rate_limit_policy import RateLimitManager
from .secrets import KrakenCredentials

# Kraken reports some balances under legacy X/Z-prefixed codes.
ASSET_ALIASES: Dict[str, List[str]] = {
    "BTC": ["XXBT", "XBT"],
    "ETH": ["XETH"],
    "LTC": ["XLTC"],
    "XRP": ["XXRP"],
    "XLM": ["XXLM"],
    "XMR": ["XXMR"],
    "ZEC": ["XZEC"],
    "ETC": ["XETC"],
    "MLN": ["XMLN"],
    "REP": ["XREP"],
    "DOGE": ["XXDG", "XDG"],
    "USD": ["ZUSD"],
    "EUR": ["ZEUR"],
    "GBP": ["ZGBP"],
    "CAD": ["ZCAD"],
    "JPY": ["ZJPY"],
    "AUD": ["ZAUD"],
    "CHF": ["CHF"],
}

# EOrder errors that clear on their own; every other EOrder is terminal.
TRANSIENT_ORDER_ERRORS = (
    "EOrder:Rate limit exceeded",
    "EOrder:Orders limit exceeded",
)


class KrakenAPIError(ExchangeUnavailable):
    """Kraken returned an error we could not classify."""
    pass


class KrakenAdapter(MarketDataGateway, ExchangeOrderGateway):
    """Async Kraken spot adapter using aiohttp.

    Features:
    - Public ``Ticker`` quotes (last trade price ``c[0]``).
    - Signed private calls (``API-Key`` / ``API-Sign``): market ``AddOrder``,
      ``QueryOrders`` and ``Balance``.
    - Kraken ``error`` arrays mapped onto the bot's error taxonomy.
    - Jittered exponential backoff on 429/5xx and ``EAPI:Rate limit``.
    - Sliding-window pacing via ``RateLimitManager``.

    Market orders are never retried after the request reached Kraken: a
    timeout or dropped connection on ``AddOrder`` may still have executed,
    so it surfaces as ``OrderOutcomeUnknown`` and the caller decides.

    Usage:
        async with KrakenAdapter.from_credentials(creds) as adapter:
            price = await adapter.get_last_price("SOLUSD")
    """

    def __init__(
        self,
        api_key: str,
        secret: str,
        *,
        base_url: str = "https://api.kraken.com",
        timeout: int = 10,
        max_retries: int = 5,
        max_backoff_seconds: float = 60.0,
        fill_lookup_wait: float = 2.0,
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.fill_lookup_wait = fill_lookup_wait
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.session: Optional[aiohttp.ClientSession] = None
        self._last_nonce = 0

    @classmethod
    def from_credentials(cls, credentials: KrakenCredentials, **kwargs) -> "KrakenAdapter":
        """Create KrakenAdapter from KrakenCredentials (loaded via secrets module)."""
        return cls(api_key=credentials.api_key, secret=credentials.api_secret, **kwargs)

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()

    def _nonce(self) -> str:
        # strictly increasing even when two calls land in the same millisecond
        nonce = max(int(time.time() * 1000), self._last_nonce + 1)
        self._last_nonce = nonce
        return str(nonce)

    def _sign(self, url_path: str, data: Dict[str, str]) -> str:
        """API-Sign = b64(HMAC-SHA512(b64decode(secret), path + SHA256(nonce + postdata)))."""
        postdata = urllib.parse.urlencode(data)
        encoded = (str(data["nonce"]) + postdata).encode("utf-8")
        message = url_path.encode("utf-8") + hashlib.sha256(encoded).digest()
        try:
            key = base64.b64decode(self.secret)
        except (ValueError, TypeError):
            raise KrakenAPIError("Secret must be base64-encoded for signing")
        signature = hmac.new(key, message, hashlib.sha512)
        return base64.b64encode(signature.digest()).decode()

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = base * (2 ** attempt)
        delay = min(delay, max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _raise_for_errors(errors: List[str], context: str) -> None:
        """Translate a non-empty Kraken ``error`` array into a taxonomy exception."""
        if not errors:
            return
        joined = "; ".join(errors)
        for err in errors:
            if err.startswith(TRANSIENT_ORDER_ERRORS):
                raise KrakenAPIError(f"{context}: {joined}")
            if err.startswith("EOrder:Insufficient funds"):
                raise InsufficientFunds(joined)
            if err.startswith("EQuery:Unknown asset pair"):
                raise InstrumentNotFound(f"{context}: {joined}")
            if err.startswith("EOrder:") or err.startswith("EGeneral:Invalid arguments"):
                raise OrderRejected(joined)
        raise KrakenAPIError(f"{context}: {joined}")

    @staticmethod
    def _retryable(errors: List[str]) -> bool:
        return any(
            e.startswith(("EAPI:Rate limit", "EService:Unavailable", "EService:Busy") + TRANSIENT_ORDER_ERRORS)
            for e in errors
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, str]] = None,
        private: bool = False,
        retry: bool = True,
        max_wait: Optional[float] = None,
    ):
        """Execute a request with rate-limit pacing, backoff and error mapping.

        Returns the ``result`` member of Kraken's response envelope.
        """
        if not self.session:
            raise KrakenAPIError("Session not initialized; use 'async with' context manager")

        url = f"{self.base_url}{path}"
        if max_wait is None:
            max_wait = self.max_backoff_seconds
        attempts = self.max_retries if retry else 0
        for attempt in range(attempts + 1):
            if not await self.rate_limiter.acquire(path, max_wait=max_wait):
                raise KrakenAPIError(f"Local rate limit for {path} not released in time")

            headers = {}
            body = None
            if private:
                body = dict(data or {})
                body["nonce"] = self._nonce()
                headers = {
                    "API-Key": self.api_key,
                    "API-Sign": self._sign(path, body),
                    "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
                }

            try:
                async with self.session.request(
                    method,
                    url,
                    params=params,
                    data=urllib.parse.urlencode(body) if body is not None else None,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        text = await resp.text()
                        if attempt < attempts:
                            backoff = self._jittered_backoff(attempt, max_backoff=self.max_backoff_seconds)
                            logger.warning(f"Kraken {path} returned {resp.status}; retrying in {backoff:.2f}s")
                            await asyncio.sleep(backoff)
                            continue
                        raise ExchangeUnavailable(f"{resp.status}: {text}")
                    if not (200 <= resp.status < 300):
                        raise KrakenAPIError(f"{resp.status}: {await resp.text()}")
                    payload = await resp.json(content_type=None)
            except asyncio.TimeoutError as e:
                raise ExchangeUnavailable(f"Request timeout on {path}: {e}")
            except aiohttp.ClientError as e:
                raise ExchangeUnavailable(f"Request failed on {path}: {e}")

            errors = payload.get("error") or []
            if errors and self._retryable(errors) and attempt < attempts:
                backoff = self._jittered_backoff(attempt, max_backoff=self.max_backoff_seconds)
                logger.warning(f"Kraken {path} busy ({errors}); retrying in {backoff:.2f}s")
                await asyncio.sleep(backoff)
                continue
            self._raise_for_errors(errors, path)
            return payload.get("result") or {}

        raise ExchangeUnavailable(f"Kraken {path} retries exhausted")

    async def get_last_price(self, instrument: str) -> Decimal:
        try:
            result = await self._request("GET", "/0/public/Ticker", params={"pair": instrument})
        except InstrumentNotFound:
            raise
        except ExchangeUnavailable as e:
            raise PriceUnavailable(str(e)) from e
        except OrderRejected as e:
            raise PriceUnavailable(str(e)) from e

        # Kraken may key the result by its own pair name (e.g. XXBTZUSD)
        ticker = result.get(instrument)
        if ticker is None and len(result) == 1:
            ticker = next(iter(result.values()))
        if ticker is None:
            raise InstrumentNotFound(f"Pair {instrument} not found on Kraken")
        try:
            price = Decimal(str(ticker["c"][0]))
        except (KeyError, IndexError, TypeError, InvalidOperation):
            raise PriceUnavailable(f"Malformed ticker for {instrument}: {ticker!r}")
        if price <= 0:
            raise PriceUnavailable(f"Non-positive last price for {instrument}: {price}")
        return price

    async def submit_market_order(self, instrument: str, side: OrderSide, quantity: Decimal) -> OrderResult:
        """Send a market ``AddOrder`` and return as soon as Kraken assigns a txid.

        The fill price is not looked up here; see ``get_fill_price``.
        """
        data = {
            "pair": instrument,
            "type": side.value,
            "ordertype": "market",
            "volume": format(quantity, "f"),
        }
        # never resend an order that may have reached the matching engine
        try:
            result = await self._request("POST", "/0/private/AddOrder", data=data, private=True, retry=False)
        except KrakenAPIError:
            raise
        except ExchangeUnavailable as e:
            raise OrderOutcomeUnknown(f"AddOrder {side.value} {quantity} {instrument}: {e}") from e
        txids = result.get("txid") or []
        if not txids:
            raise OrderOutcomeUnknown(f"AddOrder returned no txid: {result!r}")
        order_ref = txids[0]
        logger.info(f"Kraken order accepted | {side.value} {quantity} {instrument} txid={order_ref}")
        return OrderResult(order_ref=order_ref)

    async def get_fill_price(self, order_ref: str) -> Optional[Decimal]:
        """Average fill price from a single ``QueryOrders`` call; None if not known.

        Not retried and never raises for exchange errors.
        """
        try:
            result = await self._request(
                "POST",
                "/0/private/QueryOrders",
                data={"txid": order_ref},
                private=True,
                retry=False,
                max_wait=self.fill_lookup_wait,
            )
        except (ExchangeUnavailable, OrderRejected) as e:
            logger.warning(f"Could not query fill price for {order_ref}: {e}")
            return None
        order = result.get(order_ref) or {}
        try:
            price = Decimal(str(order.get("price", "0")))
        except InvalidOperation:
            return None
        return price if price > 0 else None

    async def get_balance(self, asset: str) -> Decimal:
        result = await self._request("POST", "/0/private/Balance", private=True)
        for code in [asset] + ASSET_ALIASES.get(asset, []):
            if code in result:
                return Decimal(str(result[code]))
        return Decimal("0")
