"""
Kraken Trailing-Stop Bot.

Buys an instrument once on an alert, trails the highest price seen since
entry and sells at market when the price falls a configured percentage
below that peak:
- Webhook / HTTP control surface (aiohttp) to open, close and inspect positions
- Background monitor re-pricing active positions on a fixed interval
- One active position per instrument, monotonic high-water mark, no double sell
- SQLite persistence with conditional state transitions and an audit trail
- Optional encryption at rest via sqlcipher
- Kraken REST adapter with request signing, backoff and rate-limit pacing
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    position: Position record and trailing-stop arithmetic
    engine: Position lifecycle engine (open / tick / close)
    scheduler: Periodic monitor driving the engine's tick
    persistence_sqlite: Position store with conditional updates
    gateways: Market data / order gateway interfaces and an in-memory exchange
    kraken_adapter: Kraken API integration
    control_server: HTTP control surface
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from trailbot.engine import PositionLifecycleEngine
    >>> from trailbot.gateways import InMemoryExchange
    >>> from trailbot.persistence_sqlite import PositionStore
    >>>
    >>> exchange = InMemoryExchange({"SOLUSD": ["150"]})
    >>> store = PositionStore("state/trailbot.db")
    >>> engine = PositionLifecycleEngine(exchange, exchange, store)
"""

__version__ = "0.1.0"
__all__ = [
    "position",
    "instruments",
    "exceptions",
    "engine",
    "scheduler",
    "persistence_sqlite",
    "db_migrations",
    "db_encryption",
    "gateways",
    "kraken_adapter",
    "rate_limit_policy",
    "control_server",
    "config",
    "secrets",
    "pnl",
]
