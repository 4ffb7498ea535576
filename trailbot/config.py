"""Configuration loader for the trailing-stop bot.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from .instruments import DEFAULT_QUOTE_CURRENCIES


@dataclass
class ExchangeConfig:
    """Kraken REST settings."""
    base_url: str = "https://api.kraken.com"
    timeout: int = 10
    max_retries: int = 5
    max_backoff_seconds: float = 60.0


@dataclass
class StrategyConfig:
    """Monitoring loop and order sizing parameters."""
    check_interval_seconds: float = 600.0  # 10 minutes between ticks
    quote_currencies: List[str] = field(default_factory=lambda: list(DEFAULT_QUOTE_CURRENCIES))
    lot_decimals: int = 8
    max_tick_concurrency: int = 4
    call_timeout: float = 15.0  # per price fetch / order submission
    fill_timeout: float = 5.0  # fill-price lookup after an order is accepted


@dataclass
class RateLimitConfig:
    """Kraken private endpoint pacing."""
    private_calls_per_window: int = 15
    window_seconds: int = 45
    public_per_second: int = 1


@dataclass
class PersistenceConfig:
    """Database and logging settings."""
    db_path: str = "state/trailbot.db"
    encryption_password: Optional[str] = None
    log_file: str = "trailbot.log"
    log_level: str = "INFO"


@dataclass
class ServerConfig:
    """Control surface bind address."""
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class TradingConfig:
    """Complete bot configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "TradingConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            TradingConfig instance

        Example YAML:
            strategy:
              check_interval_seconds: 300
              quote_currencies: [USD, EUR]
            persistence:
              db_path: "${STATE_DIR}/trailbot.db"
            server:
              port: 8080
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        strategy = dict(data.get("strategy") or {})
        if "quote_currencies" in strategy:
            strategy["quote_currencies"] = [str(q).upper() for q in strategy["quote_currencies"]]

        config = cls(
            exchange=ExchangeConfig(**(data.get("exchange") or {})),
            strategy=StrategyConfig(**strategy),
            rate_limit=RateLimitConfig(**(data.get("rate_limit") or {})),
            persistence=PersistenceConfig(**(data.get("persistence") or {})),
            server=ServerConfig(**(data.get("server") or {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.strategy.check_interval_seconds <= 0:
            raise ValueError("strategy.check_interval_seconds must be positive")
        if self.strategy.max_tick_concurrency < 1:
            raise ValueError("strategy.max_tick_concurrency must be at least 1")
        if not self.strategy.quote_currencies:
            raise ValueError("strategy.quote_currencies must not be empty")

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": {
                "base_url": self.exchange.base_url,
                "timeout": self.exchange.timeout,
                "max_retries": self.exchange.max_retries,
                "max_backoff_seconds": self.exchange.max_backoff_seconds,
            },
            "strategy": {
                "check_interval_seconds": self.strategy.check_interval_seconds,
                "quote_currencies": list(self.strategy.quote_currencies),
                "lot_decimals": self.strategy.lot_decimals,
                "max_tick_concurrency": self.strategy.max_tick_concurrency,
                "call_timeout": self.strategy.call_timeout,
                "fill_timeout": self.strategy.fill_timeout,
            },
            "rate_limit": {
                "private_calls_per_window": self.rate_limit.private_calls_per_window,
                "window_seconds": self.rate_limit.window_seconds,
                "public_per_second": self.rate_limit.public_per_second,
            },
            "persistence": {
                "db_path": self.persistence.db_path,
                "encryption_password": self.persistence.encryption_password,
                "log_file": self.persistence.log_file,
                "log_level": self.persistence.log_level,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
            },
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
