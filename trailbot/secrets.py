"""Secrets management: load Kraken API credentials from environment or config file.

Priority order:
1. Environment variables: KRAKEN_API_KEY, KRAKEN_API_SECRET
2. Environment variables: API_KEY, API_SECRET
3. Config file: ~/.kraken_config.json or custom path via ENV KRAKEN_CONFIG_PATH
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional


class KrakenCredentials(NamedTuple):
    api_key: str
    api_secret: str  # base64-encoded private key as issued by Kraken


def _from_env() -> Optional[KrakenCredentials]:
    for key_var, secret_var in (("KRAKEN_API_KEY", "KRAKEN_API_SECRET"), ("API_KEY", "API_SECRET")):
        api_key = os.getenv(key_var)
        api_secret = os.getenv(secret_var)
        if api_key and api_secret:
            return KrakenCredentials(api_key=api_key, api_secret=api_secret)
    return None


def load_credentials(config_path: Optional[str] = None) -> KrakenCredentials:
    """Load Kraken credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks KRAKEN_CONFIG_PATH env var, then ~/.kraken_config.json

    Returns:
        KrakenCredentials with api_key, api_secret

    Raises:
        ValueError: If credentials are not found or incomplete
    """
    creds = _from_env()
    if creds:
        return creds

    if config_path is None:
        config_path = os.getenv("KRAKEN_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".kraken_config.json")

    api_key = api_secret = None
    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        api_key = cfg.get("api_key")
        api_secret = cfg.get("api_secret")

    if not api_key or not api_secret:
        raise ValueError(
            "Missing Kraken credentials. Provide via:\n"
            "  - Environment: KRAKEN_API_KEY, KRAKEN_API_SECRET (or API_KEY, API_SECRET)\n"
            f"  - Config file: {config_path}\n"
            "  - KRAKEN_CONFIG_PATH env var to override config location"
        )

    return KrakenCredentials(api_key=api_key, api_secret=api_secret)


def save_config(config_path: str, api_key: str, api_secret: str) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is chmod 600 where supported.
    """
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret}, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod
