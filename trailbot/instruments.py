"""Instrument symbol normalisation and split into base/quote assets."""
import re
from typing import Sequence, Tuple

from .exceptions import ValidationError

DEFAULT_QUOTE_CURRENCIES: Tuple[str, ...] = (
    "USD", "EUR", "USDT", "USDC", "GBP", "CAD", "JPY", "CHF", "AUD",
)
MIN_SYMBOL_LENGTH = 5
MAX_SYMBOL_LENGTH = 16

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_instrument(raw: str, quote_currencies: Sequence[str] = DEFAULT_QUOTE_CURRENCIES) -> str:
    """Normalise a trading-pair symbol such as ``"sol/usd"`` to ``"SOLUSD"``.

    Separators and other non-alphanumeric characters are stripped and the
    result is upper-cased.

    Raises:
        ValidationError: If the symbol is empty, outside the length bounds
            or does not end with a supported quote currency
    """
    if not isinstance(raw, str):
        raise ValidationError("instrument must be a string")
    symbol = _NON_ALNUM.sub("", raw).upper()
    if not symbol:
        raise ValidationError("instrument is empty")
    if not MIN_SYMBOL_LENGTH <= len(symbol) <= MAX_SYMBOL_LENGTH:
        raise ValidationError(
            f"instrument {symbol!r} must be {MIN_SYMBOL_LENGTH}-{MAX_SYMBOL_LENGTH} characters"
        )
    split_instrument(symbol, quote_currencies)
    return symbol


def split_instrument(symbol: str, quote_currencies: Sequence[str] = DEFAULT_QUOTE_CURRENCIES) -> Tuple[str, str]:
    """Return ``(base, quote)`` for a normalised symbol.

    The longest matching quote wins so ``"ETHUSDT"`` splits as ETH/USDT.
    """
    for quote in sorted(quote_currencies, key=len, reverse=True):
        if symbol.endswith(quote) and len(symbol) > len(quote) + 1:
            return symbol[: -len(quote)], quote
    raise ValidationError(
        f"instrument {symbol!r} does not end with a supported quote currency "
        f"({', '.join(quote_currencies)})"
    )
