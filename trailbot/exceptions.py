"""Error taxonomy for the trailing-stop bot.

TrailbotError (base)
├── ValidationError            bad input, rejected before any external call
│   └── NoActivePosition
├── ExternalDependencyError    price feed / exchange unreachable or erroring
│   ├── PriceUnavailable
│   │   └── InstrumentNotFound
│   └── ExchangeUnavailable
│       └── OrderOutcomeUnknown
├── OrderRejected              exchange refused the order; terminal for exits
│   └── InsufficientFunds
└── PersistenceError           store write failed after an exchange action

Rules:
    - ValidationError: return to caller, never retried.
    - ExternalDependencyError: surfaced to open/close callers; a monitoring
      tick logs it and leaves the position active for the next tick.
    - OrderOutcomeUnknown: an exit that may or may not have executed moves
      the position to ``errored`` so it is never sold twice.
    - OrderRejected: an exit that the exchange refuses moves the position
      to ``errored``; it is not re-attempted.
    - PersistenceError: the exchange and the store disagree. Logged at
      CRITICAL and re-applied idempotently.
"""
from typing import Optional


class TrailbotError(Exception):
    """Base exception for all bot errors."""
    pass


class ValidationError(TrailbotError):
    """Malformed instrument, non-positive amount or out-of-range percentage."""
    pass


class NoActivePosition(ValidationError):
    """Close requested for an instrument without an active position."""
    pass


class ExternalDependencyError(TrailbotError):
    """Transient failure talking to the price feed or the exchange."""
    pass


class PriceUnavailable(ExternalDependencyError):
    """Quote endpoint failed or returned no usable price."""
    pass


class InstrumentNotFound(PriceUnavailable):
    """The exchange does not know the requested pair."""
    pass


class ExchangeUnavailable(ExternalDependencyError):
    """Private API unreachable, timed out or rate limited."""
    pass


class OrderOutcomeUnknown(ExchangeUnavailable):
    """An order request may have reached the exchange but no answer came back."""
    pass


class OrderRejected(TrailbotError):
    """Exchange accepted the request but refused the order."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InsufficientFunds(OrderRejected):
    """Account balance cannot cover the order."""
    pass


class PersistenceError(TrailbotError):
    """Store write failed after the exchange confirmed an order.

    Attributes:
        order_ref: Exchange order id of the action that is not yet recorded
    """

    def __init__(self, message: str, order_ref: Optional[str] = None):
        super().__init__(message)
        self.order_ref = order_ref
