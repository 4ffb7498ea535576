from decimal import Decimal
from pathlib import Path

import pytest

from trailbot.engine import PositionLifecycleEngine
from trailbot.gateways import InMemoryExchange
from trailbot.persistence_sqlite import PositionStore
from trailbot.position import Position


@pytest.fixture
def store(tmp_path: Path):
    s = PositionStore(tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def exchange():
    return InMemoryExchange()


@pytest.fixture
def engine(exchange, store):
    return PositionLifecycleEngine(exchange, exchange, store, call_timeout=1.0)


def make_position(**overrides) -> Position:
    fields = dict(
        id="p1",
        instrument="ABCUSD",
        quantity=Decimal("10"),
        stop_percent=Decimal("5"),
        entry_price=Decimal("10"),
        high_water_mark=Decimal("10"),
        entry_order_ref="O1",
    )
    fields.update(overrides)
    return Position(**fields)
