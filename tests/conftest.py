"""
FLOW-PRESSURE v1.0 - Pytest Configuration & Shared Fixtures
===========================================================

Responsibilities:
- Point DATA_DIR / CACHE_DIR / LOG_DIR at a throwaway directory and turn
  MOCK_API_CALLS on before any project module reads settings.
- Provide an isolated LocalEntityStore per test.
- Integrate Factory Boy/Faker for realistic entity records.

Modules capture ``settings = get_settings()`` at import time, so the
environment is prepared at conftest import, not inside a fixture.
"""

from __future__ import annotations

import os
import random
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, Iterator, List

_SANDBOX = tempfile.mkdtemp(prefix="flowpressure-tests-")
os.environ["DATA_DIR"] = os.path.join(_SANDBOX, "entities")
os.environ["CACHE_DIR"] = os.path.join(_SANDBOX, "cache")
os.environ["LOG_DIR"] = os.path.join(_SANDBOX, "logs")
os.environ["BACKUP_DIR"] = os.path.join(_SANDBOX, "backups")
os.environ["MOCK_API_CALLS"] = "true"
os.environ["DELAY_COMPENSATION_SECONDS"] = "0"
os.environ["LANGUAGE"] = "en"
for _name in ("OPENAI_API_KEY", "FINNHUB_API_KEY", "DISCORD_WEBHOOK_URL", "BAAS_BASE_URL"):
    os.environ.pop(_name, None)

import factory  # noqa: E402
import pytest  # noqa: E402
from faker import Faker  # noqa: E402

import config  # noqa: E402

config._SETTINGS = None

from entity_store import LocalEntityStore, set_store  # noqa: E402

fake = Faker()

SYMBOLS = ["AAPL", "MSFT", "NVDA", "TSLA", "AMZN"]


# ---------------------------------------------------------------------------
# Marker registration
# ---------------------------------------------------------------------------

def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers at startup."""
    config.addinivalue_line("markers", "unit: Fast unit tests, no external services")
    config.addinivalue_line("markers", "runtime: Import/runtime reliability checks")


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path) -> Iterator[LocalEntityStore]:
    """Empty file-backed store, installed as the process store."""
    local = LocalEntityStore(str(tmp_path / "entities"))
    set_store(local)
    try:
        yield local
    finally:
        set_store(None)


def iso(minutes_ago: float = 0.0, days_ago: float = 0.0) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes_ago, days=days_ago)).isoformat()


# ---------------------------------------------------------------------------
# Factory Boy factories (entity records as dicts)
# ---------------------------------------------------------------------------

class StockPressureFactory(factory.DictFactory):
    """StockPressure record."""

    symbol = factory.Iterator(SYMBOLS)
    price = factory.LazyFunction(lambda: round(random.uniform(50, 500), 2))
    day_high = factory.LazyAttribute(lambda o: round(o.price * 1.02, 2))
    day_low = factory.LazyAttribute(lambda o: round(o.price * 0.98, 2))
    final_pressure = factory.LazyFunction(lambda: round(random.uniform(0, 100), 1))
    ai_action = "HOLD"
    pressure_zone = "NEUTRAL_ZONE"
    data_status = "FRESH"
    timestamp = factory.LazyFunction(lambda: iso())


class SemanticPressureFactory(factory.DictFactory):
    symbol = factory.Iterator(SYMBOLS)
    spi = 50.0
    spi_change = 0.0
    sentiment = "neutral"
    sentiment_score = 0.0
    positive_keywords = factory.LazyFunction(list)
    negative_keywords = factory.LazyFunction(list)
    alert_triggered = False
    timestamp = factory.LazyFunction(lambda: iso())


class LiveQuoteFactory(factory.DictFactory):
    symbol = "AAPL"
    last_price = 100.0
    prev_close = 99.0
    change_pct = 1.01
    market_session = "REG"
    source_used = "finnhub"
    error_flag = False
    ts_last_update = factory.LazyFunction(lambda: iso())


class AutoTradeFactory(factory.DictFactory):
    """Closed manual AutoTrade."""

    symbol = factory.Iterator(SYMBOLS)
    entry_price = 100.0
    exit_price = 105.0
    shares = 10
    status = "CLOSED"
    trade_type = "WIN"
    pl_amount = 50.0
    pl_percent = 5.0
    entry_reason_en = "Manual Buy"
    entry_reason_zh = "手動買入"
    entry_time = factory.LazyFunction(lambda: iso(minutes_ago=30))
    exit_time = factory.LazyFunction(lambda: iso())


class AIBacktestLogFactory(factory.DictFactory):
    symbol = factory.Iterator(SYMBOLS)
    intensity_score = 4
    cont_prob = 75.0
    result_outcome = "WIN"
    entry_timestamp = factory.LazyFunction(lambda: iso(minutes_ago=random.randint(1, 10_000)))


class EventFactory(factory.DictFactory):
    """Opportunity scanner event, as returned by the news search."""

    ticker = factory.Iterator(SYMBOLS)
    company = factory.Faker("company")
    keyword = "FDA clearance"
    event_description = factory.Faker("sentence")
    sentiment = "positive"
    sentiment_score = 0.8
    confidence = 0.9
    sources = factory.LazyFunction(
        lambda: [
            {"domain": "reuters.com", "published_at": iso(minutes_ago=20)},
            {"domain": "bloomberg.com", "published_at": iso(minutes_ago=15)},
            {"domain": "sec.gov", "published_at": iso(minutes_ago=10)},
        ]
    )


@pytest.fixture
def stock_pressure_factory() -> type:
    return StockPressureFactory


@pytest.fixture
def auto_trade_factory() -> type:
    return AutoTradeFactory


@pytest.fixture
def backtest_log_factory() -> type:
    return AIBacktestLogFactory


@pytest.fixture
def event_factory() -> type:
    return EventFactory


def seed(store: LocalEntityStore, entity: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Insert factory-built rows and return the stored records."""
    return store.bulk_create(entity, rows)


@pytest.fixture
def seeded_quotes(store: LocalEntityStore) -> List[Dict[str, Any]]:
    """Fresh REG-session LiveQuote records for AAPL and MSFT."""
    return seed(
        store,
        "LiveQuote",
        [LiveQuoteFactory(symbol="AAPL", last_price=100.0), LiveQuoteFactory(symbol="MSFT", last_price=400.0)],
    )


@pytest.fixture
def factories() -> SimpleNamespace:
    """All record factories plus the ``iso`` timestamp helper."""
    return SimpleNamespace(
        stock_pressure=StockPressureFactory,
        semantic=SemanticPressureFactory,
        live_quote=LiveQuoteFactory,
        auto_trade=AutoTradeFactory,
        backtest_log=AIBacktestLogFactory,
        event=EventFactory,
        iso=iso,
    )
