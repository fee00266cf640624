"""
Unit tests for the stock pressure index and market session clock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

import pytest

from entity_store import EntityStoreError
from market_data import MarketDataError, Quote, get_market_session
from pressure_index import (
    build_reading,
    calculate_pressure,
    export_daily_pressure,
    latest_by_symbol,
    pressure_action,
    pressure_zone,
    run_pressure_calculator,
    stock_pressure_index_calculator,
)


def make_quote(symbol: str, current: float, high: float = 120.0, low: float = 100.0) -> Quote:
    return Quote(
        symbol=symbol,
        current=current,
        high=high,
        low=low,
        open=low,
        prev_close=low,
        timestamp="2024-01-08T15:00:00+00:00",
    )


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------

class TestFormulas:
    """Pressure, zone and action thresholds."""

    @pytest.mark.parametrize(
        "current,expected",
        [(100.0, 0.0), (110.0, 50.0), (120.0, 100.0), (105.0, 25.0)],
    )
    def test_calculate_pressure(self, current: float, expected: float):
        assert calculate_pressure(current, 120.0, 100.0) == pytest.approx(expected)

    def test_flat_range_is_neutral(self):
        assert calculate_pressure(50.0, 50.0, 50.0) == 50.0

    def test_zone_boundaries(self):
        assert pressure_zone(39.9) == "BUY_ZONE"
        assert pressure_zone(40.0) == "NEUTRAL_ZONE"
        assert pressure_zone(70.0) == "NEUTRAL_ZONE"
        assert pressure_zone(70.1) == "SELL_ZONE"

    def test_action_boundaries(self):
        assert pressure_action(44.9) == "BUY"
        assert pressure_action(45.0) == "HOLD"
        assert pressure_action(70.0) == "HOLD"
        assert pressure_action(70.1) == "SELL"

    def test_volatility_adjustment_averages(self):
        reading = build_reading(make_quote("AAPL", 110.0), volume=100_000)
        assert reading.pressure_index == 50.0
        assert reading.volatility_adjusted_pressure == 60.0
        assert reading.final_pressure == 55.0
        assert reading.ai_action == "HOLD"

    def test_adjusted_pressure_caps_at_100(self):
        reading = build_reading(make_quote("AAPL", 120.0), volume=10_000_000)
        assert reading.volatility_adjusted_pressure == 100.0
        assert reading.final_pressure == 100.0
        assert reading.pressure_zone == "SELL_ZONE"


# ---------------------------------------------------------------------------
# Market session
# ---------------------------------------------------------------------------

class TestMarketSession:
    """Eastern-time session boundaries (2024-01-08 is a Monday)."""

    @pytest.mark.parametrize(
        "hour,minute,session",
        [
            (3, 59, "CLOSED"),
            (4, 0, "PRE"),
            (9, 29, "PRE"),
            (9, 30, "REG"),
            (16, 0, "REG"),
            (16, 1, "POST"),
            (19, 59, "POST"),
            (20, 0, "CLOSED"),
        ],
    )
    def test_weekday_boundaries(self, hour: int, minute: int, session: str):
        assert get_market_session(datetime(2024, 1, 8, hour, minute)) == session

    def test_weekend_closed(self):
        assert get_market_session(datetime(2024, 1, 6, 11, 0)) == "CLOSED"


# ---------------------------------------------------------------------------
# Calculator run
# ---------------------------------------------------------------------------

class TestCalculatorRun:
    def test_persists_records_and_averages(self, store):
        prices: Dict[str, float] = {"AAPL": 101.0, "MSFT": 119.0}
        result = run_pressure_calculator(
            store,
            ["aapl", "msft"],
            quote_fn=lambda s: make_quote(s, prices[s]),
            volume_fn=lambda s: 0.0,
            pause_seconds=0,
        )

        assert result.success
        assert result.stats["successful"] == 2
        assert result.stats["buy_signals"] == 1
        assert result.stats["sell_signals"] == 1
        assert result.market_avg_pressure == pytest.approx(50.0)
        assert {r["symbol"] for r in store.list("StockPressure")} == {"AAPL", "MSFT"}

    def test_symbol_failure_does_not_stop_run(self, store):
        def quote_fn(symbol: str) -> Quote:
            if symbol == "BAD":
                raise MarketDataError("no data")
            return make_quote(symbol, 110.0)

        result = run_pressure_calculator(store, ["BAD", "AAPL"], quote_fn=quote_fn, volume_fn=lambda s: 0.0, pause_seconds=0)

        assert result.stats["failed"] == 1
        assert result.errors[0]["symbol"] == "BAD"
        assert result.market_avg_pressure == 50.0
        assert len(store.list("StockPressure")) == 1

    def test_store_failure_does_not_stop_run(self, store, monkeypatch):
        real_create = store.create

        def flaky_create(entity, data):
            if data.get("symbol") == "AAA":
                raise EntityStoreError("backend 503")
            return real_create(entity, data)

        monkeypatch.setattr(store, "create", flaky_create)

        result = run_pressure_calculator(
            store,
            ["AAA", "BBB"],
            quote_fn=lambda s: make_quote(s, 110.0),
            volume_fn=lambda s: 0.0,
            pause_seconds=0,
        )

        assert result.stats["failed"] == 1
        assert result.stats["successful"] == 1
        assert result.errors == [{"symbol": "AAA", "error": "backend 503"}]
        assert [r["symbol"] for r in store.list("StockPressure")] == ["BBB"]
        assert result.market_avg_pressure == pytest.approx(50.0)

    def test_all_failed_defaults_to_50(self, store):
        def quote_fn(symbol: str) -> Quote:
            raise MarketDataError("down")

        result = run_pressure_calculator(store, ["X"], quote_fn=quote_fn, volume_fn=lambda s: 0.0, pause_seconds=0)
        assert result.market_avg_pressure == 50.0


def test_latest_by_symbol_keeps_newest():
    rows = [
        {"symbol": "AAPL", "timestamp": "2024-01-08T10:00:00", "final_pressure": 10},
        {"symbol": "AAPL", "timestamp": "2024-01-08T11:00:00", "final_pressure": 20},
        {"symbol": "MSFT", "timestamp": "2024-01-08T09:00:00", "final_pressure": 30},
    ]
    latest = latest_by_symbol(rows)
    assert latest["AAPL"]["final_pressure"] == 20
    assert latest["MSFT"]["final_pressure"] == 30


def test_export_counts_todays_latest(store, factories):
    today = datetime.now(timezone.utc).date().isoformat()
    store.bulk_create(
        "StockPressure",
        [
            factories.stock_pressure(symbol="AAPL", final_pressure=30.0, ai_action="BUY", timestamp=f"{today}T10:00:00+00:00"),
            factories.stock_pressure(symbol="AAPL", final_pressure=80.0, ai_action="SELL", timestamp=f"{today}T11:00:00+00:00"),
            factories.stock_pressure(symbol="MSFT", final_pressure=60.0, ai_action="HOLD", timestamp="2000-01-01T10:00:00+00:00"),
        ],
    )
    export = export_daily_pressure(store, today)
    assert export["total_symbols"] == 1
    assert export["market_summary"]["sell_signals"] == 1
    assert export["market_summary"]["avg_pressure"] == 80.0


def test_handler_requires_symbols(store):
    assert stock_pressure_index_calculator({"symbols": []}, store)["success"] is False
    assert stock_pressure_index_calculator({"mode": "bogus", "symbols": ["A"]}, store)["error"] == "Invalid mode"
