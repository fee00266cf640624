"""
Unit tests for quote fetching, source fallback and LiveQuote refresh.
"""

from __future__ import annotations

from dataclasses import replace

import pytest

import market_data
from market_data import (
    MarketDataError,
    Quote,
    fetch_finnhub_quote,
    fetch_live_quotes,
    fetch_quote,
    latest_live_price,
    refresh_live_quote,
)


def _quote(symbol="AAPL", current=101.0, source="yfinance"):
    return Quote(
        symbol=symbol,
        current=current,
        high=current + 1,
        low=current - 1,
        open=current,
        prev_close=100.0,
        timestamp="2024-01-08T15:00:00+00:00",
        source=source,
    )


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------

class TestQuote:
    def test_change_pct(self):
        assert _quote().change_pct == pytest.approx(1.0)
        assert replace(_quote(), prev_close=0.0).change_pct == 0.0
        assert _quote().to_dict()["change_pct"] == pytest.approx(1.0)

    def test_finnhub_parse(self, monkeypatch):
        monkeypatch.setattr(
            market_data,
            "_finnhub_get",
            lambda path, symbol: {"c": 150.0, "h": 151.0, "l": 149.0, "o": 149.5, "pc": 148.0, "t": 1704726000},
        )
        quote = fetch_finnhub_quote("msft")

        assert quote.symbol == "MSFT"
        assert quote.current == 150.0
        assert quote.timestamp.startswith("2024-01-08")
        assert quote.source == "finnhub"

    def test_finnhub_zero_price(self, monkeypatch):
        monkeypatch.setattr(market_data, "_finnhub_get", lambda path, symbol: {"c": 0})
        with pytest.raises(MarketDataError):
            fetch_finnhub_quote("MSFT")

    def test_falls_back_to_yfinance(self, monkeypatch):
        monkeypatch.setattr(market_data, "settings", replace(market_data.settings, finnhub_api_key="key"))

        def _finnhub(symbol):
            raise MarketDataError("down")

        monkeypatch.setattr(market_data, "fetch_finnhub_quote", _finnhub)
        monkeypatch.setattr(market_data, "fetch_yfinance_quote", lambda symbol: _quote(symbol))

        assert fetch_quote("yffb", use_cache=False).source == "yfinance"

    def test_all_sources_fail(self, monkeypatch):
        def _fail(symbol):
            raise MarketDataError(f"no data for {symbol}")

        monkeypatch.setattr(market_data, "fetch_yfinance_quote", _fail)
        with pytest.raises(MarketDataError, match="no data for NONE"):
            fetch_quote("none", use_cache=False)

    def test_successful_quote_is_cached(self, monkeypatch):
        calls = []

        def _yf(symbol):
            calls.append(symbol)
            return _quote(symbol)

        monkeypatch.setattr(market_data, "fetch_yfinance_quote", _yf)
        market_data.cache.delete("quote::CACHED")

        fetch_quote("CACHED")
        fetch_quote("CACHED")
        assert calls == ["CACHED"]


# ---------------------------------------------------------------------------
# LiveQuote entities
# ---------------------------------------------------------------------------

class TestRefresh:
    def test_creates_then_updates(self, store, monkeypatch):
        monkeypatch.setattr(market_data, "fetch_quote", lambda symbol: _quote(symbol, 101.0))
        refresh_live_quote(store, "aapl", session="REG")
        monkeypatch.setattr(market_data, "fetch_quote", lambda symbol: _quote(symbol, 102.0))
        record = refresh_live_quote(store, "AAPL", session="POST")

        rows = store.filter("LiveQuote", {"symbol": "AAPL"})
        assert len(rows) == 1
        assert rows[0]["last_price"] == 102.0
        assert record["regular_price"] == 101.0
        assert record["market_session"] == "POST"
        assert latest_live_price(store, "aapl") == 102.0

    def test_failure_keeps_stale_record(self, store, seeded_quotes, monkeypatch):
        def _fail(symbol):
            raise MarketDataError("offline")

        monkeypatch.setattr(market_data, "fetch_quote", _fail)
        record = refresh_live_quote(store, "AAPL", session="REG")

        assert record["error_flag"] is True
        assert record["source_used"] == "fallback"
        assert record["last_price"] == 100.0
        assert store.filter("ErrorLog", {"source": "API"})

    def test_failure_without_record_raises(self, store, monkeypatch):
        def _fail(symbol):
            raise MarketDataError("offline")

        monkeypatch.setattr(market_data, "fetch_quote", _fail)
        with pytest.raises(MarketDataError):
            refresh_live_quote(store, "ZZZ", session="REG")

    def test_latest_live_price_missing(self, store):
        assert latest_live_price(store, "NONE") is None


def test_fetch_live_quotes_function(store, monkeypatch):
    def _quote_or_fail(symbol):
        if symbol == "BAD":
            raise MarketDataError("offline")
        return _quote(symbol)

    monkeypatch.setattr(market_data, "fetch_quote", _quote_or_fail)

    result = fetch_live_quotes({"symbols": ["AAPL", "BAD"]}, store)

    assert result["stats"] == {"total": 2, "success": 1, "failed": 1, "success_rate": "50.0%"}
    assert fetch_live_quotes({"symbols": "AAPL"}, store)["success"] is False
