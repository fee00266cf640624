"""
Unit tests for semantic pressure (keyword sentiment, SPI, alerts,
correlation learning) and the console decision rule.
"""

from __future__ import annotations

import pytest

from semantic_pressure import (
    NewsContext,
    SocialContext,
    analyze_sentiment,
    analyze_symbol,
    calculate_spi,
    classify_sentiment,
    decide_action,
    learn_correlations,
    quick_spi,
    semantic_pressure_ai,
    should_alert,
    spi_suggestion,
)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class TestSentiment:
    def test_empty_text_scores_zero(self):
        assert analyze_sentiment("").score == 0.0

    def test_positive_only(self):
        result = analyze_sentiment("New partnership drives growth")
        assert result.score == 1.0
        assert result.positive == ["partnership", "growth"]
        assert result.top_keyword == "partnership"

    def test_balanced_hits_cancel(self):
        assert analyze_sentiment("profit and decline").score == 0.0

    def test_learned_weights_shift_score(self):
        result = analyze_sentiment("profit and decline", {"profit": 3.0})
        assert result.score == pytest.approx(0.5)

    def test_classify_band(self):
        assert classify_sentiment(0.21) == "positive"
        assert classify_sentiment(0.2) == "neutral"
        assert classify_sentiment(-0.21) == "negative"


class TestSpi:
    def test_spi_is_clamped(self):
        assert calculate_spi(90.0, 1.0) == 100.0
        assert calculate_spi(10.0, -1.0) == 0.0
        assert calculate_spi(50.0, 0.4) == pytest.approx(60.0)

    def test_suggestion_bands(self):
        assert spi_suggestion(61, "growth")["en"].endswith("Key: growth")
        assert spi_suggestion(40, None)["en"].startswith("Neutral")
        assert "風險" in spi_suggestion(39, "layoff")["zh"]

    def test_alert_threshold_is_strict(self):
        assert should_alert(15.1, threshold=15.0)
        assert not should_alert(15.0, threshold=15.0)
        assert should_alert(-20.0, threshold=15.0)

    def test_quick_spi(self):
        assert quick_spi([]) == (50.0, "neutral")
        spi, label = quick_spi([1, 1])
        assert spi == 60.0 and label == "positive"


class TestDecideAction:
    def test_defaults_are_hold(self):
        assert decide_action() == "HOLD"

    def test_blend(self):
        assert decide_action(20.0, 50.0) == "BUY"
        assert decide_action(90.0, 80.0) == "SELL"
        assert decide_action(60.0, 60.0) == "HOLD"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestAnalyzeSymbol:
    def test_swing_raises_alert(self, store):
        data = analyze_symbol(
            store,
            "aapl",
            news=NewsContext(headlines=["Apple partnership fuels growth"]),
            social=SocialContext(mentions=50),
        )

        assert data["symbol"] == "AAPL"
        assert data["spi"] == 75.0
        assert data["sentiment"] == "positive"
        assert data["alert"] == {"symbol": "AAPL", "keyword": "partnership", "spi_change": 25.0, "sentiment": "positive"}
        assert store.first("SemanticPressure", {"symbol": "AAPL"})["spi"] == 75.0

    def test_base_pressure_comes_from_latest_stock_pressure(self, store, factories):
        store.create("StockPressure", factories.stock_pressure(symbol="MSFT", final_pressure=30.0))
        data = analyze_symbol(store, "MSFT", news=NewsContext(), social=SocialContext())
        assert data["spi"] == 30.0
        assert data["alert"] is None

    def test_handler_offline_uses_fallback(self, store):
        result = semantic_pressure_ai({"symbols": ["NVDA"], "pause_seconds": 0}, store)
        assert result["success"]
        assert result["stats"]["successful"] == 1
        assert result["results"][0]["data"]["spi"] == 50.0

    def test_handler_requires_symbols(self, store):
        assert semantic_pressure_ai({}, store)["success"] is False


def test_learn_correlations_agreement(store, factories):
    for i, (spi, price) in enumerate([(40.0, 100.0), (50.0, 101.0), (60.0, 102.0)]):
        ts = f"2024-01-08T10:0{i}:00+00:00"
        store.create("SemanticPressure", factories.semantic(symbol="AAPL", spi=spi, timestamp=ts))
        store.create("StockPressure", factories.stock_pressure(symbol="AAPL", price=price, timestamp=ts))

    results = learn_correlations(store, ["AAPL", "MSFT"])
    assert results == [{"symbol": "AAPL", "correlation_rate": 1.0, "adjustment": "increase_weights"}]
