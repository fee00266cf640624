"""
Unit tests for the function registry and the bilingual message catalog.
"""

from __future__ import annotations

import pytest

from functions import UnknownFunctionError, available_functions, invoke, register
from i18n import MESSAGES, both, t


class TestRegistry:
    def test_every_entry_point_registered(self):
        names = available_functions()
        for expected in (
            "fetchLiveQuotes",
            "stockPressureIndexCalculator",
            "semanticPressureAI",
            "opportunityScanner",
            "advancedOrderEngine",
            "simulateTrade",
            "updateAccountValue",
            "strategyBacktester",
            "generateManualTradingReport",
            "aiLearning",
        ):
            assert expected in names

    def test_unknown_function(self, store):
        with pytest.raises(UnknownFunctionError):
            invoke("doesNotExist", {}, store)

    def test_invoke_passes_payload_and_store(self, store):
        @register("echoForTest")
        def _echo(payload, received_store):
            return {"payload": payload, "same_store": received_store is store}

        assert invoke("echoForTest", {"a": 1}, store) == {"payload": {"a": 1}, "same_store": True}
        assert invoke("echoForTest", None, store)["payload"] == {}

    def test_invoke_real_function(self, store):
        result = invoke("updateAccountValue", {}, store)
        assert result == {
            "success": False,
            "cash_balance": 0.0,
            "equity_value": 0.0,
            "total_value": 0.0,
            "sync_error": "0.0000%",
            "error": "Account not found",
        }


class TestCatalog:
    def test_all_entries_are_bilingual(self):
        for key, entry in MESSAGES.items():
            assert set(entry) == {"en", "zh"}, key

    def test_format_and_fallback(self):
        assert t("buy_success", "en", shares=2, symbol="AAPL", price=1.5) == "Bought 2 AAPL @ $1.50"
        assert t("insufficient_capital", "zh") == "資金不足"
        assert t("insufficient_capital", "fr") == "Insufficient capital"
        assert t("not_a_key") == "not_a_key"

    def test_both(self):
        assert both("watch_added", symbol="NVDA") == {
            "en": "Added NVDA to the watchlist",
            "zh": "已將 NVDA 加入監控",
        }
