"""
Unit tests for the advanced order engine: cost estimates, trigger
gates, bracket/OCO lifecycles and expiry.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from advanced_orders import (
    AdvancedOrderEngine,
    MarketSnapshot,
    advanced_order_engine,
    calculate_total_cost,
    should_trigger,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(store, seeded_quotes):
    return AdvancedOrderEngine(store, delay_seconds=0)


def _market(price=100.0, pressure=50.0, sentiment="neutral"):
    return MarketSnapshot(price=price, pressure=pressure, sentiment=sentiment, spi=50.0)


def _set_quote(store, symbol, price):
    quote = store.filter("LiveQuote", {"symbol": symbol})[0]
    store.update("LiveQuote", quote["id"], {"last_price": price})


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

class TestCost:
    def test_buy_adds_costs(self):
        cost = calculate_total_cost(100.0, 10, "BUY", fee_rate=0.001, slippage_rate=0.0005)
        assert cost.base_cost == 1000.0
        assert cost.total == pytest.approx(1001.5)

    def test_sell_deducts_costs(self):
        cost = calculate_total_cost(100.0, 10, "SELL", fee_rate=0.001, slippage_rate=0.0005)
        assert cost.total == pytest.approx(998.5)


class TestShouldTrigger:
    def test_market_order_triggers(self):
        assert should_trigger({"order_type": "MARKET", "side": "BUY"}, _market())

    def test_pressure_gate(self):
        order = {"order_type": "MARKET", "side": "BUY", "pressure_condition": "ABOVE", "pressure_trigger": 60}
        assert not should_trigger(order, _market(pressure=55))
        assert should_trigger(order, _market(pressure=65))

        order.update(pressure_condition="BELOW", pressure_trigger=40)
        assert not should_trigger(order, _market(pressure=45))

    def test_sentiment_gate(self):
        order = {"order_type": "MARKET", "side": "BUY", "sentiment_trigger": "POSITIVE"}
        assert not should_trigger(order, _market(sentiment="neutral"))
        assert should_trigger(order, _market(sentiment="positive"))

    def test_stop_loss_direction(self):
        sell_stop = {"order_type": "STOP_LOSS", "side": "SELL", "stop_loss_price": 95.0}
        assert should_trigger(sell_stop, _market(price=94.0))
        assert not should_trigger(sell_stop, _market(price=96.0))

        buy_stop = {"order_type": "STOP_LOSS", "side": "BUY", "stop_loss_price": 105.0}
        assert should_trigger(buy_stop, _market(price=106.0))

    def test_take_profit_without_price(self):
        assert not should_trigger({"order_type": "TAKE_PROFIT", "side": "SELL"}, _market())


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TestCreateOrder:
    @pytest.mark.parametrize(
        "data",
        [
            {"side": "BUY", "quantity": 1},
            {"symbol": "AAPL", "side": "HOLD", "quantity": 1},
            {"symbol": "AAPL", "side": "BUY", "order_type": "ICEBERG", "quantity": 1},
            {"symbol": "AAPL", "side": "BUY", "quantity": 0},
        ],
    )
    def test_validation(self, engine, data):
        with pytest.raises(ValueError):
            engine.create_order(data)

    def test_market_order_defaults(self, engine):
        result = engine.create_order({"symbol": "aapl", "side": "buy", "quantity": 5})
        order = result["order"]

        assert result["success"]
        assert order["symbol"] == "AAPL"
        assert order["status"] == "PENDING"
        assert order["entry_price"] == 100.0
        assert order["pressure_condition"] == "NONE"
        assert order["ai_timing"] == "EXECUTE_NOW"

    def test_bracket_creates_children(self, engine, store):
        order = engine.create_order(
            {
                "symbol": "AAPL",
                "side": "BUY",
                "order_type": "BRACKET",
                "quantity": 5,
                "stop_loss_percent": -5,
                "take_profit_percent": 10,
            }
        )["order"]

        children = [store.get("AdvancedOrder", cid) for cid in order["child_order_ids"]]
        assert [c["order_type"] for c in children] == ["STOP_LOSS", "TAKE_PROFIT"]
        assert all(c["side"] == "SELL" and c["parent_order_id"] == order["id"] for c in children)
        assert children[0]["stop_loss_price"] == pytest.approx(95.0)
        assert children[1]["take_profit_price"] == pytest.approx(110.0)


class TestLifecycle:
    def test_bracket_fill_then_take_profit(self, engine, store):
        engine.create_order(
            {
                "symbol": "AAPL",
                "side": "BUY",
                "order_type": "BRACKET",
                "quantity": 5,
                "stop_loss_price": 95.0,
                "take_profit_price": 110.0,
            }
        )

        first = engine.check_orders()
        assert first.checked == 3
        assert sorted(r["status"] for r in first.results) == ["EXECUTED", "PENDING", "PENDING"]
        assert store.filter("AutoTrade", {"symbol": "AAPL", "status": "OPEN"})

        _set_quote(store, "AAPL", 111.0)
        second = engine.check_orders()
        assert sorted(r["status"] for r in second.results) == ["EXECUTED", "PENDING"]

        trade = store.filter("AutoTrade", {"symbol": "AAPL"})[0]
        assert trade["status"] == "CLOSED"
        assert trade["trade_type"] == "WIN"

    def test_oco_fill_cancels_partner(self, engine, store):
        engine.create_order({"symbol": "AAPL", "side": "BUY", "quantity": 1})
        engine.check_orders()

        result = engine.create_order(
            {
                "symbol": "AAPL",
                "side": "SELL",
                "order_type": "OCO",
                "quantity": 1,
                "oco_pair_data": {"order_type": "STOP_LOSS", "side": "SELL", "stop_loss_price": 90.0},
            }
        )
        pair_id = result["order"]["oco_pair_id"]
        engine.check_orders()

        statuses = {o["order_type"]: o["status"] for o in store.filter("AdvancedOrder", {"oco_pair_id": pair_id})}
        assert statuses == {"OCO": "FILLED", "STOP_LOSS": "CANCELLED"}

    def test_fills_send_trade_alerts(self, engine, store, monkeypatch):
        import advanced_orders

        fills = []
        monkeypatch.setattr(advanced_orders, "notify_fill", lambda *args, **kwargs: fills.append((args, kwargs)))
        engine.create_order({"symbol": "AAPL", "side": "BUY", "quantity": 2})
        engine.check_orders()
        engine.create_order({"symbol": "AAPL", "side": "SELL", "quantity": 2})
        engine.check_orders()

        assert [f[0] for f in fills] == [
            ("AAPL", "BUY (MARKET)", 2, 100.0, "advanced_order"),
            ("AAPL", "SELL (MARKET)", 2, 100.0, "advanced_order"),
        ]
        expected_gain = calculate_total_cost(100.0, 2, "SELL").total - calculate_total_cost(100.0, 2, "BUY").total
        assert fills[0][1]["profit"] is None
        assert fills[1][1]["profit"] == pytest.approx(expected_gain)

    def test_expired_orders(self, engine, store):
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        order = engine.create_order({"symbol": "AAPL", "side": "BUY", "quantity": 1, "expires_at": past})["order"]

        result = engine.check_orders()

        assert result.results == [{"order_id": order["id"], "status": "EXPIRED"}]
        assert store.get("AdvancedOrder", order["id"])["status"] == "EXPIRED"

    def test_cancel_cascades_to_children(self, engine, store):
        order = engine.create_order(
            {"symbol": "AAPL", "side": "BUY", "order_type": "BRACKET", "quantity": 1, "stop_loss_price": 90.0}
        )["order"]

        assert engine.cancel_order(order["id"])["success"]
        assert {o["status"] for o in store.list("AdvancedOrder")} == {"CANCELLED"}

    def test_cancel_unknown(self, engine):
        assert engine.cancel_order("missing") == {"success": False, "error": "Order not found"}


def test_function_modes(store, seeded_quotes):
    created = advanced_order_engine(
        {"mode": "create", "delay_seconds": 0, "order_data": {"symbol": "MSFT", "side": "BUY", "quantity": 1}},
        store,
    )
    assert created["success"]

    checked = advanced_order_engine({"mode": "check", "delay_seconds": 0}, store)
    assert checked["checked"] == 1

    assert advanced_order_engine({"mode": "create", "order_data": {}}, store)["success"] is False
    assert advanced_order_engine({"mode": "bogus"}, store)["error"] == "Invalid mode"
