"""
Unit tests for the virtual account and the flow-reversal exit monitor.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auto_exit import (
    FLOOR_EVALUATION,
    cancel_position,
    check_and_exit,
    evaluate_exit,
    get_or_create_account,
    should_exit,
    simulate_buy,
)


@pytest.fixture
def stock(store):
    return store.create(
        "Stock",
        {"symbol": "AAPL", "name": "Apple", "price": 100.0, "flow": "IN", "confidence": 80},
    )


class TestEvaluation:
    @pytest.mark.parametrize(
        "pct,prefix",
        [(6.0, "🎉"), (3.0, "✅"), (0.5, "👍"), (-1.0, "⚠"), (-3.0, "❌")],
    )
    def test_bands(self, pct, prefix):
        en, zh = evaluate_exit(pct)
        assert en.startswith(prefix)
        assert zh.startswith(prefix)

    def test_floor(self):
        assert evaluate_exit(-5.0) == FLOOR_EVALUATION
        assert evaluate_exit(-20.0) == FLOOR_EVALUATION

    def test_should_exit_only_on_in_reversal(self):
        assert should_exit({"entry_flow": "IN"}, {"flow": "OUT"})
        assert should_exit({"entry_flow": "IN"}, {"flow": "NEUTRAL"})
        assert not should_exit({"entry_flow": "IN"}, {"flow": "IN"})
        assert not should_exit({"entry_flow": "OUT"}, {"flow": "OUT"})


class TestSimulateBuy:
    def test_moves_cash_into_invested(self, store, stock):
        starting = float(get_or_create_account(store)["available_cash"])
        result = simulate_buy(store, stock, 10)

        assert result.success
        assert result.trade["status"] == "ACTIVE"
        assert result.trade["entry_flow"] == "IN"
        assert result.account["available_cash"] == pytest.approx(starting - 1000.0)
        assert result.account["total_invested"] == pytest.approx(1000.0)
        assert result.account["total_trades"] == 1

    @pytest.mark.parametrize("shares", [0, -1, 1000])
    def test_quantity_bounds(self, store, stock, shares):
        assert simulate_buy(store, stock, shares).error == "invalid_quantity"

    def test_insufficient_cash(self, store, stock):
        account = get_or_create_account(store)
        store.update("VirtualAccount", account["id"], {"available_cash": 50.0})
        assert simulate_buy(store, stock, 1).error == "insufficient_cash"

    def test_cancel_refunds(self, store, stock):
        starting = float(get_or_create_account(store)["available_cash"])
        trade = simulate_buy(store, stock, 5).trade

        result = cancel_position(store, trade["id"])
        assert result.success
        assert result.account["available_cash"] == pytest.approx(starting)
        assert result.account["total_invested"] == pytest.approx(0.0)
        assert store.filter("SimulatedTrade", {"status": "ACTIVE"}) == []

    def test_cancel_after_exit_is_rejected(self, store, stock):
        trade = simulate_buy(store, stock, 10).trade
        store.update("Stock", stock["id"], {"flow": "OUT"})
        check_and_exit(store)
        before = get_or_create_account(store)

        result = cancel_position(store, trade["id"])

        assert not result.success
        assert result.error == "not_active"
        after = get_or_create_account(store)
        assert after["available_cash"] == pytest.approx(before["available_cash"])
        assert after["total_invested"] == pytest.approx(0.0)
        assert store.get("SimulatedTrade", trade["id"])["status"] == "CLOSED"


class TestCheckAndExit:
    def test_no_active_trades(self, store):
        assert check_and_exit(store) == []

    def test_holds_while_flow_in(self, store, stock):
        simulate_buy(store, stock, 10)
        assert check_and_exit(store) == []

    def test_exits_on_reversal(self, store, stock):
        starting = float(get_or_create_account(store)["available_cash"])
        trade = simulate_buy(store, stock, 10).trade
        store.update("Stock", stock["id"], {"flow": "OUT", "price": 106.0})
        now = datetime.now(timezone.utc) + timedelta(minutes=12)

        exits = check_and_exit(store, now=now)

        assert len(exits) == 1
        exit_ = exits[0]
        assert exit_.profit == pytest.approx(60.0)
        assert exit_.profit_percent == pytest.approx(6.0)
        assert exit_.duration_minutes in (11, 12)
        assert exit_.message_en.startswith("Sold 10 shares of AAPL at $106.00")

        closed = store.get("SimulatedTrade", trade["id"])
        assert closed["status"] == "CLOSED"
        assert closed["exit_flow"] == "OUT"

        account = get_or_create_account(store)
        assert account["available_cash"] == pytest.approx(starting + 60.0)
        assert account["total_invested"] == pytest.approx(0.0)
        assert account["total_gain_loss"] == pytest.approx(60.0)
        assert account["winning_trades"] == 1
        assert account["win_rate"] == 100.0

    def test_losing_exit_rolls_up(self, store, stock):
        starting = float(get_or_create_account(store)["available_cash"])
        simulate_buy(store, stock, 10)
        store.update("Stock", stock["id"], {"flow": "NEUTRAL", "price": 97.0})

        exits = check_and_exit(store)

        assert exits[0].profit == pytest.approx(-30.0)
        assert exits[0].profit_percent == pytest.approx(-3.0)
        assert exits[0].evaluation_en.startswith("❌")
        account = get_or_create_account(store)
        assert account["available_cash"] == pytest.approx(starting - 30.0)
        assert account["total_invested"] == pytest.approx(0.0)
        assert account["total_gain_loss"] == pytest.approx(-30.0)
        assert account["winning_trades"] == 0
        assert account["losing_trades"] == 1
        assert account["win_rate"] == 0.0

    def test_mixed_exits_win_rate(self, store, stock):
        other = store.create(
            "Stock",
            {"symbol": "MSFT", "name": "Microsoft", "price": 50.0, "flow": "IN", "confidence": 70},
        )
        simulate_buy(store, stock, 10)
        simulate_buy(store, other, 10)
        store.update("Stock", stock["id"], {"flow": "OUT", "price": 110.0})
        store.update("Stock", other["id"], {"flow": "OUT", "price": 45.0})

        exits = check_and_exit(store)

        assert len(exits) == 2
        account = get_or_create_account(store)
        assert account["winning_trades"] == 1
        assert account["losing_trades"] == 1
        assert account["win_rate"] == pytest.approx(50.0)
        assert account["total_gain_loss"] == pytest.approx(100.0 - 50.0)
        assert account["total_invested"] == pytest.approx(0.0)

    def test_missing_stock_is_skipped(self, store, stock):
        simulate_buy(store, stock, 1)
        store.delete("Stock", stock["id"])
        assert check_and_exit(store) == []
