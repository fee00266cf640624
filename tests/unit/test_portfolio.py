"""
Unit tests for the paper account: session-gated fills, position
bookkeeping, revaluation, data repair and performance metrics.
"""

from __future__ import annotations

from datetime import datetime

import pytest

from portfolio import (
    NO_CASH_NOTE,
    REG_ONLY_NOTE,
    PaperAccount,
    position_is_valid,
    simulate_trade,
    validate_and_fix_account,
)

REG_TIME = datetime(2024, 1, 8, 10, 0)
PRE_TIME = datetime(2024, 1, 8, 8, 0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def account(store, seeded_quotes):
    return PaperAccount(store)


def _set_quote(store, symbol, price):
    quote = store.filter("LiveQuote", {"symbol": symbol})[0]
    store.update("LiveQuote", quote["id"], {"last_price": price})


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class TestSimulateTrade:
    def test_requires_fields(self, account):
        assert account.simulate_trade("", "BUY", 1, now=REG_TIME).error == "invalid_request"

    @pytest.mark.parametrize("quantity", [-50, 0, 0.0, float("nan"), float("inf"), "ten"])
    def test_rejects_non_positive_quantity(self, account, store, quantity):
        result = account.simulate_trade("AAPL", "BUY", quantity, now=REG_TIME)

        assert not result.success
        assert result.error == "invalid_request"
        assert store.list("PortfolioPosition") == []
        assert store.list("TradeHistory") == []

    def test_negative_buy_leaves_cash_untouched(self, account, store):
        account.simulate_trade("AAPL", "BUY", -50, now=REG_TIME)
        assert float(account.get_account()["cash_balance"]) == pytest.approx(account.starting_cash)

    def test_rejected_outside_regular_session(self, account, store):
        result = account.simulate_trade("AAPL", "BUY", 1, now=PRE_TIME)

        assert result.error == "market_closed"
        assert result.message == REG_ONLY_NOTE
        assert result.trade["action"] == "REJECTED"
        assert result.trade["market_session"] == "PRE"

    def test_missing_quote(self, account):
        assert account.simulate_trade("ZZZZ", "BUY", 1, now=REG_TIME).error == "quote_not_found"

    def test_buy_fills_at_live_quote(self, account, store):
        result = account.simulate_trade("aapl", "buy", 10, now=REG_TIME)

        assert result.success
        assert result.fill_price == 100.0
        assert result.cash_balance == pytest.approx(account.starting_cash - 1000.0)
        position = store.filter("PortfolioPosition", {"symbol": "AAPL"})[0]
        assert position["quantity"] == 10
        assert result.trade["portfolio_value_after"] == pytest.approx(account.starting_cash)

    def test_buy_averages_cost(self, account, store):
        account.simulate_trade("AAPL", "BUY", 10, now=REG_TIME)
        _set_quote(store, "AAPL", 110.0)
        account.simulate_trade("AAPL", "BUY", 10, now=REG_TIME)

        position = store.filter("PortfolioPosition", {"symbol": "AAPL"})[0]
        assert position["quantity"] == 20
        assert position["avg_cost"] == pytest.approx(105.0)

    def test_insufficient_cash(self, account):
        result = account.simulate_trade("MSFT", "BUY", 1_000_000, now=REG_TIME)
        assert result.error == "insufficient_cash"
        assert result.message == NO_CASH_NOTE

    def test_sell_realizes_pnl_and_removes_position(self, account, store):
        account.simulate_trade("AAPL", "BUY", 10, now=REG_TIME)
        _set_quote(store, "AAPL", 110.0)
        result = account.simulate_trade("AAPL", "SELL", 10, now=REG_TIME)

        assert result.success
        assert result.trade["realized_pnl"] == pytest.approx(100.0)
        assert store.filter("PortfolioPosition", {"symbol": "AAPL"}) == []

    def test_fills_send_trade_alerts(self, account, store, monkeypatch):
        import portfolio

        fills = []
        monkeypatch.setattr(portfolio, "notify_fill", lambda *args, **kwargs: fills.append((args, kwargs)))
        account.simulate_trade("AAPL", "BUY", 10, now=REG_TIME)
        _set_quote(store, "AAPL", 110.0)
        account.simulate_trade("AAPL", "SELL", 10, now=REG_TIME)
        account.simulate_trade("AAPL", "SELL", 10, now=REG_TIME)

        assert [f[0][:5] for f in fills] == [
            ("AAPL", "BUY", 10.0, 100.0, "paper"),
            ("AAPL", "SELL", 10.0, 110.0, "paper"),
        ]
        assert fills[0][1]["profit"] is None
        assert fills[1][1]["profit"] == pytest.approx(100.0)

    def test_sell_more_than_held(self, account):
        account.simulate_trade("AAPL", "BUY", 1, now=REG_TIME)
        assert account.simulate_trade("AAPL", "SELL", 2, now=REG_TIME).error == "insufficient_holdings"

    def test_invalid_side(self, account):
        assert account.simulate_trade("AAPL", "SHORT", 1, now=REG_TIME).error == "invalid_action"

    def test_function_entry_point(self, store, seeded_quotes):
        result = simulate_trade({"action": "BUY", "symbol": "MSFT", "quantity": 1}, store)
        assert set(result) >= {"success", "message", "error"}


# ---------------------------------------------------------------------------
# Revaluation & repair
# ---------------------------------------------------------------------------

class TestRevaluation:
    def test_no_account(self, store):
        assert PaperAccount(store).update_account_value().error == "Account not found"

    def test_marks_positions_to_quote(self, account, store):
        account.simulate_trade("AAPL", "BUY", 10, now=REG_TIME)
        _set_quote(store, "AAPL", 120.0)

        valuation = account.update_account_value()

        assert valuation.success
        assert valuation.equity_value == pytest.approx(1200.0)
        assert valuation.total_value == pytest.approx(account.starting_cash + 200.0)
        assert valuation.sync_error == "0.0000%"
        position = store.filter("PortfolioPosition", {"symbol": "AAPL"})[0]
        assert position["unrealized_pnl"] == pytest.approx(200.0)

    def test_invalid_position_removed(self, account, store):
        account.get_account()
        store.create("PortfolioPosition", {"user_id": "local", "symbol": "AAPL", "quantity": -3, "avg_cost": 10.0})

        valuation = account.update_account_value()

        assert valuation.warnings == "1 invalid position(s) removed"
        assert store.list("PortfolioPosition") == []
        assert store.filter("ErrorLog", {"severity": "CRITICAL"})

    def test_account_repair(self, store):
        record = store.create("AccountState", {"user_id": "local", "cash_balance": -5, "equity_value": 10.0, "total_value": None})
        fixed = validate_and_fix_account(store, record)

        assert fixed["cash_balance"] == 0.0
        assert fixed["total_value"] == 10.0
        assert store.get("AccountState", record["id"])["cash_balance"] == 0.0

    def test_position_validity(self):
        assert position_is_valid({"quantity": 1, "avg_cost": 2.0})
        assert not position_is_valid({"quantity": float("nan"), "avg_cost": 2.0})


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class TestMetrics:
    def test_empty_history(self, account):
        metrics = account.calculate_metrics()
        assert metrics.total_trades == 0
        assert metrics.sharpe_ratio == 0.0

    def test_round_trips(self, account, store):
        account.simulate_trade("AAPL", "BUY", 10, now=REG_TIME)
        _set_quote(store, "AAPL", 110.0)
        account.simulate_trade("AAPL", "SELL", 10, now=REG_TIME)
        account.simulate_trade("MSFT", "BUY", 1, now=REG_TIME)
        _set_quote(store, "MSFT", 380.0)
        account.simulate_trade("MSFT", "SELL", 1, now=REG_TIME)

        metrics = account.calculate_metrics()
        assert metrics.total_trades == 2
        assert metrics.win_rate == 50.0
        assert metrics.total_pnl == pytest.approx(80.0)
        assert metrics.profit_factor == pytest.approx(5.0)
        assert metrics.largest_loss == pytest.approx(-20.0)
        assert len(account.get_equity_curve()) == 4

    def test_max_drawdown(self):
        assert PaperAccount._calculate_max_drawdown([100.0, 120.0, 90.0, 130.0]) == pytest.approx(25.0)
        assert PaperAccount._calculate_max_drawdown([]) == 0.0


def test_backup_and_restore(account, store):
    account.simulate_trade("AAPL", "BUY", 1, now=REG_TIME)
    path = account.backup()
    assert path is not None

    store.delete("PortfolioPosition", store.list("PortfolioPosition")[0]["id"])
    assert account.restore(path)
    assert len(store.list("PortfolioPosition")) == 1
