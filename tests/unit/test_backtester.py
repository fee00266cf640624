"""
Unit tests for the strategy backtester.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backtester import (
    NO_LOSS_PROFIT_FACTOR,
    StrategyConfig,
    apply_exit_rules,
    run_backtest,
    select_trades,
    sharpe_ratio,
    simulate,
    strategy_backtester,
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 31, tzinfo=timezone.utc)


def _trade(day, pl_percent, confidence=80, symbol="AAPL", status="CLOSED"):
    return {
        "symbol": symbol,
        "status": status,
        "entry_confidence": confidence,
        "pl_percent": pl_percent,
        "entry_time": f"2024-01-{day:02d}T14:30:00+00:00",
        "exit_time": f"2024-01-{day:02d}T15:30:00+00:00",
    }


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

class TestExitRules:
    def test_clip_to_target_and_stop(self):
        strategy = StrategyConfig(profit_target=5.0, stop_loss=-3.0)
        assert apply_exit_rules(8.0, strategy) == 5.0
        assert apply_exit_rules(-7.0, strategy) == -3.0
        assert apply_exit_rules(1.0, strategy) == 1.0

    def test_trailing_stop_gives_back_distance(self):
        strategy = StrategyConfig(trailing_stop=True, trailing_stop_distance=1.0)
        assert apply_exit_rules(4.0, strategy) == 3.0
        assert apply_exit_rules(0.5, strategy) == 0.0
        assert apply_exit_rules(-2.0, strategy) == -2.0

    def test_sharpe(self):
        assert sharpe_ratio([]) == 0.0
        assert sharpe_ratio([1.0, 1.0]) == 0.0
        assert sharpe_ratio([1.0, -1.0, 2.0]) > 0

    def test_select_trades_orders_and_filters(self):
        trades = [_trade(10, 1.0), _trade(5, 1.0), _trade(7, 1.0, status="OPEN"), {"status": "CLOSED"}]
        selected = select_trades(trades, START, END)
        assert [t["entry_time"][:10] for t in selected] == ["2024-01-05", "2024-01-10"]

    def test_config_from_record_ignores_unknown(self):
        strategy = StrategyConfig.from_record({"strategy_name": "Fast", "stop_loss": -2, "id": "x", "profit_target": None})
        assert strategy.strategy_name == "Fast"
        assert strategy.stop_loss == -2
        assert strategy.profit_target == 5.0


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

class TestSimulate:
    def test_filters_and_sizing(self):
        trades = [_trade(2, 10.0), _trade(3, 2.0, confidence=40), _trade(4, 20.0), _trade(5, -4.0)]
        result = simulate(trades, StrategyConfig(), 10_000.0, START)
        m = result.metrics

        assert m.total_trades == 2
        assert result.trade_log[0]["pnl"] == pytest.approx(50.0)
        assert result.trade_log[1]["return_pct"] == -3.0
        assert m.final_capital == pytest.approx(10_050.0 - 10_050.0 * 0.1 * 0.03)
        assert m.consecutive_wins_max == 1
        assert m.avg_trade_duration == pytest.approx(60.0)
        assert len(result.equity_curve) == 3
        assert result.performance_by_symbol["AAPL"]["win_rate"] == 50.0

    def test_cool_down_after_losses(self):
        strategy = StrategyConfig(max_consecutive_losses=2)
        trades = [_trade(2, -1.0), _trade(3, -1.0), _trade(4, 2.0), _trade(5, 2.0)]

        result = simulate(trades, strategy, 10_000.0, START)

        assert [t["entry_time"][:10] for t in result.trade_log] == ["2024-01-02", "2024-01-03", "2024-01-05"]
        assert result.metrics.consecutive_losses_max == 2

    def test_halts_at_max_daily_loss(self):
        strategy = StrategyConfig(max_position_size=0.5, stop_loss=-50.0, volatility_threshold=100.0)
        trades = [_trade(2, -20.0), _trade(3, 5.0)]

        result = simulate(trades, strategy, 10_000.0, START)

        assert result.metrics.total_trades == 0
        assert result.metrics.final_capital == pytest.approx(9_000.0)

    def test_no_losses_profit_factor(self):
        result = simulate([_trade(2, 1.0)], StrategyConfig(), 10_000.0, START)
        assert result.metrics.profit_factor == NO_LOSS_PROFIT_FACTOR
        assert result.metrics.max_drawdown == 0.0


# ---------------------------------------------------------------------------
# Store-backed runs
# ---------------------------------------------------------------------------

class TestRunBacktest:
    def test_empty_range(self, store):
        result = run_backtest(store, StrategyConfig(), start_date=START.isoformat(), end_date=END.isoformat())
        assert not result.success
        assert result.start_date == "2024-01-01"

    def test_replays_store_trades_in_entry_order(self, store):
        store.bulk_create("AutoTrade", [_trade(5, 2.0), _trade(2, -1.0), _trade(4, 2.0), _trade(3, -1.0)])
        strategy = StrategyConfig(max_consecutive_losses=2, trailing_stop=True, trailing_stop_distance=0.5)

        result = run_backtest(store, strategy, start_date=START.isoformat(), end_date=END.isoformat())

        assert [t["entry_time"][:10] for t in result.trade_log] == ["2024-01-02", "2024-01-03", "2024-01-05"]
        assert [t["return_pct"] for t in result.trade_log] == [-1.0, -1.0, 1.5]
        assert [p["date"][:10] for p in result.equity_curve[1:]] == ["2024-01-02", "2024-01-03", "2024-01-05"]

    def test_function_saves_result(self, store):
        store.bulk_create("AutoTrade", [_trade(2, 3.0), _trade(3, -1.0, symbol="MSFT")])
        strategy = store.create("AIStrategy", {"strategy_name": "Balanced", "profit_target": 4.0})

        response = strategy_backtester(
            {
                "strategy_id": strategy["id"],
                "start_date": START.isoformat(),
                "end_date": END.isoformat(),
                "initial_capital": 10_000,
            },
            store,
        )

        assert response["success"]
        assert response["summary"]["total_trades"] == 2
        saved = store.get("BacktestResult", response["backtest_id"])
        assert saved["strategy_name"] == "Balanced"
        assert saved["ai_evaluation_en"].startswith("2 trades")

    def test_function_errors(self, store):
        assert strategy_backtester({}, store)["error"] == "Strategy ID required"
        assert strategy_backtester({"strategy_id": "nope"}, store)["error"] == "Strategy not found"
