"""
============================================================
FLOW-PRESSURE v1.0 - Strategy Backtester
============================================================
Replays CLOSED AutoTrades through an AIStrategy's risk rules.

Per trade (chronological, oldest entry first, so the cool-down and the
halt act on losses in the order they happened):
1. Skip if entry confidence < entry_confidence_min
2. Skip if |pl_percent| > volatility_threshold
3. After max_consecutive_losses, skip one trade (cool-down)
4. Size = capital * max_position_size
5. Clip return to [stop_loss, profit_target]; with trailing_stop on, a
   winner gives back trailing_stop_distance points (never below 0)
6. Stop the run once drawdown from initial capital <= max_daily_loss

Usage:
    from backtester import run_backtest, StrategyConfig

    result = run_backtest(store, StrategyConfig(strategy_name="Balanced"))
    print(result.metrics.sharpe_ratio)
============================================================
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import numpy as np

from config import get_logger, get_settings
from entity_store import EntityNotFoundError, EntityStore, get_store, utc_now_iso
from functions import register
from llm import invoke_llm

logger = get_logger(__name__)
settings = get_settings()

DEFAULT_LOOKBACK_DAYS = 30
NO_LOSS_PROFIT_FACTOR = 999.0

AI_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "evaluation": {"type": "string"},
        "evaluation_zh": {"type": "string"},
        "confidence": {"type": "number"},
        "suggestions": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["evaluation", "confidence", "suggestions"],
}


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class StrategyConfig:
    """AIStrategy fields used by the backtest (percent units)."""

    strategy_name: str = "Default"
    risk_tolerance: str = "MEDIUM"
    entry_confidence_min: float = 60.0
    volatility_threshold: float = 10.0
    max_consecutive_losses: int = 3
    max_position_size: float = 0.1
    profit_target: float = 5.0
    stop_loss: float = -3.0
    trailing_stop: bool = False
    trailing_stop_distance: float = 1.0
    max_daily_loss: float = -5.0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "StrategyConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known and v is not None})


@dataclass
class BacktestMetrics:
    initial_capital: float
    final_capital: float
    total_return: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    avg_win: float
    avg_loss: float
    largest_win: float
    largest_loss: float
    profit_factor: float
    sharpe_ratio: float
    max_drawdown: float
    max_drawdown_duration: float
    recovery_factor: float
    consecutive_wins_max: int
    consecutive_losses_max: int
    avg_trade_duration: float


@dataclass
class BacktestResult:
    success: bool
    metrics: Optional[BacktestMetrics] = None
    equity_curve: List[Dict[str, Any]] = field(default_factory=list)
    trade_log: List[Dict[str, Any]] = field(default_factory=list)
    performance_by_symbol: Dict[str, Dict[str, float]] = field(default_factory=dict)
    start_date: str = ""
    end_date: str = ""
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────
# HELPERS
# ──────────────────────────────────────────────────────────


def _parse(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def apply_exit_rules(pl_percent: float, strategy: StrategyConfig) -> float:
    """
    Clip a historical return to the strategy's target, stop and trailing stop.

    The trailing stop models the give-back of a stop trailing the peak by
    ``trailing_stop_distance`` percentage points: a winner keeps
    ``ret - distance``, floored at 0. Losers are unaffected.
    """
    ret = min(pl_percent, strategy.profit_target)
    ret = max(ret, strategy.stop_loss)
    if strategy.trailing_stop and ret > 0:
        ret = max(ret - strategy.trailing_stop_distance, 0.0)
    return ret


def sharpe_ratio(returns: List[float]) -> float:
    """Annualized mean / population std of per-trade returns."""
    if not returns:
        return 0.0
    arr = np.array(returns, dtype=float)
    std = float(arr.std())
    if std == 0:
        return 0.0
    return float(arr.mean() / std * np.sqrt(252))


def select_trades(
    trades: List[Dict[str, Any]],
    start: datetime,
    end: datetime,
) -> List[Dict[str, Any]]:
    """
    CLOSED trades entered within [start, end], oldest first.

    The store lists AutoTrades newest first; replaying in entry order keeps
    the consecutive-loss cool-down and the loss halt in trading order.
    """
    selected = []
    for trade in trades:
        entered = _parse(trade.get("entry_time"))
        if trade.get("status") == "CLOSED" and entered and start <= entered <= end:
            selected.append(trade)
    return sorted(selected, key=lambda t: str(t.get("entry_time")))


# ──────────────────────────────────────────────────────────
# SIMULATION
# ──────────────────────────────────────────────────────────


def simulate(
    trades: List[Dict[str, Any]],
    strategy: StrategyConfig,
    initial_capital: float,
    start: datetime,
) -> BacktestResult:
    """Replay ``trades`` (already filtered and ordered) under ``strategy``."""
    capital = initial_capital
    max_capital = initial_capital
    min_capital = initial_capital
    max_drawdown = 0.0
    max_dd_duration = 0.0
    drawdown_start: Optional[datetime] = None

    equity_curve: List[Dict[str, Any]] = [{"date": start.isoformat(), "equity": capital}]
    trade_log: List[Dict[str, Any]] = []
    returns: List[float] = []
    by_symbol: Dict[str, Dict[str, float]] = {}

    wins_run = losses_run = 0
    max_wins_run = max_losses_run = 0
    cooldown_losses = 0
    total_duration = 0.0

    for trade in trades:
        confidence = trade.get("entry_confidence")
        confidence = 50.0 if confidence is None else float(confidence)
        historical = float(trade.get("pl_percent") or 0.0)

        if confidence < strategy.entry_confidence_min:
            continue
        if abs(historical) > strategy.volatility_threshold:
            continue
        if cooldown_losses >= strategy.max_consecutive_losses:
            cooldown_losses = 0
            continue

        size = capital * strategy.max_position_size
        ret = apply_exit_rules(historical, strategy)
        pnl = size * ret / 100.0
        capital += pnl
        exited = _parse(trade.get("exit_time"))

        if capital > max_capital:
            max_capital = capital
            if drawdown_start and exited:
                max_dd_duration = max(max_dd_duration, (exited - drawdown_start).total_seconds() / 86400.0)
                drawdown_start = None
        if capital < min_capital:
            min_capital = capital
            if drawdown_start is None:
                drawdown_start = exited

        max_drawdown = min(max_drawdown, (capital - max_capital) / max_capital * 100.0)

        if (capital - initial_capital) / initial_capital * 100.0 <= strategy.max_daily_loss:
            logger.info("Backtest halted: max daily loss %.2f%% reached.", strategy.max_daily_loss)
            break

        won = pnl >= 0
        trade_log.append(
            {
                "symbol": trade.get("symbol"),
                "entry_time": trade.get("entry_time"),
                "exit_time": trade.get("exit_time"),
                "position_size": size,
                "return_pct": ret,
                "pnl": pnl,
                "capital_after": capital,
                "result": "WIN" if won else "LOSS",
            }
        )

        if won:
            wins_run += 1
            losses_run = 0
            cooldown_losses = 0
            max_wins_run = max(max_wins_run, wins_run)
        else:
            losses_run += 1
            wins_run = 0
            cooldown_losses += 1
            max_losses_run = max(max_losses_run, losses_run)

        equity_curve.append({"date": trade.get("exit_time"), "equity": capital})
        returns.append(pnl / (capital - pnl) * 100.0 if capital - pnl else 0.0)

        stats = by_symbol.setdefault(trade.get("symbol") or "?", {"trades": 0, "wins": 0, "total_pnl": 0.0})
        stats["trades"] += 1
        stats["wins"] += 1 if won else 0
        stats["total_pnl"] += pnl

        entered = _parse(trade.get("entry_time"))
        if entered and exited:
            total_duration += (exited - entered).total_seconds() / 60.0

    for stats in by_symbol.values():
        stats["win_rate"] = stats["wins"] / stats["trades"] * 100.0
        stats["avg_return"] = stats["total_pnl"] / stats["trades"]

    winners = [t for t in trade_log if t["result"] == "WIN"]
    losers = [t for t in trade_log if t["result"] == "LOSS"]
    total = len(trade_log)
    total_return = (capital - initial_capital) / initial_capital * 100.0
    win_amount = sum(t["pnl"] for t in winners)
    loss_amount = abs(sum(t["pnl"] for t in losers))
    if loss_amount > 0:
        profit_factor = win_amount / loss_amount
    else:
        profit_factor = NO_LOSS_PROFIT_FACTOR if win_amount > 0 else 0.0

    metrics = BacktestMetrics(
        initial_capital=initial_capital,
        final_capital=capital,
        total_return=total_return,
        total_trades=total,
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=len(winners) / total * 100.0 if total else 0.0,
        avg_win=sum(t["return_pct"] for t in winners) / len(winners) if winners else 0.0,
        avg_loss=sum(t["return_pct"] for t in losers) / len(losers) if losers else 0.0,
        largest_win=max((t["return_pct"] for t in trade_log), default=0.0),
        largest_loss=min((t["return_pct"] for t in trade_log), default=0.0),
        profit_factor=profit_factor,
        sharpe_ratio=sharpe_ratio(returns),
        max_drawdown=max_drawdown,
        max_drawdown_duration=max_dd_duration,
        recovery_factor=total_return / abs(max_drawdown) if max_drawdown else 0.0,
        consecutive_wins_max=max_wins_run,
        consecutive_losses_max=max_losses_run,
        avg_trade_duration=total_duration / total if total else 0.0,
    )
    return BacktestResult(
        success=True,
        metrics=metrics,
        equity_curve=equity_curve,
        trade_log=trade_log,
        performance_by_symbol=by_symbol,
    )


def evaluate_with_ai(strategy: StrategyConfig, result: BacktestResult) -> Dict[str, Any]:
    m = result.metrics
    fallback = {
        "evaluation": (
            f"{m.total_trades} trades, {m.win_rate:.1f}% win rate, "
            f"{m.total_return:+.2f}% total return, max drawdown {m.max_drawdown:.2f}%."
        ),
        "evaluation_zh": (
            f"共 {m.total_trades} 筆交易，勝率 {m.win_rate:.1f}%，"
            f"總報酬 {m.total_return:+.2f}%，最大回撤 {m.max_drawdown:.2f}%。"
        ),
        "confidence": round(min(100.0, max(0.0, m.win_rate)), 1),
        "suggestions": [],
    }
    prompt = (
        "You are an expert quantitative trading analyst. Evaluate this backtest result:\n\n"
        f"Strategy: {strategy.strategy_name}\n"
        f"Risk Tolerance: {strategy.risk_tolerance}\n"
        f"Period: {result.start_date} to {result.end_date}\n\n"
        "Results:\n"
        f"- Total Return: {m.total_return:.2f}%\n"
        f"- Win Rate: {m.win_rate:.2f}%\n"
        f"- Total Trades: {m.total_trades}\n"
        f"- Sharpe Ratio: {m.sharpe_ratio:.2f}\n"
        f"- Max Drawdown: {m.max_drawdown:.2f}%\n"
        f"- Profit Factor: {m.profit_factor:.2f}\n"
        f"- Avg Win: {m.avg_win:.2f}%\n"
        f"- Avg Loss: {m.avg_loss:.2f}%\n\n"
        "Provide a brief evaluation (3-4 sentences) in English and Traditional Chinese, "
        "a 0-100 confidence score on strategy viability and three optimization suggestions."
    )
    return invoke_llm(prompt, AI_SCHEMA, fallback, name="backtest_evaluation")


def run_backtest(
    store: EntityStore,
    strategy: StrategyConfig,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    initial_capital: Optional[float] = None,
) -> BacktestResult:
    """
    Backtest ``strategy`` over CLOSED AutoTrades in the date range.

    Dates default to the last 30 days. Returns a failed result when no
    trade falls in the range.
    """
    initial_capital = settings.backtest_initial_capital if initial_capital is None else initial_capital
    end = _parse(end_date) or datetime.now(timezone.utc)
    start = _parse(start_date) or end - timedelta(days=DEFAULT_LOOKBACK_DAYS)

    trades = select_trades(store.list("AutoTrade", sort="-entry_time"), start, end)
    if not trades:
        return BacktestResult(
            success=False,
            start_date=start.date().isoformat(),
            end_date=end.date().isoformat(),
            error="No historical data available for the specified period",
        )

    logger.info("Backtesting %s over %d trades.", strategy.strategy_name, len(trades))
    result = simulate(trades, strategy, float(initial_capital), start)
    result.start_date = start.date().isoformat()
    result.end_date = end.date().isoformat()
    return result


@register("strategyBacktester")
def strategy_backtester(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """
    ``{"strategy_id": ..., "start_date", "end_date", "initial_capital"}``;
    ``strategy`` may be passed inline instead of an AIStrategy id.
    """
    strategy_id = payload.get("strategy_id")
    if payload.get("strategy"):
        strategy = StrategyConfig.from_record(payload["strategy"])
    elif strategy_id:
        try:
            strategy = StrategyConfig.from_record(store.get("AIStrategy", strategy_id))
        except EntityNotFoundError:
            return {"success": False, "error": "Strategy not found"}
    else:
        return {"success": False, "error": "Strategy ID required"}

    result = run_backtest(
        store,
        strategy,
        start_date=payload.get("start_date"),
        end_date=payload.get("end_date"),
        initial_capital=payload.get("initial_capital"),
    )
    if not result.success:
        return {
            "success": False,
            "error": result.error,
            "suggestion": "Try a different date range or run some trades first",
        }

    ai = evaluate_with_ai(strategy, result)
    m = result.metrics
    saved = store.create(
        "BacktestResult",
        {
            "strategy_id": strategy_id,
            "strategy_name": strategy.strategy_name,
            "backtest_date": utc_now_iso(),
            "start_date": result.start_date,
            "end_date": result.end_date,
            **asdict(m),
            "equity_curve": json.dumps(result.equity_curve),
            "trade_log": json.dumps(result.trade_log[:100]),
            "performance_by_symbol": json.dumps(result.performance_by_symbol),
            "ai_evaluation_en": ai.get("evaluation"),
            "ai_evaluation_zh": ai.get("evaluation_zh") or ai.get("evaluation"),
            "optimization_suggestions": ai.get("suggestions") or [],
            "confidence_score": ai.get("confidence"),
        },
    )

    return {
        "success": True,
        "backtest_id": saved["id"],
        "summary": {
            "total_return": f"{m.total_return:.2f}",
            "win_rate": f"{m.win_rate:.2f}",
            "sharpe_ratio": f"{m.sharpe_ratio:.2f}",
            "max_drawdown": f"{m.max_drawdown:.2f}",
            "total_trades": m.total_trades,
            "confidence_score": ai.get("confidence"),
        },
        "message": "Backtest completed successfully",
    }


if __name__ == "__main__":
    import sys

    days = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_LOOKBACK_DAYS
    start_iso = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    run = run_backtest(get_store(), StrategyConfig(), start_date=start_iso)
    if not run.success:
        print(f"❌ {run.error}")
        sys.exit(1)
    print(json.dumps(asdict(run.metrics), indent=2))
