"""
============================================================
FLOW-PRESSURE v1.0 - Reports
============================================================
1. Manual trading report (DAILY / WEEKLY): manual vs automated
   AutoTrade performance, best/worst symbol, a win-rate correlation and
   AI commentary; upserted as ManualTradingReport per (date, type).
2. Flow report: fill counts, per-symbol cash flow and the share of
   FRESH pressure readings; written to ``reports/FlowReport.json``.

Usage:
    from reports import generate_manual_trading_report

    report = generate_manual_trading_report(store, report_type="WEEKLY")
    print(report["manual_win_rate"], report["auto_win_rate"])
============================================================
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from config import get_logger, get_settings
from entity_store import EntityStore, atomic_write_json, get_store, utc_now_iso
from functions import register
from llm import invoke_llm

logger = get_logger(__name__)
settings = get_settings()

REPORT_TYPES = ("DAILY", "WEEKLY")

COMMENTARY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "commentary": {"type": "string"},
        "commentary_zh": {"type": "string"},
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "recommendations_zh": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["commentary", "recommendations"],
}

# Fallback glossary when the model returns English only.
_ZH_TERMS = (
    (r"AI auto", "AI自動"),
    (r"manual", "手動"),
    (r"performance", "表現"),
    (r"win rate", "勝率"),
    (r"average return", "平均回報"),
    (r"trading", "交易"),
    (r"strategy", "策略"),
)


@dataclass
class TradeStats:
    total_trades: int = 0
    win_trades: int = 0
    win_rate: float = 0.0
    avg_return: float = 0.0
    total_pl: float = 0.0


# ──────────────────────────────────────────────────────────
# HELPERS
# ──────────────────────────────────────────────────────────


def report_window(report_date: str, report_type: str) -> Tuple[datetime, datetime]:
    """UTC [start, end] for a DAILY day or the WEEKLY 7 days ending on it."""
    day = date.fromisoformat(report_date)
    end = datetime.combine(day, time.max, tzinfo=timezone.utc)
    start_day = day - timedelta(days=6) if report_type == "WEEKLY" else day
    return datetime.combine(start_day, time.min, tzinfo=timezone.utc), end


def is_manual_entry(trade: Dict[str, Any]) -> bool:
    return "Manual" in str(trade.get("entry_reason_en") or "") or "手動" in str(trade.get("entry_reason_zh") or "")


def trade_stats(trades: List[Dict[str, Any]]) -> TradeStats:
    if not trades:
        return TradeStats()
    frame = pd.DataFrame(trades)
    wins = int((frame.get("trade_type") == "WIN").sum()) if "trade_type" in frame else 0
    pl_percent = pd.to_numeric(frame.get("pl_percent"), errors="coerce").fillna(0.0)
    pl_amount = pd.to_numeric(frame.get("pl_amount"), errors="coerce").fillna(0.0)
    return TradeStats(
        total_trades=len(frame),
        win_trades=wins,
        win_rate=wins / len(frame) * 100.0,
        avg_return=float(pl_percent.mean()),
        total_pl=float(pl_amount.sum()),
    )


def symbol_extremes(trades: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Best and worst symbol by mean pl_percent.

    Best must be strictly positive, otherwise it stays ``N/A`` with 0.
    """
    best = {"symbol": "N/A", "avg_return": 0.0}
    worst = {"symbol": "N/A", "avg_return": 0.0}
    if not trades:
        return {"best": best, "worst": worst}

    frame = pd.DataFrame(trades)
    frame["pl_percent"] = pd.to_numeric(frame.get("pl_percent"), errors="coerce").fillna(0.0)
    means = frame.groupby("symbol", sort=False)["pl_percent"].mean()

    top = means.idxmax()
    if means[top] > 0:
        best = {"symbol": top, "avg_return": float(means[top])}
    bottom = means.idxmin()
    worst = {"symbol": bottom, "avg_return": float(means[bottom])}
    return {"best": best, "worst": worst}


def win_rate_correlation(manual: TradeStats, auto: TradeStats) -> float:
    """1 - |win-rate gap| / 100, or 0.5 without trades on both sides."""
    if manual.total_trades and auto.total_trades:
        return max(0.0, min(1.0, 1.0 - abs(manual.win_rate - auto.win_rate) / 100.0))
    return 0.5


def translate_terms(text: str) -> str:
    for pattern, zh in _ZH_TERMS:
        text = re.sub(pattern, zh, text, flags=re.IGNORECASE)
    return text


def _trade_row(trade: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "symbol": trade.get("symbol"),
        "entry_time": trade.get("entry_time"),
        "exit_time": trade.get("exit_time"),
        "shares": trade.get("shares"),
        "buy_price": trade.get("buy_price"),
        "sell_price": trade.get("sell_price"),
        "pl_percent": trade.get("pl_percent"),
        "pl_amount": trade.get("pl_amount"),
        "result": trade.get("trade_type"),
    }


def ai_commentary(manual: TradeStats, auto: TradeStats, correlation: float) -> Dict[str, Any]:
    leader = "Manual" if manual.win_rate >= auto.win_rate else "AI auto"
    fallback = {
        "commentary": (
            f"{leader} trading leads on win rate ({manual.win_rate:.1f}% manual vs "
            f"{auto.win_rate:.1f}% AI auto). Manual total P/L ${manual.total_pl:.2f}, "
            f"AI auto total P/L ${auto.total_pl:.2f}."
        ),
        "recommendations": [],
    }
    prompt = (
        "You are an AI trading performance analyst. Analyze the following trading data.\n\n"
        "Manual Trading Performance:\n"
        f"- Total Trades: {manual.total_trades}\n"
        f"- Win Rate: {manual.win_rate:.2f}%\n"
        f"- Average Return: {manual.avg_return:.2f}%\n"
        f"- Total P/L: ${manual.total_pl:.2f}\n\n"
        "AI Auto Trading Performance:\n"
        f"- Total Trades: {auto.total_trades}\n"
        f"- Win Rate: {auto.win_rate:.2f}%\n"
        f"- Average Return: {auto.avg_return:.2f}%\n"
        f"- Total P/L: ${auto.total_pl:.2f}\n\n"
        f"Correlation: {correlation * 100:.1f}%\n\n"
        "Provide a 2-3 sentence commentary comparing manual vs AI performance and three "
        "actionable recommendations, each in English and Traditional Chinese."
    )
    return invoke_llm(prompt, COMMENTARY_SCHEMA, fallback, name="manual_trading_report")


# ──────────────────────────────────────────────────────────
# MANUAL TRADING REPORT
# ──────────────────────────────────────────────────────────


def generate_manual_trading_report(
    store: EntityStore,
    report_date: Optional[str] = None,
    report_type: str = "DAILY",
) -> Dict[str, Any]:
    """
    Build and upsert the ManualTradingReport for a day or week.

    Raises:
        ValueError: On an unknown report type or malformed date.
    """
    report_type = report_type.upper()
    if report_type not in REPORT_TYPES:
        raise ValueError(f"Invalid report type: {report_type!r}")
    report_date = report_date or datetime.now(timezone.utc).date().isoformat()
    start, end = report_window(report_date, report_type)

    in_range = []
    for trade in store.list("AutoTrade", sort="-entry_time"):
        try:
            entered = datetime.fromisoformat(str(trade.get("entry_time")))
        except ValueError:
            continue
        if entered.tzinfo is None:
            entered = entered.replace(tzinfo=timezone.utc)
        if start <= entered <= end:
            in_range.append(trade)

    manual_closed = [t for t in in_range if is_manual_entry(t) and t.get("status") == "CLOSED"]
    auto_closed = [t for t in in_range if not is_manual_entry(t) and t.get("status") == "CLOSED"]

    manual = trade_stats(manual_closed)
    auto = trade_stats(auto_closed)
    manual_perf = symbol_extremes(manual_closed)
    auto_perf = symbol_extremes(auto_closed)
    correlation = win_rate_correlation(manual, auto)

    ai = ai_commentary(manual, auto, correlation)
    commentary = ai.get("commentary") or ""
    recommendations = list(ai.get("recommendations") or [])

    report = {
        "report_date": report_date,
        "report_type": report_type,
        "manual_total_trades": manual.total_trades,
        "manual_win_trades": manual.win_trades,
        "manual_win_rate": manual.win_rate,
        "manual_avg_return": manual.avg_return,
        "manual_total_pl": manual.total_pl,
        "auto_total_trades": auto.total_trades,
        "auto_win_trades": auto.win_trades,
        "auto_win_rate": auto.win_rate,
        "auto_avg_return": auto.avg_return,
        "auto_total_pl": auto.total_pl,
        "correlation": correlation,
        "manual_best_stock": manual_perf["best"]["symbol"],
        "manual_best_return": manual_perf["best"]["avg_return"],
        "manual_worst_stock": manual_perf["worst"]["symbol"],
        "manual_worst_return": manual_perf["worst"]["avg_return"],
        "auto_best_stock": auto_perf["best"]["symbol"],
        "auto_best_return": auto_perf["best"]["avg_return"],
        "auto_worst_stock": auto_perf["worst"]["symbol"],
        "auto_worst_return": auto_perf["worst"]["avg_return"],
        "ai_commentary_en": commentary,
        "ai_commentary_zh": ai.get("commentary_zh") or translate_terms(commentary),
        "recommendations_en": recommendations,
        "recommendations_zh": ai.get("recommendations_zh") or [translate_terms(r) for r in recommendations],
        "trade_details": json.dumps(
            {"manual": [_trade_row(t) for t in manual_closed], "auto": [_trade_row(t) for t in auto_closed]},
            ensure_ascii=False,
        ),
    }

    existing = store.filter("ManualTradingReport", {"report_date": report_date, "report_type": report_type})
    if existing:
        store.update("ManualTradingReport", existing[0]["id"], report)
    else:
        store.create("ManualTradingReport", report)

    logger.info(
        "%s report %s: manual %d trades, auto %d trades",
        report_type,
        report_date,
        manual.total_trades,
        auto.total_trades,
    )
    return report


@register("generateManualTradingReport")
def generate_manual_trading_report_fn(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    report_type = payload.get("report_type") or "DAILY"
    try:
        report = generate_manual_trading_report(store, payload.get("report_date"), report_type)
    except ValueError as exc:
        return {"success": False, "error": str(exc)}
    return {
        "success": True,
        "report": report,
        "message": f"{report['report_type']} report generated for {report['report_date']}",
    }


# ──────────────────────────────────────────────────────────
# FLOW REPORT
# ──────────────────────────────────────────────────────────


def cash_flow_by_symbol(fills: List[Dict[str, Any]]) -> Dict[str, float]:
    """SELL proceeds minus BUY costs per symbol."""
    flows: Dict[str, float] = {}
    for fill in fills:
        action = fill.get("action")
        if action not in ("BUY", "SELL"):
            continue
        notional = float(fill.get("fill_price") or 0.0) * float(fill.get("quantity") or 0.0)
        symbol = fill.get("symbol") or "?"
        flows[symbol] = flows.get(symbol, 0.0) + (notional if action == "SELL" else -notional)
    return flows


def generate_flow_report(store: EntityStore, day: Optional[str] = None) -> Dict[str, Any]:
    """Daily summary of paper fills, manual trades and quote freshness."""
    day = day or datetime.now(timezone.utc).date().isoformat()
    fills = [
        r for r in store.list("TradeHistory")
        if r.get("action") in ("BUY", "SELL") and str(r.get("timestamp", "")).startswith(day)
    ]
    manual = [
        t for t in store.list("AutoTrade")
        if is_manual_entry(t) and str(t.get("entry_time", "")).startswith(day)
    ]
    readings = [r for r in store.list("StockPressure") if str(r.get("timestamp", "")).startswith(day)]

    profit = cash_flow_by_symbol(fills)
    fresh = sum(1 for r in readings if r.get("data_status", "FRESH") == "FRESH")
    return {
        "date": day,
        "total_trades": len(fills) + len(manual),
        "auto_trades": len(fills),
        "manual_trades": len(manual),
        "profit_by_symbol": profit,
        "total_profit": sum(profit.values()),
        "quote_fresh_ratio": fresh / max(len(readings), 1),
        "generated_at": utc_now_iso(),
    }


def export_flow_report(store: EntityStore, path: Optional[Path] = None) -> Dict[str, Any]:
    summary = generate_flow_report(store)
    path = path or Path("reports") / "FlowReport.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_json(path, summary)
    logger.info("Flow report written to %s", path)
    return summary


if __name__ == "__main__":
    import sys

    store = get_store()
    if len(sys.argv) > 1 and sys.argv[1] == "flow":
        print(json.dumps(export_flow_report(store), indent=2))
    else:
        kind = sys.argv[1].upper() if len(sys.argv) > 1 else "DAILY"
        result = generate_manual_trading_report(store, report_type=kind)
        print(json.dumps({k: v for k, v in result.items() if k != "trade_details"}, indent=2, ensure_ascii=False))
