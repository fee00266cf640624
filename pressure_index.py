"""
============================================================
FLOW-PRESSURE v1.0 - Stock Pressure Index
============================================================
Where is price sitting inside today's range?

    pressure = (current - low) / (high - low) * 100     (50 if high == low)

0 means pinned at the day low (selling exhausted, buy zone),
100 means pinned at the day high (stretched, sell zone).

Pipeline per symbol:
1. Quote (Finnhub/yfinance)                    -> basic pressure
2. Shares outstanding * 0.0001                 -> volatility factor
3. adjusted = min(100, basic + factor)
4. final    = (basic + adjusted) / 2
5. Zone (<40 BUY_ZONE, >70 SELL_ZONE) and action (<45 BUY, >70 SELL)
6. Persist a StockPressure record

Usage:
    from pressure_index import run_pressure_calculator

    result = run_pressure_calculator(store, ["AAPL", "NVDA"])
    print(result.market_avg_pressure)

CLI:
    python pressure_index.py AAPL NVDA
    python pressure_index.py --export
============================================================
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import get_logger, get_settings
from entity_store import EntityStore, get_store, utc_now_iso
from functions import register
from market_data import Quote, fetch_quote, fetch_share_outstanding

logger = get_logger(__name__)
settings = get_settings()

BUY_ACTION_THRESHOLD = 45.0
SELL_ACTION_THRESHOLD = 70.0
BUY_ZONE_THRESHOLD = 40.0
SELL_ZONE_THRESHOLD = 70.0
VOLATILITY_MULTIPLIER = 0.0001
RATE_LIMIT_PAUSE_SECONDS = 0.1

SUGGESTIONS: Dict[str, Dict[str, str]] = {
    "BUY": {"en": "Low pressure – consider buying", "zh": "低壓狀態 – 考慮買入"},
    "HOLD": {"en": "Medium pressure – observe", "zh": "中壓狀態 – 觀察中"},
    "SELL": {"en": "High pressure – reduce position", "zh": "高壓狀態 – 減倉"},
}


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class PressureReading:
    """A computed pressure snapshot for one symbol (StockPressure fields)."""

    symbol: str
    price: float
    day_high: float
    day_low: float
    volume: float
    pressure_index: float
    volatility_adjusted_pressure: float
    final_pressure: float
    ai_action: str
    ai_suggestion_en: str
    ai_suggestion_zh: str
    pressure_zone: str
    timestamp: str
    data_delayed: bool = False
    delay_seconds: float = 0.0
    data_status: str = "FRESH"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PressureRunResult:
    """Outcome of a calculator run over a symbol list."""

    success: bool
    timestamp: str
    market_avg_pressure: float
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ──────────────────────────────────────────────────────────
# FORMULAS
# ──────────────────────────────────────────────────────────


def calculate_pressure(current: float, high: float, low: float) -> float:
    """Position of ``current`` inside [low, high] scaled to 0-100."""
    if high == low:
        return 50.0
    return (current - low) / (high - low) * 100.0


def volatility_factor(volume: float) -> float:
    return (volume or 0.0) * VOLATILITY_MULTIPLIER


def pressure_zone(pressure: float) -> str:
    if pressure < BUY_ZONE_THRESHOLD:
        return "BUY_ZONE"
    if pressure > SELL_ZONE_THRESHOLD:
        return "SELL_ZONE"
    return "NEUTRAL_ZONE"


def pressure_action(pressure: float) -> str:
    if pressure < BUY_ACTION_THRESHOLD:
        return "BUY"
    if pressure > SELL_ACTION_THRESHOLD:
        return "SELL"
    return "HOLD"


def build_reading(quote: Quote, volume: float) -> PressureReading:
    """Combine a quote and share count into a rounded PressureReading."""
    basic = calculate_pressure(quote.current, quote.high, quote.low)
    adjusted = min(100.0, basic + volatility_factor(volume))
    final = (basic + adjusted) / 2.0
    action = pressure_action(final)
    suggestion = SUGGESTIONS[action]

    return PressureReading(
        symbol=quote.symbol,
        price=quote.current,
        day_high=quote.high,
        day_low=quote.low,
        volume=volume,
        pressure_index=round(basic, 1),
        volatility_adjusted_pressure=round(adjusted, 1),
        final_pressure=round(final, 1),
        ai_action=action,
        ai_suggestion_en=suggestion["en"],
        ai_suggestion_zh=suggestion["zh"],
        pressure_zone=pressure_zone(final),
        timestamp=utc_now_iso(),
        data_delayed=quote.delayed,
        delay_seconds=quote.fetch_seconds,
        data_status="DELAYED" if quote.delayed else "FRESH",
    )


# ──────────────────────────────────────────────────────────
# CALCULATOR
# ──────────────────────────────────────────────────────────


def run_pressure_calculator(
    store: EntityStore,
    symbols: Iterable[str],
    quote_fn: Callable[[str], Quote] = fetch_quote,
    volume_fn: Callable[[str], float] = fetch_share_outstanding,
    pause_seconds: float = RATE_LIMIT_PAUSE_SECONDS,
) -> PressureRunResult:
    """
    Compute and persist pressure for each symbol.

    Per-symbol failures are collected in ``errors``; the run continues.

    Args:
        store: Entity store receiving StockPressure records.
        symbols: Tickers to process.
        quote_fn: Quote provider (injectable for tests).
        volume_fn: Share-count provider.
        pause_seconds: Pause after each successful symbol.

    Returns:
        PressureRunResult with market average (50 when nothing succeeded).
    """
    symbol_list = [s.upper() for s in symbols]
    results: List[Dict[str, Any]] = []
    errors: List[Dict[str, str]] = []
    total_pressure = 0.0
    counts = {"BUY": 0, "HOLD": 0, "SELL": 0}

    for symbol in symbol_list:
        try:
            quote = quote_fn(symbol)
            reading = build_reading(quote, volume_fn(symbol))
            store.create("StockPressure", reading.to_dict())

            results.append({"success": True, "data": reading.to_dict()})
            total_pressure += reading.final_pressure
            counts[reading.ai_action] += 1
            logger.info(
                "%s: pressure %.1f -> %s%s",
                symbol,
                reading.final_pressure,
                reading.ai_action,
                " (delayed)" if reading.data_delayed else "",
            )
            if pause_seconds:
                time.sleep(pause_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.error("Pressure calculation failed for %s: %s", symbol, exc)
            errors.append({"symbol": symbol, "error": str(exc)})
            results.append({"success": False, "symbol": symbol, "error": str(exc)})

    success_count = len(symbol_list) - len(errors)
    market_avg = total_pressure / success_count if success_count else 50.0

    return PressureRunResult(
        success=True,
        timestamp=utc_now_iso(),
        market_avg_pressure=round(market_avg, 1),
        results=results,
        errors=errors,
        stats={
            "total": len(symbol_list),
            "successful": success_count,
            "failed": len(errors),
            "buy_signals": counts["BUY"],
            "hold_signals": counts["HOLD"],
            "sell_signals": counts["SELL"],
        },
    )


def latest_by_symbol(records: Iterable[Dict[str, Any]], time_field: str = "timestamp") -> Dict[str, Dict[str, Any]]:
    """Keep the most recent record per symbol by ``time_field``."""
    latest: Dict[str, Dict[str, Any]] = {}
    for record in records:
        symbol = record.get("symbol")
        if not symbol:
            continue
        current = latest.get(symbol)
        if current is None or str(record.get(time_field) or "") > str(current.get(time_field) or ""):
            latest[symbol] = record
    return latest


def export_daily_pressure(store: EntityStore, day: Optional[str] = None) -> Dict[str, Any]:
    """
    Summarize today's (UTC) latest StockPressure record per symbol.

    Args:
        store: Entity store.
        day: ISO date ``YYYY-MM-DD``; defaults to today (UTC).
    """
    day = day or datetime.now(timezone.utc).date().isoformat()
    todays = [r for r in store.list("StockPressure") if str(r.get("timestamp", "")).startswith(day)]
    latest = list(latest_by_symbol(todays).values())

    avg = sum(float(r.get("final_pressure") or 0.0) for r in latest) / len(latest) if latest else 50.0
    return {
        "report_date": day,
        "total_symbols": len(latest),
        "symbols": latest,
        "market_summary": {
            "avg_pressure": round(avg, 1),
            "buy_signals": sum(1 for r in latest if r.get("ai_action") == "BUY"),
            "hold_signals": sum(1 for r in latest if r.get("ai_action") == "HOLD"),
            "sell_signals": sum(1 for r in latest if r.get("ai_action") == "SELL"),
        },
        "generated_at": utc_now_iso(),
    }


@register("stockPressureIndexCalculator")
def stock_pressure_index_calculator(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """Function entry point: ``{"symbols": [...], "mode": "calculate"|"export"}``."""
    mode = payload.get("mode", "calculate")

    if mode == "export":
        export = export_daily_pressure(store)
        return {
            "success": True,
            "export_data": export,
            "message": f"Exported {export['total_symbols']} symbols for {export['report_date']}",
        }

    if mode != "calculate":
        return {"success": False, "error": "Invalid mode"}

    symbols = payload.get("symbols")
    if not symbols or not isinstance(symbols, list):
        return {"success": False, "error": "Symbols array required"}

    return run_pressure_calculator(store, symbols).to_dict()


# ──────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────


if __name__ == "__main__":
    import json
    import sys

    args = sys.argv[1:]
    if not args:
        print("Usage: python pressure_index.py SYMBOL [SYMBOL ...] | --export")
        sys.exit(0)

    if args[0] == "--export":
        print(json.dumps(export_daily_pressure(get_store()), indent=2, ensure_ascii=False))
    else:
        run = run_pressure_calculator(get_store(), args)
        print(json.dumps(run.to_dict(), indent=2, ensure_ascii=False))
