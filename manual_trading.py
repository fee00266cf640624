"""
============================================================
FLOW-PRESSURE v1.0 - Manual Trading Console
============================================================
Simulated manual trades recorded as AutoTrade entities.

Cost model (per order):
    gross    = shares * price
    fee      = flat MANUAL_FEE (0.08)
    slippage = gross * SLIPPAGE_RATE (0.0005)
    final    = gross + fee + slippage

State machine per symbol:

    (none) --BUY--> OPEN --BUY--> OPEN (average cost re-computed)
                    OPEN --SELL partial--> OPEN (shares, total_cost reduced)
                    OPEN --SELL all-----> CLOSED (WIN | LOSS)

A position is "manual" when entry_reason_en mentions "manual" or
entry_reason_zh contains "手動"; automated AutoTrades are ignored.

Usage:
    from manual_trading import ManualTrader

    trader = ManualTrader()
    result = trader.buy("AAPL", shares=5, price=180.0, pressure=38.5)
    if not result.success:
        print(result.message)

    print(trader.stats())
============================================================
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from alerts import notify_fill
from config import get_logger, get_settings
from entity_store import EntityStore, get_store, utc_now_iso
from i18n import t
from pressure_index import latest_by_symbol, run_pressure_calculator
from semantic_pressure import decide_action

logger = get_logger(__name__)
settings = get_settings()

DEFAULT_WATCHLIST = ["TSLA", "NVDA", "AMD", "AAPL", "PYPL", "PLTR", "COIN", "SOFI", "GME", "BABA"]
STALE_AFTER_SECONDS = 15.0


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class TradeCost:
    """Breakdown of an order's cost."""

    gross: float
    fee: float
    slippage: float

    @property
    def final(self) -> float:
        return self.gross + self.fee + self.slippage


@dataclass
class ManualTradeResult:
    """
    Result of a manual BUY or SELL.

    Attributes:
        success: True if the trade was recorded.
        action: BUY | BUY_ADD | SELL.
        symbol: Ticker traded.
        message: Human-readable summary (configured language).
        error: Error code on failure (invalid_price, invalid_shares,
            insufficient_capital, no_open_position, insufficient_shares).
        shares: Shares in this order.
        price: Execution price.
        cost: Final cost of a BUY (gross + fee + slippage).
        total_shares: Position size after the order.
        avg_price: Average cost after the order.
        gain_amount: Realized gain of a SELL.
        gain_percent: Realized gain of a SELL relative to cost basis.
        closed: True when a SELL closed the position.
        trade: The AutoTrade record after the update.
    """

    success: bool
    action: str
    symbol: str
    message: str
    error: Optional[str] = None
    shares: int = 0
    price: float = 0.0
    cost: float = 0.0
    total_shares: int = 0
    avg_price: float = 0.0
    gain_amount: float = 0.0
    gain_percent: float = 0.0
    closed: bool = False
    trade: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ManualStats:
    """Performance over CLOSED manual trades."""

    total_trades: int
    win_rate: float
    avg_return: float
    total_pl: float


# ──────────────────────────────────────────────────────────
# HELPERS
# ──────────────────────────────────────────────────────────


def is_manual_trade(trade: Dict[str, Any]) -> bool:
    reason_en = str(trade.get("entry_reason_en") or "").lower()
    reason_zh = str(trade.get("entry_reason_zh") or "")
    return "manual" in reason_en or "手動" in reason_zh


def clamp_quantity(value: Any) -> int:
    """Coerce user input to a whole share count of at least 1."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 1
    if math.isnan(number) or math.isinf(number):
        return 1
    return max(1, math.floor(number))


def is_data_stale(
    records: Iterable[Dict[str, Any]],
    now: Optional[datetime] = None,
    max_age_seconds: float = STALE_AFTER_SECONDS,
) -> bool:
    """
    True when there is no pressure data, or its oldest record is older
    than ``max_age_seconds``. Trading buttons stay disabled while stale.
    """
    stamps = []
    for record in records:
        raw = record.get("timestamp")
        if not raw:
            continue
        try:
            stamps.append(datetime.fromisoformat(str(raw)))
        except ValueError:
            continue
    if not stamps:
        return True
    now = now or datetime.now(timezone.utc)
    oldest = min(stamps)
    if oldest.tzinfo is None:
        oldest = oldest.replace(tzinfo=timezone.utc)
    return (now - oldest).total_seconds() > max_age_seconds


def button_hint(pressure: float, action: str) -> str:
    """"optimal" when pressure favors ``action`` (BUY < 45, SELL > 70)."""
    if action == "BUY":
        return "optimal" if pressure < 45 else "suboptimal"
    if action == "SELL":
        return "optimal" if pressure > 70 else "suboptimal"
    return "neutral"


def _signed_pct(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value:.2f}%"


# ──────────────────────────────────────────────────────────
# MANUAL TRADER
# ──────────────────────────────────────────────────────────


class ManualTrader:
    """
    Manual trading console over the entity store.

    Capital is a per-order ceiling (an order's final cost may not
    exceed it), not a running cash balance.
    """

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        capital: Optional[float] = None,
        fee: Optional[float] = None,
        slippage_rate: Optional[float] = None,
        delay_seconds: Optional[float] = None,
        pressure_refresh: Optional[Callable[[EntityStore, List[str]], Any]] = None,
    ) -> None:
        self.store = store or get_store()
        self.capital = settings.manual_capital if capital is None else capital
        self.fee = settings.manual_fee if fee is None else fee
        self.slippage_rate = settings.slippage_rate if slippage_rate is None else slippage_rate
        self.delay_seconds = (
            settings.delay_compensation_seconds if delay_seconds is None else delay_seconds
        )
        self.pressure_refresh = pressure_refresh or run_pressure_calculator

    # ──────────────────────────────────────────────────────
    # QUERIES
    # ──────────────────────────────────────────────────────

    def manual_trades(self, limit: int = 100) -> List[Dict[str, Any]]:
        trades = self.store.list("AutoTrade", sort="-entry_time", limit=limit)
        return [tr for tr in trades if is_manual_trade(tr)]

    def open_position(self, symbol: str) -> Optional[Dict[str, Any]]:
        symbol_u = symbol.upper()
        for trade in self.manual_trades():
            if trade.get("symbol") == symbol_u and trade.get("status") == "OPEN":
                return trade
        return None

    def calculate_trade_cost(self, shares: int, price: float) -> TradeCost:
        gross = shares * price
        return TradeCost(gross=gross, fee=self.fee, slippage=gross * self.slippage_rate)

    def stats(self) -> ManualStats:
        closed = [tr for tr in self.manual_trades() if tr.get("status") == "CLOSED"]
        total = len(closed)
        if not total:
            return ManualStats(total_trades=0, win_rate=0.0, avg_return=0.0, total_pl=0.0)

        wins = sum(1 for tr in closed if tr.get("trade_type") == "WIN")
        return ManualStats(
            total_trades=total,
            win_rate=wins / total * 100.0,
            avg_return=sum(float(tr.get("pl_percent") or 0.0) for tr in closed) / total,
            total_pl=sum(float(tr.get("pl_amount") or 0.0) for tr in closed),
        )

    # ──────────────────────────────────────────────────────
    # ORDERS
    # ──────────────────────────────────────────────────────

    def execute(
        self,
        action: str,
        symbol: str,
        shares: int,
        price: float,
        pressure: Optional[float] = None,
    ) -> ManualTradeResult:
        """Dispatch a BUY or SELL after validation and delay compensation."""
        action = action.upper().strip()
        symbol = symbol.upper().strip()

        logger.info("Manual %s %s x%s @ %s (pressure=%s)", action, symbol, shares, price, pressure)

        if not price or price <= 0:
            return self._reject(action, symbol, "invalid_price")
        if not shares or shares <= 0:
            return self._reject(action, symbol, "invalid_shares")
        if action not in ("BUY", "SELL"):
            return ManualTradeResult(
                success=False,
                action=action,
                symbol=symbol,
                message="Action must be BUY or SELL.",
                error="invalid_action",
            )

        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        if action == "BUY":
            result = self._buy(symbol, int(shares), float(price), pressure)
        else:
            result = self._sell(symbol, int(shares), float(price), pressure)
        if result.success:
            notify_fill(
                symbol,
                result.action,
                result.shares,
                result.price,
                "manual",
                store=self.store,
                profit=result.gain_amount if action == "SELL" else None,
            )
        return result

    def buy(self, symbol: str, shares: int, price: float, pressure: Optional[float] = None) -> ManualTradeResult:
        return self.execute("BUY", symbol, shares, price, pressure)

    def sell(self, symbol: str, shares: int, price: float, pressure: Optional[float] = None) -> ManualTradeResult:
        return self.execute("SELL", symbol, shares, price, pressure)

    def _reject(self, action: str, symbol: str, code: str) -> ManualTradeResult:
        message = t(code)
        logger.warning("Manual %s %s rejected: %s", action, symbol, message)
        return ManualTradeResult(success=False, action=action, symbol=symbol, message=message, error=code)

    def _buy(self, symbol: str, shares: int, price: float, pressure: Optional[float]) -> ManualTradeResult:
        cost = self.calculate_trade_cost(shares, price)
        if cost.final > self.capital:
            return self._reject("BUY", symbol, "insufficient_capital")

        p_label = pressure if pressure is not None else "N/A"
        fee_note_en = f"Fee: ${cost.fee}, Slippage: ${cost.slippage:.2f}"
        fee_note_zh = f"手續費：${cost.fee}，滑價：${cost.slippage:.2f}"

        existing = self.open_position(symbol)
        if existing:
            total_shares = int(existing["shares"]) + shares
            total_cost = float(existing["total_cost"]) + cost.final
            avg_price = total_cost / total_shares
            updated = self.store.update(
                "AutoTrade",
                existing["id"],
                {
                    "shares": total_shares,
                    "total_cost": total_cost,
                    "buy_price": avg_price,
                    "entry_reason_en": (
                        f"{existing.get('entry_reason_en', '')}\nAdded: {shares} shares @ "
                        f"${price:.2f} (Pressure: {p_label}, {fee_note_en})"
                    ),
                    "entry_reason_zh": (
                        f"{existing.get('entry_reason_zh', '')}\n加碼：{shares} 股 @ "
                        f"${price:.2f}（壓力：{p_label}，{fee_note_zh}）"
                    ),
                },
            )
            logger.info("BUY_ADD %s: %d shares, avg $%.4f", symbol, total_shares, avg_price)
            return ManualTradeResult(
                success=True,
                action="BUY_ADD",
                symbol=symbol,
                message=t("buy_add_success", shares=shares, symbol=symbol, price=price),
                shares=shares,
                price=price,
                cost=cost.final,
                total_shares=total_shares,
                avg_price=avg_price,
                trade=updated,
            )

        record = self.store.create(
            "AutoTrade",
            {
                "symbol": symbol,
                "company_name": symbol,
                "buy_price": price,
                "shares": shares,
                "total_cost": cost.final,
                "entry_time": utc_now_iso(),
                "entry_reason_en": (
                    f"Manual BUY: {shares} shares @ ${price:.2f} (Pressure: {p_label}, {fee_note_en})"
                ),
                "entry_reason_zh": (
                    f"手動買入：{shares} 股 @ ${price:.2f}（壓力：{p_label}，{fee_note_zh}）"
                ),
                "entry_confidence": pressure,
                "entry_flow_strength": pressure,
                "status": "OPEN",
                "pl_percent": 0.0,
                "pl_amount": 0.0,
            },
        )
        logger.info("BUY %s: %d shares @ $%.2f (cost $%.2f)", symbol, shares, price, cost.final)
        return ManualTradeResult(
            success=True,
            action="BUY",
            symbol=symbol,
            message=t("buy_success", shares=shares, symbol=symbol, price=price),
            shares=shares,
            price=price,
            cost=cost.final,
            total_shares=shares,
            avg_price=price,
            trade=record,
        )

    def _sell(self, symbol: str, shares: int, price: float, pressure: Optional[float]) -> ManualTradeResult:
        position = self.open_position(symbol)
        if not position:
            return self._reject("SELL", symbol, "no_open_position")

        held = int(position["shares"])
        if shares > held:
            return self._reject("SELL", symbol, "insufficient_shares")

        cost = self.calculate_trade_cost(shares, price)
        cost_basis = float(position["buy_price"]) * shares
        gain = cost.gross - cost_basis - cost.fee - cost.slippage
        gain_pct = gain / cost_basis * 100.0 if cost_basis else 0.0
        p_label = pressure if pressure is not None else "N/A"
        outcome_en = "Profit" if gain_pct >= 0 else "Loss"
        outcome_zh = "獲利" if gain_pct >= 0 else "虧損"

        if shares == held:
            updated = self.store.update(
                "AutoTrade",
                position["id"],
                {
                    "sell_price": price,
                    "exit_time": utc_now_iso(),
                    "pl_percent": gain_pct,
                    "pl_amount": gain,
                    "exit_reason_en": (
                        f"Manual SELL: {shares} shares @ ${price:.2f} (Pressure: {p_label}, "
                        f"{outcome_en}: {_signed_pct(gain_pct)}, Fee: ${cost.fee}, "
                        f"Slippage: ${cost.slippage:.2f})"
                    ),
                    "exit_reason_zh": (
                        f"手動賣出：{shares} 股 @ ${price:.2f}（壓力：{p_label}，"
                        f"{outcome_zh}：{_signed_pct(gain_pct)}，手續費：${cost.fee}，"
                        f"滑價：${cost.slippage:.2f}）"
                    ),
                    "status": "CLOSED",
                    "trade_type": "WIN" if gain >= 0 else "LOSS",
                },
            )
            remaining = 0
            closed = True
        else:
            remaining = held - shares
            updated = self.store.update(
                "AutoTrade",
                position["id"],
                {
                    "shares": remaining,
                    "total_cost": float(position["total_cost"]) - cost_basis,
                    "entry_reason_en": (
                        f"{position.get('entry_reason_en', '')}\nPartial SELL: {shares} shares @ "
                        f"${price:.2f} ({outcome_en}: {_signed_pct(gain_pct)})"
                    ),
                    "entry_reason_zh": (
                        f"{position.get('entry_reason_zh', '')}\n部分賣出：{shares} 股 @ "
                        f"${price:.2f}（{outcome_zh}：{_signed_pct(gain_pct)}）"
                    ),
                },
            )
            closed = False

        logger.info(
            "SELL %s: %d shares @ $%.2f, gain $%.2f (%s)%s",
            symbol,
            shares,
            price,
            gain,
            _signed_pct(gain_pct),
            " [closed]" if closed else "",
        )
        return ManualTradeResult(
            success=True,
            action="SELL",
            symbol=symbol,
            message=t("sell_success", shares=shares, symbol=symbol, price=price),
            shares=shares,
            price=price,
            total_shares=remaining,
            avg_price=float(position["buy_price"]),
            gain_amount=gain,
            gain_percent=gain_pct,
            closed=closed,
            trade=updated,
        )

    # ──────────────────────────────────────────────────────
    # WATCHLIST
    # ──────────────────────────────────────────────────────

    def watchlist(self) -> List[str]:
        """Watched symbols in insertion order; defaults when none are stored."""
        rows = self.store.list("WatchedStock", sort="created_date")
        symbols = [r["symbol"] for r in rows if r.get("symbol")]
        return symbols or list(DEFAULT_WATCHLIST)

    def _ensure_watchlist_seeded(self) -> None:
        if not self.store.list("WatchedStock", limit=1):
            self.store.bulk_create(
                "WatchedStock",
                [{"symbol": s, "source": "manual_trading"} for s in DEFAULT_WATCHLIST],
            )

    def add_to_watchlist(self, symbol: str) -> ManualTradeResult:
        """Add a symbol and compute its first pressure reading."""
        symbol_u = symbol.upper().strip()
        self._ensure_watchlist_seeded()
        if symbol_u in self.watchlist():
            return ManualTradeResult(
                success=False,
                action="WATCH_ADD",
                symbol=symbol_u,
                message=t("already_watching", symbol=symbol_u),
                error="already_watching",
            )

        self.pressure_refresh(self.store, [symbol_u])
        self.store.create("WatchedStock", {"symbol": symbol_u, "source": "manual_trading"})
        return ManualTradeResult(
            success=True,
            action="WATCH_ADD",
            symbol=symbol_u,
            message=t("watch_added", symbol=symbol_u),
        )

    def remove_from_watchlist(self, symbol: str) -> ManualTradeResult:
        """Remove a symbol unless it has an OPEN position or is the last one."""
        symbol_u = symbol.upper().strip()
        if self.open_position(symbol_u):
            return ManualTradeResult(
                success=False,
                action="WATCH_REMOVE",
                symbol=symbol_u,
                message=t("remove_blocked", symbol=symbol_u),
                error="open_position",
            )

        self._ensure_watchlist_seeded()
        rows = self.store.filter("WatchedStock", {"symbol": symbol_u})
        if len(self.watchlist()) <= 1 and rows:
            return ManualTradeResult(
                success=False,
                action="WATCH_REMOVE",
                symbol=symbol_u,
                message="Cannot remove the last stock from watchlist",
                error="last_symbol",
            )

        for row in rows:
            self.store.delete("WatchedStock", row["id"])
        return ManualTradeResult(
            success=True,
            action="WATCH_REMOVE",
            symbol=symbol_u,
            message=t("watch_removed", symbol=symbol_u),
        )

    # ──────────────────────────────────────────────────────
    # CONSOLE VIEW
    # ──────────────────────────────────────────────────────

    def console_rows(self, symbols: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        One row per watched symbol: latest pressure, latest SPI and the
        blended console suggestion.
        """
        symbols = symbols or self.watchlist()
        pressure = latest_by_symbol(self.store.list("StockPressure", sort="-timestamp", limit=200))
        semantic = latest_by_symbol(self.store.list("SemanticPressure", sort="-timestamp", limit=200))

        rows: List[Dict[str, Any]] = []
        for symbol in symbols:
            p_rec = pressure.get(symbol) or {}
            s_rec = semantic.get(symbol) or {}
            p_val = p_rec.get("final_pressure")
            s_val = s_rec.get("spi")
            position = self.open_position(symbol)
            rows.append(
                {
                    "symbol": symbol,
                    "price": p_rec.get("price"),
                    "pressure": p_val,
                    "spi": s_val,
                    "sentiment": s_rec.get("sentiment", "neutral"),
                    "suggestion": decide_action(p_val, s_val),
                    "open_shares": int(position["shares"]) if position else 0,
                    "timestamp": p_rec.get("timestamp"),
                }
            )
        return rows
