"""
============================================================
FLOW-PRESSURE v1.0 - Virtual Account & Auto Exit Monitor
============================================================
Flow-following simulated trades against a VirtualAccount.

- ``simulate_buy`` opens an ACTIVE SimulatedTrade at the Stock's
  current price and moves cash into ``total_invested``.
- ``check_and_exit`` closes every ACTIVE trade entered on an IN flow
  once its Stock's flow turns OUT or NEUTRAL, scores the exit and
  rolls the result into the account.

Usage:
    from auto_exit import check_and_exit

    for exit_ in check_and_exit(store):
        print(exit_.message_en)
============================================================
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from config import get_logger, get_settings
from entity_store import EntityStore, get_store, log_error, utc_now_iso

logger = get_logger(__name__)
settings = get_settings()

MAX_SIMULATED_SHARES = 999

# (lower bound exclusive, en, zh); first match wins, last row is the floor.
EVALUATIONS: List[Tuple[float, str, str]] = [
    (5.0, "🎉 Excellent timing! Captured strong momentum.", "🎉 選點精準！成功捕捉強勁動能。"),
    (2.0, "✅ Good exit, AI caught the reversal early.", "✅ 離場正確，AI 提早捕捉反轉。"),
    (0.0, "👍 Small profit secured. Stay disciplined!", "👍 小賺出場，保持紀律！"),
    (-2.0, "⚠ Minor loss. Exit on signal change was correct.", "⚠ 小虧出場，訊號轉變時離場是正確的。"),
    (-5.0, "❌ Late entry or wrong timing. Watch confidence levels.", "❌ 追高進場或時機不佳，注意信心度。"),
]
FLOOR_EVALUATION = ("🚫 Significant loss. Avoid entering on weak signals.", "🚫 虧損較大，避免在弱訊號時進場。")


@dataclass
class SimBuyResult:
    success: bool
    message: str
    error: Optional[str] = None
    trade: Optional[Dict[str, Any]] = None
    account: Optional[Dict[str, Any]] = None


@dataclass
class AutoExit:
    """One closed trade produced by the monitor."""

    trade_id: str
    symbol: str
    shares: float
    exit_price: float
    profit: float
    profit_percent: float
    duration_minutes: int
    evaluation_en: str
    evaluation_zh: str
    message_en: str
    message_zh: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ──────────────────────────────────────────────────────────
# HELPERS
# ──────────────────────────────────────────────────────────


def evaluate_exit(profit_percent: float) -> Tuple[str, str]:
    """Bilingual verdict for a closed trade's return."""
    for bound, text_en, text_zh in EVALUATIONS:
        if profit_percent > bound:
            return text_en, text_zh
    return FLOOR_EVALUATION


def should_exit(trade: Dict[str, Any], stock: Dict[str, Any]) -> bool:
    return trade.get("entry_flow") == "IN" and stock.get("flow") in ("OUT", "NEUTRAL")


def _parse_time(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _money(value: float) -> str:
    return f"{'+' if value >= 0 else ''}${value:.2f}"


def _pct(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value:.2f}%"


def get_or_create_account(store: EntityStore) -> Dict[str, Any]:
    """The single VirtualAccount, created with starting cash on first use."""
    accounts = store.list("VirtualAccount", limit=1)
    if accounts:
        return accounts[0]

    cash = float(settings.virtual_starting_cash)
    logger.info("Creating VirtualAccount with $%.2f", cash)
    return store.create(
        "VirtualAccount",
        {
            "total_capital": cash,
            "available_cash": cash,
            "total_invested": 0.0,
            "total_trades": 0,
            "winning_trades": 0,
            "losing_trades": 0,
            "total_gain_loss": 0.0,
            "win_rate": 0.0,
        },
    )


def active_position(store: EntityStore, stock_id: str) -> Optional[Dict[str, Any]]:
    for trade in store.filter("SimulatedTrade", {"stock_id": stock_id, "status": "ACTIVE"}):
        return trade
    return None


# ──────────────────────────────────────────────────────────
# ENTRY
# ──────────────────────────────────────────────────────────


def simulate_buy(store: EntityStore, stock: Dict[str, Any], shares: float) -> SimBuyResult:
    """
    Open a simulated position in ``stock`` (a Stock record).

    Quantity must be within 1-999 and the cost must fit the account's
    available cash.
    """
    if not shares or shares <= 0 or shares > MAX_SIMULATED_SHARES:
        return SimBuyResult(
            success=False,
            message=f"Please enter a valid quantity (1-{MAX_SIMULATED_SHARES} shares)",
            error="invalid_quantity",
        )

    account = get_or_create_account(store)
    price = float(stock.get("price") or 0.0)
    amount = price * shares
    if price <= 0:
        return SimBuyResult(success=False, message="Stock has no valid price", error="invalid_price")
    if amount > float(account["available_cash"]):
        return SimBuyResult(success=False, message="Insufficient virtual funds.", error="insufficient_cash")

    trade = store.create(
        "SimulatedTrade",
        {
            "stock_id": stock.get("id"),
            "symbol": stock.get("symbol"),
            "company_name": stock.get("name"),
            "amount": amount,
            "shares": shares,
            "entry_price": price,
            "entry_time": utc_now_iso(),
            "entry_flow": stock.get("flow"),
            "exit_flow": None,
            "entry_confidence": stock.get("confidence"),
            "exit_confidence": None,
            "entry_comment_en": stock.get("ai_comment_en"),
            "entry_comment_zh": stock.get("ai_comment_zh"),
            "status": "ACTIVE",
        },
    )
    account = store.update(
        "VirtualAccount",
        account["id"],
        {
            "available_cash": float(account["available_cash"]) - amount,
            "total_invested": float(account["total_invested"]) + amount,
            "total_trades": int(account.get("total_trades") or 0) + 1,
        },
    )
    logger.info("Simulated BUY %s x%s @ $%.2f", trade["symbol"], shares, price)
    return SimBuyResult(success=True, message=f"Bought {shares} {trade['symbol']}", trade=trade, account=account)


def cancel_position(store: EntityStore, trade_id: str) -> SimBuyResult:
    """Discard an ACTIVE simulated trade and refund its amount."""
    trade = store.get("SimulatedTrade", trade_id)
    if trade.get("status") != "ACTIVE":
        return SimBuyResult(
            success=False,
            message=f"Trade {trade_id} is {trade.get('status')}, only ACTIVE trades can be cancelled.",
            error="not_active",
            trade=trade,
        )

    account = get_or_create_account(store)
    store.delete("SimulatedTrade", trade_id)

    amount = float(trade.get("amount") or 0.0)
    account = store.update(
        "VirtualAccount",
        account["id"],
        {
            "available_cash": float(account["available_cash"]) + amount,
            "total_invested": float(account["total_invested"]) - amount,
        },
    )
    logger.info("Cancelled simulated %s, refunded $%.2f", trade.get("symbol"), amount)
    return SimBuyResult(success=True, message=f"Cancelled {trade.get('symbol')}", trade=trade, account=account)


# ──────────────────────────────────────────────────────────
# MONITOR
# ──────────────────────────────────────────────────────────


def close_trade(
    store: EntityStore,
    trade: Dict[str, Any],
    stock: Dict[str, Any],
    account: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Tuple[AutoExit, Dict[str, Any]]:
    """Close ``trade`` at the stock's price; returns the exit and updated account."""
    now = now or datetime.now(timezone.utc)
    entry_time = _parse_time(trade.get("entry_time")) or now
    duration = int((now - entry_time).total_seconds() // 60)

    shares = float(trade["shares"])
    entry_price = float(trade["entry_price"])
    exit_price = float(stock["price"])
    exit_value = exit_price * shares
    entry_value = entry_price * shares
    profit = (exit_price - entry_price) * shares
    profit_pct = (exit_price - entry_price) / entry_price * 100.0 if entry_price else 0.0
    eval_en, eval_zh = evaluate_exit(profit_pct)

    store.update(
        "SimulatedTrade",
        trade["id"],
        {
            "exit_price": exit_price,
            "exit_time": now.isoformat(),
            "exit_flow": stock.get("flow"),
            "exit_confidence": stock.get("confidence"),
            "gain_loss_amount": profit,
            "gain_loss_percent": profit_pct,
            "duration_minutes": duration,
            "status": "CLOSED",
            "ai_evaluation_en": eval_en,
            "ai_evaluation_zh": eval_zh,
        },
    )

    wins = int(account.get("winning_trades") or 0) + (1 if profit > 0 else 0)
    losses = int(account.get("losing_trades") or 0) + (1 if profit < 0 else 0)
    closed = wins + losses
    account = store.update(
        "VirtualAccount",
        account["id"],
        {
            "available_cash": float(account["available_cash"]) + exit_value,
            "total_invested": float(account["total_invested"]) - entry_value,
            "total_gain_loss": float(account.get("total_gain_loss") or 0.0) + profit,
            "winning_trades": wins,
            "losing_trades": losses,
            "win_rate": wins / closed * 100.0 if closed else 0.0,
        },
    )

    symbol = trade.get("symbol", "")
    plural = "s" if shares > 1 else ""
    exit_ = AutoExit(
        trade_id=trade["id"],
        symbol=symbol,
        shares=shares,
        exit_price=exit_price,
        profit=profit,
        profit_percent=profit_pct,
        duration_minutes=duration,
        evaluation_en=eval_en,
        evaluation_zh=eval_zh,
        message_en=(
            f"Sold {shares:g} share{plural} of {symbol} at ${exit_price:.2f}. "
            f"{'Profit' if profit >= 0 else 'Loss'}: {_money(profit)} ({_pct(profit_pct)})"
        ),
        message_zh=(
            f"已賣出 {shares:g} 股 {symbol}，價格 ${exit_price:.2f}。"
            f"{'獲利' if profit >= 0 else '虧損'}：{_money(profit)} ({_pct(profit_pct)})"
        ),
    )
    return exit_, account


def check_and_exit(store: Optional[EntityStore] = None, now: Optional[datetime] = None) -> List[AutoExit]:
    """
    Close every ACTIVE trade whose entry flow has reversed.

    Trades whose Stock is missing are skipped. A failure on one trade is
    logged to ErrorLog and the scan continues.
    """
    store = store or get_store()
    active = store.filter("SimulatedTrade", {"status": "ACTIVE"})
    if not active:
        return []

    stocks = {s["id"]: s for s in store.list("Stock")}
    account = get_or_create_account(store)
    exits: List[AutoExit] = []

    for trade in active:
        stock = stocks.get(trade.get("stock_id"))
        if not stock or not should_exit(trade, stock):
            continue
        try:
            exit_, account = close_trade(store, trade, stock, account, now=now)
        except Exception as exc:  # noqa: BLE001
            logger.error("Auto exit failed for %s: %s", trade.get("symbol"), exc, exc_info=True)
            log_error(store, "auto_exit", f"Auto exit failed for {trade.get('symbol')}: {exc}", "HIGH")
            continue
        logger.info("Auto exit: %s", exit_.message_en)
        exits.append(exit_)

    return exits
