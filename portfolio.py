"""
============================================================
FLOW-PRESSURE v1.0 - Paper Account (simulateTrade / updateAccountValue)
============================================================
Market-order paper trading against LiveQuote prices.

Entities:
- AccountState: cash_balance, equity_value, total_value (one per user)
- PortfolioPosition: symbol, quantity, avg_cost, current_price,
  unrealized_pnl, unrealized_pnl_pct
- TradeHistory: every fill and every rejection (action REJECTED)

Rules:
- Orders fill only during the regular session (09:30-16:00 ET).
- Fill price is the symbol's LiveQuote.last_price.
- BUY needs cash >= price * quantity; average cost is volume-weighted.
- SELL needs quantity <= held; a position reaching 0 is deleted.
- Corrupt account/position values are repaired and logged CRITICAL.

Usage:
    from portfolio import PaperAccount

    account = PaperAccount()
    result = account.simulate_trade("AAPL", "BUY", 10)
    print(result.message)

    valuation = account.update_account_value()
    print(valuation.total_value)
============================================================
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
from tenacity import retry, stop_after_attempt, wait_fixed

from alerts import notify_fill
from config import get_logger, get_settings
from entity_store import EntityStore, LocalEntityStore, get_store, log_error, utc_now_iso
from functions import register
from market_data import get_market_session

logger = get_logger(__name__)
settings = get_settings()

DEFAULT_USER = "local"
REG_ONLY_NOTE = "⚠️ 僅能在美股正常交易時段 (09:30–16:00 ET) 模擬下單。"
NO_CASH_NOTE = "⚠️ 資金不足，訂單未成交。"
NO_SHARES_NOTE = "⚠️ 持股數不足，訂單未成交。"
BUSY_NOTE = "⚠️ 系統暫時繁忙，請稍後再試"


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class TradeResult:
    """
    Result of simulate_trade.

    Attributes:
        success: True if the order filled.
        message: Human-readable note (also stored on TradeHistory).
        error: Error code when success is False (invalid_request,
            market_closed, quote_not_found, insufficient_cash,
            insufficient_holdings, invalid_action, system_busy).
        cash_balance: Cash after the fill.
        fill_price: Fill price used.
        trade: TradeHistory record written for this order.
    """

    success: bool
    message: str
    error: Optional[str] = None
    cash_balance: Optional[float] = None
    fill_price: Optional[float] = None
    trade: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AccountValuation:
    """Result of update_account_value."""

    success: bool
    cash_balance: float = 0.0
    equity_value: float = 0.0
    total_value: float = 0.0
    sync_error: str = "0.0000%"
    warnings: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["warnings"] is None:
            data.pop("warnings")
        return data


@dataclass
class PerformanceMetrics:
    """
    Paper account performance over SELL fills.

    Attributes:
        total_trades: SELL fills considered.
        winning_trades: Fills with positive realized P&L.
        losing_trades: Fills with negative realized P&L.
        win_rate: Winning fills percentage.
        average_win: Mean P&L of winners.
        average_loss: Mean P&L of losers (negative).
        profit_factor: Gross gains / gross losses (0 without losses).
        total_pnl: Total realized P&L.
        max_drawdown_pct: Max drawdown of the equity curve, percent.
        sharpe_ratio: Per-trade Sharpe (mean / sample std).
        largest_win: Largest winning fill.
        largest_loss: Largest losing fill (negative).
    """

    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    average_win: float
    average_loss: float
    profit_factor: float
    total_pnl: float
    max_drawdown_pct: float
    sharpe_ratio: float
    largest_win: float
    largest_loss: float


@dataclass
class EquityPoint:
    timestamp_utc: str
    portfolio_value: float
    cash: float
    cumulative_pnl: float


# ──────────────────────────────────────────────────────────
# VALIDATION
# ──────────────────────────────────────────────────────────


def _finite(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def validate_and_fix_account(store: EntityStore, account: Dict[str, Any]) -> Dict[str, Any]:
    """Repair negative or non-finite account values in place and persist."""
    fixes: List[str] = []

    for key in ("cash_balance", "equity_value"):
        value = account.get(key)
        if not _finite(value) or float(value) < 0:
            fixes.append(f"Invalid {key} detected: {value}, fixing to 0")
            account[key] = 0.0

    total = account.get("total_value")
    if not _finite(total) or float(total) < 0:
        fixes.append(f"Invalid total_value detected: {total}, recalculating")
        account["total_value"] = float(account["cash_balance"]) + float(account["equity_value"])

    if fixes:
        log_error(store, "SYSTEM", "Account data corruption detected and fixed", "CRITICAL", {"fixes": fixes})
        store.update(
            "AccountState",
            account["id"],
            {
                "cash_balance": account["cash_balance"],
                "equity_value": account["equity_value"],
                "total_value": account["total_value"],
                "last_update": utc_now_iso(),
            },
        )
    return account


def validate_and_fix_position(store: EntityStore, position: Dict[str, Any]) -> Dict[str, Any]:
    """
    Repair a PortfolioPosition: bad quantity becomes 0 (position deleted),
    bad avg_cost falls back to current_price.
    """
    fixes: List[str] = []

    quantity = position.get("quantity")
    if not _finite(quantity) or float(quantity) < 0:
        fixes.append(f"Invalid quantity detected: {quantity}, fixing to 0")
        position["quantity"] = 0

    avg_cost = position.get("avg_cost")
    if not _finite(avg_cost) or float(avg_cost) < 0:
        fixes.append(f"Invalid avg_cost detected: {avg_cost}, fixing to current price")
        position["avg_cost"] = position.get("current_price") or 0.0

    if fixes:
        symbol = position.get("symbol")
        log_error(
            store,
            "SYSTEM",
            f"Position data corruption detected and fixed for {symbol}",
            "CRITICAL",
            {"fixes": fixes, "symbol": symbol},
        )
        if float(position["quantity"]) == 0:
            store.delete("PortfolioPosition", position["id"])
        else:
            store.update(
                "PortfolioPosition",
                position["id"],
                {"quantity": position["quantity"], "avg_cost": position["avg_cost"], "updated_at": utc_now_iso()},
            )
    return position


def position_is_valid(position: Dict[str, Any]) -> bool:
    for key in ("quantity", "avg_cost"):
        value = position.get(key)
        if not _finite(value) or float(value) < 0:
            return False
    return True


# ──────────────────────────────────────────────────────────
# PAPER ACCOUNT
# ──────────────────────────────────────────────────────────


class PaperAccount:
    """
    One user's paper account in the entity store.

    Args:
        store: Entity store (defaults to the process-wide store).
        user_id: Owner key for AccountState/PortfolioPosition rows.
    """

    def __init__(self, store: Optional[EntityStore] = None, user_id: str = DEFAULT_USER) -> None:
        self.store = store or get_store()
        self.user_id = user_id
        self.starting_cash = float(settings.sim_starting_cash)

    # ──────────────────────────────────────────────────────
    # STATE
    # ──────────────────────────────────────────────────────

    def get_account(self, create: bool = True) -> Optional[Dict[str, Any]]:
        """Return the AccountState, creating it with starting cash if needed."""
        accounts = self.store.filter("AccountState", {"user_id": self.user_id})
        if accounts:
            return validate_and_fix_account(self.store, accounts[0])
        if not create:
            return None

        account = self.store.create(
            "AccountState",
            {
                "user_id": self.user_id,
                "cash_balance": self.starting_cash,
                "equity_value": 0.0,
                "total_value": self.starting_cash,
                "trading_locked": False,
                "last_update": utc_now_iso(),
            },
        )
        log_error(self.store, "SYSTEM", f"New account created for {self.user_id}", "LOW", {"user_id": self.user_id})
        logger.info("Created AccountState for %s with $%.2f", self.user_id, self.starting_cash)
        return account

    def positions(self) -> List[Dict[str, Any]]:
        return self.store.filter("PortfolioPosition", {"user_id": self.user_id})

    def _position(self, symbol: str) -> Optional[Dict[str, Any]]:
        rows = self.store.filter("PortfolioPosition", {"user_id": self.user_id, "symbol": symbol})
        return rows[0] if rows else None

    def _live_price(self, symbol: str) -> Optional[float]:
        quotes = self.store.filter("LiveQuote", {"symbol": symbol})
        if not quotes:
            return None
        price = quotes[0].get("last_price")
        return float(price) if _finite(price) else None

    def _equity_at_cost(self) -> float:
        return sum(
            float(p.get("current_price") or p.get("avg_cost") or 0.0) * float(p.get("quantity") or 0.0)
            for p in self.positions()
        )

    @retry(stop=stop_after_attempt(3), wait=wait_fixed(1), reraise=True)
    def _create_trade_row(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.store.create("TradeHistory", data)

    def record_trade(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Write a TradeHistory row, retrying; a final failure is logged and raised."""
        try:
            return self._create_trade_row(data)
        except Exception as exc:
            log_error(
                self.store,
                "SYSTEM",
                f"Failed to record trade after retries: {exc}",
                "CRITICAL",
                {"tradeData": data},
            )
            raise

    def _reject(
        self,
        symbol: str,
        quantity: float,
        note: str,
        error: str,
        session: str,
        timestamp: str,
        fill_price: float = 0.0,
        cash: float = 0.0,
    ) -> TradeResult:
        trade = self.record_trade(
            {
                "user_id": self.user_id,
                "timestamp": timestamp,
                "action": "REJECTED",
                "symbol": symbol,
                "fill_price": fill_price,
                "quantity": quantity,
                "cash_before": cash,
                "cash_after": cash,
                "note": note,
                "market_session": session,
            }
        )
        logger.warning("Order %s x%s rejected: %s", symbol, quantity, error)
        return TradeResult(success=False, message=note, error=error, trade=trade)

    # ──────────────────────────────────────────────────────
    # ORDERS
    # ──────────────────────────────────────────────────────

    def simulate_trade(
        self,
        symbol: str,
        side: str,
        quantity: float,
        now: Optional[datetime] = None,
    ) -> TradeResult:
        """
        Fill a market order at the live quote.

        Args:
            symbol: Ticker.
            side: BUY or SELL.
            quantity: Share count (> 0).
            now: Clock override for the session check.

        Returns:
            TradeResult; business rejections are results, not exceptions.
        """
        if not side or not symbol or quantity is None:
            return TradeResult(success=False, message="action, symbol, quantity required", error="invalid_request")
        try:
            quantity = float(quantity)
        except (TypeError, ValueError):
            quantity = float("nan")
        if not math.isfinite(quantity) or quantity <= 0:
            return TradeResult(success=False, message="quantity must be a positive number", error="invalid_request")

        symbol = symbol.upper().strip()
        side = side.upper().strip()
        session = get_market_session(now)
        timestamp = utc_now_iso()

        try:
            if session != "REG":
                return self._reject(symbol, quantity, REG_ONLY_NOTE, "market_closed", session, timestamp)

            price = self._live_price(symbol)
            if price is None:
                log_error(self.store, "TRADE", f"No quote found for {symbol}", "MEDIUM", {"symbol": symbol})
                return TradeResult(success=False, message="Stock quote not found", error="quote_not_found")

            account = self.get_account()
            if side == "BUY":
                result = self._buy(account, symbol, quantity, price, session, timestamp)
            elif side == "SELL":
                result = self._sell(account, symbol, quantity, price, session, timestamp)
            else:
                return TradeResult(success=False, message="Invalid action", error="invalid_action")
        except Exception as exc:  # noqa: BLE001
            logger.error("Trade error for %s %s: %s", side, symbol, exc, exc_info=True)
            return TradeResult(success=False, message=BUSY_NOTE, error="system_busy")

        if result.success:
            notify_fill(
                symbol,
                side,
                quantity,
                price,
                "paper",
                store=self.store,
                profit=(result.trade or {}).get("realized_pnl") if side == "SELL" else None,
            )
        return result

    def _buy(
        self,
        account: Dict[str, Any],
        symbol: str,
        quantity: float,
        price: float,
        session: str,
        timestamp: str,
    ) -> TradeResult:
        cash_before = float(account["cash_balance"])
        total_cost = price * quantity
        if cash_before < total_cost:
            return self._reject(
                symbol, quantity, NO_CASH_NOTE, "insufficient_cash", session, timestamp, price, cash_before
            )

        cash_after = cash_before - total_cost
        position = self._position(symbol)
        if position:
            position = validate_and_fix_position(self.store, position)
            held = float(position["quantity"])
            total_shares = held + quantity
            avg_cost = (float(position["avg_cost"]) * held + price * quantity) / total_shares
            fields = {
                "avg_cost": avg_cost,
                "quantity": total_shares,
                "current_price": price,
                "unrealized_pnl": (price - avg_cost) * total_shares,
                "unrealized_pnl_pct": (price - avg_cost) / avg_cost * 100.0 if avg_cost else 0.0,
                "updated_at": timestamp,
            }
            if held == 0:
                self.store.create("PortfolioPosition", {"user_id": self.user_id, "symbol": symbol, **fields})
            else:
                self.store.update("PortfolioPosition", position["id"], fields)
        else:
            self.store.create(
                "PortfolioPosition",
                {
                    "user_id": self.user_id,
                    "symbol": symbol,
                    "avg_cost": price,
                    "quantity": quantity,
                    "current_price": price,
                    "unrealized_pnl": 0.0,
                    "unrealized_pnl_pct": 0.0,
                    "updated_at": timestamp,
                },
            )

        self.store.update("AccountState", account["id"], {"cash_balance": cash_after, "last_update": timestamp})

        note = f"✅ 已用 ${price:.2f} 成功買進 {symbol} x {quantity:g} 股（模擬）。"
        trade = self.record_trade(
            {
                "user_id": self.user_id,
                "timestamp": timestamp,
                "action": "BUY",
                "symbol": symbol,
                "fill_price": price,
                "quantity": quantity,
                "cash_before": cash_before,
                "cash_after": cash_after,
                "realized_pnl": 0.0,
                "portfolio_value_after": cash_after + self._equity_at_cost(),
                "note": note,
                "market_session": session,
            }
        )
        logger.info("BUY executed: %s x %s @ %.2f", symbol, quantity, price)
        return TradeResult(success=True, message=note, cash_balance=cash_after, fill_price=price, trade=trade)

    def _sell(
        self,
        account: Dict[str, Any],
        symbol: str,
        quantity: float,
        price: float,
        session: str,
        timestamp: str,
    ) -> TradeResult:
        cash_before = float(account["cash_balance"])
        position = self._position(symbol)
        if not position or float(position.get("quantity") or 0.0) < quantity:
            return self._reject(
                symbol, quantity, NO_SHARES_NOTE, "insufficient_holdings", session, timestamp, price, cash_before
            )

        position = validate_and_fix_position(self.store, position)
        avg_cost = float(position["avg_cost"])
        remaining = float(position["quantity"]) - quantity
        cash_after = cash_before + price * quantity

        if remaining == 0:
            self.store.delete("PortfolioPosition", position["id"])
        else:
            self.store.update(
                "PortfolioPosition",
                position["id"],
                {
                    "quantity": remaining,
                    "current_price": price,
                    "unrealized_pnl": (price - avg_cost) * remaining,
                    "unrealized_pnl_pct": (price - avg_cost) / avg_cost * 100.0 if avg_cost else 0.0,
                    "updated_at": timestamp,
                },
            )

        self.store.update("AccountState", account["id"], {"cash_balance": cash_after, "last_update": timestamp})

        note = f"✅ 已用 ${price:.2f} 成功賣出 {symbol} x {quantity:g} 股（模擬）。"
        trade = self.record_trade(
            {
                "user_id": self.user_id,
                "timestamp": timestamp,
                "action": "SELL",
                "symbol": symbol,
                "fill_price": price,
                "quantity": quantity,
                "cash_before": cash_before,
                "cash_after": cash_after,
                "realized_pnl": (price - avg_cost) * quantity,
                "portfolio_value_after": cash_after + self._equity_at_cost(),
                "note": note,
                "market_session": session,
            }
        )
        logger.info("SELL executed: %s x %s @ %.2f", symbol, quantity, price)
        return TradeResult(success=True, message=note, cash_balance=cash_after, fill_price=price, trade=trade)

    # ──────────────────────────────────────────────────────
    # REVALUATION
    # ──────────────────────────────────────────────────────

    def update_account_value(self) -> AccountValuation:
        """
        Revalue every position from LiveQuote and refresh account totals.

        Invalid positions are removed; positions with an invalid live
        price keep their previous valuation and are left out of equity.
        """
        account = self.get_account(create=False)
        if account is None:
            return AccountValuation(success=False, error="Account not found")

        cash = float(account.get("cash_balance") or 0.0)
        if not _finite(cash) or cash < 0:
            log_error(self.store, "SYSTEM", f"Negative cash_balance detected: {cash}, fixing", "CRITICAL")
            cash = 0.0
            self.store.update("AccountState", account["id"], {"cash_balance": 0.0, "last_update": utc_now_iso()})

        equity = 0.0
        invalid = 0
        for position in self.positions():
            symbol = position.get("symbol")
            if not position_is_valid(position):
                log_error(
                    self.store, "SYSTEM", f"Invalid position detected for {symbol}, removing", "CRITICAL",
                    {"position": position},
                )
                self.store.delete("PortfolioPosition", position["id"])
                invalid += 1
                continue

            quotes = self.store.filter("LiveQuote", {"symbol": symbol})
            if not quotes:
                continue
            price = quotes[0].get("last_price")
            if not _finite(price) or float(price) <= 0:
                log_error(
                    self.store, "SYSTEM", f"Invalid price for {symbol}: {price}", "MEDIUM",
                    {"symbol": symbol, "price": price},
                )
                continue

            price = float(price)
            quantity = float(position["quantity"])
            avg_cost = float(position["avg_cost"])
            pnl = (price - avg_cost) * quantity
            pnl_pct = (price - avg_cost) / avg_cost * 100.0 if avg_cost else float("nan")
            if not (math.isfinite(pnl) and math.isfinite(pnl_pct)):
                log_error(self.store, "SYSTEM", f"Invalid P/L calculation for {symbol}", "MEDIUM", {"symbol": symbol})
                continue

            self.store.update(
                "PortfolioPosition",
                position["id"],
                {
                    "current_price": price,
                    "unrealized_pnl": pnl,
                    "unrealized_pnl_pct": pnl_pct,
                    "updated_at": utc_now_iso(),
                },
            )
            equity += price * quantity

        if not math.isfinite(equity) or equity < 0:
            log_error(self.store, "SYSTEM", f"Invalid equity_value calculated: {equity}, resetting", "CRITICAL")
            equity = 0.0

        total = cash + equity
        self.store.update(
            "AccountState",
            account["id"],
            {"equity_value": equity, "total_value": total, "last_update": utc_now_iso()},
        )

        sync_error = abs(total - (cash + equity)) / total * 100.0 if total else 0.0
        if sync_error > 1:
            log_error(self.store, "SYSTEM", f"High sync error detected: {sync_error:.2f}%", "MEDIUM")

        return AccountValuation(
            success=True,
            cash_balance=cash,
            equity_value=equity,
            total_value=total,
            sync_error=f"{sync_error:.4f}%",
            warnings=f"{invalid} invalid position(s) removed" if invalid else None,
        )

    # ──────────────────────────────────────────────────────
    # PERFORMANCE METRICS & EQUITY
    # ──────────────────────────────────────────────────────

    def trade_history(self) -> List[Dict[str, Any]]:
        return self.store.filter("TradeHistory", {"user_id": self.user_id}, sort="timestamp")

    def calculate_metrics(self) -> PerformanceMetrics:
        """Metrics over realized P&L of SELL fills."""
        pnls = [
            float(row.get("realized_pnl") or 0.0)
            for row in self.trade_history()
            if row.get("action") == "SELL"
        ]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        total = len(pnls)
        gross_loss = abs(sum(losses))

        returns = [p / self.starting_cash for p in pnls] if self.starting_cash > 0 else []
        equity = [point.portfolio_value for point in self.get_equity_curve()]

        return PerformanceMetrics(
            total_trades=total,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / total * 100.0 if total else 0.0,
            average_win=float(sum(wins) / len(wins)) if wins else 0.0,
            average_loss=float(sum(losses) / len(losses)) if losses else 0.0,
            profit_factor=sum(wins) / gross_loss if gross_loss > 0 else 0.0,
            total_pnl=float(sum(pnls)),
            max_drawdown_pct=self._calculate_max_drawdown(equity),
            sharpe_ratio=self._calculate_sharpe_ratio(returns),
            largest_win=float(max(wins)) if wins else 0.0,
            largest_loss=float(min(losses)) if losses else 0.0,
        )

    @staticmethod
    def _calculate_max_drawdown(equity: List[float]) -> float:
        """Maximum peak-to-trough drawdown in percent (positive number)."""
        if not equity:
            return 0.0

        peak = equity[0]
        max_dd = 0.0
        for value in equity:
            if value > peak:
                peak = value
            dd = (peak - value) / peak * 100.0 if peak > 0 else 0.0
            max_dd = max(max_dd, dd)
        return max_dd

    @staticmethod
    def _calculate_sharpe_ratio(returns: List[float], risk_free_rate: float = 0.0) -> float:
        if len(returns) < 2:
            return 0.0

        arr = np.array(returns, dtype=float)
        excess = arr - risk_free_rate
        std = excess.std(ddof=1)
        if std == 0:
            return 0.0
        return float(excess.mean() / std)

    def get_equity_curve(self) -> List[EquityPoint]:
        """Portfolio value after each fill, ordered by time."""
        points: List[EquityPoint] = []
        for row in self.trade_history():
            if row.get("action") not in ("BUY", "SELL"):
                continue
            value = row.get("portfolio_value_after")
            if not _finite(value):
                continue
            value = float(value)
            points.append(
                EquityPoint(
                    timestamp_utc=str(row.get("timestamp", "")),
                    portfolio_value=value,
                    cash=float(row.get("cash_after") or 0.0),
                    cumulative_pnl=value - self.starting_cash,
                )
            )
        return points

    # ──────────────────────────────────────────────────────
    # BACKUP & RESTORE
    # ──────────────────────────────────────────────────────

    def backup(self) -> Optional[Path]:
        """Snapshot the local entity store; remote stores are not backed up here."""
        if not isinstance(self.store, LocalEntityStore):
            logger.warning("Backup is only supported for the local entity store.")
            return None
        return self.store.backup(settings.backup_dir)

    def restore(self, backup_path: Path) -> bool:
        if not isinstance(self.store, LocalEntityStore):
            logger.warning("Restore is only supported for the local entity store.")
            return False
        return self.store.restore(backup_path)


# ──────────────────────────────────────────────────────────
# FUNCTION ENTRY POINTS
# ──────────────────────────────────────────────────────────


@register("simulateTrade")
def simulate_trade(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """``{"action": "BUY"|"SELL", "symbol": ..., "quantity": n}``"""
    account = PaperAccount(store, user_id=payload.get("user_id", DEFAULT_USER))
    result = account.simulate_trade(payload.get("symbol", ""), payload.get("action", ""), payload.get("quantity") or 0)
    return result.to_dict()


@register("updateAccountValue")
def update_account_value(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    account = PaperAccount(store, user_id=payload.get("user_id", DEFAULT_USER))
    return account.update_account_value().to_dict()


# ──────────────────────────────────────────────────────────
# CLI TOOL
# ──────────────────────────────────────────────────────────


def _print_account_summary(account: PaperAccount) -> None:
    state = account.get_account()
    print("\n" + "=" * 70)
    print("FLOW-PRESSURE Paper Account")
    print("=" * 70)
    print(f"\nCash: ${float(state['cash_balance']):,.2f}")
    print(f"Equity: ${float(state.get('equity_value') or 0.0):,.2f}")
    print(f"Total Value: ${float(state.get('total_value') or 0.0):,.2f}")

    positions = account.positions()
    if positions:
        print("\nOpen Positions:")
        for pos in positions:
            print(
                f"  {pos['symbol']}: {float(pos['quantity']):g} @ ${float(pos['avg_cost']):.4f} "
                f"(unrealized ${float(pos.get('unrealized_pnl') or 0.0):+.2f})"
            )

    print("\nCommands:")
    print("  python portfolio.py metrics    # Show performance metrics")
    print("  python portfolio.py revalue    # Revalue from live quotes")
    print("  python portfolio.py backup     # Snapshot the entity store")
    print("=" * 70 + "\n")


def _print_metrics(account: PaperAccount) -> None:
    metrics = account.calculate_metrics()
    print("\n" + "=" * 70)
    print("Performance Metrics")
    print("=" * 70)
    print(f"Total Trades: {metrics.total_trades}")
    print(f"Win Rate: {metrics.win_rate:.1f}%")
    print(f"Wins / Losses: {metrics.winning_trades} / {metrics.losing_trades}")
    print(f"Profit Factor: {metrics.profit_factor:.2f}")
    print(f"Sharpe Ratio: {metrics.sharpe_ratio:.2f}")
    print(f"Max Drawdown: {metrics.max_drawdown_pct:.2f}%")
    print(f"Total P&L: ${metrics.total_pnl:+,.2f}")
    print("=" * 70 + "\n")


if __name__ == "__main__":
    import sys

    paper = PaperAccount()

    if len(sys.argv) < 2:
        _print_account_summary(paper)
        sys.exit(0)

    command = sys.argv[1].lower()

    if command == "metrics":
        _print_metrics(paper)
    elif command == "revalue":
        print(paper.update_account_value().to_dict())
    elif command == "backup":
        path = paper.backup()
        print(f"✅ Backup created at {path}." if path else "❌ Backup failed.")
    else:
        _print_account_summary(paper)
