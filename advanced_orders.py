"""
============================================================
FLOW-PRESSURE v1.0 - Advanced Order Engine
============================================================
Conditional orders stored as AdvancedOrder entities.

Order types:
- MARKET / LIMIT: trigger on the next check once conditions hold
- STOP_LOSS:   SELL fires at price <= stop, BUY at price >= stop
- TAKE_PROFIT: SELL fires at price >= target, BUY at price <= target
- BRACKET: parent plus opposite-side STOP_LOSS and TAKE_PROFIT children
- OCO: two orders sharing ``oco_pair_id``; a fill cancels the other

Optional gates: pressure ABOVE/BELOW a trigger level and a required
sentiment (BULLISH/BEARISH/NEUTRAL, or ANY).

Costs: fee 0.8% and slippage 0.05% of notional.
BUY total = base + fee + slippage; SELL net = base - fee - slippage.

Usage:
    from advanced_orders import AdvancedOrderEngine

    engine = AdvancedOrderEngine(store)
    created = engine.create_order({
        "symbol": "AAPL", "order_type": "BRACKET", "side": "BUY",
        "quantity": 10, "stop_loss_percent": -3, "take_profit_percent": 5,
    })
    engine.check_orders()
============================================================
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from alerts import notify_fill
from config import get_logger, get_settings
from entity_store import EntityNotFoundError, EntityStore, get_store, utc_now_iso
from functions import register
from llm import invoke_llm

logger = get_logger(__name__)
settings = get_settings()

ORDER_TYPES = ("MARKET", "LIMIT", "STOP_LOSS", "TAKE_PROFIT", "BRACKET", "OCO")

AI_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "confidence": {"type": "number"},
        "timing": {"type": "string", "enum": ["EXECUTE_NOW", "WAIT_FOR_BETTER_PRICE", "CANCEL_RISKY"]},
        "risk_level": {"type": "string", "enum": ["LOW", "MEDIUM", "HIGH"]},
        "reasoning_en": {"type": "string"},
        "reasoning_zh": {"type": "string"},
        "suggested_stop_loss": {"type": "number"},
        "suggested_take_profit": {"type": "number"},
    },
    "required": ["confidence", "timing", "risk_level", "reasoning_en", "reasoning_zh"],
}


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class CostBreakdown:
    base_cost: float
    fee: float
    slippage: float
    total: float


@dataclass
class MarketSnapshot:
    """Latest price, pressure and sentiment for one symbol."""

    price: float
    pressure: float
    sentiment: str
    spi: float
    quote: Optional[Dict[str, Any]] = None
    pressure_data: Optional[Dict[str, Any]] = None
    sentiment_data: Optional[Dict[str, Any]] = None


@dataclass
class CheckResult:
    checked: int
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, **asdict(self)}


# ──────────────────────────────────────────────────────────
# PURE RULES
# ──────────────────────────────────────────────────────────


def calculate_total_cost(
    price: float,
    quantity: float,
    side: str,
    fee_rate: Optional[float] = None,
    slippage_rate: Optional[float] = None,
) -> CostBreakdown:
    fee_rate = settings.order_fee_rate if fee_rate is None else fee_rate
    slippage_rate = settings.slippage_rate if slippage_rate is None else slippage_rate

    base = price * quantity
    fee = base * fee_rate
    slippage = base * slippage_rate
    total = base + fee + slippage if side == "BUY" else base - fee - slippage
    return CostBreakdown(base_cost=base, fee=fee, slippage=slippage, total=total)


def should_trigger(order: Dict[str, Any], market: MarketSnapshot) -> bool:
    """True when every gate on ``order`` is satisfied by ``market``."""
    condition = order.get("pressure_condition") or "NONE"
    trigger = order.get("pressure_trigger")
    if condition != "NONE" and trigger is not None:
        if condition == "ABOVE" and market.pressure < float(trigger):
            return False
        if condition == "BELOW" and market.pressure > float(trigger):
            return False

    sentiment = order.get("sentiment_trigger") or "ANY"
    if sentiment != "ANY" and sentiment != market.sentiment.upper():
        return False

    order_type = order.get("order_type")
    side = order.get("side")
    if order_type == "STOP_LOSS":
        stop = order.get("stop_loss_price")
        if stop is None:
            return False
        return market.price <= stop if side == "SELL" else market.price >= stop

    if order_type == "TAKE_PROFIT":
        target = order.get("take_profit_price")
        if target is None:
            return False
        return market.price >= target if side == "SELL" else market.price <= target

    return True


def _latest(records: List[Dict[str, Any]], time_field: str) -> Optional[Dict[str, Any]]:
    if not records:
        return None
    return max(records, key=lambda r: str(r.get(time_field) or ""))


def _opposite(side: str) -> str:
    return "SELL" if side == "BUY" else "BUY"


# ──────────────────────────────────────────────────────────
# ENGINE
# ──────────────────────────────────────────────────────────


class AdvancedOrderEngine:
    """
    Create, check and cancel AdvancedOrder records.

    Args:
        store: Entity store.
        user_id: Owner of created orders; ``check`` only scans this user's.
        delay_seconds: Simulated execution delay before each fill.
    """

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        user_id: str = "local",
        delay_seconds: Optional[float] = None,
    ) -> None:
        self.store = store or get_store()
        self.user_id = user_id
        self.delay_seconds = settings.delay_compensation_seconds if delay_seconds is None else delay_seconds

    def market_snapshot(self, symbol: str) -> MarketSnapshot:
        pressure = _latest(self.store.filter("StockPressure", {"symbol": symbol}), "timestamp")
        sentiment = _latest(self.store.filter("SemanticPressure", {"symbol": symbol}), "timestamp")
        quote = _latest(self.store.filter("LiveQuote", {"symbol": symbol}), "ts_last_update")

        price = (quote or {}).get("last_price") or (pressure or {}).get("price") or 0.0
        p_value = (pressure or {}).get("final_pressure")
        spi = (sentiment or {}).get("spi")
        return MarketSnapshot(
            price=float(price),
            pressure=float(p_value) if p_value is not None else 50.0,
            sentiment=(sentiment or {}).get("sentiment") or "neutral",
            spi=float(spi) if spi is not None else 50.0,
            quote=quote,
            pressure_data=pressure,
            sentiment_data=sentiment,
        )

    def optimize_with_ai(self, order: Dict[str, Any], market: MarketSnapshot) -> Dict[str, Any]:
        """Confidence, timing and risk for an order; neutral fallback offline."""
        fallback = {
            "confidence": 50,
            "timing": "EXECUTE_NOW",
            "risk_level": "MEDIUM",
            "reasoning_en": "AI analysis unavailable, proceeding with order as specified.",
            "reasoning_zh": "AI 分析暫時無法使用，按指定參數執行訂單。",
            "suggested_stop_loss": order.get("stop_loss_price"),
            "suggested_take_profit": order.get("take_profit_price"),
        }

        def _fmt(price_key: str, pct_key: str) -> str:
            if order.get(price_key):
                return f"${order[price_key]:.2f}"
            if order.get(pct_key):
                return f"{order[pct_key]}%"
            return "None"

        entry = order.get("entry_price")
        prompt = (
            "Analyze this trading order and provide optimization advice:\n\n"
            f"Symbol: {order.get('symbol')}\n"
            f"Order Type: {order.get('order_type')}\n"
            f"Side: {order.get('side')}\n"
            f"Quantity: {order.get('quantity')}\n"
            f"Entry Price: {f'${entry:.2f}' if entry else 'Market'}\n\n"
            "Market Conditions:\n"
            f"- Current Price: ${market.price:.2f}\n"
            f"- Pressure Index: {market.pressure:.0f}/100\n"
            f"- Sentiment: {market.sentiment}\n"
            f"- SPI: {market.spi:.0f}\n\n"
            f"Stop Loss: {_fmt('stop_loss_price', 'stop_loss_percent')}\n"
            f"Take Profit: {_fmt('take_profit_price', 'take_profit_percent')}\n\n"
            "Provide a confidence score (0-100), execution timing, risk level and brief "
            "reasoning in English and Traditional Chinese."
        )
        return invoke_llm(prompt, AI_SCHEMA, fallback, name="order_optimization")

    # ──────────────────────────────────────────────────────
    # CREATE
    # ──────────────────────────────────────────────────────

    def create_order(self, order_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an order (plus bracket children or OCO partner).

        Raises:
            ValueError: On a missing symbol, bad side, type or quantity.
        """
        symbol = str(order_data.get("symbol") or "").upper()
        side = str(order_data.get("side") or "").upper()
        order_type = str(order_data.get("order_type") or "MARKET").upper()
        quantity = order_data.get("quantity")
        if not symbol:
            raise ValueError("symbol is required")
        if side not in ("BUY", "SELL"):
            raise ValueError(f"Invalid side: {side!r}")
        if order_type not in ORDER_TYPES:
            raise ValueError(f"Invalid order type: {order_type!r}")
        if not quantity or quantity <= 0:
            raise ValueError("quantity must be positive")

        logger.info("Creating %s %s order for %s x%s", order_type, side, symbol, quantity)
        market = self.market_snapshot(symbol)
        entry_price = order_data.get("entry_price") or market.price
        estimate = calculate_total_cost(entry_price, quantity, side)

        stop_price = order_data.get("stop_loss_price")
        take_price = order_data.get("take_profit_price")
        if order_data.get("stop_loss_percent") and not stop_price:
            stop_price = entry_price * (1 + order_data["stop_loss_percent"] / 100.0)
        if order_data.get("take_profit_percent") and not take_price:
            take_price = entry_price * (1 + order_data["take_profit_percent"] / 100.0)

        ai = self.optimize_with_ai(
            {
                **order_data,
                "symbol": symbol,
                "side": side,
                "order_type": order_type,
                "entry_price": entry_price,
                "stop_loss_price": stop_price,
                "take_profit_price": take_price,
            },
            market,
        )

        now = utc_now_iso()
        main = self.store.create(
            "AdvancedOrder",
            {
                "user_id": self.user_id,
                "symbol": symbol,
                "order_type": order_type,
                "side": side,
                "quantity": quantity,
                "entry_price": entry_price,
                "limit_price": order_data.get("limit_price"),
                "stop_loss_price": stop_price or ai.get("suggested_stop_loss"),
                "stop_loss_percent": order_data.get("stop_loss_percent"),
                "take_profit_price": take_price or ai.get("suggested_take_profit"),
                "take_profit_percent": order_data.get("take_profit_percent"),
                "trailing_stop": bool(order_data.get("trailing_stop", False)),
                "trailing_stop_distance": order_data.get("trailing_stop_distance"),
                "pressure_trigger": order_data.get("pressure_trigger"),
                "pressure_condition": order_data.get("pressure_condition") or "NONE",
                "sentiment_trigger": order_data.get("sentiment_trigger") or "ANY",
                "status": "PENDING",
                "slippage_estimate": estimate.slippage,
                "fee_estimate": estimate.fee,
                "total_cost_estimate": estimate.total,
                "ai_confidence": ai.get("confidence"),
                "ai_timing": ai.get("timing"),
                "ai_risk_level": ai.get("risk_level"),
                "ai_reasoning_en": ai.get("reasoning_en"),
                "ai_reasoning_zh": ai.get("reasoning_zh"),
                "created_at": now,
                "expires_at": order_data.get("expires_at"),
                "last_checked": now,
            },
        )

        if order_type == "BRACKET":
            children: List[str] = []
            for child_type, key, price in (
                ("STOP_LOSS", "stop_loss_price", stop_price),
                ("TAKE_PROFIT", "take_profit_price", take_price),
            ):
                if not price:
                    continue
                child = self.store.create(
                    "AdvancedOrder",
                    {
                        "user_id": self.user_id,
                        "symbol": symbol,
                        "order_type": child_type,
                        "side": _opposite(side),
                        "quantity": quantity,
                        key: price,
                        "parent_order_id": main["id"],
                        "pressure_condition": "NONE",
                        "sentiment_trigger": "ANY",
                        "status": "PENDING",
                        "created_at": now,
                        "last_checked": now,
                    },
                )
                children.append(child["id"])
            main = self.store.update("AdvancedOrder", main["id"], {"child_order_ids": children})

        pair = order_data.get("oco_pair_data")
        if order_type == "OCO" and pair:
            pair_id = f"OCO_{int(time.time() * 1000)}"
            main = self.store.update("AdvancedOrder", main["id"], {"oco_pair_id": pair_id})
            partner = self.store.create(
                "AdvancedOrder",
                {
                    "user_id": self.user_id,
                    "symbol": symbol,
                    "order_type": pair.get("order_type"),
                    "side": pair.get("side"),
                    "quantity": quantity,
                    "entry_price": pair.get("entry_price"),
                    "stop_loss_price": pair.get("stop_loss_price"),
                    "take_profit_price": pair.get("take_profit_price"),
                    "oco_pair_id": pair_id,
                    "pressure_condition": "NONE",
                    "sentiment_trigger": "ANY",
                    "status": "PENDING",
                    "created_at": now,
                    "last_checked": now,
                },
            )
            logger.info("OCO pair created: %s & %s", main["id"], partner["id"])

        return {
            "success": True,
            "order": main,
            "ai_analysis": ai,
            "cost_estimate": asdict(estimate),
            "market_data": asdict(market),
            "message": f"Order created successfully. AI confidence: {ai.get('confidence')}%",
        }

    # ──────────────────────────────────────────────────────
    # EXECUTE
    # ──────────────────────────────────────────────────────

    def execute_order(self, order: Dict[str, Any], market: MarketSnapshot) -> Dict[str, Any]:
        """Fill ``order`` at the snapshot price and mirror it into AutoTrade."""
        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        price = market.price
        symbol = order["symbol"]
        cost = calculate_total_cost(price, order["quantity"], order["side"])
        now = utc_now_iso()
        reason_en = f"{order.get('ai_reasoning_en') or ''}"
        reason_zh = f"{order.get('ai_reasoning_zh') or ''}"
        gain: Optional[float] = None

        if order["side"] == "BUY":
            self.store.create(
                "AutoTrade",
                {
                    "symbol": symbol,
                    "company_name": symbol,
                    "shares": order["quantity"],
                    "status": "OPEN",
                    "entry_time": now,
                    "entry_confidence": order.get("ai_confidence") or 50,
                    "entry_flow_strength": market.pressure,
                    "buy_price": price,
                    "total_cost": cost.total,
                    "entry_reason_en": (
                        f"Advanced Order: {order['order_type']} BUY executed at ${price:.2f}. {reason_en}"
                    ).strip(),
                    "entry_reason_zh": f"進階訂單：{order['order_type']} 買入執行於 ${price:.2f}。{reason_zh}",
                    "pl_percent": 0.0,
                    "pl_amount": 0.0,
                },
            )
        else:
            open_positions = self.store.filter("AutoTrade", {"symbol": symbol, "status": "OPEN"})
            if open_positions:
                position = open_positions[0]
                total_cost = float(position.get("total_cost") or 0.0)
                gain = cost.total - total_cost
                gain_pct = gain / total_cost * 100.0 if total_cost else 0.0
                self.store.update(
                    "AutoTrade",
                    position["id"],
                    {
                        "sell_price": price,
                        "exit_time": now,
                        "pl_percent": gain_pct,
                        "pl_amount": gain,
                        "exit_reason_en": (
                            f"Advanced Order: {order['order_type']} SELL executed at ${price:.2f}. {reason_en}"
                        ).strip(),
                        "exit_reason_zh": f"進階訂單：{order['order_type']} 賣出執行於 ${price:.2f}。{reason_zh}",
                        "status": "CLOSED",
                        "trade_type": "WIN" if gain >= 0 else "LOSS",
                    },
                )
                logger.info("Position closed: %s, P/L %+.2f%%", symbol, gain_pct)

        self.store.update(
            "AdvancedOrder",
            order["id"],
            {
                "status": "FILLED",
                "filled_price": price,
                "filled_quantity": order["quantity"],
                "filled_time": now,
            },
        )
        logger.info("Order filled: %s %s @ $%.2f", symbol, order["side"], price)
        notify_fill(
            symbol,
            f"{order['side']} ({order['order_type']})",
            order["quantity"],
            price,
            "advanced_order",
            store=self.store,
            profit=gain,
        )
        return {"success": True, "filled_price": price, "cost_breakdown": asdict(cost)}

    def cancel_oco_pair(self, pair_id: str, except_id: str) -> int:
        cancelled = 0
        for order in self.store.filter("AdvancedOrder", {"oco_pair_id": pair_id}):
            if order["id"] == except_id or order.get("status") in ("FILLED", "CANCELLED"):
                continue
            self.store.update("AdvancedOrder", order["id"], {"status": "CANCELLED", "last_checked": utc_now_iso()})
            logger.info("OCO order cancelled: %s", order["id"])
            cancelled += 1
        return cancelled

    def check_orders(self) -> CheckResult:
        """Evaluate every PENDING order; errors are reported per order."""
        pending = self.store.filter("AdvancedOrder", {"user_id": self.user_id, "status": "PENDING"})
        result = CheckResult(checked=len(pending))

        for order in pending:
            try:
                if self._expired(order):
                    self.store.update("AdvancedOrder", order["id"], {"status": "EXPIRED", "last_checked": utc_now_iso()})
                    result.results.append({"order_id": order["id"], "status": "EXPIRED"})
                    continue

                market = self.market_snapshot(order["symbol"])
                self.store.update("AdvancedOrder", order["id"], {"last_checked": utc_now_iso()})

                if not should_trigger(order, market):
                    result.results.append(
                        {"order_id": order["id"], "status": "PENDING", "reason": "Conditions not met"}
                    )
                    continue

                logger.info("Order triggered: %s", order["id"])
                execution = self.execute_order(order, market)
                if order.get("oco_pair_id"):
                    self.cancel_oco_pair(order["oco_pair_id"], order["id"])
                result.results.append({"order_id": order["id"], "status": "EXECUTED", "execution": execution})
            except Exception as exc:  # noqa: BLE001
                logger.error("Error processing order %s: %s", order.get("id"), exc, exc_info=True)
                result.results.append({"order_id": order.get("id"), "status": "ERROR", "error": str(exc)})

        return result

    @staticmethod
    def _expired(order: Dict[str, Any]) -> bool:
        raw = order.get("expires_at")
        if not raw:
            return False
        try:
            expires = datetime.fromisoformat(str(raw))
        except ValueError:
            return False
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires <= datetime.now(timezone.utc)

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """Cancel an order, its bracket children and its OCO partner."""
        try:
            order = self.store.get("AdvancedOrder", order_id)
        except EntityNotFoundError:
            return {"success": False, "error": "Order not found"}
        if order.get("user_id") != self.user_id:
            return {"success": False, "error": "Order not found"}

        self.store.update("AdvancedOrder", order_id, {"status": "CANCELLED", "last_checked": utc_now_iso()})
        for child_id in order.get("child_order_ids") or []:
            self.store.update("AdvancedOrder", child_id, {"status": "CANCELLED"})
        if order.get("oco_pair_id"):
            self.cancel_oco_pair(order["oco_pair_id"], order_id)

        logger.info("Order cancelled: %s", order_id)
        return {"success": True, "message": "Order cancelled"}


@register("advancedOrderEngine")
def advanced_order_engine(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """Modes: ``create`` (order_data), ``check``, ``cancel`` (order_id)."""
    engine = AdvancedOrderEngine(
        store,
        user_id=payload.get("user_id", "local"),
        delay_seconds=payload.get("delay_seconds"),
    )
    mode = payload.get("mode", "create")

    if mode == "create":
        try:
            return engine.create_order(payload.get("order_data") or {})
        except ValueError as exc:
            return {"success": False, "error": str(exc)}
    if mode == "check":
        return engine.check_orders().to_dict()
    if mode == "cancel" and payload.get("order_id"):
        return engine.cancel_order(payload["order_id"])
    return {"success": False, "error": "Invalid mode"}
