"""
FLOW-PRESSURE v1.0 - Flow-pressure tick simulator.

Opens one position per symbol when flow pressure runs hot and closes it
on a cool-down, take-profit, stop-loss or time limit. Pure in-memory
state; nothing is persisted. The dashboard replays stored pressure
readings through it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class SimulatorParams:
    capital: float = 10_000.0
    trade_per_signal: float = 0.1
    entry_threshold: float = 70.0
    exit_threshold: float = 40.0
    take_profit_pct: float = 0.03  # fraction, not percent
    stop_loss_pct: float = -0.02
    hold_time_sec: float = 300.0
    fee_rate: float = 0.001


@dataclass
class SimPosition:
    symbol: str
    entry: float
    opened_at: float
    size: float


@dataclass
class SimTrade:
    symbol: str
    entry: float
    exit: float
    pnl: float
    held_seconds: float
    closed_at: float


@dataclass
class SimulatorState:
    params: SimulatorParams = field(default_factory=SimulatorParams)
    positions: Dict[str, SimPosition] = field(default_factory=dict)
    trades: List[SimTrade] = field(default_factory=list)
    pnl: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "capital": self.params.capital,
            "pnl": round(self.pnl, 2),
            "open_positions": len(self.positions),
            "trades": self.trades[-10:],
        }


def tick(state: SimulatorState, symbol: str, flow: float, price: float, now: Optional[float] = None) -> Optional[SimTrade]:
    """
    Feed one (flow, price) observation for ``symbol``.

    Entry and exit never happen on the same tick. Returns the trade
    closed by this tick, if any.
    """
    now = time.time() if now is None else now
    params = state.params
    position = state.positions.get(symbol)

    if position is None:
        if flow > params.entry_threshold:
            state.positions[symbol] = SimPosition(
                symbol=symbol,
                entry=price,
                opened_at=now,
                size=params.capital * params.trade_per_signal,
            )
        return None

    held = now - position.opened_at
    pnl_pct = (price - position.entry) / position.entry
    if not (
        flow < params.exit_threshold
        or pnl_pct > params.take_profit_pct
        or pnl_pct < params.stop_loss_pct
        or held >= params.hold_time_sec
    ):
        return None

    trade = SimTrade(
        symbol=symbol,
        entry=position.entry,
        exit=price,
        pnl=pnl_pct * position.size * (1 - params.fee_rate),
        held_seconds=held,
        closed_at=now,
    )
    state.pnl += trade.pnl
    state.trades.append(trade)
    del state.positions[symbol]
    return trade


def replay_pressure(
    records: Iterable[Dict[str, Any]],
    params: Optional[SimulatorParams] = None,
    time_field: str = "timestamp",
) -> SimulatorState:
    """
    Replay stored StockPressure readings through ``tick`` in time order.

    ``final_pressure`` drives the flow and ``price`` the fills. Readings
    with no usable timestamp, price or pressure are skipped.
    """
    state = SimulatorState(params=params or SimulatorParams())
    readings = []
    for record in records:
        try:
            stamp = datetime.fromisoformat(str(record.get(time_field)))
            flow = float(record["final_pressure"])
            price = float(record["price"])
        except (KeyError, TypeError, ValueError):
            continue
        if price <= 0:
            continue
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        readings.append((stamp.timestamp(), str(record.get("symbol", "")).upper(), flow, price))

    for now, symbol, flow, price in sorted(readings):
        tick(state, symbol, flow, price, now=now)
    return state
