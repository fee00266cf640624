"""
============================================================
FLOW-PRESSURE v1.0 - Flow Dashboard
============================================================
Interactive Streamlit console over the entity store.

Features:
- Pressure monitor (latest StockPressure per symbol + history chart)
- Semantic pressure monitor (SPI, sentiment, keywords)
- Manual trading console (buy / sell / watchlist / stats)
- Paper account (balances, positions, equity curve, metrics)
- Opportunity scanner results
- Manual vs auto trading reports
- Flow simulator replay over stored pressure readings
- English / 繁體中文 language switch

Usage:
    streamlit run app.py

    # Custom port
    streamlit run app.py --server.port 8502

Navigation:
1. 📈 Pressure Monitor
2. 🧠 Semantic Pressure
3. 🕹️ Manual Trading
4. 💼 Paper Account
5. 🔎 Opportunities
6. 📑 Reports
7. 🧪 Flow Simulator
============================================================
"""

from __future__ import annotations

import platform
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from config import get_logger, get_run_id, get_settings
from entity_store import EntityStore, get_store
from flowpressure import __version__
from flowpressure.cli import collect_doctor_info
from i18n import t
from manual_trading import STALE_AFTER_SECONDS, ManualTrader, button_hint, clamp_quantity, is_data_stale
from opportunity_scanner import scan_opportunities
from portfolio import PaperAccount
from pressure_index import latest_by_symbol
from reports import generate_manual_trading_report
from simulator import SimulatorParams, replay_pressure

logger = get_logger(__name__)
settings = get_settings()

st.set_page_config(
    page_title="FLOW-PRESSURE",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded",
)


# ──────────────────────────────────────────────────────────
# CUSTOM STYLING
# ──────────────────────────────────────────────────────────


def inject_custom_css() -> None:
    """Dark terminal styling."""
    st.markdown(
        """
    <style>
    :root {
        --bg-primary: #0e1117;
        --bg-secondary: #1a1d24;
        --text-primary: #e6e6e6;
        --accent-blue: #00aaff;
    }

    section[data-testid="stSidebar"] {
        background-color: var(--bg-secondary);
        border-right: 1px solid #333;
    }

    div[data-testid="stMetricValue"] {
        font-size: 1.5rem;
        font-weight: 700;
        font-family: "Courier New", monospace;
    }

    .stTabs [aria-selected="true"] {
        color: var(--accent-blue);
        border-bottom-color: var(--accent-blue);
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
    </style>
    """,
        unsafe_allow_html=True,
    )


# ──────────────────────────────────────────────────────────
# UTILITY FUNCTIONS
# ──────────────────────────────────────────────────────────


def lang() -> str:
    return st.session_state.get("lang", settings.language)


def tr(key: str, **kwargs: object) -> str:
    return t(key, lang(), **kwargs)


def localized(record: Dict[str, Any], field: str) -> str:
    """Pick ``field_en`` / ``field_zh`` from a bilingual record."""
    return str(record.get(f"{field}_{lang()}") or record.get(f"{field}_en") or "")


def format_currency(value: float) -> str:
    color = "green" if value >= 0 else "red"
    sign = "+" if value > 0 else ""
    return f":{color}[{sign}${value:,.2f}]"


def get_action_emoji(action: str) -> str:
    return {
        "BUY": "🟢",
        "STRONG_BUY": "🟢",
        "SELL": "🔴",
        "STRONG_SELL": "🔴",
        "HOLD": "⚪",
    }.get(str(action).upper(), "❓")


def render_diagnostics_panel() -> None:
    with st.expander("🩺 Diagnostics", expanded=False):
        try:
            info = collect_doctor_info()
            st.write(
                {
                    "version": __version__,
                    "python": info.get("python"),
                    "platform": platform.platform(),
                    "run_id": info.get("run_id"),
                    "mock_mode": info.get("mock_mode"),
                    "entity_backend": info.get("entity_backend"),
                }
            )
            st.caption("Run `flowpressure doctor` for full diagnostics.")
        except Exception as exc:  # noqa: BLE001
            st.warning(f"Diagnostics unavailable: {exc}.")


# ──────────────────────────────────────────────────────────
# CHART BUILDERS
# ──────────────────────────────────────────────────────────


def build_pressure_chart(records: List[Dict[str, Any]], symbol: str) -> Optional[go.Figure]:
    """Pressure history for one symbol with the 30 / 70 action bands."""
    rows = [r for r in records if r.get("symbol") == symbol]
    if not rows:
        return None

    df = pd.DataFrame(rows)
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    df = df.sort_values("timestamp")

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=df["timestamp"],
            y=df["final_pressure"],
            mode="lines+markers",
            name="Pressure",
            line=dict(color="#00aaff", width=2),
        )
    )
    fig.add_hline(y=70, line_dash="dash", line_color="#00ff00", annotation_text="BUY")
    fig.add_hline(y=30, line_dash="dash", line_color="#ff0000", annotation_text="SELL")
    fig.update_layout(
        template="plotly_dark",
        height=350,
        title=f"{symbol} Pressure",
        yaxis=dict(range=[0, 100]),
        hovermode="x unified",
        plot_bgcolor="#0e1117",
        paper_bgcolor="#0e1117",
    )
    return fig


def build_equity_curve(account: PaperAccount) -> Optional[go.Figure]:
    points = account.get_equity_curve()
    if not points:
        return None

    df = pd.DataFrame(
        {
            "Date": pd.to_datetime([p.timestamp_utc for p in points]),
            "Value": [p.portfolio_value for p in points],
        }
    )
    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=df["Date"],
            y=df["Value"],
            mode="lines",
            name="Portfolio Value",
            line=dict(color="#00aaff", width=2),
            fill="tozeroy",
            fillcolor="rgba(0,170,255,0.1)",
        )
    )
    fig.add_hline(
        y=account.starting_cash,
        line_dash="dash",
        line_color="gray",
        annotation_text="Starting Capital",
    )
    fig.update_layout(
        template="plotly_dark",
        height=400,
        title="Equity Curve",
        yaxis_title="Portfolio Value ($)",
        hovermode="x unified",
        plot_bgcolor="#0e1117",
        paper_bgcolor="#0e1117",
    )
    return fig


# ──────────────────────────────────────────────────────────
# SIDEBAR
# ──────────────────────────────────────────────────────────


def render_sidebar(store: EntityStore) -> None:
    with st.sidebar:
        st.markdown("<h3 style='color:#00aaff;'>FLOW-PRESSURE v1.0</h3>", unsafe_allow_html=True)

        options = ["en", "zh"]
        st.session_state["lang"] = st.radio(
            tr("language"),
            options,
            index=options.index(lang()) if lang() in options else 0,
            format_func=lambda code: "English" if code == "en" else "繁體中文",
            horizontal=True,
        )
        st.markdown("---")

        account = PaperAccount(store).get_account()
        st.markdown(f"### 💼 {tr('nav_account')}")
        st.metric(tr("cash"), f"${float(account['cash_balance']):,.2f}")
        st.metric(tr("total_value"), f"${float(account['total_value']):,.2f}")

        stats = ManualTrader(store).stats()
        st.markdown("---")
        st.markdown(f"### 🕹️ {tr('nav_manual')}")
        st.metric(tr("win_rate"), f"{stats.win_rate:.1f}%")
        st.metric(tr("total_pl"), f"${stats.total_pl:,.2f}")

        st.markdown("---")
        if st.button(f"🔄 {tr('refresh')}", use_container_width=True):
            st.cache_data.clear()
            st.rerun()

        st.markdown("---")
        st.caption(f"Version: {__version__}")
        st.caption(f"RUN_ID: {get_run_id()}")


# ──────────────────────────────────────────────────────────
# TAB: PRESSURE MONITOR
# ──────────────────────────────────────────────────────────


def render_pressure_tab(store: EntityStore) -> None:
    st.header(f"📈 {tr('nav_pressure')}")

    records = store.list("StockPressure", sort="-timestamp", limit=500)
    if not records:
        st.info(tr("no_data"))
        return

    latest = latest_by_symbol(records)
    df = pd.DataFrame(
        [
            {
                "Symbol": sym,
                "Price": rec.get("price"),
                "Volume": rec.get("volume"),
                "Pressure": rec.get("final_pressure"),
                "Zone": rec.get("pressure_zone"),
                "Action": f"{get_action_emoji(rec.get('ai_action', ''))} {rec.get('ai_action', '')}",
                "Status": rec.get("data_status"),
                "Updated": rec.get("timestamp"),
            }
            for sym, rec in sorted(latest.items())
        ]
    )
    st.dataframe(df, use_container_width=True, hide_index=True)

    avg = sum(float(r.get("final_pressure") or 0.0) for r in latest.values()) / len(latest)
    st.metric("Market Avg Pressure", f"{avg:.1f}")

    symbol = st.selectbox("Symbol", sorted(latest))
    fig = build_pressure_chart(records, symbol)
    if fig is not None:
        st.plotly_chart(fig, use_container_width=True)


# ──────────────────────────────────────────────────────────
# TAB: SEMANTIC PRESSURE
# ──────────────────────────────────────────────────────────


def render_semantic_tab(store: EntityStore) -> None:
    st.header(f"🧠 {tr('nav_semantic')}")

    latest = latest_by_symbol(store.list("SemanticPressure", sort="-timestamp", limit=500))
    if not latest:
        st.info(tr("no_data"))
        return

    for symbol, rec in sorted(latest.items()):
        with st.container(border=True):
            c1, c2, c3 = st.columns([1, 1, 3])
            with c1:
                st.metric(symbol, f"{float(rec.get('spi') or 0.0):.1f}", delta=f"{float(rec.get('spi_change') or 0.0):+.1f}")
            with c2:
                st.write(f"**{rec.get('sentiment', 'neutral')}**")
                if rec.get("alert_triggered"):
                    st.warning("⚡ SPI swing")
            with c3:
                st.write(localized(rec, "ai_suggestion"))
                keywords = list(rec.get("positive_keywords") or []) + list(rec.get("negative_keywords") or [])
                if keywords:
                    st.caption(" ".join(f"`{k}`" for k in keywords[:8]))


# ──────────────────────────────────────────────────────────
# TAB: MANUAL TRADING
# ──────────────────────────────────────────────────────────


def render_manual_tab(store: EntityStore) -> None:
    st.header(f"🕹️ {tr('nav_manual')}")
    trader = ManualTrader(store)

    rows = trader.console_rows()
    pressure_records = store.list("StockPressure", sort="-timestamp", limit=200)
    stale = is_data_stale([r for r in pressure_records if r.get("symbol") in trader.watchlist()])
    if stale:
        st.warning(tr("stale_data", seconds=STALE_AFTER_SECONDS))

    for row in rows:
        symbol = row["symbol"]
        with st.container(border=True):
            c1, c2, c3, c4, c5 = st.columns([1.2, 1, 1, 1, 2])
            price = row.get("price")
            pressure = row.get("pressure")
            with c1:
                st.markdown(f"**{symbol}**")
                st.caption(f"{get_action_emoji(row['suggestion'])} {row['suggestion']}")
            with c2:
                st.metric(tr("price"), f"${float(price):,.2f}" if price is not None else "-")
            with c3:
                st.metric("Pressure", f"{float(pressure):.1f}" if pressure is not None else "-")
            with c4:
                st.metric(tr("shares"), row["open_shares"])
            with c5:
                qty = clamp_quantity(
                    st.number_input(tr("shares"), min_value=1, value=1, step=1, key=f"qty_{symbol}")
                )
                b1, b2 = st.columns(2)
                disabled = stale or price is None
                with b1:
                    if st.button(
                        tr("buy"),
                        key=f"buy_{symbol}",
                        disabled=disabled,
                        help=button_hint(float(pressure or 50.0), "BUY"),
                    ):
                        result = trader.buy(symbol, qty, float(price), pressure=pressure)
                        (st.success if result.success else st.error)(result.message)
                with b2:
                    if st.button(
                        tr("sell"),
                        key=f"sell_{symbol}",
                        disabled=disabled or row["open_shares"] == 0,
                        help=button_hint(float(pressure or 50.0), "SELL"),
                    ):
                        result = trader.sell(symbol, qty, float(price), pressure=pressure)
                        (st.success if result.success else st.error)(result.message)

    st.subheader(tr("watchlist"))
    c1, c2 = st.columns(2)
    with c1:
        new_symbol = st.text_input(tr("add"), key="watch_add").strip().upper()
        if st.button(tr("add"), key="watch_add_btn") and new_symbol:
            result = trader.add_to_watchlist(new_symbol)
            (st.success if result.success else st.error)(result.message)
    with c2:
        target = st.selectbox(tr("remove"), trader.watchlist(), key="watch_remove")
        if st.button(tr("remove"), key="watch_remove_btn") and target:
            result = trader.remove_from_watchlist(target)
            (st.success if result.success else st.error)(result.message)

    stats = trader.stats()
    st.subheader("📊 Stats")
    s1, s2, s3, s4 = st.columns(4)
    s1.metric("Trades", stats.total_trades)
    s2.metric(tr("win_rate"), f"{stats.win_rate:.1f}%")
    s3.metric("Avg Return", f"{stats.avg_return:.2f}%")
    s4.markdown(format_currency(stats.total_pl))

    trades = trader.manual_trades(limit=50)
    if trades:
        st.dataframe(pd.DataFrame(trades), use_container_width=True, hide_index=True)


# ──────────────────────────────────────────────────────────
# TAB: PAPER ACCOUNT
# ──────────────────────────────────────────────────────────


def render_account_tab(store: EntityStore) -> None:
    st.header(f"💼 {tr('nav_account')}")
    account = PaperAccount(store)
    state = account.get_account()

    c1, c2, c3 = st.columns(3)
    c1.metric(tr("cash"), f"${float(state['cash_balance']):,.2f}")
    c2.metric("Equity", f"${float(state['equity_value']):,.2f}")
    c3.metric(tr("total_value"), f"${float(state['total_value']):,.2f}")

    if st.button("Revalue"):
        valuation = account.update_account_value()
        if valuation.success:
            st.success(f"Total ${valuation.total_value:,.2f} (sync error {valuation.sync_error})")
        else:
            st.error(valuation.error or "Revaluation failed")

    positions = account.positions()
    if positions:
        st.dataframe(pd.DataFrame(positions), use_container_width=True, hide_index=True)
    else:
        st.info(tr("no_data"))

    st.subheader("⚙️ Order")
    with st.form("paper_order"):
        f1, f2, f3 = st.columns(3)
        symbol = f1.text_input("Symbol").strip().upper()
        side = f2.selectbox("Side", ["BUY", "SELL"])
        quantity = f3.number_input(tr("shares"), min_value=1, value=1, step=1)
        if st.form_submit_button("Submit") and symbol:
            try:
                result = account.simulate_trade(symbol, side, int(quantity))
                (st.success if result.success else st.error)(result.message)
            except Exception as exc:  # noqa: BLE001
                st.error(f"Execution error: {exc}")
                logger.error("Paper order error: %s", exc, exc_info=True)

    fig = build_equity_curve(account)
    if fig is not None:
        st.plotly_chart(fig, use_container_width=True)

    metrics = account.calculate_metrics()
    m1, m2, m3, m4 = st.columns(4)
    m1.metric(tr("win_rate"), f"{metrics.win_rate:.1f}%")
    m2.metric("Profit Factor", f"{metrics.profit_factor:.2f}")
    m3.metric("Max Drawdown", f"{metrics.max_drawdown_pct:.2f}%")
    m4.metric("Sharpe", f"{metrics.sharpe_ratio:.2f}")


# ──────────────────────────────────────────────────────────
# TAB: OPPORTUNITIES
# ──────────────────────────────────────────────────────────


def render_opportunities_tab(store: EntityStore) -> None:
    st.header(f"🔎 {tr('nav_opportunities')}")

    if st.button(tr("scan")):
        with st.spinner("Scanning..."):
            result = scan_opportunities(store, pause_seconds=0)
        st.success(f"{result.stats.get('total_scanned', 0)} opportunities, {len(result.alerts)} alerts")

    now = datetime.now(timezone.utc).isoformat()
    rows = [o for o in store.list("OpportunityScanner", sort="-impact_score", limit=100) if str(o.get("expires_at", "")) > now]
    if not rows:
        st.info(tr("no_data"))
        return

    df = pd.DataFrame(rows)[
        ["ticker", "keyword", "impact_score", "verification_flag", "sentiment", "total_pressure", "timestamp"]
    ]
    st.dataframe(df, use_container_width=True, hide_index=True)


# ──────────────────────────────────────────────────────────
# TAB: REPORTS
# ──────────────────────────────────────────────────────────


def render_reports_tab(store: EntityStore) -> None:
    st.header(f"📑 {tr('nav_reports')}")

    c1, c2 = st.columns(2)
    report_date = c1.date_input("Date", value=datetime.now(timezone.utc).date())
    report_type = c2.selectbox("Type", ["DAILY", "WEEKLY"])
    if st.button(tr("generate")):
        try:
            generate_manual_trading_report(store, report_date.isoformat(), report_type)
        except ValueError as exc:
            st.error(str(exc))

    reports = store.list("ManualTradingReport", sort="-report_date", limit=20)
    if not reports:
        st.info(tr("no_data"))
        return

    report = reports[0]
    st.subheader(f"{report['report_type']} {report['report_date']}")
    r1, r2, r3 = st.columns(3)
    r1.metric("Manual win rate", f"{float(report['manual_win_rate']):.1f}%")
    r2.metric("Auto win rate", f"{float(report['auto_win_rate']):.1f}%")
    r3.metric("Correlation", f"{float(report['correlation']):.2f}")
    st.write(localized(report, "ai_commentary"))
    for item in report.get(f"recommendations_{lang()}") or report.get("recommendations_en") or []:
        st.markdown(f"- {item}")


# ──────────────────────────────────────────────────────────
# TAB: SIMULATOR
# ──────────────────────────────────────────────────────────


def render_simulator_tab(store: EntityStore) -> None:
    st.header(f"🧪 {tr('nav_simulator')}")

    c1, c2, c3 = st.columns(3)
    capital = c1.number_input("Capital", min_value=100.0, value=10_000.0, step=1_000.0)
    entry = c2.slider("Entry threshold", 50.0, 95.0, 70.0)
    exit_ = c3.slider("Exit threshold", 10.0, 60.0, 40.0)
    c4, c5, c6 = st.columns(3)
    take_profit = c4.number_input("Take profit %", value=3.0, step=0.5)
    stop_loss = c5.number_input("Stop loss %", value=-2.0, step=0.5)
    hold = c6.number_input("Max hold (s)", min_value=1.0, value=300.0, step=60.0)

    records = store.list("StockPressure", sort="-timestamp", limit=2000)
    if not records:
        st.info(tr("no_data"))
        return

    params = SimulatorParams(
        capital=capital,
        entry_threshold=entry,
        exit_threshold=exit_,
        take_profit_pct=take_profit / 100.0,
        stop_loss_pct=stop_loss / 100.0,
        hold_time_sec=hold,
    )
    summary = replay_pressure(records, params).summary()

    m1, m2, m3 = st.columns(3)
    m1.metric("Simulated P/L", f"${summary['pnl']:,.2f}")
    m2.metric("Open positions", summary["open_positions"])
    m3.metric("Readings", len(records))

    if summary["trades"]:
        st.dataframe(pd.DataFrame([asdict(trade) for trade in summary["trades"]]), use_container_width=True, hide_index=True)


# ──────────────────────────────────────────────────────────
# MAIN APP
# ──────────────────────────────────────────────────────────


def main() -> None:
    inject_custom_css()
    store = get_store()

    render_sidebar(store)
    render_diagnostics_panel()

    tabs = st.tabs(
        [
            f"📈 {tr('nav_pressure')}",
            f"🧠 {tr('nav_semantic')}",
            f"🕹️ {tr('nav_manual')}",
            f"💼 {tr('nav_account')}",
            f"🔎 {tr('nav_opportunities')}",
            f"📑 {tr('nav_reports')}",
            f"🧪 {tr('nav_simulator')}",
        ]
    )

    with tabs[0]:
        render_pressure_tab(store)
    with tabs[1]:
        render_semantic_tab(store)
    with tabs[2]:
        render_manual_tab(store)
    with tabs[3]:
        render_account_tab(store)
    with tabs[4]:
        render_opportunities_tab(store)
    with tabs[5]:
        render_reports_tab(store)
    with tabs[6]:
        render_simulator_tab(store)

    st.markdown("---")
    st.caption("FLOW-PRESSURE v1.0 | Order Flow Pressure Console | Paper Trading Only")


if __name__ == "__main__":
    main()
