"""
FLOW-PRESSURE v1.0 - Bilingual (en / zh) message catalog.

Records store both languages side by side (``*_en`` / ``*_zh``);
this module holds the shared UI and result strings.

Usage:
    from i18n import t

    t("insufficient_capital")              # default LANGUAGE
    t("insufficient_capital", lang="zh")
"""

from __future__ import annotations

from typing import Dict, Optional

from config import get_settings

MESSAGES: Dict[str, Dict[str, str]] = {
    # trade validation
    "invalid_price": {"en": "Invalid price", "zh": "價格無效"},
    "invalid_shares": {"en": "Invalid shares", "zh": "股數無效"},
    "insufficient_capital": {"en": "Insufficient capital", "zh": "資金不足"},
    "no_open_position": {"en": "No open position", "zh": "沒有持倉"},
    "insufficient_shares": {"en": "Insufficient shares", "zh": "持股不足"},
    "buy_success": {"en": "Bought {shares} {symbol} @ ${price:.2f}", "zh": "已買入 {symbol} {shares} 股 @ ${price:.2f}"},
    "buy_add_success": {"en": "Added {shares} {symbol} @ ${price:.2f}", "zh": "已加碼 {symbol} {shares} 股 @ ${price:.2f}"},
    "sell_success": {"en": "Sold {shares} {symbol} @ ${price:.2f}", "zh": "已賣出 {symbol} {shares} 股 @ ${price:.2f}"},
    # watchlist
    "already_watching": {"en": "{symbol} is already in the watchlist", "zh": "{symbol} 已在監控清單中"},
    "watch_added": {"en": "Added {symbol} to the watchlist", "zh": "已將 {symbol} 加入監控"},
    "watch_removed": {"en": "Removed {symbol} from the watchlist", "zh": "已移除 {symbol}"},
    "remove_blocked": {"en": "Close the open {symbol} position first", "zh": "請先平倉 {symbol}"},
    # account
    "market_closed": {"en": "Market is not in regular session", "zh": "非正常交易時段"},
    "quote_not_found": {"en": "No live quote for {symbol}", "zh": "找不到 {symbol} 的即時報價"},
    "insufficient_cash": {"en": "Insufficient cash", "zh": "現金不足"},
    "insufficient_holdings": {"en": "Insufficient holdings", "zh": "持股不足"},
    # dashboard
    "nav_pressure": {"en": "Pressure Monitor", "zh": "壓力監控"},
    "nav_semantic": {"en": "Semantic Pressure", "zh": "語意壓力"},
    "nav_manual": {"en": "Manual Trading", "zh": "手動交易"},
    "nav_account": {"en": "Paper Account", "zh": "模擬帳戶"},
    "nav_opportunities": {"en": "Opportunities", "zh": "機會掃描"},
    "nav_reports": {"en": "Reports", "zh": "報告中心"},
    "nav_simulator": {"en": "Flow Simulator", "zh": "流量模擬器"},
    "refresh": {"en": "Refresh", "zh": "重新整理"},
    "language": {"en": "Language", "zh": "語言"},
    "no_data": {"en": "No data yet", "zh": "尚無資料"},
    "stale_data": {"en": "Data is older than {seconds}s", "zh": "資料已超過 {seconds} 秒未更新"},
    "buy": {"en": "Buy", "zh": "買入"},
    "sell": {"en": "Sell", "zh": "賣出"},
    "shares": {"en": "Shares", "zh": "股數"},
    "price": {"en": "Price", "zh": "價格"},
    "watchlist": {"en": "Watchlist", "zh": "監控清單"},
    "add": {"en": "Add", "zh": "新增"},
    "remove": {"en": "Remove", "zh": "移除"},
    "win_rate": {"en": "Win rate", "zh": "勝率"},
    "total_pl": {"en": "Total P/L", "zh": "總損益"},
    "cash": {"en": "Cash", "zh": "現金"},
    "total_value": {"en": "Total value", "zh": "總資產"},
    "generate": {"en": "Generate", "zh": "產生"},
    "scan": {"en": "Scan", "zh": "掃描"},
}


def t(key: str, lang: Optional[str] = None, **kwargs: object) -> str:
    """
    Translate ``key`` into ``lang`` (default: settings.language).

    Unknown keys return the key itself; ``kwargs`` are format arguments.
    """
    lang = lang or get_settings().language
    entry = MESSAGES.get(key)
    if entry is None:
        return key
    text = entry.get(lang) or entry["en"]
    return text.format(**kwargs) if kwargs else text


def both(key: str, **kwargs: object) -> Dict[str, str]:
    """Return ``{"en": ..., "zh": ...}`` for ``key``."""
    return {"en": t(key, "en", **kwargs), "zh": t(key, "zh", **kwargs)}
