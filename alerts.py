"""
============================================================
FLOW-PRESSURE v1.0 - Alerts & Notifications
============================================================
Discord webhook notifications for flow events.

Sends alerts for:
- Semantic pressure swings (SPI change beyond threshold)
- High-impact or verified opportunities
- Trade fills (manual console, paper account, advanced orders)
- System errors

Usage:
    from alerts import send_spi_alert

    result = send_spi_alert(alert, store=store)
    if not result.success:
        logger.warning("Alert not sent: %s", result.error or result.message)

Features:
- Rich Discord embeds with color coding
- Cooldown per (symbol, kind) backed by diskcache
- Retry logic with exponential backoff
- Every attempt recorded as an AlertHistory entity when a store is given
============================================================
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

import requests
from diskcache import Cache
from tenacity import retry, stop_after_attempt, wait_exponential

from config import get_logger, get_settings
from entity_store import EntityStore

logger = get_logger(__name__)
settings = get_settings()

alert_cache = Cache(f"{settings.cache_dir}/alerts")

AlertKind = Literal["SPI", "OPPORTUNITY", "TRADE"]


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class AlertResult:
    """
    Result of an alert send operation.

    Attributes:
        success: Whether the alert was delivered.
        channel: Channel identifier ("discord").
        kind: Alert kind ("SPI", "OPPORTUNITY", "TRADE", "SYSTEM").
        symbol: Symbol the alert refers to ("" for system alerts).
        message: Human-readable summary of what happened.
        timestamp_utc: ISO timestamp when the result was recorded.
        error: Optional error message on failure.
    """

    success: bool
    channel: str
    kind: str
    symbol: str
    message: str
    timestamp_utc: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ──────────────────────────────────────────────────────────
# RATE LIMITING
# ──────────────────────────────────────────────────────────


def _cooldown_key(symbol: str, kind: str) -> str:
    return f"alert_sent::{symbol.upper()}::{kind}"


def should_send_alert(symbol: str, kind: str, cooldown_minutes: Optional[int] = None) -> bool:
    """
    Determine whether an alert should be sent based on the per-symbol cooldown.

    Args:
        symbol: Stock symbol.
        kind: "SPI" | "OPPORTUNITY" | "TRADE".
        cooldown_minutes: Override for settings.alert_cooldown_minutes.

    Returns:
        True if an alert should be sent now; False otherwise.
    """
    cooldown = settings.alert_cooldown_minutes if cooldown_minutes is None else cooldown_minutes
    last_sent = alert_cache.get(_cooldown_key(symbol, kind))
    if last_sent is None:
        return True

    try:
        last_time = datetime.fromisoformat(last_sent)
    except (TypeError, ValueError):
        return True

    minutes = (datetime.now(timezone.utc) - last_time).total_seconds() / 60.0
    if minutes < cooldown:
        logger.info(
            "Alert cooldown for %s %s: last sent %.1f minutes ago (cooldown=%d).",
            symbol,
            kind,
            minutes,
            cooldown,
        )
        return False
    return True


def mark_alert_sent(symbol: str, kind: str, ttl_minutes: Optional[int] = None) -> None:
    """Remember that an alert for (symbol, kind) went out."""
    ttl = settings.alert_cooldown_minutes if ttl_minutes is None else ttl_minutes
    alert_cache.set(
        _cooldown_key(symbol, kind),
        datetime.now(timezone.utc).isoformat(),
        expire=int(ttl * 60),
    )


# ──────────────────────────────────────────────────────────
# DISCORD EMBED FORMATTING
# ──────────────────────────────────────────────────────────


def build_spi_embed(alert: Dict[str, Any]) -> Dict[str, Any]:
    """
    Embed for a semantic pressure swing.

    Color coding: positive green, negative red, otherwise gray.
    """
    symbol = str(alert.get("symbol", "")).upper()
    change = float(alert.get("spi_change", 0.0))
    sentiment = str(alert.get("sentiment", "neutral"))
    color = {"positive": 0x00FF00, "negative": 0xFF0000}.get(sentiment, 0x808080)
    arrow = "📈" if change >= 0 else "📉"

    return {
        "title": f"{arrow} {symbol} SPI {change:+.1f}",
        "description": f"**Keyword:** {alert.get('keyword', 'N/A')}\n**Sentiment:** {sentiment}",
        "color": color,
        "footer": {"text": "FLOW-PRESSURE | Semantic Pressure"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def build_opportunity_embed(alert: Dict[str, Any]) -> Dict[str, Any]:
    ticker = str(alert.get("ticker", "")).upper()
    impact = float(alert.get("impact", 0.0))
    flag = str(alert.get("flag", "unverified"))
    badge = "✅" if flag == "verified" else "⚠️"

    return {
        "title": f"🔎 {ticker} opportunity, impact {impact:.0f}",
        "description": f"**Keyword:** {alert.get('keyword', 'N/A')}",
        "color": 0xFFD700 if impact >= 80 else 0x1E90FF,
        "fields": [{"name": "Verification", "value": f"{badge} {flag}", "inline": True}],
        "footer": {"text": "FLOW-PRESSURE | Opportunity Scanner"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def build_trade_embed(fill: Dict[str, Any]) -> Dict[str, Any]:
    """
    Embed for an executed trade.

    ``fill`` needs symbol, action, shares and price; ``source`` and
    ``profit`` are shown when present.
    """
    symbol = str(fill.get("symbol", "")).upper()
    action = str(fill.get("action", "")).upper()
    shares = int(fill.get("shares") or 0)
    price = float(fill.get("price") or 0.0)
    is_buy = action.startswith("BUY")

    fields: List[Dict[str, Any]] = [
        {"name": "Shares", "value": str(shares), "inline": True},
        {"name": "Price", "value": f"${price:,.2f}", "inline": True},
        {"name": "Notional", "value": f"${shares * price:,.2f}", "inline": True},
    ]
    if fill.get("profit") is not None:
        fields.append({"name": "P/L", "value": f"${float(fill['profit']):+,.2f}", "inline": True})

    return {
        "title": f"{'🟢' if is_buy else '🔴'} {action} {symbol}",
        "description": f"**Source:** {fill.get('source', 'manual')}",
        "color": 0x00FF00 if is_buy else 0xFF0000,
        "fields": fields,
        "footer": {"text": "FLOW-PRESSURE | Trade Fill"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ──────────────────────────────────────────────────────────
# DISCORD WEBHOOK
# ──────────────────────────────────────────────────────────


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10))
def send_discord_webhook(embed: Dict[str, Any]) -> bool:
    """
    Send an embed to the configured Discord webhook with retry logic.

    Returns:
        True if the request succeeded (2xx); False if disabled or invalid URL.

    Raises:
        requests.exceptions.RequestException: On non-recoverable HTTP errors.
    """
    webhook_url = settings.discord_webhook_url
    if not webhook_url:
        logger.warning("Discord webhook URL not configured; skipping alert.")
        return False

    payload = {"embeds": [embed], "username": "FLOW-PRESSURE"}

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
        response.raise_for_status()
        logger.info("Discord alert sent (status=%d).", response.status_code)
        return True
    except requests.exceptions.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "unknown"
        if status == 429:
            logger.error("Discord returned HTTP 429 (rate limit).")
            raise
        if status == 404:
            logger.error("Discord webhook returned 404 (invalid/removed URL).")
            return False
        logger.error("Discord HTTP error (%s): %s", status, exc)
        raise


# ──────────────────────────────────────────────────────────
# DISPATCH
# ──────────────────────────────────────────────────────────


def _record_history(store: Optional[EntityStore], result: AlertResult, payload: Dict[str, Any]) -> None:
    if store is None:
        return
    try:
        store.create(
            "AlertHistory",
            {
                **result.to_dict(),
                "payload": payload,
            },
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to record AlertHistory: %s", exc, exc_info=True)


def _dispatch(
    kind: str,
    symbol: str,
    embed: Dict[str, Any],
    payload: Dict[str, Any],
    store: Optional[EntityStore],
    force_send: bool,
) -> AlertResult:
    now = datetime.now(timezone.utc).isoformat()

    if not force_send and not should_send_alert(symbol, kind):
        result = AlertResult(
            success=False,
            channel="discord",
            kind=kind,
            symbol=symbol,
            message="Cooldown active; alert suppressed.",
            timestamp_utc=now,
        )
        _record_history(store, result, payload)
        return result

    try:
        sent = send_discord_webhook(embed)
        if sent:
            mark_alert_sent(symbol, kind)
            result = AlertResult(
                success=True,
                channel="discord",
                kind=kind,
                symbol=symbol,
                message=f"{kind} alert sent for {symbol}",
                timestamp_utc=now,
            )
        else:
            result = AlertResult(
                success=False,
                channel="discord",
                kind=kind,
                symbol=symbol,
                message="Webhook disabled or invalid.",
                timestamp_utc=now,
            )
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to send %s alert for %s: %s", kind, symbol, exc, exc_info=True)
        result = AlertResult(
            success=False,
            channel="discord",
            kind=kind,
            symbol=symbol,
            message="Exception while sending alert.",
            timestamp_utc=now,
            error=str(exc),
        )

    _record_history(store, result, payload)
    return result


def send_spi_alert(
    alert: Dict[str, Any],
    store: Optional[EntityStore] = None,
    force_send: bool = False,
) -> AlertResult:
    """Send the ``alert`` dict produced by a semantic pressure analysis."""
    symbol = str(alert.get("symbol", "")).upper()
    return _dispatch("SPI", symbol, build_spi_embed(alert), alert, store, force_send)


def send_opportunity_alert(
    alert: Dict[str, Any],
    store: Optional[EntityStore] = None,
    force_send: bool = False,
) -> AlertResult:
    """Send one entry of ``ScanResult.alerts``."""
    symbol = str(alert.get("ticker", "")).upper()
    return _dispatch("OPPORTUNITY", symbol, build_opportunity_embed(alert), alert, store, force_send)


def send_trade_alert(fill: Dict[str, Any], store: Optional[EntityStore] = None) -> AlertResult:
    """Trade fills are never rate limited."""
    symbol = str(fill.get("symbol", "")).upper()
    return _dispatch("TRADE", symbol, build_trade_embed(fill), fill, store, force_send=True)


def notify_fill(
    symbol: str,
    action: str,
    shares: float,
    price: float,
    source: str,
    store: Optional[EntityStore] = None,
    profit: Optional[float] = None,
) -> Optional[AlertResult]:
    """
    Trade alert hook for the order paths.

    Returns None without recording anything when no webhook is configured.
    """
    if not settings.discord_webhook_url:
        return None
    fill: Dict[str, Any] = {"symbol": symbol, "action": action, "shares": shares, "price": price, "source": source}
    if profit is not None:
        fill["profit"] = profit
    return send_trade_alert(fill, store=store)


def send_alerts(
    kind: AlertKind,
    alerts: List[Dict[str, Any]],
    store: Optional[EntityStore] = None,
) -> List[AlertResult]:
    """Send a batch of SPI or opportunity alerts, one result each."""
    sender = send_spi_alert if kind == "SPI" else send_opportunity_alert
    results = [sender(alert, store=store) for alert in alerts]
    logger.info(
        "%s alerts: %d/%d delivered.",
        kind,
        sum(1 for r in results if r.success),
        len(results),
    )
    return results


# ──────────────────────────────────────────────────────────
# SYSTEM ERROR ALERTS
# ──────────────────────────────────────────────────────────


def send_error_alert(
    error_message: str,
    severity: Literal["WARNING", "ERROR", "CRITICAL"],
) -> bool:
    """
    Send a system error notification to Discord.

    Returns:
        True if sent successfully; False otherwise.
    """
    if not settings.discord_webhook_url:
        return False

    color_map = {
        "WARNING": 0xFFA500,
        "ERROR": 0xFF0000,
        "CRITICAL": 0x8B0000,
    }
    embed = {
        "title": f"🚨 SYSTEM {severity}",
        "description": error_message[:2000],
        "color": color_map.get(severity, 0xFF0000),
        "footer": {"text": "FLOW-PRESSURE System Alert"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        return send_discord_webhook(embed)
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to send system error alert: %s", exc, exc_info=True)
        return False


if __name__ == "__main__":
    if not settings.discord_webhook_url:
        logger.error("DISCORD_WEBHOOK_URL not configured; cannot test alerts.")
        raise SystemExit(1)

    test = send_spi_alert(
        {"symbol": "AAPL", "keyword": "earnings beat", "spi_change": 18.5, "sentiment": "positive"},
        force_send=True,
    )
    logger.info("Test alert: %s (%s)", test.message, test.error or "ok")
