"""
============================================================
FLOW-PRESSURE v1.0 - Market Data
============================================================
Real-time quotes, share counts, US market sessions and the
LiveQuote entity refresher.

Sources (in order):
1. Finnhub REST (quote, stock/profile2) when FINNHUB_API_KEY is set
2. yfinance fast_info / intraday history
3. The last stored LiveQuote record (flagged as fallback)

Quote fields follow Finnhub's short names:
    c  current price      h  day high      l  day low
    o  open               pc previous close  t  unix timestamp

Usage:
    from market_data import fetch_quote, get_market_session

    quote = fetch_quote("AAPL")
    print(quote.current, quote.delayed)
    print(get_market_session())   # PRE | REG | POST | CLOSED
============================================================
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytz
import requests
import yfinance as yf
from diskcache import Cache
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import get_logger, get_settings
from entity_store import EntityStore, log_error, utc_now_iso
from functions import register

settings = get_settings()
logger = get_logger(__name__)
cache = Cache(f"{settings.cache_dir}/quotes")


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


class MarketDataError(RuntimeError):
    """Raised when no usable quote can be obtained for a symbol."""


@dataclass
class Quote:
    """
    Normalized real-time quote.

    Attributes:
        symbol: Upper-cased ticker.
        current: Last traded price (Finnhub ``c``).
        high: Day high (``h``).
        low: Day low (``l``).
        open: Day open (``o``).
        prev_close: Previous close (``pc``).
        timestamp: ISO time of the quote (``t``).
        fetch_seconds: Wall time spent fetching.
        delayed: True when the fetch took longer than the delay
            compensation window.
        source: "finnhub" | "yfinance".
    """

    symbol: str
    current: float
    high: float
    low: float
    open: float
    prev_close: float
    timestamp: str
    fetch_seconds: float = 0.0
    delayed: bool = False
    source: str = "finnhub"

    @property
    def change_pct(self) -> float:
        if not self.prev_close:
            return 0.0
        return (self.current - self.prev_close) / self.prev_close * 100.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["change_pct"] = self.change_pct
        return data


# ──────────────────────────────────────────────────────────
# MARKET SESSION
# ──────────────────────────────────────────────────────────


def get_market_session(now: Optional[datetime] = None) -> str:
    """
    Classify a moment into the US equity session.

    Minutes since midnight Eastern time:
        240-569   PRE
        570-960   REG
        961-1199  POST
        otherwise CLOSED (and all day on weekends)

    Args:
        now: Moment to classify. Naive datetimes are taken as market
            local time; aware ones are converted. Defaults to now.

    Returns:
        "PRE" | "REG" | "POST" | "CLOSED".
    """
    market_tz = pytz.timezone(settings.market_timezone)
    if now is None:
        local = datetime.now(market_tz)
    elif now.tzinfo is None:
        local = market_tz.localize(now)
    else:
        local = now.astimezone(market_tz)

    if local.weekday() >= 5:
        return "CLOSED"

    minutes = local.hour * 60 + local.minute
    if 240 <= minutes < 570:
        return "PRE"
    if 570 <= minutes <= 960:
        return "REG"
    if 960 < minutes < 1200:
        return "POST"
    return "CLOSED"


# ──────────────────────────────────────────────────────────
# FINNHUB
# ──────────────────────────────────────────────────────────


_RETRYABLE = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


@retry(
    retry=retry_if_exception_type(_RETRYABLE),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)
def _finnhub_get(path: str, symbol: str) -> Dict[str, Any]:
    response = requests.get(
        f"{settings.finnhub_base_url}/{path}",
        params={"symbol": symbol, "token": settings.finnhub_api_key},
        timeout=settings.request_timeout_seconds,
    )
    response.raise_for_status()
    return response.json() or {}


def fetch_finnhub_quote(symbol: str) -> Quote:
    """
    Fetch a quote from Finnhub's ``/quote`` endpoint.

    Raises:
        MarketDataError: On HTTP failure or a zero/missing current price.
    """
    symbol_u = symbol.upper()
    started = time.monotonic()
    try:
        data = _finnhub_get("quote", symbol_u)
    except requests.exceptions.RequestException as exc:
        raise MarketDataError(f"Failed to fetch {symbol_u}: {exc}") from exc
    elapsed = time.monotonic() - started

    current = float(data.get("c") or 0.0)
    if current <= 0:
        raise MarketDataError(f"Failed to fetch {symbol_u}: no current price")

    ts = data.get("t")
    timestamp = (
        datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat() if ts else utc_now_iso()
    )
    return Quote(
        symbol=symbol_u,
        current=current,
        high=float(data.get("h") or current),
        low=float(data.get("l") or current),
        open=float(data.get("o") or current),
        prev_close=float(data.get("pc") or 0.0),
        timestamp=timestamp,
        fetch_seconds=round(elapsed, 3),
        delayed=elapsed > settings.delay_compensation_seconds,
        source="finnhub",
    )


def fetch_share_outstanding(symbol: str) -> float:
    """
    Shares outstanding (millions) from Finnhub ``stock/profile2``.

    Returns 0 when no key is configured or the lookup fails.
    """
    if not settings.finnhub_api_key:
        return 0.0
    try:
        data = _finnhub_get("stock/profile2", symbol.upper())
    except requests.exceptions.RequestException as exc:
        logger.warning("Share count fetch failed for %s: %s", symbol, exc)
        return 0.0
    return float(data.get("shareOutstanding") or 0.0)


# ──────────────────────────────────────────────────────────
# YFINANCE
# ──────────────────────────────────────────────────────────


def fetch_yfinance_quote(symbol: str) -> Quote:
    """
    Build a Quote from yfinance intraday data.

    Raises:
        MarketDataError: If yfinance returns no usable price.
    """
    symbol_u = symbol.upper()
    started = time.monotonic()
    try:
        ticker = yf.Ticker(symbol_u)
        df = ticker.history(period="1d", interval="1m")
    except Exception as exc:  # noqa: BLE001
        raise MarketDataError(f"Failed to fetch {symbol_u}: {exc}") from exc
    elapsed = time.monotonic() - started

    if df is None or df.empty:
        raise MarketDataError(f"Failed to fetch {symbol_u}: no intraday data")

    prev_close = 0.0
    try:
        prev_close = float(ticker.fast_info.get("previousClose") or 0.0)
    except Exception as exc:  # noqa: BLE001
        logger.debug("previousClose unavailable for %s: %s", symbol_u, exc)

    last_ts = df.index[-1].to_pydatetime()
    return Quote(
        symbol=symbol_u,
        current=float(df["Close"].iloc[-1]),
        high=float(df["High"].max()),
        low=float(df["Low"].min()),
        open=float(df["Open"].iloc[0]),
        prev_close=prev_close,
        timestamp=last_ts.astimezone(timezone.utc).isoformat(),
        fetch_seconds=round(elapsed, 3),
        delayed=elapsed > settings.delay_compensation_seconds,
        source="yfinance",
    )


# ──────────────────────────────────────────────────────────
# PUBLIC API
# ──────────────────────────────────────────────────────────


def fetch_quote(symbol: str, use_cache: bool = True) -> Quote:
    """
    Fetch a quote, Finnhub first when configured, yfinance otherwise.

    Successful quotes are cached for QUOTE_CACHE_TTL_SECONDS.

    Raises:
        MarketDataError: If every source fails.
    """
    symbol_u = symbol.upper()
    key = f"quote::{symbol_u}"
    if use_cache:
        cached = cache.get(key)
        if cached is not None:
            logger.debug("Quote cache hit for %s", symbol_u)
            return Quote(**cached)

    errors: List[str] = []
    quote: Optional[Quote] = None
    if settings.finnhub_api_key:
        try:
            quote = fetch_finnhub_quote(symbol_u)
        except MarketDataError as exc:
            logger.warning("Finnhub quote failed for %s: %s", symbol_u, exc)
            errors.append(str(exc))

    if quote is None:
        try:
            quote = fetch_yfinance_quote(symbol_u)
        except MarketDataError as exc:
            logger.warning("yfinance quote failed for %s: %s", symbol_u, exc)
            errors.append(str(exc))

    if quote is None:
        raise MarketDataError("; ".join(errors) or f"No quote source for {symbol_u}")

    cache.set(key, asdict(quote), expire=settings.quote_cache_ttl_seconds)
    return quote


def latest_live_price(store: EntityStore, symbol: str) -> Optional[float]:
    """Last stored LiveQuote price for ``symbol``, or None."""
    record = store.first("LiveQuote", {"symbol": symbol.upper()}, sort="-ts_last_update")
    if not record:
        return None
    price = record.get("last_price")
    try:
        price = float(price)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


def refresh_live_quote(
    store: EntityStore,
    symbol: str,
    session: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Fetch a quote and upsert the symbol's LiveQuote record.

    When every source fails, the existing record is re-flagged as a
    fallback. Without any stored record, MarketDataError propagates.

    Returns:
        The written LiveQuote fields.
    """
    symbol_u = symbol.upper()
    session = session or get_market_session()
    existing = store.filter("LiveQuote", {"symbol": symbol_u})
    previous = existing[0] if existing else {}

    try:
        quote = fetch_quote(symbol_u)
        last_price = quote.current
        record = {
            "symbol": symbol_u,
            "last_price": last_price,
            "change_pct": round(quote.change_pct, 4),
            "prev_close": quote.prev_close,
            "day_high": quote.high,
            "day_low": quote.low,
            "open_price": quote.open,
            "source_used": quote.source,
            "error_flag": False,
            "error_message": "",
        }
    except MarketDataError as exc:
        if not previous:
            raise
        log_error(store, "API", f"All sources failed for {symbol_u}", "CRITICAL", {"error": str(exc)})
        last_price = previous.get("last_price") or previous.get("prev_close") or 0.0
        record = {
            "symbol": symbol_u,
            "last_price": last_price,
            "change_pct": 0.0,
            "prev_close": previous.get("prev_close") or 0.0,
            "source_used": "fallback",
            "error_flag": True,
            "error_message": "stale cached quote",
        }

    record["regular_price"] = (
        last_price if session == "REG" else previous.get("regular_price") or record.get("prev_close")
    )
    record["premarket_price"] = (
        last_price if session == "PRE" else previous.get("premarket_price")
    )
    record["market_session"] = session
    record["ts_last_update"] = utc_now_iso()

    if previous:
        store.update("LiveQuote", previous["id"], record)
    else:
        store.create("LiveQuote", record)
    return record


@register("fetchLiveQuotes")
def fetch_live_quotes(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """
    Refresh LiveQuote records for ``payload["symbols"]``.

    Returns per-symbol results plus success statistics.
    """
    symbols = payload.get("symbols")
    if not isinstance(symbols, list):
        return {"success": False, "error": "symbols array required"}

    session = get_market_session()
    results: List[Dict[str, Any]] = []
    success = 0
    for symbol in symbols:
        try:
            data = refresh_live_quote(store, symbol, session=session)
            results.append({"symbol": symbol.upper(), "success": True, "data": data})
            success += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Complete quote failure for %s: %s", symbol, exc)
            log_error(store, "API", f"Complete failure for {symbol}: {exc}", "CRITICAL")
            results.append({"symbol": str(symbol).upper(), "success": False, "error": str(exc)})

    total = len(symbols)
    return {
        "success": True,
        "market_session": session,
        "updated_at": utc_now_iso(),
        "results": results,
        "stats": {
            "total": total,
            "success": success,
            "failed": total - success,
            "success_rate": f"{(success / total * 100) if total else 0.0:.1f}%",
        },
    }
