"""
============================================================
FLOW-PRESSURE v1.0 - Semantic Pressure Index (SPI)
============================================================
News and social chatter, reduced to keyword hits and folded
into the price-range pressure of the same symbol.

    score = (pos_weight - neg_weight) / (pos_weight + neg_weight)   in [-1, 1]
    SPI   = clamp(base_pressure + score * 25, 0, 100)

base_pressure is the latest StockPressure.final_pressure (50 if none).
Keyword weights are learned per symbol and carried forward on every
SemanticPressure record (``keyword_weights`` as JSON).

Modes (function ``semanticPressureAI``):
- analyze: fetch context, score, persist SemanticPressure, raise alerts
- export:  today's latest record per symbol + market summary
- learn:   does SPI direction agree with price direction?

Also hosts the console decision rule used by manual trading:

    combined = 0.7 * pressure + 0.3 * SPI   ->  <45 BUY, >70 SELL, else HOLD
============================================================
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import get_logger, get_settings
from entity_store import EntityStore, utc_now_iso
from functions import register
from llm import invoke_llm
from pressure_index import latest_by_symbol

logger = get_logger(__name__)
settings = get_settings()

POSITIVE_KEYWORDS: List[str] = [
    "funding", "loan approved", "capital increase", "investment round",
    "acquisition", "merger", "order expected", "patent granted",
    "r&d success", "partnership", "clinical success", "profit", "growth",
    "expansion", "revenue increase", "breakthrough", "collaboration",
    "deal signed", "contract won", "bullish", "upgrade", "outperform",
]

NEGATIVE_KEYWORDS: List[str] = [
    "loss widened", "delisting", "bankruptcy", "cash shortage",
    "layoff", "failed test", "order canceled", "lawsuit", "recall",
    "decline", "drop", "plunge", "bearish", "downgrade", "loss",
    "debt", "investigation", "fraud", "scandal", "suspended",
]

SENTIMENT_SCALE = 25.0
SENTIMENT_BAND = 0.2
MENTION_VOLUME = {"high": 100, "medium": 50, "low": 10}
LEARN_MAX_PAIRS = 5
LEARN_CORRELATION_THRESHOLD = 0.6


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class SentimentAnalysis:
    """Keyword scoring output."""

    score: float
    positive: List[str] = field(default_factory=list)
    negative: List[str] = field(default_factory=list)

    @property
    def top_keyword(self) -> Optional[str]:
        hits = self.positive + self.negative
        return hits[0] if hits else None


@dataclass
class NewsContext:
    headlines: List[str] = field(default_factory=list)
    sentiment: str = "neutral"
    events: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.headlines)


@dataclass
class SocialContext:
    sentiment: str = "neutral"
    topics: List[str] = field(default_factory=list)
    mentions: int = 0


# ──────────────────────────────────────────────────────────
# SCORING
# ──────────────────────────────────────────────────────────


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def analyze_sentiment(text: str, keyword_weights: Optional[Dict[str, float]] = None) -> SentimentAnalysis:
    """
    Weighted keyword scoring of ``text``.

    Each keyword counts once (substring match, case-insensitive) with
    its learned weight, default 1.0. No hits gives a score of 0.
    """
    if not text:
        return SentimentAnalysis(score=0.0)

    weights = keyword_weights or {}
    lower = text.lower()
    positive = [k for k in POSITIVE_KEYWORDS if k in lower]
    negative = [k for k in NEGATIVE_KEYWORDS if k in lower]

    pos_score = sum(float(weights.get(k, 1.0)) for k in positive)
    neg_score = sum(float(weights.get(k, 1.0)) for k in negative)
    total = pos_score + neg_score
    score = (pos_score - neg_score) / total if total > 0 else 0.0

    return SentimentAnalysis(score=clamp(score, -1.0, 1.0), positive=positive, negative=negative)


def calculate_spi(base_pressure: float, sentiment_score: float) -> float:
    return clamp(base_pressure + sentiment_score * SENTIMENT_SCALE, 0.0, 100.0)


def classify_sentiment(score: float) -> str:
    if score > SENTIMENT_BAND:
        return "positive"
    if score < -SENTIMENT_BAND:
        return "negative"
    return "neutral"


def spi_suggestion(spi: float, top_keyword: Optional[str]) -> Dict[str, str]:
    """Bilingual SPI suggestion; bullish/bearish ones cite the top keyword."""
    if spi > 60:
        en, zh = f"Bullish sentiment (SPI: {spi:.0f})", f"看漲情緒（SPI：{spi:.0f}）"
        if top_keyword:
            en += f" - Key: {top_keyword}"
            zh += f" - 關鍵字：{top_keyword}"
    elif spi >= 40:
        en, zh = f"Neutral sentiment (SPI: {spi:.0f})", f"中性情緒（SPI：{spi:.0f}）"
    else:
        en, zh = f"Bearish sentiment (SPI: {spi:.0f})", f"看跌情緒（SPI：{spi:.0f}）"
        if top_keyword:
            en += f" - Risk: {top_keyword}"
            zh += f" - 風險：{top_keyword}"
    return {"en": en, "zh": zh}


def should_alert(spi_change: float, threshold: Optional[float] = None) -> bool:
    limit = settings.spi_alert_threshold if threshold is None else threshold
    return abs(spi_change) > limit


def quick_spi(headline_scores: Iterable[float]) -> Tuple[float, str]:
    """
    Unweighted variant: ``50 + mean(hit balance) * 10``.

    Each input is a per-article (positive hits - negative hits).
    No articles yields (50, "neutral").
    """
    scores = list(headline_scores)
    if not scores:
        return 50.0, "neutral"
    spi = clamp(50.0 + sum(scores) / len(scores) * 10.0, 0.0, 100.0)
    if spi > 55:
        label = "positive"
    elif spi < 45:
        label = "negative"
    else:
        label = "neutral"
    return spi, label


def decide_action(pressure: Optional[float] = None, spi: Optional[float] = None) -> str:
    """Console rule blending price pressure (70%) and SPI (30%)."""
    p = 50.0 if pressure is None else float(pressure)
    s = 50.0 if spi is None else float(spi)
    combined = p * 0.7 + s * 0.3
    if combined < 45:
        return "BUY"
    if combined > 70:
        return "SELL"
    return "HOLD"


# ──────────────────────────────────────────────────────────
# CONTEXT (LLM)
# ──────────────────────────────────────────────────────────


def fetch_news_context(symbol: str) -> NewsContext:
    prompt = (
        f"Summarize the latest financial news about {symbol} stock from the past 24 hours. "
        "Focus on earnings, partnerships, products, regulatory news and analyst reports. "
        "Return the top 5 headlines, the overall sentiment and key events."
    )
    schema = {
        "type": "object",
        "properties": {
            "news_headlines": {"type": "array", "items": {"type": "string"}},
            "overall_sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
            "key_events": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["news_headlines", "overall_sentiment", "key_events"],
    }
    fallback = {"news_headlines": [], "overall_sentiment": "neutral", "key_events": []}
    data = invoke_llm(prompt, schema, fallback, name="news_context")
    return NewsContext(
        headlines=list(data.get("news_headlines") or []),
        sentiment=str(data.get("overall_sentiment") or "neutral"),
        events=list(data.get("key_events") or []),
    )


def fetch_social_context(symbol: str) -> SocialContext:
    prompt = (
        f"Describe recent social media discussion about {symbol} stock on Reddit "
        "(r/wallstreetbets, r/stocks) and X over the past 6 hours: overall sentiment, "
        "trending topics and mention volume."
    )
    schema = {
        "type": "object",
        "properties": {
            "sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
            "trending_topics": {"type": "array", "items": {"type": "string"}},
            "mention_volume": {"type": "string", "enum": ["high", "medium", "low"]},
        },
        "required": ["sentiment", "trending_topics", "mention_volume"],
    }
    fallback = {"sentiment": "neutral", "trending_topics": [], "mention_volume": "low"}
    data = invoke_llm(prompt, schema, fallback, name="social_context")
    return SocialContext(
        sentiment=str(data.get("sentiment") or "neutral"),
        topics=list(data.get("trending_topics") or []),
        mentions=MENTION_VOLUME.get(str(data.get("mention_volume")), 10),
    )


# ──────────────────────────────────────────────────────────
# ANALYZE / EXPORT / LEARN
# ──────────────────────────────────────────────────────────


def _load_weights(record: Optional[Dict[str, Any]]) -> Dict[str, float]:
    if not record or not record.get("keyword_weights"):
        return {}
    raw = record["keyword_weights"]
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Unreadable keyword_weights on %s; using defaults.", record.get("id"))
        return {}


def analyze_symbol(
    store: EntityStore,
    symbol: str,
    news: Optional[NewsContext] = None,
    social: Optional[SocialContext] = None,
) -> Dict[str, Any]:
    """
    Score one symbol and persist a SemanticPressure record.

    Returns:
        The stored record fields plus ``alert`` (dict or None).
    """
    symbol_u = symbol.upper()
    pressure_rec = store.first("StockPressure", {"symbol": symbol_u})
    base_pressure = float(pressure_rec["final_pressure"]) if pressure_rec else 50.0

    prev_rec = store.first("SemanticPressure", {"symbol": symbol_u})
    prev_spi = float(prev_rec["spi"]) if prev_rec else 50.0
    weights = _load_weights(prev_rec)

    news = news if news is not None else fetch_news_context(symbol_u)
    social = social if social is not None else fetch_social_context(symbol_u)

    text = " ".join([*news.headlines, *news.events, *social.topics])
    analysis = analyze_sentiment(text, weights)

    spi = calculate_spi(base_pressure, analysis.score)
    spi_change = spi - prev_spi
    sentiment = classify_sentiment(analysis.score)
    top_keyword = analysis.top_keyword
    suggestion = spi_suggestion(spi, top_keyword)
    alert_triggered = should_alert(spi_change)

    record = {
        "symbol": symbol_u,
        "spi": round(spi, 1),
        "sentiment_score": round(analysis.score, 2),
        "sentiment": sentiment,
        "positive_keywords": analysis.positive,
        "negative_keywords": analysis.negative,
        "top_keyword": top_keyword,
        "news_count": news.count,
        "social_mentions": social.mentions,
        "ai_suggestion_en": suggestion["en"],
        "ai_suggestion_zh": suggestion["zh"],
        "alert_triggered": alert_triggered,
        "spi_change": round(spi_change, 1),
        "keyword_weights": json.dumps(weights),
        "data_sources": ["news_api", "social_media"],
        "timestamp": utc_now_iso(),
    }
    store.create("SemanticPressure", record)

    alert = None
    if alert_triggered and top_keyword:
        alert = {
            "symbol": symbol_u,
            "keyword": top_keyword,
            "spi_change": round(spi_change, 1),
            "sentiment": sentiment,
        }
    logger.info("%s: SPI %.1f (%s, change %+.1f)", symbol_u, spi, sentiment, spi_change)
    return {**record, "alert": alert}


def run_semantic_analysis(
    store: EntityStore,
    symbols: Iterable[str],
    pause_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """Analyze each symbol; failures are reported per symbol."""
    pause = settings.delay_compensation_seconds if pause_seconds is None else pause_seconds
    results: List[Dict[str, Any]] = []
    alerts: List[Dict[str, Any]] = []

    symbol_list = list(symbols)
    for symbol in symbol_list:
        try:
            if pause:
                time.sleep(pause)
            data = analyze_symbol(store, symbol)
            alert = data.pop("alert")
            if alert:
                alerts.append(alert)
            results.append({"success": True, "data": data})
        except Exception as exc:  # noqa: BLE001
            logger.error("Semantic analysis failed for %s: %s", symbol, exc, exc_info=True)
            results.append({"success": False, "symbol": symbol, "error": str(exc)})

    successful = sum(1 for r in results if r["success"])
    return {
        "success": True,
        "timestamp": utc_now_iso(),
        "results": results,
        "alerts": alerts,
        "stats": {
            "total": len(symbol_list),
            "successful": successful,
            "failed": len(symbol_list) - successful,
            "alerts_triggered": len(alerts),
        },
    }


def export_daily_semantic(store: EntityStore, day: Optional[str] = None) -> Dict[str, Any]:
    """Today's latest SemanticPressure per symbol with a market summary."""
    day = day or datetime.now(timezone.utc).date().isoformat()
    todays = [r for r in store.list("SemanticPressure") if str(r.get("timestamp", "")).startswith(day)]
    latest = list(latest_by_symbol(todays).values())

    avg = sum(float(r.get("spi") or 0.0) for r in latest) / len(latest) if latest else 50.0
    return {
        "report_date": day,
        "total_symbols": len(latest),
        "symbols": latest,
        "market_summary": {
            "avg_spi": round(avg, 1),
            "bullish_count": sum(1 for r in latest if r.get("sentiment") == "positive"),
            "bearish_count": sum(1 for r in latest if r.get("sentiment") == "negative"),
            "neutral_count": sum(1 for r in latest if r.get("sentiment") == "neutral"),
        },
        "generated_at": utc_now_iso(),
    }


def learn_correlations(store: EntityStore, symbols: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Compare consecutive SPI moves with consecutive price moves.

    Uses the 10 most recent records of each type per symbol and up to
    5 consecutive pairs. Symbols with fewer than 2 records of either
    type are skipped.
    """
    semantic = store.list("SemanticPressure", sort="-timestamp", limit=200)
    pressure = store.list("StockPressure", sort="-timestamp", limit=200)

    results: List[Dict[str, Any]] = []
    for symbol in symbols:
        symbol_u = symbol.upper()
        sem = [r for r in semantic if r.get("symbol") == symbol_u][:10]
        prs = [r for r in pressure if r.get("symbol") == symbol_u][:10]
        if len(sem) < 2 or len(prs) < 2:
            continue

        pairs = min(len(sem) - 1, len(prs) - 1, LEARN_MAX_PAIRS)
        agreements = 0
        for i in range(pairs):
            spi_move = float(sem[i]["spi"]) - float(sem[i + 1]["spi"])
            price_move = float(prs[i]["price"]) - float(prs[i + 1]["price"])
            if (spi_move > 0 and price_move > 0) or (spi_move < 0 and price_move < 0):
                agreements += 1

        rate = agreements / pairs if pairs else 0.0
        results.append(
            {
                "symbol": symbol_u,
                "correlation_rate": rate,
                "adjustment": (
                    "increase_weights" if rate > LEARN_CORRELATION_THRESHOLD else "decrease_weights"
                ),
            }
        )
    return results


@register("semanticPressureAI")
def semantic_pressure_ai(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """Function entry point: ``{"symbols": [...], "mode": "analyze"|"export"|"learn"}``."""
    mode = payload.get("mode", "analyze")
    symbols = payload.get("symbols")
    if not symbols or not isinstance(symbols, list):
        return {"success": False, "error": "Symbols array required"}

    if mode == "analyze":
        return run_semantic_analysis(store, symbols, pause_seconds=payload.get("pause_seconds"))

    if mode == "export":
        export = export_daily_semantic(store)
        return {
            "success": True,
            "export_data": export,
            "message": f"Exported semantic pressure data for {export['total_symbols']} symbols",
        }

    if mode == "learn":
        return {
            "success": True,
            "learning_results": learn_correlations(store, symbols),
            "message": "AI learning completed",
        }

    return {"success": False, "error": "Invalid mode"}
