"""
============================================================
FLOW-PRESSURE v1.0 - Opportunity Scanner
============================================================
Market-wide keyword event detection and impact scoring.

Impact score (0-100) = source + corroboration + velocity
                       + entity precision + sentiment + price sensitivity

    source           avg credibility (high 25, medium 20, low 10), max 30
    corroboration    3+ sources 25, 2 sources 12, else 0
    velocity         10 for every event in the 24 h window
    entity precision confidence >=0.9 -> 10, >=0.7 -> 7, else 5
    sentiment        positive +8, negative -8
    price sensitivity risk 10, rd 9, funding 8, order 7, other 5

Flags: verified (source >= 25 or corroboration >= 20), watch
(corroboration >= 10), likely_false. Alert when impact >= 75 or
verified. Records expire after 48 h.

Usage:
    from opportunity_scanner import scan_opportunities

    result = scan_opportunities(store)
    for alert in result.alerts:
        print(alert)
============================================================
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from config import get_logger, get_settings
from entity_store import EntityStore, get_store, utc_now_iso
from functions import register
from llm import invoke_llm

logger = get_logger(__name__)
settings = get_settings()

KEYWORD_FAMILIES: Dict[str, List[str]] = {
    "funding": [
        "capital raise", "funding", "loan approved", "private placement",
        "acquisition", "merger", "share repurchase", "投資", "增資", "增貸",
        "募集資金", "私募", "入股", "併購", "回購",
    ],
    "order": [
        "order expected", "framework agreement", "partnership",
        "mass production plan", "contract", "deal signed",
        "有望獲取訂單", "簽約在即", "合作框架", "量產計畫",
    ],
    "rd": [
        "R&D success", "trial success", "FDA clearance", "patent granted",
        "pilot passed", "AI breakthrough", "研發成功", "臨床成功",
        "專利獲批", "試產成功", "AI突破",
    ],
    "risk": [
        "layoff", "cash shortage", "default", "downgrade", "order canceled",
        "halt shipment", "bankruptcy", "裁員", "違約", "減資",
        "現金短缺", "暫停出貨", "破產保護",
    ],
}

PRICE_SENSITIVITY = {"funding": 8, "order": 7, "rd": 9, "risk": 10}
CREDIBILITY_SCORES = {"high": 25, "medium": 20, "low": 10}
TIER1_DOMAINS = ("sec.gov", "investor.", "ir.", "investors.")
TIER2_DOMAINS = ("reuters.com", "bloomberg.com", "wsj.com", "ft.com", "cnbc.com")

MIN_TICKER_CONFIDENCE = 0.6
ALERT_IMPACT = 75.0
HIGH_IMPACT = 70.0
EXPIRY_HOURS = 48

_TICKER_PATTERNS = (
    re.compile(r"\$([A-Z]{1,5})\b"),
    re.compile(r"\(([A-Z]{1,5})\)"),
    re.compile(r"\b([A-Z]{2,5})\b"),
)

EVENTS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "events": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "ticker": {"type": "string"},
                    "company": {"type": "string"},
                    "keyword": {"type": "string"},
                    "event_description": {"type": "string"},
                    "sentiment": {"type": "string", "enum": ["positive", "negative", "neutral"]},
                    "sources": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "title": {"type": "string"},
                                "domain": {"type": "string"},
                                "credibility": {"type": "string", "enum": ["high", "medium", "low"]},
                            },
                        },
                    },
                    "confidence": {"type": "number"},
                },
            },
        }
    },
    "required": ["events"],
}


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class ImpactScores:
    source: float
    corroboration: float
    velocity: float
    entity_precision: float
    sentiment: float
    price_sensitivity: float

    @property
    def total(self) -> float:
        raw = (
            self.source
            + self.corroboration
            + self.velocity
            + self.entity_precision
            + self.sentiment
            + self.price_sensitivity
        )
        return max(0.0, min(100.0, raw))


@dataclass
class ScanResult:
    success: bool
    timestamp: str
    opportunities: List[Dict[str, Any]] = field(default_factory=list)
    alerts: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ──────────────────────────────────────────────────────────
# SCORING
# ──────────────────────────────────────────────────────────


def source_domain_score(domain: str) -> int:
    """Credibility of a source by domain: filings/IR 25, tier-1 press 20, else 10."""
    domain = (domain or "").lower()
    if any(d in domain for d in TIER1_DOMAINS):
        return 25
    if any(d in domain for d in TIER2_DOMAINS):
        return 20
    return 10


def extract_tickers(text: str) -> List[str]:
    """Ticker candidates from ``$TSLA``, ``(NVDA)`` and bare ``AAPL`` forms."""
    found: List[str] = []
    for pattern in _TICKER_PATTERNS:
        for match in pattern.findall(text or ""):
            if match not in found:
                found.append(match)
    return found


def keyword_category(keyword: str) -> str:
    lowered = (keyword or "").lower()
    for category, keywords in KEYWORD_FAMILIES.items():
        if any(k.lower() in lowered for k in keywords):
            return category
    return "other"


def matched_keywords(text: str) -> List[str]:
    lowered = (text or "").lower()
    return [k for words in KEYWORD_FAMILIES.values() for k in words if k.lower() in lowered]


def verification_flag(source_score: float, corroboration_score: float) -> str:
    if source_score >= 25 or corroboration_score >= 20:
        return "verified"
    if corroboration_score >= 10:
        return "watch"
    return "likely_false"


def sentiment_polarity(score: float) -> str:
    if score > 0.2:
        return "positive"
    if score < -0.2:
        return "negative"
    return "neutral"


def score_event(event: Dict[str, Any]) -> ImpactScores:
    sources = event.get("sources") or []
    if sources:
        per_source = []
        for src in sources:
            credibility = src.get("credibility")
            if credibility in CREDIBILITY_SCORES:
                per_source.append(CREDIBILITY_SCORES[credibility])
            else:
                per_source.append(source_domain_score(src.get("domain", "")))
        source = min(30.0, sum(per_source) / len(per_source))
    else:
        source = 10.0

    if len(sources) >= 3:
        corroboration = 25.0
    elif len(sources) >= 2:
        corroboration = 12.0
    else:
        corroboration = 0.0

    confidence = float(event.get("confidence") or 0.0)
    if confidence >= 0.9:
        precision = 10.0
    elif confidence >= 0.7:
        precision = 7.0
    else:
        precision = 5.0

    sentiment = {"positive": 8.0, "negative": -8.0}.get(event.get("sentiment", "neutral"), 0.0)
    category = keyword_category(event.get("keyword", ""))

    return ImpactScores(
        source=source,
        corroboration=corroboration,
        velocity=10.0,
        entity_precision=precision,
        sentiment=sentiment,
        price_sensitivity=float(PRICE_SENSITIVITY.get(category, 5)),
    )


def build_opportunity(event: Dict[str, Any], price_pressure: float, now: Optional[datetime] = None) -> Dict[str, Any]:
    """OpportunityScanner record for one detected event."""
    now = now or datetime.now(timezone.utc)
    scores = score_event(event)
    impact = scores.total
    flag = verification_flag(scores.source, scores.corroboration)
    semantic = round(impact / 100.0 * 30.0, 1)
    sources = event.get("sources") or []

    return {
        "ticker": event["ticker"].upper(),
        "company": event.get("company"),
        "keyword": event.get("keyword"),
        "keyword_category": keyword_category(event.get("keyword", "")),
        "event_description": event.get("event_description"),
        "impact_score": round(impact, 1),
        "source_score": round(scores.source, 1),
        "corroboration_score": round(scores.corroboration, 1),
        "velocity_score": round(scores.velocity, 1),
        "entity_precision_score": round(scores.entity_precision, 1),
        "sentiment_score": round(scores.sentiment, 1),
        "price_sensitivity_score": round(scores.price_sensitivity, 1),
        "sentiment": event.get("sentiment", "neutral"),
        "verification_flag": flag,
        "sources": json.dumps(sources, ensure_ascii=False),
        "source_count": len(sources),
        "semantic_pressure": semantic,
        "total_pressure": round(price_pressure * 0.7 + semantic * 0.3, 1),
        "alert_triggered": impact >= ALERT_IMPACT or flag == "verified",
        "expires_at": (now + timedelta(hours=EXPIRY_HOURS)).isoformat(),
        "timestamp": now.isoformat(),
    }


# ──────────────────────────────────────────────────────────
# EVENT SOURCES
# ──────────────────────────────────────────────────────────


def fetch_events(keywords: List[str]) -> List[Dict[str, Any]]:
    """Ask the model for recent events matching ``keywords``; empty offline."""
    prompt = (
        "Search for recent (past 24 hours) financial news, SEC filings, and social media "
        "discussions about publicly traded companies.\n"
        f"Look for events related to these keywords: {', '.join(keywords)}\n\n"
        "For each company/event found: identify the ticker and full company name, the "
        "keyword detected, the sources (domain, title, credibility), the sentiment and "
        "your confidence (0-1) in the ticker. Return up to 10 significant events."
    )
    answer = invoke_llm(prompt, EVENTS_SCHEMA, {"events": []}, name="opportunity_events")
    events = answer.get("events")
    return events if isinstance(events, list) else []


def events_from_headlines(headlines: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Build events from ``{"title", "domain"}`` headlines by keyword and
    ticker matching. Headlines mentioning the same (ticker, keyword)
    corroborate each other.
    """
    grouped: Dict[tuple, Dict[str, Any]] = {}
    for item in headlines:
        title = item.get("title", "")
        keywords = matched_keywords(title)
        tickers = extract_tickers(title)
        if not keywords or not tickers:
            continue
        keyword = keywords[0]
        ticker = tickers[0]
        event = grouped.setdefault(
            (ticker, keyword),
            {
                "ticker": ticker,
                "company": item.get("company") or ticker,
                "keyword": keyword,
                "event_description": title,
                "sentiment": "negative" if keyword_category(keyword) == "risk" else "positive",
                "sources": [],
                "confidence": 0.9 if f"${ticker}" in title or f"({ticker})" in title else 0.7,
            },
        )
        event["sources"].append({"title": title, "domain": item.get("domain", "")})
    return list(grouped.values())


# ──────────────────────────────────────────────────────────
# MODES
# ──────────────────────────────────────────────────────────


def scan_opportunities(
    store: EntityStore,
    events: Optional[List[Dict[str, Any]]] = None,
    pause_seconds: float = 3.0,
) -> ScanResult:
    """
    Score events and persist OpportunityScanner records.

    Without ``events``, the first five keywords of each family are sent
    to the model, pausing between groups.
    """
    if events is None:
        events = []
        for family in KEYWORD_FAMILIES.values():
            try:
                events.extend(fetch_events(family[:5]))
            except Exception as exc:  # noqa: BLE001
                logger.error("Error scanning keyword group: %s", exc, exc_info=True)
            if pause_seconds:
                time.sleep(pause_seconds)

    opportunities: List[Dict[str, Any]] = []
    alerts: List[Dict[str, Any]] = []

    for event in events:
        if not event.get("ticker") or not event.get("company"):
            continue
        if float(event.get("confidence") or 0.0) < MIN_TICKER_CONFIDENCE:
            continue

        pressure = store.first("StockPressure", {"symbol": event["ticker"].upper()}, sort="-timestamp")
        price_pressure = float(pressure["final_pressure"]) if pressure else 50.0

        record = build_opportunity(event, price_pressure)
        store.create("OpportunityScanner", record)
        opportunities.append({"success": True, "data": record})
        if record["alert_triggered"]:
            alerts.append(
                {
                    "ticker": record["ticker"],
                    "keyword": record["keyword"],
                    "impact": record["impact_score"],
                    "flag": record["verification_flag"],
                }
            )
        logger.info("%s: impact %.0f - %s", record["ticker"], record["impact_score"], record["verification_flag"])

    return ScanResult(
        success=True,
        timestamp=utc_now_iso(),
        opportunities=opportunities,
        alerts=alerts,
        stats={
            "total_scanned": len(opportunities),
            "high_impact": sum(1 for o in opportunities if o["data"]["impact_score"] >= HIGH_IMPACT),
            "verified": sum(1 for o in opportunities if o["data"]["verification_flag"] == "verified"),
            "alerts_triggered": len(alerts),
        },
    )


def cleanup_expired(store: EntityStore, now: Optional[datetime] = None) -> int:
    """Delete opportunities past ``expires_at``; returns the count."""
    now = now or datetime.now(timezone.utc)
    deleted = 0
    for record in store.list("OpportunityScanner"):
        raw = record.get("expires_at")
        if not raw:
            continue
        try:
            expires = datetime.fromisoformat(str(raw))
        except ValueError:
            continue
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if expires < now:
            store.delete("OpportunityScanner", record["id"])
            deleted += 1
    return deleted


def export_daily_opportunities(store: EntityStore, day: Optional[str] = None) -> Dict[str, Any]:
    day = day or datetime.now(timezone.utc).date().isoformat()
    todays = [r for r in store.list("OpportunityScanner") if str(r.get("timestamp", "")).startswith(day)]

    return {
        "report_date": day,
        "total_opportunities": len(todays),
        "opportunities": [
            {
                "ticker": r.get("ticker"),
                "company": r.get("company"),
                "keyword": r.get("keyword"),
                "impact": r.get("impact_score"),
                "sentiment": r.get("sentiment"),
                "flag": r.get("verification_flag"),
                "sources": json.loads(r.get("sources") or "[]"),
                "semantic_pressure": r.get("semantic_pressure"),
                "total_pressure_after_merge": r.get("total_pressure"),
            }
            for r in todays
        ],
        "market_summary": {
            "high_impact_count": sum(1 for r in todays if float(r.get("impact_score") or 0) >= HIGH_IMPACT),
            "verified_count": sum(1 for r in todays if r.get("verification_flag") == "verified"),
            "avg_impact": (
                sum(float(r.get("impact_score") or 0) for r in todays) / len(todays) if todays else 0.0
            ),
            "sentiment_distribution": {
                s: sum(1 for r in todays if r.get("sentiment") == s) for s in ("positive", "neutral", "negative")
            },
        },
        "generated_at": utc_now_iso(),
    }


@register("opportunityScanner")
def opportunity_scanner(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    """Modes: ``scan`` (optional ``events`` or ``headlines``), ``cleanup``, ``export``."""
    mode = payload.get("mode", "scan")

    if mode == "scan":
        events = payload.get("events")
        if events is None and payload.get("headlines"):
            events = events_from_headlines(payload["headlines"])
        return scan_opportunities(store, events=events, pause_seconds=payload.get("pause_seconds", 3.0)).to_dict()

    if mode == "cleanup":
        deleted = cleanup_expired(store)
        return {"success": True, "deleted": deleted, "message": f"Cleaned up {deleted} expired opportunities"}

    if mode == "export":
        export = export_daily_opportunities(store)
        return {
            "success": True,
            "export_data": export,
            "message": f"Exported {export['total_opportunities']} opportunities for {export['report_date']}",
        }

    return {"success": False, "error": "Invalid mode"}


if __name__ == "__main__":
    import sys

    command = sys.argv[1] if len(sys.argv) > 1 else "scan"
    print(json.dumps(opportunity_scanner({"mode": command}, get_store()), indent=2, ensure_ascii=False, default=str))
