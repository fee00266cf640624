"""
Unit tests for Discord alerts: embeds, cooldowns, webhook errors and
AlertHistory records.
"""

from __future__ import annotations

from dataclasses import replace

import pytest
import requests

import alerts
from alerts import (
    build_opportunity_embed,
    build_spi_embed,
    build_trade_embed,
    mark_alert_sent,
    notify_fill,
    send_alerts,
    send_discord_webhook,
    send_error_alert,
    send_spi_alert,
    send_trade_alert,
    should_send_alert,
)

SPI_ALERT = {"symbol": "aapl", "keyword": "partnership", "spi_change": 22.0, "sentiment": "positive"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code: int = 204) -> None:
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)


@pytest.fixture(autouse=True)
def clean_cache():
    alerts.alert_cache.clear()
    yield
    alerts.alert_cache.clear()


class Posted(list):
    """Posted payloads plus the status code the fake webhook answers with."""

    state: dict


@pytest.fixture
def webhook(monkeypatch):
    """Configured webhook URL; returns the posted payloads."""
    posted = Posted()
    state = {"status": 204}

    def _post(url, json=None, timeout=None):
        posted.append(json)
        return FakeResponse(state["status"])

    monkeypatch.setattr(alerts, "settings", replace(alerts.settings, discord_webhook_url="https://discord.test/hook"))
    monkeypatch.setattr(alerts.requests, "post", _post)
    monkeypatch.setattr(send_discord_webhook.retry, "sleep", lambda _seconds: None)
    posted.state = state
    return posted


# ---------------------------------------------------------------------------
# Embeds
# ---------------------------------------------------------------------------

class TestEmbeds:
    def test_spi_colors(self):
        assert build_spi_embed(SPI_ALERT)["color"] == 0x00FF00
        assert build_spi_embed({**SPI_ALERT, "sentiment": "negative", "spi_change": -18})["title"].startswith("📉")
        assert build_spi_embed({**SPI_ALERT, "sentiment": "neutral"})["color"] == 0x808080

    def test_spi_title(self):
        assert build_spi_embed(SPI_ALERT)["title"] == "📈 AAPL SPI +22.0"

    def test_opportunity(self):
        embed = build_opportunity_embed({"ticker": "nvda", "keyword": "patent granted", "impact": 84.0, "flag": "verified"})
        assert embed["title"] == "🔎 NVDA opportunity, impact 84"
        assert embed["fields"][0]["value"] == "✅ verified"

    def test_trade_with_profit(self):
        embed = build_trade_embed({"symbol": "AAPL", "action": "SELL", "shares": 2, "price": 110.0, "profit": 20.0})
        assert embed["title"] == "🔴 SELL AAPL"
        assert embed["fields"][-1] == {"name": "P/L", "value": "$+20.00", "inline": True}


# ---------------------------------------------------------------------------
# Cooldown
# ---------------------------------------------------------------------------

class TestCooldown:
    def test_first_alert_allowed(self):
        assert should_send_alert("AAPL", "SPI")

    def test_marked_alert_blocks_same_kind(self):
        mark_alert_sent("AAPL", "SPI")
        assert not should_send_alert("AAPL", "SPI")
        assert not should_send_alert("aapl", "SPI")
        assert should_send_alert("AAPL", "OPPORTUNITY")

    def test_zero_cooldown(self):
        mark_alert_sent("AAPL", "SPI")
        assert should_send_alert("AAPL", "SPI", cooldown_minutes=0)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TestDelivery:
    def test_not_configured(self, store):
        result = send_spi_alert(SPI_ALERT, store=store)
        assert not result.success
        assert result.message == "Webhook disabled or invalid."
        assert store.list("AlertHistory")[0]["kind"] == "SPI"

    def test_sent_and_recorded(self, store, webhook):
        result = send_spi_alert(SPI_ALERT, store=store)

        assert result.success
        assert webhook[0]["username"] == "FLOW-PRESSURE"
        history = store.list("AlertHistory")
        assert history[0]["symbol"] == "AAPL"
        assert history[0]["payload"]["keyword"] == "partnership"

    def test_second_alert_suppressed(self, store, webhook):
        send_spi_alert(SPI_ALERT, store=store)
        second = send_spi_alert(SPI_ALERT, store=store)

        assert not second.success
        assert second.message.startswith("Cooldown")
        assert len(webhook) == 1

    def test_force_send_bypasses_cooldown(self, webhook):
        send_spi_alert(SPI_ALERT)
        assert send_spi_alert(SPI_ALERT, force_send=True).success

    def test_trade_alerts_are_never_rate_limited(self, webhook):
        fill = {"symbol": "AAPL", "action": "BUY", "shares": 1, "price": 100.0}
        assert send_trade_alert(fill).success
        assert send_trade_alert(fill).success
        assert len(webhook) == 2

    def test_invalid_webhook(self, webhook):
        webhook.state["status"] = 404
        assert send_discord_webhook({"title": "x"}) is False

    def test_rate_limit_is_reported(self, store, webhook):
        webhook.state["status"] = 429
        result = send_spi_alert(SPI_ALERT, store=store)

        assert not result.success
        assert result.error
        assert len(webhook) == 3

    def test_batch(self, webhook):
        results = send_alerts("OPPORTUNITY", [{"ticker": "AAPL", "impact": 80}, {"ticker": "MSFT", "impact": 90}])
        assert [r.success for r in results] == [True, True]
        assert [r.kind for r in results] == ["OPPORTUNITY", "OPPORTUNITY"]

    def test_error_alert(self, webhook):
        assert send_error_alert("boom", "CRITICAL")
        assert webhook[0]["embeds"][0]["color"] == 0x8B0000

    def test_error_alert_without_webhook(self):
        assert send_error_alert("boom", "ERROR") is False


class TestNotifyFill:
    def test_silent_without_webhook(self, store):
        assert notify_fill("AAPL", "BUY", 1, 100.0, "paper", store=store) is None
        assert store.list("AlertHistory") == []

    def test_sends_trade_alert(self, store, webhook):
        result = notify_fill("aapl", "SELL", 2, 110.0, "manual", store=store, profit=19.5)

        assert result.success
        assert result.kind == "TRADE"
        assert len(webhook) == 1
        payload = store.list("AlertHistory")[0]["payload"]
        assert payload["source"] == "manual"
        assert payload["profit"] == 19.5
