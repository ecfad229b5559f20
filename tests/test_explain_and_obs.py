import asyncio
import json
from decimal import Decimal

import httpx

from alertwatch import obs
from alertwatch.services import explain


def test_explain_returns_none_without_credentials(monkeypatch):
    monkeypatch.setattr(explain.settings, "CHATDATA_API_KEY", None)
    monkeypatch.setattr(explain.settings, "CHATDATA_CHATBOT_ID", None)
    assert asyncio.run(explain.explain_alert("BTC", "Price", Decimal("105000"), Decimal("100000"))) is None


def test_explain_posts_alert_json(monkeypatch):
    monkeypatch.setattr(explain.settings, "CHATDATA_API_KEY", "k")
    monkeypatch.setattr(explain.settings, "CHATDATA_CHATBOT_ID", "bot")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  BTC crossed 100k.  "}}]})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        explain.httpx, "AsyncClient", lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw)
    )

    text = asyncio.run(explain.explain_alert("BTC", "Price", Decimal("105000"), Decimal("100000")))
    assert text == "BTC crossed 100k."
    assert seen["auth"] == "Bearer k"
    assert seen["payload"]["chatbotId"] == "bot"
    content = seen["payload"]["messages"][0]["content"]
    assert '"symbol":"BTC"' in content and '"threshold":"100000"' in content


def test_log_event_is_json_with_request_id(caplog):
    caplog.set_level("INFO", logger="alertwatch.events")
    obs.new_request_id("abc123")
    obs.log_event("notification.delivery", channel="slack", ok=True, skipped=None)
    record = json.loads(caplog.records[-1].getMessage())
    assert record["event"] == "notification.delivery"
    assert record["rid"] == "abc123"
    assert record["channel"] == "slack" and record["ok"] is True
    assert "skipped" not in record


def test_inbound_request_id_is_bounded():
    assert obs.new_request_id("  ") != ""
    assert len(obs.new_request_id("x" * 500)) == obs.MAX_INBOUND_ID
    assert obs.new_request_id("req-1") == obs.get_request_id() == "req-1"
