"""
Integration tests for API endpoints. The service container is swapped for
one built on in-memory fakes; /health still talks to the SQLite test DB.
"""
import asyncio
import json

import pytest

from diarybot.core import messages
from diarybot.core.errors import LLMError, StoreError
from diarybot.services.performance import PerformanceSample
from diarybot.services.resilience import ResilienceError
from diarybot.services.signature import compute_signature

from tests.fakes import ADMIN_TOKEN, CHANNEL_SECRET

DIARY = "今日は楽しかった、友達と映画を見た"


def text_event(text, user_id="U1", reply_token="reply-1"):
    return {
        "type": "message",
        "replyToken": reply_token,
        "source": {"type": "user", "userId": user_id},
        "message": {"id": "m1", "type": "text", "text": text},
        "timestamp": 1760000000000,
    }


def post_webhook(client, events, secret=CHANNEL_SECRET, signature=None):
    body = json.dumps({"destination": "Udest", "events": events}, ensure_ascii=False).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if signature is None:
        signature = compute_signature(body, secret)
    if signature:
        headers["x-line-signature"] = signature
    return client.post("/webhook", content=body, headers=headers)


ADMIN = {"x-admin-token": ADMIN_TOKEN}


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["db"] == "ok"
        assert set(body["circuits"]) == {"database", "llm", "messaging"}


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

class TestWebhookSignature:
    def test_missing_signature(self, client):
        r = post_webhook(client, [text_event(DIARY)], signature="")
        assert r.status_code == 400
        assert r.json()["code"] == "MISSING_SIGNATURE"

    def test_wrong_signature(self, client, messaging):
        r = post_webhook(client, [text_event(DIARY)], secret="some-other-secret")
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_SIGNATURE"
        assert messaging.replies == []

    def test_malformed_body(self, client):
        body = b'{"events": "not a list"}'
        r = client.post(
            "/webhook", content=body,
            headers={"x-line-signature": compute_signature(body, CHANNEL_SECRET)},
        )
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_WEBHOOK_PAYLOAD"


class TestWebhookDelivery:
    def test_verification_ping_has_no_events(self, client):
        r = post_webhook(client, [])
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "processed": 0}

    def test_text_message_gets_reply(self, client, messaging, llm, store):
        r = post_webhook(client, [text_event(DIARY)])
        assert r.status_code == 200
        assert r.json()["processed"] == 1
        assert messaging.replies == [("reply-1", [llm.reply])]
        assert store.entries[0].content == DIARY

    def test_non_text_events_are_skipped(self, client, messaging):
        sticker = text_event("")
        sticker["message"] = {"id": "m2", "type": "sticker"}
        follow = {"type": "follow", "replyToken": "r", "source": {"type": "user", "userId": "U1"}}
        r = post_webhook(client, [sticker, follow])
        assert r.json()["processed"] == 0
        assert messaging.replies == []

    def test_several_events_in_one_delivery(self, client, messaging):
        events = [text_event(DIARY, user_id=f"U{i}", reply_token=f"r{i}") for i in range(3)]
        r = post_webhook(client, events)
        assert r.json()["processed"] == 3
        assert sorted(token for token, _ in messaging.replies) == ["r0", "r1", "r2"]

    def test_failure_becomes_canned_apology(self, client, messaging, store):
        store.fail["create_entry"] = StoreError("permission denied for table entries")
        r = post_webhook(client, [text_event(DIARY)])
        assert r.status_code == 200
        assert messaging.replies == [("reply-1", [messages.ANALYSIS_ERROR])]

    def test_degraded_reply_is_followed_by_push(self, client, messaging, llm):
        llm.errors = [LLMError("unauthorized", status_code=401)]
        llm.reply = '{"emotion": "楽しさ", "themes": "友人", "patterns": "外出", "positive_points": "素敵です"}'

        r = post_webhook(client, [text_event(DIARY)])

        assert r.status_code == 200
        reply_text = messaging.replies[0][1][0]
        assert reply_text.endswith(messages.ENRICHMENT_PENDING_NOTE)
        assert len(messaging.pushes) == 1
        assert messaging.pushes[0][1][0].startswith(messages.ENRICHMENT_DONE_HEADER)


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------

class TestPerformance:
    def test_stats_after_traffic(self, client):
        post_webhook(client, [text_event(DIARY)])
        r = client.get("/performance/stats")
        assert r.status_code == 200
        body = r.json()
        assert body["total_requests"] == 1
        assert body["level1_count"] == 1
        assert body["success_rate"] == 100.0

    def test_trend(self, client):
        r = client.get("/performance/trend", params={"window_minutes": 5})
        assert r.status_code == 200
        assert r.json()["window_minutes"] == 5
        assert r.json()["trend"] == "stable"

    def test_trend_rejects_bad_window(self, client):
        r = client.get("/performance/trend", params={"window_minutes": 0})
        assert r.status_code == 422
        assert r.json()["code"] == "VALIDATION_ERROR"

    def test_health_without_traffic(self, client):
        r = client.get("/performance/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_health_critical_returns_503(self, client, container):
        for _ in range(5):
            container.monitor.record(PerformanceSample(
                user_id="U1", total_processing_time_ms=5000.0, level=3,
                entry_length=10, success=False, error_type="StoreError",
            ))
        r = client.get("/performance/health")
        assert r.status_code == 503
        assert r.json()["status"] == "critical"
        assert r.json()["recommendations"]

    def test_export_csv(self, client):
        post_webhook(client, [text_event(DIARY)])
        r = client.get("/performance/export")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        lines = r.text.strip().splitlines()
        assert lines[0].startswith("timestamp,user_id")
        assert len(lines) == 2

    def test_circuits(self, client):
        r = client.get("/performance/circuits")
        assert r.status_code == 200
        assert r.json()["llm"]["state"] == "closed"


class TestAdminEndpoints:
    def test_clear_metrics_requires_token(self, client):
        r = client.delete("/performance/metrics")
        assert r.status_code == 403
        assert r.json()["code"] == "ADMIN_ACCESS_DENIED"

    def test_clear_metrics_wrong_token(self, client):
        r = client.delete("/performance/metrics", headers={"x-admin-token": "nope"})
        assert r.status_code == 403

    def test_clear_metrics(self, client):
        post_webhook(client, [text_event(DIARY)])
        r = client.delete("/performance/metrics", headers=ADMIN)
        assert r.status_code == 200
        assert r.json() == {"cleared": 1}
        assert client.get("/performance/stats").json()["total_requests"] == 0

    def test_disabled_when_token_unset(self, client, container):
        container.settings.ADMIN_TOKEN = ""
        r = client.delete("/performance/metrics", headers={"x-admin-token": ""})
        assert r.status_code == 403

    def test_reset_open_circuit(self, client, container):
        asyncio.run(_trip(container.resilience, "llm", times=5))
        assert client.get("/performance/circuits").json()["llm"]["state"] == "open"

        r = client.post("/performance/circuits/llm/reset", headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["state"] == "closed"
        assert r.json()["failure_count"] == 0

    def test_reset_unknown_circuit(self, client):
        r = client.post("/performance/circuits/nope/reset", headers=ADMIN)
        assert r.status_code == 404
        assert r.json()["code"] == "UNKNOWN_CIRCUIT"


async def _trip(resilience, key, times):
    async def failing():
        raise LLMError("bad gateway", status_code=502)

    for _ in range(times):
        with pytest.raises(ResilienceError):
            await resilience.execute_with_circuit_breaker(failing, key, "test")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

class TestMaintenance:
    def test_requires_token(self, client):
        assert client.post("/maintenance/run").status_code == 403

    def test_run_refreshes_active_users(self, client, store, llm):
        store.add_entry("U1", "一日目", days_ago=1)
        store.add_entry("U1", "二日目", days_ago=0.5)
        store.add_entry("U2", "一件だけ", days_ago=1)
        store.add_entry("U3", "とても古い", days_ago=200)

        r = client.post("/maintenance/run", headers=ADMIN)

        assert r.status_code == 200
        body = r.json()
        assert body["active_users"] == 2
        assert body["summaries_refreshed"] == 1
        assert body["summaries_skipped"] == 1
        assert body["entries_deleted"] == 1
        assert body["total_entries"] == 3
        assert body["total_users"] == 2
        assert body["alerts"] == []
        assert body["errors"] == []

    def test_summary_stats(self, client, store):
        store.add_entry("U1", "一日目", days_ago=1)
        r = client.get("/maintenance/summaries/U1", headers=ADMIN)
        assert r.status_code == 200
        body = r.json()
        assert body["has_summary"] is False
        assert body["entry_count"] == 1
