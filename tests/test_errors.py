"""
Tests for error handling: structured error responses, HTTP status codes,
and the custom exception classes.
"""
from diarybot.core.errors import (
    AdminAccessDeniedError,
    DiaryInputError,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    LLMError,
    MessagingError,
    MissingSignatureError,
    StoreError,
    UnknownCircuitError,
)


# ---------------------------------------------------------------------------
# Unit tests on exception classes
# ---------------------------------------------------------------------------

class TestExceptionClasses:
    def test_diary_input_error(self):
        err = DiaryInputError("Diary text is empty.", field="text")
        assert err.http_status == 422
        assert err.code == "INVALID_DIARY_INPUT"
        assert err.to_dict()["details"] == {"field": "text"}

    def test_signature_errors(self):
        assert MissingSignatureError().http_status == 400
        assert MissingSignatureError().code == "MISSING_SIGNATURE"
        assert InvalidSignatureError().http_status == 400
        assert InvalidSignatureError().code == "INVALID_SIGNATURE"

    def test_invalid_payload_keeps_reason(self):
        err = InvalidWebhookPayloadError("2 validation error(s)")
        assert err.http_status == 400
        assert err.details["reason"] == "2 validation error(s)"

    def test_admin_access_denied(self):
        err = AdminAccessDeniedError("nope")
        assert err.http_status == 403
        assert err.message == "nope"

    def test_unknown_circuit(self):
        err = UnknownCircuitError("redis")
        assert err.http_status == 404
        assert "redis" in err.message
        assert err.to_dict()["details"]["circuit"] == "redis"

    def test_to_dict_without_details(self):
        d = MissingSignatureError().to_dict()
        assert set(d) == {"code", "message"}


class TestCapabilityErrors:
    def test_store_error_operation(self):
        err = StoreError("insert failed", operation="create_entry")
        assert err.operation == "create_entry"
        assert str(err) == "insert failed"

    def test_llm_error_fields(self):
        err = LLMError("429", status_code=429, retry_after=1.5)
        assert (err.status_code, err.retry_after) == (429, 1.5)

    def test_messaging_error_without_status(self):
        assert MessagingError("transport").status_code is None


# ---------------------------------------------------------------------------
# Integration: HTTP error envelopes
# ---------------------------------------------------------------------------

class TestErrorResponses:
    def test_missing_signature_envelope(self, client):
        r = client.post("/webhook", content=b"{}")
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "MISSING_SIGNATURE"
        assert "message" in body

    def test_validation_envelope_lists_fields(self, client):
        r = client.get("/performance/trend", params={"window_minutes": "abc"})
        assert r.status_code == 422
        body = r.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"][0]["field"] == "query.window_minutes"

    def test_admin_error_envelope(self, client):
        r = client.post("/maintenance/run")
        assert r.status_code == 403
        assert r.json()["code"] == "ADMIN_ACCESS_DENIED"
