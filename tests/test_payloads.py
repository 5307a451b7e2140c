"""Tests for typed payload variants."""

from eventscope.models import build_entry
from eventscope.payloads import (
    ExceptionPayload,
    GenericPayload,
    JobPayload,
    QueryPayload,
    RequestPayload,
    payload_for,
)

from conftest import T0


def _entry(entry_type, payload):
    return build_entry({"entry_type": entry_type, "occurred_at": T0, "payload": payload})


class TestPayloadFor:
    def test_request(self):
        payload = payload_for(_entry("request", {"path": "/users", "method": "GET", "status": 200}))
        assert isinstance(payload, RequestPayload)
        assert payload.status == 200
        assert payload.extra == {}

    def test_exception_class_alias(self):
        payload = payload_for(_entry("exception", {"class": "KeyError", "message": "'id'", "line": 4}))
        assert isinstance(payload, ExceptionPayload)
        assert payload.exception_class == "KeyError"
        assert payload.line == 4

    def test_unknown_keys_kept_in_extra(self):
        payload = payload_for(_entry("query", {"sql": "SELECT 1", "connection": "primary"}))
        assert isinstance(payload, QueryPayload)
        assert payload.cached is False
        assert payload.extra == {"connection": "primary"}

    def test_both_job_types(self):
        assert isinstance(payload_for(_entry("job_enqueue", {"job_id": "1"})), JobPayload)
        assert isinstance(payload_for(_entry("job_perform", {"job_id": "1"})), JobPayload)

    def test_unrecognised_type_is_generic(self):
        payload = payload_for(_entry("mail", {"to": "a@example.com"}))
        assert isinstance(payload, GenericPayload)
        assert payload.extra == {"to": "a@example.com"}
