import asyncio
import logging

import httpx
import pydantic
import pytest
import redis

from asset_shared.errors import (
    AuthError,
    ClassifiedError,
    ErrorHistory,
    ErrorKind,
    GenerationError,
    NetworkError,
    StorageError,
    ValidationError,
    classify,
    format_error,
    http_status_for,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/v1/thing")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class _Unprintable(Exception):
    def __str__(self):
        raise RuntimeError("no str for you")


class TestClassify:
    @pytest.mark.parametrize("value", [
        None,
        42,
        "",
        "plain string",
        {"a": 1},
        ValueError("boom"),
        KeyError("k"),
        _Unprintable(),
    ])
    def test_total(self, value):
        err = classify(value)
        assert isinstance(err, ClassifiedError)
        assert err.message

    def test_classified_passes_through(self):
        original = GenerationError("x", stage="rig")
        assert classify(original) is original

    def test_http_5xx_is_retryable_network(self):
        err = classify(_status_error(503))
        assert isinstance(err, NetworkError)
        assert err.is_retryable
        assert err.context["status_code"] == 503
        assert err.context["endpoint"] == "https://api.test/v1/thing"

    def test_http_429_is_retryable(self):
        assert classify(_status_error(429)).is_retryable

    def test_http_404_is_not_retryable(self):
        err = classify(_status_error(404))
        assert isinstance(err, NetworkError)
        assert not err.is_retryable

    @pytest.mark.parametrize("status", [401, 403])
    def test_http_auth(self, status):
        err = classify(_status_error(status))
        assert isinstance(err, AuthError)
        assert not err.is_retryable

    def test_transport_error(self):
        request = httpx.Request("GET", "https://api.test/x")
        err = classify(httpx.ConnectError("refused", request=request))
        assert isinstance(err, NetworkError)
        assert err.is_retryable

    def test_timeout(self):
        err = classify(asyncio.TimeoutError())
        assert err.kind == ErrorKind.NETWORK
        assert err.is_retryable

    def test_pydantic_validation(self):
        class Model(pydantic.BaseModel):
            count: int

        with pytest.raises(pydantic.ValidationError) as info:
            Model(count="many")
        err = classify(info.value)
        assert isinstance(err, ValidationError)
        assert not err.is_retryable
        assert "count" in err.details

    def test_redis_error_is_storage(self):
        err = classify(redis.ConnectionError("down"))
        assert isinstance(err, StorageError)
        assert err.is_retryable

    @pytest.mark.parametrize("message,kind", [
        ("network unreachable", ErrorKind.NETWORK),
        ("prompt is required", ErrorKind.VALIDATION),
        ("meshy task blew up", ErrorKind.GENERATION),
        ("database locked", ErrorKind.STORAGE),
        ("unauthorized", ErrorKind.AUTH),
        ("something odd", ErrorKind.UNKNOWN),
    ])
    def test_message_hints(self, message, kind):
        assert classify(RuntimeError(message)).kind == kind

    def test_cause_is_kept(self):
        raw = RuntimeError("meshy down")
        err = classify(raw)
        assert err.cause is raw
        assert err.__cause__ is raw


class TestRetryability:
    def test_validation_never_retryable(self):
        assert not ValidationError("bad").is_retryable

    def test_generation_default_retryable(self):
        assert GenerationError("failed").is_retryable

    def test_network_without_status_retryable(self):
        assert NetworkError("reset").is_retryable


class TestFormatting:
    def test_user_message_by_kind(self):
        formatted = format_error(ValidationError("Prompt is required", field="prompt"))
        assert formatted.category == ErrorKind.VALIDATION
        assert formatted.code == "VALIDATION_ERROR"
        assert "invalid" in formatted.user_message.lower()
        assert formatted.context["field"] == "prompt"

    @pytest.mark.parametrize("error,status", [
        (ValidationError("bad"), 400),
        (AuthError("no"), 401),
        (NetworkError("down"), 502),
        (GenerationError("failed"), 502),
        (StorageError("disk"), 500),
        (ClassifiedError("?"), 500),
    ])
    def test_http_status(self, error, status):
        assert http_status_for(error) == status


class TestErrorHistory:
    def test_newest_first(self):
        history = ErrorHistory(max_entries=5)
        history.record(NetworkError("first"))
        history.record(StorageError("second"), source="persist")
        entries = history.entries()
        assert [e.error.message for e in entries] == ["second", "first"]
        assert entries[0].source == "persist"

    def test_evicts_oldest_beyond_bound(self):
        history = ErrorHistory(max_entries=3)
        for i in range(5):
            history.record(GenerationError(f"failure {i}"))
        assert len(history) == 3
        assert [e.error.message for e in history.entries()] == ["failure 4", "failure 3", "failure 2"]

    def test_records_raw_exceptions(self):
        history = ErrorHistory()
        entry = history.record(ValueError("invalid input"))
        assert entry.error.category == ErrorKind.VALIDATION

    def test_clear(self):
        history = ErrorHistory()
        history.record("oops")
        history.clear()
        assert len(history) == 0

    def test_recording_does_not_log_again_as_error(self, caplog):
        caplog.set_level(logging.DEBUG, logger="asset_shared.errors")
        ErrorHistory().record(NetworkError("connection reset"), source="rig")
        assert [r.levelno for r in caplog.records if r.name == "asset_shared.errors"] == [logging.DEBUG]
