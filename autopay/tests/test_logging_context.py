"""Tests for structured logging, request_id propagation and config validation."""

import json
import logging
from types import SimpleNamespace

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from autopay.core.config import cors_origins, validate_config
from autopay.core.logging import JsonFormatter, PrettyFormatter, latency_bucket_ms
from autopay.core.middleware.request_id import RequestIdMiddleware


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="autopay"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert any(r.getMessage() == "request.complete" for r in records)


def test_echoes_provided_request_id():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    resp = TestClient(app).get("/", headers={"X-Request-Id": "test-rid-123"})
    assert resp.headers.get("x-request-id") == "test-rid-123"
    assert resp.json()["request_id"] == "test-rid-123"


def test_error_payload_uses_provided_request_id(client):
    resp = client.get("/api/get-subscriptions", headers={"x-request-id": "rid-err"})
    assert resp.status_code == 400
    assert resp.json()["error"]["request_id"] == "rid-err"


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("autopay", logging.WARNING, __file__, 1, "[workflow] failed", None, None)
    record.request_id = "rid-1"
    record.address = "0xabc"
    record.stage = "balance_checked"
    record.error_code = "insufficient_funds"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["request_id"] == "rid-1"
    assert payload["address"] == "0xabc"
    assert payload["stage"] == "balance_checked"
    assert payload["error_code"] == "insufficient_funds"


def test_pretty_formatter_shows_stage():
    record = logging.LogRecord("autopay", logging.INFO, __file__, 1, "[workflow] submitted", None, None)
    record.request_id = None
    record.stage = "submitted"
    line = PrettyFormatter().format(record)
    assert "[autopay]" in line
    assert "[stage=submitted]" in line


def test_latency_buckets_are_coarse():
    assert latency_bucket_ms(None) != latency_bucket_ms(5)
    assert latency_bucket_ms(5) == latency_bucket_ms(6)


def _settings(**overrides):
    defaults = dict(
        DATABASE_URL=None,
        SUBSCRIPTION_CONTRACT_ADDRESS=None,
        PAYER_PRIVATE_KEY=None,
        CONFIG_STRICT=False,
        CORS_ORIGINS="http://a.test, http://b.test,",
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def test_validate_config_warns_without_secrets(caplog):
    cfg = _settings(PAYER_PRIVATE_KEY=None, DATABASE_URL="postgresql://user:hunter2@db/autopay")
    with caplog.at_level(logging.WARNING, logger="autopay"):
        assert validate_config(settings_obj=cfg) is True
    text = caplog.text
    assert "PAYER_PRIVATE_KEY" in text
    assert "hunter2" not in text


def test_validate_config_strict_raises():
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=_settings())
    validate_config(
        strict=True,
        settings_obj=_settings(DATABASE_URL="sqlite://", SUBSCRIPTION_CONTRACT_ADDRESS="0x1", PAYER_PRIVATE_KEY="k"),
    )


def test_cors_origins_split():
    assert cors_origins(_settings()) == ["http://a.test", "http://b.test"]
