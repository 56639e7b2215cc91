# tests/test_infra.py
"""Logging, metrics, security helpers and middleware"""
import json
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from leadflow.infra.logging_config import JSONFormatter, LogContext, mask_phone
from leadflow.infra.metrics import MetricsCollector, Timer, get_metrics_collector
from leadflow.transport import security
from leadflow.transport.middleware import ErrorHandlingMiddleware, RequestIDMiddleware, RequestLoggingMiddleware
from leadflow.transport.security import sanitize_error_message, validate_token_strength


# =============================================================================
# Logging
# =============================================================================

class TestMaskPhone:
    @pytest.mark.parametrize("phone,masked", [
        ("+15551234567", "+155****67"),
        ("12345", "***"),
        (None, "-"),
    ])
    def test_mask(self, phone, masked):
        assert mask_phone(phone) == masked


class TestJSONFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("leadflow.test", logging.INFO, __file__, 10, "assigned %s", ("lead-1",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_message_and_context(self):
        out = json.loads(JSONFormatter().format(self._record(team_id="team-1", closer_id="ann")))

        assert out["message"] == "assigned lead-1"
        assert out["level"] == "INFO"
        assert out["team_id"] == "team-1"
        assert out["closer_id"] == "ann"
        assert "lead_id" not in out

    def test_log_context_attaches_fields(self, caplog):
        logger = logging.getLogger("leadflow.test.context")
        with caplog.at_level(logging.INFO, logger="leadflow.test.context"):
            LogContext(logger, team_id="team-1", lead_id="lead-9").info("hello")

        [record] = caplog.records
        assert record.team_id == "team-1"
        assert record.lead_id == "lead-9"
        assert not hasattr(record, "closer_id")


# =============================================================================
# Metrics
# =============================================================================

class TestMetricsCollector:
    def test_labels_are_order_independent(self):
        collector = MetricsCollector()
        collector.inc_counter("leads_assigned_total", labels={"team_id": "t", "source": "manual"})
        collector.inc_counter("leads_assigned_total", labels={"source": "manual", "team_id": "t"})

        assert collector.get_counter("leads_assigned_total", team_id="t", source="manual") == 2
        assert collector.get_counter("leads_assigned_total", team_id="t", source="auto") == 0

    def test_histogram_stats(self):
        collector = MetricsCollector()
        for value in (10, 20, 30):
            collector.observe_histogram("sweep", value)

        stats = collector.get_metrics()["histograms"]["sweep"]
        assert stats["count"] == 3
        assert stats["min"] == 10
        assert stats["max"] == 30

    def test_reset(self):
        collector = MetricsCollector()
        collector.inc_counter("x")
        collector.reset()
        assert collector.get_metrics()["counters"] == {}

    def test_timer_records_on_exit(self):
        with Timer("reaction_processing_seconds", function="assign_on_create"):
            pass
        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert "reaction_processing_seconds{function=assign_on_create}" in histograms


# =============================================================================
# Security helpers
# =============================================================================

class TestTokenStrength:
    def test_strong_token(self):
        assert validate_token_strength("Zq8vK2mR7xW4nB9cL3pF6hT1jD5sG0yE") == []

    def test_short_token(self):
        warnings = validate_token_strength("Ab1", "TRIGGER_TOKEN")
        assert any("too short" in w for w in warnings)

    def test_weak_pattern(self):
        warnings = validate_token_strength("MySecretValue1234567890abcdefghijk")
        assert any("weak pattern 'secret'" in w for w in warnings)

    def test_low_diversity(self):
        warnings = validate_token_strength("a" * 40)
        assert any("low character diversity" in w for w in warnings)


class TestInternalNetwork:
    @pytest.mark.parametrize("ip,internal", [
        ("10.1.2.3", True),
        ("192.168.0.10", True),
        ("127.0.0.1", True),
        ("8.8.8.8", False),
        ("not-an-ip", False),
    ])
    def test_is_internal_ip(self, ip, internal):
        assert security._is_internal_ip(ip) is internal


def test_sanitized_error_in_production():
    assert sanitize_error_message(ValueError("db password=x"), is_production=True) == "Internal error"
    assert sanitize_error_message(ValueError("boom"), is_production=False) == "boom"


# =============================================================================
# Middleware
# =============================================================================

@pytest.fixture
def mw_client():
    app = FastAPI()
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=True)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/ok")
    async def ok():
        return {"ok": True}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.post("/triggers/boom")
    async def trigger_boom():
        raise RuntimeError("kaboom")

    return TestClient(app)


class TestMiddleware:
    def test_request_id_generated(self, mw_client):
        response = mw_client.get("/ok")
        assert response.headers["X-Request-ID"]

    def test_request_counted(self, mw_client):
        mw_client.get("/ok")
        assert get_metrics_collector().get_counter("http_requests_total", method="GET", status="200") == 1

    def test_unhandled_error_is_json(self, mw_client):
        response = mw_client.get("/boom", headers={"X-Request-ID": "req-7"})

        assert response.status_code == 500
        assert response.json() == {
            "error": {"code": "internal", "message": "Internal error"},
            "request_id": "req-7",
        }

    def test_unhandled_trigger_error_is_acknowledged(self, mw_client):
        response = mw_client.post("/triggers/boom")
        assert response.status_code == 200
        assert response.json() == {"status": "done"}
