# tests/test_middleware.py
"""Tests for fieldops/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from fieldops.infra.metrics import get_metrics_collector
from fieldops.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None, logging_enabled: bool = True):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestLogging, RequestID wraps both
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=logging_enabled)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.post("/webhooks/telegram")
    def telegram_endpoint():
        if "/webhooks/telegram" in raise_for:
            raise RuntimeError("telegram boom")
        return {"ok": True}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        # UUID has 36 chars with dashes
        assert len(resp.headers["X-Request-ID"]) >= 32

    def test_preserves_existing_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test", headers={"X-Request-ID": "dispatch-req-42"})
        assert resp.headers["X-Request-ID"] == "dispatch-req-42"


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================

class TestRequestLoggingMiddleware:
    def test_records_request_duration(self):
        client = TestClient(_build_app())
        client.get("/test")

        histograms = get_metrics_collector().get_metrics()["histograms"]
        assert histograms["http_request_duration_ms{method=GET}"]["count"] == 1

    def test_health_check_not_recorded(self):
        client = TestClient(_build_app())
        client.get("/health")

        assert get_metrics_collector().get_metrics()["histograms"] == {}

    def test_disabled(self):
        client = TestClient(_build_app(logging_enabled=False))
        client.get("/test")

        assert get_metrics_collector().get_metrics()["histograms"] == {}


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_telegram_error_acknowledged_with_200(self):
        client = TestClient(_build_app(raise_for={"/webhooks/telegram"}), raise_server_exceptions=False)
        resp = client.post("/webhooks/telegram")
        assert resp.status_code == 200
        assert resp.json() == {"ok": False}

    def test_generic_error_returns_500(self):
        client = TestClient(_build_app(raise_for={"/test"}), raise_server_exceptions=False)
        resp = client.get("/test", headers={"X-Request-ID": "req-500"})
        assert resp.status_code == 500
        data = resp.json()
        assert data["error"] == "Internal server error"
        assert data["request_id"] == "req-500"
