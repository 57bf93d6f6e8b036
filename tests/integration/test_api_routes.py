"""Tests for the RetroQ HTTP API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from retroq.api.app import app
from retroq.api.routes import llm as llm_routes
from retroq.llm.analyzer import AnalyzerConfig, LLMAnalyzer


@pytest.fixture
def client(fake_provider):
    previous = llm_routes._analyzer
    analyzer = LLMAnalyzer(AnalyzerConfig(provider="gemini", enabled=True), provider=fake_provider)
    llm_routes.set_analyzer(analyzer)
    yield TestClient(app)
    llm_routes.set_analyzer(previous)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "RetroQ API"
    assert set(body["llm"]) == {"enabled", "provider", "ready", "google_cloud_project", "api_key"}


def test_llm_status(client):
    response = client.get("/api/llm/status")

    assert response.status_code == 200
    body = response.json()
    assert body["enabled"] is True
    assert body["provider"] == "gemini"
    assert body["model"] == "gemini-2.5-flash"
    assert body["metrics"]["total_requests"] == 0
    assert "optimal_model" in body["recommendations"]
    assert body["lastUpdated"]


def test_llm_status_with_data_volume(client):
    response = client.get("/api/llm/status", params={"dataVolume": 60_000})
    recommendations = response.json()["recommendations"]["recommendations"]
    assert any(rec["type"] == "model_selection" for rec in recommendations)


def test_invalid_query_uses_validation_handler(client):
    response = client.get("/api/llm/status", params={"dataVolume": "lots"})

    assert response.status_code == 422
    body = response.json()
    assert body["invalid_fields"] == ["dataVolume"]
    assert body["error_count"] == 1


def test_reset_metrics(client):
    response = client.post("/api/llm/metrics/reset")
    assert response.json() == {"success": True, "message": "Performance metrics reset"}


def test_models_list(client):
    body = client.get("/api/llm/models").json()

    assert "gemini" in body["providers"]
    flash = body["models"]["gemini"]["gemini-2.5-flash"]
    assert flash["total_tokens"] == 1_000_000
    assert flash["input_cap"] > 0


def test_insight_thresholds(client):
    body = client.get("/api/config/insights").json()
    assert body["version"] == "1.0.0"
    assert body["thresholds"]["merger"]["similarity_threshold"] == 0.5


def test_missing_analyzer_returns_503(client):
    llm_routes.set_analyzer(None)

    response = client.get("/api/llm/status")

    assert response.status_code == 503
    assert response.json()["detail"] == "LLM analyzer not initialized"
