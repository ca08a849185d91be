"""Unit tests for combo API endpoints."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from fastapi.testclient import TestClient

from comborank.api.v1.dependencies import get_ranking_orchestrator
from comborank.config import settings
from comborank.integrations import itunes_search
from comborank.integrations.itunes_search import SearchIndexPage, get_search_client
from comborank.main import create_app
from comborank.services.rankings.cache_store import (
    RankingKey,
    RankingObservation,
    RankingSnapshot,
)
from comborank.services.rankings.orchestrator import FetchPolicy, RankingFetchOrchestrator
from comborank.services.rankings.resilience import (
    CircuitBreaker,
    InFlightRegistry,
    ResilienceCoordinator,
    TokenBucketRateLimiter,
    reset_resilience_coordinator,
)


class _FakeSearchClient:
    async def search(self, term: str, *, market: str, platform: str) -> SearchIndexPage:
        return SearchIndexPage(term=term, market=market, total_result_count=245, app_ids=("42",))


class _MemoryStore:
    backend_name = "memory"

    def __init__(self) -> None:
        self.rows: dict[RankingKey, RankingSnapshot] = {}

    async def get_many(self, keys: Iterable[RankingKey]) -> dict[RankingKey, RankingSnapshot | None]:
        return {key: self.rows.get(key) for key in keys}

    async def put_one(self, key: RankingKey, observation: RankingObservation) -> RankingSnapshot:
        snapshot = RankingSnapshot.from_observation(
            key, observation, fetched_at=datetime.now(timezone.utc)
        )
        self.rows[key] = snapshot
        return snapshot


def _run(method: str, path: str, *, orchestrator: Any = None, **kwargs: Any) -> Any:
    original_environment = settings.environment
    settings.environment = "production"
    reset_resilience_coordinator()
    app = create_app()
    if orchestrator is not None:
        app.dependency_overrides[get_ranking_orchestrator] = lambda: orchestrator
    try:
        with TestClient(app) as client:
            response = client.request(method, path, **kwargs)
    finally:
        settings.environment = original_environment
        reset_resilience_coordinator()
    return response


def test_analyze_returns_prioritized_combos_and_stats() -> None:
    response = _run(
        "POST",
        "/api/v1/combos/analyze",
        json={
            "title": "Sleep Sounds",
            "subtitle": "White Noise",
            "keywords": "rain,relax",
            "signals": {"Sleep Sounds": {"popularity": 90, "intent": 80}},
            "limit": 10,
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert len(payload["items"]) == 10
    scores = [item["priority_score"] for item in payload["items"]]
    assert scores == sorted(scores, reverse=True)
    assert payload["items"][0]["text"] == "sleep sounds"
    assert payload["items"][0]["tier"] == "title_consecutive"
    assert payload["stats"]["limit_reached"] is True
    assert payload["stats"]["total_retained"] == 10


def test_analyze_rejects_empty_metadata() -> None:
    response = _run("POST", "/api/v1/combos/analyze", json={"title": "", "subtitle": ""})

    assert response.status_code == 422
    assert "message" in response.json()["detail"]


def test_rankings_returns_per_combo_results() -> None:
    coordinator = ResilienceCoordinator(
        limiter=TokenBucketRateLimiter(capacity=10),
        breaker=CircuitBreaker(),
        registry=InFlightRegistry(),
    )
    orchestrator = RankingFetchOrchestrator(
        search_client=_FakeSearchClient(),
        cache_store=_MemoryStore(),
        coordinator=coordinator,
        policy=FetchPolicy(),
    )

    response = _run(
        "POST",
        "/api/v1/combos/rankings",
        orchestrator=orchestrator,
        json={"app_id": "42", "combos": ["Sleep Sounds", "white noise"]},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["breaker_state"] == "closed"
    assert [result["combo"] for result in payload["results"]] == ["sleep sounds", "white noise"]
    first = payload["results"][0]
    assert first["status"] == "ok"
    assert first["source"] == "fetched"
    assert first["position"] == 1
    assert first["total_result_count"] == 245
    assert first["trend"] == "new"
    assert payload["metrics"]["fetched"] == 2


def test_rankings_rejects_invalid_app_id() -> None:
    orchestrator = RankingFetchOrchestrator(
        search_client=_FakeSearchClient(),
        cache_store=_MemoryStore(),
        coordinator=ResilienceCoordinator(
            limiter=TokenBucketRateLimiter(),
            breaker=CircuitBreaker(),
            registry=InFlightRegistry(),
        ),
        policy=FetchPolicy(),
    )

    response = _run(
        "POST",
        "/api/v1/combos/rankings",
        orchestrator=orchestrator,
        json={"app_id": "com.example.app", "combos": ["sleep sounds"]},
    )

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "INVALID_APP_ID"


def test_resilience_and_health_report_breaker_state() -> None:
    resilience = _run("GET", "/api/v1/combos/resilience")
    health = _run("GET", "/health")

    assert resilience.status_code == 200
    payload = resilience.json()
    assert payload["breaker"]["state"] == "closed"
    assert payload["rate_limiter"]["capacity"] == settings.rate_limit_capacity
    assert payload["in_flight"] == 0
    assert health.json() == {
        "status": "healthy",
        "version": settings.app_version,
        "breaker_state": "closed",
    }


def test_lifespan_shares_one_search_client_across_requests() -> None:
    original_environment = settings.environment
    settings.environment = "production"
    try:
        with TestClient(create_app()):
            shared = get_search_client()
            first = get_ranking_orchestrator()
            second = get_ranking_orchestrator()
            assert first.search_client is shared
            assert second.search_client is shared
        assert itunes_search._search_client is None
    finally:
        settings.environment = original_environment
