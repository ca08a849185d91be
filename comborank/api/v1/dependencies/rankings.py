"""Ranking fetch dependencies."""

from comborank.config import settings
from comborank.integrations.itunes_search import get_search_client
from comborank.services.rankings.cache_store import build_ranking_cache_store
from comborank.services.rankings.orchestrator import RankingFetchOrchestrator


def get_ranking_orchestrator() -> RankingFetchOrchestrator:
    """Orchestrator bound to the process-wide search client and coordinator.

    Shared in-flight lookups can outlive the request that started them, so
    nothing they use may be scoped to a single request.
    """
    return RankingFetchOrchestrator(
        search_client=get_search_client(),
        cache_store=build_ranking_cache_store(settings),
    )
