"""Combo analysis and ranking API endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from comborank.api.v1.dependencies import get_ranking_orchestrator
from comborank.core.exceptions import ValidationError
from comborank.schemas.combo import (
    AnalysisStatsResponse,
    ComboAnalysisResponse,
    ComboAnalyzeRequest,
    ComboAnalyzeResponse,
    ComboRankingResult,
    ComboRankingsRequest,
    ComboRankingsResponse,
    ResilienceStateResponse,
)
from comborank.services.combos.analysis import MetadataInput, analyze_metadata
from comborank.services.combos.priority import SignalScores
from comborank.services.rankings.orchestrator import RankingFetchOrchestrator, RankingRequest
from comborank.services.rankings.resilience import get_resilience_coordinator

logger = logging.getLogger(__name__)

router = APIRouter()

Orchestrator = Annotated[RankingFetchOrchestrator, Depends(get_ranking_orchestrator)]


def _unprocessable(e: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"message": e.message, **e.details},
    )


@router.post(
    "/analyze",
    response_model=ComboAnalyzeResponse,
    summary="Analyze metadata combos",
    description=(
        "Generate every keyword combo from title, subtitle and keywords, classify its "
        "ranking strength, score it and return the prioritized list with summary stats."
    ),
)
async def analyze_combos(request: ComboAnalyzeRequest) -> ComboAnalyzeResponse:
    """Prioritized combo analysis for one metadata set."""
    signals = {
        " ".join(text.lower().split()): SignalScores(**scores.model_dump())
        for text, scores in request.signals.items()
    }
    try:
        report = analyze_metadata(
            MetadataInput(title=request.title, subtitle=request.subtitle, keywords=request.keywords),
            signals=signals,
            extra_candidates=request.extra_candidates,
            limit=request.limit,
        )
    except ValidationError as e:
        raise _unprocessable(e) from e

    return ComboAnalyzeResponse(
        items=[ComboAnalysisResponse.model_validate(a.to_dict()) for a in report.analyses],
        stats=AnalysisStatsResponse.model_validate(report.stats.to_dict()),
    )


@router.post(
    "/rankings",
    response_model=ComboRankingsResponse,
    summary="Fetch combo rankings",
    description=(
        "Return the app's live search position for each combo. Cached snapshots younger "
        "than 24h are reused; failures are reported per combo as error entries."
    ),
)
async def fetch_combo_rankings(
    request: ComboRankingsRequest,
    orchestrator: Orchestrator,
) -> ComboRankingsResponse:
    """Cache-first ranking lookup for a batch of combos."""
    try:
        batch = await orchestrator.fetch_rankings(
            RankingRequest(
                app_id=request.app_id,
                combos=request.combos,
                market=request.market,
                platform=request.platform,
            )
        )
    except ValidationError as e:
        raise _unprocessable(e) from e

    return ComboRankingsResponse(
        app_id=batch.app_id,
        market=batch.market,
        platform=batch.platform,
        results=[ComboRankingResult.model_validate(o.to_dict()) for o in batch.results],
        metrics=batch.metrics.to_log_fields(),
        breaker_state=batch.breaker_state,
    )


@router.get(
    "/resilience",
    response_model=ResilienceStateResponse,
    summary="Resilience state",
    description="Return the shared circuit breaker, rate limiter and in-flight registry state.",
)
async def resilience_state() -> ResilienceStateResponse:
    """Shared resilience state for this process."""
    return ResilienceStateResponse.model_validate(get_resilience_coordinator().snapshot())
