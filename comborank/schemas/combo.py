"""Combo analysis and ranking schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class SignalScoresInput(BaseModel):
    """External 0-100 signals for one combo."""

    popularity: float = Field(0.0, ge=0, le=100)
    opportunity: float = Field(0.0, ge=0, le=100)
    trend: float = Field(0.0, ge=0, le=100)
    intent: float = Field(0.0, ge=0, le=100)


class ComboAnalyzeRequest(BaseModel):
    """Metadata to analyse, with optional per-combo signals keyed by combo text."""

    title: str = ""
    subtitle: str = ""
    keywords: str = ""
    signals: dict[str, SignalScoresInput] = Field(default_factory=dict)
    extra_candidates: list[str] = Field(default_factory=list, max_length=100)
    limit: int | None = Field(None, ge=1, le=500)


class ComboAnalysisResponse(BaseModel):
    """One scored combo."""

    text: str
    words: list[str]
    length: int
    origin_fields: list[str]
    consecutive_fields: list[str]
    tier: str
    strength_points: int
    can_strengthen: bool
    suggestion: str | None
    popularity_score: float
    opportunity_score: float
    trend_score: float
    intent_score: float
    priority_score: float
    priority_tier: Literal["high", "medium", "low"]


class AnalysisStatsResponse(BaseModel):
    total_generated: int
    total_retained: int
    limit_reached: bool
    generation_ceiling_reached: bool
    per_tier_counts: dict[str, int]
    can_strengthen_count: int


class ComboAnalyzeResponse(BaseModel):
    items: list[ComboAnalysisResponse]
    stats: AnalysisStatsResponse


class ComboRankingsRequest(BaseModel):
    """Live ranking lookup for one app."""

    app_id: str
    combos: list[str]
    market: str = "us"
    platform: str = "ios"


class RankingErrorResponse(BaseModel):
    code: str
    message: str


class ComboRankingResult(BaseModel):
    """A snapshot (position may be null when not ranking) or an explicit error."""

    combo: str
    status: Literal["ok", "error"]
    source: Literal["cache", "fetched", "shared"] | None = None
    persisted: bool | None = None
    position: int | None = None
    total_result_count: int | None = None
    is_ranking: bool | None = None
    trend: str | None = None
    position_change: int | None = None
    fetched_at: datetime | None = None
    ttl_expires_at: datetime | None = None
    error: RankingErrorResponse | None = None


class ComboRankingsResponse(BaseModel):
    app_id: str
    market: str
    platform: str
    results: list[ComboRankingResult]
    metrics: dict[str, object]
    breaker_state: str


class ResilienceStateResponse(BaseModel):
    """Current shared breaker, limiter and in-flight state."""

    breaker: dict[str, object]
    rate_limiter: dict[str, object]
    in_flight: int
