"""Resilient batch fetch of live combo rankings.

Per request: validate, one batched cache lookup, then every miss runs through
the same fixed pipeline with bounded concurrency:

    in-flight dedup -> rate limit -> circuit breaker -> retry/timeout -> search

The shared in-flight task also writes the snapshot back to the cache, so a
caller that gives up mid-flight still leaves a populated cache behind. A
lookup still waiting for a rate-limit token is abandoned once no caller
awaits it, so a cancelled request dispatches no new calls.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from comborank.config import Settings, settings
from comborank.core.exceptions import (
    BreakerOpenError,
    CacheStoreError,
    ComboRankError,
    ExternalAPIError,
    FetchFailedError,
    RateLimitExceededError,
    ValidationError,
)
from comborank.core.logging import log_event
from comborank.integrations.itunes_search import API_NAME, SearchIndexClient
from comborank.services.combos.analysis import (
    ComboAnalysisReport,
    MetadataInput,
    analyze_metadata,
)
from comborank.services.combos.priority import (
    SignalScores,
    opportunity_from_ranking,
    trend_from_ranking,
)
from comborank.services.rankings.cache_store import (
    RankingCacheStore,
    RankingKey,
    RankingObservation,
    RankingSnapshot,
    utcnow,
)
from comborank.services.rankings.metrics import FetchMetrics
from comborank.services.rankings.resilience import (
    ResilienceCoordinator,
    get_resilience_coordinator,
    retry_with_backoff,
)

logger = logging.getLogger(__name__)

_NUMERIC_APP_ID = re.compile(r"^\d+$")

OutcomeSource = Literal["cache", "fetched", "shared"]


@dataclass(frozen=True, slots=True)
class FetchPolicy:
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    timeout_seconds: float = 10.0
    max_concurrency: int = 3
    max_combos_per_request: int = 100
    max_combo_chars: int = 100
    supported_markets: tuple[str, ...] = ("us",)
    supported_platforms: tuple[str, ...] = ("ios",)

    @classmethod
    def from_settings(cls, config: Settings) -> FetchPolicy:
        return cls(
            retry_attempts=config.fetch_retry_attempts,
            retry_base_delay_seconds=config.fetch_retry_base_delay_seconds,
            retry_max_delay_seconds=config.fetch_retry_max_delay_seconds,
            timeout_seconds=config.fetch_timeout_seconds,
            max_concurrency=config.fetch_max_concurrency,
            max_combos_per_request=config.max_combos_per_request,
            max_combo_chars=config.max_combo_chars,
            supported_markets=tuple(market.lower() for market in config.supported_markets),
            supported_platforms=tuple(platform.lower() for platform in config.supported_platforms),
        )


@dataclass(frozen=True, slots=True)
class RankingRequest:
    app_id: str
    combos: Sequence[str]
    market: str = "us"
    platform: str = "ios"


@dataclass(frozen=True, slots=True)
class RankingError:
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True, slots=True)
class RankingOutcome:
    """Either a snapshot (possibly not ranking) or an explicit error, never both."""

    combo_text: str
    snapshot: RankingSnapshot | None = None
    error: RankingError | None = None
    source: OutcomeSource | None = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None

    def to_dict(self) -> dict[str, Any]:
        if self.snapshot is None:
            return {
                "combo": self.combo_text,
                "status": "error",
                "error": self.error.to_dict() if self.error else None,
            }
        return {
            "combo": self.combo_text,
            "status": "ok",
            "source": self.source,
            "persisted": self.snapshot.persisted,
            **self.snapshot.to_dict(),
        }


@dataclass(slots=True)
class RankingBatchResult:
    app_id: str
    market: str
    platform: str
    results: list[RankingOutcome]
    metrics: FetchMetrics
    breaker_state: str

    def outcome_for(self, combo_text: str) -> RankingOutcome | None:
        for outcome in self.results:
            if outcome.combo_text == combo_text:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "app_id": self.app_id,
            "market": self.market,
            "platform": self.platform,
            "results": [outcome.to_dict() for outcome in self.results],
            "metrics": self.metrics.to_log_fields(),
            "breaker_state": self.breaker_state,
        }


def normalize_combo_text(text: str) -> str:
    return " ".join(text.lower().split())


def validate_ranking_request(request: RankingRequest, policy: FetchPolicy) -> RankingRequest:
    """Reject bad input; return the request with normalized, de-duplicated combos."""
    app_id = (request.app_id or "").strip()
    market = (request.market or "").strip().lower()
    platform = (request.platform or "").strip().lower()

    if not app_id:
        raise ValidationError("app_id is required", details={"code": "INVALID_APP_ID"})
    if platform not in policy.supported_platforms:
        raise ValidationError(
            f"Platform '{request.platform}' not supported",
            details={"code": "UNSUPPORTED_PLATFORM", "supported": list(policy.supported_platforms)},
        )
    if platform == "ios" and not _NUMERIC_APP_ID.match(app_id):
        raise ValidationError(
            f"Invalid app_id format. Must be numeric. Received: {app_id!r}",
            details={"code": "INVALID_APP_ID"},
        )
    if market not in policy.supported_markets:
        raise ValidationError(
            f"Market '{request.market}' not supported",
            details={"code": "UNSUPPORTED_MARKET", "supported": list(policy.supported_markets)},
        )

    combos = list(request.combos or [])
    if not combos:
        raise ValidationError("At least one combo is required", details={"code": "INVALID_REQUEST"})
    if len(combos) > policy.max_combos_per_request:
        raise ValidationError(
            f"Maximum {policy.max_combos_per_request} combos allowed per request. "
            f"Received: {len(combos)}",
            details={"code": "LIMIT_EXCEEDED"},
        )

    normalized: list[str] = []
    for combo in combos:
        if not isinstance(combo, str) or not combo.strip():
            raise ValidationError(
                "Each combo must be a non-empty string",
                details={"code": "INVALID_COMBO"},
            )
        if len(combo) > policy.max_combo_chars:
            raise ValidationError(
                f"Combo exceeds maximum length of {policy.max_combo_chars} characters: "
                f"{combo[:50]!r}",
                details={"code": "COMBO_TOO_LONG"},
            )
        normalized.append(normalize_combo_text(combo))

    return RankingRequest(
        app_id=app_id,
        combos=tuple(dict.fromkeys(normalized)),
        market=market,
        platform=platform,
    )


def error_code_for(exc: ComboRankError) -> str:
    if isinstance(exc, BreakerOpenError):
        return "BREAKER_OPEN"
    if isinstance(exc, RateLimitExceededError):
        return "RATE_LIMITED"
    if isinstance(exc, FetchFailedError):
        return "FETCH_FAILED"
    if isinstance(exc, ExternalAPIError):
        return "UPSTREAM_ERROR"
    if isinstance(exc, CacheStoreError):
        return "CACHE_ERROR"
    return "INTERNAL_ERROR"


class RankingFetchOrchestrator:
    """Cache-first ranking fetcher sharing one ResilienceCoordinator per process."""

    def __init__(
        self,
        *,
        search_client: SearchIndexClient,
        cache_store: RankingCacheStore,
        coordinator: ResilienceCoordinator | None = None,
        policy: FetchPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._search_client = search_client
        self._cache_store = cache_store
        self._coordinator = coordinator or get_resilience_coordinator()
        self._policy = policy or FetchPolicy.from_settings(settings)
        self._sleep = sleep

    @property
    def search_client(self) -> SearchIndexClient:
        return self._search_client

    @property
    def coordinator(self) -> ResilienceCoordinator:
        return self._coordinator

    @property
    def policy(self) -> FetchPolicy:
        return self._policy

    async def fetch_rankings(self, request: RankingRequest) -> RankingBatchResult:
        request = validate_ranking_request(request, self._policy)
        keys = [
            RankingKey(request.app_id, text, request.market, request.platform)
            for text in request.combos
        ]
        metrics = FetchMetrics(total=len(keys))
        log_event(
            logger,
            "request_started",
            app_id=request.app_id,
            market=request.market,
            platform=request.platform,
            combos_count=len(keys),
        )

        with metrics.phase("cache_lookup"):
            try:
                cached = await self._cache_store.get_many(keys)
            except CacheStoreError as e:
                log_event(
                    logger,
                    "cache_check_failed",
                    level=logging.WARNING,
                    backend=self._cache_store.backend_name,
                    error=e.message,
                )
                cached = {}

        outcomes: dict[RankingKey, RankingOutcome] = {}
        misses: list[RankingKey] = []
        for key in keys:
            snapshot = cached.get(key)
            if snapshot is None:
                misses.append(key)
                continue
            outcomes[key] = RankingOutcome(key.combo_text, snapshot=snapshot, source="cache")
        metrics.cached = len(outcomes)
        log_event(logger, "cache_check_complete", cached=metrics.cached, misses=len(misses))

        semaphore = asyncio.Semaphore(self._policy.max_concurrency)

        async def _bounded(key: RankingKey) -> RankingOutcome:
            async with semaphore:
                return await self._fetch_one(key, metrics)

        with metrics.phase("fetch"):
            fetched = await asyncio.gather(*(_bounded(key) for key in misses))
        outcomes.update(zip(misses, fetched))

        results = [outcomes[key] for key in keys]
        metrics.ranking = sum(
            1 for outcome in results if outcome.snapshot is not None and outcome.snapshot.is_ranking
        )
        breaker_state = self._coordinator.breaker.state.value
        log_event(
            logger,
            "request_completed",
            app_id=request.app_id,
            breaker_state=breaker_state,
            **metrics.to_log_fields(),
        )
        return RankingBatchResult(
            app_id=request.app_id,
            market=request.market,
            platform=request.platform,
            results=results,
            metrics=metrics,
            breaker_state=breaker_state,
        )

    async def _fetch_one(self, key: RankingKey, metrics: FetchMetrics) -> RankingOutcome:
        try:
            snapshot, joined = await self._coordinator.registry.run(
                key.request_key,
                lambda: self._lookup_and_store(key),
            )
        except ComboRankError as e:
            code = error_code_for(e)
            metrics.record_error(code)
            log_event(
                logger,
                "fetch_ranking_failed",
                level=logging.WARNING,
                combo=key.combo_text,
                code=code,
                error=e.message,
            )
            return RankingOutcome(key.combo_text, error=RankingError(code, e.message))
        except Exception as e:
            metrics.record_error("INTERNAL_ERROR")
            logger.exception(
                "Unexpected ranking fetch failure",
                extra={"combo": key.combo_text, "request_key": key.request_key},
            )
            return RankingOutcome(
                key.combo_text,
                error=RankingError("INTERNAL_ERROR", f"{type(e).__name__}: {e}"),
            )

        metrics.fetched += 1
        if joined:
            metrics.deduplicated += 1
            log_event(logger, "request_deduplicated", request_key=key.request_key)
        if not snapshot.persisted:
            metrics.unpersisted += 1
        return RankingOutcome(
            key.combo_text,
            snapshot=snapshot,
            source="shared" if joined else "fetched",
        )

    async def _lookup_and_store(self, key: RankingKey) -> RankingSnapshot:
        limiter = self._coordinator.limiter
        registry = self._coordinator.registry
        policy = self._policy

        async def _acquire_for_dispatch(_attempt: int = 1) -> None:
            # Only dispatch while some caller still awaits this key.
            await limiter.acquire()
            registry.ensure_awaited(key.request_key)

        async def _search() -> Any:
            return await retry_with_backoff(
                lambda: self._search_client.search(
                    key.combo_text,
                    market=key.market,
                    platform=key.platform,
                ),
                api_name=API_NAME,
                attempts=policy.retry_attempts,
                base_delay_seconds=policy.retry_base_delay_seconds,
                max_delay_seconds=policy.retry_max_delay_seconds,
                timeout_seconds=policy.timeout_seconds,
                before_retry=_acquire_for_dispatch,
                sleep=self._sleep,
            )

        await _acquire_for_dispatch()
        page = await self._coordinator.breaker.call(_search)
        observation = RankingObservation(
            position=page.position_of(key.app_id),
            total_result_count=page.total_result_count,
        )

        try:
            return await self._cache_store.put_one(key, observation)
        except CacheStoreError as e:
            logger.warning(
                "Ranking cache write failed; returning unpersisted snapshot",
                extra={"request_key": key.request_key, "error": e.message},
            )
            return RankingSnapshot.from_observation(key, observation, fetched_at=utcnow()).unpersisted()


@dataclass(slots=True)
class MetadataRankingRefresh:
    """Analysis rescored with live ranking signals for the fetched working set."""

    report: ComboAnalysisReport
    rankings: RankingBatchResult
    working_set: list[str] = field(default_factory=list)


async def refresh_metadata_rankings(
    metadata: MetadataInput,
    orchestrator: RankingFetchOrchestrator,
    *,
    app_id: str,
    market: str = "us",
    platform: str = "ios",
    signals: Mapping[str, SignalScores] | None = None,
    working_set: int | None = None,
    extra_candidates: Sequence[str] = (),
) -> MetadataRankingRefresh:
    """Analyse metadata, fetch rankings for the top combos, then rescore with them.

    Opportunity and trend come from the fetched snapshots; popularity and
    intent stay as supplied.
    """
    signals = dict(signals or {})
    size = min(
        working_set or settings.fetch_working_set_size,
        orchestrator.policy.max_combos_per_request,
    )

    initial = analyze_metadata(metadata, signals=signals, extra_candidates=extra_candidates)
    top = [analysis.text for analysis in initial.analyses[:size]]
    rankings = await orchestrator.fetch_rankings(
        RankingRequest(app_id=app_id, combos=top, market=market, platform=platform)
    )

    for outcome in rankings.results:
        if outcome.snapshot is None:
            continue
        base = signals.get(outcome.combo_text, SignalScores())
        signals[outcome.combo_text] = replace(
            base,
            opportunity=opportunity_from_ranking(outcome.snapshot),
            trend=trend_from_ranking(outcome.snapshot),
        )

    report = analyze_metadata(metadata, signals=signals, extra_candidates=extra_candidates)
    return MetadataRankingRefresh(report=report, rankings=rankings, working_set=top)
