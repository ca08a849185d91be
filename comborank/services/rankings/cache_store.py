"""Ranking snapshot cache: one current row per (app, combo, market, platform)."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comborank.config import Settings
from comborank.core.db_kernel import DbKernelError, db_read, db_write
from comborank.core.exceptions import CacheStoreError
from comborank.models.base import generate_row_id
from comborank.models.ranking import ComboRankingSnapshot, RankingTrend

logger = logging.getLogger(__name__)

SNAPSHOT_TTL = timedelta(hours=24)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RankingKey(NamedTuple):
    app_id: str
    combo_text: str
    market: str
    platform: str

    @property
    def request_key(self) -> str:
        return f"{self.app_id}:{self.combo_text}:{self.market}:{self.platform}"


@dataclass(frozen=True, slots=True)
class RankingObservation:
    """What one search-index lookup reported for a combo."""

    position: int | None
    total_result_count: int

    def __post_init__(self) -> None:
        if self.total_result_count < 0:
            raise ValueError("total_result_count must be >= 0")
        if self.position is not None and self.position < 1:
            raise ValueError("position is 1-based")

    @property
    def is_ranking(self) -> bool:
        return self.position is not None


def compute_trend(
    position: int | None,
    previous_position: int | None,
    *,
    had_previous: bool,
) -> tuple[RankingTrend | None, int | None]:
    """Trend label and position change (positive = moved up) against the prior snapshot."""
    if not had_previous or previous_position is None:
        return ("new" if position is not None else None), None
    if position is None:
        return "lost", None

    change = previous_position - position
    if change > 0:
        return "up", change
    if change < 0:
        return "down", change
    return "stable", 0


@dataclass(frozen=True, slots=True)
class RankingSnapshot:
    key: RankingKey
    position: int | None
    total_result_count: int
    is_ranking: bool
    trend: RankingTrend | None
    position_change: int | None
    fetched_at: datetime
    ttl_expires_at: datetime
    persisted: bool = True

    @classmethod
    def from_observation(
        cls,
        key: RankingKey,
        observation: RankingObservation,
        *,
        fetched_at: datetime,
        previous_position: int | None = None,
        had_previous: bool = False,
    ) -> RankingSnapshot:
        trend, change = compute_trend(
            observation.position,
            previous_position,
            had_previous=had_previous,
        )
        return cls(
            key=key,
            position=observation.position,
            total_result_count=observation.total_result_count,
            is_ranking=observation.is_ranking,
            trend=trend,
            position_change=change,
            fetched_at=fetched_at,
            ttl_expires_at=fetched_at + SNAPSHOT_TTL,
        )

    def is_fresh(self, now: datetime) -> bool:
        return _as_utc(self.ttl_expires_at) > _as_utc(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "app_id": self.key.app_id,
            "combo_text": self.key.combo_text,
            "market": self.key.market,
            "platform": self.key.platform,
            "position": self.position,
            "total_result_count": self.total_result_count,
            "is_ranking": self.is_ranking,
            "trend": self.trend,
            "position_change": self.position_change,
            "fetched_at": self.fetched_at.isoformat(),
            "ttl_expires_at": self.ttl_expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RankingSnapshot:
        return cls(
            key=RankingKey(data["app_id"], data["combo_text"], data["market"], data["platform"]),
            position=data.get("position"),
            total_result_count=int(data["total_result_count"]),
            is_ranking=bool(data.get("is_ranking")),
            trend=data.get("trend"),
            position_change=data.get("position_change"),
            fetched_at=_as_utc(datetime.fromisoformat(data["fetched_at"])),
            ttl_expires_at=_as_utc(datetime.fromisoformat(data["ttl_expires_at"])),
        )

    def unpersisted(self) -> RankingSnapshot:
        return replace(self, persisted=False)


class RankingCacheStore(Protocol):
    backend_name: str

    async def get_many(
        self,
        keys: Iterable[RankingKey],
    ) -> dict[RankingKey, RankingSnapshot | None]:
        """Batched lookup; missing or expired keys map to None."""
        ...

    async def put_one(self, key: RankingKey, observation: RankingObservation) -> RankingSnapshot:
        """Write a fresh snapshot (trend derived from the prior one) atomically."""
        ...


def _row_to_snapshot(row: ComboRankingSnapshot) -> RankingSnapshot:
    return RankingSnapshot(
        key=RankingKey(row.app_id, row.combo_text, row.market, row.platform),
        position=row.position,
        total_result_count=row.total_result_count,
        is_ranking=row.is_ranking,
        trend=row.trend,  # type: ignore[arg-type]
        position_change=row.position_change,
        fetched_at=_as_utc(row.fetched_at),
        ttl_expires_at=_as_utc(row.ttl_expires_at),
    )


def _key_filter(key: RankingKey) -> Any:
    return and_(
        ComboRankingSnapshot.app_id == key.app_id,
        ComboRankingSnapshot.combo_text == key.combo_text,
        ComboRankingSnapshot.market == key.market,
        ComboRankingSnapshot.platform == key.platform,
    )


class DatabaseRankingCacheStore:
    """SQLAlchemy-backed store over the combo_ranking_snapshots table."""

    backend_name = "database"

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session_maker = session_maker
        self._clock = clock

    async def get_many(
        self,
        keys: Iterable[RankingKey],
    ) -> dict[RankingKey, RankingSnapshot | None]:
        unique = list(dict.fromkeys(keys))
        if not unique:
            return {}

        # One statement for the whole batch: group combo texts per scope.
        grouped: dict[tuple[str, str, str], list[str]] = {}
        for key in unique:
            grouped.setdefault((key.app_id, key.market, key.platform), []).append(key.combo_text)
        clauses = [
            and_(
                ComboRankingSnapshot.app_id == app_id,
                ComboRankingSnapshot.market == market,
                ComboRankingSnapshot.platform == platform,
                ComboRankingSnapshot.combo_text.in_(texts),
            )
            for (app_id, market, platform), texts in grouped.items()
        ]

        async def _load(session: AsyncSession) -> list[ComboRankingSnapshot]:
            result = await session.execute(select(ComboRankingSnapshot).where(or_(*clauses)))
            return list(result.scalars().all())

        try:
            rows = await db_read(
                _load,
                operation_name="ranking_cache_get_many",
                session_maker=self._session_maker,
            )
        except DbKernelError as e:
            raise CacheStoreError(self.backend_name, str(e)) from e

        now = self._clock()
        found: dict[RankingKey, RankingSnapshot | None] = {key: None for key in unique}
        for row in rows:
            snapshot = _row_to_snapshot(row)
            if snapshot.key in found and snapshot.is_fresh(now):
                found[snapshot.key] = snapshot
        return found

    async def put_one(self, key: RankingKey, observation: RankingObservation) -> RankingSnapshot:
        async def _write(session: AsyncSession) -> RankingSnapshot:
            previous = (
                await session.execute(
                    select(ComboRankingSnapshot.position)
                    .where(_key_filter(key))
                    .with_for_update()
                )
            ).first()
            snapshot = RankingSnapshot.from_observation(
                key,
                observation,
                fetched_at=self._clock(),
                previous_position=previous.position if previous is not None else None,
                had_previous=previous is not None,
            )

            values = {
                "position": snapshot.position,
                "is_ranking": snapshot.is_ranking,
                "total_result_count": snapshot.total_result_count,
                "trend": snapshot.trend,
                "position_change": snapshot.position_change,
                "fetched_at": snapshot.fetched_at,
                "ttl_expires_at": snapshot.ttl_expires_at,
            }
            dialect = session.get_bind().dialect.name
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            statement = insert(ComboRankingSnapshot).values(
                id=generate_row_id(),
                app_id=key.app_id,
                combo_text=key.combo_text,
                market=key.market,
                platform=key.platform,
                **values,
            )
            statement = statement.on_conflict_do_update(
                index_elements=["app_id", "combo_text", "market", "platform"],
                set_={**values, "updated_at": func.now()},
            )
            await session.execute(statement)
            return snapshot

        try:
            return await db_write(
                _write,
                operation_name="ranking_cache_put_one",
                session_maker=self._session_maker,
            )
        except DbKernelError as e:
            raise CacheStoreError(self.backend_name, str(e)) from e


class RedisRankingCacheStore:
    """Redis-backed store; keys expire with the snapshot TTL."""

    backend_name = "redis"

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "combo-rank",
        clock: Clock = utcnow,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock

    def _redis_key(self, key: RankingKey) -> str:
        return f"{self._prefix}:{key.request_key}"

    def _decode(self, redis_key: str, raw: str | bytes | None) -> RankingSnapshot | None:
        """Stored snapshot, or None when absent or not decodable (treated as a miss)."""
        if not raw:
            return None
        try:
            return RankingSnapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                "Discarding undecodable ranking cache entry",
                extra={"redis_key": redis_key, "error": repr(e)},
            )
            return None

    async def get_many(
        self,
        keys: Iterable[RankingKey],
    ) -> dict[RankingKey, RankingSnapshot | None]:
        unique = list(dict.fromkeys(keys))
        if not unique:
            return {}

        try:
            raw_values = await self._client.mget([self._redis_key(key) for key in unique])
        except RedisError as e:
            raise CacheStoreError(self.backend_name, str(e)) from e

        now = self._clock()
        found: dict[RankingKey, RankingSnapshot | None] = {}
        for key, raw in zip(unique, raw_values):
            snapshot = self._decode(self._redis_key(key), raw)
            found[key] = snapshot if snapshot is not None and snapshot.is_fresh(now) else None
        return found

    async def put_one(self, key: RankingKey, observation: RankingObservation) -> RankingSnapshot:
        redis_key = self._redis_key(key)
        ttl_seconds = int(SNAPSHOT_TTL.total_seconds())

        async def _apply(pipe: Any) -> RankingSnapshot:
            previous = self._decode(redis_key, await pipe.get(redis_key))
            snapshot = RankingSnapshot.from_observation(
                key,
                observation,
                fetched_at=self._clock(),
                previous_position=previous.position if previous is not None else None,
                had_previous=previous is not None,
            )
            pipe.multi()
            pipe.set(redis_key, json.dumps(snapshot.to_dict()), ex=ttl_seconds)
            return snapshot

        try:
            return await self._client.transaction(_apply, redis_key, value_from_callable=True)
        except RedisError as e:
            raise CacheStoreError(self.backend_name, str(e)) from e


def build_ranking_cache_store(config: Settings) -> RankingCacheStore:
    """Store for the configured backend, bound to the process-wide connections."""
    if config.ranking_cache_backend == "redis":
        from comborank.core.redis import get_redis_client

        return RedisRankingCacheStore(get_redis_client(), prefix=config.ranking_cache_key_prefix)

    from comborank.core.database import async_session_maker

    return DatabaseRankingCacheStore(async_session_maker)
