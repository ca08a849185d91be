"""Persisted combo ranking snapshots (one current row per lookup key)."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from comborank.models.base import Base, IdMixin, TimestampMixin

RankingTrend = Literal["up", "down", "stable", "new", "lost"]


class ComboRankingSnapshot(Base, IdMixin, TimestampMixin):
    """Latest search-index ranking of one combo for one app/market/platform.

    A fresh fetch supersedes the row in place; history is not appended here.
    """

    __tablename__ = "combo_ranking_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "app_id",
            "combo_text",
            "market",
            "platform",
            name="uq_combo_ranking_snapshots_key",
        ),
    )

    app_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    combo_text: Mapped[str] = mapped_column(String(255), nullable=False)
    market: Mapped[str] = mapped_column(String(8), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)

    # Ranking data
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_ranking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_result_count: Mapped[int] = mapped_column(Integer, nullable=False)
    trend: Mapped[str | None] = mapped_column(String(10), nullable=True)
    position_change: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Freshness
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ComboRankingSnapshot {self.app_id}:{self.combo_text}:{self.market}:{self.platform}>"
