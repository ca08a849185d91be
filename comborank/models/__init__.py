"""SQLAlchemy database models."""
from comborank.models.base import Base
from comborank.models.ranking import ComboRankingSnapshot

__all__ = [
    "Base",
    "ComboRankingSnapshot",
]
