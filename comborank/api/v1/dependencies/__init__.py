"""Reusable API dependencies shared across v1 routes."""

from comborank.api.v1.dependencies.rankings import get_ranking_orchestrator

__all__ = ["get_ranking_orchestrator"]
