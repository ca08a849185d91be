"""API v1 router aggregator."""

from fastapi import APIRouter

from comborank.api.v1.combos.routes import router as combos_router

api_router = APIRouter()

api_router.include_router(combos_router, prefix="/combos", tags=["Combos"])
