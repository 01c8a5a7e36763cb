from fastapi import APIRouter

from harvester.api.routes import cycles, health, status

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(status.router, tags=["status"])
api_router.include_router(cycles.router, prefix="/cycles", tags=["cycles"])
