from fastapi import APIRouter

from pubparts.api.routes import admin, health, scrape, submissions

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(submissions.router, prefix="/api/submit", tags=["public"])
api_router.include_router(scrape.router, prefix="/api/scrape", tags=["public"])
api_router.include_router(admin.router, prefix="/api/admin", tags=["admin"])
