from fastapi import APIRouter

from underwater_jobs.api.routes import content, health, queue

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(content.router, prefix="/content-queue", tags=["content"])
