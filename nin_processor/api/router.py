from fastapi import APIRouter

from nin_processor.api.routes import health, process

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(process.router, prefix="/process", tags=["processor"])
