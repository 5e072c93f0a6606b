"""API routes for CamHub."""

from fastapi import APIRouter

from camhub.api import cameras, health, storage, streams

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(cameras.router)
api_router.include_router(streams.router)
api_router.include_router(storage.router)
