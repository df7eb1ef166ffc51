"""API routes."""

from fastapi import APIRouter

from branchsync.api.routes import sync

api_router = APIRouter()

api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
