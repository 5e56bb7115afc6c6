"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from pullagent.server.api import health, objects, transfers

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(transfers.router)
router.include_router(objects.router)
