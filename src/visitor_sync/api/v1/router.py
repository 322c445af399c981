"""V1 API router -- aggregates all v1 endpoint routers.

Health probes stay at the root; everything else lives under /api/v1.
"""

from __future__ import annotations

from fastapi import APIRouter

from src.visitor_sync.api.v1 import diagnostics, health, meetings

router = APIRouter()

router.include_router(health.router)
router.include_router(meetings.router, prefix="/api/v1")
router.include_router(diagnostics.router, prefix="/api/v1")
