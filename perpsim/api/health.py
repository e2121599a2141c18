from __future__ import annotations

import logging

from fastapi import APIRouter

from config import settings
from perpsim.data.database import table_counts
from perpsim.signals.signal_manager import STRATEGIES

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health() -> dict[str, object]:
    try:
        rows = table_counts()
    except Exception as exc:
        logger.warning("Health check database query failed: %s", exc)
        rows = None
    return {
        "status": "ok" if rows is not None else "degraded",
        "app": settings.app_name,
        "database": "ok" if rows is not None else "unavailable",
        "rows": rows,
        "strategies": sorted(STRATEGIES),
    }
