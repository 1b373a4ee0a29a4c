from __future__ import annotations

import datetime as dt
import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from sunrise.api.deps import get_db, get_settings
from sunrise.core.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])

PROCESS_STARTED_AT = time.monotonic()
DEGRADED_LATENCY_MS = 500


def uptime_s() -> int:
    return int(time.monotonic() - PROCESS_STARTED_AT)


def check_database(db: Session) -> dict:
    start = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", extra={"error": e})
        return {"status": "outage", "connected": False, "latency": None}
    latency = int((time.perf_counter() - start) * 1000)
    return {
        "status": "degraded" if latency > DEGRADED_LATENCY_MS else "operational",
        "connected": True,
        "latency": latency,
    }


def _memory_mb() -> dict:
    # Unix only; peak RSS in MB (ru_maxrss is KiB on Linux).
    import resource

    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {"maxRss": round(usage.ru_maxrss / 1024, 1)}


@router.get("/health")
def health(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    timestamp = dt.datetime.now(dt.timezone.utc).isoformat()
    try:
        database = check_database(db)
        body = {
            "status": "ok" if database["connected"] else "error",
            "version": settings.app_version,
            "uptime": uptime_s(),
            "timestamp": timestamp,
            "services": {"database": database},
        }
        if settings.health_include_memory:
            body["memory"] = _memory_mb()
        return JSONResponse(body, status_code=200 if database["connected"] else 503)
    except Exception as e:
        logger.error("Health check failed", extra={"error": e})
        return JSONResponse(
            {
                "status": "error",
                "version": settings.app_version,
                "uptime": uptime_s(),
                "timestamp": timestamp,
                "error": "Health check failed",
                "services": {"database": {"status": "outage", "connected": False, "latency": None}},
            },
            status_code=503,
        )
