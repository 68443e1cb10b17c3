"""
Health Check Endpoints

- /health/live - Liveness check (is process running)
- /health/ready - Readiness check (database reachable)
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
import time

from .. import __version__
from ..config import settings
from ..database import get_db

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": db.get_bind().dialect.name,
        }
    except SQLAlchemyError as e:
        return {"status": "down", "error": str(e)[:100]}


@router.get("/live")
async def liveness_check():
    return {
        "status": "alive",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe - is the service ready to accept traffic?
    Checks database connectivity and reports whether the gateway is configured.
    """
    db_health = get_db_health(db)
    body = {
        "status": "ready" if db_health["status"] == "up" else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": db_health,
            "razorpay": {"status": "configured" if settings.has_razorpay_credentials else "not_configured"},
            "worker": {"enabled": settings.worker_enabled},
        },
    }
    return JSONResponse(status_code=200 if db_health["status"] == "up" else 503, content=body)
