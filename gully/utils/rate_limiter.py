"""
Rate Limiter Configuration

Uses Redis storage when REDIS_URL is configured (multiple instances),
otherwise in-memory storage.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
import logging

from ..config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def create_limiter() -> Limiter:
    if settings.redis_url:
        logger.info("Using Redis rate limiter storage")
        return Limiter(
            key_func=get_real_client_ip,
            storage_uri=settings.redis_url,
            default_limits=["100/minute"]
        )
    return Limiter(
        key_func=get_real_client_ip,
        default_limits=["100/minute"]
    )


# Global rate limiter instance
limiter = create_limiter()


RATE_LIMITS = {
    "order_create": "20/minute",
    "slot_lock": "30/minute",
    "webhook": "300/minute",
    "payout_create": "10/minute",
    "history": "60/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
