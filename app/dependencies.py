"""
Async Dependencies for runtime access, admin authentication and rate limiting
"""
import logging
import secrets

from fastapi import HTTPException, Request, status

import config
from app.runtime import GameRuntime

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60


def get_runtime(request: Request) -> GameRuntime:
    return request.app.state.runtime


async def get_admin(request: Request) -> str:
    """Verify the caller presents the admin token. Returns the reviewer name."""
    token = request.headers.get("x-admin-token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token missing."
        )
    expected = config.ADMIN_API_TOKEN
    if not expected or not secrets.compare_digest(token, expected):
        logger.warning(f"Rejected admin request from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required for this endpoint"
        )
    return request.headers.get("x-admin-name") or "admin"


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(scope: str, limit: int):
    """Build a dependency that allows ``limit`` requests per minute per client IP."""

    async def dependency(request: Request) -> None:
        runtime = get_runtime(request)
        result = await runtime.rate_limiter.allow(
            key=f"rl:{scope}:{_client_ip(request)}",
            limit=limit,
            window_seconds=RATE_WINDOW_SECONDS,
        )
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests, please try again later",
                headers={"Retry-After": str(result.retry_after_seconds)},
            )

    return dependency


general_rate_limit = rate_limit("general", config.GENERAL_RATE_LIMIT_PER_MINUTE)
withdraw_rate_limit = rate_limit("withdraw", config.WITHDRAW_RATE_LIMIT_PER_MINUTE)
