"""Fixed-window request rate limiting backed by Redis.

Each client (by IP) gets one counter per scope. The counter and its TTL are
written in one pipeline, the TTL only by the first request of a window; requests
beyond the allowance are answered with 429 until it expires.
"""

from fastapi import HTTPException, Request, status
from redis.exceptions import RedisError

from coursetrack.core.logging import get_logger
from coursetrack.core.middleware import get_client_ip
from coursetrack.core.redis import rate_limit_key


logger = get_logger(__name__)


class RateLimiter:
    """FastAPI dependency enforcing ``max_requests`` per ``window_seconds``.

    Limits default to the progress rate limit settings of the running app.

    Usage:
        limiter = RateLimiter("progress")

        @router.post("/start", dependencies=[Depends(limiter)])
        async def start(...): ...

    When Redis is not configured or unreachable, requests are allowed.
    """

    def __init__(
        self,
        scope: str,
        max_requests: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def __call__(self, request: Request) -> None:
        settings = request.app.state.settings
        redis_client = getattr(request.app.state, "redis", None)
        if not settings.rate_limit_enabled or redis_client is None:
            return

        max_requests = (
            settings.rate_limit_progress_requests
            if self.max_requests is None
            else self.max_requests
        )
        window_seconds = (
            settings.rate_limit_progress_window_seconds
            if self.window_seconds is None
            else self.window_seconds
        )

        key = rate_limit_key(self.scope, get_client_ip(request) or "unknown")
        try:
            # NX keeps the TTL set by the first request of the window
            pipe = redis_client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = await pipe.execute()
        except RedisError as e:
            logger.warning("rate_limit_unavailable", scope=self.scope, error=str(e))
            return

        if count > max_requests:
            logger.warning("rate_limit_exceeded", scope=self.scope, key=key)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many progress requests, please try again later",
                headers={"Retry-After": str(window_seconds)},
            )
