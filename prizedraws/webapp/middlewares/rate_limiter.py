import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional, Tuple
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import logging

# forget idle clients every this many requests
CLEANUP_EVERY = 500


class RateLimiter:
    """
    Sliding-window request counter, one timestamp queue per client.
    """

    def __init__(self, window_size: int = 60, max_requests: int = 30):
        """
        Args:
            window_size (int): Window length in seconds
            max_requests (int): Requests allowed per window
        """
        self.window_size = window_size
        self.max_requests = max_requests
        self.clients: Dict[str, Deque[float]] = defaultdict(deque)

    def is_allowed(self, client_id: str, now: Optional[float] = None) -> Tuple[bool, Dict]:
        """
        Records a request for client_id if the window still has room.

        Returns:
            Tuple[bool, Dict]: (allowed, {"limit", "remaining", "reset", "retry_after"})
        """
        now = time.time() if now is None else now
        window = self.clients[client_id]
        while window and now - window[0] >= self.window_size:
            window.popleft()

        if len(window) >= self.max_requests:
            reset = window[0] + self.window_size
            return False, {
                "limit": self.max_requests,
                "remaining": 0,
                "reset": reset,
                "retry_after": max(1, int(reset - now + 0.999)),
            }

        window.append(now)
        return True, {
            "limit": self.max_requests,
            "remaining": self.max_requests - len(window),
            "reset": window[0] + self.window_size,
            "retry_after": 0,
        }

    def cleanup(self, max_idle_time: int = 3600, now: Optional[float] = None) -> int:
        """Forgets clients idle for longer than max_idle_time seconds."""
        now = time.time() if now is None else now
        idle = [client_id for client_id, window in self.clients.items()
                if not window or now - window[-1] > max_idle_time]
        for client_id in idle:
            del self.clients[client_id]
        return len(idle)


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Rate limits the public read endpoints. Each path prefix in path_limits gets
    its own limiter; the longest matching prefix wins.
    """

    def __init__(
        self,
        app,
        default_window_size: int = 60,
        default_max_requests: int = 30,
        exclude_paths: List[str] = None,
        path_limits: Dict[str, Tuple[int, int]] = None
    ):
        """
        Args:
            app: FastAPI application
            default_window_size (int): Default window in seconds
            default_max_requests (int): Default requests per window
            exclude_paths (List[str], optional): Path prefixes that are never limited
            path_limits (Dict[str, Tuple[int, int]], optional): {prefix: (window_seconds, max_requests)}
        """
        super().__init__(app)

        self.exclude_paths = exclude_paths or ["/docs", "/redoc", "/openapi.json"]
        self.default_limiter = RateLimiter(default_window_size, default_max_requests)
        self.path_limiters = sorted(
            ((prefix, RateLimiter(window, max_req)) for prefix, (window, max_req) in (path_limits or {}).items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        self.request_count = 0

    async def dispatch(self, request: Request, call_next: Callable):
        path = request.url.path
        if any(path.startswith(prefix) for prefix in self.exclude_paths):
            return await call_next(request)

        limiter = self._get_limiter_for_path(path)
        client_id = self._get_client_id(request)
        allowed, limit_info = limiter.is_allowed(client_id)
        self._maybe_cleanup()

        headers = {
            "X-RateLimit-Limit": str(limit_info["limit"]),
            "X-RateLimit-Remaining": str(limit_info["remaining"]),
            "X-RateLimit-Reset": str(int(limit_info["reset"])),
        }

        if not allowed:
            logging.warning(f"Rate limit exceeded for {client_id} on {path}")
            headers["Retry-After"] = str(limit_info["retry_after"])
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": f"Too many requests. Retry in {limit_info['retry_after']} seconds."},
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

    def _maybe_cleanup(self) -> None:
        self.request_count += 1
        if self.request_count % CLEANUP_EVERY:
            return
        removed = self.default_limiter.cleanup()
        for _, limiter in self.path_limiters:
            removed += limiter.cleanup()
        if removed:
            logging.debug(f"Rate limiter forgot {removed} idle clients")

    def _get_client_id(self, request: Request) -> str:
        # behind the proxy the first X-Forwarded-For hop is the caller
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return f"ip:{forwarded_for.split(',')[0].strip()}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    def _get_limiter_for_path(self, path: str) -> RateLimiter:
        for prefix, limiter in self.path_limiters:
            if path.startswith(prefix):
                return limiter
        return self.default_limiter
