import asyncio
import time
from typing import Callable, List
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import logging

from prizedraws.config import settings
from prizedraws.utils.draw_transitions import run_sweep_once


class DrawTransitionMiddleware(BaseHTTPMiddleware):
    """
    Runs the draw transition sweep on incoming requests, at most once every
    check_interval seconds per process. Sweep failures are logged and never
    affect the request.
    """

    def __init__(
        self,
        app,
        check_interval: int = None,
        session_factory=None,
        exclude_paths: List[str] = None
    ):
        super().__init__(app)
        self.check_interval = check_interval if check_interval is not None else settings.TRANSITION_CHECK_INTERVAL
        self.session_factory = session_factory
        self.exclude_paths = exclude_paths or ["/docs", "/redoc", "/openapi.json", "/api/cron/"]
        self.last_check = None
        self.lock = asyncio.Lock()

    async def dispatch(self, request: Request, call_next: Callable):
        if not any(request.url.path.startswith(path) for path in self.exclude_paths):
            await self._maybe_sweep(request)
        return await call_next(request)

    async def _maybe_sweep(self, request: Request) -> None:
        if not self._due():
            return
        if self.lock.locked():
            return

        async with self.lock:
            if not self._due():
                return
            self.last_check = time.monotonic()
            try:
                summary = await run_sweep_once(self._get_session_factory(request))
                logging.debug(f"Request-triggered transition sweep: {summary}")
            except Exception as e:
                logging.error(f"Request-triggered transition sweep failed: {e}")

    def _due(self) -> bool:
        return self.last_check is None or time.monotonic() - self.last_check >= self.check_interval

    def _get_session_factory(self, request: Request):
        if self.session_factory is not None:
            return self.session_factory
        return getattr(request.app.state, "session_factory", None)
