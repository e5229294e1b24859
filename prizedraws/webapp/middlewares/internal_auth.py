import hmac
from typing import Callable, List, Optional
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from prizedraws.config import settings
import logging

logger = logging.getLogger(__name__)


class InternalAuthMiddleware(BaseHTTPMiddleware):
    """
    Guards internal endpoints (payment credits, admin, cron) with a shared Bearer secret.
    Cron paths additionally accept CRON_SECRET.
    """

    def __init__(
        self,
        app,
        secret: str = None,
        cron_secret: Optional[str] = None,
        protected_prefixes: List[str] = None,
        cron_prefixes: List[str] = None
    ):
        super().__init__(app)
        self.secret = secret or settings.INTERNAL_API_SECRET
        self.cron_secret = cron_secret if cron_secret is not None else settings.CRON_SECRET

        if not self.secret:
            logger.error("No secret configured for InternalAuthMiddleware")
            raise ValueError("INTERNAL_API_SECRET is required for InternalAuthMiddleware")

        self.protected_prefixes = protected_prefixes or ["/api/payments/", "/api/admin/", "/api/cron/"]
        self.cron_prefixes = cron_prefixes or ["/api/cron/"]

    async def dispatch(self, request: Request, call_next: Callable):
        path = request.url.path

        if not self._is_protected(path):
            return await call_next(request)

        token = self._get_bearer_token(request)
        if not token:
            logger.warning(f"Missing bearer token for {path}")
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Authorization required"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not self._token_allowed(token, path):
            logger.warning(f"Invalid bearer token for {path}")
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"detail": "Invalid credentials"},
            )

        return await call_next(request)

    def _is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.protected_prefixes)

    def _get_bearer_token(self, request: Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _token_allowed(self, token: str, path: str) -> bool:
        if hmac.compare_digest(token, self.secret):
            return True
        if self.cron_secret and any(path.startswith(prefix) for prefix in self.cron_prefixes):
            return hmac.compare_digest(token, self.cron_secret)
        return False
