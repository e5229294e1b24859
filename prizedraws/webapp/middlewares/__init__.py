from prizedraws.webapp.middlewares.internal_auth import InternalAuthMiddleware
from prizedraws.webapp.middlewares.rate_limiter import RateLimiterMiddleware
from prizedraws.webapp.middlewares.draw_transition import DrawTransitionMiddleware

__all__ = ["InternalAuthMiddleware", "RateLimiterMiddleware", "DrawTransitionMiddleware"]
