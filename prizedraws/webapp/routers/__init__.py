"""
API routers of the prize draw service.
"""

from .major_draw import router as major_draw_router
from .mini_draws import router as mini_draws_router
from .payments import router as payments_router
from .cron import router as cron_router
from .admin import router as admin_router

__all__ = ['major_draw_router', 'mini_draws_router', 'payments_router', 'cron_router', 'admin_router']
