from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware
import logging
import uvicorn
import asyncio

from prizedraws.config import settings
from prizedraws.utils.exceptions import DrawError
from prizedraws.webapp.routers import (
    major_draw_router,
    mini_draws_router,
    payments_router,
    cron_router,
    admin_router,
)
from prizedraws.webapp.middlewares import InternalAuthMiddleware, RateLimiterMiddleware, DrawTransitionMiddleware

VERSION = "1.0.0"


async def draw_error_handler(request: Request, exc: DrawError) -> JSONResponse:
    logging.warning(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": type(exc).__name__, "detail": str(exc)},
    )


def setup_webapp(session_factory=None, transition_check_interval: int = None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        session_factory: async_sessionmaker used by the transition middleware,
            defaults to prizedraws.database.db.async_session
        transition_check_interval (int): Seconds between request-triggered sweeps

    Returns:
        FastAPI: Configured application
    """
    app = FastAPI(
        title="Prize Draws API",
        description="Major and mini prize draws: entry allocation and draw lifecycle",
        version=VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    # Starlette runs the last added middleware first

    app.add_middleware(
        DrawTransitionMiddleware,
        check_interval=transition_check_interval,
    )

    app.add_middleware(
        InternalAuthMiddleware,
        secret=settings.INTERNAL_API_SECRET,
        cron_secret=settings.CRON_SECRET,
    )

    app.add_middleware(
        RateLimiterMiddleware,
        default_window_size=settings.RATE_LIMIT_DEFAULT["window_size"],
        default_max_requests=settings.RATE_LIMIT_DEFAULT["max_requests"],
        exclude_paths=["/docs", "/redoc", "/openapi.json", "/api/payments/", "/api/admin/", "/api/cron/"],
        path_limits=settings.RATE_LIMIT_PATHS
    )

    if not settings.DEBUG:
        allowed_hosts = [settings.WEBAPP_HOST, "localhost", "127.0.0.1"]
        if settings.WEBAPP_PUBLIC_URL:
            from urllib.parse import urlparse
            parsed_url = urlparse(settings.WEBAPP_PUBLIC_URL)
            if parsed_url.hostname:
                allowed_hosts.append(parsed_url.hostname)

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    if session_factory is None:
        from prizedraws.database.db import async_session as session_factory
    app.state.session_factory = session_factory

    app.add_exception_handler(DrawError, draw_error_handler)

    app.include_router(major_draw_router)
    app.include_router(mini_draws_router)
    app.include_router(payments_router)
    app.include_router(cron_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root():
        return {"message": "Prize Draws API is running", "version": VERSION}

    logging.info("Web application configured")

    return app


async def start_webapp(app: FastAPI, shutdown_event=None) -> None:
    """
    Serves the application with uvicorn until it stops or shutdown_event is set.

    Args:
        app (FastAPI): Application
        shutdown_event (asyncio.Event, optional): Stop signal
    """
    config = uvicorn.Config(
        app=app,
        host=settings.WEBAPP_HOST,
        port=settings.WEBAPP_PORT,
        log_level="info" if settings.DEBUG else "warning",
        access_log=settings.DEBUG,
        proxy_headers=True,
        forwarded_allow_ips="*"
    )
    server = uvicorn.Server(config)

    if not shutdown_event:
        logging.info(f"Web server starting on {settings.WEBAPP_HOST}:{settings.WEBAPP_PORT}")
        await server.serve()
        logging.info("Web server stopped")
        return

    server_task = asyncio.create_task(server.serve())
    logging.info(f"Web server started on {settings.WEBAPP_HOST}:{settings.WEBAPP_PORT}")

    shutdown_task = asyncio.create_task(shutdown_event.wait(), name="webapp_shutdown_task")

    done, pending = await asyncio.wait(
        [server_task, shutdown_task],
        return_when=asyncio.FIRST_COMPLETED
    )

    if server_task in done:
        shutdown_task.cancel()
        try:
            server_task.result()
            logging.info("Web server finished")
        except Exception as e:
            logging.error(f"Web server exited with an error: {e}")
    else:
        logging.info("Shutdown requested, stopping web server")
        server.should_exit = True
        try:
            await server_task
        except asyncio.CancelledError:
            logging.info("Web server cancelled")
        except Exception as e:
            logging.error(f"Error while stopping web server: {e}")

    logging.info("Web server stopped")
