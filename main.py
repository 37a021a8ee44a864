import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from starlette.middleware.base import BaseHTTPMiddleware

import config
from app.routers.admin import api as admin_api
from app.routers.game import api as game_api
from app.routers.ledger import api as ledger_api
from app.runtime import GameRuntime, build_runtime
from core.logging import configure_logging, request_id_var
from scheduler import create_scheduler, shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Short ID for readability
        request_id = str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)
        request.state.request_id = request_id

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        query_str = f"?{request.url.query}" if request.query_params else ""
        logger.info(
            f"REQUEST | id={request_id} | method={request.method} | path={request.url.path}{query_str} | "
            f"ip={client_ip}"
        )

        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                f"RESPONSE | id={request_id} | method={request.method} | path={request.url.path} | "
                f"status={response.status_code} | time={process_time:.3f}s"
            )
            # Add request ID to response headers for client tracking
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"ERROR | id={request_id} | method={request.method} | path={request.url.path} | "
                f"error={type(e).__name__}: {str(e)} | time={process_time:.3f}s",
                exc_info=True
            )
            raise
        finally:
            request_id_var.reset(token)


def create_app(runtime: Optional[GameRuntime] = None, *, scheduler_enabled: bool = config.SCHEDULER_ENABLED) -> FastAPI:
    """Build the API. Tests pass a prepared runtime and drive the game themselves."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(environment=config.ENVIRONMENT, log_level=config.LOG_LEVEL)
        app.state.runtime = runtime if runtime is not None else await build_runtime()

        logger.info("=== Registered Routes ===")
        for route in app.routes:
            if isinstance(route, APIRoute):
                methods = ",".join(route.methods)
                logger.info(f"{methods:8} {route.path}")
        logger.info("=== End of Routes ===")

        scheduler = None
        if scheduler_enabled:
            scheduler = start_scheduler(create_scheduler(), app.state.runtime)
        else:
            logger.info("Scheduler disabled - game must be advanced externally")

        logger.info(f"{config.APP_NAME} started successfully")
        try:
            yield
        finally:
            shutdown_scheduler(scheduler)
            await app.state.runtime.close()

    app = FastAPI(
        title=config.APP_NAME,
        description="Backend API for the Party Crisis game - rounds, balances, deposits and withdrawals",
        version=config.APP_VERSION,
        lifespan=lifespan,
    )
    if runtime is not None:
        # Available before startup for clients that skip the lifespan
        app.state.runtime = runtime

    # Add request logging middleware (before CORS so it logs all requests)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*", "Content-Type", "Accept", "Origin", "X-Requested-With", "X-Admin-Token"]
    )

    @app.get("/")
    async def read_root():
        """
        Root endpoint to check if the server is running.
        Returns basic API information.
        """
        return {
            "status": "online",
            "message": f"Welcome to {config.APP_NAME}!",
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
        }

    @app.get("/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring.
        """
        rt = getattr(request.app.state, "runtime", None)
        if rt is None:
            return {"status": "starting"}
        return {
            "status": "healthy",
            "game_id": rt.engine.current.id,
            "phase": rt.engine.current.phase.value,
            "uptime_seconds": int(rt.clock() - rt.started_at),
        }

    app.include_router(game_api.router, prefix="/api/v1")
    app.include_router(ledger_api.router, prefix="/api/v1")
    app.include_router(admin_api.router, prefix="/api/v1")
    return app


app = create_app()
