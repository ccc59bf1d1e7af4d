"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from renderpipe import __version__, validate_dependencies
from renderpipe.api.routes import router
from renderpipe.config import settings
from renderpipe.db import init_database, shutdown
from renderpipe.orchestrator.runtime import RenderRuntime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[RenderRuntime] = None) -> FastAPI:
    """Build the API app.

    Args:
        runtime: Pre-built runtime (tests). When None the lifespan builds one
            from the global settings against the configured database.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        Startup:
            - Validate system dependencies (ffmpeg) for live renders
            - Initialize database schema
            - Reconcile interrupted runs and restore the queue
            - Start progress keep-alives

        Shutdown:
            - Stop the executing run (reconciled on next start)
            - Close providers and database connections
        """
        logger.info("Starting Render Pipeline API...")
        owned = runtime is None
        if owned:
            if not settings.dry_run.enabled:
                validate_dependencies()
            await init_database()
            app.state.runtime = build_runtime(settings)
        else:
            app.state.runtime = runtime
        report = await app.state.runtime.startup()
        logger.info(f"API startup complete ({len(report.queued)} run(s) in queue)")

        yield

        logger.info("Shutting down Render Pipeline API...")
        await app.state.runtime.shutdown()
        if owned:
            await shutdown()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="Render Pipeline API",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS for a local dashboard dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            }
        )

    return app


app = create_app()
