"""Slacker: Main FastAPI Application.

Turns Slack threads and GitHub issues into trackable action items with
assignment, snoozing, follow-ups and scheduled sweeps.
"""

from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .api import api_router
from .core.config import Settings, get_settings
from .core.database import close_db, create_engine, create_session_factory, init_db
from .core.dependencies import build_side_effects, close_side_effects
from .schemas import ErrorResponse
from .services.side_effects import SideEffects

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    effects: SideEffects | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators passed in are used as-is and left open on shutdown; the
    ones built here are closed with the app.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown."""
        engine = None
        if session_factory is None:
            engine = create_engine(settings.database_url, echo=settings.database_echo)
            app.state.session_factory = create_session_factory(engine)
            # Skip init_db in production (tables already exist)
            if settings.environment != "production":
                try:
                    await init_db(engine)
                except Exception as e:
                    logger.warning(f"Could not initialize database: {e}")
        else:
            app.state.session_factory = session_factory

        app.state.effects = effects or build_side_effects(settings)
        logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")
        yield

        # Shutdown
        if effects is None:
            await close_side_effects(app.state.effects)
        if engine is not None:
            await close_db(engine)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        ## Slacker API

        Action item tracking for Slack threads and GitHub issues.

        - **Slack**: Events API and the `/slacker` command
        - **GitHub**: Issue and pull-request webhooks
        - **Items**: Assign, snooze, resolve and follow up on action items
        """,
        lifespan=lifespan,
    )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        error_detail = str(exc)
        # In development/debug mode, include full traceback
        if settings.debug or settings.environment != "production":
            error_detail = f"{str(exc)}\n{traceback.format_exc()}"

        logger.error(f"Unhandled exception on {request.url.path}: {error_detail}")

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="internal_error",
                message=f"An unexpected error occurred: {str(exc)[:200]}",
            ).model_dump(),
        )

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    @app.get("/metrics", tags=["health"])
    async def metrics_snapshot(request: Request):
        """Counter snapshot of the running process."""
        return request.app.state.effects.metrics.snapshot()

    app.include_router(api_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "slacker.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
    )
