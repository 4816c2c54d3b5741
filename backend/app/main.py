from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from app.core.config import Settings, get_settings
from app.core.database import init_db
from app.core.errors import ProgressError
from app.core.logging import configure_logging
from app.routers import achievements, auth, catalog, children, reviews
from app.services.container import build_services

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: schema for dev setups without migrations
        if settings.create_tables_on_startup:
            await init_db(services.db_engine)
        yield
        # Shutdown
        await services.db_engine.dispose()

    app = FastAPI(
        title="Learning Progress API",
        description="Tracks children's reviews, subject levels and achievements",
        version="1.0.0",
        lifespan=lifespan,
    )
    # Avoid 307 redirects for trailing slash (e.g. /children/ -> /children)
    app.router.redirect_slashes = False

    app.state.settings = settings
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            settings.frontend_url,
            "http://localhost:5173",
            "http://localhost",
            "http://127.0.0.1",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProgressError)
    async def progress_error_handler(request: Request, exc: ProgressError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    # Include routers
    app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
    app.include_router(children.router, prefix="/children", tags=["Children"])
    app.include_router(reviews.router, prefix="/reviews", tags=["Reviews"])
    app.include_router(catalog.router, tags=["Catalog"])
    app.include_router(achievements.router, prefix="/achievements", tags=["Achievements"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
