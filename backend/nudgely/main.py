"""Nudgely - Recurring Team Reminders API."""
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nudgely.config import get_settings

settings = get_settings()

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Send application logs to stdout at the configured level."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stdout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: create tables and load nudge templates
    from nudgely.database import create_tables, engine, ensure_sqlite_directory, get_db_context
    from nudgely.services.template_loader import load_nudge_templates

    configure_logging(settings.log_level)

    ensure_sqlite_directory(settings.database_url)
    await create_tables(engine)

    async with get_db_context() as db:
        await load_nudge_templates(db, settings.templates_dir)

    logger.info(f"{settings.app_name} started")
    yield
    # Shutdown: release pooled connections
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Recurring reminders that your team can complete in one click",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from nudgely.api import complete, cron, nudges, templates  # noqa: E402

app.include_router(cron.router, prefix="/api")
app.include_router(complete.router, prefix="/api")
app.include_router(nudges.router, prefix="/api")
app.include_router(templates.router, prefix="/api")
