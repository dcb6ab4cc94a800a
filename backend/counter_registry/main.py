import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from counter_registry.core.config import settings
from counter_registry.core.database import SessionLocal, init_db
from counter_registry.routes.catalog import router as catalog_router
from counter_registry.routes.counters import router as counters_router
from counter_registry.routes.health import router as health_router
from counter_registry.services.seed import seed_demo

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="Counter Registry API", version="0.1.0")

    origins = settings.cors_origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health_router, tags=["health"])
    app.include_router(catalog_router, prefix="/catalog", tags=["catalog"])
    app.include_router(counters_router, prefix="/counters", tags=["counters"])

    return app


app = create_app()

# Only seed in development or when explicitly requested
if settings.env == "dev" or os.getenv("FORCE_SEED") == "true":
    try:
        init_db()
        with SessionLocal() as db:
            seed_demo(db)
    except Exception as exc:
        logger.warning("Demo seed skipped: %s", exc)
