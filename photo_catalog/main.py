import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from photo_catalog.api.deps import catalog_bridge, catalog_store, upload_rate_limiter
from photo_catalog.api.routes import router
from photo_catalog.cleaner import start_cleaner
from photo_catalog.config import CORS_ORIGINS, ENABLE_CLEANER, LOG_LEVEL
from photo_catalog.core.exceptions import register_exception_handlers
from photo_catalog.core.metrics import metrics
from photo_catalog.db import init_db
from photo_catalog.storage import shutdown_storage_adapter

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("photo_catalog")

scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    shutdown_storage_adapter()
    await upload_rate_limiter.close()
    catalog_bridge.shutdown(wait=True)
    logger.info("event=shutdown_complete")


app = FastAPI(title="Photo Catalog API", version="1.0.0", lifespan=lifespan)

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)

init_db()

app.include_router(router)
register_exception_handlers(app)

if ENABLE_CLEANER:
    scheduler = start_cleaner(catalog_store, metrics, logger)
