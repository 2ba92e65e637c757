from sqlmodel import SQLModel, create_engine
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool

from photo_catalog import models  # noqa: F401  (registers the tables on SQLModel.metadata)
from photo_catalog.config import CATALOG_WORKERS, DB_CONNECT_ARGS, DB_URL

# One pooled connection per bridge worker, with headroom for the sweeper and health probes
engine = create_engine(
    DB_URL,
    connect_args=DB_CONNECT_ARGS,
    poolclass=QueuePool,
    pool_size=CATALOG_WORKERS,
    max_overflow=4,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,   # Recycle connections after 1 hour
    echo=False
)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def ensure_connection(bind=None) -> bool:
    """
    Verify that the database connection is alive.
    Used by the health endpoint and before long-running sweeps.
    """
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
