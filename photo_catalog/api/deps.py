from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError

from photo_catalog import config
from photo_catalog.catalog import AsyncCatalog, CatalogStore
from photo_catalog.core.bridge import AsyncBridge
from photo_catalog.core.exceptions import Unauthenticated
from photo_catalog.core.rate_limit import RateLimiter
from photo_catalog.core.security import IdentityVerifier
from photo_catalog.db import engine
from photo_catalog.storage import ObjectStorageAdapter, get_storage_adapter

catalog_bridge = AsyncBridge(
    config.CATALOG_WORKERS,
    name="catalog",
    upstream_errors=(SQLAlchemyError,),
    upstream_message="Catalog unavailable",
)
catalog_store = CatalogStore(engine)
catalog = AsyncCatalog(catalog_store, catalog_bridge)

identity_verifier = IdentityVerifier(config.JWT_SECRET, config.JWT_ALGORITHM, config.JWT_ISSUER)
upload_rate_limiter = RateLimiter(config.RATE_LIMIT_PER_MINUTE, redis_url=config.REDIS_URL)

bearer_scheme = HTTPBearer(auto_error=False)


def get_catalog() -> AsyncCatalog:
    return catalog


def get_storage() -> ObjectStorageAdapter:
    return get_storage_adapter()


async def get_owner_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Missing bearer credential")
    return identity_verifier.verify(credentials.credentials)


async def enforce_upload_rate_limit(owner_id: str = Depends(get_owner_id)) -> None:
    allowed, retry_after = await upload_rate_limiter.hit(owner_id)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )
