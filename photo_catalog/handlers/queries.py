"""Query handlers. Reads never reveal whether another owner's file exists."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from photo_catalog import config
from photo_catalog.catalog import AsyncCatalog, resolve_sort_field
from photo_catalog.core.exceptions import NotFound, ValidationFailed
from photo_catalog.core.metrics import metrics
from photo_catalog.domain import Batch, normalize_tags
from photo_catalog.handlers.commands import UploadStatusResult
from photo_catalog.handlers.views import (
    FileView,
    build_file_view,
    build_file_views,
    load_owned_file,
    read_grant_ttl,
    utc_now,
)
from photo_catalog.storage import ObjectStorageAdapter

logger = logging.getLogger("photo_catalog.queries")


@dataclass(frozen=True)
class ListFilesQuery:
    owner_id: str
    page: int = 0
    size: Optional[int] = None
    sort_by: Optional[str] = None
    tags: Sequence[str] = ()


@dataclass(frozen=True)
class ListFilesResult:
    items: List[FileView]
    total: int
    page: int
    size: int
    sort_by: str


@dataclass(frozen=True)
class FileQuery:
    file_id: str
    owner_id: str


@dataclass(frozen=True)
class DownloadGrant:
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class BatchQuery:
    batch_id: str
    owner_id: str


def resolve_page_size(size: Optional[int]) -> int:
    if size is None or size <= 0:
        return config.DEFAULT_PAGE_SIZE
    return min(size, config.MAX_PAGE_SIZE)


class ListFilesHandler:
    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    async def handle(self, query: ListFilesQuery) -> ListFilesResult:
        if query.page is None or query.page < 0:
            raise ValidationFailed("page must be zero or greater")
        size = resolve_page_size(query.size)
        sort_by = resolve_sort_field(query.sort_by)
        # All-blank filters normalize to nothing, which means "no filter".
        tags = normalize_tags(query.tags)

        if tags:
            files = await self._catalog.find_by_owner_and_tags_paged(
                query.owner_id, tags, query.page, size, sort_by
            )
        else:
            files = await self._catalog.find_by_owner_paged(query.owner_id, query.page, size, sort_by)
        total = await self._catalog.count_by_owner(query.owner_id, tags)
        items = await build_file_views(files, self._storage)

        logger.debug(
            "event=files_listed owner=%s page=%s size=%s sort=%s tags=%s returned=%s total=%s",
            query.owner_id,
            query.page,
            size,
            sort_by,
            ",".join(sorted(tags)),
            len(items),
            total,
        )
        return ListFilesResult(items=items, total=total, page=query.page, size=size, sort_by=sort_by)


class GetFileHandler:
    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    async def handle(self, query: FileQuery) -> FileView:
        file = await load_owned_file(self._catalog, query.file_id, query.owner_id, mask_foreign=True)
        return await build_file_view(file, self._storage)


class GetUploadStatusHandler:
    def __init__(self, catalog: AsyncCatalog) -> None:
        self._catalog = catalog

    async def handle(self, query: FileQuery) -> UploadStatusResult:
        file = await load_owned_file(self._catalog, query.file_id, query.owner_id, mask_foreign=True)
        return UploadStatusResult(file_id=file.id, status=file.status, error_message=file.error_message)


class GetDownloadUrlHandler:
    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    async def handle(self, query: FileQuery) -> DownloadGrant:
        file = await load_owned_file(self._catalog, query.file_id, query.owner_id, mask_foreign=True)
        ttl = read_grant_ttl()
        expires_at = utc_now() + ttl
        url = await self._storage.mint_read_grant(file.storage_key, ttl)
        metrics.record_read_grants()
        logger.info("event=download_granted file_id=%s ttl_minutes=%s", file.id, config.READ_GRANT_TTL_MINUTES)
        return DownloadGrant(url=url, expires_at=expires_at)


class GetBatchHandler:
    def __init__(self, catalog: AsyncCatalog) -> None:
        self._catalog = catalog

    async def handle(self, query: BatchQuery) -> Batch:
        batch = await self._catalog.find_batch(query.batch_id)
        if batch is None or batch.owner_id != query.owner_id:
            raise NotFound("Batch not found")
        return batch
