from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from photo_catalog import config
from photo_catalog.catalog import AsyncCatalog
from photo_catalog.core.bridge import bounded_gather
from photo_catalog.core.exceptions import NotAuthorized, NotFound
from photo_catalog.core.metrics import metrics
from photo_catalog.domain import File, utc_now
from photo_catalog.storage import ObjectStorageAdapter

logger = logging.getLogger("photo_catalog.access")


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def read_grant_ttl() -> timedelta:
    return timedelta(minutes=config.READ_GRANT_TTL_MINUTES)


def write_grant_ttl() -> timedelta:
    return timedelta(minutes=config.WRITE_GRANT_TTL_MINUTES)


@dataclass(frozen=True)
class FileView:
    id: str
    filename: str
    storage_key: str
    upload_date: datetime
    tags: List[str]
    status: str
    download_url: str
    content_type: str
    size_bytes: int
    batch_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "storageKey": self.storage_key,
            "uploadDate": isoformat(self.upload_date),
            "tags": list(self.tags),
            "status": self.status,
            "downloadUrl": self.download_url,
            "contentType": self.content_type,
            "sizeBytes": self.size_bytes,
            "batchId": self.batch_id,
        }


async def build_file_view(file: File, storage: ObjectStorageAdapter) -> FileView:
    # Minted per request, never cached: the grant must follow the current TTL policy.
    url = await storage.mint_read_grant(file.storage_key, read_grant_ttl())
    metrics.record_read_grants()
    return FileView(
        id=file.id,
        filename=file.original_name,
        storage_key=file.storage_key,
        upload_date=file.upload_date,
        tags=sorted(file.tags),
        status=file.status.value,
        download_url=url,
        content_type=file.content_type,
        size_bytes=file.size_bytes,
        batch_id=file.batch_id,
    )


async def build_file_views(files: Iterable[File], storage: ObjectStorageAdapter) -> List[FileView]:
    return await bounded_gather(
        (build_file_view(file, storage) for file in files), config.FANOUT_LIMIT
    )


async def load_owned_file(
    catalog: AsyncCatalog, file_id: str, owner_id: str, *, mask_foreign: bool
) -> File:
    """Load a file for ``owner_id`` or fail.

    Command paths pass ``mask_foreign=False`` and report NotAuthorized for someone
    else's file; query paths pass ``True`` and report NotFound so existence is not leaked.
    """
    file = await catalog.find_by_id(file_id)
    if file is None:
        raise NotFound("File not found")
    if not file.is_owned_by(owner_id):
        logger.warning(
            "event=ownership_denied file_id=%s caller=%s masked=%s", file_id, owner_id, mask_foreign
        )
        if mask_foreign:
            raise NotFound("File not found")
        raise NotAuthorized("You do not have access to this file")
    return file
