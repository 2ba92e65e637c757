"""Command handlers: everything that changes a file or batch."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from photo_catalog import config
from photo_catalog.catalog import AsyncCatalog
from photo_catalog.core.exceptions import (
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
    ValidationFailed,
)
from photo_catalog.core.metrics import metrics
from photo_catalog.domain import Batch, File, TagOperation, UploadStatus, validate_filename
from photo_catalog.handlers.views import (
    FileView,
    build_file_view,
    build_file_views,
    load_owned_file,
    utc_now,
    write_grant_ttl,
)
from photo_catalog.storage import ObjectStorageAdapter

logger = logging.getLogger("photo_catalog.commands")


@dataclass(frozen=True)
class InitiateUploadCommand:
    owner_id: str
    filename: str
    content_type: str
    size_bytes: int
    tags: Sequence[str] = ()
    batch_id: Optional[str] = None
    batch_total: Optional[int] = None


@dataclass(frozen=True)
class InitiateUploadResult:
    file_id: str
    write_url: str
    storage_key: str
    expires_at: datetime
    batch_id: Optional[str] = None


@dataclass(frozen=True)
class ReportUploadCommand:
    file_id: str
    owner_id: str
    error_message: Optional[str] = None


@dataclass(frozen=True)
class UploadStatusResult:
    file_id: str
    status: UploadStatus
    error_message: Optional[str] = None


@dataclass(frozen=True)
class DeleteFileCommand:
    file_id: str
    owner_id: str


@dataclass(frozen=True)
class MutateTagsCommand:
    file_id: str
    owner_id: str
    operation: TagOperation
    tags: Sequence[str] = ()


@dataclass(frozen=True)
class BatchMutateTagsCommand:
    owner_id: str
    operation: TagOperation
    file_ids: Sequence[str] = ()
    tags: Sequence[str] = ()


def _status_result(file: File) -> UploadStatusResult:
    return UploadStatusResult(file_id=file.id, status=file.status, error_message=file.error_message)


class InitiateUploadHandler:
    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    @staticmethod
    def _validate_content_type(content_type: Optional[str]) -> str:
        if content_type is None or not content_type.strip():
            raise ValidationFailed("Content type cannot be blank")
        normalized = content_type.strip().lower()
        if normalized not in config.ALLOWED_CONTENT_TYPES:
            raise ValidationFailed(
                "Content type must be one of: " + ", ".join(sorted(config.ALLOWED_CONTENT_TYPES))
            )
        return normalized

    @staticmethod
    def _validate_size(size_bytes: Optional[int]) -> int:
        if size_bytes is None or size_bytes <= 0:
            raise ValidationFailed("File size must be a positive number of bytes")
        if size_bytes > config.MAX_FILE_SIZE:
            logger.warning(
                "event=upload_rejected reason=max_size size_bytes=%s limit_bytes=%s",
                size_bytes,
                config.MAX_FILE_SIZE,
            )
            raise ValidationFailed(
                f"File too large. Maximum allowed size is {config.MAX_FILE_SIZE} bytes."
            )
        return size_bytes

    async def _resolve_batch(self, command: InitiateUploadCommand) -> Optional[str]:
        if command.batch_id:
            batch = await self._catalog.find_batch(command.batch_id)
            if batch is None:
                raise NotFound("Batch not found")
            batch.ensure_owned_by(command.owner_id)
            return batch.id
        if command.batch_total is not None:
            batch = await self._catalog.save_batch(Batch.create(command.owner_id, command.batch_total))
            logger.info(
                "event=batch_created batch_id=%s owner=%s total=%s",
                batch.id,
                batch.owner_id,
                batch.total_files,
            )
            return batch.id
        return None

    async def handle(self, command: InitiateUploadCommand) -> InitiateUploadResult:
        filename = validate_filename(command.filename)
        content_type = self._validate_content_type(command.content_type)
        size_bytes = self._validate_size(command.size_bytes)
        batch_id = await self._resolve_batch(command)

        file = File.create(
            owner_id=command.owner_id,
            original_name=filename,
            content_type=content_type,
            size_bytes=size_bytes,
            tags=command.tags,
            batch_id=batch_id,
        )
        await self._catalog.save(file)

        # If minting fails the record stays PENDING; the client may retry.
        ttl = write_grant_ttl()
        expires_at = utc_now() + ttl
        write_url = await self._storage.mint_write_grant(file.storage_key, content_type, ttl)

        metrics.record_initiated(size_bytes)
        logger.info(
            "event=upload_initiated file_id=%s owner=%s storage_key=%s size_bytes=%s content_type=%s",
            file.id,
            file.owner_id,
            file.storage_key,
            size_bytes,
            content_type,
        )
        return InitiateUploadResult(
            file_id=file.id,
            write_url=write_url,
            storage_key=file.storage_key,
            expires_at=expires_at,
            batch_id=batch_id,
        )


class ReportProgressHandler:
    def __init__(self, catalog: AsyncCatalog) -> None:
        self._catalog = catalog

    async def handle(self, command: ReportUploadCommand) -> UploadStatusResult:
        file = await load_owned_file(self._catalog, command.file_id, command.owner_id, mask_foreign=False)
        if not file.mark_uploading():
            return _status_result(file)
        saved = await self._catalog.save_progress(file)
        if saved is None:
            # Someone else moved it first; re-read and judge the current status.
            file = await load_owned_file(self._catalog, command.file_id, command.owner_id, mask_foreign=False)
            file.mark_uploading()
            return _status_result(file)
        logger.info("event=upload_started file_id=%s", saved.id)
        return _status_result(saved)


class ReportCompletionHandler:
    def __init__(self, catalog: AsyncCatalog) -> None:
        self._catalog = catalog

    async def handle(self, command: ReportUploadCommand) -> UploadStatusResult:
        file = await load_owned_file(self._catalog, command.file_id, command.owner_id, mask_foreign=False)
        file.mark_completed()
        saved = await self._catalog.save_completion(file)
        if saved is None:
            raise InvalidStateTransition("Cannot complete upload: upload is already finished")
        file = saved
        metrics.record_completed()
        logger.info("event=upload_completed file_id=%s batch_id=%s", file.id, file.batch_id)
        return _status_result(file)


class ReportFailureHandler:
    def __init__(self, catalog: AsyncCatalog) -> None:
        self._catalog = catalog

    async def handle(self, command: ReportUploadCommand) -> UploadStatusResult:
        file = await load_owned_file(self._catalog, command.file_id, command.owner_id, mask_foreign=False)
        file.mark_failed(command.error_message)
        saved = await self._catalog.save_failure(file)
        if saved is None:
            raise InvalidStateTransition("Cannot fail upload: upload is already finished")
        file = saved
        metrics.record_failed()
        logger.info("event=upload_failed file_id=%s reason=%s", file.id, file.error_message)
        return _status_result(file)


class DeleteFileHandler:
    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    async def handle(self, command: DeleteFileCommand) -> None:
        file = await load_owned_file(self._catalog, command.file_id, command.owner_id, mask_foreign=False)
        # Object first: if storage fails the catalog row survives for a retry.
        await self._storage.delete_object(file.storage_key)
        await self._catalog.delete_by_id(file.id)
        metrics.record_deletion()
        logger.info("event=file_deleted file_id=%s storage_key=%s", file.id, file.storage_key)


class MutateTagsHandler:
    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    async def handle(self, command: MutateTagsCommand) -> FileView:
        file = await load_owned_file(self._catalog, command.file_id, command.owner_id, mask_foreign=False)
        if file.apply_tags(command.operation, command.tags):
            file = await self._catalog.save(file)
            logger.info(
                "event=tags_mutated file_id=%s operation=%s tags=%s",
                file.id,
                command.operation.value,
                ",".join(sorted(file.tags)),
            )
        return await build_file_view(file, self._storage)


class BatchMutateTagsHandler:
    """Applies one tag operation to many files; all must belong to the caller."""

    def __init__(self, catalog: AsyncCatalog, storage: ObjectStorageAdapter) -> None:
        self._catalog = catalog
        self._storage = storage

    async def handle(self, command: BatchMutateTagsCommand) -> List[FileView]:
        file_ids = list(dict.fromkeys(fid for fid in command.file_ids if fid))
        if not file_ids:
            raise ValidationFailed("fileIds cannot be empty")
        if len(file_ids) > config.MAX_BATCH_TAG_FILES:
            raise ValidationFailed(
                f"At most {config.MAX_BATCH_TAG_FILES} files can be tagged in one request"
            )

        found = {file.id: file for file in await self._catalog.find_many(file_ids)}
        missing = [fid for fid in file_ids if fid not in found]
        if missing:
            raise NotFound(f"File not found: {missing[0]}")
        foreign = [fid for fid in file_ids if not found[fid].is_owned_by(command.owner_id)]
        if foreign:
            logger.warning(
                "event=ownership_denied file_id=%s caller=%s masked=False", foreign[0], command.owner_id
            )
            raise NotAuthorized("You do not have access to one or more files")

        files = [found[fid] for fid in file_ids]
        changed = [file for file in files if file.apply_tags(command.operation, command.tags)]
        # One transaction for every changed file, so a failure leaves all of them untouched.
        saved = {file.id: file for file in await self._catalog.save_many(changed)}
        logger.info(
            "event=batch_tags_mutated owner=%s operation=%s files=%s changed=%s",
            command.owner_id,
            command.operation.value,
            len(files),
            len(saved),
        )
        return await build_file_views((saved.get(file.id, file) for file in files), self._storage)
