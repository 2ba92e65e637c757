"""Catalog persistence for files and batches.

``CatalogStore`` is the blocking half: every method opens its own session,
does its work, and converts rows into domain objects *before* the session
closes. ``AsyncCatalog`` is what handlers use; it routes each store call
through the catalog ``AsyncBridge`` so nothing blocks the event loop.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, select

from photo_catalog.core.bridge import AsyncBridge
from photo_catalog.core.exceptions import UpstreamFailure
from photo_catalog.db import ensure_connection
from photo_catalog.domain import Batch, File, UploadStatus, utc_now
from photo_catalog.models import BatchRecord, FileRecord, FileTagRecord

logger = logging.getLogger("photo_catalog.catalog")

DEFAULT_SORT_FIELD = "uploadDate"

# Allow-list of client-facing sort names; anything else falls back to DEFAULT_SORT_FIELD.
SORT_FIELDS = {
    "uploadDate": FileRecord.upload_date,
    "filename": FileRecord.original_name,
    "status": FileRecord.status,
    "size": FileRecord.size_bytes,
}
_SORT_ALIASES = {
    "upload_date": "uploadDate",
    "uploaddate": "uploadDate",
    "original_name": "filename",
    "originalName": "filename",
    "size_bytes": "size",
    "sizeBytes": "size",
}


def resolve_sort_field(sort_by: Optional[str]) -> str:
    if not sort_by:
        return DEFAULT_SORT_FIELD
    candidate = sort_by.strip()
    candidate = _SORT_ALIASES.get(candidate, candidate)
    if candidate not in SORT_FIELDS:
        logger.debug("event=sort_field_rejected requested=%s", sort_by)
        return DEFAULT_SORT_FIELD
    return candidate


def _realize_file(record: FileRecord) -> File:
    """Copy every column, including the lazily loaded tag rows, into a detached File."""
    return File(
        id=record.id,
        owner_id=record.owner_id,
        original_name=record.original_name,
        storage_key=record.storage_key,
        content_type=record.content_type,
        size_bytes=record.size_bytes,
        upload_date=record.upload_date,
        status=UploadStatus(record.status),
        tags={row.tag for row in record.tags},
        batch_id=record.batch_id,
        error_message=record.error_message,
    )


def _realize_batch(record: BatchRecord) -> Batch:
    return Batch(
        id=record.id,
        owner_id=record.owner_id,
        total_files=record.total_files,
        completed_files=record.completed_files,
        created_at=record.created_at,
    )


def _sync_tags(record: FileRecord, wanted: Collection[str]) -> None:
    # Diff rather than replace: re-adding a row with the same (file_id, tag) key would clash.
    current: Dict[str, FileTagRecord] = {row.tag: row for row in record.tags}
    for tag, row in current.items():
        if tag not in wanted:
            record.tags.remove(row)
    for tag in sorted(set(wanted) - current.keys()):
        record.tags.append(FileTagRecord(tag=tag))


def _apply_file(record: FileRecord, file: File) -> None:
    # Status is only written on insert; later changes go through _transition.
    record.original_name = file.original_name
    record.content_type = file.content_type
    record.size_bytes = file.size_bytes
    record.batch_id = file.batch_id
    record.updated_at = utc_now()
    _sync_tags(record, file.tags)


_OPEN_STATUSES = (UploadStatus.PENDING, UploadStatus.UPLOADING)


class CatalogStore:
    """Blocking catalog operations. Call through ``AsyncCatalog`` from request handlers."""

    def __init__(self, engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine)

    def _upsert(self, session: Session, file: File) -> FileRecord:
        record = session.get(FileRecord, file.id)
        if record is None:
            record = FileRecord(
                id=file.id,
                owner_id=file.owner_id,
                storage_key=file.storage_key,
                upload_date=file.upload_date,
                original_name=file.original_name,
                content_type=file.content_type,
                size_bytes=file.size_bytes,
                status=file.status.value,
                error_message=file.error_message,
            )
            session.add(record)
        _apply_file(record, file)
        return record

    def save(self, file: File) -> File:
        with self._session() as session:
            record = self._upsert(session, file)
            session.commit()
            session.refresh(record)
            return _realize_file(record)

    def save_many(self, files: Collection[File]) -> List[File]:
        """Persist several files in one transaction: either all land or none do."""
        if not files:
            return []
        with self._session() as session:
            records = [self._upsert(session, file) for file in files]
            session.commit()
            for record in records:
                session.refresh(record)
            return [_realize_file(record) for record in records]

    def _transition(
        self, file: File, allowed: Collection[UploadStatus], count_in_batch: bool = False
    ) -> Optional[File]:
        """Compare-and-set the file's status.

        Returns None when the stored status is no longer one of ``allowed``;
        nothing is written in that case.
        """
        with self._session() as session:
            result = session.execute(
                update(FileRecord)
                .where(
                    col(FileRecord.id) == file.id,
                    col(FileRecord.status).in_([status.value for status in allowed]),
                )
                .values(
                    status=file.status.value,
                    error_message=file.error_message,
                    updated_at=utc_now(),
                )
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            if count_in_batch and file.batch_id:
                session.execute(
                    update(BatchRecord)
                    .where(
                        col(BatchRecord.id) == file.batch_id,
                        col(BatchRecord.completed_files) < col(BatchRecord.total_files),
                    )
                    .values(
                        completed_files=BatchRecord.completed_files + 1,
                        updated_at=utc_now(),
                    )
                )
            session.commit()
            record = session.get(FileRecord, file.id)
            return _realize_file(record)

    def save_progress(self, file: File) -> Optional[File]:
        return self._transition(file, (UploadStatus.PENDING,))

    def save_completion(self, file: File) -> Optional[File]:
        """Mark an open file COMPLETED and bump its batch counter in the same transaction."""
        return self._transition(file, _OPEN_STATUSES, count_in_batch=True)

    def save_failure(self, file: File) -> Optional[File]:
        return self._transition(file, _OPEN_STATUSES)

    def ping(self) -> bool:
        return ensure_connection(self._engine)

    def find_by_id(self, file_id: str) -> Optional[File]:
        with self._session() as session:
            record = session.get(FileRecord, file_id)
            if record is None:
                return None
            return _realize_file(record)

    def find_many(self, file_ids: Collection[str]) -> List[File]:
        if not file_ids:
            return []
        with self._session() as session:
            stmt = (
                select(FileRecord)
                .where(col(FileRecord.id).in_(list(file_ids)))
                .options(selectinload(FileRecord.tags))
            )
            return [_realize_file(record) for record in session.exec(stmt).all()]

    def _paged(self, stmt, page: int, size: int, sort: str):
        column = SORT_FIELDS[resolve_sort_field(sort)]
        return (
            stmt.options(selectinload(FileRecord.tags))
            .order_by(col(column).desc(), col(FileRecord.id).desc())
            .offset(page * size)
            .limit(size)
        )

    @staticmethod
    def _tag_match(tags: Collection[str]):
        # Files carrying every requested tag: count matching rows per file.
        return (
            select(FileTagRecord.file_id)
            .where(col(FileTagRecord.tag).in_(sorted(tags)))
            .group_by(FileTagRecord.file_id)
            .having(func.count(FileTagRecord.tag) == len(set(tags)))
        )

    def find_by_owner_paged(self, owner_id: str, page: int, size: int, sort: str) -> List[File]:
        with self._session() as session:
            stmt = self._paged(
                select(FileRecord).where(FileRecord.owner_id == owner_id), page, size, sort
            )
            return [_realize_file(record) for record in session.exec(stmt).all()]

    def find_by_owner_and_tags_paged(
        self, owner_id: str, tags: Collection[str], page: int, size: int, sort: str
    ) -> List[File]:
        if not tags:
            return self.find_by_owner_paged(owner_id, page, size, sort)
        with self._session() as session:
            stmt = self._paged(
                select(FileRecord).where(
                    FileRecord.owner_id == owner_id,
                    col(FileRecord.id).in_(self._tag_match(tags)),
                ),
                page,
                size,
                sort,
            )
            return [_realize_file(record) for record in session.exec(stmt).all()]

    def count_by_owner(self, owner_id: str, tags: Optional[Collection[str]] = None) -> int:
        with self._session() as session:
            stmt = select(func.count()).select_from(FileRecord).where(FileRecord.owner_id == owner_id)
            if tags:
                stmt = stmt.where(col(FileRecord.id).in_(self._tag_match(tags)))
            return int(session.exec(stmt).one())

    def delete_by_id(self, file_id: str) -> bool:
        with self._session() as session:
            record = session.get(FileRecord, file_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    def save_batch(self, batch: Batch) -> Batch:
        with self._session() as session:
            record = session.get(BatchRecord, batch.id)
            if record is None:
                record = BatchRecord(
                    id=batch.id,
                    owner_id=batch.owner_id,
                    total_files=batch.total_files,
                    completed_files=batch.completed_files,
                    created_at=batch.created_at,
                )
                session.add(record)
            session.commit()
            session.refresh(record)
            return _realize_batch(record)

    def find_batch(self, batch_id: str) -> Optional[Batch]:
        with self._session() as session:
            record = session.get(BatchRecord, batch_id)
            return _realize_batch(record) if record is not None else None

    def fail_stale_uploads(self, cutoff: datetime, reason: str) -> int:
        """Mark PENDING/UPLOADING files created before ``cutoff`` as FAILED."""
        with self._session() as session:
            result = session.execute(
                update(FileRecord)
                .where(
                    col(FileRecord.status).in_(
                        [UploadStatus.PENDING.value, UploadStatus.UPLOADING.value]
                    ),
                    col(FileRecord.upload_date) < cutoff,
                )
                .values(
                    status=UploadStatus.FAILED.value,
                    error_message=reason,
                    updated_at=utc_now(),
                )
            )
            session.commit()
            return int(result.rowcount or 0)


class AsyncCatalog:
    """Non-blocking facade over ``CatalogStore``; every call runs on the bridge's worker pool."""

    def __init__(self, store: CatalogStore, bridge: AsyncBridge) -> None:
        self._store = store
        self._bridge = bridge

    async def save(self, file: File) -> File:
        return await self._bridge.run(self._store.save, file)

    async def save_many(self, files: Collection[File]) -> List[File]:
        return await self._bridge.run(self._store.save_many, list(files))

    async def save_progress(self, file: File) -> Optional[File]:
        return await self._bridge.run(self._store.save_progress, file)

    async def save_completion(self, file: File) -> Optional[File]:
        return await self._bridge.run(self._store.save_completion, file)

    async def save_failure(self, file: File) -> Optional[File]:
        return await self._bridge.run(self._store.save_failure, file)

    async def find_by_id(self, file_id: str) -> Optional[File]:
        return await self._bridge.run(self._store.find_by_id, file_id)

    async def find_many(self, file_ids: Collection[str]) -> List[File]:
        return await self._bridge.run(self._store.find_many, list(file_ids))

    async def find_by_owner_paged(self, owner_id: str, page: int, size: int, sort: str) -> List[File]:
        return await self._bridge.run(self._store.find_by_owner_paged, owner_id, page, size, sort)

    async def find_by_owner_and_tags_paged(
        self, owner_id: str, tags: Collection[str], page: int, size: int, sort: str
    ) -> List[File]:
        return await self._bridge.run(
            self._store.find_by_owner_and_tags_paged, owner_id, set(tags), page, size, sort
        )

    async def count_by_owner(self, owner_id: str, tags: Optional[Collection[str]] = None) -> int:
        return await self._bridge.run(self._store.count_by_owner, owner_id, set(tags or ()))

    async def delete_by_id(self, file_id: str) -> bool:
        return await self._bridge.run(self._store.delete_by_id, file_id)

    async def save_batch(self, batch: Batch) -> Batch:
        return await self._bridge.run(self._store.save_batch, batch)

    async def find_batch(self, batch_id: str) -> Optional[Batch]:
        return await self._bridge.run(self._store.find_batch, batch_id)

    async def ping(self) -> bool:
        try:
            return await self._bridge.run(self._store.ping)
        except UpstreamFailure:
            return False
