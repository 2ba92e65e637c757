from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from photo_catalog.api.deps import (
    enforce_upload_rate_limit,
    get_catalog,
    get_owner_id,
    get_storage,
)
from photo_catalog.catalog import AsyncCatalog
from photo_catalog.core.metrics import metrics
from photo_catalog.domain import TagOperation
from photo_catalog.handlers.commands import (
    BatchMutateTagsCommand,
    BatchMutateTagsHandler,
    DeleteFileCommand,
    DeleteFileHandler,
    InitiateUploadCommand,
    InitiateUploadHandler,
    MutateTagsCommand,
    MutateTagsHandler,
    ReportCompletionHandler,
    ReportFailureHandler,
    ReportProgressHandler,
    ReportUploadCommand,
    UploadStatusResult,
)
from photo_catalog.handlers.queries import (
    BatchQuery,
    FileQuery,
    GetBatchHandler,
    GetDownloadUrlHandler,
    GetFileHandler,
    GetUploadStatusHandler,
    ListFilesHandler,
    ListFilesQuery,
)
from photo_catalog.handlers.views import isoformat
from photo_catalog.storage import ObjectStorageAdapter

router = APIRouter()

logger = logging.getLogger("photo_catalog")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UploadRequest(_CamelModel):
    filename: str
    content_type: str = Field(alias="contentType")
    file_size: int = Field(alias="fileSize")
    tags: List[str] = Field(default_factory=list)
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    batch_total: Optional[int] = Field(default=None, alias="batchTotal")


class UploadFailureRequest(_CamelModel):
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class TagRequest(_CamelModel):
    tags: List[str]


class BatchTagRequest(_CamelModel):
    file_ids: List[str] = Field(alias="fileIds")
    tags: List[str]
    operation: TagOperation


def _status_payload(result: UploadStatusResult) -> dict:
    payload = {"fileId": result.file_id, "status": result.status.value}
    if result.error_message:
        payload["errorMessage"] = result.error_message
    return payload


def _split_tags(values: List[str]) -> List[str]:
    # Accept both ?tags=a&tags=b and ?tags=a,b
    return [part for value in values for part in value.split(",")]


@router.get("/health", include_in_schema=False)
async def health(
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    database, storage_up = await asyncio.gather(catalog.ping(), storage.ping())
    healthy = database and storage_up
    payload = {
        "status": "ok" if healthy else "degraded",
        "database": "up" if database else "down",
        "storage": "up" if storage_up else "down",
    }
    return JSONResponse(payload, status_code=200 if healthy else 503)


@router.get("/metrics")
def metrics_snapshot():
    response = JSONResponse(metrics.snapshot())
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@router.post("/uploads", status_code=201, dependencies=[Depends(enforce_upload_rate_limit)])
async def initiate_upload(
    request: UploadRequest,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    result = await InitiateUploadHandler(catalog, storage).handle(
        InitiateUploadCommand(
            owner_id=owner_id,
            filename=request.filename,
            content_type=request.content_type,
            size_bytes=request.file_size,
            tags=request.tags,
            batch_id=request.batch_id,
            batch_total=request.batch_total,
        )
    )
    payload = {
        "fileId": result.file_id,
        "writeUrl": result.write_url,
        "s3Key": result.storage_key,
        "expiresAt": isoformat(result.expires_at),
    }
    if result.batch_id:
        payload["batchId"] = result.batch_id
    return payload


@router.post("/uploads/{file_id}/start")
async def report_upload_started(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
):
    result = await ReportProgressHandler(catalog).handle(ReportUploadCommand(file_id, owner_id))
    return _status_payload(result)


@router.post("/uploads/{file_id}/complete")
async def report_upload_completed(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
):
    result = await ReportCompletionHandler(catalog).handle(ReportUploadCommand(file_id, owner_id))
    return _status_payload(result)


@router.post("/uploads/{file_id}/fail")
async def report_upload_failed(
    file_id: str,
    request: Optional[UploadFailureRequest] = Body(default=None),
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
):
    reason = request.error_message if request else None
    result = await ReportFailureHandler(catalog).handle(
        ReportUploadCommand(file_id, owner_id, error_message=reason)
    )
    return _status_payload(result)


@router.get("/uploads/{file_id}/status")
async def upload_status(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
):
    result = await GetUploadStatusHandler(catalog).handle(FileQuery(file_id, owner_id))
    return _status_payload(result)


@router.get("/batches/{batch_id}")
async def batch_progress(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
):
    batch = await GetBatchHandler(catalog).handle(BatchQuery(batch_id, owner_id))
    return {
        "batchId": batch.id,
        "totalFiles": batch.total_files,
        "completedFiles": batch.completed_files,
        "progress": batch.progress,
        "status": batch.status.value,
    }


@router.get("/files")
async def list_files(
    response: Response,
    page: int = Query(default=0, ge=0),
    size: Optional[int] = Query(default=None),
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
    tags: List[str] = Query(default=[]),
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    result = await ListFilesHandler(catalog, storage).handle(
        ListFilesQuery(owner_id=owner_id, page=page, size=size, sort_by=sort_by, tags=_split_tags(tags))
    )
    response.headers["X-Total-Count"] = str(result.total)
    return [item.to_dict() for item in result.items]


@router.post("/files/batch/tags")
async def batch_mutate_tags(
    request: BatchTagRequest,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    views = await BatchMutateTagsHandler(catalog, storage).handle(
        BatchMutateTagsCommand(
            owner_id=owner_id,
            operation=request.operation,
            file_ids=request.file_ids,
            tags=request.tags,
        )
    )
    return [view.to_dict() for view in views]


@router.get("/files/{file_id}")
async def get_file(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    view = await GetFileHandler(catalog, storage).handle(FileQuery(file_id, owner_id))
    return view.to_dict()


@router.get("/files/{file_id}/download")
async def download_file(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    grant = await GetDownloadUrlHandler(catalog, storage).handle(FileQuery(file_id, owner_id))
    return {"url": grant.url, "expiresAt": isoformat(grant.expires_at)}


async def _mutate_tags(
    operation: TagOperation,
    file_id: str,
    request: TagRequest,
    owner_id: str,
    catalog: AsyncCatalog,
    storage: ObjectStorageAdapter,
) -> dict:
    view = await MutateTagsHandler(catalog, storage).handle(
        MutateTagsCommand(file_id=file_id, owner_id=owner_id, operation=operation, tags=request.tags)
    )
    return view.to_dict()


@router.post("/files/{file_id}/tags")
async def add_tags(
    file_id: str,
    request: TagRequest,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    return await _mutate_tags(TagOperation.ADD, file_id, request, owner_id, catalog, storage)


@router.delete("/files/{file_id}/tags")
async def remove_tags(
    file_id: str,
    request: TagRequest,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    return await _mutate_tags(TagOperation.REMOVE, file_id, request, owner_id, catalog, storage)


@router.put("/files/{file_id}/tags")
async def replace_tags(
    file_id: str,
    request: TagRequest,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    return await _mutate_tags(TagOperation.REPLACE, file_id, request, owner_id, catalog, storage)


@router.delete("/files/{file_id}", status_code=204)
async def delete_file(
    file_id: str,
    owner_id: str = Depends(get_owner_id),
    catalog: AsyncCatalog = Depends(get_catalog),
    storage: ObjectStorageAdapter = Depends(get_storage),
):
    await DeleteFileHandler(catalog, storage).handle(DeleteFileCommand(file_id, owner_id))
    return Response(status_code=204)
