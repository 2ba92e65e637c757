"""Domain entities for uploaded files and upload batches.

These are the request-scoped representations handlers work with. They are
built fresh from the catalog (or on creation) and carry no session state.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, FrozenSet, Iterable, Optional, Set

from photo_catalog.core.exceptions import InvalidStateTransition, NotAuthorized, ValidationFailed

MAX_FILENAME_LENGTH = 500
MAX_TAG_LENGTH = 100
MAX_ERROR_MESSAGE_LENGTH = 1000

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class UploadStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


class TagOperation(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    REPLACE = "REPLACE"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def normalize_tags(tags: Optional[Iterable[str]]) -> Set[str]:
    """Trim, lower-case and de-duplicate; blank entries are dropped."""
    normalized = set()
    for tag in tags or ():
        if tag is None:
            continue
        value = normalize_tag(str(tag))
        if not value:
            continue
        if len(value) > MAX_TAG_LENGTH:
            raise ValidationFailed(f"Tag cannot exceed {MAX_TAG_LENGTH} characters")
        normalized.add(value)
    return normalized


def validate_filename(filename: Optional[str]) -> str:
    if filename is None or not filename.strip():
        raise ValidationFailed("Filename cannot be blank")
    trimmed = filename.strip()
    if len(trimmed) > MAX_FILENAME_LENGTH:
        raise ValidationFailed(f"Filename cannot exceed {MAX_FILENAME_LENGTH} characters")
    return trimmed


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", filename)


def build_storage_key(owner_id: str, file_id: str, filename: str, when: datetime) -> str:
    # {owner}/{year}/{month}/{file id}-{name}; the file id alone makes keys unique.
    return f"{owner_id}/{when.year:04d}/{when.month:02d}/{file_id}-{sanitize_filename(filename)}"


@dataclass(eq=False)
class File:
    id: str
    owner_id: str
    original_name: str
    storage_key: str
    content_type: str
    size_bytes: int
    upload_date: datetime
    status: UploadStatus = UploadStatus.PENDING
    tags: Set[str] = field(default_factory=set)
    batch_id: Optional[str] = None
    error_message: Optional[str] = None

    _IMMUTABLE: ClassVar[FrozenSet[str]] = frozenset({"id", "owner_id", "storage_key", "upload_date"})

    def __setattr__(self, name: str, value) -> None:
        if name in self._IMMUTABLE and name in self.__dict__:
            raise AttributeError(f"File.{name} cannot be changed once assigned")
        super().__setattr__(name, value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, File) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    @classmethod
    def create(
        cls,
        owner_id: str,
        original_name: str,
        content_type: str,
        size_bytes: int,
        tags: Optional[Iterable[str]] = None,
        batch_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "File":
        file_id = new_id()
        when = now or utc_now()
        name = validate_filename(original_name)
        return cls(
            id=file_id,
            owner_id=owner_id,
            original_name=name,
            storage_key=build_storage_key(owner_id, file_id, name, when),
            content_type=content_type,
            size_bytes=size_bytes,
            upload_date=when,
            status=UploadStatus.PENDING,
            tags=normalize_tags(tags),
            batch_id=batch_id,
        )

    def is_owned_by(self, owner_id: str) -> bool:
        return self.owner_id == owner_id

    def ensure_owned_by(self, owner_id: str) -> None:
        if not self.is_owned_by(owner_id):
            raise NotAuthorized("You do not have access to this file")

    def _ensure_open(self, action: str) -> None:
        if self.status.is_terminal:
            raise InvalidStateTransition(
                f"Cannot {action}: upload is already {self.status.value}"
            )

    def mark_uploading(self) -> bool:
        """Returns False when the file was already uploading."""
        self._ensure_open("start upload")
        if self.status is UploadStatus.UPLOADING:
            return False
        self.status = UploadStatus.UPLOADING
        return True

    def mark_completed(self) -> None:
        self._ensure_open("complete upload")
        self.status = UploadStatus.COMPLETED
        self.error_message = None

    def mark_failed(self, reason: Optional[str] = None) -> None:
        self._ensure_open("fail upload")
        self.status = UploadStatus.FAILED
        reason = (reason or "").strip()
        self.error_message = reason[:MAX_ERROR_MESSAGE_LENGTH] or None

    def apply_tags(self, operation: TagOperation, tags: Iterable[str]) -> bool:
        """Apply a tag mutation in place; returns whether the tag set changed."""
        requested = normalize_tags(tags)
        if not requested:
            return False
        before = set(self.tags)
        if operation is TagOperation.ADD:
            self.tags = before | requested
        elif operation is TagOperation.REMOVE:
            self.tags = before - requested
        elif operation is TagOperation.REPLACE:
            self.tags = set(requested)
        else:
            raise ValidationFailed(f"Unknown tag operation: {operation}")
        return self.tags != before


@dataclass(eq=False)
class Batch:
    id: str
    owner_id: str
    total_files: int
    completed_files: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, owner_id: str, total_files: int) -> "Batch":
        if total_files is None or total_files < 1:
            raise ValidationFailed("Batch total must be at least 1")
        return cls(id=new_id(), owner_id=owner_id, total_files=total_files)

    def ensure_owned_by(self, owner_id: str) -> None:
        if self.owner_id != owner_id:
            raise NotAuthorized("You do not have access to this batch")

    @property
    def progress(self) -> float:
        if self.total_files <= 0:
            return 0.0
        return round(self.completed_files * 100.0 / self.total_files, 1)

    @property
    def status(self) -> UploadStatus:
        if self.completed_files >= self.total_files:
            return UploadStatus.COMPLETED
        if self.completed_files > 0:
            return UploadStatus.UPLOADING
        return UploadStatus.PENDING
