from datetime import datetime
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel

from photo_catalog.domain import utc_now


class BatchRecord(SQLModel, table=True):
    __tablename__ = "batch"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    total_files: int
    completed_files: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class FileRecord(SQLModel, table=True):
    __tablename__ = "file"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    batch_id: Optional[str] = Field(default=None, foreign_key="batch.id", nullable=True, index=True)
    original_name: str = Field(max_length=500)
    storage_key: str = Field(max_length=1000, unique=True)
    content_type: str
    size_bytes: int
    status: str = Field(default="PENDING", index=True)
    error_message: Optional[str] = Field(default=None, nullable=True)
    upload_date: datetime = Field(index=True)
    updated_at: datetime = Field(default_factory=utc_now)

    # Lazily loaded; the catalog realizes it before a record leaves its session.
    tags: List["FileTagRecord"] = Relationship(
        back_populates="file",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "lazy": "select"},
    )


class FileTagRecord(SQLModel, table=True):
    __tablename__ = "file_tag"

    file_id: str = Field(foreign_key="file.id", primary_key=True)
    tag: str = Field(primary_key=True, max_length=100, index=True)

    file: Optional[FileRecord] = Relationship(back_populates="tags")
