# docdash/schemas.py
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # rows from sqlite come back naive
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputRecord(BaseModel):
    id: str
    upload_id: Optional[str] = None
    type: str
    storage_path: str
    created_at: datetime

    @field_validator("created_at", mode="after")
    def _aware(cls, v):
        return as_utc(v)


class UploadRecord(BaseModel):
    id: str
    user_id: str
    file_name: str
    file_type: str
    file_size: int = Field(ge=0)
    status: UploadStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    storage_path: str
    outputs: Optional[List[OutputRecord]] = None

    @field_validator("created_at", "updated_at", mode="after")
    def _aware(cls, v):
        return as_utc(v)


class UserStats(BaseModel):
    user_id: Optional[str] = None
    total_uploads: int = 0
    storage_used: int = 0
    last_upload: Optional[datetime] = None

    @field_validator("total_uploads", "storage_used", mode="after")
    def _floor_at_zero(cls, v):
        return max(0, v)

    @field_validator("last_upload", mode="after")
    def _aware(cls, v):
        return as_utc(v)


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A row-level change published by the platform after a committed write."""

    type: ChangeType
    table: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime = Field(default_factory=utcnow)

    @property
    def row(self) -> Dict[str, Any]:
        return self.new or self.old or {}


class Notification(BaseModel):
    title: str
    description: str
    variant: str = "default"  # default | destructive
    retryable: bool = False


class DashboardSnapshot(BaseModel):
    uploads: List[UploadRecord]
    stats: UserStats
    storage_used_display: str
    notifications: List[Notification] = []


class ProfileRecord(BaseModel):
    id: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int
