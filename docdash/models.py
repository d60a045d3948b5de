# docdash/models.py
from sqlalchemy import Column, Integer, BigInteger, String, Text, TIMESTAMP, ForeignKey, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
import uuid
from datetime import datetime, timezone
from sqlalchemy.sql import func

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Upload(Base):
    __tablename__ = "uploads"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    user_id = Column(UUID(as_uuid=False), nullable=False, index=True)  # owner
    file_name = Column(String, nullable=False)
    file_type = Column(String, nullable=False)              # declared MIME type
    file_size = Column(BigInteger, nullable=False, default=0)  # bytes
    status = Column(String, nullable=False, default="pending")
    storage_path = Column(Text, nullable=False)             # object path inside the uploads bucket
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    # bumped on every write; the reconciler uses it to discard stale events
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Output(Base):
    __tablename__ = "outputs"
    id = Column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    upload_id = Column(UUID(as_uuid=False), ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)
    storage_path = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow, server_default=func.now())


class UserStat(Base):
    __tablename__ = "user_stats"
    __table_args__ = (
        CheckConstraint("total_uploads >= 0", name="ck_user_stats_total_uploads"),
        CheckConstraint("storage_used >= 0", name="ck_user_stats_storage_used"),
    )
    user_id = Column(UUID(as_uuid=False), primary_key=True)
    total_uploads = Column(Integer, nullable=False, default=0)
    storage_used = Column(BigInteger, nullable=False, default=0)
    last_upload = Column(TIMESTAMP(timezone=True), nullable=True)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(UUID(as_uuid=False), primary_key=True)   # same id as the auth user
    full_name = Column(String, nullable=True)
    avatar_url = Column(Text, nullable=True)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=True)
