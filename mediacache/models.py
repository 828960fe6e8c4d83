"""SQLAlchemy async models."""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from mediacache.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CacheStatus(str, enum.Enum):
    PENDING = "PENDING"
    CACHING = "CACHING"
    CACHED = "CACHED"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# A job with one of these statuses blocks re-admission of the same id
IN_FLIGHT_STATUSES = (JobStatus.WAITING, JobStatus.DELAYED, JobStatus.ACTIVE)


class CacheAsset(Base):
    """One external resource tracked through its caching lifecycle."""
    __tablename__ = "cache_assets"

    id = Column(String(36), primary_key=True, default=new_id)
    original_url = Column(Text, unique=True, nullable=False)
    status = Column(
        Enum(CacheStatus, native_enum=False, length=16),
        default=CacheStatus.PENDING,
        nullable=False,
    )
    cache_key = Column(String(1024), nullable=True)  # Object-store key, set once cached
    content_type = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    image_hash = Column(String(16), nullable=True)  # aHash (hex), images only
    cached_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_cache_asset_status", "status"),
        Index("idx_cache_asset_image_hash", "image_hash"),
    )

    def __repr__(self) -> str:
        return f"<CacheAsset {self.id} {self.status.value if self.status else None} {self.original_url}>"


class QueueJob(Base):
    """Queue bookkeeping: one row per admitted job, keyed per queue."""
    __tablename__ = "queue_jobs"

    queue_name = Column(String(64), primary_key=True)
    id = Column(String(128), primary_key=True)  # For media caching: the cache asset id
    job_type = Column(String(32), nullable=False)
    data = Column(JSON, nullable=False)
    status = Column(
        Enum(JobStatus, native_enum=False, length=16),
        default=JobStatus.WAITING,
        nullable=False,
    )
    priority = Column(Integer, default=0, nullable=False)  # Higher = claimed first
    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    available_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    locked_by = Column(String(128), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    failed_reason = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_queue_job_claim", "queue_name", "status", "priority", "available_at"),
    )
