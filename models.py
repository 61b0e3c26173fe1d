# stdlib imports
from datetime import datetime, timezone
from enum import Enum
import uuid

# third-party imports
from sqlalchemy import Column, UniqueConstraint
from sqlalchemy.dialects.sqlite import JSON
from sqlmodel import SQLModel, Field, Index


"""
JSON columns:
Field(sa_column=Column(JSON)) stores Python lists/dicts as JSON text and
hands them back as Python objects on read. Reassign the whole value when
updating; in-place mutation of a loaded list is not tracked.

Version numbering:
CoverProject.latest_version_number is the source of truth for the next
CoverVersion.version_number. Both are written in the same transaction
(see services.CoverService._append_version).
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class LibraryGenerationStatus(str, Enum):
    WAITING = "WAITING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class User(SQLModel, table=True):
    """An account that owns jobs, projects and gallery images."""
    id: str = Field(default_factory=_uuid, primary_key=True)
    email: str = Field(unique=True, index=True)
    name: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column_kwargs={"onupdate": _utcnow})


class ThumbnailJob(SQLModel, table=True):
    """
    One request/response cycle against the image-generation workflow.

    The three input_image_* columns always hold sanitized metadata; when the
    user supplied fewer than three images the last one is repeated.
    """
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    status: JobStatus = Field(default=JobStatus.PENDING)
    aspect_ratio_id: str
    aspect_ratio_string: str
    custom_width: int | None = None
    custom_height: int | None = None
    input_image_1: dict = Field(sa_column=Column(JSON, nullable=False))
    input_image_2: dict = Field(sa_column=Column(JSON, nullable=False))
    input_image_3: dict = Field(sa_column=Column(JSON, nullable=False))
    input_images_metadata: list[dict] = Field(sa_column=Column(JSON, nullable=False))
    fal_request_id: str | None = None
    fal_result_url: str | None = None
    fal_result_urls: list[str] | None = Field(default=None, sa_column=Column(JSON))
    error_message: str | None = None
    project_name: str | None = None
    project_slug: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column_kwargs={"onupdate": _utcnow})

    __table_args__ = (Index("idx_job_user_created", "user_id", "created_at"),)


class RequestLog(SQLModel, table=True):
    """Per-request audit row: latency, status and a summary of the payload."""
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str | None = Field(default=None, foreign_key="user.id")
    endpoint: str
    request_payload_summary: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    response_status: int
    response_time_ms: int
    aspect_ratio_id: str | None = None
    model_id: str | None = None
    input_image_count: int | None = None
    fal_request_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class CoverProject(SQLModel, table=True):
    """A named, slugged container for generation attempts of one user."""
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(foreign_key="user.id")
    name: str
    slug: str
    latest_version_number: int = 0
    library_selected: bool = False
    library_generation_status: LibraryGenerationStatus = Field(default=LibraryGenerationStatus.WAITING)
    library_generation_job_id: str | None = None
    library_generation_queued_at: datetime | None = None
    library_generation_completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column_kwargs={"onupdate": _utcnow})

    __table_args__ = (
        UniqueConstraint("user_id", "slug", name="uq_project_user_slug"),
        Index("idx_project_user_updated", "user_id", "updated_at"),
    )


class CoverVersion(SQLModel, table=True):
    """One saved generation outcome under a project, numbered sequentially."""
    id: str = Field(default_factory=_uuid, primary_key=True)
    project_id: str = Field(foreign_key="coverproject.id", index=True)
    # batch imports create versions without a job
    thumbnail_job_id: str | None = Field(default=None, foreign_key="thumbnailjob.id")
    version_number: int
    label: str
    selected_image_url: str = ""
    generated_image_urls: list[str] | None = Field(default=None, sa_column=Column(JSON))
    source_image_1_url: str | None = None
    source_image_2_url: str | None = None
    source_image_3_url: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column_kwargs={"onupdate": _utcnow})

    __table_args__ = (
        UniqueConstraint("project_id", "version_number", name="uq_version_project_number"),
    )


class GalleryImage(SQLModel, table=True):
    """
    A persisted uploaded or generated asset.

    (user_id, checksum) is unique, so re-uploading the same image is a no-op.
    "metadata" is reserved on declarative classes, hence image_metadata.
    """
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    job_id: str | None = Field(default=None, foreign_key="thumbnailjob.id", index=True)
    project_id: str | None = Field(default=None, foreign_key="coverproject.id", index=True)
    project_name: str | None = None
    project_slug: str | None = None
    is_source_asset: bool = False
    upload_url: str
    checksum: str
    mime_type: str
    size_bytes: int
    width: int | None = None
    height: int | None = None
    aspect_ratio_id: str | None = None
    aspect_ratio_string: str | None = None
    image_metadata: dict | None = Field(default=None, sa_column=Column("metadata", JSON))
    cloudinary_public_id: str | None = None
    cloudinary_asset_id: str | None = None
    cloudinary_folder: str | None = None
    cloudinary_version: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow, sa_column_kwargs={"onupdate": _utcnow})

    __table_args__ = (
        UniqueConstraint("user_id", "checksum", name="uq_gallery_user_checksum"),
        Index("idx_gallery_user_project_slug", "user_id", "project_slug"),
    )
