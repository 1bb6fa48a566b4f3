"""SQLAlchemy ORM models for the intake schema."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..models import (
    EnrichmentStatus,
    ItemEnrichmentStatus,
    ItemStatus,
    ItemStep,
    RunMode,
    RunStatus,
)
from .base import Base, UTCDateTime, status_enum, utcnow

_RUNNING = text("status = 'running'")
_ACTIVE = text("status IN ('enqueued', 'running')")


class Job(Base):
    """A job posting that imported resumes are attached to."""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ImportRun(Base):
    __tablename__ = "import_runs"
    __table_args__ = (
        # At most one running scan system-wide.
        Index(
            "uq_import_runs_single_running",
            "status",
            unique=True,
            sqlite_where=_RUNNING,
            postgresql_where=_RUNNING,
        ),
        # At most one enqueued-or-running scan per job.
        Index(
            "uq_import_runs_job_active",
            "job_id",
            unique=True,
            sqlite_where=_ACTIVE,
            postgresql_where=_ACTIVE,
        ),
        Index("ix_import_runs_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    mailbox: Mapped[str] = mapped_column(Text, nullable=False)
    search_text: Mapped[str | None] = mapped_column(Text)
    mode: Mapped[RunMode] = mapped_column(status_enum(RunMode), nullable=False)
    lookback_days: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        status_enum(RunStatus),
        nullable=False,
        default=RunStatus.ENQUEUED,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_messages: Mapped[int | None] = mapped_column(Integer)
    processed_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_error: Mapped[str | None] = mapped_column(Text)
    enumerated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class ImportItem(Base):
    __tablename__ = "import_items"
    __table_args__ = (
        UniqueConstraint("run_id", "external_message_id", name="uq_import_items_run_message"),
        Index("ix_import_items_run_status", "run_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_message_id: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    status: Mapped[ItemStatus] = mapped_column(
        status_enum(ItemStatus),
        nullable=False,
        default=ItemStatus.PENDING,
    )
    step: Mapped[ItemStep] = mapped_column(
        status_enum(ItemStep),
        nullable=False,
        default=ItemStep.NONE,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Captured at "fetched" so later steps can resume without re-listing.
    attachment_id: Mapped[str | None] = mapped_column(Text)
    attachment_name: Mapped[str | None] = mapped_column(Text)
    attachment_content_type: Mapped[str | None] = mapped_column(Text)
    # Captured at "saved" / "uploaded".
    content_hash: Mapped[str | None] = mapped_column(String(64))
    storage_path: Mapped[str | None] = mapped_column(Text)

    resume_id: Mapped[int | None] = mapped_column(ForeignKey("resumes.id", ondelete="SET NULL"))

    enrichment_status: Mapped[ItemEnrichmentStatus] = mapped_column(
        status_enum(ItemEnrichmentStatus),
        nullable=False,
        default=ItemEnrichmentStatus.NOT_STARTED,
    )
    enrichment_next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    enrichment_error: Mapped[str | None] = mapped_column(Text)

    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Resume(Base):
    __tablename__ = "resumes"
    __table_args__ = (
        UniqueConstraint("content_hash", "source_message_id", name="uq_resumes_hash_message"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_message_id: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str | None] = mapped_column(Text)
    file_size: Mapped[int | None] = mapped_column(Integer)
    raw_text: Mapped[str | None] = mapped_column(Text)
    parsed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class JobApplication(Base):
    __tablename__ = "job_applications"
    __table_args__ = (UniqueConstraint("job_id", "resume_id", name="uq_job_applications_job_resume"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    resume_id: Mapped[int] = mapped_column(ForeignKey("resumes.id", ondelete="CASCADE"), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="email")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class EnrichmentJob(Base):
    __tablename__ = "enrichment_jobs"
    __table_args__ = (
        UniqueConstraint("resume_id", "job_id", name="uq_enrichment_jobs_resume_job"),
        Index("ix_enrichment_jobs_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resume_id: Mapped[int] = mapped_column(ForeignKey("resumes.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    run_id: Mapped[str | None] = mapped_column(ForeignKey("import_runs.id", ondelete="SET NULL"))
    status: Mapped[EnrichmentStatus] = mapped_column(
        status_enum(EnrichmentStatus),
        nullable=False,
        default=EnrichmentStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_error: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
