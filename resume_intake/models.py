"""Value types and state enums shared across the intake package."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Lifecycle of one mailbox scan."""

    ENQUEUED = "enqueued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED})


class RunMode(str, Enum):
    """How a run decides which messages to examine."""

    GRAPH_SEARCH = "graph-search"
    DEEP_SCAN = "deep-scan"


class ItemStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemStep(str, Enum):
    """Furthest committed pipeline step of an item.

    Steps advance in declaration order; ``FAILED_EXTRACT`` is a terminal
    side branch reached only from the extraction step.
    """

    NONE = "none"
    FETCHED = "fetched"
    SAVED = "saved"
    UPLOADED = "uploaded"
    PARSED = "parsed"
    PERSISTED = "persisted"
    FAILED_EXTRACT = "failed_extract"


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    INGEST_FAILED = "ingest_failed"
    SCAN_FAILED = "scan_failed"
    ERROR = "error"


class ItemEnrichmentStatus(str, Enum):
    """Mirror of the enrichment job state kept on each item."""

    NOT_STARTED = "not_started"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class EnqueueDecision(str, Enum):
    """Outcome of :meth:`EnrichmentQueue.enqueue`."""

    CREATED = "created"
    REVIVED = "revived"
    SKIPPED = "skipped"


# ------------------------------------------------------------------
# Provider-facing types
# ------------------------------------------------------------------


class EmailMessage(BaseModel):
    """Message metadata as returned by a provider search or listing."""

    external_id: str = Field(description="Provider message ID")
    subject: str = Field(default="")
    from_name: str = Field(default="")
    from_address: str = Field(default="")
    received_at: datetime = Field(description="Receipt timestamp (UTC)")
    has_attachments: bool = Field(default=False)
    folder_id: str | None = Field(default=None, description="Folder the message was found in")
    thread_id: str | None = Field(default=None)


class EmailAttachment(BaseModel):
    """Attachment metadata (no bytes)."""

    id: str
    name: str
    content_type: str = Field(default="application/octet-stream")
    size: int = Field(default=0, description="Size in bytes as reported by the provider")
    is_file: bool = Field(
        default=True,
        description="False for item/reference attachments (calendar items, links, ...)",
    )


class MessageDetails(BaseModel):
    """A message together with its *eligible* attachments."""

    message: EmailMessage
    eligible_attachments: list[EmailAttachment] = Field(default_factory=list)


class MessagePage(BaseModel):
    """One page of provider results with an optional continuation cursor."""

    messages: list[EmailMessage] = Field(default_factory=list)
    next_cursor: str | None = Field(default=None)


class MailFolder(BaseModel):
    id: str
    display_name: str
    parent_id: str | None = Field(default=None)
    child_folder_count: int = Field(default=0)
    well_known_name: str | None = Field(default=None)


class SearchResult(BaseModel):
    """Bounded, ordered candidate list produced by the search orchestrator."""

    messages: list[EmailMessage] = Field(default_factory=list)
    mode_used: RunMode
    raw_count: int = Field(default=0, description="Messages seen before local filtering")
    pages_fetched: int = Field(default=0)
    truncated: bool = Field(default=False, description="A page ceiling or the result cap was hit")
    relaxed_filter: bool = Field(
        default=False,
        description="The provider rejected the restrictive filter and the query was retried without it",
    )
    stopped_early: bool = Field(default=False, description="Cancellation stopped the scan")


# ------------------------------------------------------------------
# Enrichment
# ------------------------------------------------------------------


class JobContext(BaseModel):
    """Job posting context passed to the enrichment service."""

    job_id: int
    job_title: str
    job_description_short: str = Field(default="")


class EnrichmentOutcome(BaseModel):
    """Result of one enrichment call."""

    success: bool
    error: str | None = Field(default=None)
    retryable: bool = Field(default=False)
    terminal_status: EnrichmentStatus | None = Field(
        default=None,
        description="Override for non-retryable failures (ingest_failed / scan_failed)",
    )
    details: dict[str, Any] = Field(default_factory=dict)


# ------------------------------------------------------------------
# Reporting
# ------------------------------------------------------------------


class EnrichmentJobEntry(BaseModel):
    resume_id: int
    status: EnrichmentStatus
    error: str | None = None
    attempts: int = 0


class ItemFailureEntry(BaseModel):
    message_id: str
    step: ItemStep
    error: str | None = None


class RunSummary(BaseModel):
    """Operator-facing roll-up of one run."""

    run_id: str
    status: RunStatus
    total_messages: int | None = None
    processed_messages: int = 0
    failed_messages: int = 0
    progress: float = 0.0
    enrichment_total: int = 0
    enrichment_failed: list[EnrichmentJobEntry] = Field(default_factory=list)
    enrichment_retrying: list[EnrichmentJobEntry] = Field(default_factory=list)
    item_failures: list[ItemFailureEntry] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ------------------------------------------------------------------
# Service
# ------------------------------------------------------------------


class ServiceStatus(str, Enum):
    """Runtime status of the intake service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health probe."""

    service_name: str = Field(description="Name of the service")
    status: ServiceStatus = Field(description="Current service status")
    uptime_seconds: float = Field(description="Seconds since the service started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Dispatcher state, backlog and enrichment outcomes",
    )
