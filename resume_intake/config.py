"""Intake configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars,
which is the natural config mechanism in Kubernetes.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class GraphConfig(BaseSettings):
    """Microsoft Graph mailbox access (client-credentials flow)."""

    model_config = {"env_prefix": "GRAPH_"}

    tenant_id: str = Field(default="", description="Azure AD tenant ID")
    client_id: str = Field(default="", description="App registration client ID")
    client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="App registration client secret",
    )
    base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Graph API base URL",
    )
    token_url_template: str = Field(
        default="https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token",
        description="OAuth2 token endpoint, formatted with tenant_id",
    )
    page_size: int = Field(default=50, description="Messages requested per Graph page")
    folder_page_size: int = Field(default=200, description="Folders requested per Graph page")
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    default_retry_after_seconds: float = Field(
        default=1.0,
        description="Wait applied to a 429 response without a Retry-After header",
    )
    max_rate_limit_retries: int = Field(
        default=5,
        description="Attempts per Graph request while throttled or on transport errors",
    )


class S3Config(BaseSettings):
    """S3 storage settings for resume files."""

    model_config = {"env_prefix": "S3_"}

    bucket: str = Field(default="resumes", description="S3 bucket name")
    prefix: str = Field(default="", description="Optional key prefix prepended to storage paths")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint URL (e.g. for MinIO)",
    )


class ImportConfig(BaseSettings):
    """Mailbox scan and item pipeline settings."""

    model_config = {"env_prefix": "IMPORT_"}

    allowed_extensions: str = Field(
        default="pdf,docx",
        description="Comma-separated attachment extensions eligible for import",
    )
    max_attachment_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Attachments larger than this are ineligible",
    )
    lookback_days: int = Field(default=365, description="Only messages received within this window")
    max_messages: int = Field(default=5000, description="Hard cap on messages enumerated per run")
    max_search_pages: int = Field(
        default=50,
        description="Safety ceiling on continuation pages followed in graph-search mode",
    )
    item_concurrency: int = Field(default=3, description="Items advanced concurrently within a run")
    batch_size: int = Field(default=25, description="Items loaded per processing batch")
    max_item_attempts: int = Field(default=3, description="Attempts before an item is terminal-failed")
    max_text_chars: int = Field(
        default=2 * 1024 * 1024,
        description="Extracted text longer than this is truncated",
    )
    keep_finished_runs: int = Field(
        default=10,
        description="Terminal runs kept per job; older ones are pruned",
    )
    dispatch_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between dispatcher slices",
    )

    @property
    def extension_list(self) -> list[str]:
        return [ext.strip().lower().lstrip(".") for ext in self.allowed_extensions.split(",") if ext.strip()]


class ExtractionConfig(BaseSettings):
    """Text extraction limits."""

    model_config = {"env_prefix": "EXTRACT_"}

    pdf_page_cap: int = Field(default=15, description="Maximum PDF pages read")
    timeout_seconds: float = Field(default=3.0, description="Wall-clock limit per extraction")
    min_text_chars: int = Field(
        default=50,
        description="PDF text shorter than this is treated as unreadable",
    )


class EnrichmentConfig(BaseSettings):
    """AI enrichment queue and worker settings."""

    model_config = {"env_prefix": "ENRICH_"}

    base_url: str = Field(
        default="http://enrichment:8000",
        description="Base URL of the enrichment service",
    )
    http_timeout_seconds: float = Field(
        default=60.0,
        description="Ordinary network timeout for the enrichment HTTP client",
    )
    timeout_seconds: float = Field(
        default=20.0,
        description="Hard wall-clock limit for a single enrichment call",
    )
    max_attempts: int = Field(default=5, description="Attempts before a job is marked error")
    base_backoff_seconds: float = Field(default=15.0, description="First retry delay")
    max_backoff_seconds: float = Field(default=300.0, description="Upper bound on retry delay")
    concurrency: int = Field(default=3, description="Jobs enriched concurrently per slice")
    poll_interval_seconds: float = Field(default=30.0, description="Seconds between worker slices")
    stale_after_seconds: float = Field(
        default=600.0,
        description="Running jobs older than this are returned to pending",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per transient operation")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=30.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class DatabaseConfig(BaseSettings):
    """Relational store settings."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./resume_intake.db",
        description="Async SQLAlchemy URL",
    )
    echo: bool = Field(default=False, description="Log emitted SQL")


class IntakeConfig(BaseSettings):
    """Root configuration for the intake service.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "INTAKE_"}

    name: str = Field(default="resume-intake", description="Service name used in logs and probes")
    health_port: int = Field(default=8080, description="Port for K8s health probe endpoints")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="JSON log output (False for dev console)")

    graph: GraphConfig = Field(default_factory=GraphConfig)
    s3: S3Config = Field(default_factory=S3Config)
    imports: ImportConfig = Field(default_factory=ImportConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
