"""Resume intake: mailbox search, resumable per-message import, enrichment queue."""

from .config import IntakeConfig
from .coordinator import RunCoordinator
from .dedup import ContentAddressedDeduper, content_hash
from .enrichment import Enricher, EnrichmentQueue, EnrichmentWorker, HttpEnricher
from .extraction import DocumentTextExtractor, TextExtractor
from .models import (
    EnrichmentStatus,
    ItemStatus,
    ItemStep,
    RunMode,
    RunStatus,
    RunSummary,
)
from .pipeline import ItemPipeline
from .processor import RunProcessor
from .providers import AttachmentPolicy, EmailProvider, GraphEmailProvider
from .search import SearchOrchestrator
from .service import IntakeService
from .storage import ObjectStorage, S3ObjectStorage

__all__ = [
    "AttachmentPolicy",
    "ContentAddressedDeduper",
    "DocumentTextExtractor",
    "EmailProvider",
    "Enricher",
    "EnrichmentQueue",
    "EnrichmentStatus",
    "EnrichmentWorker",
    "GraphEmailProvider",
    "HttpEnricher",
    "IntakeConfig",
    "IntakeService",
    "ItemPipeline",
    "ItemStatus",
    "ItemStep",
    "ObjectStorage",
    "RunCoordinator",
    "RunMode",
    "RunProcessor",
    "RunStatus",
    "RunSummary",
    "S3ObjectStorage",
    "SearchOrchestrator",
    "TextExtractor",
    "content_hash",
]
