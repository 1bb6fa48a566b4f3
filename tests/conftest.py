"""Shared test fixtures for the resume intake test suite."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from resume_intake.config import (
    DatabaseConfig,
    EnrichmentConfig,
    ExtractionConfig,
    ImportConfig,
    IntakeConfig,
    RetryConfig,
)
from resume_intake.coordinator import RunCoordinator
from resume_intake.db.engine import DatabaseEngine
from resume_intake.db.models import ImportItem, ImportRun, Job
from resume_intake.enrichment import Enricher, EnrichmentQueue, EnrichmentWorker
from resume_intake.errors import InefficientFilterError
from resume_intake.extraction import TextExtractor
from resume_intake.models import (
    EmailAttachment,
    EmailMessage,
    EnrichmentOutcome,
    ItemStatus,
    ItemStep,
    JobContext,
    MailFolder,
    MessageDetails,
    MessagePage,
    RunMode,
    RunStatus,
)
from resume_intake.pipeline import ItemPipeline
from resume_intake.processor import RunProcessor
from resume_intake.providers.eligibility import AttachmentPolicy
from resume_intake.providers.interface import EmailProvider
from resume_intake.search import SearchOrchestrator
from resume_intake.storage import ObjectStorage

MAILBOX = "recruiting@example.com"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
RESUME_TEXT = "Jane Doe\nSenior Software Engineer\n" + "Built distributed systems in Python. " * 5

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------


def make_message(
    external_id: str,
    *,
    subject: str = "Application: Senior Engineer",
    received_at: datetime | None = None,
    has_attachments: bool = True,
    folder_id: str | None = "inbox",
) -> EmailMessage:
    return EmailMessage(
        external_id=external_id,
        subject=subject,
        from_name="Jane Doe",
        from_address="jane@example.com",
        received_at=received_at or datetime.now(timezone.utc) - timedelta(days=1),
        has_attachments=has_attachments,
        folder_id=folder_id,
    )


def attachment(
    attachment_id: str = "att-1",
    name: str = "resume.pdf",
    data: bytes = b"%PDF-1.4 resume bytes",
    *,
    content_type: str = PDF,
    size: int | None = None,
    is_file: bool = True,
) -> tuple[EmailAttachment, bytes]:
    meta = EmailAttachment(
        id=attachment_id,
        name=name,
        content_type=content_type,
        size=len(data) if size is None else size,
        is_file=is_file,
    )
    return meta, data


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeEmailProvider(EmailProvider):
    """In-memory mailbox with call counters."""

    def __init__(self, policy: AttachmentPolicy | None = None, page_size: int = 2) -> None:
        self.policy = policy or AttachmentPolicy(["pdf", "docx"], 10 * 1024 * 1024)
        self.page_size = page_size
        self.messages: dict[str, EmailMessage] = {}
        self.attachments: dict[str, list[tuple[EmailAttachment, bytes]]] = {}
        self.folders: list[MailFolder] = []
        self.search_results: list[EmailMessage] | None = None
        self.reject_restrictive_filter = False
        self.fail_downloads: Exception | None = None
        self.calls: Counter[str] = Counter()
        self.search_filters: list[bool] = []

    def add_message(
        self,
        message: EmailMessage,
        attachments: list[tuple[EmailAttachment, bytes]] | None = None,
    ) -> EmailMessage:
        self.messages[message.external_id] = message
        self.attachments[message.external_id] = attachments or []
        return message

    def add_folder(self, folder_id: str, name: str, parent_id: str | None = None) -> MailFolder:
        folder = MailFolder(id=folder_id, display_name=name, parent_id=parent_id)
        self.folders.append(folder)
        if parent_id is not None:
            for i, parent in enumerate(self.folders):
                if parent.id == parent_id:
                    self.folders[i] = parent.model_copy(
                        update={"child_folder_count": parent.child_folder_count + 1}
                    )
        return folder

    def _page(self, items: list[EmailMessage], cursor: str | None) -> MessagePage:
        start = int(cursor or 0)
        end = start + self.page_size
        return MessagePage(
            messages=items[start:end],
            next_cursor=str(end) if end < len(items) else None,
        )

    async def search_messages(self, mailbox, query, *, restrict_to_attachments=True, cursor=None):
        self.calls["search_messages"] += 1
        self.search_filters.append(restrict_to_attachments)
        if restrict_to_attachments and self.reject_restrictive_filter:
            raise InefficientFilterError(400, '{"error": {"code": "InefficientFilter"}}')
        items = self.search_results if self.search_results is not None else list(self.messages.values())
        if restrict_to_attachments:
            items = [m for m in items if m.has_attachments]
        return self._page(items, cursor)

    async def list_folders(self, mailbox, parent_id=None):
        self.calls["list_folders"] += 1
        return [f for f in self.folders if f.parent_id == parent_id]

    async def list_folder_messages(self, mailbox, folder_id, *, since, cursor=None):
        self.calls["list_folder_messages"] += 1
        items = sorted(
            (m for m in self.messages.values() if m.folder_id == folder_id),
            key=lambda m: m.received_at,
            reverse=True,
        )
        return self._page(items, cursor)

    async def get_message(self, mailbox, external_id):
        self.calls["get_message"] += 1
        message = self.messages[external_id]
        metas = [meta for meta, _ in self.attachments.get(external_id, [])]
        return MessageDetails(message=message, eligible_attachments=self.policy.filter(metas))

    async def get_attachment_bytes(self, mailbox, message_id, attachment_id):
        self.calls["get_attachment_bytes"] += 1
        if self.fail_downloads is not None:
            raise self.fail_downloads
        for meta, data in self.attachments[message_id]:
            if meta.id == attachment_id:
                return data
        raise KeyError(attachment_id)


class FakeStorage(ObjectStorage):
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.put_calls = 0
        self.fail_with: Exception | None = None

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        self.put_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.objects.setdefault(path, data)
        return f"memory://{path}"


class FakeExtractor(TextExtractor):
    def __init__(self, text: str = RESUME_TEXT) -> None:
        self.text = text
        self.errors: dict[str, Exception] = {}
        self.calls = 0

    async def extract(self, data: bytes, filename: str, content_type: str | None = None) -> str:
        self.calls += 1
        if filename in self.errors:
            raise self.errors[filename]
        return self.text


class FakeEnricher(Enricher):
    """Returns queued outcomes (or raises queued exceptions), success by default."""

    def __init__(self, outcomes: list | None = None, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: list[tuple[int, JobContext]] = []

    async def run(self, resume_id: int, context: JobContext, timeout: float) -> EnrichmentOutcome:
        self.calls.append((resume_id, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return EnrichmentOutcome(success=True)


# ------------------------------------------------------------------
# Config + infrastructure
# ------------------------------------------------------------------


@pytest.fixture
def import_config() -> ImportConfig:
    return ImportConfig(
        allowed_extensions="pdf,docx",
        max_attachment_bytes=10 * 1024 * 1024,
        lookback_days=30,
        max_messages=100,
        max_search_pages=5,
        item_concurrency=2,
        batch_size=10,
        max_item_attempts=3,
        keep_finished_runs=10,
    )


@pytest.fixture
def enrichment_config() -> EnrichmentConfig:
    return EnrichmentConfig(
        timeout_seconds=0.2,
        max_attempts=3,
        base_backoff_seconds=15.0,
        max_backoff_seconds=300.0,
        concurrency=3,
        stale_after_seconds=600.0,
    )


@pytest.fixture
def intake_config(tmp_path, import_config, enrichment_config) -> IntakeConfig:
    return IntakeConfig(
        name="intake-test",
        health_port=18080,
        log_json=False,
        imports=import_config,
        enrichment=enrichment_config,
        extraction=ExtractionConfig(),
        retry=RetryConfig(max_attempts=2, initial_wait_seconds=0.01, max_wait_seconds=0.05),
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path}/intake.db"),
    )


@pytest.fixture
async def db(intake_config: IntakeConfig):
    engine = DatabaseEngine(intake_config.database)
    await engine.create_all()
    yield engine
    await engine.close()


async def create_job(db: DatabaseEngine, title: str = "Senior Engineer", description: str | None = None) -> int:
    async with db.session() as session:
        job = Job(title=title, description=description or "Build and run the ingestion platform.")
        session.add(job)
        await session.commit()
        return job.id


async def create_run(
    db: DatabaseEngine,
    job_id: int,
    *,
    status: RunStatus = RunStatus.RUNNING,
    search_text: str | None = "Engineer",
    created_at: datetime | None = None,
) -> str:
    async with db.session() as session:
        run = ImportRun(
            job_id=job_id,
            mailbox=MAILBOX,
            search_text=search_text,
            mode=RunMode.GRAPH_SEARCH if search_text else RunMode.DEEP_SCAN,
            lookback_days=30,
            status=status,
        )
        if created_at is not None:
            run.created_at = created_at
        session.add(run)
        await session.commit()
        return run.id


async def create_item(
    db: DatabaseEngine,
    run_id: str,
    job_id: int,
    message_id: str,
    **values,
) -> int:
    async with db.session() as session:
        item = ImportItem(
            run_id=run_id,
            job_id=job_id,
            external_message_id=message_id,
            status=values.pop("status", ItemStatus.PENDING),
            step=values.pop("step", ItemStep.NONE),
            **values,
        )
        session.add(item)
        await session.commit()
        return item.id


@pytest.fixture
async def job_id(db: DatabaseEngine) -> int:
    return await create_job(db)


@pytest.fixture
def provider() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def enricher() -> FakeEnricher:
    return FakeEnricher()


@pytest.fixture
def queue() -> EnrichmentQueue:
    return EnrichmentQueue()


@pytest.fixture
def pipeline(provider, storage, extractor, queue, import_config) -> ItemPipeline:
    return ItemPipeline(provider, storage, extractor, queue, import_config)


@pytest.fixture
def coordinator(db, import_config) -> RunCoordinator:
    return RunCoordinator(db, import_config)


@pytest.fixture
def search(provider, import_config) -> SearchOrchestrator:
    return SearchOrchestrator(provider, import_config)


@pytest.fixture
def processor(db, coordinator, search, pipeline, import_config) -> RunProcessor:
    return RunProcessor(db, coordinator, search, pipeline, import_config)


@pytest.fixture
def worker(db, enricher, enrichment_config) -> EnrichmentWorker:
    return EnrichmentWorker(db, enricher, enrichment_config)
