"""ItemPipeline: the resumable per-message state machine.

Each step is a separate transition method that returns the next step and
the side effects it performed.  The item row is committed after every
transition, so a crash resumes at the last committed step and never
repeats a completed side effect such as an upload.

The happy path is none, fetched, saved, uploaded, parsed, persisted.  A
file already imported from the same message completes at "saved"; a
scanned PDF ends at "failed_extract".
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import ImportConfig
from .db.base import insert_ignoring_conflicts, utcnow
from .db.models import ImportItem, Job, JobApplication, Resume
from .dedup import ContentAddressedDeduper, content_hash
from .enrichment import EnrichmentQueue, item_enrichment_status
from .errors import (
    ExtractionError,
    InvalidJobReferenceError,
    NoTextLayerError,
    PoisonError,
    truncate_error,
)
from .extraction import NO_TEXT_LAYER_SENTINEL, TextExtractor, failed_sentinel, truncate_text
from .models import ItemStatus, ItemStep, MessageDetails
from .providers.interface import EmailProvider
from .storage import ObjectStorage, storage_path

logger = structlog.get_logger()


@dataclass
class Transition:
    """Result of one state transition."""

    step: ItemStep
    effects: tuple[str, ...] = ()
    completed: bool = False
    poison_error: str | None = None


@dataclass
class PipelineResult:
    item_id: int
    status: ItemStatus
    step: ItemStep
    resume_id: int | None
    effects: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class _Context:
    """Data fetched during one invocation, so nothing is fetched twice."""

    mailbox: str
    details: MessageDetails | None = None
    data: bytes | None = None


class ItemPipeline:
    """Advances one :class:`ImportItem` as far as it can go.

    Items are expected to be advanced by one caller at a time; the run
    processor guarantees that by handing each item to a single task.
    """

    def __init__(
        self,
        provider: EmailProvider,
        storage: ObjectStorage,
        extractor: TextExtractor,
        queue: EnrichmentQueue,
        config: ImportConfig,
        deduper: ContentAddressedDeduper | None = None,
    ) -> None:
        self._provider = provider
        self._storage = storage
        self._extractor = extractor
        self._queue = queue
        self._config = config
        self._deduper = deduper or ContentAddressedDeduper()
        self._transitions: dict[ItemStep, Callable[[AsyncSession, ImportItem, _Context], Awaitable[Transition]]] = {
            ItemStep.NONE: self._fetch,
            ItemStep.FETCHED: self._save,
            ItemStep.SAVED: self._upload,
            ItemStep.UPLOADED: self._parse,
            ItemStep.PARSED: self._persist,
        }

    async def process(self, session: AsyncSession, item: ImportItem, mailbox: str) -> PipelineResult:
        """Run transitions until the item completes, fails, or reaches a terminal step.

        Ordinary failures mark the item failed with one more attempt and keep
        its committed step.  Poison failures use up every attempt at once.
        :class:`InvalidJobReferenceError` is recorded and then re-raised.
        """
        ctx = _Context(mailbox=mailbox)
        effects: list[str] = []
        log = logger.bind(item_id=item.id, message_id=item.external_message_id, run_id=item.run_id)

        if item.status is ItemStatus.COMPLETED or item.step is ItemStep.FAILED_EXTRACT:
            return self._result(item, effects)

        try:
            if await session.get(Job, item.job_id) is None:
                raise InvalidJobReferenceError(item.job_id)

            item.status = ItemStatus.PENDING
            while True:
                handler = self._transitions.get(item.step)
                if handler is None:
                    # "persisted" without completion only happens after a
                    # crash between the two writes.
                    item.status = ItemStatus.COMPLETED
                    await session.commit()
                    break

                previous = item.step
                transition = await handler(session, item, ctx)
                effects.extend(transition.effects)
                item.step = transition.step

                if transition.poison_error is not None:
                    item.status = ItemStatus.FAILED
                    item.attempts = self._config.max_item_attempts
                    item.last_error = truncate_error(transition.poison_error)
                    await session.commit()
                    log.warning("item_poisoned", step=item.step.value, error=item.last_error)
                    break

                if transition.completed:
                    item.status = ItemStatus.COMPLETED
                    item.last_error = None
                await session.commit()
                log.debug(
                    "item_step_committed",
                    from_step=previous.value,
                    to_step=item.step.value,
                    effects=list(transition.effects),
                )
                if transition.completed:
                    log.info("item_completed", step=item.step.value, resume_id=item.resume_id)
                    break

        except InvalidJobReferenceError as exc:
            await self._record_failure(session, item, exc, poison=True)
            log.error("item_invalid_job", job_id=item.job_id)
            raise
        except PoisonError as exc:
            await self._record_failure(session, item, exc, poison=True)
            log.warning("item_poisoned", step=item.step.value, error=item.last_error)
        except Exception as exc:
            await self._record_failure(session, item, exc, poison=False)
            log.warning(
                "item_failed",
                step=item.step.value,
                attempts=item.attempts,
                error=item.last_error,
                exc_info=True,
            )

        return self._result(item, effects)

    async def _record_failure(
        self,
        session: AsyncSession,
        item: ImportItem,
        exc: BaseException,
        *,
        poison: bool,
    ) -> None:
        await session.rollback()
        # Reload the committed state so the furthest completed step survives.
        await session.refresh(item)
        item.status = ItemStatus.FAILED
        item.attempts = self._config.max_item_attempts if poison else item.attempts + 1
        item.last_error = truncate_error(exc)
        await session.commit()

    @staticmethod
    def _result(item: ImportItem, effects: list[str]) -> PipelineResult:
        return PipelineResult(
            item_id=item.id,
            status=item.status,
            step=item.step,
            resume_id=item.resume_id,
            effects=effects,
            error=item.last_error,
        )

    # ------------------------------------------------------------------
    # Cached fetches
    # ------------------------------------------------------------------

    async def _details(self, item: ImportItem, ctx: _Context) -> MessageDetails:
        if ctx.details is None:
            ctx.details = await self._provider.get_message(ctx.mailbox, item.external_message_id)
        return ctx.details

    async def _bytes(self, item: ImportItem, ctx: _Context) -> bytes:
        if ctx.data is None:
            assert item.attachment_id is not None
            ctx.data = await self._provider.get_attachment_bytes(
                ctx.mailbox, item.external_message_id, item.attachment_id
            )
        return ctx.data

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _fetch(self, session: AsyncSession, item: ImportItem, ctx: _Context) -> Transition:
        details = await self._details(item, ctx)
        item.subject = details.message.subject
        item.received_at = details.message.received_at
        if not details.eligible_attachments:
            return Transition(ItemStep.FETCHED, ("message_fetched",), completed=True)

        attachment = details.eligible_attachments[0]
        item.attachment_id = attachment.id
        item.attachment_name = attachment.name
        item.attachment_content_type = attachment.content_type
        return Transition(ItemStep.FETCHED, ("message_fetched",))

    async def _save(self, session: AsyncSession, item: ImportItem, ctx: _Context) -> Transition:
        data = await self._bytes(item, ctx)
        item.content_hash = content_hash(data)

        existing = await self._deduper.find_existing(session, item.content_hash, item.external_message_id)
        if existing is None:
            return Transition(ItemStep.SAVED, ("attachment_downloaded",))

        item.resume_id = existing.id
        effects = ["attachment_downloaded", "duplicate_found"]
        if existing.raw_text == NO_TEXT_LAYER_SENTINEL:
            # An earlier run already found no text layer in this file.
            effects.append("text_missing")
            return Transition(ItemStep.FAILED_EXTRACT, tuple(effects), poison_error=str(NoTextLayerError()))
        if await self._link(session, item.job_id, existing.id):
            effects.append("application_linked")
        effects.append(await self._enqueue(session, item, existing.id))
        return Transition(ItemStep.SAVED, tuple(effects), completed=True)

    async def _upload(self, session: AsyncSession, item: ImportItem, ctx: _Context) -> Transition:
        data = await self._bytes(item, ctx)
        assert item.content_hash is not None
        path = storage_path(item.job_id, item.content_hash, item.attachment_name or "attachment")
        item.storage_path = await self._storage.put(
            path,
            data,
            item.attachment_content_type or "application/octet-stream",
        )
        return Transition(ItemStep.UPLOADED, ("file_uploaded",))

    async def _parse(self, session: AsyncSession, item: ImportItem, ctx: _Context) -> Transition:
        assert item.content_hash is not None and item.storage_path is not None
        file_name = item.attachment_name or "attachment"

        resume = await self._deduper.find_existing(session, item.content_hash, item.external_message_id)
        if resume is not None and resume.parsed_at is not None:
            # Created and parsed by an earlier invocation that crashed before
            # committing the step.
            item.resume_id = resume.id
            return Transition(ItemStep.PARSED, ())

        # Extract before writing anything so no lock is held during the call.
        data = await self._bytes(item, ctx)
        effects: list[str] = []
        poison_error: str | None = None
        try:
            text = await self._extractor.extract(data, file_name, item.attachment_content_type)
        except NoTextLayerError as exc:
            text = NO_TEXT_LAYER_SENTINEL
            poison_error = str(exc)
            effects.append("text_missing")
        except Exception as exc:
            # Any other extractor failure leaves a sentinel and the item carries on.
            text = failed_sentinel(truncate_error(exc, 200))
            effects.append("text_extraction_failed")
            logger.warning(
                "text_extraction_failed",
                message_id=item.external_message_id,
                file_name=file_name,
                error=str(exc),
                exc_info=not isinstance(exc, (ExtractionError, PoisonError)),
            )
        else:
            text = truncate_text(text, self._config.max_text_chars)
            effects.append("text_extracted")

        if resume is None:
            resume = Resume(
                content_hash=item.content_hash,
                source_message_id=item.external_message_id,
                storage_path=item.storage_path,
                file_name=file_name,
                content_type=item.attachment_content_type,
            )
            session.add(resume)
            effects.insert(0, "resume_created")
        resume.file_size = len(data)
        resume.raw_text = text
        resume.parsed_at = utcnow()
        await session.flush()
        item.resume_id = resume.id

        if poison_error is not None:
            return Transition(ItemStep.FAILED_EXTRACT, tuple(effects), poison_error=poison_error)
        return Transition(ItemStep.PARSED, tuple(effects))

    async def _persist(self, session: AsyncSession, item: ImportItem, ctx: _Context) -> Transition:
        assert item.resume_id is not None
        effects = [await self._enqueue(session, item, item.resume_id)]
        if await self._link(session, item.job_id, item.resume_id):
            effects.append("application_linked")
        return Transition(ItemStep.PERSISTED, tuple(effects), completed=True)

    # ------------------------------------------------------------------
    # Side effects shared by several transitions
    # ------------------------------------------------------------------

    async def _link(self, session: AsyncSession, job_id: int, resume_id: int) -> bool:
        """Create the job application.  An existing link is not an error."""
        result = await session.execute(
            select(JobApplication.id).where(
                JobApplication.job_id == job_id,
                JobApplication.resume_id == resume_id,
            )
        )
        if result.first() is not None:
            return False
        return await insert_ignoring_conflicts(
            session,
            JobApplication,
            ["job_id", "resume_id"],
            job_id=job_id,
            resume_id=resume_id,
            source="email",
        )

    async def _enqueue(self, session: AsyncSession, item: ImportItem, resume_id: int) -> str:
        decision, job = await self._queue.enqueue(session, resume_id, item.job_id, item.run_id)
        item.enrichment_status = item_enrichment_status(job.status)
        item.enrichment_next_retry_at = job.next_retry_at
        item.enrichment_error = job.last_error
        return f"enrichment_{decision.value}"
