"""Enrichment queue and worker.

Ingestion hands finished resumes to the queue; the worker consumes due
jobs on its own schedule, so enrichment latency never slows ingestion.
Every attempt is recorded on the :class:`EnrichmentJob` row and mirrored
onto the items that produced the resume.
"""

from __future__ import annotations

import abc
import asyncio
from datetime import datetime, timedelta

import httpx
import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import EnrichmentConfig
from .db.base import insert_ignoring_conflicts, utcnow
from .db.engine import DatabaseEngine
from .db.models import EnrichmentJob, ImportItem, Job, Resume
from .errors import EnrichmentTimeoutError, RetryableError, truncate_error
from .extraction import NO_TEXT_LAYER_SENTINEL, is_sentinel
from .models import (
    EnqueueDecision,
    EnrichmentOutcome,
    EnrichmentStatus,
    ItemEnrichmentStatus,
    JobContext,
)

logger = structlog.get_logger()

JOB_DESCRIPTION_LIMIT = 500

_ITEM_STATUS = {
    EnrichmentStatus.PENDING: ItemEnrichmentStatus.QUEUED,
    EnrichmentStatus.RUNNING: ItemEnrichmentStatus.IN_PROGRESS,
    EnrichmentStatus.SUCCEEDED: ItemEnrichmentStatus.SUCCEEDED,
    EnrichmentStatus.INGEST_FAILED: ItemEnrichmentStatus.FAILED,
    EnrichmentStatus.SCAN_FAILED: ItemEnrichmentStatus.FAILED,
    EnrichmentStatus.ERROR: ItemEnrichmentStatus.FAILED,
}

# A running job is left to its worker; re-enqueueing it would run it twice.
_NOT_REVIVABLE = (EnrichmentStatus.SUCCEEDED, EnrichmentStatus.RUNNING)


def item_enrichment_status(status: EnrichmentStatus) -> ItemEnrichmentStatus:
    return _ITEM_STATUS[status]


def backoff_delay(attempts: int, config: EnrichmentConfig) -> float:
    """``min(max_backoff, base * 2^(attempts-1))`` in seconds."""
    exponent = max(0, attempts - 1)
    return min(config.max_backoff_seconds, config.base_backoff_seconds * (2**exponent))


def job_context(job: Job) -> JobContext:
    return JobContext(
        job_id=job.id,
        job_title=job.title,
        job_description_short=(job.description or "")[:JOB_DESCRIPTION_LIMIT],
    )


async def mirror_to_items(session: AsyncSession, job: EnrichmentJob) -> None:
    """Copy the job's state onto every item that produced its resume."""
    await session.execute(
        update(ImportItem)
        .where(ImportItem.resume_id == job.resume_id, ImportItem.job_id == job.job_id)
        .values(
            enrichment_status=item_enrichment_status(job.status),
            enrichment_next_retry_at=job.next_retry_at,
            enrichment_error=job.last_error,
        )
        .execution_options(synchronize_session=False)
    )


# ------------------------------------------------------------------
# Enricher
# ------------------------------------------------------------------


class Enricher(abc.ABC):
    """The downstream AI enrichment call."""

    @abc.abstractmethod
    async def run(self, resume_id: int, context: JobContext, timeout: float) -> EnrichmentOutcome:
        ...

    async def close(self) -> None:
        """Release network resources.  Default is a no-op."""


class HttpEnricher(Enricher):
    """Calls the enrichment service over HTTP.

    5xx, 429 and transport failures are reported as retryable; any other
    non-2xx answer is final.
    """

    def __init__(self, config: EnrichmentConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=httpx.Timeout(self._config.http_timeout_seconds),
        )
        logger.info("enrichment_client_started", base_url=self._config.base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("enrichment_client_stopped")

    async def run(self, resume_id: int, context: JobContext, timeout: float) -> EnrichmentOutcome:
        assert self._client is not None, "Client not started"
        try:
            response = await self._client.post(
                "/v1/enrich",
                json={
                    "resume_id": resume_id,
                    "job": context.model_dump(),
                    "timeout_ms": int(timeout * 1000),
                },
            )
        except httpx.TransportError as exc:
            return EnrichmentOutcome(success=False, error=f"transport error: {exc}", retryable=True)

        if response.is_success:
            body = response.json() if response.content else {}
            return EnrichmentOutcome(success=True, details=body if isinstance(body, dict) else {})

        retryable = response.status_code == 429 or response.status_code >= 500
        terminal: EnrichmentStatus | None = None
        if not retryable:
            try:
                reported = response.json().get("status")
            except ValueError:
                reported = None
            if reported in (EnrichmentStatus.INGEST_FAILED.value, EnrichmentStatus.SCAN_FAILED.value):
                terminal = EnrichmentStatus(reported)
        return EnrichmentOutcome(
            success=False,
            error=f"enrichment returned {response.status_code}: {response.text[:200]}",
            retryable=retryable,
            terminal_status=terminal,
        )


# ------------------------------------------------------------------
# Queue
# ------------------------------------------------------------------


class EnrichmentQueue:
    """Producer side: create or revive one job per (resume, job) pair."""

    async def enqueue(
        self,
        session: AsyncSession,
        resume_id: int,
        job_id: int,
        run_id: str | None = None,
    ) -> tuple[EnqueueDecision, EnrichmentJob]:
        """Make sure a job for the pair is pending unless it succeeded or is running.

        Changes are flushed, not committed; the caller owns the transaction.
        """
        existing = await self._get(session, resume_id, job_id)
        now = utcnow()

        if existing is None:
            created = await insert_ignoring_conflicts(
                session,
                EnrichmentJob,
                ["resume_id", "job_id"],
                resume_id=resume_id,
                job_id=job_id,
                run_id=run_id,
                status=EnrichmentStatus.PENDING,
                attempts=0,
                next_retry_at=now,
            )
            existing = await self._get(session, resume_id, job_id)
            assert existing is not None
            if created:
                logger.info("enrichment_enqueued", resume_id=resume_id, job_id=job_id, run_id=run_id)
                return EnqueueDecision.CREATED, existing

        if existing.status in _NOT_REVIVABLE:
            logger.debug(
                "enrichment_enqueue_skipped",
                resume_id=resume_id,
                job_id=job_id,
                status=existing.status.value,
            )
            return EnqueueDecision.SKIPPED, existing

        # Conditional so a worker claiming the job in between is not undone.
        values = dict(
            status=EnrichmentStatus.PENDING,
            attempts=0,
            next_retry_at=now,
            last_error=None,
            finished_at=None,
        )
        if run_id is not None:
            values["run_id"] = run_id
        result = await session.execute(
            update(EnrichmentJob)
            .where(EnrichmentJob.id == existing.id, EnrichmentJob.status.not_in(_NOT_REVIVABLE))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(existing)
        if result.rowcount != 1:
            logger.debug(
                "enrichment_enqueue_skipped",
                resume_id=resume_id,
                job_id=job_id,
                status=existing.status.value,
            )
            return EnqueueDecision.SKIPPED, existing
        logger.info("enrichment_revived", resume_id=resume_id, job_id=job_id, run_id=run_id)
        return EnqueueDecision.REVIVED, existing

    @staticmethod
    async def _get(session: AsyncSession, resume_id: int, job_id: int) -> EnrichmentJob | None:
        result = await session.execute(
            select(EnrichmentJob).where(
                EnrichmentJob.resume_id == resume_id,
                EnrichmentJob.job_id == job_id,
            )
        )
        return result.scalar_one_or_none()


# ------------------------------------------------------------------
# Worker
# ------------------------------------------------------------------


class EnrichmentWorker:
    """Consumer side: claims due jobs and runs them under a hard timeout."""

    def __init__(self, db: DatabaseEngine, enricher: Enricher, config: EnrichmentConfig) -> None:
        self._db = db
        self._enricher = enricher
        self._config = config
        self.stats: dict[str, int] = {"succeeded": 0, "retried": 0, "failed": 0}
        self.last_slice: dict[str, int] | None = None
        self.last_slice_at: datetime | None = None

    async def reclaim_stale(self, now: datetime | None = None) -> int:
        """Return jobs stuck in ``running`` past ``stale_after_seconds`` to pending."""
        now = now or utcnow()
        threshold = now - timedelta(seconds=self._config.stale_after_seconds)
        async with self._db.session() as session:
            result = await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.status == EnrichmentStatus.RUNNING,
                    or_(EnrichmentJob.started_at.is_(None), EnrichmentJob.started_at < threshold),
                )
                .values(status=EnrichmentStatus.PENDING, next_retry_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("enrichment_stale_reclaimed", count=result.rowcount)
        return result.rowcount or 0

    async def due_job_ids(self, now: datetime | None = None, limit: int | None = None) -> list[int]:
        now = now or utcnow()
        async with self._db.session() as session:
            result = await session.execute(
                select(EnrichmentJob.id)
                .where(
                    EnrichmentJob.status == EnrichmentStatus.PENDING,
                    or_(EnrichmentJob.next_retry_at.is_(None), EnrichmentJob.next_retry_at <= now),
                )
                .order_by(EnrichmentJob.next_retry_at, EnrichmentJob.id)
                .limit(limit or self._config.concurrency)
            )
            return list(result.scalars())

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """One worker slice: reclaim, claim up to ``concurrency`` due jobs, run them."""
        now = now or utcnow()
        await self.reclaim_stale(now)
        job_ids = await self.due_job_ids(now)
        self.last_slice_at = now
        if not job_ids:
            self.last_slice = {"claimed": 0}
            return self.last_slice

        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def _bounded(job_id: int) -> EnrichmentStatus | None:
            async with semaphore:
                return await self.process(job_id)

        results = await asyncio.gather(*(_bounded(job_id) for job_id in job_ids))
        summary = {"claimed": sum(1 for r in results if r is not None)}
        for status in results:
            if status is not None:
                summary[status.value] = summary.get(status.value, 0) + 1
        self.last_slice = summary
        logger.info("enrichment_slice_complete", **summary)
        return summary

    async def process(self, job_id: int) -> EnrichmentStatus | None:
        """Claim and run one job.  Returns its new status, or None if another worker won."""
        async with self._db.session() as session:
            if not await self._claim(session, job_id):
                logger.debug("enrichment_claim_lost", enrichment_job_id=job_id)
                return None

            job = await session.get(EnrichmentJob, job_id)
            assert job is not None
            await mirror_to_items(session, job)
            await session.commit()

            log = logger.bind(enrichment_job_id=job.id, resume_id=job.resume_id, job_id=job.job_id)

            resume = await session.get(Resume, job.resume_id)
            posting = await session.get(Job, job.job_id)
            if resume is None or posting is None:
                self._finish(job, EnrichmentStatus.ERROR, "resume or job no longer exists")
            elif resume.raw_text == NO_TEXT_LAYER_SENTINEL:
                self._finish(job, EnrichmentStatus.SCAN_FAILED, "resume is a scanned PDF without a text layer")
            elif not resume.raw_text or is_sentinel(resume.raw_text):
                self._finish(job, EnrichmentStatus.INGEST_FAILED, resume.raw_text or "resume has no text")
            else:
                outcome = await self._call(job.resume_id, job_context(posting))
                self._apply(job, outcome)

            await mirror_to_items(session, job)
            await session.commit()

        if job.status is EnrichmentStatus.SUCCEEDED:
            self.stats["succeeded"] += 1
            log.info("enrichment_succeeded", attempts=job.attempts)
        elif job.status is EnrichmentStatus.PENDING:
            self.stats["retried"] += 1
            log.warning(
                "enrichment_retry_scheduled",
                attempts=job.attempts,
                next_retry_at=job.next_retry_at.isoformat() if job.next_retry_at else None,
                error=job.last_error,
            )
        else:
            self.stats["failed"] += 1
            log.error("enrichment_failed", status=job.status.value, attempts=job.attempts, error=job.last_error)
        return job.status

    async def _claim(self, session: AsyncSession, job_id: int) -> bool:
        result = await session.execute(
            update(EnrichmentJob)
            .where(and_(EnrichmentJob.id == job_id, EnrichmentJob.status == EnrichmentStatus.PENDING))
            .values(status=EnrichmentStatus.RUNNING, started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def _call(self, resume_id: int, context: JobContext) -> EnrichmentOutcome:
        timeout = self._config.timeout_seconds
        try:
            return await asyncio.wait_for(self._enricher.run(resume_id, context, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            error = EnrichmentTimeoutError(f"enrichment exceeded {timeout}s")
            return EnrichmentOutcome(success=False, error=str(error), retryable=True)
        except RetryableError as exc:
            return EnrichmentOutcome(success=False, error=truncate_error(exc), retryable=True)
        except Exception as exc:
            logger.exception("enrichment_call_error", resume_id=resume_id)
            return EnrichmentOutcome(success=False, error=truncate_error(exc), retryable=False)

    def _apply(self, job: EnrichmentJob, outcome: EnrichmentOutcome) -> None:
        if outcome.success:
            self._finish(job, EnrichmentStatus.SUCCEEDED, None)
            return

        if not outcome.retryable:
            self._finish(job, outcome.terminal_status or EnrichmentStatus.ERROR, outcome.error)
            return

        job.attempts += 1
        if job.attempts >= self._config.max_attempts:
            self._finish(job, EnrichmentStatus.ERROR, outcome.error)
            return
        job.status = EnrichmentStatus.PENDING
        job.last_error = truncate_error(outcome.error or "retryable failure")
        job.next_retry_at = utcnow() + timedelta(seconds=backoff_delay(job.attempts, self._config))

    @staticmethod
    def _finish(job: EnrichmentJob, status: EnrichmentStatus, error: str | None) -> None:
        job.status = status
        job.last_error = truncate_error(error) if error else None
        job.next_retry_at = None
        job.finished_at = utcnow()

    async def run_forever(self, shutdown: asyncio.Event) -> None:
        """Run slices every ``poll_interval_seconds`` until *shutdown* is set."""
        logger.info("enrichment_worker_started", interval=self._config.poll_interval_seconds)
        while not shutdown.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("enrichment_slice_error")
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self._config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("enrichment_worker_stopped")
