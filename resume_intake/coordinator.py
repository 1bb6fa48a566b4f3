"""RunCoordinator: the global single-runner gate for mailbox scans.

Promotion is a compare-and-swap UPDATE on the persisted status column:
a run becomes ``running`` only if it is still ``enqueued`` and no other
run is ``running``.  A unique partial index on running runs backs this
up, and a losing promotion leaves its run enqueued.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from .config import ImportConfig
from .db.base import utcnow
from .db.engine import DatabaseEngine
from .db.models import EnrichmentJob, ImportItem, ImportRun, Job
from .errors import InvalidJobReferenceError, truncate_error
from .models import (
    TERMINAL_RUN_STATUSES,
    EnrichmentJobEntry,
    EnrichmentStatus,
    ItemFailureEntry,
    ItemStatus,
    RunMode,
    RunStatus,
    RunSummary,
)
from .search import resolve_mode

logger = structlog.get_logger()

SUMMARY_LIST_LIMIT = 20
EMAIL_PROGRESS_WEIGHT = 0.1
ENRICHMENT_PROGRESS_WEIGHT = 0.9

_ACTIVE_STATUSES = (RunStatus.ENQUEUED, RunStatus.RUNNING)
_ENRICHMENT_DONE = (
    EnrichmentStatus.SUCCEEDED,
    EnrichmentStatus.INGEST_FAILED,
    EnrichmentStatus.SCAN_FAILED,
    EnrichmentStatus.ERROR,
)
_ENRICHMENT_FAILED = (
    EnrichmentStatus.INGEST_FAILED,
    EnrichmentStatus.SCAN_FAILED,
    EnrichmentStatus.ERROR,
)


def weighted_progress(processed: int, total: int | None, enrich_done: int, enrich_total: int) -> float:
    """0.1 x email ratio + 0.9 x enrichment ratio, in [0, 1]."""
    email_ratio = 1.0 if not total else min(1.0, processed / total)
    if enrich_total:
        enrich_ratio = enrich_done / enrich_total
    else:
        enrich_ratio = 1.0 if email_ratio >= 1.0 else 0.0
    return round(EMAIL_PROGRESS_WEIGHT * email_ratio + ENRICHMENT_PROGRESS_WEIGHT * enrich_ratio, 4)


class RunCoordinator:
    """Creates, promotes, cancels and finalizes import runs."""

    def __init__(self, db: DatabaseEngine, config: ImportConfig) -> None:
        self._db = db
        self._config = config

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue_run(
        self,
        job_id: int,
        mailbox: str,
        search_text: str | None = None,
        *,
        mode: RunMode | None = None,
        lookback_days: int | None = None,
        created_at: datetime | None = None,
    ) -> ImportRun:
        """Queue a scan for *job_id*.

        A job with a scan already enqueued or running gets that run back
        instead of a second one.
        """
        async with self._db.session() as session:
            if await session.get(Job, job_id) is None:
                raise InvalidJobReferenceError(job_id)

            existing = await self._active_for_job(session, job_id)
            if existing is not None:
                logger.info("run_already_active", run_id=existing.id, job_id=job_id, status=existing.status.value)
                return existing

            run = ImportRun(
                job_id=job_id,
                mailbox=mailbox,
                search_text=search_text,
                mode=resolve_mode(search_text, mode),
                lookback_days=lookback_days if lookback_days is not None else self._config.lookback_days,
                status=RunStatus.ENQUEUED,
            )
            if created_at is not None:
                run.created_at = created_at
            session.add(run)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._active_for_job(session, job_id)
                if existing is None:
                    raise
                return existing

        logger.info("run_enqueued", run_id=run.id, job_id=job_id, mode=run.mode.value, search_text=search_text)
        return run

    @staticmethod
    async def _active_for_job(session, job_id: int) -> ImportRun | None:
        result = await session.execute(
            select(ImportRun)
            .where(ImportRun.job_id == job_id, ImportRun.status.in_(_ACTIVE_STATUSES))
            .order_by(ImportRun.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    async def try_promote(self, run_id: str) -> bool:
        """Flip *run_id* to running if it is enqueued and nothing else runs.

        Returns False when another promotion won; the run stays enqueued.
        """
        other = aliased(ImportRun)
        stmt = (
            update(ImportRun)
            .where(
                ImportRun.id == run_id,
                ImportRun.status == RunStatus.ENQUEUED,
                ~exists().where(other.status == RunStatus.RUNNING),
            )
            .values(
                status=RunStatus.RUNNING,
                started_at=utcnow(),
                attempts=ImportRun.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("run_promotion_lost", run_id=run_id, reason="unique_running_index")
                return False

        promoted = result.rowcount == 1
        if promoted:
            logger.info("run_promoted", run_id=run_id)
        else:
            logger.debug("run_promotion_lost", run_id=run_id)
        return promoted

    async def promote_next(self) -> ImportRun | None:
        """Promote the oldest enqueued run, or return None.

        Only the head of the queue is tried, so a lost race never lets a
        younger run overtake an older one.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(ImportRun.id)
                .where(ImportRun.status == RunStatus.ENQUEUED)
                .order_by(ImportRun.created_at, ImportRun.id)
                .limit(1)
            )
            head = result.scalar_one_or_none()
        if head is None or not await self.try_promote(head):
            return None
        return await self.get(head)

    async def get(self, run_id: str) -> ImportRun | None:
        async with self._db.session() as session:
            return await session.get(ImportRun, run_id)

    async def get_running(self) -> ImportRun | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ImportRun).where(ImportRun.status == RunStatus.RUNNING).limit(1)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Cancellation + completion
    # ------------------------------------------------------------------

    async def cancel(self, run_id: str) -> bool:
        """Cancel an enqueued or running run.  Terminal runs are left alone."""
        async with self._db.session() as session:
            result = await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status.in_(_ACTIVE_STATUSES))
                .values(status=RunStatus.CANCELED, finished_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        canceled = result.rowcount == 1
        logger.info("run_cancel_requested", run_id=run_id, canceled=canceled)
        return canceled

    async def is_canceled(self, run_id: str) -> bool:
        async with self._db.session() as session:
            status = await session.scalar(select(ImportRun.status).where(ImportRun.id == run_id))
        return status is RunStatus.CANCELED

    async def finish(self, run_id: str, status: RunStatus, error: str | None = None) -> bool:
        """Move a running run to a terminal *status*.

        No-op (returns False) when the run is no longer running, e.g. it
        was canceled while the last batch was in flight.
        """
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        async with self._db.session() as session:
            result = await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status == RunStatus.RUNNING)
                .values(
                    status=status,
                    finished_at=utcnow(),
                    last_error=truncate_error(error) if error else None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        finished = result.rowcount == 1
        if finished:
            logger.info("run_finished", run_id=run_id, status=status.value, error=error)
        return finished

    # ------------------------------------------------------------------
    # Progress + reporting
    # ------------------------------------------------------------------

    async def record_progress(self, run_id: str, processed: int, failed: int) -> float:
        async with self._db.session() as session:
            total = await session.scalar(select(ImportRun.total_messages).where(ImportRun.id == run_id))
            done, enrich_total = await self._enrichment_counts(session, run_id)
            progress = weighted_progress(processed, total, done, enrich_total)
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id)
                .values(processed_messages=processed, failed_messages=failed, progress=progress)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.debug("run_progress", run_id=run_id, processed=processed, failed=failed, progress=progress)
        return progress

    @staticmethod
    async def _enrichment_counts(session, run_id: str) -> tuple[int, int]:
        total = await session.scalar(
            select(func.count()).select_from(EnrichmentJob).where(EnrichmentJob.run_id == run_id)
        )
        done = await session.scalar(
            select(func.count())
            .select_from(EnrichmentJob)
            .where(EnrichmentJob.run_id == run_id, EnrichmentJob.status.in_(_ENRICHMENT_DONE))
        )
        return done or 0, total or 0

    async def summarize(self, run_id: str) -> RunSummary:
        async with self._db.session() as session:
            run = await session.get(ImportRun, run_id)
            if run is None:
                raise KeyError(run_id)

            done, enrich_total = await self._enrichment_counts(session, run_id)

            failed_jobs = await session.execute(
                select(EnrichmentJob)
                .where(EnrichmentJob.run_id == run_id, EnrichmentJob.status.in_(_ENRICHMENT_FAILED))
                .order_by(EnrichmentJob.id)
                .limit(SUMMARY_LIST_LIMIT)
            )
            retrying_jobs = await session.execute(
                select(EnrichmentJob)
                .where(
                    EnrichmentJob.run_id == run_id,
                    EnrichmentJob.status == EnrichmentStatus.PENDING,
                    EnrichmentJob.attempts > 0,
                )
                .order_by(EnrichmentJob.next_retry_at)
                .limit(SUMMARY_LIST_LIMIT)
            )
            failed_items = await session.execute(
                select(ImportItem)
                .where(ImportItem.run_id == run_id, ImportItem.status == ItemStatus.FAILED)
                .order_by(ImportItem.id)
                .limit(SUMMARY_LIST_LIMIT)
            )
            failed_jobs = [_job_entry(j) for j in failed_jobs.scalars()]
            retrying_jobs = [_job_entry(j) for j in retrying_jobs.scalars()]
            item_failures = [
                ItemFailureEntry(message_id=i.external_message_id, step=i.step, error=i.last_error)
                for i in failed_items.scalars()
            ]

        warnings: list[str] = []
        if run.total_messages is not None and run.total_messages >= self._config.max_messages:
            warnings.append(f"Search stopped at the {self._config.max_messages} message cap")
        if run.failed_messages:
            warnings.append(f"{run.failed_messages} messages failed to import")
        if failed_jobs:
            warnings.append(f"{len(failed_jobs)} enrichment jobs failed")

        return RunSummary(
            run_id=run.id,
            status=run.status,
            total_messages=run.total_messages,
            processed_messages=run.processed_messages,
            failed_messages=run.failed_messages,
            progress=weighted_progress(run.processed_messages, run.total_messages, done, enrich_total),
            enrichment_total=enrich_total,
            enrichment_failed=failed_jobs,
            enrichment_retrying=retrying_jobs,
            item_failures=item_failures,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune_finished_runs(self, job_id: int) -> int:
        """Delete all but the newest ``keep_finished_runs`` terminal runs of a job."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ImportRun.id)
                .where(ImportRun.job_id == job_id, ImportRun.status.in_(TERMINAL_RUN_STATUSES))
                .order_by(ImportRun.created_at.desc(), ImportRun.id.desc())
                .offset(self._config.keep_finished_runs)
            )
            stale = list(result.scalars())
            if not stale:
                return 0
            await session.execute(
                update(EnrichmentJob)
                .where(EnrichmentJob.run_id.in_(stale))
                .values(run_id=None)
                .execution_options(synchronize_session=False)
            )
            await session.execute(delete(ImportItem).where(ImportItem.run_id.in_(stale)))
            await session.execute(delete(ImportRun).where(ImportRun.id.in_(stale)))
            await session.commit()
        logger.info("runs_pruned", job_id=job_id, count=len(stale))
        return len(stale)


def _job_entry(job: EnrichmentJob) -> EnrichmentJobEntry:
    return EnrichmentJobEntry(
        resume_id=job.resume_id,
        status=job.status,
        error=job.last_error,
        attempts=job.attempts,
    )
