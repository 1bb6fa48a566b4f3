"""RunProcessor: drives the running import run to a terminal state.

Phase A enumerates candidate messages once per run and records one item
per message.  Phase B advances pending (or still-retryable) items in
batches with a small bounded fan-out, checking for cancellation between
batches, and finally settles the run's status.
"""

from __future__ import annotations

import asyncio

import structlog
from sqlalchemy import and_, func, or_, select, update

from .config import ImportConfig
from .coordinator import RunCoordinator
from .db.base import insert_ignoring_conflicts, utcnow
from .db.engine import DatabaseEngine
from .db.models import ImportItem, ImportRun
from .errors import InvalidJobReferenceError, truncate_error
from .logging import bind_run, unbind_run
from .models import ItemStatus, ItemStep, RunStatus
from .pipeline import ItemPipeline, PipelineResult
from .search import SearchOrchestrator

logger = structlog.get_logger()


class RunProcessor:
    def __init__(
        self,
        db: DatabaseEngine,
        coordinator: RunCoordinator,
        search: SearchOrchestrator,
        pipeline: ItemPipeline,
        config: ImportConfig,
    ) -> None:
        self._db = db
        self._coordinator = coordinator
        self._search = search
        self._pipeline = pipeline
        self._config = config
        self.items_processed = 0

    async def process_run(self, run_id: str) -> RunStatus | None:
        """Advance *run_id* until it reaches a terminal state.

        Returns the final status, or None if the run was not running.
        """
        run = await self._coordinator.get(run_id)
        if run is None or run.status is not RunStatus.RUNNING:
            return None

        bind_run(run.id, job_id=run.job_id)
        try:
            if run.enumerated_at is None:
                if not await self._enumerate(run):
                    return await self._final_status(run.id)

            await self._advance_items(run)
            return await self._finalize(run)
        except InvalidJobReferenceError as exc:
            await self._coordinator.finish(run.id, RunStatus.FAILED, str(exc))
            return RunStatus.FAILED
        finally:
            unbind_run()

    # ------------------------------------------------------------------
    # Phase A
    # ------------------------------------------------------------------

    async def _enumerate(self, run: ImportRun) -> bool:
        """Search the mailbox and record one item per message.

        Returns False when the run ended during the search (canceled or the
        search itself failed).
        """

        async def _should_stop() -> bool:
            return await self._coordinator.is_canceled(run.id)

        try:
            result = await self._search.search_messages(
                run.mailbox,
                run.search_text,
                lookback_days=run.lookback_days,
                mode=run.mode,
                should_stop=_should_stop,
            )
        except Exception as exc:
            logger.exception("run_search_failed")
            await self._coordinator.finish(run.id, RunStatus.FAILED, f"Search failed: {truncate_error(exc)}")
            return False

        if result.stopped_early:
            logger.info("run_canceled_during_search", found=len(result.messages))
            return False

        async with self._db.session() as session:
            created = 0
            for message in result.messages:
                if await insert_ignoring_conflicts(
                    session,
                    ImportItem,
                    ["run_id", "external_message_id"],
                    run_id=run.id,
                    job_id=run.job_id,
                    external_message_id=message.external_id,
                    subject=message.subject,
                    received_at=message.received_at,
                    status=ItemStatus.PENDING,
                    step=ItemStep.NONE,
                    attempts=0,
                ):
                    created += 1
            total = await session.scalar(
                select(func.count()).select_from(ImportItem).where(ImportItem.run_id == run.id)
            )
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run.id)
                .values(total_messages=total, enumerated_at=utcnow(), mode=result.mode_used)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            "run_enumerated",
            mode=result.mode_used.value,
            messages=len(result.messages),
            created=created,
            truncated=result.truncated,
        )
        return True

    # ------------------------------------------------------------------
    # Phase B
    # ------------------------------------------------------------------

    def _retryable(self):
        return and_(
            ImportItem.status == ItemStatus.FAILED,
            ImportItem.attempts < self._config.max_item_attempts,
            ImportItem.step != ItemStep.FAILED_EXTRACT,
        )

    async def _next_batch(self, run_id: str) -> list[int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(ImportItem.id)
                .where(
                    ImportItem.run_id == run_id,
                    or_(ImportItem.status == ItemStatus.PENDING, self._retryable()),
                )
                .order_by(ImportItem.id)
                .limit(self._config.batch_size)
            )
            return list(result.scalars())

    async def _process_item(self, item_id: int, mailbox: str) -> PipelineResult | None:
        async with self._db.session() as session:
            item = await session.get(ImportItem, item_id)
            if item is None:
                return None
            return await self._pipeline.process(session, item, mailbox)

    async def _advance_items(self, run: ImportRun) -> None:
        semaphore = asyncio.Semaphore(self._config.item_concurrency)

        async def _bounded(item_id: int) -> PipelineResult | None:
            async with semaphore:
                return await self._process_item(item_id, run.mailbox)

        while True:
            if await self._coordinator.is_canceled(run.id):
                logger.info("run_canceled_between_batches")
                return
            batch = await self._next_batch(run.id)
            if not batch:
                return

            results = await asyncio.gather(*(_bounded(item_id) for item_id in batch))
            self.items_processed += sum(1 for r in results if r is not None)
            processed, failed = await self._counts(run.id)
            await self._coordinator.record_progress(run.id, processed, failed)
            logger.info("run_batch_complete", batch=len(batch), processed=processed, failed=failed)

    async def _counts(self, run_id: str) -> tuple[int, int]:
        async with self._db.session() as session:
            processed = await session.scalar(
                select(func.count())
                .select_from(ImportItem)
                .where(ImportItem.run_id == run_id, ImportItem.status == ItemStatus.COMPLETED)
            )
            failed = await session.scalar(
                select(func.count())
                .select_from(ImportItem)
                .where(
                    ImportItem.run_id == run_id,
                    ImportItem.status == ItemStatus.FAILED,
                    or_(
                        ImportItem.attempts >= self._config.max_item_attempts,
                        ImportItem.step == ItemStep.FAILED_EXTRACT,
                    ),
                )
            )
        return processed or 0, failed or 0

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(self, run: ImportRun) -> RunStatus:
        if await self._coordinator.is_canceled(run.id):
            return RunStatus.CANCELED

        processed, failed = await self._counts(run.id)
        await self._coordinator.record_progress(run.id, processed, failed)
        total = processed + failed

        if total == 0 or processed > 0:
            status, error = RunStatus.SUCCEEDED, None
        else:
            status, error = RunStatus.FAILED, f"All {total} items failed to process"

        if not await self._coordinator.finish(run.id, status, error):
            # Canceled while the last batch was in flight.
            return await self._final_status(run.id)
        await self._coordinator.prune_finished_runs(run.job_id)
        return status

    async def _final_status(self, run_id: str) -> RunStatus | None:
        run = await self._coordinator.get(run_id)
        return run.status if run is not None else None
