"""IntakeService: wires up infrastructure and runs the background loops."""

from __future__ import annotations

import asyncio
import signal
import time
from datetime import datetime
from typing import Any

import structlog
import uvicorn
from sqlalchemy import func, select

from .config import IntakeConfig
from .coordinator import RunCoordinator
from .db.base import utcnow
from .db.engine import DatabaseEngine
from .db.models import EnrichmentJob, ImportRun
from .enrichment import Enricher, EnrichmentQueue, EnrichmentWorker, HttpEnricher
from .errors import truncate_error
from .extraction import DocumentTextExtractor, TextExtractor
from .health import create_health_app
from .logging import setup_logging
from .models import EnrichmentStatus, RunStatus, ServiceStatus
from .pipeline import ItemPipeline
from .processor import RunProcessor
from .providers.eligibility import AttachmentPolicy
from .providers.graph_provider import GraphEmailProvider
from .providers.interface import EmailProvider
from .search import SearchOrchestrator
from .storage import ObjectStorage, S3ObjectStorage

logger = structlog.get_logger()


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class IntakeService:
    """The long-running resume intake process.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the run dispatcher (continue the running scan, else promote the
      oldest enqueued one)
    * the enrichment worker
    * the FastAPI health server (for K8s probes)

    Collaborators can be injected for tests; by default the Graph
    provider, S3 storage and HTTP enricher are built from *config*.
    """

    def __init__(
        self,
        config: IntakeConfig,
        *,
        db: DatabaseEngine | None = None,
        provider: EmailProvider | None = None,
        storage: ObjectStorage | None = None,
        extractor: TextExtractor | None = None,
        enricher: Enricher | None = None,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()
        self.runs_dispatched = 0
        self.current_run_id: str | None = None
        self.last_dispatch_at: datetime | None = None
        self.last_dispatch_error: str | None = None

        self.db = db or DatabaseEngine(config.database)
        self.provider = provider or GraphEmailProvider(
            config.graph,
            config.retry,
            AttachmentPolicy.from_config(config.imports),
        )
        self.storage = storage or S3ObjectStorage(config.s3, config.retry)
        self.extractor = extractor or DocumentTextExtractor(config.extraction)
        self.enricher = enricher or HttpEnricher(config.enrichment)

        self.queue = EnrichmentQueue()
        self.coordinator = RunCoordinator(self.db, config.imports)
        self.search = SearchOrchestrator(self.provider, config.imports)
        self.pipeline = ItemPipeline(
            self.provider,
            self.storage,
            self.extractor,
            self.queue,
            config.imports,
        )
        self.processor = RunProcessor(
            self.db,
            self.coordinator,
            self.search,
            self.pipeline,
            config.imports,
        )
        self.worker = EnrichmentWorker(self.db, self.enricher, config.enrichment)
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.db.create_all()
        for component in (self.provider, self.storage, self.enricher):
            start = getattr(component, "start", None)
            if start is not None:
                await start()

    async def stop(self) -> None:
        await self.provider.close()
        await self.enricher.close()
        stop_storage = getattr(self.storage, "stop", None)
        if stop_storage is not None:
            await stop_storage()
        await self.db.close()

    async def health_check(self) -> dict[str, Any]:
        """Dispatcher state, backlog and the last enrichment slice."""
        async with self.db.session() as session:
            runs_enqueued = await session.scalar(
                select(func.count()).select_from(ImportRun).where(ImportRun.status == RunStatus.ENQUEUED)
            )
            enrichment_pending = await session.scalar(
                select(func.count())
                .select_from(EnrichmentJob)
                .where(EnrichmentJob.status == EnrichmentStatus.PENDING)
            )
        return {
            "dispatcher": {
                "current_run_id": self.current_run_id,
                "last_dispatch_at": _isoformat(self.last_dispatch_at),
                "last_error": self.last_dispatch_error,
                "runs_dispatched": self.runs_dispatched,
                "runs_enqueued": runs_enqueued,
            },
            "items_processed": self.processor.items_processed,
            "enrichment": {
                **self.worker.stats,
                "pending": enrichment_pending,
                "last_slice": self.worker.last_slice,
                "last_slice_at": _isoformat(self.worker.last_slice_at),
            },
        }

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def dispatch_once(self) -> str | None:
        """One dispatcher slice.

        A run left ``running`` by a crashed process is continued first;
        otherwise the oldest enqueued run is promoted.  Returns the id of
        the run that was processed, if any.
        """
        run = await self.coordinator.get_running()
        if run is not None:
            logger.info("run_resumed", run_id=run.id)
        else:
            run = await self.coordinator.promote_next()
            if run is None:
                return None

        self.runs_dispatched += 1
        self.current_run_id = run.id
        try:
            status = await self.processor.process_run(run.id)
        finally:
            self.current_run_id = None
            self.last_dispatch_at = utcnow()
        logger.info("run_dispatched", run_id=run.id, status=status.value if status else None)
        return run.id

    async def _run_dispatcher(self) -> None:
        logger.info("dispatcher_started", interval=self.config.imports.dispatch_interval_seconds)
        self.status = ServiceStatus.RUNNING
        while not self._shutdown_event.is_set():
            try:
                # Drain the queue before sleeping.
                while not self._shutdown_event.is_set() and await self.dispatch_once():
                    pass
            except Exception as exc:
                self.status = ServiceStatus.DEGRADED
                self.last_dispatch_error = truncate_error(exc)
                logger.exception("dispatcher_error")
            else:
                self.status = ServiceStatus.RUNNING
                self.last_dispatch_error = None
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.imports.dispatch_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
        logger.info("dispatcher_stopped")

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> None:
        """Start all subsystems and run until SIGTERM / SIGINT.

        Usage::

            asyncio.run(IntakeService(IntakeConfig()).run())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        self._install_signal_handlers()
        self.start_time = time.monotonic()

        logger.info("intake_starting", service=self.config.name)
        await self.start()

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_dispatcher())
                tg.create_task(self.worker.run_forever(self._shutdown_event))
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("intake_task_group_error", service=self.config.name)
        finally:
            self.status = ServiceStatus.STOPPING
            await self.stop()
            self.status = ServiceStatus.STOPPED
            logger.info("intake_stopped", service=self.config.name)

    async def run_dispatch_once(self) -> None:
        """Process queued runs once, then exit (for cron-style deployments)."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        await self.start()
        try:
            while await self.dispatch_once():
                pass
        finally:
            await self.stop()

    async def run_enrich_once(self) -> None:
        """Run one enrichment slice, then exit."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        await self.start()
        try:
            await self.worker.run_once()
        finally:
            await self.stop()
