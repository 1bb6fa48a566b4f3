"""Health endpoints for the intake service.

``/health`` reports the dispatcher's progress, the run and enrichment
backlog and the outcome of the last enrichment slice.  ``/ready`` is true
only while the dispatcher loop is running.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .models import HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import IntakeService

logger = structlog.get_logger()

_HEALTHY = (ServiceStatus.RUNNING, ServiceStatus.STARTING)


def create_health_app(service: IntakeService) -> FastAPI:
    app = FastAPI(title=f"{service.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = service.status
        try:
            details = await service.health_check()
        except SQLAlchemyError as exc:
            logger.warning("health_check_database_error", error=str(exc))
            status = ServiceStatus.DEGRADED
            details = {"database": f"unavailable: {exc.__class__.__name__}"}

        body = HealthStatus(
            service_name=service.config.name,
            status=status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=details,
        )
        return JSONResponse(
            content=body.model_dump(mode="json"),
            status_code=200 if status in _HEALTHY else 503,
        )

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status is ServiceStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready, "current_run_id": service.current_run_id},
            status_code=200 if is_ready else 503,
        )

    return app
