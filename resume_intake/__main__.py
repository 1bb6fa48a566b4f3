"""Entry point for the intake package.

Usage::

    python -m resume_intake service    # dispatcher + enrichment worker + health probes
    python -m resume_intake dispatch   # process queued runs once and exit
    python -m resume_intake enrich     # run one enrichment slice and exit
    python -m resume_intake init-db    # create tables and exit
"""

from __future__ import annotations

import asyncio
import sys

_MODES = ("service", "dispatch", "enrich", "init-db")


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in _MODES:
        print(f"Usage: python -m resume_intake <{'|'.join(_MODES)}>", file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]

    from .config import IntakeConfig

    config = IntakeConfig()

    if mode == "init-db":
        from .db.engine import DatabaseEngine
        from .logging import setup_logging

        async def _init() -> None:
            db = DatabaseEngine(config.database)
            try:
                await db.create_all()
            finally:
                await db.close()

        setup_logging(json=config.log_json, level=config.log_level)
        asyncio.run(_init())
        return

    from .service import IntakeService

    service = IntakeService(config)
    if mode == "service":
        asyncio.run(service.run())
    elif mode == "dispatch":
        asyncio.run(service.run_dispatch_once())
    elif mode == "enrich":
        asyncio.run(service.run_enrich_once())


if __name__ == "__main__":
    main()
