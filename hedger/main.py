"""Entry point for the hedge automation service."""

from __future__ import annotations

import asyncio
import logging

from hedger.config import STORAGE_BACKEND, setup_logging
from hedger.migrate import run_migration
from hedger.service import HedgeService

logger = logging.getLogger(__name__)


async def _main() -> None:
    setup_logging()
    logger.info("service_starting", extra={"storage": STORAGE_BACKEND})

    if STORAGE_BACKEND == "clickhouse":
        try:
            run_migration()
        except Exception:
            logger.error("migration_failed", exc_info=True)
            raise

    service = HedgeService()
    await service.start()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
