import contextlib
from contextlib import asynccontextmanager
import asyncio
import logging

from app.core.analysis_store import get_analysis_store
from app.core.config import settings

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 3600


@asynccontextmanager
async def lifespan(app):
    store = get_analysis_store()
    store.status_counts()
    store.purge_old_runs(settings.run_log_retention_days)

    stop_event = asyncio.Event()

    async def periodic_purge() -> None:
        while not stop_event.is_set():
            try:
                deleted = store.purge_old_runs(settings.run_log_retention_days)
                if deleted:
                    logger.info("reconciliation_run_retention_purge deleted=%s", deleted)
            except Exception as exc:  # pragma: no cover - background task must keep running
                logger.warning("reconciliation_run_retention_purge_failed: %s", exc)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=PURGE_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                continue

    purge_task = asyncio.create_task(periodic_purge())
    yield
    stop_event.set()
    if not purge_task.done():
        purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge_task
    store.close()
