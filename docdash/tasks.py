# docdash/tasks.py
import asyncio
import logging
from contextlib import asynccontextmanager

from sqlalchemy.pool import NullPool

from docdash.backend import PlatformBackend
from docdash.celery_app import celery_app
from docdash.config import settings
from docdash.db import make_sessionmaker
from docdash.processing import advance_upload, mark_failed
from docdash.stats import recompute_user_stats

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _task_backend():
    # one engine per asyncio.run(); NullPool keeps connections from outliving the loop
    sessionmaker = make_sessionmaker(settings.database_url, poolclass=NullPool)
    backend = PlatformBackend.from_settings(sessionmaker)
    try:
        yield backend
    finally:
        await backend.aclose()
        await sessionmaker.kw["bind"].dispose()


async def _process(upload_id: str):
    async with _task_backend() as backend:
        return await advance_upload(
            backend,
            upload_id,
            start_delay=settings.processing_start_delay,
            duration=settings.processing_duration,
        )


async def _fail(upload_id: str):
    async with _task_backend() as backend:
        return await mark_failed(backend, upload_id)


async def _recompute(user_id: str):
    async with _task_backend() as backend:
        return await recompute_user_stats(backend, user_id)


@celery_app.task(bind=True, name="docdash.tasks.process_upload_task")
def process_upload_task(self, upload_id: str):
    try:
        status = asyncio.run(_process(upload_id))
        return {"upload_id": upload_id, "status": status.value if status else None}
    except Exception:
        logger.exception("process_upload_task failed for %s", upload_id)
        try:
            asyncio.run(_fail(upload_id))
        except Exception:
            logger.exception("Failed to mark %s as failed", upload_id)
        raise


@celery_app.task(bind=True, name="docdash.tasks.recompute_stats_task")
def recompute_stats_task(self, user_id: str):
    stats = asyncio.run(_recompute(user_id))
    return stats.model_dump(mode="json")


def schedule_processing(upload_id: str) -> None:
    process_upload_task.apply_async(args=[upload_id], queue=settings.celery_queue)
