# docdash/processing.py
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from docdash.backend import Backend
from docdash.errors import BackendError
from docdash.lifecycle import ACTIVE_STATUSES
from docdash.metrics import status_transitions_total
from docdash.schemas import UploadStatus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


async def transition(backend: Backend, upload_id: str, expected, new: UploadStatus) -> bool:
    """
    Conditional status write: only rows still in `expected` are touched, so a
    concurrent writer can never push a record backwards.
    """
    if isinstance(expected, (list, tuple, set, frozenset)):
        match_status = [UploadStatus(s).value for s in expected]
    else:
        match_status = UploadStatus(expected).value
    rows = await backend.update_row("uploads", {"id": upload_id, "status": match_status}, {"status": new.value})
    if not rows:
        logger.info("Upload %s no longer in %s; skipped move to %s", upload_id, match_status, new.value)
        return False
    status_transitions_total.labels(status=new.value).inc()
    logger.info("Upload %s -> %s", upload_id, new.value)
    return True


async def mark_failed(backend: Backend, upload_id: str) -> bool:
    try:
        return await transition(backend, upload_id, ACTIVE_STATUSES, UploadStatus.FAILED)
    except BackendError:
        logger.exception("Could not mark upload %s as failed", upload_id)
        return False


async def advance_upload(
    backend: Backend,
    upload_id: str,
    start_delay: float = 1.0,
    duration: float = 3.0,
    sleep: Optional[Sleep] = None,
) -> Optional[UploadStatus]:
    """
    Drive one upload pending -> processing -> completed. Returns the last
    status written, or None when the upload was already moved on by someone else.
    """
    sleep = sleep or asyncio.sleep
    try:
        await sleep(start_delay)
        if not await transition(backend, upload_id, UploadStatus.PENDING, UploadStatus.PROCESSING):
            return None
        await sleep(duration)
        if not await transition(backend, upload_id, UploadStatus.PROCESSING, UploadStatus.COMPLETED):
            return UploadStatus.PROCESSING
        return UploadStatus.COMPLETED
    except BackendError:
        logger.exception("Processing failed for upload %s", upload_id)
        if await mark_failed(backend, upload_id):
            return UploadStatus.FAILED
        raise
