# docdash/stats.py
"""
user_stats bookkeeping.

The dashboard adjusts the counters client-side after each upload/delete
(best effort, not transactional with the uploads row). `recompute_user_stats`
rebuilds them from the uploads table and is the way to correct any drift.
"""
import logging
from datetime import datetime
from typing import Optional

from docdash.backend import Backend
from docdash.schemas import UploadRecord, UserStats, utcnow

logger = logging.getLogger(__name__)

STATS_TABLE = "user_stats"


def after_upload(stats: UserStats, file_size: int, when: Optional[datetime] = None) -> UserStats:
    return UserStats(
        user_id=stats.user_id,
        total_uploads=stats.total_uploads + 1,
        storage_used=stats.storage_used + file_size,
        last_upload=when or utcnow(),
    )


def after_delete(stats: UserStats, file_size: int) -> UserStats:
    # last_upload tracks the newest upload ever made; a delete leaves it alone
    return UserStats(
        user_id=stats.user_id,
        total_uploads=max(0, stats.total_uploads - 1),
        storage_used=max(0, stats.storage_used - file_size),
        last_upload=stats.last_upload,
    )


async def load_stats(backend: Backend, user_id: str) -> UserStats:
    rows = await backend.select_rows(STATS_TABLE, {"user_id": user_id})
    if not rows:
        return UserStats(user_id=user_id)
    return UserStats.model_validate(rows[0])


async def write_stats(backend: Backend, user_id: str, stats: UserStats, *, include_last_upload: bool = True) -> UserStats:
    """Update the user's stats row, creating it on first use."""
    fields = {"total_uploads": stats.total_uploads, "storage_used": stats.storage_used}
    if include_last_upload:
        fields["last_upload"] = stats.last_upload
    rows = await backend.update_row(STATS_TABLE, {"user_id": user_id}, fields)
    if not rows:
        row = await backend.insert_row(STATS_TABLE, {"user_id": user_id, **fields})
        logger.info("Created stats row for user %s", user_id)
        return UserStats.model_validate(row)
    return UserStats.model_validate(rows[0])


async def recompute_user_stats(backend: Backend, user_id: str) -> UserStats:
    rows = await backend.select_rows("uploads", {"user_id": user_id})
    uploads = [UploadRecord.model_validate(r) for r in rows]
    previous = await load_stats(backend, user_id)
    # deleted uploads still count towards the last upload time
    candidates = [u.created_at for u in uploads]
    if previous.last_upload is not None:
        candidates.append(previous.last_upload)
    stats = UserStats(
        user_id=user_id,
        total_uploads=len(uploads),
        storage_used=sum(u.file_size for u in uploads),
        last_upload=max(candidates, default=None),
    )
    written = await write_stats(backend, user_id, stats)
    logger.info(
        "Recomputed stats for %s: uploads=%d storage_used=%d",
        user_id, written.total_uploads, written.storage_used,
    )
    return written
