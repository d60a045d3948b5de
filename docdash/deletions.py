# docdash/deletions.py
import logging
from typing import Callable, Optional

from docdash.auth import SessionContext
from docdash.backend import Backend
from docdash.config import Settings, settings as default_settings
from docdash.errors import BackendError, DeleteFailed, UploadNotFound
from docdash.metrics import delete_failures_total, deletes_total, stats_update_failures_total
from docdash.schemas import Notification, UploadRecord
from docdash.stats import after_delete, write_stats
from docdash.store import ViewModelStore
from docdash.uploads import find_upload

logger = logging.getLogger(__name__)

Notify = Callable[[Notification], None]


class DeleteOrchestrator:
    """
    object -> row -> stats, in that order.

    Fail-closed: the row is only deleted once the object is gone, so a row
    never points at nothing and storage is never left without a row.
    """

    def __init__(
        self,
        context: SessionContext,
        backend: Backend,
        store: ViewModelStore,
        *,
        notify: Optional[Notify] = None,
        config: Optional[Settings] = None,
    ):
        self.context = context
        self.backend = backend
        self.store = store
        self.config = config or default_settings
        self.notify = notify or (lambda _: None)

    async def delete(self, upload_id: str) -> UploadRecord:
        record = await find_upload(self.backend, self.store, self.context, upload_id)

        try:
            await self.backend.remove_object(self.config.uploads_bucket, record.storage_path)
        except BackendError as e:
            delete_failures_total.labels(step="storage").inc()
            self.notify(Notification(
                title="Delete failed",
                description="Could not delete the file from storage.",
                variant="destructive",
                retryable=True,
            ))
            raise DeleteFailed(f"could not remove {record.storage_path}: {e.message}", step="storage") from e

        try:
            deleted = await self.backend.delete_row("uploads", {"id": record.id, "user_id": self.context.user_id})
        except BackendError as e:
            delete_failures_total.labels(step="database").inc()
            logger.error(
                "Upload %s row kept after its object %s was removed: %s",
                record.id, record.storage_path, e.message,
            )
            self.notify(Notification(
                title="Delete failed",
                description="Could not delete the file from the database.",
                variant="destructive",
                retryable=True,
            ))
            raise DeleteFailed(f"could not delete upload {record.id}: {e.message}", step="database") from e

        if not deleted:
            # someone else deleted it first; their delete already adjusted the stats
            logger.info("Upload %s was already deleted", record.id)
            if self.store.active:
                self.store.remove(record.id)
            raise UploadNotFound(f"upload {record.id} not found")

        deletes_total.inc()
        await self._drop_stats(record)

        if self.store.active:
            self.store.remove(record.id)
        self.notify(Notification(
            title="File deleted",
            description=f"{record.file_name} was deleted successfully.",
        ))
        return record

    async def _drop_stats(self, record: UploadRecord) -> None:
        # absolute write from this view's snapshot: concurrent writers can lose an update,
        # recompute_user_stats corrects the drift
        updated = after_delete(self.store.stats, record.file_size)
        try:
            written = await write_stats(self.backend, self.context.user_id, updated, include_last_upload=False)
        except BackendError as e:
            stats_update_failures_total.labels(action="delete").inc()
            logger.warning("Stats update after deleting %s failed: %s", record.id, e.message)
            self.notify(Notification(
                title="Statistics not updated",
                description="The file was deleted but your storage statistics could not be updated.",
                variant="destructive",
            ))
            return
        if self.store.active:
            self.store.set_stats(written)
