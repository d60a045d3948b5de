# docdash/uploads.py
import logging
from typing import Callable, Optional

from docdash.auth import SessionContext
from docdash.backend import Backend
from docdash.config import Settings, settings as default_settings
from docdash.errors import (
    BackendError,
    EmptyFile,
    FileTooLarge,
    NotOwner,
    SignedUrlFailed,
    UnsupportedFileType,
    UploadFailed,
    UploadNotFound,
    UploadNotReady,
)
from docdash.metrics import (
    orphaned_objects_total,
    stats_update_failures_total,
    upload_failures_total,
    uploads_total,
)
from docdash.processing import mark_failed
from docdash.schemas import Notification, UploadRecord, UploadStatus, utcnow
from docdash.stats import after_upload, write_stats
from docdash.storage import build_object_path
from docdash.store import ViewModelStore

logger = logging.getLogger(__name__)

Notify = Callable[[Notification], None]
ScheduleProcessing = Callable[[str], None]


def _ignore(_: Notification) -> None:
    pass


async def find_upload(backend: Backend, store: ViewModelStore, context: SessionContext, upload_id: str) -> UploadRecord:
    """Look the record up in the store first, then on the platform; it must belong to the user."""
    record = store.get(upload_id)
    if record is None:
        rows = await backend.select_rows("uploads", {"id": upload_id})
        if not rows:
            raise UploadNotFound(f"upload {upload_id} not found")
        record = UploadRecord.model_validate(rows[0])
    if record.user_id != context.user_id:
        raise NotOwner(f"upload {upload_id} belongs to another user")
    return record


class UploadOrchestrator:
    """
    validate -> store object -> insert pending row -> bump stats -> schedule processing.

    The object write and the row insert are not atomic: a failed insert leaves
    an orphaned object, which is logged and counted rather than cleaned up.
    """

    def __init__(
        self,
        context: SessionContext,
        backend: Backend,
        store: ViewModelStore,
        *,
        schedule_processing: Optional[ScheduleProcessing] = None,
        notify: Optional[Notify] = None,
        config: Optional[Settings] = None,
    ):
        self.context = context
        self.backend = backend
        self.store = store
        self.config = config or default_settings
        self.notify = notify or _ignore
        if schedule_processing is None:
            from docdash.tasks import schedule_processing
        self.schedule_processing = schedule_processing

    def validate_type(self, file_name: str, content_type: Optional[str]) -> None:
        mime = (content_type or "").split(";")[0].strip().lower()
        if mime not in self.config.allowed_mime_types:
            self.notify(Notification(
                title="Invalid file type",
                description="Please upload a PDF or CSV file.",
                variant="destructive",
            ))
            raise UnsupportedFileType(f"{file_name}: {mime or 'unknown'} is not an accepted file type")

    def validate(self, file_name: str, content_type: Optional[str], size: int) -> None:
        self.validate_type(file_name, content_type)
        if size <= 0:
            self.notify(Notification(
                title="No file selected",
                description="Please select a file to upload.",
                variant="destructive",
            ))
            raise EmptyFile(f"{file_name} is empty")
        if size > self.config.max_upload_size:
            self.notify(Notification(
                title="File too large",
                description=f"{file_name} exceeds the upload size limit.",
                variant="destructive",
            ))
            raise FileTooLarge(f"{file_name} is {size} bytes, limit is {self.config.max_upload_size}")

    async def upload(self, file_name: str, content_type: Optional[str], data: bytes) -> UploadRecord:
        self.validate(file_name, content_type, len(data))
        mime = (content_type or "").split(";")[0].strip().lower()
        user_id = self.context.user_id
        bucket = self.config.uploads_bucket
        path = build_object_path(user_id, file_name)

        try:
            await self.backend.put_object(bucket, path, data, mime)
        except BackendError as e:
            upload_failures_total.labels(step="storage").inc()
            self._notify_failure()
            raise UploadFailed(f"could not store {file_name}: {e.message}") from e

        try:
            row = await self.backend.insert_row("uploads", {
                "user_id": user_id,
                "file_name": file_name,
                "file_type": mime,
                "file_size": len(data),
                "status": UploadStatus.PENDING.value,
                "storage_path": path,
            })
        except BackendError as e:
            upload_failures_total.labels(step="database").inc()
            orphaned_objects_total.inc()
            logger.error(
                "Orphaned object %s/%s: uploads row insert failed for user %s (%s)",
                bucket, path, user_id, e.message,
            )
            self._notify_failure()
            raise UploadFailed(f"could not record {file_name}: {e.message}") from e

        record = UploadRecord.model_validate(row)
        uploads_total.inc()
        # the change feed may already have delivered a newer copy
        if self.store.active and record.id not in self.store:
            self.store.upsert(record)

        await self._bump_stats(record)

        try:
            self.schedule_processing(record.id)
        except Exception:
            logger.exception("Could not schedule processing for upload %s", record.id)
            await mark_failed(self.backend, record.id)

        self.notify(Notification(
            title="Upload successful",
            description=f"{file_name} was uploaded successfully.",
        ))
        return record

    async def _bump_stats(self, record: UploadRecord) -> None:
        # absolute write from this view's snapshot: concurrent uploads can lose an increment,
        # recompute_user_stats corrects the drift
        updated = after_upload(self.store.stats, record.file_size, when=utcnow())
        try:
            written = await write_stats(self.backend, self.context.user_id, updated)
        except BackendError as e:
            stats_update_failures_total.labels(action="upload").inc()
            logger.warning("Stats update after upload %s failed: %s", record.id, e.message)
            return
        if self.store.active:
            self.store.set_stats(written)

    def _notify_failure(self) -> None:
        self.notify(Notification(
            title="Upload failed",
            description="An error occurred while uploading the file.",
            variant="destructive",
            retryable=True,
        ))

    async def signed_url(self, upload_id: str) -> str:
        """Short-lived link for opening a completed upload."""
        record = await find_upload(self.backend, self.store, self.context, upload_id)
        if record.status != UploadStatus.COMPLETED:
            raise UploadNotReady(f"upload {upload_id} is {record.status.value}")
        try:
            return await self.backend.get_signed_url(
                self.config.uploads_bucket, record.storage_path, self.config.signed_url_ttl
            )
        except BackendError as e:
            self.notify(Notification(
                title="Error",
                description="Could not access the file. Please try again.",
                variant="destructive",
                retryable=True,
            ))
            raise SignedUrlFailed(f"could not sign {record.storage_path}: {e.message}") from e
