# docdash/dashboard.py
import logging
from typing import Callable, Dict, List, Optional

from docdash.auth import SessionContext
from docdash.backend import Backend
from docdash.deletions import DeleteOrchestrator
from docdash.reconciler import Reconciler
from docdash.schemas import DashboardSnapshot, Notification, OutputRecord, UploadRecord
from docdash.stats import load_stats
from docdash.store import ViewModelStore
from docdash.uploads import ScheduleProcessing, UploadOrchestrator

logger = logging.getLogger(__name__)

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_file_size(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    i = 0
    value = float(num_bytes)
    while value >= 1024 and i < len(_SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[i]}"


class DashboardView:
    """
    One user's dashboard: a store, the reconciler feeding it, and the actions
    that can be taken from it. The live subscription exists between mount()
    and unmount().
    """

    def __init__(
        self,
        context: SessionContext,
        backend: Backend,
        *,
        schedule_processing: Optional[ScheduleProcessing] = None,
        max_notifications: int = 20,
    ):
        self.context = context
        self.backend = backend
        self.store = ViewModelStore(context.user_id)
        self.reconciler = Reconciler(context, self.store, backend)
        self.notifications: List[Notification] = []
        self._max_notifications = max_notifications
        self._notification_listeners: List[Callable[[Notification], None]] = []
        self.uploads = UploadOrchestrator(
            context, backend, self.store,
            schedule_processing=schedule_processing, notify=self.notify,
        )
        self.deletes = DeleteOrchestrator(context, backend, self.store, notify=self.notify)

    @property
    def mounted(self) -> bool:
        return self.reconciler.subscribed

    async def load(self) -> None:
        """Initial fetch: uploads newest first with their outputs, then stats."""
        rows = await self.backend.select_rows("uploads", {"user_id": self.context.user_id}, ("created_at", "desc"))
        outputs = await self._load_outputs([str(r["id"]) for r in rows])
        for row in rows:
            record = UploadRecord.model_validate(row)
            self.reconciler.merge_loaded(record.model_copy(update={"outputs": outputs.get(record.id, [])}))
        self.reconciler.merge_loaded_stats(await load_stats(self.backend, self.context.user_id))
        logger.info("Loaded dashboard for %s: %d uploads", self.context.user_id, len(self.store))

    async def _load_outputs(self, upload_ids: List[str]) -> Dict[str, List[OutputRecord]]:
        if not upload_ids:
            return {}
        by_upload: Dict[str, List[OutputRecord]] = {}
        for row in await self.backend.select_rows("outputs", {"upload_id": upload_ids}, ("created_at", "asc")):
            output = OutputRecord.model_validate(row)
            by_upload.setdefault(str(row["upload_id"]), []).append(output)
        return by_upload

    async def mount(self) -> None:
        # subscribe before reading so nothing committed in between is missed
        await self.reconciler.start()
        await self.load()

    async def unmount(self) -> None:
        await self.reconciler.stop()
        self._notification_listeners.clear()

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
        del self.notifications[:-self._max_notifications]
        for listener in list(self._notification_listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

    def on_notification(self, listener: Callable[[Notification], None]) -> None:
        self._notification_listeners.append(listener)

    def snapshot(self) -> DashboardSnapshot:
        stats = self.store.stats
        return DashboardSnapshot(
            uploads=self.store.list(),
            stats=stats,
            storage_used_display=format_file_size(stats.storage_used),
            notifications=list(self.notifications),
        )
