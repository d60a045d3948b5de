# docdash/reconciler.py
"""
Applies change-feed events for the signed-in user's rows to a ViewModelStore.

insert/update replace the whole record, delete removes it. Deleted ids are
remembered so a late update cannot bring them back. Events for other
users, malformed payloads, stale updates (older `updated_at` than the stored
copy) and status regressions are dropped and logged; none of them raise out
of the handler, so the subscription stays up.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from docdash.auth import SessionContext
from docdash.backend import Backend
from docdash.changefeed import Subscription
from docdash.errors import BackendError
from docdash.lifecycle import can_transition
from docdash.metrics import events_dropped_total
from docdash.schemas import ChangeEvent, ChangeType, OutputRecord, UploadRecord, UserStats, as_utc
from docdash.store import ViewModelStore

logger = logging.getLogger(__name__)

UPLOADS_TABLE = "uploads"
STATS_TABLE = "user_stats"
OUTPUTS_TABLE = "outputs"

_TIMESTAMP = TypeAdapter(datetime)


class Reconciler:
    def __init__(self, context: SessionContext, store: ViewModelStore, backend: Backend):
        self.context = context
        self.store = store
        self.backend = backend
        self._subscriptions: List[Subscription] = []
        # deleted upload id -> time of the delete
        self._tombstones: Dict[str, datetime] = {}
        self._stats_from_feed = False

    @property
    def subscribed(self) -> bool:
        return bool(self._subscriptions)

    async def start(self) -> None:
        if self._subscriptions:
            return
        owner = {"user_id": self.context.user_id}
        try:
            self._subscriptions.append(
                await self.backend.subscribe_changes(UPLOADS_TABLE, owner, self.handle_upload_event)
            )
            self._subscriptions.append(
                await self.backend.subscribe_changes(STATS_TABLE, owner, self.handle_stats_event)
            )
            # outputs rows carry no owner column; they are matched against uploads already in the store
            self._subscriptions.append(
                await self.backend.subscribe_changes(OUTPUTS_TABLE, None, self.handle_output_event)
            )
        except BackendError:
            await self._unsubscribe_all()
            raise

    async def stop(self) -> None:
        await self._unsubscribe_all()
        self.store.dispose()

    async def _unsubscribe_all(self) -> None:
        while self._subscriptions:
            sub = self._subscriptions.pop()
            try:
                await self.backend.unsubscribe(sub)
            except BackendError:
                logger.exception("Failed to unsubscribe from %s", sub.table)

    def apply(self, event: ChangeEvent) -> None:
        handler = {
            UPLOADS_TABLE: self.handle_upload_event,
            STATS_TABLE: self.handle_stats_event,
            OUTPUTS_TABLE: self.handle_output_event,
        }.get(event.table)
        if handler is None:
            self._drop(event, "unknown_table")
            return
        handler(event)

    # ---- uploads ----
    def handle_upload_event(self, event: ChangeEvent) -> None:
        if event.type == ChangeType.DELETE:
            old = event.old or {}
            upload_id = old.get("id")
            if not upload_id:
                self._drop(event, "missing_id")
                return
            if not self._owned(old, required=False):
                self._drop(event, "foreign_owner")
                return
            self._bury(str(upload_id), old, event.commit_timestamp)
            self.store.remove(str(upload_id))
            return

        row = event.new or {}
        if not row.get("id"):
            self._drop(event, "missing_id")
            return
        if not self._owned(row, required=True):
            self._drop(event, "foreign_owner")
            return
        try:
            record = UploadRecord.model_validate(row)
        except ValidationError as e:
            self._drop(event, "invalid_payload", detail=str(e))
            return

        reason = self._rejection(record)
        if reason:
            self._drop(event, reason)
            return
        current = self.store.get(record.id)
        if current is not None and "outputs" not in row and current.outputs is not None:
            record = record.model_copy(update={"outputs": current.outputs})
        self.store.upsert(record)

    def merge_loaded(self, record: UploadRecord) -> None:
        """Fold a row read by the initial load into the store without undoing newer events."""
        reason = self._rejection(record)
        if reason == "deleted":
            return
        if reason:
            current = self.store.get(record.id)
            # output events for rows not yet in the store were ignored, so keep the loaded ones
            if current.outputs is None and record.outputs is not None:
                self.store.upsert(current.model_copy(update={"outputs": record.outputs}))
            return
        self.store.upsert(record)

    def _rejection(self, record: UploadRecord) -> Optional[str]:
        buried_at = self._tombstones.get(record.id)
        if buried_at is not None:
            if record.updated_at is None or record.updated_at <= buried_at:
                return "deleted"
            # a newer write than the delete we saw
            del self._tombstones[record.id]
        current = self.store.get(record.id)
        if current is None:
            return None
        if _is_older(record, current):
            return "stale"
        if not can_transition(current.status, record.status):
            return "status_regression"
        return None

    def _bury(self, upload_id: str, old: Dict[str, Any], commit_timestamp: datetime) -> None:
        candidates = [as_utc(commit_timestamp)]
        current = self.store.get(upload_id)
        if current is not None and current.updated_at is not None:
            candidates.append(current.updated_at)
        if old.get("updated_at"):
            try:
                candidates.append(as_utc(_TIMESTAMP.validate_python(old["updated_at"])))
            except ValidationError:
                logger.warning("Unreadable updated_at on deleted upload %s", upload_id)
        self._tombstones[upload_id] = max(candidates)

    # ---- user_stats ----
    def handle_stats_event(self, event: ChangeEvent) -> None:
        if event.type == ChangeType.DELETE:
            if not self._owned(event.old or {}, required=False):
                self._drop(event, "foreign_owner")
                return
            self._stats_from_feed = True
            self.store.set_stats(UserStats(user_id=self.context.user_id))
            return
        row = event.new or {}
        if not row.get("user_id"):
            self._drop(event, "missing_id")
            return
        if not self._owned(row, required=True):
            self._drop(event, "foreign_owner")
            return
        try:
            stats = UserStats.model_validate(row)
        except ValidationError as e:
            self._drop(event, "invalid_payload", detail=str(e))
            return
        self._stats_from_feed = True
        self.store.set_stats(stats)

    def merge_loaded_stats(self, stats: UserStats) -> None:
        # anything the feed delivered is at least as new as the loaded row
        if not self._stats_from_feed:
            self.store.set_stats(stats)

    # ---- outputs ----
    def handle_output_event(self, event: ChangeEvent) -> None:
        row = event.row
        if not row.get("id") or not row.get("upload_id"):
            self._drop(event, "missing_id")
            return
        upload = self.store.get(str(row["upload_id"]))
        if upload is None:
            # not one of ours, or not loaded yet
            return
        outputs = [o for o in (upload.outputs or []) if o.id != str(row["id"])]
        if event.type != ChangeType.DELETE:
            try:
                outputs.append(OutputRecord.model_validate(row))
            except ValidationError as e:
                self._drop(event, "invalid_payload", detail=str(e))
                return
        self.store.upsert(upload.model_copy(update={"outputs": outputs}))

    def _owned(self, row: Dict[str, Any], required: bool) -> bool:
        owner = row.get("user_id")
        if owner is None:
            return not required
        return str(owner) == self.context.user_id

    def _drop(self, event: ChangeEvent, reason: str, detail: Optional[str] = None) -> None:
        events_dropped_total.labels(reason=reason).inc()
        if reason == "foreign_owner":
            logger.debug("Ignoring %s event on %s for another user", event.type.value, event.table)
            return
        logger.warning(
            "Dropping %s event on %s (%s)%s",
            event.type.value, event.table, reason, f": {detail}" if detail else "",
        )


def _is_older(incoming: UploadRecord, current: UploadRecord) -> bool:
    if incoming.updated_at is None or current.updated_at is None:
        return False
    return incoming.updated_at < current.updated_at
