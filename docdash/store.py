# docdash/store.py
import logging
import threading
from typing import Callable, Dict, List, Optional

from docdash.schemas import UploadRecord, UserStats

logger = logging.getLogger(__name__)

Listener = Callable[["ViewModelStore"], None]


class ViewModelStore:
    """
    In-memory snapshot of one user's uploads and stats, as shown by the dashboard.

    Records are kept in first-seen order; replacing a record keeps its slot.
    `list()` sorts newest-first by created_at, ties in first-seen order.
    Once disposed, every mutation is ignored.
    """

    def __init__(self, owner_id: str, stats: Optional[UserStats] = None):
        self.owner_id = owner_id
        self._records: Dict[str, UploadRecord] = {}
        self._stats = stats or UserStats(user_id=owner_id)
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed

    @property
    def stats(self) -> UserStats:
        return self._stats

    def get(self, upload_id: str) -> Optional[UploadRecord]:
        return self._records.get(upload_id)

    def __contains__(self, upload_id) -> bool:
        return upload_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def list(self) -> List[UploadRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def upsert(self, record: UploadRecord) -> bool:
        with self._lock:
            if self._disposed:
                logger.debug("Ignoring upsert of %s on disposed store", record.id)
                return False
            if self._records.get(record.id) == record:
                return False
            self._records[record.id] = record
        self._notify()
        return True

    def remove(self, upload_id: str) -> bool:
        with self._lock:
            if self._disposed or upload_id not in self._records:
                return False
            del self._records[upload_id]
        self._notify()
        return True

    def set_stats(self, stats: UserStats) -> bool:
        with self._lock:
            if self._disposed or stats == self._stats:
                return False
            self._stats = stats
        self._notify()
        return True

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
        self._listeners.clear()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed")
