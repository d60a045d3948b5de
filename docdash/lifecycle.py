# docdash/lifecycle.py
"""
Upload status lifecycle.

    pending -> processing -> completed
       \           \
        +-----------+----> failed

completed and failed are terminal; a status never moves backwards.
"""
from typing import Optional, Union

from docdash.schemas import UploadStatus

TERMINAL_STATUSES = frozenset({UploadStatus.COMPLETED, UploadStatus.FAILED})
ACTIVE_STATUSES = frozenset({UploadStatus.PENDING, UploadStatus.PROCESSING})

_NEXT = {
    UploadStatus.PENDING: UploadStatus.PROCESSING,
    UploadStatus.PROCESSING: UploadStatus.COMPLETED,
}
_RANK = {
    UploadStatus.PENDING: 0,
    UploadStatus.PROCESSING: 1,
    UploadStatus.COMPLETED: 2,
    UploadStatus.FAILED: 2,
}

StatusLike = Union[UploadStatus, str]


def is_terminal(status: StatusLike) -> bool:
    return UploadStatus(status) in TERMINAL_STATUSES


def next_status(status: StatusLike) -> Optional[UploadStatus]:
    return _NEXT.get(UploadStatus(status))


def can_transition(current: StatusLike, new: StatusLike) -> bool:
    """True when moving from `current` to `new` does not regress.

    Re-applying the same status is allowed so repeated events stay idempotent.
    """
    current, new = UploadStatus(current), UploadStatus(new)
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new == UploadStatus.FAILED:
        return True
    return _RANK[new] > _RANK[current]
