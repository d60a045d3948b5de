# docdash/errors.py
from typing import Optional


class DocdashError(Exception):
    """Base error for a single failed user action. Never fatal to the process."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


# ---- validation (rejected before any side effect) ----
class UnsupportedFileType(DocdashError):
    status_code = 400


class EmptyFile(DocdashError):
    status_code = 400


class FileTooLarge(DocdashError):
    status_code = 413


# ---- transient platform failures ----
class BackendError(DocdashError):
    """A call to the storage/database/change-feed platform failed."""

    status_code = 502
    retryable = True

    def __init__(self, operation: str, detail: str = ""):
        message = f"{operation} failed" + (f": {detail}" if detail else "")
        super().__init__(message)
        self.operation = operation


class UploadFailed(DocdashError):
    status_code = 502
    retryable = True


class DeleteFailed(DocdashError):
    status_code = 502
    retryable = True

    def __init__(self, message: str, *, step: str):
        super().__init__(message)
        self.step = step


class SignedUrlFailed(DocdashError):
    status_code = 502
    retryable = True


# ---- lookups ----
class UploadNotFound(DocdashError):
    status_code = 404


class NotOwner(DocdashError):
    status_code = 403


class UploadNotReady(DocdashError):
    status_code = 409
