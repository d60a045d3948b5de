import pytest
from prometheus_client import REGISTRY

from docdash.config import settings
from docdash.dashboard import DashboardView
from docdash.errors import (
    EmptyFile,
    FileTooLarge,
    NotOwner,
    SignedUrlFailed,
    UnsupportedFileType,
    UploadFailed,
    UploadNotFound,
    UploadNotReady,
)
from docdash.processing import advance_upload
from docdash.schemas import UploadStatus
from docdash.stats import recompute_user_stats
from docdash.store import ViewModelStore
from docdash.uploads import UploadOrchestrator

pytestmark = pytest.mark.anyio


async def no_sleep(_seconds):
    return None


@pytest.fixture
def notes():
    return []


@pytest.fixture
def orchestrator(context, backend, scheduled, notes):
    return UploadOrchestrator(
        context, backend, ViewModelStore("u1"),
        schedule_processing=scheduled.append, notify=notes.append,
    )


async def test_upload_goes_pending_then_completed(context, backend, scheduled):
    view = DashboardView(context, backend, schedule_processing=scheduled.append)
    await view.mount()

    record = await view.uploads.upload("data.csv", "text/csv", b"x" * 500000)

    assert record.status == UploadStatus.PENDING
    assert record.storage_path.startswith("u1/")
    assert record.storage_path.endswith("_data.csv")
    assert view.store.get(record.id).status == UploadStatus.PENDING
    assert view.store.stats.total_uploads == 1
    assert view.store.stats.storage_used == 500000
    assert view.store.stats.last_upload is not None
    assert scheduled == [record.id]
    assert view.notifications[-1].title == "Upload successful"

    status = await advance_upload(backend, record.id, 0, 0, sleep=no_sleep)

    assert status == UploadStatus.COMPLETED
    assert view.store.get(record.id).status == UploadStatus.COMPLETED
    assert backend.row("uploads", record.id)["status"] == "completed"
    await view.unmount()


async def test_upload_adds_to_existing_stats(context, backend, scheduled):
    backend.seed_stats("u1", total_uploads=2, storage_used=1000)
    view = DashboardView(context, backend, schedule_processing=scheduled.append)
    await view.mount()

    await view.uploads.upload("report.pdf", "application/pdf", b"%PDF" + b"0" * 96)

    assert view.store.stats.total_uploads == 3
    assert view.store.stats.storage_used == 1100
    assert backend.row("user_stats", "u1")["total_uploads"] == 3
    await view.unmount()


async def test_unsupported_type_is_rejected_before_any_call(orchestrator, backend, notes, scheduled):
    with pytest.raises(UnsupportedFileType):
        await orchestrator.upload("photo.png", "image/png", b"\x89PNG....")

    assert backend.calls == []
    assert scheduled == []
    assert notes[-1].title == "Invalid file type"
    assert notes[-1].description == "Please upload a PDF or CSV file."


async def test_content_type_parameters_are_ignored(orchestrator, backend):
    record = await orchestrator.upload("data.csv", "Text/CSV; charset=utf-8", b"a,b\n1,2\n")
    assert record.file_type == "text/csv"


async def test_empty_file_is_rejected(orchestrator, backend):
    with pytest.raises(EmptyFile):
        await orchestrator.upload("data.csv", "text/csv", b"")
    assert backend.calls == []


async def test_oversized_file_is_rejected(context, backend, notes):
    orchestrator = UploadOrchestrator(
        context, backend, ViewModelStore("u1"),
        schedule_processing=lambda _id: None, notify=notes.append,
        config=settings.model_copy(update={"max_upload_size": 10}),
    )
    with pytest.raises(FileTooLarge):
        await orchestrator.upload("data.csv", "text/csv", b"x" * 11)
    assert backend.calls == []
    assert notes[-1].title == "File too large"


async def test_storage_failure_writes_no_row(orchestrator, backend, notes, scheduled):
    backend.fail_on.add("put_object")

    with pytest.raises(UploadFailed) as excinfo:
        await orchestrator.upload("data.csv", "text/csv", b"1,2,3")

    assert excinfo.value.retryable
    assert backend.call_names() == ["put_object"]
    assert backend.tables["uploads"] == []
    assert scheduled == []
    assert notes[-1].title == "Upload failed"
    assert notes[-1].retryable


async def test_row_failure_leaves_a_counted_orphan(orchestrator, backend, scheduled):
    backend.fail_on.add("insert_row")
    before = REGISTRY.get_sample_value("docdash_orphaned_objects_total") or 0.0

    with pytest.raises(UploadFailed):
        await orchestrator.upload("data.csv", "text/csv", b"1,2,3")

    assert backend.call_names() == ["put_object", "insert_row"]
    assert len(backend.objects) == 1
    assert backend.tables["uploads"] == []
    assert scheduled == []
    assert REGISTRY.get_sample_value("docdash_orphaned_objects_total") == before + 1


async def test_stats_failure_does_not_fail_the_upload(orchestrator, backend, notes, scheduled):
    backend.fail_on.add("update_row")

    record = await orchestrator.upload("data.csv", "text/csv", b"1,2,3")

    assert backend.row("uploads", record.id)["status"] == "pending"
    assert backend.tables["user_stats"] == []
    assert scheduled == [record.id]
    assert notes[-1].title == "Upload successful"


async def test_stats_row_is_created_on_first_upload(orchestrator, backend):
    await orchestrator.upload("data.csv", "text/csv", b"12345")
    stats = backend.row("user_stats", "u1")
    assert stats["total_uploads"] == 1
    assert stats["storage_used"] == 5


async def test_scheduling_failure_marks_upload_failed(context, backend, notes):
    def broken(_upload_id):
        raise ConnectionError("broker down")

    orchestrator = UploadOrchestrator(
        context, backend, ViewModelStore("u1"), schedule_processing=broken, notify=notes.append,
    )
    record = await orchestrator.upload("data.csv", "text/csv", b"12345")

    assert backend.row("uploads", record.id)["status"] == "failed"


async def test_signed_url_for_completed_upload(orchestrator, backend):
    row = backend.seed_upload("u1")
    url = await orchestrator.signed_url(row["id"])
    assert row["storage_path"] in url
    assert f"expires={settings.signed_url_ttl}" in url


async def test_signed_url_requires_completed(orchestrator, backend):
    row = backend.seed_upload("u1", status="processing")
    with pytest.raises(UploadNotReady):
        await orchestrator.signed_url(row["id"])
    assert "get_signed_url" not in backend.call_names()


async def test_signed_url_checks_ownership(orchestrator, backend):
    row = backend.seed_upload("u2")
    with pytest.raises(NotOwner):
        await orchestrator.signed_url(row["id"])
    with pytest.raises(UploadNotFound):
        await orchestrator.signed_url("does-not-exist")


async def test_signed_url_failure_notifies(orchestrator, backend, notes):
    row = backend.seed_upload("u1")
    backend.fail_on.add("get_signed_url")
    with pytest.raises(SignedUrlFailed):
        await orchestrator.signed_url(row["id"])
    assert notes[-1].description == "Could not access the file. Please try again."


async def test_concurrent_uploads_drift_until_recompute(context, backend):
    first = UploadOrchestrator(context, backend, ViewModelStore("u1"), schedule_processing=lambda _id: None)
    second = UploadOrchestrator(context, backend, ViewModelStore("u1"), schedule_processing=lambda _id: None)

    await first.upload("a.csv", "text/csv", b"12345")
    await second.upload("b.csv", "text/csv", b"123")

    # both wrote from an empty snapshot
    assert backend.row("user_stats", "u1")["total_uploads"] == 1

    stats = await recompute_user_stats(backend, "u1")
    assert stats.total_uploads == 2
    assert stats.storage_used == 8
