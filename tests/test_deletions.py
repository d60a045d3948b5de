import pytest

from docdash.dashboard import DashboardView
from docdash.errors import DeleteFailed, NotOwner, UploadNotFound
from fakes import at

pytestmark = pytest.mark.anyio


@pytest.fixture
async def view(context, backend, scheduled):
    view = DashboardView(context, backend, schedule_processing=scheduled.append)
    yield view
    await view.unmount()


async def test_delete_removes_object_row_and_stats(view, backend):
    row = backend.seed_upload("u1", file_size=1000)
    backend.seed_stats("u1", total_uploads=1, storage_used=1000, last_upload=at(10))
    await view.mount()

    deleted = await view.deletes.delete(row["id"])

    assert deleted.id == row["id"]
    assert f"uploads/{row['storage_path']}" not in backend.objects
    assert backend.row("uploads", row["id"]) is None
    assert row["id"] not in view.store
    assert view.store.stats.total_uploads == 0
    assert view.store.stats.storage_used == 0
    # last_upload is the newest upload ever made, not the newest remaining one
    assert view.store.stats.last_upload == at(10)
    assert view.notifications[-1].title == "File deleted"
    assert backend.call_names().index("remove_object") < backend.call_names().index("delete_row")


async def test_storage_failure_keeps_everything(view, backend):
    row = backend.seed_upload("u1", file_size=1000)
    backend.seed_stats("u1", total_uploads=1, storage_used=1000)
    await view.mount()
    backend.fail_on.add("remove_object")

    with pytest.raises(DeleteFailed) as excinfo:
        await view.deletes.delete(row["id"])

    assert excinfo.value.step == "storage"
    assert excinfo.value.retryable
    assert "delete_row" not in backend.call_names()
    assert backend.row("uploads", row["id"]) is not None
    assert f"uploads/{row['storage_path']}" in backend.objects
    assert row["id"] in view.store
    assert view.store.stats.total_uploads == 1
    assert view.notifications[-1].description == "Could not delete the file from storage."


async def test_row_failure_after_object_removed(view, backend):
    row = backend.seed_upload("u1")
    await view.mount()
    backend.fail_on.add("delete_row")

    with pytest.raises(DeleteFailed) as excinfo:
        await view.deletes.delete(row["id"])

    assert excinfo.value.step == "database"
    assert backend.row("uploads", row["id"]) is not None
    assert row["id"] in view.store
    assert view.notifications[-1].description == "Could not delete the file from the database."


async def test_stats_failure_is_reported_but_delete_stands(view, backend):
    row = backend.seed_upload("u1", file_size=1000)
    backend.seed_stats("u1", total_uploads=1, storage_used=1000)
    await view.mount()
    backend.fail_on.add("update_row")

    await view.deletes.delete(row["id"])

    titles = [n.title for n in view.notifications]
    assert titles[-2:] == ["Statistics not updated", "File deleted"]
    assert backend.row("uploads", row["id"]) is None
    assert backend.row("user_stats", "u1")["total_uploads"] == 1


async def test_stats_never_go_negative(view, backend):
    row = backend.seed_upload("u1", file_size=5000)
    backend.seed_stats("u1", total_uploads=0, storage_used=100)
    await view.mount()

    await view.deletes.delete(row["id"])

    assert backend.row("user_stats", "u1")["total_uploads"] == 0
    assert backend.row("user_stats", "u1")["storage_used"] == 0


async def test_cannot_delete_another_users_upload(view, backend):
    row = backend.seed_upload("u2")
    await view.mount()

    with pytest.raises(NotOwner):
        await view.deletes.delete(row["id"])
    with pytest.raises(UploadNotFound):
        await view.deletes.delete("missing")

    assert "remove_object" not in backend.call_names()
    assert backend.row("uploads", row["id"]) is not None


async def test_delete_decrements_stats(view, backend):
    row = backend.seed_upload("u1", file_size=200000)
    backend.seed_upload("u1", file_size=300000)
    backend.seed_upload("u1", file_size=400000)
    backend.seed_stats("u1", total_uploads=3, storage_used=900000)
    await view.mount()

    await view.deletes.delete(row["id"])

    assert view.store.stats.total_uploads == 2
    assert view.store.stats.storage_used == 700000
    assert backend.row("user_stats", "u1")["storage_used"] == 700000
    assert row["id"] not in [r.id for r in view.store.list()]
    assert len(view.store.list()) == 2


async def test_second_delete_from_a_stale_view(context, backend, scheduled):
    row = backend.seed_upload("u1", file_size=1000)
    backend.seed_upload("u1", file_size=1000)
    backend.seed_stats("u1", total_uploads=2, storage_used=2000)
    first = DashboardView(context, backend, schedule_processing=scheduled.append)
    second = DashboardView(context, backend, schedule_processing=scheduled.append)
    await first.load()
    await second.load()

    await first.deletes.delete(row["id"])
    with pytest.raises(UploadNotFound):
        await second.deletes.delete(row["id"])

    assert backend.row("user_stats", "u1")["total_uploads"] == 1
    assert backend.row("user_stats", "u1")["storage_used"] == 1000
    assert row["id"] not in second.store
    assert "File deleted" not in [n.title for n in second.notifications]
