"""Tests for the upload manager state machine and scheduling."""

import threading
import time
from pathlib import Path
from unittest import mock

import pytest
from conftest import FakeClient

from photos_uploader.config import UploadOptions
from photos_uploader.credentials import InMemoryCredentialStore
from photos_uploader.hashing import sha1_digest
from photos_uploader.manager import (
    NO_ACCOUNT_MESSAGE,
    UploadItem,
    UploadManager,
    UploadStatus,
    render_status,
)

TIMEOUT = 5


def _manager(client, **options):
    return UploadManager.for_client(client, UploadOptions(**options))


def _status_trail(manager):
    """Record the distinct consecutive statuses each item passes through."""
    trail: dict[str, list[UploadStatus]] = {}
    lock = threading.Lock()

    def on_item(item):
        with lock:
            statuses = trail.setdefault(item.id, [])
            if not statuses or statuses[-1] is not item.status:
                statuses.append(item.status)

    manager.add_item_listener(on_item)
    return trail


def _peak_in_flight(manager):
    """Track the largest number of items the manager reports as in flight."""
    latest: dict[str, UploadStatus] = {}
    peak = [0]
    lock = threading.Lock()

    def on_item(item):
        with lock:
            latest[item.id] = item.status
            peak[0] = max(peak[0], sum(1 for s in latest.values() if s.is_in_flight))

    manager.add_item_listener(on_item)
    return peak


class TestItemLifecycle:
    """Tests for the per-item processing paths."""

    def test_new_file_is_uploaded(self, fake_client, media_files):
        """Test queued → hashing → checking → uploading → finalizing → completed."""
        manager = _manager(fake_client)
        trail = _status_trail(manager)

        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)

        done = manager.get(item.id)
        assert done.status is UploadStatus.COMPLETED
        assert done.remote_key == f"key-{media_files[0].name}"
        assert done.progress == 1.0
        assert trail[item.id] == [
            UploadStatus.QUEUED,
            UploadStatus.HASHING,
            UploadStatus.CHECKING,
            UploadStatus.UPLOADING,
            UploadStatus.FINALIZING,
            UploadStatus.COMPLETED,
        ]
        assert fake_client.calls == ["find", "token", "upload", "commit"]

    def test_existing_file_is_duplicate(self, media_files):
        """Test queued → hashing → checking → duplicate when the hash matches."""
        client = FakeClient(library={sha1_digest(media_files[0]): "existing-key"})
        manager = _manager(client)
        trail = _status_trail(manager)

        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)

        done = manager.get(item.id)
        assert done.status is UploadStatus.DUPLICATE
        assert done.remote_key == "existing-key"
        assert trail[item.id] == [
            UploadStatus.QUEUED,
            UploadStatus.HASHING,
            UploadStatus.CHECKING,
            UploadStatus.DUPLICATE,
        ]
        assert client.calls == ["find"]

    def test_force_upload_option_skips_hash_check(self, media_files):
        """Test that the run-wide force flag uploads known files anyway."""
        client = FakeClient(library={sha1_digest(media_files[0]): "existing-key"})
        manager = _manager(client, force_upload=True)

        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)

        assert manager.get(item.id).status is UploadStatus.COMPLETED
        assert "find" not in client.calls

    def test_failure_sets_error_message(self, fake_client, tmp_path):
        """Test that a failing step leaves the item in error with a message."""
        manager = _manager(fake_client)

        [item] = manager.enqueue([tmp_path / "vanished.jpg"])
        assert manager.wait(TIMEOUT)

        failed = manager.get(item.id)
        assert failed.status is UploadStatus.ERROR
        assert failed.error_message
        assert failed.status_text == failed.error_message

    def test_commit_failure_message(self, fake_client, media_files):
        """Test that the client's error text reaches the item."""
        fake_client.fail_commit_times = 1
        manager = _manager(fake_client)

        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)

        assert manager.get(item.id).error_message == "Upload failed: Commit failed with status 500"


class TestControls:
    """Tests for cancel, retry, force upload, and pause."""

    def test_cancel_in_flight_item(self, media_files):
        """Test that a cancelled item stops before uploading."""
        gate = threading.Event()
        client = FakeClient(gate=gate)
        manager = _manager(client)

        [item] = manager.enqueue([media_files[0]])
        assert client.entered.wait(TIMEOUT)
        assert manager.cancel(item.id) is True
        assert manager.get(item.id).status is UploadStatus.CANCELLED
        gate.set()
        assert manager.wait(TIMEOUT)

        assert manager.get(item.id).status is UploadStatus.CANCELLED
        assert client.calls == ["find"]
        assert manager.cancel(item.id) is False

    def test_cancel_during_upload(self, media_files):
        """Test that cancelling mid-upload aborts the transfer and skips the commit."""
        upload_gate = threading.Event()
        client = FakeClient(upload_gate=upload_gate)
        manager = _manager(client)

        [item] = manager.enqueue([media_files[0]])
        assert client.upload_entered.wait(TIMEOUT)
        assert manager.cancel(item.id) is True
        upload_gate.set()
        assert manager.wait(TIMEOUT)

        assert manager.get(item.id).status is UploadStatus.CANCELLED
        assert client.cancel_seen is True
        assert "commit" not in client.calls

    def test_cancel_all(self, media_files):
        """Test that cancel_all stops dispatch and cancels every active item."""
        gate = threading.Event()
        client = FakeClient(gate=gate)
        manager = _manager(client, max_concurrency=1)

        manager.enqueue(media_files)
        assert client.entered.wait(TIMEOUT)
        manager.cancel_all()
        gate.set()
        assert manager.wait(TIMEOUT)

        assert [i.status for i in manager.items()] == [UploadStatus.CANCELLED] * 3
        assert client.calls == ["find"]
        assert manager.summary().cancelled_count == 3

    def test_cancel_leaves_finished_items_alone(self, fake_client, media_files):
        """Test that completed items cannot be cancelled."""
        manager = _manager(fake_client)
        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)

        assert manager.cancel(item.id) is False
        manager.cancel_all()
        assert manager.get(item.id).status is UploadStatus.COMPLETED

    def test_retry_failed_item(self, fake_client, media_files):
        """Test that retry re-queues a failed item and restarts the pool."""
        fake_client.fail_commit_times = 1
        manager = _manager(fake_client)
        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)
        assert manager.get(item.id).status is UploadStatus.ERROR

        assert manager.retry(item.id) is True
        assert manager.wait(TIMEOUT)

        done = manager.get(item.id)
        assert done.status is UploadStatus.COMPLETED
        assert done.error_message is None
        assert manager.retry(item.id) is False

    def test_retry_all_failed(self, fake_client, media_files):
        """Test that every failed item is re-queued at once."""
        fake_client.fail_commit_times = 2
        manager = _manager(fake_client, max_concurrency=1)
        manager.enqueue(media_files[:2])
        assert manager.wait(TIMEOUT)
        assert manager.summary().failed_count == 2

        assert manager.retry_all_failed() == 2
        assert manager.wait(TIMEOUT)
        assert manager.summary().completed_count == 2

    def test_force_upload_duplicate(self, media_files):
        """Test that force upload bypasses the hash check for that item only."""
        client = FakeClient(library={sha1_digest(media_files[0]): "existing-key"})
        manager = _manager(client)
        [item] = manager.enqueue([media_files[0]])
        assert manager.wait(TIMEOUT)
        assert manager.get(item.id).status is UploadStatus.DUPLICATE

        assert manager.force_upload(item.id) is True
        assert manager.wait(TIMEOUT)

        assert manager.get(item.id).status is UploadStatus.COMPLETED
        assert client.calls.count("find") == 1
        assert manager.force_upload(item.id) is False

    def test_pause_before_enqueue(self, fake_client, media_files):
        """Test that nothing starts while paused and resume picks the queue up."""
        manager = _manager(fake_client)
        manager.pause()
        manager.enqueue(media_files)

        assert manager.is_running is False
        assert all(i.status is UploadStatus.QUEUED for i in manager.items())

        manager.resume()
        assert manager.wait(TIMEOUT)
        assert all(i.status is UploadStatus.COMPLETED for i in manager.items())

    def test_pause_lets_in_flight_work_finish(self, media_files):
        """Test that pause stops new dispatch but not the running upload."""
        gate = threading.Event()
        client = FakeClient(gate=gate)
        manager = _manager(client, max_concurrency=1)

        manager.enqueue(media_files)
        assert client.entered.wait(TIMEOUT)
        manager.pause()
        gate.set()
        assert manager.wait(TIMEOUT)

        statuses = [i.status for i in manager.items()]
        assert statuses == [UploadStatus.COMPLETED, UploadStatus.QUEUED, UploadStatus.QUEUED]

        manager.resume()
        assert manager.wait(TIMEOUT)
        assert all(i.status is UploadStatus.COMPLETED for i in manager.items())

    def test_clear(self, media_files):
        """Test that clearing is refused while running and allowed when idle."""
        gate = threading.Event()
        client = FakeClient(gate=gate)
        manager = _manager(client)
        manager.enqueue([media_files[0]])
        assert client.entered.wait(TIMEOUT)

        with pytest.raises(RuntimeError):
            manager.clear()

        gate.set()
        assert manager.wait(TIMEOUT)
        manager.clear()
        assert manager.items() == []
        assert manager.overall_progress == 0.0


class TestScheduling:
    """Tests for the concurrency bound and aggregate progress."""

    @pytest.fixture
    def clips(self, tmp_path):
        files = []
        for i in range(6):
            path = tmp_path / f"clip_{i}.mp4"
            path.write_bytes(bytes([i]) * 64)
            files.append(path)
        return files

    @pytest.mark.parametrize("force_upload", [False, True])
    def test_concurrency_bound(self, clips, force_upload):
        """Test that no more than max_concurrency items are in flight at once."""
        client = FakeClient(delay=0.02)
        manager = _manager(client, max_concurrency=2, force_upload=force_upload)
        peak = _peak_in_flight(manager)

        manager.enqueue(clips)
        assert manager.wait(TIMEOUT)

        assert manager.summary().completed_count == 6
        assert client.max_in_flight <= 2
        assert peak[0] <= 2
        assert ("find" in client.calls) is not force_upload
        assert client.calls.count("commit") == 6

    def test_retry_while_running(self, clips):
        """Test that a retry during a run is picked up at most one over the cap."""
        client = FakeClient(delay=0.02)
        client.fail_commit_times = 1
        manager = _manager(client, max_concurrency=1)
        peak = _peak_in_flight(manager)
        retried = []

        def retry_on_error(item):
            if item.status is UploadStatus.ERROR and not retried:
                retried.append((manager.is_running, manager.retry(item.id)))

        manager.add_item_listener(retry_on_error)
        items = manager.enqueue(clips)
        assert manager.wait(TIMEOUT)

        assert retried == [(True, True)]
        assert all(i.status is UploadStatus.COMPLETED for i in manager.items())
        assert manager.get(items[0].id).attempt == 1
        assert client.max_in_flight <= 2
        assert peak[0] <= 2

    def test_items_dispatched_in_queue_order(self, fake_client, media_files):
        """Test that a single worker processes items in enqueue order."""
        manager = _manager(fake_client, max_concurrency=1)
        order = []
        manager.add_item_listener(
            lambda item: order.append(item.file_name) if item.status is UploadStatus.HASHING else None
        )

        manager.enqueue(media_files)
        assert manager.wait(TIMEOUT)
        assert order == [p.name for p in media_files]

    def test_progress_counts_completed_and_errors(self, media_files, tmp_path):
        """Test overall progress as (completed + error) / total."""
        client = FakeClient(library={sha1_digest(media_files[1]): "existing-key"})
        manager = _manager(client, max_concurrency=1)
        seen = []
        manager.add_progress_listener(seen.append)

        manager.enqueue([media_files[0], media_files[1], tmp_path / "vanished.jpg"])
        assert manager.wait(TIMEOUT)

        # completed + error out of three; the duplicate does not count
        assert manager.overall_progress == pytest.approx(2 / 3)
        assert seen == sorted(seen)
        assert seen[-1] == pytest.approx(2 / 3)

    def test_finished_listener_gets_summary(self, fake_client, media_files):
        """Test that the completion summary is delivered once the run ends."""
        manager = _manager(fake_client)
        finished = threading.Event()
        summaries = []

        def on_finished(summary):
            summaries.append(summary)
            finished.set()

        manager.add_finished_listener(on_finished)
        manager.enqueue(media_files)
        assert finished.wait(TIMEOUT)

        assert summaries[0].completed_count == 3
        assert summaries[0].failed_count == 0
        assert summaries[0].all_ok

    def test_broken_listener_does_not_stop_uploads(self, fake_client, media_files):
        """Test that listener exceptions are logged and ignored."""
        manager = _manager(fake_client)
        manager.add_item_listener(mock.Mock(side_effect=RuntimeError("ui gone")))

        manager.enqueue(media_files)
        assert manager.wait(TIMEOUT)
        assert manager.summary().completed_count == 3


class TestAccounts:
    """Tests for managers bound to a credential store."""

    def test_no_account_fails_queued_items(self, media_files):
        """Test that a run without a credential fails every queued item."""
        manager = UploadManager.for_account(InMemoryCredentialStore(), "nobody@example.com")

        manager.enqueue(media_files)

        assert manager.is_running is False
        items = manager.items()
        assert all(i.status is UploadStatus.ERROR for i in items)
        assert all(i.error_message == NO_ACCOUNT_MESSAGE for i in items)
        assert manager.overall_progress == 1.0

    def test_client_reused_across_runs(self, credential, fake_client, media_files):
        """Test that the account client (and its token cache) is built once."""
        store = InMemoryCredentialStore([credential])
        with mock.patch("photos_uploader.manager.PhotosClient", return_value=fake_client) as factory:
            manager = UploadManager.for_account(store, credential.email)
            manager.enqueue([media_files[0]])
            assert manager.wait(TIMEOUT)
            manager.enqueue([media_files[1]])
            assert manager.wait(TIMEOUT)

        factory.assert_called_once_with(credential, timeout=60.0)
        assert manager.summary().completed_count == 2

    def test_client_built_once_under_concurrent_starts(self, credential):
        """Test that simultaneous client lookups share one client."""
        store = InMemoryCredentialStore([credential])

        def slow_client(*args, **kwargs):
            time.sleep(0.05)
            return FakeClient()

        with mock.patch("photos_uploader.manager.PhotosClient", side_effect=slow_client) as factory:
            manager = UploadManager.for_account(store, credential.email)
            barrier = threading.Barrier(4)
            results = []

            def lookup():
                barrier.wait()
                results.append(manager._client_factory())

            threads = [threading.Thread(target=lookup) for _ in range(4)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(TIMEOUT)

        assert factory.call_count == 1
        assert len(results) == 4
        assert all(client is results[0] for client in results)


class ForgetfulClient(FakeClient):
    """Accepts commits but never shows them in the library."""

    def commit(self, *args, **kwargs):
        key = super().commit(*args, **kwargs)
        self.library.clear()
        return key


class TestDeleteAfterUpload:
    """Tests for moving uploaded sources to the trash."""

    def test_confirmed_upload_is_trashed(self, fake_client, media_files):
        """Test that the source is trashed after the library confirms it."""
        manager = _manager(fake_client, delete_after_upload=True)
        with mock.patch("photos_uploader.manager.send2trash") as trash:
            manager.enqueue([media_files[0]])
            assert manager.wait(TIMEOUT)

        trash.assert_called_once_with(str(media_files[0]))
        assert fake_client.calls == ["find", "token", "upload", "commit", "find"]

    def test_unconfirmed_upload_is_kept(self, media_files):
        """Test that a failed confirmation keeps the file and the completed status."""
        client = ForgetfulClient()
        manager = _manager(client, delete_after_upload=True)
        with mock.patch("photos_uploader.manager.send2trash") as trash:
            [item] = manager.enqueue([media_files[0]])
            assert manager.wait(TIMEOUT)

        trash.assert_not_called()
        assert manager.get(item.id).status is UploadStatus.COMPLETED

    def test_unexpected_confirmation_error_still_finishes(self, media_files):
        """Test that a crash while confirming does not stall the run."""
        client = FakeClient()
        checks = []

        def find(sha1_hash):
            checks.append(sha1_hash)
            if len(checks) > 1:
                raise RuntimeError("library index corrupted")
            return None

        client.find_remote_media_by_hash = find
        manager = _manager(client, delete_after_upload=True)
        with mock.patch("photos_uploader.manager.send2trash") as trash:
            [item] = manager.enqueue([media_files[0]])
            assert manager.wait(TIMEOUT)

        trash.assert_not_called()
        assert len(checks) == 2
        assert manager.get(item.id).status is UploadStatus.COMPLETED
        assert manager.is_running is False

    def test_duplicates_are_not_trashed(self, media_files):
        """Test that only items uploaded in this run are deleted."""
        client = FakeClient(library={sha1_digest(media_files[0]): "existing-key"})
        manager = _manager(client, delete_after_upload=True)
        with mock.patch("photos_uploader.manager.send2trash") as trash:
            manager.enqueue([media_files[0]])
            assert manager.wait(TIMEOUT)

        trash.assert_not_called()


class TestRenderStatus:
    """Tests for the human-readable status labels."""

    @pytest.mark.parametrize(
        "status, progress, error, expected",
        [
            (UploadStatus.QUEUED, 0.0, None, "Queued"),
            (UploadStatus.HASHING, 0.0, None, "Hashing..."),
            (UploadStatus.CHECKING, 0.0, None, "Checking library..."),
            (UploadStatus.UPLOADING, 0.42, None, "42%"),
            (UploadStatus.FINALIZING, 1.0, None, "Finalizing..."),
            (UploadStatus.COMPLETED, 1.0, None, "Done"),
            (UploadStatus.DUPLICATE, 0.0, None, "Duplicate"),
            (UploadStatus.ERROR, 0.0, "Network error: timed out", "Network error: timed out"),
            (UploadStatus.ERROR, 0.0, None, "Error"),
            (UploadStatus.CANCELLED, 0.0, None, "Cancelled"),
        ],
    )
    def test_labels(self, status, progress, error, expected):
        item = UploadItem(file_path=Path("a.jpg"), status=status, progress=progress, error_message=error)
        assert render_status(item) == expected

    def test_active_states(self):
        """Test which states can still be cancelled."""
        assert UploadStatus.QUEUED.is_active
        assert UploadStatus.UPLOADING.is_active
        assert not UploadStatus.DUPLICATE.is_active
        assert not UploadStatus.CANCELLED.is_active
        assert not UploadStatus.QUEUED.is_in_flight
