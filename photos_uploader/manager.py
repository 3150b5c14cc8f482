"""Upload manager – queues files, runs a bounded worker pool, and tracks per-item state.

Worker threads never touch the item list. Each one posts ``ItemUpdate``
messages to a queue, and a single coordinator thread applies them, recomputes
the overall progress, and notifies listeners. Control calls (cancel, retry,
force upload, pause) check the current status under the same lock the
coordinator uses.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from send2trash import send2trash

from .client import PhotosClient
from .config import UploadOptions
from .credentials import CredentialStore
from .errors import PhotosUploaderError, UploadCancelled
from .hashing import sha1_digest, to_base64
from .media import expand_paths

logger = logging.getLogger(__name__)

NO_ACCOUNT_MESSAGE = "No account selected"

# Minimum change in upload fraction before a progress update is posted.
PROGRESS_STEP = 0.01


class UploadStatus(Enum):
    QUEUED = "queued"
    HASHING = "hashing"
    CHECKING = "checking"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        """True while the item may still be processed (and therefore cancelled)."""
        return self in _ACTIVE_STATES

    @property
    def is_in_flight(self) -> bool:
        return self in _IN_FLIGHT_STATES

    def __str__(self) -> str:
        return self.value


_IN_FLIGHT_STATES = frozenset({
    UploadStatus.HASHING,
    UploadStatus.CHECKING,
    UploadStatus.UPLOADING,
    UploadStatus.FINALIZING,
})
_ACTIVE_STATES = _IN_FLIGHT_STATES | {UploadStatus.QUEUED}


@dataclass
class UploadItem:
    file_path: Path
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: UploadStatus = UploadStatus.QUEUED
    progress: float = 0.0
    error_message: str | None = None
    remote_key: str | None = None
    attempt: int = 0

    @property
    def file_name(self) -> str:
        return self.file_path.name

    @property
    def status_text(self) -> str:
        return render_status(self)


def render_status(item: UploadItem) -> str:
    """Human-readable label for an item's current state."""
    status = item.status
    if status is UploadStatus.QUEUED:
        return "Queued"
    if status is UploadStatus.HASHING:
        return "Hashing..."
    if status is UploadStatus.CHECKING:
        return "Checking library..."
    if status is UploadStatus.UPLOADING:
        return f"{int(item.progress * 100)}%"
    if status is UploadStatus.FINALIZING:
        return "Finalizing..."
    if status is UploadStatus.COMPLETED:
        return "Done"
    if status is UploadStatus.DUPLICATE:
        return "Duplicate"
    if status is UploadStatus.ERROR:
        return item.error_message or "Error"
    return "Cancelled"


@dataclass(frozen=True)
class UploadSummary:
    completed_count: int = 0
    failed_count: int = 0
    duplicate_count: int = 0
    cancelled_count: int = 0

    @property
    def all_ok(self) -> bool:
        return self.failed_count == 0


# ── coordinator messages ────────────────────────────────────────────


@dataclass(frozen=True)
class ItemUpdate:
    """A state change computed by a worker, applied later by the coordinator."""

    item_id: str
    attempt: int
    status: UploadStatus | None = None
    progress: float | None = None
    error_message: str | None = None
    remote_key: str | None = None
    finished: bool = False


@dataclass(frozen=True)
class _Submit:
    item_id: str


class _Wake:
    pass


@dataclass
class _Job:
    attempt: int
    cancel_event: threading.Event = field(default_factory=threading.Event)


@dataclass
class _Run:
    options: UploadOptions
    client: PhotosClient
    executor: ThreadPoolExecutor


ClientFactory = Callable[[], "PhotosClient | None"]


class UploadManager:
    """Owns the in-memory upload queue and drives it through the Photos client."""

    def __init__(self, client_factory: ClientFactory, options: UploadOptions | None = None):
        self._client_factory = client_factory
        self._options = options or UploadOptions()

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._events: queue.Queue = queue.Queue()

        self._items: list[UploadItem] = []
        self._by_id: dict[str, UploadItem] = {}
        self._jobs: dict[str, _Job] = {}
        self._forced: set[str] = set()
        self._overall_progress = 0.0

        self._running = False
        self._paused = False
        self._cancel_requested = False
        self._run: _Run | None = None

        self._item_listeners: list[Callable[[UploadItem], None]] = []
        self._progress_listeners: list[Callable[[float], None]] = []
        self._finished_listeners: list[Callable[[UploadSummary], None]] = []

    @classmethod
    def for_client(cls, client: PhotosClient, options: UploadOptions | None = None) -> UploadManager:
        return cls(lambda: client, options)

    @classmethod
    def for_account(
        cls,
        store: CredentialStore,
        email: str | None,
        options: UploadOptions | None = None,
    ) -> UploadManager:
        """Build a manager that looks up *email* in *store* at the start of every run.

        The client (and with it the bearer-token cache) is reused for as long as
        the stored credential stays the same.
        """
        options = options or UploadOptions()
        cache: dict[tuple[str, str], PhotosClient] = {}
        cache_lock = threading.Lock()

        def factory() -> PhotosClient | None:
            credential = store.get(email) if email else None
            if credential is None:
                return None
            key = (credential.email, credential.auth_blob)
            with cache_lock:
                if key not in cache:
                    cache.clear()
                    cache[key] = PhotosClient(credential, timeout=options.timeout)
                return cache[key]

        return cls(factory, options)

    # ── observers ───────────────────────────────────────────────────

    def add_item_listener(self, callback: Callable[[UploadItem], None]) -> None:
        self._item_listeners.append(callback)

    def add_progress_listener(self, callback: Callable[[float], None]) -> None:
        self._progress_listeners.append(callback)

    def add_finished_listener(self, callback: Callable[[UploadSummary], None]) -> None:
        self._finished_listeners.append(callback)

    def _notify(self, listeners: list, value) -> None:
        for callback in list(listeners):
            try:
                callback(value)
            except Exception:
                logger.exception("Upload listener %r failed", callback)

    def _notify_items(self, items: Iterable[UploadItem]) -> None:
        for item in items:
            self._notify(self._item_listeners, item)

    # ── queries ─────────────────────────────────────────────────────

    def items(self) -> list[UploadItem]:
        """Snapshot copies of every item, in queue order."""
        with self._lock:
            return [replace(item) for item in self._items]

    def get(self, item_id: str) -> UploadItem | None:
        with self._lock:
            item = self._by_id.get(item_id)
            return replace(item) if item else None

    @property
    def overall_progress(self) -> float:
        with self._lock:
            return self._overall_progress

    @property
    def options(self) -> UploadOptions:
        return self._options

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def summary(self) -> UploadSummary:
        with self._lock:
            return self._summary_locked()

    def _summary_locked(self) -> UploadSummary:
        counts = {status: 0 for status in UploadStatus}
        for item in self._items:
            counts[item.status] += 1
        return UploadSummary(
            completed_count=counts[UploadStatus.COMPLETED],
            failed_count=counts[UploadStatus.ERROR],
            duplicate_count=counts[UploadStatus.DUPLICATE],
            cancelled_count=counts[UploadStatus.CANCELLED],
        )

    def _recompute_progress_locked(self) -> bool:
        total = len(self._items)
        done = sum(
            1 for item in self._items
            if item.status in (UploadStatus.COMPLETED, UploadStatus.ERROR)
        )
        progress = done / total if total else 0.0
        changed = progress != self._overall_progress
        self._overall_progress = progress
        return changed

    def wait(self, timeout: float | None = None) -> bool:
        """Block until no run is active. Returns False if *timeout* expired first."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout)

    # ── queue management ────────────────────────────────────────────

    def enqueue(self, paths: Iterable[str | Path], recursive: bool | None = None) -> list[UploadItem]:
        """Add every supported file under *paths* and start uploading if idle."""
        if recursive is None:
            recursive = self._options.recursive
        files = expand_paths(paths, recursive=recursive)
        logger.info("Queued %d supported file(s)", len(files))
        if not files:
            return []

        with self._lock:
            added = [UploadItem(file_path=path) for path in files]
            for item in added:
                self._items.append(item)
                self._by_id[item.id] = item
            self._recompute_progress_locked()
            progress = self._overall_progress
            snapshots = [replace(item) for item in added]
            running = self._running
            if running:
                self._events.put(_Wake())

        self._notify_items(snapshots)
        self._notify(self._progress_listeners, progress)
        if not running:
            self.start()
        return snapshots

    def clear(self) -> None:
        """Forget every item. Only allowed while nothing is running."""
        with self._lock:
            if self._running:
                raise RuntimeError("Cannot clear the upload queue while uploads are running")
            self._items.clear()
            self._by_id.clear()
            self._jobs.clear()
            self._forced.clear()
            self._overall_progress = 0.0
        self._notify(self._progress_listeners, 0.0)

    # ── run control ─────────────────────────────────────────────────

    def start(self, options: UploadOptions | None = None) -> bool:
        """Start the worker pool unless it is already running or paused.

        Returns True when a new run was started.
        """
        if options is not None:
            self._options = options
        options = self._options

        with self._lock:
            if self._running:
                logger.debug("Upload run already active")
                return False
            if self._paused:
                logger.info("Uploads paused, not starting")
                return False
            if not any(item.status is UploadStatus.QUEUED for item in self._items):
                return False

        try:
            client = self._client_factory()
        except PhotosUploaderError as exc:
            logger.error("Could not set up the Photos client: %s", exc)
            client = None
        if client is None:
            self._fail_queued(NO_ACCOUNT_MESSAGE)
            return False

        with self._lock:
            if self._running:
                return False
            self._running = True
            self._cancel_requested = False
            self._run = _Run(
                options=options,
                client=client,
                executor=ThreadPoolExecutor(
                    max_workers=options.max_concurrency + 1,
                    thread_name_prefix="upload-worker",
                ),
            )
            run = self._run

        logger.info("Starting uploads with %d worker(s)", options.max_concurrency)
        coordinator = threading.Thread(
            target=self._coordinate,
            args=(run,),
            name="upload-coordinator",
            daemon=True,
        )
        coordinator.start()
        return True

    def _fail_queued(self, message: str) -> None:
        with self._lock:
            failed = []
            for item in self._items:
                if item.status is UploadStatus.QUEUED:
                    item.status = UploadStatus.ERROR
                    item.error_message = message
                    failed.append(replace(item))
            self._recompute_progress_locked()
            progress = self._overall_progress
        logger.error("%s: %d item(s) failed", message, len(failed))
        self._notify_items(failed)
        self._notify(self._progress_listeners, progress)

    def pause(self) -> None:
        """Stop opening new items; uploads already running finish normally."""
        with self._lock:
            self._paused = True
        logger.info("Uploads paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            running = self._running
            if running:
                self._events.put(_Wake())
        logger.info("Uploads resumed")
        if not running:
            self.start()

    def cancel(self, item_id: str) -> bool:
        with self._lock:
            item = self._by_id.get(item_id)
            if item is None or not item.status.is_active:
                return False
            self._cancel_item_locked(item)
            snapshot = replace(item)
        logger.info("Cancelled %s", snapshot.file_name)
        self._notify_items([snapshot])
        return True

    def cancel_all(self) -> None:
        with self._lock:
            cancelled = []
            for item in self._items:
                if item.status.is_active:
                    self._cancel_item_locked(item)
                    cancelled.append(replace(item))
            if self._running:
                self._cancel_requested = True
                self._events.put(_Wake())
        logger.info("Cancelled %d upload(s)", len(cancelled))
        self._notify_items(cancelled)

    def _cancel_item_locked(self, item: UploadItem) -> None:
        item.status = UploadStatus.CANCELLED
        job = self._jobs.get(item.id)
        if job is not None and job.attempt == item.attempt:
            job.cancel_event.set()

    def retry(self, item_id: str) -> bool:
        """Re-queue a failed item. Only valid from ``error``."""
        return self._requeue(item_id, UploadStatus.ERROR, force_upload=False)

    def force_upload(self, item_id: str) -> bool:
        """Upload a duplicate anyway, skipping the hash check for this item only."""
        return self._requeue(item_id, UploadStatus.DUPLICATE, force_upload=True)

    def _requeue(self, item_id: str, expected: UploadStatus, force_upload: bool) -> bool:
        with self._lock:
            item = self._by_id.get(item_id)
            if item is None or item.status is not expected:
                return False
            item.status = UploadStatus.QUEUED
            item.progress = 0.0
            item.error_message = None
            item.remote_key = None
            item.attempt += 1
            self._recompute_progress_locked()
            progress = self._overall_progress
            snapshot = replace(item)
            if force_upload:
                self._forced.add(item_id)
            running = self._running
            if running:
                self._events.put(_Submit(item_id))

        self._notify_items([snapshot])
        self._notify(self._progress_listeners, progress)
        if not running:
            self.start()
        return True

    def retry_all_failed(self) -> int:
        with self._lock:
            failed = [item for item in self._items if item.status is UploadStatus.ERROR]
            for item in failed:
                item.status = UploadStatus.QUEUED
                item.progress = 0.0
                item.error_message = None
                item.attempt += 1
            self._recompute_progress_locked()
            progress = self._overall_progress
            snapshots = [replace(item) for item in failed]
            running = self._running
            if running:
                for item in failed:
                    self._events.put(_Submit(item.id))

        self._notify_items(snapshots)
        self._notify(self._progress_listeners, progress)
        if snapshots and not running:
            self.start()
        return len(snapshots)

    # ── coordinator ─────────────────────────────────────────────────

    def _coordinate(self, run: _Run) -> None:
        try:
            restart = self._schedule(run)
        except Exception:
            logger.exception("Upload coordinator stopped unexpectedly")
            with self._lock:
                self._running = False
                self._cancel_requested = False
                self._run = None
                self._idle.notify_all()
            raise
        finally:
            run.executor.shutdown(wait=False)

        summary = self.summary()
        logger.info(
            "Upload run finished: %d completed, %d failed, %d duplicate(s)",
            summary.completed_count,
            summary.failed_count,
            summary.duplicate_count,
        )
        self._notify(self._finished_listeners, summary)
        if restart:
            self.start()

    def _schedule(self, run: _Run) -> bool:
        """Dispatch queued items in order, at most ``max_concurrency`` at a time.

        Returns True when items were queued after a cancel-all, meaning a fresh
        run should pick them up.
        """
        cap = run.options.max_concurrency
        active = 0
        cursor = 0

        while True:
            active += self._apply_messages(run, block=False)

            with self._lock:
                next_item = None
                if not self._paused and not self._cancel_requested and active < cap:
                    while cursor < len(self._items):
                        candidate = self._items[cursor]
                        cursor += 1
                        if candidate.status is UploadStatus.QUEUED:
                            next_item = candidate
                            break

                if next_item is None and active == 0 and self._events.empty():
                    restart = (
                        self._cancel_requested
                        and not self._paused
                        and any(item.status is UploadStatus.QUEUED for item in self._items)
                    )
                    self._running = False
                    self._cancel_requested = False
                    self._run = None
                    self._idle.notify_all()
                    return restart

            if next_item is not None:
                active += self._dispatch(run, next_item.id)
                continue

            active += self._apply_messages(run, block=True)

    def _dispatch(self, run: _Run, item_id: str) -> int:
        """Hand one queued item to a worker. Returns how many workers were started."""
        with self._lock:
            item = self._by_id.get(item_id)
            if item is None or item.status is not UploadStatus.QUEUED:
                return 0
            force_upload = run.options.force_upload or item_id in self._forced
            self._forced.discard(item_id)
            item.status = UploadStatus.HASHING
            item.progress = 0.0
            job = _Job(attempt=item.attempt)
            self._jobs[item.id] = job
            self._recompute_progress_locked()
            snapshot = replace(item)
            progress = self._overall_progress

        self._notify_items([snapshot])
        self._notify(self._progress_listeners, progress)
        run.executor.submit(
            self._process,
            snapshot.id,
            snapshot.file_path,
            job,
            force_upload,
            run.options,
            run.client,
        )
        return 1

    def _apply_messages(self, run: _Run, block: bool) -> int:
        """Apply queued worker updates and submissions; returns the change in active workers."""
        messages = []
        try:
            if block:
                messages.append(self._events.get())
            while True:
                messages.append(self._events.get_nowait())
        except queue.Empty:
            pass

        delta = 0
        changed: list[UploadItem] = []
        submits: list[_Submit] = []
        with self._lock:
            for message in messages:
                if isinstance(message, _Submit):
                    submits.append(message)
                elif isinstance(message, ItemUpdate):
                    if message.finished:
                        delta -= 1
                        job = self._jobs.get(message.item_id)
                        if job is not None and job.attempt == message.attempt:
                            del self._jobs[message.item_id]
                    elif self._apply_update_locked(message):
                        changed.append(replace(self._by_id[message.item_id]))
            progress_changed = self._recompute_progress_locked()
            progress = self._overall_progress

        self._notify_items(changed)
        if progress_changed:
            self._notify(self._progress_listeners, progress)
        for submit in submits:
            delta += self._dispatch(run, submit.item_id)
        return delta

    def _apply_update_locked(self, update: ItemUpdate) -> bool:
        item = self._by_id.get(update.item_id)
        if item is None or item.attempt != update.attempt:
            return False
        if not item.status.is_in_flight:
            # Late result for an item that was cancelled or reset meanwhile.
            return False
        if update.status is not None:
            item.status = update.status
        if update.progress is not None:
            item.progress = update.progress
        if update.error_message is not None:
            item.error_message = update.error_message
        if update.remote_key is not None:
            item.remote_key = update.remote_key
        return True

    # ── worker ──────────────────────────────────────────────────────

    def _process(
        self,
        item_id: str,
        file_path: Path,
        job: _Job,
        force_upload: bool,
        options: UploadOptions,
        client: PhotosClient,
    ) -> None:
        """Run one item through hash, check, upload, and commit (worker thread)."""

        def post(**changes) -> None:
            self._events.put(ItemUpdate(item_id=item_id, attempt=job.attempt, **changes))

        def check_cancelled() -> None:
            if job.cancel_event.is_set():
                raise UploadCancelled()

        last_progress = [0.0]

        def on_progress(fraction: float) -> None:
            fraction = min(max(fraction, 0.0), 1.0)
            if fraction in (0.0, 1.0) or fraction - last_progress[0] >= PROGRESS_STEP:
                last_progress[0] = fraction
                post(progress=fraction)

        completed = False
        try:
            check_cancelled()
            sha1_hash = sha1_digest(file_path)

            if not force_upload:
                check_cancelled()
                post(status=UploadStatus.CHECKING)
                existing_key = client.find_remote_media_by_hash(sha1_hash)
                if existing_key:
                    logger.info("Duplicate, already in library: %s", file_path.name)
                    post(status=UploadStatus.DUPLICATE, remote_key=existing_key)
                    return

            check_cancelled()
            post(status=UploadStatus.UPLOADING, progress=0.0)
            file_size = file_path.stat().st_size
            upload_token = client.request_upload_token(to_base64(sha1_hash), file_size)

            check_cancelled()
            commit_token = client.upload_raw_bytes(
                file_path, upload_token, on_progress, cancel_event=job.cancel_event
            )

            check_cancelled()
            post(status=UploadStatus.FINALIZING)
            remote_key = client.commit(
                commit_token,
                file_path.name,
                sha1_hash,
                int(file_path.stat().st_mtime),
                storage_saver=options.storage_saver,
                use_quota=options.use_quota,
            )
            post(status=UploadStatus.COMPLETED, remote_key=remote_key, progress=1.0)
            completed = True
            logger.info("Uploaded %s", file_path.name)
        except UploadCancelled:
            logger.info("Stopped %s after cancellation", file_path.name)
        except Exception as exc:
            logger.error("Failed to upload %s: %s", file_path.name, exc)
            logger.debug("Traceback for %s", file_path, exc_info=True)
            post(status=UploadStatus.ERROR, error_message=str(exc) or type(exc).__name__)
        finally:
            try:
                if completed and options.delete_after_upload:
                    self._trash_if_confirmed(client, file_path, sha1_hash)
            finally:
                post(finished=True)

    @staticmethod
    def _trash_if_confirmed(client: PhotosClient, file_path: Path, sha1_hash: bytes) -> None:
        """Move the source file to the trash once the library confirms it has a copy."""
        try:
            confirmed = client.find_remote_media_by_hash(sha1_hash)
        except PhotosUploaderError as exc:
            logger.warning("Keeping %s: could not confirm upload (%s)", file_path.name, exc)
            return
        if not confirmed:
            logger.warning("Keeping %s: upload not visible in library yet", file_path.name)
            return
        try:
            send2trash(str(file_path))
            logger.info("Moved %s to trash", file_path.name)
        except OSError as exc:
            logger.warning("Could not move %s to trash: %s", file_path.name, exc)
