"""Shared fixtures for the photos_uploader tests."""

import threading
import time
from contextlib import contextmanager

import pytest

from photos_uploader.credentials import Credential
from photos_uploader.errors import UploadCancelled, UploadFailed
from photos_uploader.protocol import CommitToken

AUTH_BLOB = (
    "androidId=abc123&Email=test%40gmail.com&Token=xyz789"
    "&client_sig=sig123&service=oauth2"
)


@pytest.fixture
def auth_blob():
    return AUTH_BLOB


@pytest.fixture
def credential():
    return Credential.from_auth_blob(AUTH_BLOB)


@pytest.fixture
def media_files(tmp_path):
    """Three small photos with distinct content."""
    paths = []
    for i in range(3):
        path = tmp_path / f"IMG_{i:04d}.jpg"
        path.write_bytes(f"photo-{i}".encode() * 10)
        paths.append(path)
    return paths


class FakeClient:
    """In-memory stand-in for PhotosClient.

    ``library`` maps SHA-1 digests to remote keys; committed uploads are added
    to it. ``gate`` (when set) blocks the hash check until released and
    ``upload_gate`` does the same for the raw upload. Every call is counted
    in ``in_flight`` while it runs.
    """

    def __init__(self, library=None, gate=None, delay=0.0, upload_gate=None):
        self.library = dict(library or {})
        self.gate = gate
        self.upload_gate = upload_gate
        self.delay = delay
        self.entered = threading.Event()
        self.upload_entered = threading.Event()
        self.cancel_seen = False
        self.fail_commit_times = 0
        self.calls = []
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    @contextmanager
    def _call(self, name):
        with self._lock:
            self.calls.append(name)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            yield
        finally:
            with self._lock:
                self.in_flight -= 1

    def find_remote_media_by_hash(self, sha1_hash):
        with self._call("find"):
            self.entered.set()
            if self.gate is not None:
                self.gate.wait(5)
            return self.library.get(sha1_hash)

    def request_upload_token(self, sha1_b64, file_size):
        with self._call("token"):
            return f"token-{sha1_b64}"

    def upload_raw_bytes(self, file_path, upload_token, progress_callback, cancel_event=None):
        with self._call("upload"):
            progress_callback(0.0)
            if self.upload_gate is not None:
                self.upload_entered.set()
                self.upload_gate.wait(5)
            if cancel_event is not None and cancel_event.is_set():
                self.cancel_seen = True
                raise UploadCancelled()
            progress_callback(0.5)
            progress_callback(1.0)
            return CommitToken(session_id=1, continuation=upload_token.encode())

    def commit(self, commit_token, file_name, sha1_hash, modified_at, storage_saver=False, use_quota=False):
        with self._call("commit"):
            with self._lock:
                if self.fail_commit_times:
                    self.fail_commit_times -= 1
                    raise UploadFailed("Commit failed with status 500")
                key = f"key-{file_name}"
                self.library[sha1_hash] = key
            return key


@pytest.fixture
def fake_client():
    return FakeClient()
