"""Photos client – device handshake, bearer-token cache, and the four upload calls."""

from __future__ import annotations

import gzip
import io
import logging
import threading
import time
import zlib
from collections.abc import Callable
from pathlib import Path

import requests

from . import protocol
from .credentials import Credential, parse_delimited
from .errors import (
    AuthenticationFailed,
    InvalidCredential,
    NetworkError,
    UploadCancelled,
    UploadFailed,
)
from .protocol import CommitToken

logger = logging.getLogger(__name__)

AUTH_URL = "https://android.googleapis.com/auth"
UPLOAD_URL = "https://photos.googleapis.com/data/upload/uploadmedia/interactive"
PHOTOS_DATA_BASE = "https://photosdata-pa.googleapis.com/6439526531001121323"
HASH_CHECK_URL = f"{PHOTOS_DATA_BASE}/5084965799730810217"
COMMIT_URL = f"{PHOTOS_DATA_BASE}/16538846908252377752"

APP_PACKAGE = "com.google.android.apps.photos"
AUTH_SERVICE = "oauth2:https://www.googleapis.com/auth/photos.native"
CLIENT_VERSION_CODE = 49029607
BUILD_ID = "PQ2A.190205.001"
CRONET_VERSION = "127.0.6510.5"
AUTH_USER_AGENT = f"GoogleAuth/1.4 (Pixel XL {BUILD_ID}); gzip"

PROTOBUF_CONTENT_TYPE = "application/x-protobuf"
COMMIT_EXTENSION_HEADERS = {
    "x-goog-ext-173412678-bin": "CgcIAhClARgC",
    "x-goog-ext-174067345-bin": "CgIIAg==",
}

DEFAULT_TIMEOUT = 60
GZIP_MAGIC = b"\x1f\x8b"

ProgressCallback = Callable[[float], None]


def maybe_gunzip(data: bytes) -> bytes:
    """Decompress *data* when it starts with the gzip magic, else return it untouched."""
    if not data.startswith(GZIP_MAGIC):
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error):
        logger.debug("Body looked gzipped but did not decompress; using raw bytes.")
        return data


def _is_success(response: requests.Response) -> bool:
    return 200 <= response.status_code < 300


class _ProgressReader:
    """File-like request body that reports how much of it has been sent.

    Reading stops with ``UploadCancelled`` once *cancel_event* is set, which
    aborts the PUT mid-stream.
    """

    def __init__(
        self,
        data: bytes,
        progress_callback: ProgressCallback,
        cancel_event: threading.Event | None = None,
    ):
        self._buffer = io.BytesIO(data)
        self._total = len(data)
        self._progress_callback = progress_callback
        self._cancel_event = cancel_event

    def __len__(self) -> int:
        return self._total

    def read(self, size: int = -1) -> bytes:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise UploadCancelled()
        chunk = self._buffer.read(size)
        if chunk and self._total:
            self._progress_callback(self._buffer.tell() / self._total)
        return chunk


class PhotosClient:
    """Talks to the mobile Photos endpoints on behalf of one credential.

    The bearer token obtained from the device handshake is cached until its
    expiry. Several worker threads may share one client; if they all find the
    cache empty each runs its own handshake and the last one to finish wins.
    """

    def __init__(
        self,
        credential: Credential,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._credential = credential
        self._timeout = timeout
        self._shared_session = session
        self._local = threading.local()
        self._clock = clock
        self._auth_cache: tuple[str, float] | None = None

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def user_agent(self) -> str:
        return (
            f"{APP_PACKAGE}/{CLIENT_VERSION_CODE} (Linux; U; Android 9; "
            f"{self._credential.language}; {protocol.DEVICE_MODEL}; Build/{BUILD_ID}; "
            f"Cronet/{CRONET_VERSION}) (gzip)"
        )

    # ── transport ───────────────────────────────────────────────────

    def _session(self) -> requests.Session:
        """Return the injected session, or one per worker thread."""
        if self._shared_session is not None:
            return self._shared_session
        if not hasattr(self._local, "session"):
            self._local.session = requests.Session()
        return self._local.session

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self._session().request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(exc) from exc

    def _headers(self, bearer_token: str, content_type: str | None = PROTOBUF_CONTENT_TYPE) -> dict:
        headers = {
            "Accept-Encoding": "gzip",
            "Accept-Language": self._credential.language,
            "User-Agent": self.user_agent,
            "Authorization": f"Bearer {bearer_token}",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    # ── authentication ──────────────────────────────────────────────

    def get_bearer_token(self) -> str:
        cached = self._auth_cache
        if cached is not None and self._clock() < cached[1]:
            return cached[0]

        auth_response = self._device_handshake()

        token = auth_response.get("Auth")
        if not token:
            raise AuthenticationFailed("No auth token in response")
        try:
            expiry = float(auth_response["Expiry"])
        except (KeyError, ValueError):
            raise AuthenticationFailed("No expiry in response") from None

        self._auth_cache = (token, expiry)
        logger.debug("Bearer token for %s valid until %s", self._credential.email, int(expiry))
        return token

    def _device_handshake(self) -> dict[str, str]:
        credential = self._credential
        android_id = credential.android_id
        client_sig = credential.client_sig
        device_token = credential.token
        if not (android_id and client_sig and device_token):
            raise InvalidCredential("androidId, client_sig and Token are required")

        form = [
            ("androidId", android_id),
            ("app", APP_PACKAGE),
            ("client_sig", client_sig),
            ("callerPkg", APP_PACKAGE),
            ("callerSig", credential.caller_sig),
            ("device_country", credential.device_country),
            ("Email", credential.email),
            ("google_play_services_version", credential.google_play_services_version),
            ("lang", credential.language),
            ("oauth2_foreground", "1"),
            ("sdk_version", credential.sdk_version),
            ("service", AUTH_SERVICE),
            ("Token", device_token),
        ]
        headers = {
            "Accept-Encoding": "gzip",
            "app": APP_PACKAGE,
            "Connection": "Keep-Alive",
            "Content-Type": "application/x-www-form-urlencoded",
            "device": android_id,
            "User-Agent": AUTH_USER_AGENT,
        }

        logger.info("Requesting bearer token for %s", credential.email)
        response = self._send("POST", AUTH_URL, headers=headers, data=form)
        if not _is_success(response):
            raise AuthenticationFailed(f"HTTP error {response.status_code}")

        try:
            text = maybe_gunzip(response.content).decode("utf-8")
        except UnicodeDecodeError:
            raise AuthenticationFailed("Invalid response encoding") from None
        return parse_delimited(text.replace("\r\n", "\n"), "\n", "=")

    # ── upload protocol ─────────────────────────────────────────────

    def request_upload_token(self, sha1_b64: str, file_size: int) -> str:
        headers = self._headers(self.get_bearer_token())
        headers["X-Goog-Hash"] = f"sha1={sha1_b64}"
        headers["X-Upload-Content-Length"] = str(file_size)

        response = self._send(
            "POST",
            UPLOAD_URL,
            headers=headers,
            data=protocol.encode_upload_token_request(file_size),
        )
        if not _is_success(response):
            raise UploadFailed(f"Failed to get upload token (HTTP {response.status_code})")

        upload_token = response.headers.get("X-GUploader-UploadID")
        if not upload_token:
            raise UploadFailed("No upload token in response")
        return upload_token

    def find_remote_media_by_hash(self, sha1_hash: bytes) -> str | None:
        """Return the remote key of an item with the same content, if any.

        A non-2xx status is treated as "not found" rather than an error.
        """
        response = self._send(
            "POST",
            HASH_CHECK_URL,
            headers=self._headers(self.get_bearer_token()),
            data=protocol.encode_hash_check_request(sha1_hash),
        )
        if not _is_success(response):
            logger.debug("Hash check returned HTTP %s, assuming no match.", response.status_code)
            return None

        try:
            return protocol.decode_hash_check_response(maybe_gunzip(response.content))
        except ValueError as exc:
            raise UploadFailed(f"Unreadable hash check response ({exc})") from exc

    def upload_raw_bytes(
        self,
        file_path: str | Path,
        upload_token: str,
        progress_callback: ProgressCallback,
        cancel_event: threading.Event | None = None,
    ) -> CommitToken:
        """PUT the whole file in one request and return the commit token.

        *progress_callback* receives 0.0 before sending, the sent fraction while
        the body streams, and 1.0 once the server has answered.
        """
        path = Path(file_path)
        data = path.read_bytes()
        logger.debug("Uploading %s (%d bytes)", path.name, len(data))

        progress_callback(0.0)
        response = self._send(
            "PUT",
            f"{UPLOAD_URL}?upload_id={upload_token}",
            headers=self._headers(self.get_bearer_token(), content_type="application/octet-stream"),
            data=_ProgressReader(data, progress_callback, cancel_event),
        )
        logger.debug("Upload response for %s: HTTP %s, %d bytes", path.name, response.status_code, len(response.content))

        if not _is_success(response):
            raise UploadFailed(f"Upload failed with status {response.status_code}")

        try:
            commit_token = protocol.decode_commit_token(maybe_gunzip(response.content))
        except ValueError as exc:
            raise UploadFailed(f"Unreadable upload response ({exc})") from exc
        if not commit_token.session_id and not commit_token.continuation:
            raise UploadFailed("Empty commit token in upload response")

        progress_callback(1.0)
        return commit_token

    def commit(
        self,
        commit_token: CommitToken,
        file_name: str,
        sha1_hash: bytes,
        modified_at: int,
        storage_saver: bool = False,
        use_quota: bool = False,
    ) -> str:
        """Turn an uploaded blob into a library item and return its remote key."""
        body = protocol.encode_commit_request(
            commit_token, file_name, sha1_hash, modified_at, storage_saver, use_quota
        )
        headers = self._headers(self.get_bearer_token())
        headers.update(COMMIT_EXTENSION_HEADERS)

        logger.debug(
            "Committing %s (storage_saver=%s, use_quota=%s)", file_name, storage_saver, use_quota
        )
        response = self._send("POST", COMMIT_URL, headers=headers, data=body)

        if not _is_success(response):
            detail = maybe_gunzip(response.content).decode("utf-8", errors="replace")
            logger.error("Commit of %s failed (HTTP %s): %s", file_name, response.status_code, detail[:500])
            raise UploadFailed(f"Commit failed with status {response.status_code}")

        return protocol.decode_commit_response(maybe_gunzip(response.content))
