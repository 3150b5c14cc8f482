"""Protocol codec – protobuf message shapes spoken by the mobile upload endpoints.

None of these messages have published ``.proto`` files, so each shape is
described as a blackboxprotobuf typedef and built from plain dicts keyed by
field number. Scalars equal to their type's default (0, "", b"") are never
emitted; sub-messages are emitted whenever they are set, even when empty.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from blackboxprotobuf import decode_message, encode_message
from blackboxprotobuf.lib.exceptions import BlackboxProtobufException

from .errors import InvalidRequest, UploadFailed

SHA1_SIZE = 20

# Fixed values the upload-token endpoint expects in front of the file size.
UPLOAD_TOKEN_PREFIX = (2, 2, 1, 3)

TIMESTAMP_CONSTANT = 46000000
COMMIT_FLAG = 1
COMMIT_TRAILER = bytes([1, 3])

QUALITY_ORIGINAL = 3
QUALITY_SAVER = 1

DEVICE_MAKE = "Google"
DEVICE_MODEL = "Pixel XL"
DEVICE_MODEL_SAVER = "Pixel 2"
DEVICE_MODEL_QUOTA = "Pixel 8"
ANDROID_API_VERSION = 28


def _int() -> dict:
    return {"type": "int"}


def _bytes() -> dict:
    return {"type": "bytes"}


def _string() -> dict:
    return {"type": "string"}


def _message(typedef: dict) -> dict:
    return {"type": "message", "message_typedef": typedef}


UPLOAD_TOKEN_REQUEST = {
    "1": _int(),
    "2": _int(),
    "3": _int(),
    "4": _int(),
    "5": _int(),
}

HASH_CHECK_REQUEST = {
    "1": _message({
        "1": _message({"1": _bytes()}),
        "2": _message({}),
    }),
}

HASH_CHECK_RESPONSE = {
    "1": _message({
        "2": _message({
            "2": _message({"1": _string()}),
        }),
    }),
}

COMMIT_TOKEN = {
    "1": _int(),
    "2": _bytes(),
}

COMMIT_UPLOAD_REQUEST = {
    "1": _message({
        "1": _message(COMMIT_TOKEN),
        "2": _string(),
        "3": _bytes(),
        "4": _message({"1": _int(), "2": _int()}),
        "7": _int(),
        "10": _int(),
    }),
    "2": _message({
        "3": _string(),
        "4": _string(),
        "5": _int(),
    }),
    "3": _bytes(),
}

COMMIT_UPLOAD_RESPONSE = {
    "1": _message({
        "3": _message({"1": _string()}),
    }),
}


# ── wire helpers ────────────────────────────────────────────────────


def _prune(message: dict[str, Any]) -> dict[str, Any]:
    """Drop scalar fields holding their default value; keep every sub-message."""
    pruned: dict[str, Any] = {}
    for key, value in message.items():
        if isinstance(value, dict):
            pruned[key] = _prune(value)
        elif value in (0, "", b"", None):
            continue
        else:
            pruned[key] = value
    return pruned


def encode(message: dict[str, Any], typedef: dict) -> bytes:
    try:
        return bytes(encode_message(_prune(message), typedef))
    except (BlackboxProtobufException, TypeError, ValueError) as exc:
        raise InvalidRequest(str(exc)) from exc


def decode(data: bytes, typedef: dict) -> dict[str, Any]:
    """Decode *data* against *typedef*; raises ``ValueError`` on malformed input."""
    if not data:
        return {}
    try:
        message, _ = decode_message(bytes(data), copy.deepcopy(typedef))
    except (BlackboxProtobufException, TypeError, KeyError, IndexError) as exc:
        raise ValueError(f"Malformed protobuf message: {exc}") from exc
    return message


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _path(message: dict[str, Any], *keys: str) -> Any:
    """Walk nested field numbers, returning None as soon as one is missing."""
    node: Any = message
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = _first(node.get(key))
        if node is None:
            return None
    return node


# ── messages ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CommitToken:
    """Continuation returned by the raw upload, consumed once by the commit."""

    session_id: int = 0
    continuation: bytes = b""

    def to_fields(self) -> dict[str, Any]:
        return {"1": self.session_id, "2": self.continuation}


def encode_upload_token_request(file_size: int) -> bytes:
    f1, f2, f3, f4 = UPLOAD_TOKEN_PREFIX
    return encode({"1": f1, "2": f2, "3": f3, "4": f4, "5": file_size}, UPLOAD_TOKEN_REQUEST)


def decode_upload_token_request(data: bytes) -> int:
    """Return the file size carried by an upload-token request."""
    return decode(data, UPLOAD_TOKEN_REQUEST).get("5", 0)


def encode_hash_check_request(sha1_hash: bytes) -> bytes:
    if len(sha1_hash) != SHA1_SIZE:
        raise InvalidRequest(f"SHA-1 digest must be {SHA1_SIZE} bytes, got {len(sha1_hash)}")
    return encode({"1": {"1": {"1": sha1_hash}, "2": {}}}, HASH_CHECK_REQUEST)


def decode_hash_check_request(data: bytes) -> bytes:
    return _path(decode(data, HASH_CHECK_REQUEST), "1", "1", "1") or b""


def encode_hash_check_response(remote_key: str) -> bytes:
    return encode({"1": {"2": {"2": {"1": remote_key}}}}, HASH_CHECK_RESPONSE)


def decode_hash_check_response(data: bytes) -> str | None:
    """Return the remote key of a matching item, or None when nothing matched."""
    return _path(decode(data, HASH_CHECK_RESPONSE), "1", "2", "2", "1") or None


def encode_commit_token(token: CommitToken) -> bytes:
    return encode(token.to_fields(), COMMIT_TOKEN)


def decode_commit_token(data: bytes) -> CommitToken:
    message = decode(data, COMMIT_TOKEN)
    return CommitToken(
        session_id=_first(message.get("1")) or 0,
        continuation=bytes(_first(message.get("2")) or b""),
    )


def quality_and_model(storage_saver: bool, use_quota: bool) -> tuple[int, str]:
    """Pick the quality value and spoofed device model for an upload mode."""
    quality = QUALITY_SAVER if storage_saver else QUALITY_ORIGINAL
    model = DEVICE_MODEL_SAVER if storage_saver else DEVICE_MODEL
    if use_quota:
        model = DEVICE_MODEL_QUOTA
    return quality, model


def build_commit_request(
    token: CommitToken,
    file_name: str,
    sha1_hash: bytes,
    modified_at: int,
    storage_saver: bool = False,
    use_quota: bool = False,
) -> dict[str, Any]:
    quality, model = quality_and_model(storage_saver, use_quota)
    return {
        "1": {
            "1": token.to_fields(),
            "2": file_name,
            "3": sha1_hash,
            "4": {"1": modified_at, "2": TIMESTAMP_CONSTANT},
            "7": quality,
            "10": COMMIT_FLAG,
        },
        "2": {"3": model, "4": DEVICE_MAKE, "5": ANDROID_API_VERSION},
        "3": COMMIT_TRAILER,
    }


def encode_commit_request(
    token: CommitToken,
    file_name: str,
    sha1_hash: bytes,
    modified_at: int,
    storage_saver: bool = False,
    use_quota: bool = False,
) -> bytes:
    fields = build_commit_request(token, file_name, sha1_hash, modified_at, storage_saver, use_quota)
    return encode(fields, COMMIT_UPLOAD_REQUEST)


def decode_commit_request(data: bytes) -> dict[str, Any]:
    return decode(data, COMMIT_UPLOAD_REQUEST)


def encode_commit_response(remote_key: str) -> bytes:
    return encode({"1": {"3": {"1": remote_key}}}, COMMIT_UPLOAD_RESPONSE)


def decode_commit_response(data: bytes) -> str:
    """Return the media key of a committed upload.

    Raises:
        UploadFailed: If the key is absent or empty at any level.
    """
    try:
        message = decode(data, COMMIT_UPLOAD_RESPONSE)
    except ValueError as exc:
        raise UploadFailed(f"Unreadable commit response ({exc})") from exc
    media_key = _path(message, "1", "3", "1")
    if not media_key:
        raise UploadFailed("No media key in response")
    return media_key
