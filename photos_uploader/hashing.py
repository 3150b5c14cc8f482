"""Content hashing used for deduplication and upload verification."""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path


def sha1_digest(file_path: str | Path) -> bytes:
    """Return the raw 20-byte SHA-1 of the whole file."""
    with open(file_path, "rb") as fh:
        return hashlib.sha1(fh.read()).digest()


def to_base64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")
