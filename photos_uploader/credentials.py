"""Credentials – parses device auth blobs and stores them per account email.

An auth blob is the ``key=value&key=value`` string captured from an Android
device sign-in. Only a handful of its fields are needed by the upload
protocol; everything else is carried along untouched.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote

from .errors import InvalidCredential

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("androidId", "Email", "Token", "client_sig", "service")

DEFAULT_LANGUAGE = "en"
DEFAULT_DEVICE_COUNTRY = "us"
DEFAULT_SDK_VERSION = "28"
DEFAULT_PLAY_SERVICES_VERSION = "242913058"


def parse_delimited(
    text: str,
    pair_sep: str,
    kv_sep: str = "=",
    decode: Callable[[str], str] | None = None,
) -> dict[str, str]:
    """Split *text* into a dict on *pair_sep*, then each pair on the first *kv_sep*.

    Pairs without *kv_sep* are ignored. When a key repeats the first value wins.
    *decode* is applied to every value (e.g. percent-decoding for auth blobs).
    """
    result: dict[str, str] = {}
    for pair in text.split(pair_sep):
        key, sep, value = pair.partition(kv_sep)
        if not sep or not key:
            continue
        if key in result:
            continue
        result[key] = decode(value) if decode else value
    return result


def parse_auth_blob(auth_blob: str) -> dict[str, str]:
    return parse_delimited(auth_blob, "&", "=", unquote)


@dataclass(frozen=True)
class CredentialValidation:
    is_valid: bool
    email: str | None = None
    missing_fields: tuple[str, ...] = ()

    @property
    def error(self) -> str | None:
        if self.is_valid:
            return None
        return "Missing required fields: " + ", ".join(self.missing_fields)


def parse_credential(auth_blob: str) -> CredentialValidation:
    """Validate that *auth_blob* carries every field the protocol needs."""
    fields = parse_auth_blob(auth_blob)
    missing = tuple(name for name in REQUIRED_FIELDS if not fields.get(name))
    if missing:
        return CredentialValidation(is_valid=False, missing_fields=missing)
    return CredentialValidation(is_valid=True, email=fields["Email"])


@dataclass(frozen=True)
class Credential:
    """One account's device credential, keyed by *email*."""

    email: str
    auth_blob: str
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_auth_blob(cls, auth_blob: str) -> Credential:
        result = parse_credential(auth_blob)
        if not result.is_valid:
            raise InvalidCredential(result.error)
        return cls(email=result.email, auth_blob=auth_blob)

    def _value(self, key: str) -> str | None:
        return parse_auth_blob(self.auth_blob).get(key) or None

    @property
    def android_id(self) -> str | None:
        return self._value("androidId")

    @property
    def token(self) -> str | None:
        return self._value("Token")

    @property
    def client_sig(self) -> str | None:
        return self._value("client_sig")

    @property
    def caller_sig(self) -> str | None:
        return self._value("callerSig") or self.client_sig

    @property
    def language(self) -> str:
        return self._value("lang") or DEFAULT_LANGUAGE

    @property
    def device_country(self) -> str:
        return self._value("device_country") or DEFAULT_DEVICE_COUNTRY

    @property
    def sdk_version(self) -> str:
        return self._value("sdk_version") or DEFAULT_SDK_VERSION

    @property
    def google_play_services_version(self) -> str:
        return self._value("google_play_services_version") or DEFAULT_PLAY_SERVICES_VERSION

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "auth_blob": self.auth_blob,
            "added_at": self.added_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Credential:
        added_at = data.get("added_at")
        return cls(
            email=data["email"],
            auth_blob=data["auth_blob"],
            added_at=datetime.fromisoformat(added_at) if added_at else datetime.now(timezone.utc),
        )


# ── stores ──────────────────────────────────────────────────────────


class CredentialStore(Protocol):
    def get(self, email: str) -> Credential | None: ...

    def put(self, credential: Credential) -> None: ...

    def delete(self, email: str) -> None: ...

    def list(self) -> list[Credential]: ...


class InMemoryCredentialStore:
    """Process-local store; nothing survives a restart."""

    def __init__(self, credentials: list[Credential] | None = None):
        self._lock = threading.Lock()
        self._by_email: dict[str, Credential] = {}
        for credential in credentials or []:
            self.put(credential)

    def get(self, email: str) -> Credential | None:
        with self._lock:
            return self._by_email.get(email)

    def put(self, credential: Credential) -> None:
        with self._lock:
            self._by_email.pop(credential.email, None)
            self._by_email[credential.email] = credential

    def delete(self, email: str) -> None:
        with self._lock:
            self._by_email.pop(email, None)

    def list(self) -> list[Credential]:
        with self._lock:
            return list(self._by_email.values())


class JsonCredentialStore:
    """Credentials kept as a JSON list in a single file.

    Writes go to a temp file first and are swapped in with ``os.replace`` so a
    crash never leaves a half-written file behind.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> list[Credential]:
        if not self._path.exists():
            return []
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            logger.warning("Could not read credential file %s, treating it as empty.", self._path)
            return []
        return [Credential.from_dict(entry) for entry in data]

    def _save(self, credentials: list[Credential]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump([c.to_dict() for c in credentials], fh, indent=2)
        # auth blobs carry device tokens; owner-only
        os.chmod(tmp, 0o600)
        os.replace(tmp, self._path)

    def get(self, email: str) -> Credential | None:
        with self._lock:
            return next((c for c in self._load() if c.email == email), None)

    def put(self, credential: Credential) -> None:
        with self._lock:
            credentials = [c for c in self._load() if c.email != credential.email]
            credentials.append(credential)
            self._save(credentials)

    def delete(self, email: str) -> None:
        with self._lock:
            self._save([c for c in self._load() if c.email != email])

    def list(self) -> list[Credential]:
        with self._lock:
            return self._load()
