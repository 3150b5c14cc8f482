"""Upload options – an immutable snapshot handed to every worker of a run."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

DEFAULT_UPLOAD_THREADS = 3
DEFAULT_HTTP_TIMEOUT = 60.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class UploadOptions:
    max_concurrency: int = DEFAULT_UPLOAD_THREADS
    force_upload: bool = False
    delete_after_upload: bool = False
    storage_saver: bool = False
    use_quota: bool = False
    recursive: bool = True
    timeout: float = DEFAULT_HTTP_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

    @classmethod
    def from_env(cls) -> UploadOptions:
        """Read options from the environment (call ``load_dotenv()`` first to honour .env)."""
        return cls(
            max_concurrency=int(os.getenv("UPLOAD_THREADS", DEFAULT_UPLOAD_THREADS)),
            force_upload=_env_bool("FORCE_UPLOAD", False),
            delete_after_upload=_env_bool("DELETE_AFTER_UPLOAD", False),
            storage_saver=_env_bool("STORAGE_SAVER", False),
            use_quota=_env_bool("USE_QUOTA", False),
            recursive=_env_bool("RECURSIVE_SCAN", True),
            timeout=float(os.getenv("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)),
        )

    def with_changes(self, **changes) -> UploadOptions:
        return replace(self, **changes)
