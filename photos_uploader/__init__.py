"""photos_uploader – uploads local photos and videos to Google Photos over the mobile protocol."""

from .client import PhotosClient
from .config import UploadOptions
from .credentials import (
    Credential,
    InMemoryCredentialStore,
    JsonCredentialStore,
    parse_credential,
)
from .errors import (
    AuthenticationFailed,
    InvalidCredential,
    InvalidRequest,
    NetworkError,
    PhotosUploaderError,
    UploadCancelled,
    UploadFailed,
)
from .manager import UploadItem, UploadManager, UploadStatus, UploadSummary

__version__ = "0.1.0"

__all__ = [
    "PhotosClient",
    "UploadOptions",
    "Credential",
    "InMemoryCredentialStore",
    "JsonCredentialStore",
    "parse_credential",
    "AuthenticationFailed",
    "InvalidCredential",
    "InvalidRequest",
    "NetworkError",
    "PhotosUploaderError",
    "UploadCancelled",
    "UploadFailed",
    "UploadItem",
    "UploadManager",
    "UploadStatus",
    "UploadSummary",
]
