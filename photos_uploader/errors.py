"""Error kinds raised by the credential parser, protocol client, and upload manager."""

from __future__ import annotations


class PhotosUploaderError(Exception):
    """Base class for every failure surfaced to an upload item."""


class InvalidCredential(PhotosUploaderError):
    def __init__(self, detail: str | None = None):
        self.detail = detail
        super().__init__(f"Invalid credential: {detail}" if detail else "Invalid credential")


class InvalidRequest(PhotosUploaderError):
    def __init__(self, detail: str | None = None):
        self.detail = detail
        super().__init__(f"Invalid request: {detail}" if detail else "Invalid request")


class AuthenticationFailed(PhotosUploaderError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Authentication failed: {reason}")


class UploadFailed(PhotosUploaderError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Upload failed: {reason}")


class NetworkError(PhotosUploaderError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Network error: {cause}")


class UploadCancelled(PhotosUploaderError):
    """Raised inside a worker once its item has been cancelled."""

    def __init__(self, reason: str = "Upload cancelled"):
        super().__init__(reason)
