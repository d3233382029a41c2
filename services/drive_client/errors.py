"""Errors raised by the Google Drive client."""

from typing import Optional


class RemoteStorageError(Exception):
    """Base class for remote storage failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthRequiredError(RemoteStorageError):
    """No usable access token. Retrying without re-authenticating cannot succeed."""


class TransientStorageError(RemoteStorageError):
    """Network, timeout, rate-limit or server failure that may succeed on retry."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after
