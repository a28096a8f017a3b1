from __future__ import annotations

"""Exception taxonomy shared by the scanner, remote client, store and engine."""

from typing import Optional


class CatalogError(Exception):
    """Base class for every error raised by the catalog engine."""

    category = "error"


class NotFoundError(CatalogError):
    """A referenced source or video id does not exist. Not retried."""

    category = "not_found"


class TransientError(CatalogError):
    """Network timeout, rate limit or I/O hiccup. Retried on the next pass."""

    category = "transient"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class QuotaExceededError(TransientError):
    """The remote API refused the call because the daily quota is spent."""

    category = "quota"


class ConfigurationError(CatalogError):
    """Missing credential, unsupported URL or invalid max depth."""

    category = "configuration"


class StoreError(CatalogError):
    """A write to the persistent store failed and was rolled back."""

    category = "store"


class OperationCancelled(CatalogError):
    """The caller's cancellation event fired before the operation finished."""

    category = "cancelled"
