"""
Relay error types.

Upstream and downstream failures are recoverable at the orchestrator level;
storage errors are fatal for the call that raised them.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class ConfigurationError(RelayError):
    """Invalid or incomplete configuration."""


class StorageError(RelayError):
    """Structural storage failure (missing partition, undecodable value)."""


class NoSuchPartition(StorageError):
    def __init__(self, partition: str) -> None:
        super().__init__(f"no such partition: {partition}")
        self.partition = partition


class UpstreamError(RelayError):
    """Upstream request failed: non-success status, transport error or bad body."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    """Upstream answered 429. Not surfaced as a failure; retried next run."""


class DeliveryRejected(RelayError):
    """Downstream refused a message or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429
