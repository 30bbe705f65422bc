"""Error taxonomy shared by the store, upstream client and crawl engine."""
from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """Base class for every failure the crawler reports."""


class NotFoundError(CrawlError):
    """The addressed job, owner, blob or account does not exist."""


class JobExistsError(CrawlError):
    """A job for this (owner, root) pair has already been enqueued."""


class AlreadyCompleteError(CrawlError):
    """A tick was requested for a job that is already done."""


class AuthorizationError(CrawlError):
    """The requester may not perform the operation."""


class PersistenceError(CrawlError):
    """A store read or write failed; stored state is unchanged."""


class TransactionConflictError(PersistenceError):
    """An optimistic write lost against a concurrent writer."""


class TickCancelledError(CrawlError):
    """The surrounding invocation was cancelled or ran past its deadline."""


class UpstreamError(CrawlError):
    """The social-graph API rejected a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableError(UpstreamError):
    """Failures that the next scheduled tick should simply retry."""


class RateLimitedError(RetryableError):
    """The upstream quota is exhausted until ``retry_after`` seconds pass."""

    def __init__(self, message: str, *, retry_after: Optional[int] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TransientUpstreamError(RetryableError):
    """Connection errors, timeouts and 5xx responses after transport retries."""


class PermanentAccountError(UpstreamError):
    """The account is suspended or deleted.

    ``label`` is the placeholder display name used in place of the profile.
    """

    def __init__(self, message: str, *, code: int, label: str) -> None:
        super().__init__(message)
        self.code = code
        self.label = label
