"""
Error taxonomy for article-archiver.

Every stage classifies failures into one of four kinds, and the kind decides
what happens next:

- ValidationError: bad input. Skipped and counted, never retried.
- TransientIOError: network / timeout. Retried with backoff up to a cap,
  then recorded as failed for the item.
- DurabilityError: a local write failed. The unit of work is aborted with
  nothing committed.
- ConflictError: unexpected concurrent mutation of the same article_id.
  Aborted and retried once.
"""

from __future__ import annotations


class ArchiverError(Exception):
    """Base class for pipeline errors."""

    retryable: bool = False


class ValidationError(ArchiverError):
    """Raised when a record or bundle is malformed."""


class TransientIOError(ArchiverError):
    """Raised for retryable network or timeout failures."""

    retryable = True


class CircuitOpenError(TransientIOError):
    """Raised when the circuit breaker rejects a call without attempting it."""


class DurabilityError(ArchiverError):
    """Raised when a local durable write fails."""


class ConflictError(ArchiverError):
    """Raised when a concurrent write to the same article is detected."""

    retryable = True
