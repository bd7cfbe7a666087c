from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class QueueTransportError(DomainError):
    """Backing store of the work queue is unavailable.

    Callers treat this as retryable for the whole poll cycle, not for a single id.
    """


class SourceError(DomainError):
    pass


class SinkError(DomainError):
    pass


class NormalizationError(DomainValidationError):
    pass
