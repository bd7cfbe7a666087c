from __future__ import annotations

from typing import Literal

# Canonical error vocabulary shared by coordinator, worker and verifier.
ErrorCode = Literal[
    "not_found",
    "ambiguous",
    "transient_error",
    "permanent_failure",
    "queue_transport_error",
    "normalization_failed",
    "sink_unavailable",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "not_found",
    "ambiguous",
    "transient_error",
    "permanent_failure",
    "queue_transport_error",
    "normalization_failed",
    "sink_unavailable",
    "internal_error",
)

# Errors that are retried within the attempt budget of RetryPolicy.
# "ambiguous" is recoverable on the worker path: inactivity is never concluded from it.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "ambiguous",
        "transient_error",
        "queue_transport_error",
        "normalization_failed",
        "sink_unavailable",
        "internal_error",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_error(code: str) -> ErrorCode:
    if is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persisted last_error codes stable even if a collaborator emitted something else.
    return "internal_error"
