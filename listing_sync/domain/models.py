from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from listing_sync.domain.error_taxonomy import ErrorCode
from listing_sync.domain.listing import ListingDetail


class FetchOutcome(StrEnum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    TRANSIENT_ERROR = "transient_error"


@dataclass(frozen=True)
class FetchResult:
    outcome: FetchOutcome
    listing: ListingDetail | None = None
    raw: dict[str, object] | None = None
    status_code: int | None = None
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.outcome == FetchOutcome.FOUND and self.listing is not None


@dataclass(frozen=True)
class Partition:
    city: str
    transaction_type: str

    @property
    def key(self) -> str:
        return f"{self.city}:{self.transaction_type}"


@dataclass(frozen=True)
class DiscoveryPage:
    ids: tuple[str, ...]
    # Advertised by the source; informational only, never used to stop paging.
    total: int | None = None


@dataclass(frozen=True)
class ItemClaim:
    item_id: str
    attempt: int
    claimed_by: str
    claimed_at: datetime | None = None


@dataclass(frozen=True)
class Snapshot:
    item_id: str
    payload_hash: str
    last_seen: datetime


class QueueState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    MISSING = "missing"


class ItemOutcome(StrEnum):
    PROCESSED = "processed"
    INACTIVE = "inactive"
    DROPPED = "dropped"
    FAILED = "failed"


class ProcessOutcome(StrEnum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    PERMANENTLY_FAILED = "permanently_failed"
    DROPPED = "dropped"


class VerifyOutcome(StrEnum):
    RESTORED_ACTIVE = "restored_active"
    VERIFIED_INACTIVE = "verified_inactive"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class ProcessResult:
    item_id: str
    outcome: ProcessOutcome | VerifyOutcome
    detail: str = ""
    error_code: ErrorCode | None = None


COUNTER_NAMES: tuple[str, ...] = (
    "discovered",
    "queued",
    "processed",
    "changed",
    "unchanged",
    "retried",
    "permanently_failed",
    "not_found",
    "missing_candidates",
    "verified_inactive",
    "restored_active",
    "verification_deferred",
)


@dataclass(frozen=True)
class QueueStats:
    counters: dict[str, int]
    pending: int = 0
    in_flight: int = 0
    missing: int = 0
    processed_total: int = 0
    inactive_total: int = 0

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def as_dict(self) -> dict[str, int]:
        payload = {name: self.counter(name) for name in COUNTER_NAMES}
        payload.update(
            {
                "pending": self.pending,
                "in_flight": self.in_flight,
                "missing": self.missing,
                "processed_total": self.processed_total,
                "inactive_total": self.inactive_total,
            }
        )
        return payload


@dataclass
class DiscoveryReport:
    partitions_total: int = 0
    partitions_failed: list[str] = field(default_factory=list)
    pages_fetched: int = 0
    ids_observed: int = 0
    ids_queued: int = 0
    missing_flagged: int = 0
    missing_queued: int = 0
