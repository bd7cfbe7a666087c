from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from listing_sync.domain.lifecycle import ItemState
from listing_sync.domain.listing import ListingDetail, StandardListing
from listing_sync.domain.models import DiscoveryPage, FetchResult, ItemClaim, Partition, QueueStats, Snapshot


@runtime_checkable
class WorkQueue(Protocol):
    """Single source of truth for id membership, dedup, snapshots and retry bookkeeping.

    Every mutation is atomic from the caller's point of view. Backing-store failures
    raise QueueTransportError; duplicates, unknown ids and exhausted retries are
    reported as return values.
    """

    catalog: str

    async def enqueue_if_new(self, ids: list[str]) -> int: ...

    async def pop(self, *, worker_id: str, timeout: float) -> ItemClaim | None: ...

    async def is_processed(self, item_id: str) -> bool: ...

    async def mark_processed(self, item_id: str, *, changed: bool | None = None) -> bool: ...

    async def store_snapshot(self, item_id: str, payload_hash: str, *, seen_at: datetime | None = None) -> None: ...

    async def has_changed(self, item_id: str, payload_hash: str) -> bool: ...

    async def get_snapshot(self, item_id: str) -> Snapshot | None: ...

    async def requeue_with_retry(self, item_id: str, *, max_attempts: int, error: str | None = None) -> bool: ...

    async def mark_dropped(self, item_id: str, *, reason: str) -> bool: ...

    async def push_missing(self, ids: list[str]) -> int: ...

    async def pop_missing(self, *, timeout: float) -> str | None: ...

    async def mark_verified_inactive(self, item_id: str) -> bool: ...

    async def update_last_seen(self, item_id: str, *, restored: bool = False) -> bool: ...

    async def defer_verification(self, item_id: str) -> bool: ...

    async def find_stale(self, threshold: timedelta) -> list[str]: ...

    async def reclaim_stale_claims(self, *, older_than: timedelta, max_attempts: int) -> int: ...

    async def item_state(self, item_id: str) -> ItemState: ...

    async def stats(self) -> QueueStats: ...

    async def close(self) -> None: ...


@runtime_checkable
class SearchClient(Protocol):
    """Discovery surface of the source: one page of ids for a partition."""

    async def fetch_page(self, partition: Partition, *, offset: int, limit: int) -> DiscoveryPage: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class DetailFetcher(Protocol):
    """Direct detail lookup; also the authoritative existence check used by the verifier."""

    async def fetch(self, item_id: str) -> FetchResult: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class Normalizer(Protocol):
    def __call__(self, detail: ListingDetail) -> StandardListing: ...


@runtime_checkable
class Sink(Protocol):
    """Downstream ingestion; both calls are idempotent upserts keyed by (catalog, item_id)."""

    async def ingest(
        self,
        *,
        catalog: str,
        item_id: str,
        country: str,
        record: StandardListing,
        raw: dict[str, object],
    ) -> None: ...

    async def mark_inactive(self, *, catalog: str, item_id: str, country: str, reason: str) -> None: ...

    async def aclose(self) -> None: ...
