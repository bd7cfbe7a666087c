from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from listing_sync.domain.errors import SinkError, SourceError
from listing_sync.domain.listing import ListingDetail, StandardListing
from listing_sync.domain.models import DiscoveryPage, FetchOutcome, FetchResult, Partition


def found(item_id: str, **fields: object) -> FetchResult:
    raw: dict[str, object] = {"id": item_id, "title": f"Listing {item_id}", **fields}
    return FetchResult(
        outcome=FetchOutcome.FOUND,
        listing=ListingDetail.model_validate(raw),
        raw=raw,
        status_code=200,
    )


def not_found() -> FetchResult:
    return FetchResult(outcome=FetchOutcome.NOT_FOUND, status_code=404, detail="not found")


def ambiguous() -> FetchResult:
    return FetchResult(outcome=FetchOutcome.AMBIGUOUS, status_code=403, detail="access denied")


def transient(detail: str = "timeout") -> FetchResult:
    return FetchResult(outcome=FetchOutcome.TRANSIENT_ERROR, detail=detail)


@dataclass
class StubSearchClient:
    """Pages of ids keyed by partition key; offsets map to page indexes by `limit`."""

    pages: dict[str, list[list[str]]] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=dict)
    failing: dict[str, int] = field(default_factory=dict)
    calls: list[tuple[str, int, int]] = field(default_factory=list)
    closed: bool = False

    async def fetch_page(self, partition: Partition, *, offset: int, limit: int) -> DiscoveryPage:
        self.calls.append((partition.key, offset, limit))
        remaining_failures = self.failing.get(partition.key, 0)
        if remaining_failures != 0:
            if remaining_failures > 0:
                self.failing[partition.key] = remaining_failures - 1
            raise SourceError(f"search unavailable for {partition.key}")

        partition_pages = self.pages.get(partition.key, [])
        index = offset // limit if limit > 0 else 0
        ids = partition_pages[index] if index < len(partition_pages) else []
        return DiscoveryPage(ids=tuple(ids), total=self.totals.get(partition.key))

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class StubDetailFetcher:
    """Scripted fetch outcomes; a list is consumed one result per call, the last one repeating."""

    results: dict[str, FetchResult | list[FetchResult]] = field(default_factory=dict)
    calls: Counter[str] = field(default_factory=Counter)
    closed: bool = False

    async def fetch(self, item_id: str) -> FetchResult:
        self.calls[item_id] += 1
        scripted = self.results.get(item_id)
        if scripted is None:
            return not_found()
        if isinstance(scripted, FetchResult):
            return scripted
        index = min(self.calls[item_id], len(scripted)) - 1
        return scripted[index]

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class RecordingSink:
    ingested: list[tuple[str, str, str, StandardListing, dict[str, object]]] = field(default_factory=list)
    inactive: list[tuple[str, str, str, str]] = field(default_factory=list)
    failing_ids: set[str] = field(default_factory=set)
    closed: bool = False

    async def ingest(
        self,
        *,
        catalog: str,
        item_id: str,
        country: str,
        record: StandardListing,
        raw: dict[str, object],
    ) -> None:
        if item_id in self.failing_ids:
            raise SinkError(f"sink unavailable for {item_id}")
        self.ingested.append((catalog, item_id, country, record, raw))

    async def mark_inactive(self, *, catalog: str, item_id: str, country: str, reason: str) -> None:
        if item_id in self.failing_ids:
            raise SinkError(f"sink unavailable for {item_id}")
        self.inactive.append((catalog, item_id, country, reason))

    def ingest_counts(self) -> Counter[str]:
        return Counter(entry[1] for entry in self.ingested)

    async def aclose(self) -> None:
        self.closed = True
