from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from listing_sync.domain.contracts import SearchClient, WorkQueue
from listing_sync.domain.errors import SourceError
from listing_sync.domain.models import DiscoveryPage, DiscoveryReport, Partition
from listing_sync.domain.retry import RateLimitPolicy, RetryPolicy

logger = logging.getLogger("runtime")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class Coordinator:
    """Discovery producer: streams ids into the queue page by page, then flags stale ids.

    Paging stops on an empty or short page, or at the page-count safety bound. The
    total advertised by the source is logged but never used to end a partition.
    """

    role: str
    queue: WorkQueue
    search: SearchClient
    partitions: list[Partition]
    missing_threshold: timedelta = timedelta(hours=12)
    page_size: int = 50
    max_pages: int = 500
    call_timeout_seconds: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    stop_event: asyncio.Event | None = None
    sleep: Sleep = asyncio.sleep
    rng: random.Random | None = None

    async def run_pass(self) -> DiscoveryReport:
        report = DiscoveryReport(partitions_total=len(self.partitions))
        for partition in self.partitions:
            if self._stopping():
                logger.info("discovery interrupted", extra={"role": self.role, "partition": partition.key})
                return report
            await self._crawl_partition(partition, report)

        stale = await self.queue.find_stale(self.missing_threshold)
        report.missing_flagged = len(stale)
        report.missing_queued = await self.queue.push_missing(stale)

        stats = await self.queue.stats()
        logger.info(
            "discovery pass complete",
            extra={"role": self.role, "stats": {"report": asdict(report), "queue": stats.as_dict()}},
        )
        return report

    async def _crawl_partition(self, partition: Partition, report: DiscoveryReport) -> None:
        offset = 0
        observed = 0
        for page_number in range(1, self.max_pages + 1):
            page = await self._fetch_with_retry(partition, offset=offset)
            if page is None:
                report.partitions_failed.append(partition.key)
                return

            report.pages_fetched += 1
            if page_number == 1 and page.total == 0:
                logger.info("partition is empty", extra={"role": self.role, "partition": partition.key})
            if page.ids:
                observed += len(page.ids)
                report.ids_observed += len(page.ids)
                report.ids_queued += await self.queue.enqueue_if_new(list(page.ids))

            if len(page.ids) < self.page_size or self._stopping():
                break
            offset += self.page_size
            await self.sleep(self.rate_limit.page_delay(rng=self.rng))
        else:
            logger.warning(
                "partition hit page safety bound",
                extra={"role": self.role, "partition": partition.key, "attempt": self.max_pages},
            )

        logger.info(
            "partition crawled",
            extra={"role": self.role, "partition": partition.key, "stats": {"ids_observed": observed}},
        )

    async def _fetch_with_retry(self, partition: Partition, *, offset: int) -> DiscoveryPage | None:
        attempts = max(self.retry.page_retry_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.search.fetch_page(partition, offset=offset, limit=self.page_size),
                    timeout=self.call_timeout_seconds,
                )
            except (SourceError, TimeoutError) as exc:
                error = str(exc) or type(exc).__name__
                if attempt >= attempts:
                    logger.error(
                        "partition failed; moving on",
                        extra={"role": self.role, "partition": partition.key, "attempt": attempt, "error": error},
                    )
                    return None
                logger.warning(
                    "search page failed; retrying",
                    extra={"role": self.role, "partition": partition.key, "attempt": attempt, "error": error},
                )
                await self.sleep(self.retry.delay_seconds(attempt, rng=self.rng))
        return None

    def _stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()
