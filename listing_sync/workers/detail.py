from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field

from listing_sync.domain.contracts import DetailFetcher, Normalizer, Sink, WorkQueue
from listing_sync.domain.error_taxonomy import ErrorCode, classify_error, resolve_error
from listing_sync.domain.errors import DomainValidationError, SinkError
from listing_sync.domain.hashing import payload_digest
from listing_sync.domain.models import FetchOutcome, ItemClaim, ProcessOutcome, ProcessResult
from listing_sync.domain.retry import RateLimitPolicy, RetryPolicy
from listing_sync.workers.loop import fetch_with_timeout

logger = logging.getLogger("runtime")


@dataclass
class DetailWorker:
    """Turns a pending id into a forwarded change, a confirmed no-op, or a bounded-retry failure."""

    role: str
    worker_id: str
    queue: WorkQueue
    fetcher: DetailFetcher
    normalizer: Normalizer
    sink: Sink
    country: str
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    pop_timeout_seconds: float = 5.0
    call_timeout_seconds: float = 60.0
    rng: random.Random | None = None
    last_claim: ItemClaim | None = None
    last_result: ProcessResult | None = None

    async def run_once(self) -> bool:
        claim = await self.queue.pop(worker_id=self.worker_id, timeout=self.pop_timeout_seconds)
        self.last_claim = claim
        if claim is None:
            self.last_result = None
            return False

        self.last_result = await self.process(claim)
        return True

    def cooldown_seconds(self) -> float:
        if self.last_result is None:
            return 0.0
        delay = self.rate_limit.request_delay(rng=self.rng)
        if self.last_result.outcome == ProcessOutcome.RETRY_SCHEDULED and self.last_claim is not None:
            delay += self.retry.delay_seconds(self.last_claim.attempt, rng=self.rng)
        return delay

    async def process(self, claim: ItemClaim) -> ProcessResult:
        item_id = claim.item_id
        if await self.queue.is_processed(item_id):
            return ProcessResult(item_id=item_id, outcome=ProcessOutcome.SKIPPED, detail="already processed")

        fetched = await fetch_with_timeout(self.fetcher, item_id, timeout=self.call_timeout_seconds)
        if fetched.outcome == FetchOutcome.NOT_FOUND:
            await self.queue.mark_dropped(item_id, reason="not_found")
            logger.info(
                "listing not found; dropped",
                extra={"role": self.role, "item_id": item_id, "outcome": ProcessOutcome.DROPPED.value},
            )
            return ProcessResult(
                item_id=item_id,
                outcome=ProcessOutcome.DROPPED,
                detail=fetched.detail,
                error_code="not_found",
            )
        if fetched.outcome == FetchOutcome.AMBIGUOUS:
            return await self._retry(claim, "ambiguous", fetched.detail)
        listing = fetched.listing
        if not fetched.found or listing is None:
            return await self._retry(claim, "transient_error", fetched.detail)

        raw = fetched.raw if fetched.raw is not None else listing.model_dump(mode="json", by_alias=True)
        digest = payload_digest(raw)
        changed = await self.queue.has_changed(item_id, digest)
        if changed:
            try:
                record = self.normalizer(listing)
            except (ValueError, DomainValidationError) as exc:
                return await self._retry(claim, "normalization_failed", str(exc))

            try:
                await asyncio.wait_for(
                    self.sink.ingest(
                        catalog=self.queue.catalog,
                        item_id=item_id,
                        country=self.country,
                        record=record,
                        raw=raw,
                    ),
                    timeout=self.call_timeout_seconds,
                )
            except (SinkError, TimeoutError) as exc:
                return await self._retry(claim, "sink_unavailable", str(exc) or type(exc).__name__)
            except Exception as exc:
                # Unknown sink failures still release the claim.
                return await self._retry(claim, "sink_unavailable", f"{type(exc).__name__}: {exc}")
            await self.queue.store_snapshot(item_id, digest)

        await self.queue.mark_processed(item_id, changed=changed)
        outcome = ProcessOutcome.CHANGED if changed else ProcessOutcome.UNCHANGED
        logger.info(
            "listing processed",
            extra={"role": self.role, "item_id": item_id, "attempt": claim.attempt, "outcome": outcome.value},
        )
        return ProcessResult(item_id=item_id, outcome=outcome)

    async def _retry(self, claim: ItemClaim, code: ErrorCode, detail: str) -> ProcessResult:
        error_code = resolve_error(code)
        # Terminal codes settle on the first failure.
        max_attempts = self.retry.max_attempts if classify_error(error_code) == "recoverable" else 0
        requeued = await self.queue.requeue_with_retry(
            claim.item_id,
            max_attempts=max_attempts,
            error=f"{error_code}: {detail}" if detail else error_code,
        )
        if requeued:
            logger.warning(
                "listing fetch failed; retry scheduled",
                extra={
                    "role": self.role,
                    "item_id": claim.item_id,
                    "attempt": claim.attempt,
                    "error": error_code,
                    "outcome": ProcessOutcome.RETRY_SCHEDULED.value,
                },
            )
            return ProcessResult(
                item_id=claim.item_id,
                outcome=ProcessOutcome.RETRY_SCHEDULED,
                detail=detail,
                error_code=error_code,
            )

        logger.error(
            "listing permanently failed",
            extra={
                "role": self.role,
                "item_id": claim.item_id,
                "attempt": claim.attempt,
                "error": f"{error_code}: {detail}",
                "outcome": ProcessOutcome.PERMANENTLY_FAILED.value,
            },
        )
        return ProcessResult(
            item_id=claim.item_id,
            outcome=ProcessOutcome.PERMANENTLY_FAILED,
            detail=detail,
            error_code="permanent_failure",
        )
