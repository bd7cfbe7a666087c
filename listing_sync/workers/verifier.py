from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field

from listing_sync.domain.contracts import DetailFetcher, Sink, WorkQueue
from listing_sync.domain.errors import SinkError
from listing_sync.domain.models import FetchOutcome, ProcessResult, VerifyOutcome
from listing_sync.domain.retry import RateLimitPolicy
from listing_sync.workers.loop import fetch_with_timeout

logger = logging.getLogger("runtime")

INACTIVE_REASON = "not_found"


@dataclass
class Verifier:
    """Resolves missing candidates to active or inactive with a direct existence check.

    Only a definitive not-found deactivates. Ambiguous and transient answers are
    deferred: the id stays processed and the next stale sweep flags it again.
    """

    role: str
    queue: WorkQueue
    fetcher: DetailFetcher
    sink: Sink
    country: str
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    pop_timeout_seconds: float = 5.0
    call_timeout_seconds: float = 60.0
    rng: random.Random | None = None
    last_result: ProcessResult | None = None

    async def run_once(self) -> bool:
        item_id = await self.queue.pop_missing(timeout=self.pop_timeout_seconds)
        if item_id is None:
            self.last_result = None
            return False

        self.last_result = await self.verify(item_id)
        return True

    def cooldown_seconds(self) -> float:
        if self.last_result is None:
            return 0.0
        return self.rate_limit.verify_delay(rng=self.rng)

    async def verify(self, item_id: str) -> ProcessResult:
        fetched = await fetch_with_timeout(self.fetcher, item_id, timeout=self.call_timeout_seconds)

        if fetched.found:
            await self.queue.update_last_seen(item_id, restored=True)
            return self._log(ProcessResult(item_id=item_id, outcome=VerifyOutcome.RESTORED_ACTIVE))

        if fetched.outcome == FetchOutcome.NOT_FOUND:
            try:
                await asyncio.wait_for(
                    self.sink.mark_inactive(
                        catalog=self.queue.catalog,
                        item_id=item_id,
                        country=self.country,
                        reason=INACTIVE_REASON,
                    ),
                    timeout=self.call_timeout_seconds,
                )
            except (SinkError, TimeoutError) as exc:
                await self.queue.defer_verification(item_id)
                return self._log(
                    ProcessResult(
                        item_id=item_id,
                        outcome=VerifyOutcome.DEFERRED,
                        detail=str(exc) or type(exc).__name__,
                        error_code="sink_unavailable",
                    )
                )
            await self.queue.mark_verified_inactive(item_id)
            return self._log(ProcessResult(item_id=item_id, outcome=VerifyOutcome.VERIFIED_INACTIVE))

        await self.queue.defer_verification(item_id)
        error_code = "ambiguous" if fetched.outcome == FetchOutcome.AMBIGUOUS else "transient_error"
        return self._log(
            ProcessResult(
                item_id=item_id,
                outcome=VerifyOutcome.DEFERRED,
                detail=fetched.detail,
                error_code=error_code,
            )
        )

    def _log(self, result: ProcessResult) -> ProcessResult:
        extra: dict[str, object] = {"role": self.role, "item_id": result.item_id, "outcome": result.outcome.value}
        if result.error_code is not None:
            extra["error"] = f"{result.error_code}: {result.detail}"
            logger.warning("verification deferred; assuming active", extra=extra)
        else:
            logger.info("verification resolved", extra=extra)
        return result
