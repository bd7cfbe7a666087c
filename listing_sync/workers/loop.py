from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from listing_sync.domain.contracts import DetailFetcher, WorkQueue
from listing_sync.domain.models import FetchOutcome, FetchResult

logger = logging.getLogger("runtime")


@runtime_checkable
class ConsumerLoop(Protocol):
    """One pop-and-handle step of a queue consumer, driven by the shared runner."""

    role: str
    queue: WorkQueue

    async def run_once(self) -> bool: ...

    def cooldown_seconds(self) -> float: ...


async def fetch_with_timeout(fetcher: DetailFetcher, item_id: str, *, timeout: float) -> FetchResult:
    """Fetch detail, folding timeouts and unexpected fetcher errors into TRANSIENT_ERROR."""
    try:
        return await asyncio.wait_for(fetcher.fetch(item_id), timeout=timeout)
    except TimeoutError:
        return FetchResult(outcome=FetchOutcome.TRANSIENT_ERROR, detail=f"fetch timed out after {timeout}s")
    except Exception as exc:
        logger.warning(
            "detail fetcher raised",
            extra={"item_id": item_id, "error": f"{type(exc).__name__}: {exc}"},
        )
        return FetchResult(outcome=FetchOutcome.TRANSIENT_ERROR, detail=f"{type(exc).__name__}: {exc}")
