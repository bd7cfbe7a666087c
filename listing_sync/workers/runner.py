from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from listing_sync.config import WorkerRuntimeSettings
from listing_sync.domain.errors import QueueTransportError
from listing_sync.workers.detail import DetailWorker
from listing_sync.workers.loop import ConsumerLoop


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    consecutive_idle: int = 0
    consecutive_errors: int = 0


def error_backoff_seconds(settings: WorkerRuntimeSettings, consecutive_errors: int) -> float:
    exponent = max(consecutive_errors, 1) - 1
    delay_ms = min(settings.error_backoff_ms * (2**exponent), settings.max_error_backoff_ms)
    return delay_ms / 1000


async def run_until_stopped(
    *,
    consumer: ConsumerLoop,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
    claim_stale_after: timedelta | None = None,
) -> WorkerRuntimeState:
    """Drive one consumer until the stop event fires or, in bounded mode, the queue stays empty.

    Bounded mode ends after `max_idle_polls` consecutive empty polls; daemon mode
    (max_idle_polls == 0) ends only on the stop event. The item in hand always
    finishes before the loop checks the stop event again.
    """
    state = state if state is not None else WorkerRuntimeState()
    role = consumer.role
    context = {"role": role, "service": role, "run_id": run_id}
    state.started = True
    logger.info("worker loop started", extra=context)

    while not stop_event.is_set():
        delay = 0.0
        try:
            if claim_stale_after is not None and isinstance(consumer, DetailWorker):
                reclaimed = await consumer.queue.reclaim_stale_claims(
                    older_than=claim_stale_after,
                    max_attempts=consumer.retry.max_attempts,
                )
                if reclaimed:
                    logger.warning("reclaimed expired claims", extra={**context, "stats": {"reclaimed": reclaimed}})

            did_work = await consumer.run_once()
            state.ticks_total += 1
            state.consecutive_errors = 0
            if did_work:
                state.claims_total += 1
                state.consecutive_idle = 0
                delay = consumer.cooldown_seconds()
                if settings.stats_log_every and state.claims_total % settings.stats_log_every == 0:
                    stats = await consumer.queue.stats()
                    logger.info("worker progress", extra={**context, "stats": stats.as_dict()})
            else:
                state.idle_ticks_total += 1
                state.consecutive_idle += 1
                if not settings.daemon and state.consecutive_idle >= settings.max_idle_polls:
                    logger.info(
                        "queue empty; stopping",
                        extra={**context, "stats": {"idle_polls": state.consecutive_idle}},
                    )
                    break
        except QueueTransportError as exc:
            state.ticks_total += 1
            state.errors_total += 1
            state.consecutive_errors += 1
            delay = error_backoff_seconds(settings, state.consecutive_errors)
            logger.warning(
                "work queue unavailable; pausing loop",
                extra={**context, "attempt": state.consecutive_errors, "error": str(exc)},
            )
        except Exception:
            state.ticks_total += 1
            state.errors_total += 1
            state.consecutive_errors += 1
            delay = error_backoff_seconds(settings, state.consecutive_errors)
            logger.exception("worker tick error", extra={**context, "attempt": state.consecutive_errors})

        if delay <= 0:
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra={**context, "stats": _state_summary(state)})
    state.stopped = True
    return state


def _state_summary(state: WorkerRuntimeState) -> dict[str, int]:
    return {
        "ticks_total": state.ticks_total,
        "claims_total": state.claims_total,
        "idle_ticks_total": state.idle_ticks_total,
        "errors_total": state.errors_total,
    }
