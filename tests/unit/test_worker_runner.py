import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial

import pytest

from listing_sync.clients.stub import RecordingSink, StubDetailFetcher, found
from listing_sync.config import WorkerRuntimeSettings
from listing_sync.domain.errors import QueueTransportError
from listing_sync.domain.lifecycle import ItemState
from listing_sync.domain.models import FetchResult
from listing_sync.domain.normalization import normalize_listing
from listing_sync.domain.retry import RateLimitPolicy
from listing_sync.repositories.stub import InMemoryWorkQueue
from listing_sync.workers.detail import DetailWorker
from listing_sync.workers.loop import ConsumerLoop
from listing_sync.workers.runner import WorkerRuntimeState, error_backoff_seconds, run_until_stopped

logger = logging.getLogger("runtime")


@dataclass
class _ScriptedConsumer:
    role: str = "worker"
    queue: InMemoryWorkQueue = field(default_factory=InMemoryWorkQueue)
    script: list[bool | Exception] = field(default_factory=list)
    stop_after: int | None = None
    stop_event: asyncio.Event | None = None
    calls: int = 0

    async def run_once(self) -> bool:
        self.calls += 1
        if self.stop_after is not None and self.calls >= self.stop_after and self.stop_event is not None:
            self.stop_event.set()
        step = self.script.pop(0) if self.script else False
        if isinstance(step, Exception):
            raise step
        return step

    def cooldown_seconds(self) -> float:
        return 0.0


def _settings(**overrides: int) -> WorkerRuntimeSettings:
    values = {"max_idle_polls": 3, "error_backoff_ms": 1, "max_error_backoff_ms": 2, "stats_log_every": 1}
    values.update(overrides)
    return WorkerRuntimeSettings(**values)


@pytest.mark.unit
def test_scripted_consumer_matches_loop_protocol() -> None:
    assert isinstance(_ScriptedConsumer(), ConsumerLoop)


@pytest.mark.unit
def test_bounded_mode_stops_after_consecutive_idle_polls() -> None:
    consumer = _ScriptedConsumer(script=[True, False, False, True, False, False, False, True])

    state = asyncio.run(
        run_until_stopped(
            consumer=consumer,
            run_id="test-run",
            stop_event=asyncio.Event(),
            settings=_settings(),
            logger=logger,
        )
    )

    assert consumer.calls == 7
    assert state.claims_total == 2
    assert state.idle_ticks_total == 5
    assert state.started is True
    assert state.stopped is True


@pytest.mark.unit
def test_queue_transport_error_pauses_then_resumes() -> None:
    consumer = _ScriptedConsumer(script=[QueueTransportError("postgres down"), True, False])
    state = WorkerRuntimeState()

    asyncio.run(
        run_until_stopped(
            consumer=consumer,
            run_id="test-run",
            stop_event=asyncio.Event(),
            settings=_settings(max_idle_polls=1),
            logger=logger,
            state=state,
        )
    )

    assert state.errors_total == 1
    assert state.claims_total == 1
    assert state.consecutive_errors == 0


@pytest.mark.unit
def test_unexpected_tick_error_does_not_kill_the_loop() -> None:
    consumer = _ScriptedConsumer(script=[RuntimeError("boom"), RuntimeError("boom"), True])

    state = asyncio.run(
        run_until_stopped(
            consumer=consumer,
            run_id="test-run",
            stop_event=asyncio.Event(),
            settings=_settings(max_idle_polls=1),
            logger=logger,
        )
    )

    assert state.errors_total == 2
    assert state.claims_total == 1


@pytest.mark.unit
def test_daemon_mode_runs_until_stop_event() -> None:
    async def _run() -> WorkerRuntimeState:
        stop_event = asyncio.Event()
        consumer = _ScriptedConsumer(stop_after=25, stop_event=stop_event)
        state = await run_until_stopped(
            consumer=consumer,
            run_id="test-run",
            stop_event=stop_event,
            settings=_settings(max_idle_polls=0),
            logger=logger,
        )
        assert consumer.calls == 25
        return state

    state = asyncio.run(_run())

    assert state.idle_ticks_total == 25
    assert state.stopped is True


@pytest.mark.unit
def test_error_backoff_doubles_and_caps() -> None:
    settings = WorkerRuntimeSettings(error_backoff_ms=1000, max_error_backoff_ms=5000)

    assert [error_backoff_seconds(settings, n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.unit
def test_detail_worker_loop_reclaims_expired_claims_before_popping() -> None:
    now = [datetime(2026, 1, 1, tzinfo=UTC)]
    queue = InMemoryWorkQueue(catalog="otodom", clock=lambda: now[0])
    sink = RecordingSink()
    worker = DetailWorker(
        role="worker",
        worker_id="w-2",
        queue=queue,
        fetcher=StubDetailFetcher(results={"1": found("1")}),
        normalizer=partial(normalize_listing, country="poland"),
        sink=sink,
        country="poland",
        rate_limit=RateLimitPolicy(request_delay_ms=0),
        pop_timeout_seconds=0,
    )

    async def _run() -> WorkerRuntimeState:
        await queue.enqueue_if_new(["1"])
        await queue.pop(worker_id="crashed", timeout=0)
        now[0] += timedelta(minutes=11)
        return await run_until_stopped(
            consumer=worker,
            run_id="test-run",
            stop_event=asyncio.Event(),
            settings=_settings(max_idle_polls=1),
            logger=logger,
            claim_stale_after=timedelta(minutes=10),
        )

    state = asyncio.run(_run())

    assert state.claims_total == 1
    assert sink.ingest_counts()["1"] == 1
    assert worker.last_claim is None


@dataclass
class _StoppingFetcher:
    stop_event: asyncio.Event
    fetched: list[str] = field(default_factory=list)

    async def fetch(self, item_id: str) -> FetchResult:
        self.fetched.append(item_id)
        self.stop_event.set()
        await asyncio.sleep(0)
        return found(item_id)

    async def aclose(self) -> None:
        return None


@pytest.mark.unit
def test_stop_during_fetch_finishes_item_in_hand_and_claims_nothing_more() -> None:
    async def _run() -> None:
        stop_event = asyncio.Event()
        queue = InMemoryWorkQueue(catalog="otodom")
        sink = RecordingSink()
        fetcher = _StoppingFetcher(stop_event=stop_event)
        worker = DetailWorker(
            role="worker",
            worker_id="w-1",
            queue=queue,
            fetcher=fetcher,
            normalizer=partial(normalize_listing, country="poland"),
            sink=sink,
            country="poland",
            rate_limit=RateLimitPolicy(request_delay_ms=0),
            pop_timeout_seconds=0,
        )
        await queue.enqueue_if_new(["1", "2"])

        state = await run_until_stopped(
            consumer=worker,
            run_id="test-run",
            stop_event=stop_event,
            settings=_settings(max_idle_polls=0),
            logger=logger,
        )

        assert fetcher.fetched == ["1"]
        assert state.claims_total == 1
        assert state.stopped is True
        assert await queue.item_state("1") == ItemState.PROCESSED
        assert await queue.item_state("2") == ItemState.PENDING
        assert sink.ingest_counts()["1"] == 1
        assert (await queue.stats()).in_flight == 0

    asyncio.run(_run())
