from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
import logging
import os

from listing_sync.clients.sink import CoreServiceSink
from listing_sync.clients.source import HttpDetailFetcher, SourceSearchClient
from listing_sync.config import Settings, settings_from_env
from listing_sync.domain.contracts import DetailFetcher, SearchClient, Sink, WorkQueue
from listing_sync.domain.normalization import normalize_listing
from listing_sync.repositories.postgres import AsyncpgPoolManager, PostgresWorkQueue
from listing_sync.repositories.stub import InMemoryWorkQueue
from listing_sync.roles import RuntimeRole
from listing_sync.workers.coordinator import Coordinator
from listing_sync.workers.detail import DetailWorker
from listing_sync.workers.loop import ConsumerLoop
from listing_sync.workers.verifier import Verifier

logger = logging.getLogger("runtime")


@dataclass
class RuntimeContainer:
    settings: Settings
    queue: WorkQueue
    search: SearchClient
    fetcher: DetailFetcher
    sink: Sink
    mode: str
    consumer: ConsumerLoop | None = None
    coordinator: Coordinator | None = None
    on_startup: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def startup(self) -> None:
        for hook in self.on_startup:
            await hook()

    async def shutdown(self) -> None:
        for closer in (self.search.aclose, self.fetcher.aclose, self.sink.aclose, self.queue.close):
            try:
                await closer()
            except Exception:
                logger.exception("runtime shutdown step failed")


def default_worker_id(role: RuntimeRole) -> str:
    return f"{role.name}-{os.getpid()}"


def build_runtime_container(
    role: RuntimeRole,
    settings: Settings | None = None,
    *,
    worker_id: str | None = None,
    queue: WorkQueue | None = None,
    search: SearchClient | None = None,
    fetcher: DetailFetcher | None = None,
    sink: Sink | None = None,
) -> RuntimeContainer:
    settings = settings or settings_from_env()
    catalog = settings.source.portal
    on_startup: list[Callable[[], Awaitable[None]]] = []

    if queue is not None:
        mode = "injected"
    elif settings.queue.database_url:
        pool_manager = AsyncpgPoolManager(dsn=settings.queue.database_url)
        queue = PostgresWorkQueue(
            pool_manager=pool_manager,
            catalog=catalog,
            dedup_horizon=settings.queue.dedup_horizon,
            poll_interval_seconds=settings.queue.poll_interval_ms / 1000,
        )
        on_startup.append(pool_manager.startup)
        mode = "postgres"
    else:
        queue = InMemoryWorkQueue(catalog=catalog, dedup_horizon=settings.queue.dedup_horizon)
        mode = "in-memory"
        if role.name != "api":
            logger.warning(
                "DATABASE_URL is not set; using a process-local in-memory queue",
                extra={"role": role.name},
            )

    search = search or SourceSearchClient(settings.source)
    fetcher = fetcher or HttpDetailFetcher(settings.source)
    sink = sink or CoreServiceSink(settings.sink)
    if not settings.sink.enabled and isinstance(sink, CoreServiceSink):
        logger.warning("SINK_API_KEY is not set; sink calls will be skipped", extra={"role": role.name})

    runtime = settings.runtime
    consumer: ConsumerLoop | None = None
    coordinator: Coordinator | None = None
    if role.name == "worker":
        consumer = DetailWorker(
            role=role.name,
            worker_id=worker_id or default_worker_id(role),
            queue=queue,
            fetcher=fetcher,
            normalizer=partial(normalize_listing, country=settings.source.country),
            sink=sink,
            country=settings.source.country,
            retry=settings.retry,
            rate_limit=settings.rate_limit,
            pop_timeout_seconds=settings.queue.pop_timeout_seconds,
            call_timeout_seconds=runtime.call_timeout_seconds,
        )
    elif role.name == "verifier":
        consumer = Verifier(
            role=role.name,
            queue=queue,
            fetcher=fetcher,
            sink=sink,
            country=settings.source.country,
            rate_limit=settings.rate_limit,
            pop_timeout_seconds=settings.queue.pop_timeout_seconds,
            call_timeout_seconds=runtime.call_timeout_seconds,
        )
    elif role.name == "coordinator":
        coordinator = Coordinator(
            role=role.name,
            queue=queue,
            search=search,
            partitions=settings.source.partitions(),
            missing_threshold=settings.queue.missing_threshold,
            page_size=settings.source.page_size,
            max_pages=settings.source.max_pages,
            call_timeout_seconds=runtime.call_timeout_seconds,
            retry=settings.retry,
            rate_limit=settings.rate_limit,
        )

    return RuntimeContainer(
        settings=settings,
        queue=queue,
        search=search,
        fetcher=fetcher,
        sink=sink,
        mode=mode,
        consumer=consumer,
        coordinator=coordinator,
        on_startup=on_startup,
    )
