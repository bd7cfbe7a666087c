from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from dataclasses import replace
import logging

from fastapi import FastAPI, HTTPException

from listing_sync.api.schemas import (
    HealthResponse,
    QueueCounters,
    QueueDepths,
    ReadyResponse,
    StatsResponse,
    WorkerMetrics,
)
from listing_sync.config import WorkerRuntimeSettings
from listing_sync.domain.errors import QueueTransportError
from listing_sync.services.bootstrap import RuntimeContainer
from listing_sync.workers.runner import WorkerRuntimeState, run_until_stopped


def build_app(
    role: str,
    run_id: str,
    container: RuntimeContainer,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
) -> FastAPI:
    """HTTP surface for a role; consumer roles run their loop in daemon mode inside the lifespan."""
    logger = logging.getLogger("runtime")
    consumer = container.consumer
    coordinator = container.coordinator
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[object] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event = asyncio.Event()

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        await container.startup()

        if consumer is not None:
            settings = replace(worker_runtime_settings or container.settings.runtime, max_idle_polls=0)
            worker_state = WorkerRuntimeState()
            worker_task = asyncio.create_task(
                run_until_stopped(
                    consumer=consumer,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                    claim_stale_after=container.settings.queue.claim_stale_after,
                )
            )
        elif coordinator is not None:
            coordinator.stop_event = stop_event
            worker_state = WorkerRuntimeState(started=True)
            worker_task = asyncio.create_task(coordinator.run_pass())

        try:
            yield
        finally:
            stop_event.set()
            if worker_task is not None:
                await asyncio.gather(worker_task, return_exceptions=True)
            await container.shutdown()

            logger.info(
                "role stopped",
                extra={"role": role, "service": role, "run_id": run_id},
            )

    app = FastAPI(title="listing-sync", version="0.1.0", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=container.mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = consumer is not None or coordinator is not None
        worker_loop_ready = True
        metrics = WorkerMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            claims_total=0,
            idle_ticks_total=0,
            errors_total=0,
        )
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and (not worker_task.done() or coordinator is not None)
            )
            if worker_state is not None:
                metrics = WorkerMetrics(
                    started=worker_state.started,
                    stopped=worker_state.stopped or (worker_task is not None and worker_task.done()),
                    ticks_total=worker_state.ticks_total,
                    claims_total=worker_state.claims_total,
                    idle_ticks_total=worker_state.idle_ticks_total,
                    errors_total=worker_state.errors_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=container.mode,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    @app.get("/stats", response_model=StatsResponse, tags=["System"])
    async def stats() -> StatsResponse:
        try:
            snapshot = await container.queue.stats()
        except QueueTransportError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        payload = snapshot.as_dict()
        return StatsResponse(
            role=role,
            catalog=container.queue.catalog,
            counters=QueueCounters(**{name: payload[name] for name in QueueCounters.model_fields}),
            depths=QueueDepths(**{name: payload[name] for name in QueueDepths.model_fields}),
        )

    return app
