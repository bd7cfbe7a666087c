from __future__ import annotations

from pydantic import BaseModel


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class QueueCounters(BaseModel):
    discovered: int = 0
    queued: int = 0
    processed: int = 0
    changed: int = 0
    unchanged: int = 0
    retried: int = 0
    permanently_failed: int = 0
    not_found: int = 0
    missing_candidates: int = 0
    verified_inactive: int = 0
    restored_active: int = 0
    verification_deferred: int = 0


class QueueDepths(BaseModel):
    pending: int = 0
    in_flight: int = 0
    missing: int = 0
    processed_total: int = 0
    inactive_total: int = 0


class StatsResponse(BaseModel):
    role: str
    catalog: str
    counters: QueueCounters
    depths: QueueDepths
