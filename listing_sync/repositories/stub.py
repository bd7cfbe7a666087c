from __future__ import annotations

import asyncio
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from listing_sync.domain.lifecycle import ItemState, can_transition, derive_item_state
from listing_sync.domain.models import ItemClaim, ItemOutcome, QueueState, QueueStats, Snapshot


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _ItemRow:
    item_id: str
    queue_state: QueueState | None = None
    outcome: ItemOutcome | None = None
    settled_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    enqueued_at: datetime | None = None


@dataclass
class InMemoryWorkQueue:
    """Non-network work queue with deterministic behavior for tests and runs without DATABASE_URL.

    No method awaits between reading and writing state, so every call is atomic
    within one event loop. Blocking pops poll until the timeout elapses.
    """

    catalog: str = "default"
    dedup_horizon: timedelta = timedelta(hours=24)
    poll_interval_seconds: float = 0.01
    clock: Callable[[], datetime] = _utcnow
    items: dict[str, _ItemRow] = field(default_factory=dict)
    snapshots: dict[str, Snapshot] = field(default_factory=dict)
    pending: deque[str] = field(default_factory=deque)
    missing: deque[str] = field(default_factory=deque)
    counters: Counter[str] = field(default_factory=Counter)
    closed: bool = False

    async def enqueue_if_new(self, ids: list[str]) -> int:
        now = self.clock()
        horizon_start = now - self.dedup_horizon
        observed: set[str] = set()
        added = 0
        for raw_id in ids:
            item_id = str(raw_id).strip()
            if not item_id or item_id in observed:
                continue
            observed.add(item_id)
            self._touch_snapshot(item_id, now)

            row = self.items.get(item_id)
            if row is None:
                row = _ItemRow(item_id=item_id)
                self.items[item_id] = row
            elif row.queue_state is not None:
                continue
            elif row.settled_at is not None and row.settled_at > horizon_start:
                continue

            row.queue_state = QueueState.PENDING
            row.outcome = None
            row.attempts = 0
            row.last_error = None
            row.enqueued_at = now
            self.pending.append(item_id)
            added += 1

        self.counters["discovered"] += len(observed)
        self.counters["queued"] += added
        return added

    async def pop(self, *, worker_id: str, timeout: float) -> ItemClaim | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            while self.pending:
                item_id = self.pending.popleft()
                row = self.items.get(item_id)
                if row is None or row.queue_state != QueueState.PENDING:
                    continue
                row.queue_state = QueueState.IN_FLIGHT
                row.claimed_by = worker_id
                row.claimed_at = self.clock()
                return ItemClaim(
                    item_id=item_id,
                    attempt=row.attempts + 1,
                    claimed_by=worker_id,
                    claimed_at=row.claimed_at,
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def is_processed(self, item_id: str) -> bool:
        row = self.items.get(item_id)
        return row is not None and row.outcome == ItemOutcome.PROCESSED

    async def mark_processed(self, item_id: str, *, changed: bool | None = None) -> bool:
        now = self.clock()
        row = self.items.setdefault(item_id, _ItemRow(item_id=item_id))
        already_processed = row.outcome == ItemOutcome.PROCESSED
        if row.queue_state in (QueueState.PENDING, QueueState.IN_FLIGHT):
            row.queue_state = None
        row.claimed_by = None
        row.claimed_at = None
        row.outcome = ItemOutcome.PROCESSED
        row.settled_at = now
        row.attempts = 0
        row.last_error = None
        self._touch_snapshot(item_id, now)

        if already_processed:
            return False
        self.counters["processed"] += 1
        if changed is True:
            self.counters["changed"] += 1
        elif changed is False:
            self.counters["unchanged"] += 1
        return True

    async def store_snapshot(self, item_id: str, payload_hash: str, *, seen_at: datetime | None = None) -> None:
        self.snapshots[item_id] = Snapshot(
            item_id=item_id,
            payload_hash=payload_hash,
            last_seen=seen_at or self.clock(),
        )

    async def has_changed(self, item_id: str, payload_hash: str) -> bool:
        snapshot = self.snapshots.get(item_id)
        return snapshot is None or snapshot.payload_hash != payload_hash

    async def get_snapshot(self, item_id: str) -> Snapshot | None:
        return self.snapshots.get(item_id)

    async def requeue_with_retry(self, item_id: str, *, max_attempts: int, error: str | None = None) -> bool:
        row = self.items.get(item_id)
        if row is None:
            return False
        if row.queue_state != QueueState.IN_FLIGHT:
            # Already resolved for this attempt; report the earlier outcome without counting again.
            return row.queue_state == QueueState.PENDING

        row.attempts += 1
        row.last_error = error
        row.claimed_by = None
        row.claimed_at = None
        if row.attempts < max_attempts:
            row.queue_state = QueueState.PENDING
            self.pending.append(item_id)
            self.counters["retried"] += 1
            return True

        row.queue_state = None
        row.outcome = ItemOutcome.FAILED
        row.settled_at = self.clock()
        row.attempts = 0
        self.counters["permanently_failed"] += 1
        return False

    async def mark_dropped(self, item_id: str, *, reason: str) -> bool:
        row = self.items.get(item_id)
        if row is None or not can_transition(_state_of(row), ItemState.DROPPED):
            return False
        row.queue_state = None
        row.claimed_by = None
        row.claimed_at = None
        row.outcome = ItemOutcome.DROPPED
        row.settled_at = self.clock()
        row.attempts = 0
        row.last_error = reason
        self.counters["not_found"] += 1
        return True

    async def push_missing(self, ids: list[str]) -> int:
        added = 0
        for item_id in dict.fromkeys(ids):
            row = self.items.get(item_id)
            if row is None or not can_transition(_state_of(row), ItemState.MISSING_CANDIDATE):
                continue
            row.queue_state = QueueState.MISSING
            self.missing.append(item_id)
            added += 1
        self.counters["missing_candidates"] += added
        return added

    async def pop_missing(self, *, timeout: float) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            while self.missing:
                item_id = self.missing.popleft()
                row = self.items.get(item_id)
                if row is None or row.queue_state != QueueState.MISSING:
                    continue
                row.queue_state = None
                return item_id
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def mark_verified_inactive(self, item_id: str) -> bool:
        row = self.items.get(item_id)
        if row is None or not can_transition(_state_of(row), ItemState.VERIFIED_INACTIVE):
            return False
        row.queue_state = None
        row.outcome = ItemOutcome.INACTIVE
        row.settled_at = self.clock()
        self.counters["verified_inactive"] += 1
        return True

    async def update_last_seen(self, item_id: str, *, restored: bool = False) -> bool:
        row = self.items.get(item_id)
        if row is None:
            return False
        now = self.clock()
        touched = self._touch_snapshot(item_id, now)
        if not restored:
            return touched
        if row.outcome == ItemOutcome.INACTIVE:
            row.outcome = ItemOutcome.PROCESSED
            row.settled_at = now
        self.counters["restored_active"] += 1
        return True

    async def defer_verification(self, item_id: str) -> bool:
        if item_id not in self.items:
            return False
        self.counters["verification_deferred"] += 1
        return True

    async def find_stale(self, threshold: timedelta) -> list[str]:
        cutoff = self.clock() - threshold
        stale: list[str] = []
        for item_id, row in self.items.items():
            if row.outcome != ItemOutcome.PROCESSED or row.queue_state is not None:
                continue
            snapshot = self.snapshots.get(item_id)
            if snapshot is not None and snapshot.last_seen < cutoff:
                stale.append(item_id)
        stale.sort()
        return stale

    async def reclaim_stale_claims(self, *, older_than: timedelta, max_attempts: int) -> int:
        now = self.clock()
        cutoff = now - older_than
        reclaimed = 0
        for row in self.items.values():
            if row.queue_state != QueueState.IN_FLIGHT or row.claimed_at is None or row.claimed_at > cutoff:
                continue
            row.last_error = "claim_expired"
            row.claimed_by = None
            row.claimed_at = None
            reclaimed += 1
            if row.attempts + 1 < max_attempts:
                row.queue_state = QueueState.PENDING
                row.attempts += 1
                self.pending.append(row.item_id)
                continue
            # Crashed on its last allowed attempt: settle like an exhausted retry.
            row.queue_state = None
            row.outcome = ItemOutcome.FAILED
            row.settled_at = now
            row.attempts = 0
            self.counters["permanently_failed"] += 1
        return reclaimed

    async def item_state(self, item_id: str) -> ItemState:
        row = self.items.get(item_id)
        if row is None:
            return ItemState.UNKNOWN
        return _state_of(row)

    async def stats(self) -> QueueStats:
        by_state = Counter(row.queue_state for row in self.items.values() if row.queue_state is not None)
        by_outcome = Counter(row.outcome for row in self.items.values() if row.outcome is not None)
        return QueueStats(
            counters=dict(self.counters),
            pending=by_state[QueueState.PENDING],
            in_flight=by_state[QueueState.IN_FLIGHT],
            missing=by_state[QueueState.MISSING],
            processed_total=by_outcome[ItemOutcome.PROCESSED],
            inactive_total=by_outcome[ItemOutcome.INACTIVE],
        )

    async def close(self) -> None:
        self.closed = True

    def _touch_snapshot(self, item_id: str, now: datetime) -> bool:
        snapshot = self.snapshots.get(item_id)
        if snapshot is None:
            return False
        self.snapshots[item_id] = replace(snapshot, last_seen=now)
        return True


def _state_of(row: _ItemRow) -> ItemState:
    return derive_item_state(row.queue_state, row.outcome)
