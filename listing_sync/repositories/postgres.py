from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import importlib
import json
from typing import Any

from listing_sync.domain.errors import DomainInvariantError, QueueTransportError
from listing_sync.domain.lifecycle import ItemState, derive_item_state
from listing_sync.domain.models import ItemClaim, QueueState, QueueStats, Snapshot
from listing_sync.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_TOUCH_SNAPSHOTS = load_sql("touch_snapshots.sql")
SQL_TOUCH_SNAPSHOT = load_sql("touch_snapshot.sql")
SQL_ENQUEUE_IF_NEW = load_sql("enqueue_if_new.sql")
SQL_INCREMENT_COUNTER = load_sql("increment_counter.sql")
SQL_POP_PENDING = load_sql("pop_pending.sql")
SQL_POP_MISSING = load_sql("pop_missing.sql")
SQL_GET_ITEM = load_sql("get_item.sql")
SQL_LOCK_ITEM = load_sql("lock_item.sql")
SQL_MARK_PROCESSED = load_sql("mark_processed.sql")
SQL_STORE_SNAPSHOT = load_sql("store_snapshot.sql")
SQL_GET_SNAPSHOT = load_sql("get_snapshot.sql")
SQL_REQUEUE_RETRY = load_sql("requeue_retry.sql")
SQL_REQUEUE_EXHAUSTED = load_sql("requeue_exhausted.sql")
SQL_MARK_DROPPED = load_sql("mark_dropped.sql")
SQL_PUSH_MISSING = load_sql("push_missing.sql")
SQL_MARK_VERIFIED_INACTIVE = load_sql("mark_verified_inactive.sql")
SQL_RESTORE_ACTIVE = load_sql("restore_active.sql")
SQL_FIND_STALE = load_sql("find_stale.sql")
SQL_RECLAIM_STALE_CLAIMS = load_sql("reclaim_stale_claims.sql")
SQL_LIST_COUNTERS = load_sql("list_counters.sql")
SQL_CHANNEL_TOTALS = load_sql("channel_totals.sql")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _is_driver_error(exc: BaseException) -> bool:
    if isinstance(exc, (OSError, TimeoutError)):
        return True
    if asyncpg_module is None:  # pragma: no cover
        return False
    return isinstance(exc, (asyncpg_module.PostgresError, asyncpg_module.InterfaceError))


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 5
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres queue mode")
        if self.pool is not None:
            return

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        try:
            self.pool = await asyncpg_module.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                init=_init_connection,
            )
        except Exception as exc:
            if _is_driver_error(exc):
                raise QueueTransportError(f"postgres is unavailable: {exc}") from exc
            raise

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresWorkQueue:
    """Work queue backed by Postgres rows; one catalog per instance.

    Claims use FOR UPDATE SKIP LOCKED so concurrent consumers never receive the same
    id. Counter upserts run in the same transaction as the mutation they count.
    """

    pool_manager: AsyncpgPoolManager
    catalog: str = "default"
    dedup_horizon: timedelta = timedelta(hours=24)
    poll_interval_seconds: float = 0.25
    clock: Callable[[], datetime] = _utcnow

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise DomainInvariantError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except QueueTransportError:
            raise
        except Exception as exc:
            if _is_driver_error(exc):
                raise QueueTransportError(f"work queue backend failed: {exc}") from exc
            raise

    async def _increment(self, conn: Any, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        await conn.execute(SQL_INCREMENT_COUNTER, self.catalog, name, amount)

    async def enqueue_if_new(self, ids: list[str]) -> int:
        observed = list(dict.fromkeys(item_id for item_id in (str(raw).strip() for raw in ids) if item_id))
        if not observed:
            return 0
        now = self.clock()
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(SQL_TOUCH_SNAPSHOTS, self.catalog, observed, now)
                added = int(
                    await conn.fetchval(
                        SQL_ENQUEUE_IF_NEW,
                        self.catalog,
                        observed,
                        now,
                        now - self.dedup_horizon,
                    )
                )
                await self._increment(conn, "discovered", len(observed))
                await self._increment(conn, "queued", added)
        return added

    async def pop(self, *, worker_id: str, timeout: float) -> ItemClaim | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            async with self._connection() as conn:
                row = await conn.fetchrow(SQL_POP_PENDING, self.catalog, worker_id, self.clock())
            if row is not None:
                return ItemClaim(
                    item_id=row["item_id"],
                    attempt=int(row["attempts"]) + 1,
                    claimed_by=row["claimed_by"],
                    claimed_at=row["claimed_at"],
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def is_processed(self, item_id: str) -> bool:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_ITEM, self.catalog, item_id)
        return row is not None and row["outcome"] == "processed"

    async def mark_processed(self, item_id: str, *, changed: bool | None = None) -> bool:
        now = self.clock()
        async with self._connection() as conn:
            async with conn.transaction():
                previous = await conn.fetchrow(SQL_LOCK_ITEM, self.catalog, item_id)
                await conn.execute(SQL_MARK_PROCESSED, self.catalog, item_id, now)
                await conn.fetchrow(SQL_TOUCH_SNAPSHOT, self.catalog, item_id, now)
                if previous is not None and previous["outcome"] == "processed":
                    return False
                await self._increment(conn, "processed")
                if changed is True:
                    await self._increment(conn, "changed")
                elif changed is False:
                    await self._increment(conn, "unchanged")
        return True

    async def store_snapshot(self, item_id: str, payload_hash: str, *, seen_at: datetime | None = None) -> None:
        async with self._connection() as conn:
            await conn.execute(SQL_STORE_SNAPSHOT, self.catalog, item_id, payload_hash, seen_at or self.clock())

    async def has_changed(self, item_id: str, payload_hash: str) -> bool:
        snapshot = await self.get_snapshot(item_id)
        return snapshot is None or snapshot.payload_hash != payload_hash

    async def get_snapshot(self, item_id: str) -> Snapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_SNAPSHOT, self.catalog, item_id)
        if row is None:
            return None
        return Snapshot(item_id=row["item_id"], payload_hash=row["payload_hash"], last_seen=row["last_seen"])

    async def requeue_with_retry(self, item_id: str, *, max_attempts: int, error: str | None = None) -> bool:
        now = self.clock()
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_LOCK_ITEM, self.catalog, item_id)
                if row is None:
                    return False
                if row["queue_state"] != QueueState.IN_FLIGHT:
                    return row["queue_state"] == QueueState.PENDING

                attempts = int(row["attempts"]) + 1
                if attempts < max_attempts:
                    await conn.execute(SQL_REQUEUE_RETRY, self.catalog, item_id, attempts, error, now)
                    await self._increment(conn, "retried")
                    return True

                await conn.execute(SQL_REQUEUE_EXHAUSTED, self.catalog, item_id, error, now)
                await self._increment(conn, "permanently_failed")
        return False

    async def mark_dropped(self, item_id: str, *, reason: str) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_MARK_DROPPED, self.catalog, item_id, reason, self.clock())
                if row is None:
                    return False
                await self._increment(conn, "not_found")
        return True

    async def push_missing(self, ids: list[str]) -> int:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return 0
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_PUSH_MISSING, self.catalog, unique_ids, self.clock())
                await self._increment(conn, "missing_candidates", len(rows))
        return len(rows)

    async def pop_missing(self, *, timeout: float) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            async with self._connection() as conn:
                item_id = await conn.fetchval(SQL_POP_MISSING, self.catalog)
            if item_id is not None:
                return item_id
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    async def mark_verified_inactive(self, item_id: str) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_MARK_VERIFIED_INACTIVE, self.catalog, item_id, self.clock())
                if row is None:
                    return False
                await self._increment(conn, "verified_inactive")
        return True

    async def update_last_seen(self, item_id: str, *, restored: bool = False) -> bool:
        now = self.clock()
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_LOCK_ITEM, self.catalog, item_id)
                if row is None:
                    return False
                touched = await conn.fetchrow(SQL_TOUCH_SNAPSHOT, self.catalog, item_id, now)
                if not restored:
                    return touched is not None
                await conn.execute(SQL_RESTORE_ACTIVE, self.catalog, item_id, now)
                await self._increment(conn, "restored_active")
        return True

    async def defer_verification(self, item_id: str) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_GET_ITEM, self.catalog, item_id)
                if row is None:
                    return False
                await self._increment(conn, "verification_deferred")
        return True

    async def find_stale(self, threshold: timedelta) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_FIND_STALE, self.catalog, self.clock() - threshold)
        return [row["item_id"] for row in rows]

    async def reclaim_stale_claims(self, *, older_than: timedelta, max_attempts: int) -> int:
        now = self.clock()
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_RECLAIM_STALE_CLAIMS, self.catalog, now - older_than, now, max_attempts)
                exhausted = sum(1 for row in rows if row["queue_state"] is None)
                await self._increment(conn, "permanently_failed", exhausted)
        return len(rows)

    async def item_state(self, item_id: str) -> ItemState:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_ITEM, self.catalog, item_id)
        if row is None:
            return ItemState.UNKNOWN
        return derive_item_state(row["queue_state"], row["outcome"])

    async def stats(self) -> QueueStats:
        async with self._connection() as conn:
            counter_rows = await conn.fetch(SQL_LIST_COUNTERS, self.catalog)
            totals = await conn.fetchrow(SQL_CHANNEL_TOTALS, self.catalog)
        return QueueStats(
            counters={row["name"]: int(row["value"]) for row in counter_rows},
            pending=int(totals["pending"]),
            in_flight=int(totals["in_flight"]),
            missing=int(totals["missing"]),
            processed_total=int(totals["processed_total"]),
            inactive_total=int(totals["inactive_total"]),
        )

    async def close(self) -> None:
        await self.pool_manager.shutdown()
