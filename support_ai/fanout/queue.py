"""Durable and in-process queues for fanout jobs.

Both queues deduplicate on the job key, so publishing the same message event
twice enqueues its jobs once.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Any, Protocol

from psycopg.types.json import Jsonb

from ..db import PostgresStore
from .jobs import FanoutJob, JobKind

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    async def enqueue(self, job: FanoutJob) -> bool: ...

    async def next_batch(self, limit: int, timeout: float) -> list[FanoutJob]: ...

    async def mark_done(self, job: FanoutJob, error: str | None = None) -> None: ...


class InMemoryJobQueue:
    """``asyncio.Queue`` with key-based deduplication.

    Only the most recent ``max_keys`` job keys are remembered for
    deduplication, and ``completed`` and ``failed`` keep the last
    ``max_history`` jobs, so a long-running process stays bounded.
    """

    def __init__(self, *, max_keys: int = 10_000, max_history: int = 1_000) -> None:
        self._queue: asyncio.Queue[FanoutJob] = asyncio.Queue()
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._max_keys = max_keys
        self.completed: deque[FanoutJob] = deque(maxlen=max_history)
        self.failed: deque[tuple[FanoutJob, str]] = deque(maxlen=max_history)

    def __len__(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, job: FanoutJob) -> bool:
        if job.key in self._seen:
            return False
        self._seen[job.key] = None
        while len(self._seen) > self._max_keys:
            self._seen.popitem(last=False)
        self._queue.put_nowait(job)
        return True

    async def next_batch(self, limit: int, timeout: float) -> list[FanoutJob]:
        batch: list[FanoutJob] = []
        if self._queue.empty() and timeout > 0:
            try:
                batch.append(await asyncio.wait_for(self._queue.get(), timeout))
            except asyncio.TimeoutError:
                return []
        while len(batch) < limit and not self._queue.empty():
            batch.append(self._queue.get_nowait())
        return batch

    async def mark_done(self, job: FanoutJob, error: str | None = None) -> None:
        if error is None:
            self.completed.append(job)
        else:
            self.failed.append((job, error))


class PostgresJobOutbox(PostgresStore):
    """Transactional outbox in the ``fanout_jobs`` table.

    Workers claim pending rows with ``FOR UPDATE SKIP LOCKED`` so several
    processes can drain the outbox without handing out the same job twice.
    Rows left in ``running`` for longer than ``stale_after`` seconds, for
    instance by a worker that crashed, are claimed again.
    """

    def __init__(self, dsn: str | None = None, *, stale_after: float = 300.0) -> None:
        super().__init__(dsn)
        self._stale_after = stale_after

    async def enqueue(self, job: FanoutJob) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO fanout_jobs (key, kind, message_id, conversation_id, payload)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (key) DO NOTHING
                RETURNING id
                """,
                (
                    job.key,
                    job.kind.value,
                    job.message_id,
                    job.conversation_id,
                    Jsonb(job.payload),
                ),
            )
            row = await cur.fetchone()
        return row is not None

    @staticmethod
    def _row_to_job(row: dict[str, Any]) -> FanoutJob:
        return FanoutJob(
            id=row["id"],
            kind=JobKind(row["kind"]),
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            payload=row.get("payload") or {},
        )

    async def _claim(self, limit: int) -> list[FanoutJob]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE fanout_jobs
                SET status = 'running', attempts = attempts + 1, claimed_at = now()
                WHERE id IN (
                    SELECT id FROM fanout_jobs
                    WHERE status = 'pending'
                       OR (status = 'running'
                           AND claimed_at < now() - make_interval(secs => %s))
                    ORDER BY id ASC
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (self._stale_after, limit),
            )
            rows = await cur.fetchall()
        return [self._row_to_job(row) for row in sorted(rows, key=lambda r: r["id"])]

    async def next_batch(self, limit: int, timeout: float) -> list[FanoutJob]:
        batch = await self._claim(limit)
        if not batch and timeout > 0:
            await asyncio.sleep(timeout)
        return batch

    async def mark_done(self, job: FanoutJob, error: str | None = None) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE fanout_jobs
                SET status = %s, last_error = %s, processed_at = now()
                WHERE key = %s
                """,
                ("failed" if error else "done", error, job.key),
            )
