"""Durable job queue (sqlite file or postgres DSN).

A job is claimed by flipping ``pending`` to ``active`` with a guarded UPDATE, so
two workers polling the same queue never both own a job. Singleton keys are
enforced by a partial unique index over active jobs.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
import sqlite3
from typing import Any, Mapping
import uuid

import psycopg

from bookkeeping_agent import sql_runtime


logger = logging.getLogger("bookkeeping_agent.jobs.queue")

JOB_ACTION_EXECUTION = "action-execution"
JOB_SAGA_EXECUTION = "saga-execution"
JOB_TYPES: tuple[str, ...] = (JOB_ACTION_EXECUTION, JOB_SAGA_EXECUTION)

SAGA_EXECUTE = "execute"
SAGA_RESUME = "resume"
SAGA_COMPENSATE = "compensate"
SAGA_JOB_ACTIONS: set[str] = {SAGA_EXECUTE, SAGA_RESUME, SAGA_COMPENSATE}

JOB_PENDING = "pending"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 30.0


class JobQueueError(RuntimeError):
    """Raised when job queue operations fail."""


@dataclass(frozen=True)
class Job:
    job_id: str
    job_type: str
    payload: dict[str, Any]
    singleton_key: str | None
    attempts: int
    max_attempts: int


def saga_singleton_key(saga_id: str) -> str:
    return f"saga:{saga_id}"


class JobQueue:
    def __init__(
        self,
        *,
        locator: str,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=timezone.utc),
    ) -> None:
        self.locator = locator
        self.backend = sql_runtime.prepare_locator(locator)
        self._clock = clock
        self._init_schema()

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        *,
        singleton_key: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ) -> str | None:
        """Return the new job id, or None if an active job holds the singleton key."""
        if job_type not in JOB_TYPES:
            raise JobQueueError(f"unknown job type: {job_type!r}")
        if max_attempts <= 0:
            raise JobQueueError("max_attempts must be > 0")
        if backoff_seconds < 0:
            raise JobQueueError("backoff_seconds must be >= 0")
        job_id = uuid.uuid4().hex
        now = self._now()
        try:
            with sql_runtime.connection(self.locator, self.backend) as conn:
                sql_runtime.execute(
                    conn,
                    self.backend,
                    """
                    INSERT INTO bk_jobs (
                        job_id,
                        job_type,
                        payload_json,
                        singleton_key,
                        status,
                        attempts,
                        max_attempts,
                        backoff_seconds,
                        run_after_utc,
                        last_error,
                        created_at_utc,
                        updated_at_utc
                    ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, 0, {p6}, {p7}, {p8}, NULL, {p8}, {p8})
                    """,
                    (
                        job_id,
                        job_type,
                        json.dumps(dict(payload), sort_keys=True, ensure_ascii=True),
                        singleton_key,
                        JOB_PENDING,
                        int(max_attempts),
                        float(backoff_seconds),
                        now,
                    ),
                )
        except (sqlite3.IntegrityError, psycopg.IntegrityError):
            logger.info("job not enqueued; singleton active job_type=%s singleton_key=%s", job_type, singleton_key)
            return None
        logger.info("job enqueued job_id=%s job_type=%s singleton_key=%s", job_id, job_type, singleton_key)
        return job_id

    def dequeue_batch(self, job_type: str, batch_size: int = 5) -> list[Job]:
        now = self._now()
        claimed: list[Job] = []
        with sql_runtime.connection(self.locator, self.backend) as conn:
            rows = sql_runtime.query_all(
                conn,
                self.backend,
                """
                SELECT job_id, job_type, payload_json, singleton_key, attempts, max_attempts
                FROM bk_jobs
                WHERE job_type = {p1} AND status = {p2} AND run_after_utc <= {p3}
                ORDER BY run_after_utc ASC, created_at_utc ASC
                LIMIT {p4}
                """,
                (job_type, JOB_PENDING, now, max(1, int(batch_size))),
            )
            for row in rows:
                updated = sql_runtime.execute(
                    conn,
                    self.backend,
                    """
                    UPDATE bk_jobs
                    SET status = {p2}, attempts = attempts + 1, updated_at_utc = {p3}
                    WHERE job_id = {p1} AND status = {p4}
                    """,
                    (row[0], JOB_ACTIVE, now, JOB_PENDING),
                )
                if updated != 1:
                    continue
                claimed.append(
                    Job(
                        job_id=str(row[0]),
                        job_type=str(row[1]),
                        payload=_load_payload(row[2]),
                        singleton_key=str(row[3]) if row[3] else None,
                        attempts=int(row[4]) + 1,
                        max_attempts=int(row[5]),
                    )
                )
        return claimed

    def complete(self, job_id: str) -> None:
        self._finish(job_id, JOB_COMPLETED, None)

    def fail(self, job_id: str, error: str) -> str:
        """Reschedule with exponential backoff, or mark failed once attempts run out."""
        with sql_runtime.connection(self.locator, self.backend) as conn:
            row = sql_runtime.query_one(
                conn,
                self.backend,
                "SELECT attempts, max_attempts, backoff_seconds, status FROM bk_jobs WHERE job_id = {p1}",
                (job_id,),
            )
        if row is None:
            raise JobQueueError(f"job not found: {job_id}")
        if str(row[3]) != JOB_ACTIVE:
            raise JobQueueError(f"job {job_id} is not active: {row[3]}")
        attempts, max_attempts, backoff = int(row[0]), int(row[1]), float(row[2])
        if attempts >= max_attempts:
            self._finish(job_id, JOB_FAILED, error)
            logger.warning("job failed permanently job_id=%s attempts=%s error=%s", job_id, attempts, error)
            return JOB_FAILED
        delay = backoff * (2 ** (attempts - 1))
        run_after = _format(self._clock() + timedelta(seconds=delay))
        with sql_runtime.connection(self.locator, self.backend) as conn:
            sql_runtime.execute(
                conn,
                self.backend,
                """
                UPDATE bk_jobs
                SET status = {p2}, run_after_utc = {p3}, last_error = {p4}, updated_at_utc = {p5}
                WHERE job_id = {p1}
                """,
                (job_id, JOB_PENDING, run_after, error, self._now()),
            )
        logger.warning(
            "job rescheduled job_id=%s attempts=%s retry_in_seconds=%s error=%s",
            job_id,
            attempts,
            delay,
            error,
        )
        return JOB_PENDING

    def status(self, job_id: str) -> str:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            row = sql_runtime.query_one(conn, self.backend, "SELECT status FROM bk_jobs WHERE job_id = {p1}", (job_id,))
        if row is None:
            raise JobQueueError(f"job not found: {job_id}")
        return str(row[0])

    def _finish(self, job_id: str, status: str, error: str | None) -> None:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            updated = sql_runtime.execute(
                conn,
                self.backend,
                """
                UPDATE bk_jobs
                SET status = {p2}, last_error = {p3}, updated_at_utc = {p4}
                WHERE job_id = {p1}
                """,
                (job_id, status, error, self._now()),
            )
        if updated != 1:
            raise JobQueueError(f"job not found: {job_id}")

    def _now(self) -> str:
        return _format(self._clock())

    def _init_schema(self) -> None:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            sql_runtime.execute_script(
                conn,
                self.backend,
                """
                CREATE TABLE IF NOT EXISTS bk_jobs (
                    job_id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    singleton_key TEXT,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    max_attempts INTEGER NOT NULL,
                    backoff_seconds DOUBLE PRECISION NOT NULL,
                    run_after_utc TEXT NOT NULL,
                    last_error TEXT,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS ix_bk_jobs_due
                    ON bk_jobs (job_type, status, run_after_utc);
                CREATE UNIQUE INDEX IF NOT EXISTS ux_bk_jobs_singleton
                    ON bk_jobs (job_type, singleton_key)
                    WHERE singleton_key IS NOT NULL AND status IN ('pending', 'active');
                """,
            )


def _format(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _load_payload(raw: Any) -> dict[str, Any]:
    try:
        payload = json.loads(str(raw))
    except json.JSONDecodeError as exc:
        raise JobQueueError(f"stored job payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise JobQueueError("stored job payload must be an object")
    return payload


def enqueue_action_execution(queue: JobQueue, action_id: str) -> str | None:
    return queue.enqueue(JOB_ACTION_EXECUTION, {"action_id": action_id}, singleton_key=f"action:{action_id}")


def enqueue_saga_job(queue: JobQueue, saga_id: str, action: str = SAGA_EXECUTE, **extra: Any) -> str | None:
    """Queue one saga step-advancement job; at most one per saga may be active."""
    if action not in SAGA_JOB_ACTIONS:
        raise JobQueueError(f"unknown saga job action: {action!r}")
    return queue.enqueue(
        JOB_SAGA_EXECUTION,
        {"saga_id": saga_id, "action": action, **extra},
        singleton_key=saga_singleton_key(saga_id),
    )
