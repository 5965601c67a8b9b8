"""Saga storage (sqlite file or postgres DSN).

Status, cursor, timestamps, error and the complete step list are written by a
single statement so a reader never observes a step list from a different save.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from bookkeeping_agent import sql_runtime
from bookkeeping_agent.action_layer.contracts import utc_now

from .contracts import Saga, SagaContractError, SagaStep


class SagaStoreError(RuntimeError):
    """Raised when saga store operations fail."""


class SagaRepository(Protocol):
    def load(self, saga_id: str) -> Saga: ...

    def save(self, saga: Saga) -> Saga: ...


class SagaStore:
    def __init__(self, *, locator: str) -> None:
        self.locator = locator
        self.backend = sql_runtime.prepare_locator(locator)
        self._init_schema()

    def create(self, saga: Saga) -> Saga:
        now = utc_now()
        with sql_runtime.connection(self.locator, self.backend) as conn:
            existing = sql_runtime.query_one(
                conn,
                self.backend,
                "SELECT saga_id FROM bk_sagas WHERE saga_id = {p1}",
                (saga.id,),
            )
            if existing is not None:
                raise SagaStoreError(f"saga already exists: {saga.id}")
            sql_runtime.execute(
                conn,
                self.backend,
                """
                INSERT INTO bk_sagas (
                    saga_id,
                    email_id,
                    client_id,
                    status,
                    current_step,
                    total_steps,
                    steps_json,
                    started_at_utc,
                    completed_at_utc,
                    failed_at_utc,
                    compensated_at_utc,
                    error_json,
                    created_at_utc,
                    updated_at_utc
                ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8}, {p9}, {p10}, {p11}, {p12}, {p13}, {p14})
                """,
                (
                    saga.id,
                    saga.email_id,
                    saga.client_id,
                    saga.status,
                    saga.current_step,
                    saga.total_steps,
                    _dump_steps(saga),
                    saga.started_at,
                    saga.completed_at,
                    saga.failed_at,
                    saga.compensated_at,
                    _dump_error(saga),
                    now,
                    now,
                ),
            )
        return saga

    def load(self, saga_id: str) -> Saga:
        saga = self.find(saga_id)
        if saga is None:
            raise SagaStoreError(f"saga not found: {saga_id}")
        return saga

    def find(self, saga_id: str) -> Saga | None:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            row = sql_runtime.query_one(
                conn,
                self.backend,
                f"SELECT {_COLUMNS} FROM bk_sagas WHERE saga_id = {{p1}}",
                (saga_id,),
            )
        if row is None:
            return None
        return _saga_from_row(row)

    def save(self, saga: Saga) -> Saga:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            updated = sql_runtime.execute(
                conn,
                self.backend,
                """
                UPDATE bk_sagas
                SET status = {p2},
                    current_step = {p3},
                    total_steps = {p4},
                    steps_json = {p5},
                    started_at_utc = {p6},
                    completed_at_utc = {p7},
                    failed_at_utc = {p8},
                    compensated_at_utc = {p9},
                    error_json = {p10},
                    updated_at_utc = {p11}
                WHERE saga_id = {p1}
                """,
                (
                    saga.id,
                    saga.status,
                    saga.current_step,
                    saga.total_steps,
                    _dump_steps(saga),
                    saga.started_at,
                    saga.completed_at,
                    saga.failed_at,
                    saga.compensated_at,
                    _dump_error(saga),
                    utc_now(),
                ),
            )
        if updated != 1:
            raise SagaStoreError(f"saga not found for save: {saga.id}")
        return saga

    def list_by_status(self, status: str, *, limit: int = 100) -> list[Saga]:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            rows = sql_runtime.query_all(
                conn,
                self.backend,
                f"""
                SELECT {_COLUMNS} FROM bk_sagas
                WHERE status = {{p1}}
                ORDER BY created_at_utc ASC, saga_id ASC
                LIMIT {{p2}}
                """,
                (status, int(limit)),
            )
        return [_saga_from_row(row) for row in rows]

    def _init_schema(self) -> None:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            sql_runtime.execute_script(
                conn,
                self.backend,
                """
                CREATE TABLE IF NOT EXISTS bk_sagas (
                    saga_id TEXT PRIMARY KEY,
                    email_id TEXT NOT NULL,
                    client_id TEXT,
                    status TEXT NOT NULL,
                    current_step INTEGER NOT NULL,
                    total_steps INTEGER NOT NULL,
                    steps_json TEXT NOT NULL,
                    started_at_utc TEXT,
                    completed_at_utc TEXT,
                    failed_at_utc TEXT,
                    compensated_at_utc TEXT,
                    error_json TEXT,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS ix_bk_sagas_status
                    ON bk_sagas (status);
                CREATE INDEX IF NOT EXISTS ix_bk_sagas_email
                    ON bk_sagas (email_id);
                """,
            )


_COLUMNS = (
    "saga_id, email_id, client_id, status, current_step, steps_json, "
    "started_at_utc, completed_at_utc, failed_at_utc, compensated_at_utc, error_json"
)


def _dump_steps(saga: Saga) -> str:
    return json.dumps([step.as_dict() for step in saga.steps], sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _dump_error(saga: Saga) -> str | None:
    if not saga.error:
        return None
    return json.dumps(saga.error, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _saga_from_row(row: Any) -> Saga:
    try:
        raw_steps = json.loads(str(row[5]))
        error = json.loads(str(row[10])) if row[10] else None
    except json.JSONDecodeError as exc:
        raise SagaStoreError(f"stored saga {row[0]} is not valid JSON: {exc}") from exc
    try:
        steps = tuple(SagaStep.from_payload(item, index=index) for index, item in enumerate(raw_steps))
        return Saga(
            id=str(row[0]),
            email_id=str(row[1]),
            client_id=str(row[2]) if row[2] else None,
            status=str(row[3]),
            current_step=int(row[4]),
            steps=steps,
            started_at=row[6],
            completed_at=row[7],
            failed_at=row[8],
            compensated_at=row[9],
            error=error,
        )
    except SagaContractError as exc:
        raise SagaStoreError(f"stored saga {row[0]} is invalid: {exc}") from exc
