"""Action record storage (sqlite file or postgres DSN)."""

from __future__ import annotations

import json
from typing import Any

from bookkeeping_agent import sql_runtime

from .contracts import ACTION_PENDING, ActionRecord, utc_now


class ActionStoreError(RuntimeError):
    """Raised when action store operations fail."""


class ActionStore:
    """Whole-record store: every save replaces the stored row for the action id."""

    def __init__(self, *, locator: str) -> None:
        self.locator = locator
        self.backend = sql_runtime.prepare_locator(locator)
        self._init_schema()

    def create(self, record: ActionRecord) -> ActionRecord:
        now = utc_now()
        with sql_runtime.connection(self.locator, self.backend) as conn:
            existing = sql_runtime.query_one(
                conn,
                self.backend,
                "SELECT action_id FROM bk_actions WHERE action_id = {p1}",
                (record.id,),
            )
            if existing is not None:
                raise ActionStoreError(f"action already exists: {record.id}")
            sql_runtime.execute(
                conn,
                self.backend,
                """
                INSERT INTO bk_actions (
                    action_id,
                    status,
                    email_id,
                    client_id,
                    requires_approval,
                    record_json,
                    created_at_utc,
                    updated_at_utc
                ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8})
                """,
                (
                    record.id,
                    record.status,
                    record.email_id,
                    record.client_id,
                    1 if record.requires_approval else 0,
                    _dump(record),
                    record.created_at or now,
                    now,
                ),
            )
        return record

    def load(self, action_id: str) -> ActionRecord:
        record = self.find(action_id)
        if record is None:
            raise ActionStoreError(f"action not found: {action_id}")
        return record

    def find(self, action_id: str) -> ActionRecord | None:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            row = sql_runtime.query_one(
                conn,
                self.backend,
                "SELECT record_json FROM bk_actions WHERE action_id = {p1}",
                (action_id,),
            )
        if row is None:
            return None
        return _load(row[0])

    def save(self, record: ActionRecord) -> ActionRecord:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            updated = sql_runtime.execute(
                conn,
                self.backend,
                """
                UPDATE bk_actions
                SET status = {p2},
                    requires_approval = {p3},
                    record_json = {p4},
                    updated_at_utc = {p5}
                WHERE action_id = {p1}
                """,
                (
                    record.id,
                    record.status,
                    1 if record.requires_approval else 0,
                    _dump(record),
                    utc_now(),
                ),
            )
        if updated != 1:
            raise ActionStoreError(f"action not found for save: {record.id}")
        return record

    def list_pending_approvals(self, *, limit: int = 100) -> list[ActionRecord]:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            rows = sql_runtime.query_all(
                conn,
                self.backend,
                """
                SELECT record_json FROM bk_actions
                WHERE status = {p1} AND requires_approval = 1
                ORDER BY created_at_utc ASC, action_id ASC
                LIMIT {p2}
                """,
                (ACTION_PENDING, int(limit)),
            )
        return [_load(row[0]) for row in rows]

    def list_for_email(self, email_id: str) -> list[ActionRecord]:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            rows = sql_runtime.query_all(
                conn,
                self.backend,
                """
                SELECT record_json FROM bk_actions
                WHERE email_id = {p1}
                ORDER BY created_at_utc ASC, action_id ASC
                """,
                (email_id,),
            )
        return [_load(row[0]) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            rows = sql_runtime.query_all(
                conn,
                self.backend,
                "SELECT status, COUNT(*) FROM bk_actions GROUP BY status",
                (),
            )
        return {str(row[0]): int(row[1]) for row in rows}

    def _init_schema(self) -> None:
        with sql_runtime.connection(self.locator, self.backend) as conn:
            sql_runtime.execute_script(
                conn,
                self.backend,
                """
                CREATE TABLE IF NOT EXISTS bk_actions (
                    action_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    email_id TEXT,
                    client_id TEXT,
                    requires_approval INTEGER NOT NULL,
                    record_json TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS ix_bk_actions_status
                    ON bk_actions (status, requires_approval);
                CREATE INDEX IF NOT EXISTS ix_bk_actions_email
                    ON bk_actions (email_id);
                """,
            )


def _dump(record: ActionRecord) -> str:
    return json.dumps(record.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _load(raw: Any) -> ActionRecord:
    try:
        payload = json.loads(str(raw))
    except json.JSONDecodeError as exc:
        raise ActionStoreError(f"stored action record is not valid JSON: {exc}") from exc
    return ActionRecord.from_dict(payload)
