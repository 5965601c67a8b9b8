"""Shared sqlite/postgres helpers for the orchestration stores."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
import re
import sqlite3
from typing import Any

import psycopg


class SqlRuntimeError(RuntimeError):
    """Raised when a store statement cannot be rendered."""


_SQL_PARAM_PATTERN = re.compile(r"\{p(?P<index>\d+)\}")


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def backend_for(locator: str) -> str:
    return "postgres" if is_postgres_dsn(locator) else "sqlite"


def prepare_locator(locator: str) -> str:
    backend = backend_for(locator)
    if backend == "sqlite":
        path = Path(sqlite_path(locator))
        path.parent.mkdir(parents=True, exist_ok=True)
    return backend


def connect(locator: str, backend: str) -> Any:
    if backend == "sqlite":
        conn = sqlite3.connect(sqlite_path(locator))
        conn.row_factory = sqlite3.Row
        return conn
    return psycopg.connect(locator)


@contextmanager
def connection(locator: str, backend: str) -> Iterator[Any]:
    conn = connect(locator, backend)
    try:
        yield conn
    finally:
        conn.close()


def sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


def render_sql_with_params(sql: str, backend: str, params: tuple[Any, ...]) -> tuple[str, tuple[Any, ...]]:
    ordered_params: list[Any] = []
    placeholder = "%s" if backend == "postgres" else "?"

    def _replace(match: re.Match[str]) -> str:
        index = int(match.group("index"))
        if index <= 0 or index > len(params):
            raise SqlRuntimeError(f"SQL placeholder index p{index} out of range for {len(params)} params")
        ordered_params.append(params[index - 1])
        return placeholder

    rendered = _SQL_PARAM_PATTERN.sub(_replace, sql)
    return rendered, tuple(ordered_params)


def query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered, ordered_params = render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        return cur.fetchone()
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    row = cur.fetchone()
    cur.close()
    return row


def query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered, ordered_params = render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        return list(cur.fetchall())
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    rows = list(cur.fetchall())
    cur.close()
    return rows


def execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> int:
    rendered, ordered_params = render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        conn.commit()
        return int(cur.rowcount)
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    rowcount = int(cur.rowcount)
    conn.commit()
    cur.close()
    return rowcount


def execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
        conn.commit()
        return
    cur = conn.cursor()
    for statement in [part.strip() for part in sql.split(";") if part.strip()]:
        cur.execute(statement)
    conn.commit()
    cur.close()
