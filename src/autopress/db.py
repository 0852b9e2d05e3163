from __future__ import annotations

import os
import sqlite3
from typing import Any

from .migrations import apply_migrations

DB_URL_ENV = "AP_DB_URL"


def get_db_url() -> str | None:
    url = os.environ.get(DB_URL_ENV, "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    def insert(self, sql: str, params: tuple | list | None = None) -> int:
        """Run an INSERT and return the new row id on either backend."""
        if self.backend == "postgres":
            cursor = self.execute(sql.rstrip().rstrip(";") + " RETURNING id", params)
            return int(cursor.fetchone()[0])
        cursor = self.execute(sql, params)
        return int(cursor.lastrowid)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        conn = DBConn(psycopg.connect(url), "postgres")
        apply_migrations(conn)
        return conn

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, timeout=30, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    conn = DBConn(raw, "sqlite")
    apply_migrations(conn)
    return conn


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    return _convert_qmark_to_percent(normalized)


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    idx = upper.find("INSERT OR IGNORE")
    replaced = sql[:idx] + "INSERT" + sql[idx + len("INSERT OR IGNORE") :]
    if "ON CONFLICT" in replaced.upper():
        return replaced
    return replaced.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        elif ch == "%" and not in_single and not in_double:
            out.append("%%")
        else:
            out.append(ch)
    return "".join(out)
