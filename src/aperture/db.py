"""Connection factory for the state database.

SQLite is the default. When ``AP_DB_URL`` holds a PostgreSQL URL the same
qmark-style SQL is translated on the fly.
"""

from __future__ import annotations

import os
import re
import sqlite3
from typing import Any, Iterable

from .migrations import apply_migrations

POSTGRES_SCHEMES = ("postgres://", "postgresql://")
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)

# Quoted literals are kept intact; placeholders inside them are not parameters.
_QUOTED_RE = re.compile(r"('(?:[^']|'')*'|\"[^\"]*\")")
_INSERT_OR_IGNORE_RE = re.compile(r"\bINSERT\s+OR\s+IGNORE\b", re.IGNORECASE)


def get_db_url() -> str | None:
    return os.environ.get("AP_DB_URL", "").strip() or None


def is_postgres_url(url: str | None) -> bool:
    return bool(url) and url.startswith(POSTGRES_SCHEMES)


class StateConnection:
    """Thin wrapper giving both backends the sqlite3 ``execute`` surface."""

    def __init__(self, raw: Any, dialect: str) -> None:
        self._raw = raw
        self.dialect = dialect

    def execute(self, sql: str, params: Iterable[Any] | None = None):
        cursor = self._raw.cursor()
        cursor.execute(translate_sql(sql, self.dialect), tuple(params or ()))
        return cursor

    def commit(self) -> None:
        self._raw.commit()

    def rollback(self) -> None:
        self._raw.rollback()

    def close(self) -> None:
        self._raw.close()

    def __getattr__(self, name: str):
        return getattr(self._raw, name)


def connect_db(path: str, *, migrate: bool = True) -> StateConnection:
    """Open the state database. ``migrate=False`` skips the schema check and its write lock."""
    url = get_db_url()
    conn = _open_postgres(url) if is_postgres_url(url) else _open_sqlite(path)
    if migrate:
        apply_migrations(conn)
    return conn


def _open_postgres(url: str) -> StateConnection:
    try:
        import psycopg
    except ImportError as exc:  # pragma: no cover - depends on env
        raise RuntimeError("AP_DB_URL points at PostgreSQL but psycopg is not installed") from exc
    return StateConnection(psycopg.connect(url), "postgres")


def _open_sqlite(path: str) -> StateConnection:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    # Scheduler ticks run on fresh timer threads and reuse the queue connection.
    raw = sqlite3.connect(path, check_same_thread=False)
    for pragma in SQLITE_PRAGMAS:
        raw.execute(pragma)
    return StateConnection(raw, "sqlite")


def translate_sql(sql: str, dialect: str) -> str:
    """Rewrite SQLite-flavoured SQL for ``dialect``.

    Only two constructs differ in practice: ``?`` placeholders and
    ``INSERT OR IGNORE``. ``BEGIN IMMEDIATE`` becomes a plain ``BEGIN``.
    """
    if dialect != "postgres":
        return sql
    ignore = bool(_INSERT_OR_IGNORE_RE.search(sql))
    parts = _QUOTED_RE.split(sql)
    for idx in range(0, len(parts), 2):
        chunk = parts[idx].replace("%", "%%").replace("?", "%s")
        chunk = _INSERT_OR_IGNORE_RE.sub("INSERT", chunk)
        parts[idx] = chunk.replace("BEGIN IMMEDIATE", "BEGIN")
    translated = "".join(parts)
    if ignore and "ON CONFLICT" not in translated.upper():
        translated = translated.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    return translated
