import sqlite3

from aperture.db import translate_sql
from aperture.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    first = apply_migrations(conn)
    second = apply_migrations(conn)

    assert first == [version for version, _ in _get_migrations()]
    assert second == []

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_migrations_create_queue_and_article_tables(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)

    tables = {
        row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {
        "tasks",
        "generation_profiles",
        "daily_word_references",
        "articles",
        "article_variants",
        "article_vocabulary",
        "article_vocab_definitions",
        "article_word_index",
        "highlights",
        "news_sources",
    } <= tables


def test_translate_sql_rewrites_placeholders_outside_literals():
    sql = "UPDATE tasks SET error_message = 'why?' WHERE id = ? AND version = ?"

    assert translate_sql(sql, "sqlite") == sql
    assert translate_sql(sql, "postgres") == (
        "UPDATE tasks SET error_message = 'why?' WHERE id = %s AND version = %s"
    )


def test_translate_sql_turns_insert_or_ignore_into_on_conflict():
    sql = "INSERT OR IGNORE INTO words (word, origin, created_at) VALUES (?, ?, ?);"

    assert translate_sql(sql, "postgres") == (
        "INSERT INTO words (word, origin, created_at) VALUES (%s, %s, %s) ON CONFLICT DO NOTHING"
    )
    assert translate_sql("BEGIN IMMEDIATE", "postgres") == "BEGIN"
