from __future__ import annotations

import logging
from typing import Any

from ..utils import log_event

logger = logging.getLogger("aperture.deletion")


def _delete_article_rows(conn: Any, article_id: str) -> None:
    conn.execute("DELETE FROM highlights WHERE article_id = ?", (article_id,))
    conn.execute("DELETE FROM article_word_index WHERE article_id = ?", (article_id,))
    conn.execute(
        """
        DELETE FROM article_vocab_definitions
        WHERE vocab_id IN (SELECT id FROM article_vocabulary WHERE article_id = ?)
        """,
        (article_id,),
    )
    conn.execute("DELETE FROM article_vocabulary WHERE article_id = ?", (article_id,))
    conn.execute("DELETE FROM article_variants WHERE article_id = ?", (article_id,))
    conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))


def delete_article_with_cascade(conn: Any, article_id: str, *, commit: bool = True) -> None:
    """Remove an article and every dependent row.

    With ``commit=False`` the deletes join the caller's open transaction; the
    executor uses that to sweep and re-insert an article atomically.
    """
    try:
        _delete_article_rows(conn, article_id)
    except Exception:
        if commit:
            conn.rollback()
        raise
    if commit:
        conn.commit()
    log_event(logger, logging.INFO, "article_deleted", article_id=article_id)


def delete_task_with_cascade(conn: Any, task_id: str) -> int:
    """Remove a task, its articles and their dependents in one transaction.

    Returns the number of articles removed.
    """
    cursor = conn.execute("SELECT id FROM articles WHERE generation_task_id = ?", (task_id,))
    article_ids = [row[0] for row in cursor.fetchall()]
    try:
        for article_id in article_ids:
            _delete_article_rows(conn, article_id)
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    log_event(logger, logging.INFO, "task_deleted", task_id=task_id, articles=len(article_ids))
    return len(article_ids)
