from __future__ import annotations

import logging
from typing import Any, Callable

from .config import Config
from .executor import TaskExecutor
from .models import GENERATION_MODES, Task
from .storage import (
    claim_next_task,
    init_db,
    count_table,
    ensure_default_profile,
    extend_task_lease,
    insert_task,
    list_daily_word_references,
)
from .utils import log_event

logger = logging.getLogger("aperture.queue")

ExecutorFactory = Callable[[Any, Config], Any]


class TaskQueue:
    """Durable task queue over the ``tasks`` table.

    ``connect`` returns a fresh database connection; the queue keeps one for
    claiming and executing. Each keep-alive opens a short-lived connection
    through ``lease_connect`` (``connect`` when not given).
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        config: Config,
        *,
        executor_factory: ExecutorFactory | None = None,
        lease_connect: Callable[[], Any] | None = None,
    ) -> None:
        self._connect = connect
        self._lease_connect = lease_connect or connect
        self.config = config
        self.conn = connect()
        self._executor_factory = executor_factory or TaskExecutor

    def enqueue(
        self,
        task_date: str,
        trigger_source: str = "manual",
        provider_override: str | None = None,
        mode: str = "rss",
        *,
        word_count: int | None = None,
    ) -> list[dict[str, Any]]:
        if mode not in GENERATION_MODES:
            raise ValueError(f"Unknown generation mode: {mode}")
        if mode == "impression":
            return self._enqueue_impression(task_date, trigger_source, provider_override, word_count)

        profiles = ensure_default_profile(self.conn)
        if not list_daily_word_references(self.conn, task_date):
            raise ValueError(f"No daily words found for {task_date}. Please fetch words first.")
        created: list[dict[str, Any]] = []
        for profile in profiles:
            task_id = insert_task(
                self.conn,
                task_date=task_date,
                trigger_source=trigger_source,
                mode="rss",
                profile_id=profile.id,
                llm=provider_override,
            )
            created.append({"id": task_id, "profile_id": profile.id, "profile_name": profile.name})
        self.conn.commit()
        for item in created:
            log_event(
                logger,
                logging.INFO,
                "task_enqueued",
                task_id=item["id"],
                task_date=task_date,
                mode="rss",
                profile=item["profile_name"],
            )
        return created

    def _enqueue_impression(
        self,
        task_date: str,
        trigger_source: str,
        provider_override: str | None,
        word_count: int | None,
    ) -> list[dict[str, Any]]:
        if count_table(self.conn, "words") == 0:
            raise ValueError("No words in database. Please add words first.")
        word_count = word_count or self.config.impression.candidate_words
        task_id = insert_task(
            self.conn,
            task_date=task_date,
            trigger_source=trigger_source,
            mode="impression",
            profile_id=None,
            llm=provider_override,
            params={"word_count": word_count},
        )
        self.conn.commit()
        log_event(
            logger,
            logging.INFO,
            "task_enqueued",
            task_id=task_id,
            task_date=task_date,
            mode="impression",
            word_count=word_count,
        )
        return [{"id": task_id, "profile_id": None, "word_count": word_count}]

    def claim(self) -> Task | None:
        task = claim_next_task(
            self.conn,
            self.config.queue.lease_seconds,
            exclusive=self.config.queue.exclusive,
            max_attempts=self.config.queue.claim_attempts,
        )
        if task is not None:
            log_event(
                logger,
                logging.INFO,
                "task_claimed",
                task_id=task.id,
                version=task.version,
                mode=task.mode,
                resume=(task.context or {}).get("stage"),
            )
        return task

    def process_queue(self) -> int:
        """Claim and execute tasks until nothing is claimable. Returns the count executed."""
        executed = 0
        executor = self._executor_factory(self.conn, self.config)
        while True:
            task = self.claim()
            if task is None:
                break
            executor.execute_task(task, self.keep_alive)
            executed += 1
        if executed:
            log_event(logger, logging.INFO, "queue_drained", executed=executed)
        return executed

    def keep_alive(self, task_id: str) -> bool:
        conn = self._lease_connect()
        try:
            extended = extend_task_lease(conn, task_id, self.config.queue.lease_seconds)
        finally:
            conn.close()
        if not extended:
            log_event(logger, logging.WARNING, "keep_alive_noop", task_id=task_id)
        return extended

    def close(self) -> None:
        self.conn.close()


def build_task_queue(
    config: Config, path: str | None = None, **kwargs: Any
) -> TaskQueue:
    """Queue over the state database; heartbeats reuse the schema and skip migrations."""
    return TaskQueue(
        lambda: init_db(path),
        config,
        lease_connect=lambda: init_db(path, migrate=False),
        **kwargs,
    )
