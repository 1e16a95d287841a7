from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from .config import Config, ProviderSettings, resolve_provider_settings
from .errors import LeaseLostError, PipelineStageError
from .llm.client import Deadline, ProviderClient
from .llm.stages import GenerationClient
from .models import CandidateWord, GenerationProfile, Task, Topic
from .news import NewsFetcher
from .pipelines.generation import STAGES, PipelineCheckpoint, PipelineResult, run_pipeline
from .services.deletion import delete_article_with_cascade
from .services.word_index import index_article_words
from .storage import (
    fail_task,
    get_profile,
    insert_article,
    insert_article_variant,
    insert_vocabulary,
    list_article_ids,
    list_daily_word_references,
    list_profile_topics,
    list_recent_titles,
    list_used_rss_links,
    list_used_words_for_date,
    mark_task_succeeded,
    sample_random_words,
    save_task_checkpoint,
)
from .utils import log_event, slugify, unique_strings, utc_now_iso

logger = logging.getLogger("aperture.executor")


class Heartbeat:
    """Calls ``beat`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, beat: Callable[[], Any], interval: float, *, task_id: str) -> None:
        self._beat = beat
        self._interval = interval
        self._task_id = task_id
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{task_id}", daemon=True
        )

    def __enter__(self) -> "Heartbeat":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=max(1.0, self._interval))

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._beat()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger, logging.WARNING, "keep_alive_failed", task_id=self._task_id, error=str(exc)
                )


class TaskCheckpointSink:
    """Writes checkpoints to ``tasks.context_json`` under the claimed version."""

    def __init__(self, conn: Any, task_id: str, version: int, stage: str | None = None) -> None:
        self.conn = conn
        self.task_id = task_id
        self.version = version
        self.stage = stage

    def save(self, checkpoint: PipelineCheckpoint) -> None:
        if self.stage is not None and STAGES.index(checkpoint.stage) < STAGES.index(self.stage):
            log_event(
                logger,
                logging.WARNING,
                "checkpoint_downgrade_skipped",
                task_id=self.task_id,
                current=self.stage,
                proposed=checkpoint.stage,
            )
            return
        if not save_task_checkpoint(self.conn, self.task_id, self.version, checkpoint.to_dict()):
            raise LeaseLostError(f"task {self.task_id} no longer holds version {self.version}")
        self.stage = checkpoint.stage
        log_event(
            logger,
            logging.INFO,
            "checkpoint_saved",
            task_id=self.task_id,
            stage=checkpoint.stage,
            levels=len(checkpoint.completed_levels),
        )


@dataclass
class TaskContext:
    mode: str
    profile: GenerationProfile | None
    topics: list[Topic]
    candidate_words: list[CandidateWord]
    new_words: list[str] = field(default_factory=list)
    review_words: list[str] = field(default_factory=list)
    recent_titles: list[str] = field(default_factory=list)
    exclude_links: list[str] = field(default_factory=list)

    @property
    def topic_preference(self) -> str:
        if self.mode == "impression":
            return ""
        return ", ".join(topic.label for topic in self.topics)


def create_generation_client(settings: ProviderSettings, config: Config) -> GenerationClient:
    return GenerationClient(ProviderClient(settings), config.pipeline, config.analysis)


class TaskExecutor:
    def __init__(
        self,
        conn: Any,
        config: Config,
        *,
        client_factory: Callable[[ProviderSettings, Config], Any] | None = None,
        news_fetcher: Any = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self._client_factory = client_factory or create_generation_client
        if news_fetcher is None and config.news.enabled:
            news_fetcher = NewsFetcher(conn, config.news)
        self.news_fetcher = news_fetcher

    def execute_task(self, task: Task, keep_alive: Callable[[str], Any]) -> bool:
        """Run one claimed task to a terminal state. Never raises.

        Returns True when the task succeeded.
        """
        error_context: dict[str, Any] = {"step": "resolve_context", "stage": None}
        with Heartbeat(
            lambda: keep_alive(task.id), self.config.queue.heartbeat_seconds, task_id=task.id
        ):
            try:
                self._run(task, error_context)
            except LeaseLostError as exc:
                log_event(logger, logging.WARNING, "task_lease_lost", task_id=task.id, error=str(exc))
                self.conn.rollback()
                return False
            except Exception as exc:  # noqa: BLE001
                self._record_failure(task, exc, error_context)
                return False
        log_event(logger, logging.INFO, "task_succeeded", task_id=task.id)
        return True

    def _run(self, task: Task, error_context: dict[str, Any]) -> None:
        context = self.resolve_context(task)

        error_context["step"] = "resolve_provider"
        settings = resolve_provider_settings(task.llm, self.config)
        error_context["provider"] = settings.provider
        error_context["model"] = settings.model
        client = self._client_factory(settings, self.config)
        log_event(
            logger,
            logging.INFO,
            "task_generation_started",
            task_id=task.id,
            mode=context.mode,
            provider=settings.provider,
            model=settings.model,
            candidates=len(context.candidate_words),
        )

        error_context["step"] = "load_checkpoint"
        checkpoint = PipelineCheckpoint.from_dict(task.context) if task.context else None
        if task.context and checkpoint is None:
            log_event(logger, logging.WARNING, "checkpoint_discarded", task_id=task.id)
        error_context["checkpoint_stage"] = checkpoint.stage if checkpoint else None
        sink = TaskCheckpointSink(
            self.conn, task.id, task.version, checkpoint.stage if checkpoint else None
        )

        error_context["step"] = "pipeline"
        try:
            result = run_pipeline(
                client,
                mode=context.mode,
                candidate_words=context.candidate_words,
                task_date=task.task_date,
                topic_preference=context.topic_preference,
                topics=context.topics,
                recent_titles=context.recent_titles,
                news_fetcher=self.news_fetcher,
                exclude_links=context.exclude_links,
                checkpoint=checkpoint,
                sink=sink,
                deadline=Deadline(self._timeout_seconds(context)),
                target_length=_int_param(task.params, "target_length"),
            )
        except PipelineStageError as exc:
            error_context["stage"] = exc.stage
            raise
        finally:
            error_context["checkpoint_stage"] = sink.stage

        error_context["step"] = "sweep"
        variant = self.config.pipeline.variant
        stale = list_article_ids(self.conn, task.id, client.model, variant)
        for article_id in stale:
            delete_article_with_cascade(self.conn, article_id, commit=False)
        if stale:
            log_event(logger, logging.INFO, "articles_swept", task_id=task.id, count=len(stale))

        error_context["step"] = "commit"
        self.commit_article(task, client, result, context)

    def resolve_context(self, task: Task) -> TaskContext:
        profile = get_profile(self.conn, task.profile_id) if task.profile_id else None
        if task.mode != "impression" and profile is None:
            raise ValueError(f"Profile not found: {task.profile_id}")
        topics = list_profile_topics(self.conn, profile.id) if profile else []
        exclude_links = list_used_rss_links(self.conn)

        if task.mode == "impression":
            limit = _int_param(task.params, "word_count") or self.config.impression.candidate_words
            words = sample_random_words(self.conn, limit)
            if not words:
                raise ValueError("No words available for impression mode")
            return TaskContext(
                mode="impression",
                profile=profile,
                topics=topics,
                candidate_words=[CandidateWord(word=word, type="new") for word in words],
                recent_titles=list_recent_titles(
                    self.conn, self.config.impression.recent_title_limit
                ),
                exclude_links=exclude_links,
            )

        references = list_daily_word_references(self.conn, task.task_date)
        new_words = unique_strings(ref.word for ref in references if ref.type == "new")
        review_words = unique_strings(ref.word for ref in references if ref.type == "review")
        if not new_words and not review_words:
            raise ValueError("Daily words record is empty")
        used = list_used_words_for_date(self.conn, task.task_date)
        candidates = build_candidate_words(new_words, review_words, used)
        if not candidates:
            raise ValueError("All words have been used today")
        return TaskContext(
            mode="rss",
            profile=profile,
            topics=topics,
            candidate_words=candidates,
            new_words=new_words,
            review_words=review_words,
            recent_titles=list_recent_titles(self.conn, self.config.impression.recent_title_limit),
            exclude_links=exclude_links,
        )

    def commit_article(
        self, task: Task, client: Any, result: PipelineResult, context: TaskContext
    ) -> str:
        """Insert the article and its dependents, then flip the task, in one transaction."""
        output = result.output
        title = str(output.get("title") or "Untitled")
        rss_item = result.selected_rss_item or {}
        try:
            article_id = insert_article(
                self.conn,
                task_id=task.id,
                provider=client.provider_name,
                model=client.model,
                variant=self.config.pipeline.variant,
                title=title,
                slug=slugify(title),
                source_url=result.source_urls[0] if result.source_urls else None,
                rss_link=rss_item.get("link"),
                input_words={
                    "selected": result.selected_words,
                    "new": context.new_words,
                    "review": context.review_words,
                },
                output=output,
                usage={key: asdict(value) for key, value in result.usage.items()},
                published_at=utc_now_iso(),
            )
            for article in result.articles:
                insert_article_variant(
                    self.conn,
                    article_id=article_id,
                    level=article.level,
                    level_label=article.level_name,
                    title=article.title or title,
                    content=article.content,
                    sentences=[asdict(sentence) for sentence in article.sentences],
                    structure=[asdict(annotation) for annotation in article.structure],
                )
            for entry in output.get("word_definitions") or []:
                insert_vocabulary(
                    self.conn,
                    article_id=article_id,
                    word=entry["word"],
                    used_form=entry.get("used_form"),
                    phonetic=entry.get("phonetic"),
                    definitions=[
                        (str(item.get("pos") or ""), str(item["definition"]))
                        for item in entry.get("definitions") or []
                    ],
                )
            index_article_words(
                self.conn,
                article_id,
                result.articles,
                [*result.selected_words, *context.new_words, *context.review_words],
            )
            if not mark_task_succeeded(self.conn, task.id, task.version):
                raise LeaseLostError(f"task {task.id} no longer holds version {task.version}")
        except Exception:
            self.conn.rollback()
            raise
        self.conn.commit()
        return article_id

    def _record_failure(self, task: Task, exc: Exception, error_context: dict[str, Any]) -> None:
        try:
            self.conn.rollback()
        except Exception as rollback_exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "rollback_failed", error=str(rollback_exc))
        error_context["error_type"] = type(exc).__name__
        recorded = fail_task(self.conn, task.id, task.version, str(exc), error_context)
        log_event(
            logger,
            logging.ERROR,
            "task_failed",
            task_id=task.id,
            step=error_context.get("step"),
            stage=error_context.get("stage"),
            error=str(exc),
            recorded=recorded,
        )

    def _timeout_seconds(self, context: TaskContext) -> float:
        if context.profile is not None and context.profile.timeout_ms > 0:
            return context.profile.timeout_ms / 1000
        return float(self.config.pipeline.timeout_seconds)


def build_candidate_words(
    new_words: list[str], review_words: list[str], used: set[str]
) -> list[CandidateWord]:
    """New words first, then review words; anything already used today is dropped."""
    used_lower = {word.lower() for word in used}
    candidates: list[CandidateWord] = []
    seen: set[str] = set()
    for word_type, words in (("new", new_words), ("review", review_words)):
        for word in words:
            key = word.lower()
            if key in used_lower or key in seen:
                continue
            seen.add(key)
            candidates.append(CandidateWord(word=word, type=word_type))
    return candidates


def _int_param(params: dict[str, Any], key: str) -> int | None:
    value = params.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value > 0:
        return value
    return None
