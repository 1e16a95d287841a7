"""Resumable four-stage article generation.

``run_pipeline`` keeps no state of its own: everything it needs to resume
arrives in ``checkpoint`` and everything worth keeping leaves through the
``CheckpointSink`` after each stage. ``stage`` in a checkpoint is the last
stage that fully completed.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Iterator, Protocol

from ..errors import LeaseLostError, PipelineStageError
from ..models import ArticleInput, ArticleWithAnalysis, CandidateWord, NewsItem, TokenUsage, Topic
from ..utils import log_event

logger = logging.getLogger("aperture.pipeline")

STAGES = ("search_selection", "draft", "conversion", "grammar_analysis")


@dataclass
class PipelineCheckpoint:
    stage: str
    selected_words: list[str] = field(default_factory=list)
    news_summary: str = ""
    source_urls: list[str] = field(default_factory=list)
    selected_rss_id: int | None = None
    selected_rss_item: dict[str, Any] | None = None
    draft_text: str | None = None
    output: dict[str, Any] | None = None
    completed_levels: list[ArticleWithAnalysis] = field(default_factory=list)
    usage: dict[str, TokenUsage] = field(default_factory=dict)

    def reached(self, stage: str) -> bool:
        return STAGES.index(self.stage) >= STAGES.index(stage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "selected_words": list(self.selected_words),
            "news_summary": self.news_summary,
            "source_urls": list(self.source_urls),
            "selected_rss_id": self.selected_rss_id,
            "selected_rss_item": self.selected_rss_item,
            "draft_text": self.draft_text,
            "output": self.output,
            "completed_levels": [asdict(level) for level in self.completed_levels],
            "usage": {key: asdict(value) for key, value in self.usage.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PipelineCheckpoint | None":
        """Parse a stored checkpoint; anything unusable means start fresh."""
        if not isinstance(data, dict) or data.get("stage") not in STAGES:
            return None
        try:
            return cls(
                stage=data["stage"],
                selected_words=[str(word) for word in data.get("selected_words") or []],
                news_summary=str(data.get("news_summary") or ""),
                source_urls=[str(url) for url in data.get("source_urls") or []],
                selected_rss_id=data.get("selected_rss_id"),
                selected_rss_item=data.get("selected_rss_item"),
                draft_text=data.get("draft_text"),
                output=data.get("output"),
                completed_levels=[
                    ArticleWithAnalysis.from_dict(item)
                    for item in data.get("completed_levels") or []
                ],
                usage={
                    key: TokenUsage(**value)
                    for key, value in (data.get("usage") or {}).items()
                    if isinstance(value, dict)
                },
            )
        except (KeyError, TypeError, ValueError) as exc:
            log_event(logger, logging.WARNING, "checkpoint_invalid", error=str(exc))
            return None


class CheckpointSink(Protocol):
    def save(self, checkpoint: PipelineCheckpoint) -> None: ...


class MemoryCheckpointSink:
    def __init__(self) -> None:
        self.saved: list[dict[str, Any]] = []

    def save(self, checkpoint: PipelineCheckpoint) -> None:
        self.saved.append(checkpoint.to_dict())

    @property
    def stages(self) -> list[str]:
        return [item["stage"] for item in self.saved]


@dataclass
class PipelineResult:
    output: dict[str, Any]
    articles: list[ArticleWithAnalysis]
    selected_words: list[str]
    news_summary: str
    source_urls: list[str]
    selected_rss_item: dict[str, Any] | None
    usage: dict[str, TokenUsage]


def run_pipeline(
    client: Any,
    *,
    mode: str,
    candidate_words: list[CandidateWord],
    task_date: str,
    topic_preference: str = "",
    topics: Iterable[Topic] = (),
    recent_titles: Iterable[str] = (),
    news_fetcher: Any = None,
    exclude_links: Iterable[str] = (),
    checkpoint: PipelineCheckpoint | None = None,
    sink: CheckpointSink | None = None,
    deadline: Any = None,
    target_length: int | None = None,
) -> PipelineResult:
    topics = list(topics)
    state = checkpoint
    if state is not None:
        log_event(logger, logging.INFO, "pipeline_resume", stage=state.stage)

    def persist(next_state: PipelineCheckpoint) -> None:
        if sink is not None:
            sink.save(next_state)

    if state is None or not state.reached("search_selection"):
        with _stage("search_selection", deadline):
            news_items: list[NewsItem] = []
            if mode == "rss" and news_fetcher is not None:
                news_items = _fetch_news(news_fetcher, topics, task_date, exclude_links)
            selection = client.run_stage1_search_and_selection(
                mode=mode,
                candidate_words=candidate_words,
                topic_preference=topic_preference,
                topics=topics,
                current_date=task_date,
                news_items=news_items,
                recent_titles=list(recent_titles),
                deadline=deadline,
            )
            state = PipelineCheckpoint(
                stage="search_selection",
                selected_words=list(selection.selected_words),
                news_summary=selection.news_summary,
                source_urls=list(selection.source_urls),
                selected_rss_id=selection.selected_rss_id,
                selected_rss_item=(
                    asdict(selection.selected_rss_item) if selection.selected_rss_item else None
                ),
                usage=_with_usage({}, "search_selection", selection.usage),
            )
            persist(state)

    if not state.reached("draft"):
        with _stage("draft", deadline):
            draft = client.run_stage2_draft_generation(
                mode=mode,
                selected_words=state.selected_words,
                news_summary=state.news_summary,
                source_urls=state.source_urls,
                topic_preference=topic_preference,
                current_date=task_date,
                target_length=target_length,
                deadline=deadline,
            )
            state.stage = "draft"
            state.draft_text = draft.draft_text
            state.usage = _with_usage(state.usage, "draft", draft.usage)
            persist(state)

    if not state.reached("conversion") or not state.output:
        with _stage("conversion", deadline):
            conversion = client.run_stage3_json_conversion(
                draft_text=state.draft_text or "",
                source_urls=state.source_urls,
                selected_words=state.selected_words,
                deadline=deadline,
            )
            if not state.reached("conversion"):
                state.stage = "conversion"
            state.output = conversion.output
            state.completed_levels = []
            state.usage = _with_usage(state.usage, "conversion", conversion.usage)
            persist(state)

    articles = [
        ArticleInput(
            level=int(item["level"]),
            level_name=str(item.get("level_name") or ""),
            content=str(item.get("content") or ""),
            title=item.get("title") or state.output.get("title"),
        )
        for item in state.output.get("articles") or []
    ]

    def on_level_complete(completed: list[ArticleWithAnalysis]) -> None:
        state.completed_levels = list(completed)
        persist(state)
        log_event(
            logger,
            logging.INFO,
            "checkpoint_saved",
            stage="grammar_analysis",
            levels=",".join(str(level.level) for level in completed),
        )

    with _stage("grammar_analysis", deadline):
        analysis = client.run_stage4_sentence_analysis(
            articles=articles,
            completed_levels=state.completed_levels,
            on_level_complete=on_level_complete,
            deadline=deadline,
        )
        state.completed_levels = list(analysis.articles)
        for key, value in analysis.usage.items():
            state.usage = _with_usage(state.usage, key, value)
        if state.stage != "grammar_analysis":
            state.stage = "grammar_analysis"
            persist(state)

    return PipelineResult(
        output=_merge_analysis(state.output, state.completed_levels),
        articles=state.completed_levels,
        selected_words=state.selected_words,
        news_summary=state.news_summary,
        source_urls=state.source_urls,
        selected_rss_item=state.selected_rss_item,
        usage=dict(state.usage),
    )


@contextmanager
def _stage(name: str, deadline: Any) -> Iterator[None]:
    log_event(logger, logging.INFO, "stage_started", stage=name)
    try:
        if deadline is not None:
            deadline.check(name)
        yield
    except (PipelineStageError, LeaseLostError):
        raise
    except Exception as exc:
        log_event(logger, logging.ERROR, "stage_failed", stage=name, error=str(exc))
        raise PipelineStageError(name, str(exc)) from exc
    log_event(logger, logging.INFO, "stage_completed", stage=name)


def _fetch_news(
    news_fetcher: Any, topics: list[Topic], task_date: str, exclude_links: Iterable[str]
) -> list[NewsItem]:
    try:
        return news_fetcher.fetch_aggregate(
            [topic.id for topic in topics], task_date, exclude_links=list(exclude_links)
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "news_fetch_failed", error=str(exc))
        return []


def _with_usage(
    usage: dict[str, TokenUsage], key: str, value: TokenUsage | None
) -> dict[str, TokenUsage]:
    updated = dict(usage)
    if value is not None:
        updated[key] = value
    return updated


def _merge_analysis(
    output: dict[str, Any], analyzed: list[ArticleWithAnalysis]
) -> dict[str, Any]:
    by_level = {article.level: article for article in analyzed}
    merged = dict(output)
    merged["articles"] = []
    for item in output.get("articles") or []:
        entry = dict(item)
        article = by_level.get(int(item["level"]))
        if article is not None:
            entry["sentences"] = [asdict(sentence) for sentence in article.sentences]
            entry["structure"] = [asdict(annotation) for annotation in article.structure]
        merged["articles"].append(entry)
    return merged
