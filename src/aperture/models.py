from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

TASK_STATUSES = ("queued", "running", "succeeded", "failed", "canceled")
GENERATION_MODES = ("rss", "impression")


@dataclass(frozen=True)
class Task:
    id: str
    task_date: str
    type: str
    trigger_source: str
    mode: str
    profile_id: str | None
    llm: str | None
    status: str
    locked_until: str | None
    version: int
    params: dict[str, Any]
    context: dict[str, Any] | None
    error_message: str | None
    error_context: dict[str, Any] | None
    created_at: str
    started_at: str | None
    finished_at: str | None
    published_at: str | None


@dataclass(frozen=True)
class GenerationProfile:
    id: str
    name: str
    topic_preference: str
    concurrency: int
    timeout_ms: int


@dataclass(frozen=True)
class Topic:
    id: str
    label: str
    prompts: str | None


@dataclass(frozen=True)
class CandidateWord:
    word: str
    type: str  # new | review


@dataclass(frozen=True)
class NewsItem:
    title: str
    link: str
    summary: str
    source_name: str
    published_at: str | None


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class SentenceData:
    id: int
    start: int
    end: int
    text: str


@dataclass(frozen=True)
class AnalysisAnnotation:
    start: int
    end: int
    role: str
    text: str


@dataclass
class ArticleInput:
    level: int
    level_name: str
    content: str
    title: str | None = None


@dataclass
class ArticleWithAnalysis:
    level: int
    level_name: str
    content: str
    title: str | None = None
    sentences: list[SentenceData] = field(default_factory=list)
    structure: list[AnalysisAnnotation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArticleWithAnalysis":
        return cls(
            level=int(data["level"]),
            level_name=str(data.get("level_name") or ""),
            content=str(data.get("content") or ""),
            title=data.get("title"),
            sentences=[SentenceData(**item) for item in data.get("sentences") or []],
            structure=[AnalysisAnnotation(**item) for item in data.get("structure") or []],
        )
