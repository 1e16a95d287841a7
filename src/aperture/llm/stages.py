from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..config import AnalysisConfig, PipelineConfig
from ..errors import ValidationError
from ..extraction import build_source_urls, ensure_content_paragraphs, extract_json, strip_citations
from ..models import ArticleInput, ArticleWithAnalysis, CandidateWord, NewsItem, TokenUsage, Topic
from ..pipelines.analyzer import AnalysisResult, LevelCallback, run_sentence_analysis
from ..utils import log_event, unique_strings
from .client import Deadline, ProviderClient
from .prompts import CONVERSION_SYSTEM, build_conversion_user, get_strategy
from .schemas import CONVERSION_SCHEMA, validate_payload, word_selection_schema

logger = logging.getLogger("aperture.stages")

LEVEL_NAMES = {1: "Elementary", 2: "Intermediate", 3: "Advanced"}


@dataclass(frozen=True)
class SelectionResult:
    selected_words: list[str]
    news_summary: str
    source_urls: list[str]
    selected_rss_id: int | None = None
    selected_rss_item: NewsItem | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class DraftResult:
    draft_text: str
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class ConversionResult:
    output: dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage | None = None


class GenerationClient:
    """The four provider-backed generation stages on top of one transport."""

    def __init__(
        self,
        provider: ProviderClient,
        pipeline: PipelineConfig,
        analysis: AnalysisConfig,
        *,
        resolve_redirects: bool = True,
    ) -> None:
        self.provider = provider
        self.pipeline = pipeline
        self.analysis = analysis
        self.resolve_redirects = resolve_redirects

    @property
    def provider_name(self) -> str:
        return self.provider.provider

    @property
    def model(self) -> str:
        return self.provider.model

    def run_stage1_search_and_selection(
        self,
        *,
        mode: str,
        candidate_words: list[CandidateWord],
        topic_preference: str,
        topics: list[Topic],
        current_date: str,
        news_items: list[NewsItem],
        recent_titles: list[str],
        deadline: Deadline | None = None,
    ) -> SelectionResult:
        strategy = get_strategy(mode)
        min_words, max_words = self._word_bounds(mode)
        prompt = strategy.stage1.build_user(
            candidate_words=candidate_words,
            topic_preference=topic_preference,
            topics=topics,
            current_date=current_date,
            news_items=news_items,
            recent_titles=recent_titles,
            min_words=min_words,
            max_words=max_words,
        )
        response = self.provider.generate(
            strategy.stage1.system,
            prompt,
            json_mode=True,
            search=mode == "impression" or not news_items,
            label="search_selection",
            deadline=deadline,
        )
        payload = normalize_selection_payload(_parse_json_object(response.text, "search_selection"))
        payload["selected_words"] = _match_candidates(payload["selected_words"], candidate_words)
        validate_payload(word_selection_schema(min_words, max_words), payload, "search_selection")

        rss_id = payload.get("selected_rss_id")
        rss_item = None
        if isinstance(rss_id, int) and 0 <= rss_id < len(news_items):
            rss_item = news_items[rss_id]
            payload["source"] = rss_item.link
        else:
            rss_id = None

        news_summary = str(payload.get("news_summary") or "").strip()
        source_urls = build_source_urls(
            validated=payload,
            news_summary=news_summary,
            response_text=response.text,
            grounding_urls=response.grounding_urls,
            limit=self.pipeline.grounding_url_limit,
            resolve=self.resolve_redirects,
        )[: self.pipeline.source_url_limit]
        log_event(
            logger,
            logging.INFO,
            "words_selected",
            count=len(payload["selected_words"]),
            sources=len(source_urls),
            rss_id=rss_id,
        )
        return SelectionResult(
            selected_words=payload["selected_words"],
            news_summary=news_summary,
            source_urls=source_urls,
            selected_rss_id=rss_id,
            selected_rss_item=rss_item,
            usage=response.usage,
        )

    def run_stage2_draft_generation(
        self,
        *,
        mode: str,
        selected_words: list[str],
        news_summary: str,
        source_urls: list[str],
        topic_preference: str,
        current_date: str,
        target_length: int | None = None,
        deadline: Deadline | None = None,
    ) -> DraftResult:
        strategy = get_strategy(mode)
        prompt = strategy.stage2.build_user(
            selected_words=selected_words,
            news_summary=news_summary,
            source_urls=source_urls,
            topic_preference=topic_preference,
            current_date=current_date,
            target_length=target_length,
        )
        response = self.provider.generate(
            strategy.stage2.system, prompt, label="draft", deadline=deadline
        )
        draft = strip_citations(response.text).strip()
        if not draft:
            raise ValidationError("draft output is empty")
        return DraftResult(draft_text=draft, usage=response.usage)

    def run_stage3_json_conversion(
        self,
        *,
        draft_text: str,
        source_urls: list[str],
        selected_words: list[str],
        deadline: Deadline | None = None,
    ) -> ConversionResult:
        response = self.provider.generate(
            CONVERSION_SYSTEM,
            build_conversion_user(
                draft_text=draft_text, source_urls=source_urls, selected_words=selected_words
            ),
            json_mode=True,
            label="conversion",
            deadline=deadline,
        )
        payload = _parse_json_object(response.text, "conversion")
        validate_payload(CONVERSION_SCHEMA, payload, "conversion")
        return ConversionResult(
            output=normalize_conversion_output(payload, source_urls), usage=response.usage
        )

    def run_stage4_sentence_analysis(
        self,
        *,
        articles: list[ArticleInput],
        completed_levels: Iterable[ArticleWithAnalysis] = (),
        on_level_complete: LevelCallback | None = None,
        deadline: Deadline | None = None,
    ) -> AnalysisResult:
        return run_sentence_analysis(
            self.provider,
            articles,
            completed_levels=completed_levels,
            on_level_complete=on_level_complete,
            response_format=self.analysis.response_format,
            min_paragraph_words=self.analysis.min_paragraph_words,
            abbreviations=self.analysis.abbreviations,
            deadline=deadline,
        )

    def _word_bounds(self, mode: str) -> tuple[int, int]:
        if mode == "impression":
            return self.pipeline.impression_min_words, self.pipeline.impression_max_words
        return self.pipeline.rss_min_words, self.pipeline.rss_max_words


def normalize_selection_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Fold common field aliases and comma-joined word strings into the canonical shape."""
    normalized = dict(payload)
    words = normalized.get("selected_words")
    if words is None:
        words = normalized.pop("selectedWords", None) or normalized.pop("words", None)
    if isinstance(words, str):
        words = re.split(r"[,\n]", words)
    normalized["selected_words"] = unique_strings(words or [])
    if "news_summary" not in normalized and "newsSummary" in normalized:
        normalized["news_summary"] = normalized.pop("newsSummary")
    if "selected_rss_id" not in normalized and "selectedRssId" in normalized:
        normalized["selected_rss_id"] = normalized.pop("selectedRssId")
    rss_id = normalized.get("selected_rss_id")
    if isinstance(rss_id, str):
        normalized["selected_rss_id"] = int(rss_id) if rss_id.strip().isdigit() else None
    if isinstance(normalized.get("sources"), str):
        normalized["sources"] = [normalized["sources"]]
    return normalized


def normalize_conversion_output(payload: dict[str, Any], source_urls: list[str]) -> dict[str, Any]:
    levels = [int(item["level"]) for item in payload["articles"]]
    if sorted(levels) != [1, 2, 3]:
        raise ValidationError(f"conversion output must hold levels 1, 2 and 3, got {levels}")
    output = dict(payload)
    output["articles"] = [
        {
            **item,
            "level": int(item["level"]),
            "level_name": item.get("level_name") or LEVEL_NAMES[int(item["level"])],
            "content": ensure_content_paragraphs(item["content"], int(item["level"])),
        }
        for item in sorted(payload["articles"], key=lambda entry: int(entry["level"]))
    ]
    if not output.get("sources"):
        output["sources"] = list(source_urls)
    return output


def _match_candidates(words: list[str], candidates: list[CandidateWord]) -> list[str]:
    """Keep only words offered as candidates, in the candidates' spelling."""
    if not candidates:
        return words
    lookup = {candidate.word.lower(): candidate.word for candidate in candidates}
    matched = [lookup[word.lower()] for word in words if word.lower() in lookup]
    dropped = len(words) - len(matched)
    if dropped:
        log_event(logger, logging.WARNING, "selection_unknown_words_dropped", count=dropped)
    return unique_strings(matched)


def _parse_json_object(text: str, label: str) -> dict[str, Any]:
    try:
        parsed = json.loads(extract_json(text))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{label} output is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError(f"{label} output is not a JSON object")
    return parsed
