"""Sentence segmentation and grammatical-role annotation with absolute offsets.

Each level's content is split into sentences, sentences are grouped into
paragraphs, and every paragraph of five or more words is sent to the
provider once. Spans returned by the provider are located inside their own
sentence only, so a phrase repeated elsewhere in the article can never be
mapped to the wrong place.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Iterable, Iterator

from nltk.tokenize.punkt import PunktParameters, PunktSentenceTokenizer

from ..errors import TextIntegrityError, ValidationError
from ..extraction import extract_json
from ..inline_tags import parse_inline_tags, validate_parse_result
from ..llm.prompts import ANALYSIS_INLINE_SYSTEM, ANALYSIS_SPANS_SYSTEM, build_analysis_user
from ..models import (
    AnalysisAnnotation,
    ArticleInput,
    ArticleWithAnalysis,
    SentenceData,
    TokenUsage,
)
from ..utils import log_event

logger = logging.getLogger("aperture.analyzer")

VALID_ROLES = frozenset(
    {"s", "v", "o", "io", "cmp", "rc", "pp", "adv", "app", "pas", "con", "inf", "ger", "ptc"}
)

SENTENCE_STARTERS = frozenset(
    {
        "It", "The", "This", "That", "He", "She", "They", "We", "I",
        "But", "And", "Or", "So", "Then", "If", "When", "As", "However",
        "Meanwhile", "Moreover", "Furthermore", "Therefore", "Thus",
        "In", "On", "At", "For", "With", "By", "From", "To", "A", "An",
    }
)

DEFAULT_ABBREVIATIONS = ("mr", "mrs", "ms", "dr", "prof", "sr", "jr", "st", "vs", "etc")

_LINE_RE = re.compile(r"[^\n]+")
_TRAILING_INITIAL_RE = re.compile(r" [A-Z]\.\s*$")
_SENTENCE_KEY_RE = re.compile(r"^S?(\d+)$")
_INITIAL_BOUNDARY_RE = re.compile(
    r"(?<=\s[A-Z]\.)\s+(?=(?:"
    + "|".join(sorted(SENTENCE_STARTERS, key=len, reverse=True))
    + r")\b)"
)

LevelCallback = Callable[[list[ArticleWithAnalysis]], None]


@dataclass(frozen=True)
class ParagraphGroup:
    index: int
    sentences: list[SentenceData]


@dataclass(frozen=True)
class SpanAnnotation:
    text: str
    role: str


@dataclass
class AnalysisResult:
    articles: list[ArticleWithAnalysis]
    usage: dict[str, TokenUsage] = field(default_factory=dict)


@lru_cache(maxsize=8)
def _tokenizer(abbreviations: tuple[str, ...]) -> PunktSentenceTokenizer:
    params = PunktParameters()
    params.abbrev_types = {item.lower().rstrip(".") for item in abbreviations}
    return PunktSentenceTokenizer(params)


def split_into_sentences(
    content: str, abbreviations: Iterable[str] = DEFAULT_ABBREVIATIONS
) -> list[SentenceData]:
    """Return sentences whose offsets satisfy ``content[start:end] == text``.

    Boundaries never cross a newline. After a capital initial (``" W."``)
    a boundary exists exactly when the next word is a common sentence
    starter.
    """
    tokenizer = _tokenizer(tuple(abbreviations))
    spans: list[list[int]] = []
    for line in _LINE_RE.finditer(content):
        merged: list[list[int]] = []
        pieces = _split_after_initials(content, line.start(), tokenizer.span_tokenize(line.group()))
        for start, end in pieces:
            if merged and _TRAILING_INITIAL_RE.search(content[merged[-1][0] : merged[-1][1]]):
                words = content[start:end].split()
                if not words or words[0] not in SENTENCE_STARTERS:
                    merged[-1][1] = end
                    continue
            merged.append([start, end])
        spans.extend(merged)

    sentences: list[SentenceData] = []
    for start, end in spans:
        while start < end and content[start].isspace():
            start += 1
        while end > start and content[end - 1].isspace():
            end -= 1
        if start == end:
            continue
        sentences.append(
            SentenceData(id=len(sentences), start=start, end=end, text=content[start:end])
        )
    return sentences


def _split_after_initials(
    content: str, offset: int, spans: Iterable[tuple[int, int]]
) -> Iterator[tuple[int, int]]:
    """Shift tokenizer spans to absolute offsets and cut at an initial followed by a starter."""
    for start, end in spans:
        start += offset
        end += offset
        cursor = start
        for match in _INITIAL_BOUNDARY_RE.finditer(content, start, end):
            yield cursor, match.start()
            cursor = match.end()
        yield cursor, end


def group_sentences_by_paragraph(
    content: str, sentences: list[SentenceData]
) -> list[ParagraphGroup]:
    groups: list[ParagraphGroup] = []
    current: list[SentenceData] = []
    for idx, sentence in enumerate(sentences):
        if idx > 0 and current:
            gap = content[sentences[idx - 1].end : sentence.start]
            if "\n" in gap:
                groups.append(ParagraphGroup(index=len(groups), sentences=current))
                current = []
        current.append(sentence)
    if current:
        groups.append(ParagraphGroup(index=len(groups), sentences=current))
    return groups


def build_paragraph_prompt(sentences: list[SentenceData]) -> str:
    return build_analysis_user([f"[S{idx}] {sentence.text}" for idx, sentence in enumerate(sentences)])


def parse_paragraph_response(text: str, sentence_count: int) -> dict[int, list[SpanAnnotation]]:
    parsed = _load_response(text)
    result: dict[int, list[SpanAnnotation]] = {idx: [] for idx in range(sentence_count)}
    for key, value in parsed.items():
        idx = _sentence_index(key, sentence_count)
        if idx is None or not isinstance(value, list):
            continue
        result[idx] = [
            SpanAnnotation(text=item["text"], role=item["role"])
            for item in value
            if isinstance(item, dict)
            and isinstance(item.get("text"), str)
            and isinstance(item.get("role"), str)
            and item["text"]
        ]
    return result


def parse_inline_paragraph_response(
    text: str, sentences: list[SentenceData]
) -> dict[int, list[SpanAnnotation]]:
    """Read ``{"S0": "<S>..</S> <V>..</V>"}`` and reject any altered sentence."""
    parsed = _load_response(text)
    result: dict[int, list[SpanAnnotation]] = {idx: [] for idx in range(len(sentences))}
    for key, value in parsed.items():
        idx = _sentence_index(key, len(sentences))
        if idx is None or not isinstance(value, str):
            continue
        tagged = parse_inline_tags(value)
        check = validate_parse_result(tagged, sentences[idx].text)
        if not check.valid:
            raise TextIntegrityError(f"sentence S{idx}: " + " | ".join(check.errors))
        result[idx] = [
            SpanAnnotation(text=span.extract, role=span.role)
            for span in tagged.structures
            if span.extract
        ]
    return result


def convert_to_global_offsets(
    annotations: Iterable[SpanAnnotation], sentence: SentenceData, content: str
) -> list[AnalysisAnnotation]:
    scope = content[sentence.start : sentence.end]
    converted: list[AnalysisAnnotation] = []
    for annotation in annotations:
        role = annotation.role.lower()
        if role not in VALID_ROLES:
            continue
        # First occurrence inside the sentence wins.
        local = scope.find(annotation.text)
        if local == -1:
            continue
        start = sentence.start + local
        converted.append(
            AnalysisAnnotation(
                start=start, end=start + len(annotation.text), role=role, text=annotation.text
            )
        )
    return converted


def analyze_article(
    provider: Any,
    article: ArticleInput,
    *,
    response_format: str = "spans",
    min_paragraph_words: int = 5,
    abbreviations: Iterable[str] = DEFAULT_ABBREVIATIONS,
    deadline: Any = None,
) -> tuple[ArticleWithAnalysis, TokenUsage | None]:
    if not article.content:
        return _with_analysis(article, [], []), None

    sentences = split_into_sentences(article.content, abbreviations)
    paragraphs = group_sentences_by_paragraph(article.content, sentences)
    system = ANALYSIS_INLINE_SYSTEM if response_format == "inline" else ANALYSIS_SPANS_SYSTEM
    structure: list[AnalysisAnnotation] = []
    usage: TokenUsage | None = None

    for paragraph in paragraphs:
        word_count = sum(len(sentence.text.split()) for sentence in paragraph.sentences)
        if word_count < min_paragraph_words:
            continue
        label = f"analysis_l{article.level}_p{paragraph.index}"
        if deadline is not None:
            deadline.check(label)
        try:
            response = provider.generate(
                system,
                build_paragraph_prompt(paragraph.sentences),
                json_mode=True,
                label=label,
                deadline=deadline,
            )
            if response_format == "inline":
                annotations = parse_inline_paragraph_response(response.text, paragraph.sentences)
            else:
                annotations = parse_paragraph_response(response.text, len(paragraph.sentences))
        except Exception as exc:
            log_event(
                logger,
                logging.ERROR,
                "paragraph_analysis_failed",
                article_level=article.level,
                paragraph=paragraph.index,
                error=str(exc),
            )
            raise
        if response.usage is not None:
            usage = response.usage if usage is None else usage + response.usage
        for idx, sentence in enumerate(paragraph.sentences):
            structure.extend(
                convert_to_global_offsets(annotations.get(idx, []), sentence, article.content)
            )

    structure.sort(key=lambda item: item.start)
    return _with_analysis(article, sentences, structure), usage


def run_sentence_analysis(
    provider: Any,
    articles: list[ArticleInput],
    *,
    completed_levels: Iterable[ArticleWithAnalysis] = (),
    on_level_complete: LevelCallback | None = None,
    response_format: str = "spans",
    min_paragraph_words: int = 5,
    abbreviations: Iterable[str] = DEFAULT_ABBREVIATIONS,
    deadline: Any = None,
) -> AnalysisResult:
    completed = list(completed_levels)
    done = {article.level for article in completed}
    pending = [article for article in articles if article.level not in done]
    if done:
        log_event(logger, logging.INFO, "analysis_resume", completed_levels=sorted(done))

    usage: dict[str, TokenUsage] = {}
    for article in pending:
        analyzed, level_usage = analyze_article(
            provider,
            article,
            response_format=response_format,
            min_paragraph_words=min_paragraph_words,
            abbreviations=abbreviations,
            deadline=deadline,
        )
        completed.append(analyzed)
        if level_usage is not None:
            usage[f"level_{article.level}"] = level_usage
        log_event(
            logger,
            logging.INFO,
            "analysis_level_complete",
            article_level=article.level,
            sentences=len(analyzed.sentences),
            annotations=len(analyzed.structure),
        )
        if on_level_complete is not None:
            on_level_complete(sorted(completed, key=lambda item: item.level))

    completed.sort(key=lambda item: item.level)
    return AnalysisResult(articles=completed, usage=usage)


def _with_analysis(
    article: ArticleInput,
    sentences: list[SentenceData],
    structure: list[AnalysisAnnotation],
) -> ArticleWithAnalysis:
    return ArticleWithAnalysis(
        level=article.level,
        level_name=article.level_name,
        content=article.content,
        title=article.title,
        sentences=sentences,
        structure=structure,
    )


def _load_response(text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(extract_json(text))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"analysis response is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("analysis response is not a JSON object")
    return parsed


def _sentence_index(key: str, sentence_count: int) -> int | None:
    match = _SENTENCE_KEY_RE.match(str(key))
    if not match:
        return None
    idx = int(match.group(1))
    return idx if idx < sentence_count else None
