from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from ..models import CandidateWord, NewsItem, Topic

BASE_SYSTEM_ROLE = """<role>
You are an ESL content developer fluent in the CEFR scale.
You build leveled reading material in the style of News in Levels.
</role>"""

LEVEL_GUIDELINES = """<guidelines>
  <level value="1" name="Elementary" target="A1-A2">Simple SVO sentences, present tense, 8-14 words per sentence.</level>
  <level value="2" name="Intermediate" target="B1-B2">Past tense allowed, simple subordinate clauses, 14-22 words per sentence.</level>
  <level value="3" name="Advanced" target="C1+">Any tense, advanced structures, 18-30 words per sentence.</level>
  <general>Use every target word. Never bold or otherwise mark the target words. Separate paragraphs with a blank line.</general>
</guidelines>"""

# Stage 1


RSS_STAGE1_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>Vocabulary curator and news researcher.</stage_role>
<constraints>
  <rule>Prefer words of type "new", then "review".</rule>
  <rule>Every selected word must fit naturally into one news story.</rule>
  <rule>Prefer one of the provided news candidates; search the web only when none fits.</rule>
  <rule>Return JSON only. No markdown fences, no field aliases.</rule>
</constraints>
<output_format>
{{
  "selected_words": ["word1", "word2"],
  "news_summary": "Factual summary of the chosen story",
  "source": "https://example.com/story",
  "selected_rss_id": 0,
  "selection_reasoning": "One sentence"
}}
</output_format>"""

IMPRESSION_STAGE1_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>Vocabulary curator for long-form impression articles.</stage_role>
<constraints>
  <rule>Select as many candidate words as can share one coherent story (target 30-50).</rule>
  <rule>Search the web for a real, recent story that can carry those words.</rule>
  <rule>Avoid topics that repeat the recent titles.</rule>
  <rule>Return JSON only. No markdown fences, no field aliases.</rule>
</constraints>
<output_format>
{{
  "selected_words": ["word1", "word2"],
  "news_summary": "Factual summary of the chosen story",
  "source": "https://example.com/story",
  "selection_reasoning": "One sentence"
}}
</output_format>"""


def build_rss_stage1_user(
    *,
    candidate_words: list[CandidateWord],
    topic_preference: str,
    topics: list[Topic],
    current_date: str,
    news_items: list[NewsItem],
    recent_titles: list[str],
    min_words: int,
    max_words: int,
) -> str:
    return f"""<context>
  <date>{current_date}</date>
  <topic>{topic_preference or "general news"}</topic>
{_render_topics(topics)}
</context>

<candidate_words>
{_render_candidates(candidate_words)}
</candidate_words>

<news_candidates>
{_render_news(news_items)}
</news_candidates>

<task>
Select {min_words}-{max_words} words from candidate_words and the news story that best carries them.
Set selected_rss_id to the index of the chosen news candidate, or null if you searched instead.
</task>"""


def build_impression_stage1_user(
    *,
    candidate_words: list[CandidateWord],
    topic_preference: str,
    topics: list[Topic],
    current_date: str,
    news_items: list[NewsItem],
    recent_titles: list[str],
    min_words: int,
    max_words: int,
) -> str:
    titles = "\n".join(f"- {title}" for title in recent_titles) or "- (none)"
    return f"""<context>
  <date>{current_date}</date>
  <topic>{topic_preference or "any"}</topic>
</context>

<candidate_words>
{_render_candidates(candidate_words)}
</candidate_words>

<recent_titles>
{titles}
</recent_titles>

<task>
Select {min_words}-{max_words} words and a real news story that can use as many of them as possible.
</task>"""


# Stage 2


RSS_STAGE2_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>News writer.</stage_role>
<constraints>
  <rule>Write one article at upper-intermediate (B2) difficulty in plain prose.</rule>
  <rule>Stay faithful to the facts of the news summary and sources.</rule>
  <rule>Use every target word at least once. Do not bold them.</rule>
  <rule>About 300-450 words, paragraphs separated by a blank line. No headings, no lists.</rule>
</constraints>"""

IMPRESSION_STAGE2_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>Feature writer for vocabulary-dense impression articles.</stage_role>
<constraints>
  <rule>Write one article at upper-intermediate (B2) difficulty in plain prose.</rule>
  <rule>Use as many target words as possible without forcing them.</rule>
  <rule>Paragraphs separated by a blank line. No headings, no lists.</rule>
</constraints>"""


def build_rss_stage2_user(
    *,
    selected_words: list[str],
    news_summary: str,
    source_urls: list[str],
    topic_preference: str,
    current_date: str,
    target_length: int | None,
) -> str:
    sources = "\n".join(source_urls) or "(none)"
    return f"""<context>
  <date>{current_date}</date>
  <topic>{topic_preference or "general news"}</topic>
  <target_words>{json.dumps(selected_words, ensure_ascii=False)}</target_words>
</context>

<input_data>
  <news_summary>{news_summary}</news_summary>
  <sources>{sources}</sources>
</input_data>

<task>
Write the article.
</task>"""


def build_impression_stage2_user(
    *,
    selected_words: list[str],
    news_summary: str,
    source_urls: list[str],
    topic_preference: str,
    current_date: str,
    target_length: int | None,
) -> str:
    length = f"About {target_length} words." if target_length else "About 800 words."
    return f"""<context>
  <date>{current_date}</date>
  <target_words>{json.dumps(selected_words, ensure_ascii=False)}</target_words>
</context>

<input_data>
  <news_summary>{news_summary}</news_summary>
  <sources>{chr(10).join(source_urls) or "(none)"}</sources>
</input_data>

<task>
Write the article. {length}
</task>"""


# Stage 3

CONVERSION_SCHEMA_EXAMPLE = """{
  "title": "String (Title Case)",
  "topic": "String",
  "sources": ["https://..."],
  "pull_quote": "One striking sentence",
  "summary": "Two sentence summary",
  "articles": [
    { "level": 1, "level_name": "Elementary", "content": "...", "difficulty_desc": "Elementary (A1-A2)" },
    { "level": 2, "level_name": "Intermediate", "content": "...", "difficulty_desc": "Intermediate (B1-B2)" },
    { "level": 3, "level_name": "Advanced", "content": "...", "difficulty_desc": "Advanced (C1+)" }
  ],
  "word_usage_check": { "target_words_count": 5, "used_count": 5, "missing_words": [] },
  "word_definitions": [{ "word": "example", "used_form": "examples", "phonetic": "/ɪɡˈzæmpəl/", "definitions": [{ "pos": "n", "definition": "..." }] }]
}"""

CONVERSION_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>Editor and data formatter.</stage_role>
{LEVEL_GUIDELINES}
<output_schema>
{CONVERSION_SCHEMA_EXAMPLE}
</output_schema>
<constraints>
  <rule>Rewrite the draft at all three levels and return valid JSON matching the schema.</rule>
  <rule>articles[].content is plain text; paragraphs separated by "\\n\\n".</rule>
  <rule>Fill word_definitions with IPA and short English definitions for every target word.</rule>
</constraints>"""


def build_conversion_user(
    *, draft_text: str, source_urls: list[str], selected_words: list[str]
) -> str:
    return f"""<context>
  <target_words>{json.dumps(selected_words, ensure_ascii=False)}</target_words>
  <urls>{json.dumps(source_urls, ensure_ascii=False)}</urls>
</context>

<input_text>
{draft_text}
</input_text>

<task>
Convert input_text into the JSON document.
</task>"""


# Stage 4

ROLE_GLOSSARY = """s=subject, v=verb, o=object, io=indirect object, cmp=complement,
rc=relative clause, pp=prepositional phrase, adv=adverbial, app=appositive,
pas=passive voice, con=connective, inf=infinitive, ger=gerund, ptc=participle"""

ANALYSIS_SPANS_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>Grammar annotator.</stage_role>
<roles>
{ROLE_GLOSSARY}
</roles>
<constraints>
  <rule>Annotate each numbered sentence independently.</rule>
  <rule>"text" must be copied verbatim from the sentence, character for character.</rule>
  <rule>Return JSON only: {{"S0": [{{"text": "The fox", "role": "s"}}], "S1": []}}</rule>
</constraints>"""

ANALYSIS_INLINE_SYSTEM = f"""{BASE_SYSTEM_ROLE}
<stage_role>Grammar annotator.</stage_role>
<roles>
{ROLE_GLOSSARY}
</roles>
<constraints>
  <rule>Return each numbered sentence with role tags inserted, e.g. <S>The fox</S> <V>jumps</V>.</rule>
  <rule>Tag names are the upper-case role codes. Tags may nest.</rule>
  <rule>Never change, add or drop a single character of the sentence text.</rule>
  <rule>Return JSON only: {{"S0": "<S>The fox</S> <V>jumps</V>.", "S1": "..."}}</rule>
</constraints>"""


def build_analysis_user(numbered_sentences: list[str]) -> str:
    body = "\n".join(numbered_sentences)
    return f"""<sentences>
{body}
</sentences>

<task>
Annotate every sentence above.
</task>"""


@dataclass(frozen=True)
class StagePrompt:
    system: str
    build_user: Callable[..., str]


@dataclass(frozen=True)
class PromptStrategy:
    stage1: StagePrompt
    stage2: StagePrompt


STRATEGIES: dict[str, PromptStrategy] = {
    "rss": PromptStrategy(
        stage1=StagePrompt(RSS_STAGE1_SYSTEM, build_rss_stage1_user),
        stage2=StagePrompt(RSS_STAGE2_SYSTEM, build_rss_stage2_user),
    ),
    "impression": PromptStrategy(
        stage1=StagePrompt(IMPRESSION_STAGE1_SYSTEM, build_impression_stage1_user),
        stage2=StagePrompt(IMPRESSION_STAGE2_SYSTEM, build_impression_stage2_user),
    ),
}


def get_strategy(mode: str = "rss") -> PromptStrategy:
    try:
        return STRATEGIES[mode]
    except KeyError as exc:
        raise ValueError(f"Unknown generation mode: {mode}") from exc


def _render_candidates(candidates: list[CandidateWord]) -> str:
    payload: list[dict[str, Any]] = [{"word": item.word, "type": item.type} for item in candidates]
    return json.dumps(payload, ensure_ascii=False)


def _render_topics(topics: list[Topic]) -> str:
    if not topics:
        return "  <topics />"
    lines = []
    for topic in topics:
        hint = f": {topic.prompts}" if topic.prompts else ""
        lines.append(f"    <topic_hint>{topic.label}{hint}</topic_hint>")
    return "  <topics>\n" + "\n".join(lines) + "\n  </topics>"


def _render_news(items: list[NewsItem]) -> str:
    if not items:
        return "(none: search the web)"
    lines = []
    for idx, item in enumerate(items):
        lines.append(
            f"[{idx}] {item.title} | {item.source_name} | {item.published_at or 'unknown'}\n"
            f"    {item.link}\n"
            f"    {item.summary[:400]}"
        )
    return "\n".join(lines)
