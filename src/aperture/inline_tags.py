"""Parser for role-tagged sentences such as ``<S>The fox</S> <V>jumps</V>.``

Tags may nest. Offsets in the result point into the tag-free plain text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

TAG_ROLES = ("S", "V", "O", "IO", "CMP", "RC", "PP", "ADV", "APP", "PAS", "CON", "INF", "GER", "PTC")

_ROLE_ALTERNATION = "|".join(sorted(TAG_ROLES, key=len, reverse=True))
TAG_PATTERN = re.compile(rf"<({_ROLE_ALTERNATION})>([\s\S]*?)</\1>", re.IGNORECASE)
_ANY_TAG_RE = re.compile(rf"</?(?:{_ROLE_ALTERNATION})>", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_SNIPPET_RADIUS = 20


@dataclass(frozen=True)
class TaggedSpan:
    start: int
    end: int
    role: str
    extract: str


@dataclass(frozen=True)
class ParseResult:
    plain_text: str
    structures: list[TaggedSpan]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    mismatch_index: int | None = None


def parse_inline_tags(tagged_text: str) -> ParseResult:
    structures: list[TaggedSpan] = []

    def process(text: str, base_offset: int) -> str:
        result = ""
        last_index = 0
        for match in TAG_PATTERN.finditer(text):
            result += text[last_index : match.start()]
            start = base_offset + len(result)
            inner = process(match.group(2), start)
            result += inner
            structures.append(
                TaggedSpan(
                    start=start,
                    end=base_offset + len(result),
                    role=match.group(1).lower(),
                    extract=inner,
                )
            )
            last_index = match.end()
        return result + text[last_index:]

    plain_text = process(tagged_text, 0)
    structures.sort(key=lambda span: span.start)
    return ParseResult(plain_text=plain_text, structures=structures)


def normalize_text(text: str) -> str:
    """Drop every known tag (opened or closed) and all whitespace."""
    return _WHITESPACE_RE.sub("", _ANY_TAG_RE.sub("", text))


def validate_parse_result(result: ParseResult, original_text: str) -> ValidationResult:
    errors: list[str] = []
    for span in result.structures:
        extracted = result.plain_text[span.start : span.end]
        if extracted != span.extract:
            errors.append(
                f'Offset mismatch for {span.role}: expected "{span.extract}", got "{extracted}"'
            )

    mismatch_index = None
    plain = normalize_text(result.plain_text)
    original = normalize_text(original_text)
    if plain != original:
        idx = 0
        while idx < len(plain) and idx < len(original) and plain[idx] == original[idx]:
            idx += 1
        mismatch_index = idx
        lo = max(0, idx - _SNIPPET_RADIUS)
        errors.append("Text integrity violation: annotated text differs from the original.")
        errors.append(f"  At index ~{idx}")
        errors.append(f'  Original: "...{original[lo:idx + _SNIPPET_RADIUS]}..."')
        errors.append(f'  Annotated: "...{plain[lo:idx + _SNIPPET_RADIUS]}..."')

    return ValidationResult(valid=not errors, errors=errors, mismatch_index=mismatch_index)
