from __future__ import annotations

from typing import Any

import jsonschema

from ..errors import ValidationError


def word_selection_schema(min_words: int, max_words: int) -> dict[str, Any]:
    return {
        "type": "object",
        "required": ["selected_words"],
        "properties": {
            "selected_words": {
                "type": "array",
                "items": {"type": "string", "minLength": 1},
                "minItems": min_words,
                "maxItems": max_words,
            },
            "news_summary": {"type": "string"},
            "source": {"type": ["string", "null"]},
            "sources": {"type": "array", "items": {"type": "string"}},
            "selected_rss_id": {"type": ["integer", "null"]},
            "selection_reasoning": {"type": "string"},
        },
    }


CONVERSION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "articles"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "topic": {"type": "string"},
        "sources": {"type": "array", "items": {"type": "string"}},
        "pull_quote": {"type": "string"},
        "summary": {"type": "string"},
        "articles": {
            "type": "array",
            "minItems": 3,
            "maxItems": 3,
            "items": {
                "type": "object",
                "required": ["level", "content"],
                "properties": {
                    "level": {"type": "integer", "enum": [1, 2, 3]},
                    "level_name": {"type": "string"},
                    "title": {"type": "string"},
                    "content": {"type": "string", "minLength": 1},
                    "difficulty_desc": {"type": "string"},
                },
            },
        },
        "word_usage_check": {"type": "object"},
        "word_definitions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["word"],
                "properties": {
                    "word": {"type": "string"},
                    "used_form": {"type": ["string", "null"]},
                    "phonetic": {"type": ["string", "null"]},
                    "definitions": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["definition"],
                            "properties": {
                                "pos": {"type": "string"},
                                "definition": {"type": "string"},
                            },
                        },
                    },
                },
            },
        },
    },
}


def validate_payload(schema: dict[str, Any], payload: Any, label: str) -> None:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        path = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ValidationError(f"{label} output invalid at {path}: {exc.message}") from exc
