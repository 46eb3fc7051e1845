"""
Turns LLM output into AnalysisFields.

Order of attempts:
  1. JSON inside a ```json fence, else any ``` fence, else the raw text.
  2. Strict parse: the first complete object, anything after it ignored,
     with all four fields non-empty.
  3. Repair: close a truncated object and re-parse; accepted when at least
     emotion or themes survived. Missing fields get placeholder text.
  4. The fixed fallback.

Overlong strings are truncated, never rejected. Nothing here raises.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Optional

from diarybot.core import messages

logger = logging.getLogger(__name__)

EMOTION_MAX = 100
THEMES_MAX = 100
PATTERNS_MAX = 100
POSITIVE_POINTS_MAX = 150

_FIELDS = ("emotion", "themes", "patterns", "positive_points")

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```\s*([\s\S]*?)\s*```")
_OPEN_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*")


@dataclass(frozen=True)
class AnalysisFields:
    emotion: str
    themes: str
    patterns: str
    positive_points: str

    @classmethod
    def bounded(cls, emotion: str, themes: str, patterns: str, positive_points: str) -> "AnalysisFields":
        return cls(
            emotion=emotion[:EMOTION_MAX],
            themes=themes[:THEMES_MAX],
            patterns=patterns[:PATTERNS_MAX],
            positive_points=positive_points[:POSITIVE_POINTS_MAX],
        )

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


FALLBACK_FIELDS = AnalysisFields(
    emotion=messages.FALLBACK_EMOTION,
    themes=messages.FALLBACK_THEMES,
    patterns=messages.FALLBACK_PATTERNS,
    positive_points=messages.FALLBACK_POSITIVE_POINTS,
)


# ---------------------------------------------------------------------------
# Extraction helpers
# ---------------------------------------------------------------------------

def _extract_candidate(text: str) -> str:
    match = _JSON_FENCE_RE.search(text) or _ANY_FENCE_RE.search(text)
    candidate = match.group(1) if match else text
    candidate = _OPEN_FENCE_RE.sub("", candidate.strip())
    brace = candidate.find("{")
    if brace > 0:
        candidate = candidate[brace:]
    return candidate.strip()


_DECODER = json.JSONDecoder()


def _load_object(text: str) -> Optional[dict[str, Any]]:
    # Anything after the first complete value is ignored.
    try:
        parsed, _ = _DECODER.raw_decode(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _field(parsed: dict[str, Any], name: str) -> str:
    value = parsed.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _repair(candidate: str) -> str:
    if candidate.endswith("}"):
        return candidate
    last_comma = candidate.rfind(",")
    if last_comma > 0:
        return candidate[:last_comma] + "}"
    return candidate + '"}'


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_analysis(llm_text: Optional[str]) -> AnalysisFields:
    if not llm_text or not llm_text.strip():
        logger.warning("Empty analysis response, using fallback")
        return FALLBACK_FIELDS

    candidate = _extract_candidate(llm_text)

    parsed = _load_object(candidate)
    if parsed is None:
        parsed = _load_object(_repair(candidate))
    if parsed is not None:
        values = [_field(parsed, name) for name in _FIELDS]
        if all(values):
            return AnalysisFields.bounded(*values)
        emotion, themes, _, _ = values
        if emotion or themes:
            logger.info("Analysis response repaired", extra={"missing": [n for n, v in zip(_FIELDS, values) if not v]})
            return AnalysisFields.bounded(*(v or messages.PLACEHOLDER_FIELD for v in values))

    logger.warning("Could not parse analysis response, using fallback", extra={"response_length": len(llm_text)})
    return FALLBACK_FIELDS


def format_analysis_for_user(fields: AnalysisFields, header: Optional[str] = None) -> str:
    lines = []
    if header:
        lines += [header, ""]
    lines += [
        messages.RESULT_TITLE,
        "",
        messages.EMOTION_SECTION,
        fields.emotion,
        "",
        messages.THEMES_SECTION,
        fields.themes,
        "",
        messages.PATTERNS_SECTION,
        fields.patterns,
        "",
        messages.POSITIVE_SECTION,
        fields.positive_points,
        "",
        messages.CLOSING_MESSAGE,
    ]
    return "\n".join(lines)
