"""Placeholder extraction and template complexity classification.

Recognised markers::

    {{ field name }}   [field name]   $field_name$   %field_name%

Curly and square markers may contain spaces; dollar and percent markers may
not, so prices and percentages in prose are not mistaken for fields. Names
must start with a letter or underscore and may contain dots
(``{{user.name}}``). Anything else is left alone.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Set

_NAME = r"[A-Za-z_][A-Za-z0-9_. \t]*?"
_WORD = r"[A-Za-z_][A-Za-z0-9_.]*"

_MARKER = re.compile(
    r"\{\{[ \t]*(?P<curly>" + _NAME + r")[ \t]*\}\}"
    r"|\[[ \t]*(?P<square>" + _NAME + r")[ \t]*\]"
    r"|\$(?P<dollar>" + _WORD + r")\$"
    r"|%(?P<percent>" + _WORD + r")%"
)

# Checked in order; the first match wins.
_TYPE_HINTS = (
    ("date", re.compile(r"date|time|created|updated|birth|hire|start|end")),
    ("number", re.compile(r"count|amount|quantity|price|cost|rate|percentage|age|year|month|day")),
    ("boolean", re.compile(r"^(is|has|can|should|will)[ _.]|active|enabled|visible|required")),
    ("email", re.compile(r"mail")),
    ("phone", re.compile(r"phone|mobile|cell")),
    ("url", re.compile(r"url|website|link|href")),
)


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


@dataclass
class Placeholder:
    name: str
    syntax: str
    occurrences: int = 1
    field_type: str = "text"


@dataclass
class TemplateAnalysis:
    """What the orchestrator needs to know about a template."""
    placeholders: List[Placeholder]
    complexity: Complexity
    word_count: int
    fields: List[str] = field(default_factory=list)

    @property
    def placeholder_count(self) -> int:
        return len(self.placeholders)

    @property
    def field_types(self) -> Dict[str, str]:
        return {p.name: p.field_type for p in self.placeholders}


def normalize_field_name(name: str) -> str:
    """Collapse whitespace runs; used for display names."""
    return " ".join(name.split())


def field_key(name: str) -> str:
    """Case- and whitespace-insensitive identity of a field name."""
    return normalize_field_name(name).casefold()


def infer_field_type(name: str) -> str:
    """Guess a field's kind from its name: date, number, boolean, email, phone, url or text."""
    key = field_key(name)
    for kind, pattern in _TYPE_HINTS:
        if pattern.search(key):
            return kind
    return "text"


def find_placeholders(template_text: str) -> List[Placeholder]:
    """Return distinct placeholders in order of first appearance."""
    found: Dict[str, Placeholder] = {}
    for match in _MARKER.finditer(template_text or ""):
        raw = next(g for g in match.groups() if g is not None)
        name = normalize_field_name(raw)
        if not name:
            continue
        key = name.casefold()
        if key in found:
            found[key].occurrences += 1
        else:
            found[key] = Placeholder(
                name=name, syntax=match.group(0), field_type=infer_field_type(name)
            )
    return list(found.values())


def extract_placeholders(template_text: str) -> Set[str]:
    """Set of field names the template requires. Never raises."""
    return {p.name for p in find_placeholders(template_text)}


def classify_complexity(placeholder_count: int) -> Complexity:
    score = placeholder_count * 2
    if score < 10:
        return Complexity.SIMPLE
    if score < 25:
        return Complexity.MODERATE
    if score < 50:
        return Complexity.COMPLEX
    return Complexity.VERY_COMPLEX


def analyze_template(template_text: str) -> TemplateAnalysis:
    placeholders = find_placeholders(template_text)
    return TemplateAnalysis(
        placeholders=placeholders,
        complexity=classify_complexity(len(placeholders)),
        word_count=len((template_text or "").split()),
        fields=[p.name for p in placeholders],
    )


def substitute(template_text: str, values: Dict[str, object]) -> str:
    """Replace every recognised marker with its row value.

    Markers without a value are left untouched. ``None`` renders as an
    empty string.
    """
    lookup = {field_key(k): v for k, v in values.items()}

    def _replace(match: "re.Match[str]") -> str:
        raw = next(g for g in match.groups() if g is not None)
        key = field_key(raw)
        if key not in lookup:
            return match.group(0)
        value = lookup[key]
        return "" if value is None else str(value)

    return _MARKER.sub(_replace, template_text or "")
