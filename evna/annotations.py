"""
Inline annotation parsing.

Messages carry free-form ``key::value`` markers (``ctx::``, ``project::``,
``mode::``, ``connectTo::``, persona names, and whatever else the writer
invents). The parser is permissive: any key is accepted, nothing is
validated, and there is no failure state. Malformed input just yields
fewer annotations.

Grammar, per line:

- A token starts at line start or after whitespace: ``key::`` where key
  is letters, digits, ``_`` or ``-``. Tokens inside ``[...]`` belong to the
  enclosing value (``ctx::... [project::x]``).
- The value region runs to the next token or end of line.
- ``key:: several words`` (space after ``::``) takes the whole region.
- ``key::word`` takes the word plus any directly following structural
  words (``@``, ``-``, ``AM``/``PM``, numbers, ``[...]`` groups), so
  ``project::evna today`` is ``evna`` while
  ``ctx::2025-10-21 @ 08:25 AM - [mode::focus]`` keeps its timestamp.
  A word ending in ``,`` also takes the next word, so
  ``project::float/evna, float/floatctl`` keeps both projects.
"""

import re
from typing import Optional

from .projects import ProjectRegistry
from .types import Annotation, MessageMetadata

_TOKEN_RE = re.compile(r"(?:(?<=\s)|^)([A-Za-z0-9][A-Za-z0-9_-]*)::", re.MULTILINE)
_STRUCTURAL_RE = re.compile(r"^(?:@|-|[0-9].*|(?:AM|PM|am|pm)[.,;]?|\[.*)$")

PERSONA_KEYS = frozenset({"karen", "lf1m", "sysop", "evna", "qtb"})
HIGHLIGHT_KEYS = frozenset({"highlight", "eureka", "gotcha", "insight"})

_PERSONA_RE = re.compile(r"\b(karen|lf1m|sysop|evna|qtb)::", re.IGNORECASE)
_COMMAND_RE = re.compile(r"float\.\w+\([^)]*\)")
_ISO_RE = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})?)")
_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")
_TIME_RE = re.compile(r"@\s*(\d{1,2}:\d{2}(?::\d{2})?\s*(?:AM|PM)?)", re.IGNORECASE)
_BRACKET_RE = "\\[{key}::\\s*([^\\]]+)\\]"


def _word_spans(region: str) -> list[tuple[int, int]]:
    """Whitespace-separated word spans, keeping ``[...]`` groups whole."""
    spans = []
    i, n = 0, len(region)
    while i < n:
        if region[i].isspace():
            i += 1
            continue
        start, depth = i, 0
        while i < n and (depth > 0 or not region[i].isspace()):
            if region[i] == "[":
                depth += 1
            elif region[i] == "]":
                depth -= 1
            i += 1
        spans.append((start, i))
    return spans


def _compact_value(region: str) -> str:
    spans = _word_spans(region)
    end = spans[0][1]
    for start, stop in spans[1:]:
        # "float/evna, float/floatctl": a trailing comma continues the value
        if region[end - 1] != "," and not _STRUCTURAL_RE.match(region[start:stop]):
            break
        end = stop
    return region[:end].strip()


def _parse_line(line: str) -> list[Annotation]:
    starts = [
        m for m in _TOKEN_RE.finditer(line)
        if line.count("[", 0, m.start()) <= line.count("]", 0, m.start())
    ]
    annotations = []
    for i, m in enumerate(starts):
        end = starts[i + 1].start() if i + 1 < len(starts) else len(line)
        region = line[m.end():end]
        if not region.strip():
            continue
        value = region.strip() if region[0].isspace() else _compact_value(region)
        annotations.append(Annotation(key=m.group(1), value=value))
    return annotations


def parse_annotations(content: str) -> list[Annotation]:
    """Extract every ``key::value`` annotation, in order of appearance."""
    annotations: list[Annotation] = []
    for line in content.splitlines():
        annotations.extend(_parse_line(line))
    return annotations


def has_annotations(content: str) -> bool:
    return bool(parse_annotations(content))


def extract_personas(content: str) -> list[str]:
    """Distinct persona invocations (``karen::``, ``sysop::``...), lowercased."""
    seen: list[str] = []
    for m in _PERSONA_RE.finditer(content):
        name = m.group(1).lower()
        if name not in seen:
            seen.append(name)
    return seen


def _parse_ctx(value: str) -> dict[str, str]:
    """Pull date, time and mode out of a ``ctx::`` value."""
    ctx: dict[str, str] = {}
    date = _DATE_RE.search(value)
    if date:
        ctx["date"] = ctx["timestamp"] = date.group(1)
    time = _TIME_RE.search(value)
    if time:
        ctx["time"] = time.group(1).strip()
        if "date" in ctx:
            ctx["timestamp"] = f"{ctx['date']} {ctx['time']}"
    mode = re.search(_BRACKET_RE.format(key="mode"), value)
    if mode:
        ctx["mode"] = mode.group(1).strip()
    return ctx


class AnnotationParser:
    """
    Annotation parser with project normalization for metadata extraction.

    ``parse`` is a pure function of the content. ``extract_metadata`` also
    folds project names to their canonical form when a registry is given.
    """

    def __init__(self, projects: Optional[ProjectRegistry] = None):
        self._projects = projects or ProjectRegistry()

    def parse(self, content: str) -> list[Annotation]:
        return parse_annotations(content)

    def extract_metadata(self, content: str) -> MessageMetadata:
        """Fold a message's annotations into structured metadata."""
        meta = MessageMetadata()
        for annotation in self.parse(content):
            key, value = annotation.key.lower(), annotation.value
            if key == "ctx":
                meta.ctx = _parse_ctx(value)
                nested = re.search(_BRACKET_RE.format(key="project"), value)
                if nested and not meta.project:
                    meta.project = self._projects.normalize(nested.group(1).split(",")[0].strip())
                nested = re.search(_BRACKET_RE.format(key="issue"), value)
                if nested and not meta.issue:
                    meta.issue = nested.group(1).strip()
            elif key == "project":
                # "float/evna, float/floatctl": the first one is primary
                meta.project = self._projects.normalize(value.split(",")[0].strip())
            elif key == "issue":
                meta.issue = value
            elif key == "meeting":
                meta.meeting = value
            elif key in PERSONA_KEYS:
                if key not in meta.personas:
                    meta.personas.append(key)
            elif key == "connectto":
                meta.connections.append(value)
            elif key in HIGHLIGHT_KEYS:
                meta.highlights.append(value)
            else:
                meta.patterns.append(f"{annotation.key}:{value}")

        meta.commands = _COMMAND_RE.findall(content)
        iso = _ISO_RE.search(content)
        if iso:
            meta.extracted_timestamp = iso.group(1)
        return meta
