"""Decoding of search-specification components from raw model text.

Two strategies are tried in order:

1. structured: the text (minus fences and <think> blocks) decodes as a JSON
   object carrying the known field names;
2. labeled lines: a line-oriented state machine reads ``field: value`` lines,
   the triple-quoted interface signature and the trailing test-sequence block.

The parser never invents a field. Anything it cannot find stays ``None`` and is
rejected later by the synthesizer's admission gate.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from lcr.executor import strip_thinking
from lcr.types import SpecDraft

logger = logging.getLogger(__name__)


_FENCE_LINE_RE = re.compile(r"^[ \t]*```[\w+-]*[ \t]*$", re.MULTILINE)
_LABEL_RE = re.compile(
    r"^(?:[-*]\s+|\d+[.)]\s+)?(?P<label>[A-Za-z_][A-Za-z0-9_]*)\s*:(?P<value>.*)$"
)
_TRIPLE = '"""'

# Accepted spellings (lower-cased) for each field.
_FIELD_ALIASES: dict[str, str] = {
    "interfacespec": "interface_signature",
    "interfacesignature": "interface_signature",
    "studyname": "study_name",
    "abstractionname": "abstraction_name",
    "abstractionvariablename": "abstraction_variable_name",
    "testsequences": "test_sequences",
    "tests": "test_sequences",
    "totalrows": "row_budget",
    "rowbudget": "row_budget",
    "noofadapters": "adapter_budget",
    "adapterbudget": "adapter_budget",
}

_STRING_FIELDS = (
    "interface_signature",
    "study_name",
    "abstraction_name",
    "abstraction_variable_name",
)
_INT_FIELDS = ("row_budget", "adapter_budget")


def strip_markers(text: str) -> str:
    """Drop <think> blocks and code-fence marker lines.

    Executor output is already free of <think> blocks; the parser strips them
    again so it also accepts raw transcripts.
    """
    if not text:
        return ""
    cleaned = strip_thinking(text)
    cleaned = _FENCE_LINE_RE.sub("", cleaned)
    return cleaned.strip()


def _extract_first_json_object(text: str) -> str | None:
    """Extract the first balanced top-level {...} region, respecting strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
                continue
            if ch == "\\":
                esc = True
                continue
            if ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
            continue
        if ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None


def _try_parse_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    # Lenient cleanup: strip comments and trailing commas.
    cleaned = re.sub(r"^\s*//.*?$", "", text, flags=re.MULTILINE)
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
    try:
        return json.loads(cleaned)
    except ValueError:
        return None


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _sequence_entry(name: Any, body: Any) -> str:
    if isinstance(body, str):
        return f"'{name}': {body}"
    return f"'{name}': {json.dumps(body)}"


def _coerce_test_sequences(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [ln.strip() for ln in value.splitlines() if ln.strip()]
    if isinstance(value, dict):
        return [_sequence_entry(k, v) for k, v in value.items()]
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if isinstance(item, str):
                out.append(item)
            elif isinstance(item, dict):
                out.extend(_sequence_entry(k, v) for k, v in item.items())
            elif item is not None:
                out.append(json.dumps(item))
        return out
    return None


def decode_structured(text: str) -> SpecDraft | None:
    """Read the fields from a JSON object, or return None if there is none."""
    cleaned = strip_markers(text)
    data = _try_parse_json(cleaned)
    if not isinstance(data, dict):
        blob = _extract_first_json_object(cleaned)
        data = _try_parse_json(blob) if blob else None
    if not isinstance(data, dict):
        return None

    fields: dict[str, Any] = {}
    for key, value in data.items():
        name = _FIELD_ALIASES.get(str(key).lower())
        if name is None or name in fields:
            continue
        fields[name] = value

    # A JSON object that carries none of our fields is not a specification.
    if not fields:
        return None

    draft = SpecDraft()
    for name in _STRING_FIELDS:
        value = fields.get(name)
        if value is None:
            continue
        setattr(draft, name, value if isinstance(value, str) else str(value))
    for name in _INT_FIELDS:
        setattr(draft, name, _coerce_int(fields.get(name)))
    draft.test_sequences = _coerce_test_sequences(fields.get("test_sequences"))
    return draft


def _unquote(value: str) -> str:
    v = value.strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in "\"'`":
        v = v[1:-1].strip()
    return v


class LabeledLineParser:
    """State machine over ``label: value`` lines.

    A label line is an unindented ``identifier: value`` line; list markers and
    markdown bold around the label are tolerated. The test-sequence block runs
    until the next label line of any kind, known field or not, or the end of
    the text.
    """

    def __init__(self, text: str):
        self.lines = strip_markers(text).splitlines()

    @staticmethod
    def _label_match(line: str) -> re.Match[str] | None:
        if not line or line[0] in " \t":
            return None
        return _LABEL_RE.match(line.replace("**", ""))

    @staticmethod
    def is_label_line(line: str) -> bool:
        return LabeledLineParser._label_match(line) is not None

    @staticmethod
    def match_label(line: str) -> tuple[str, str] | None:
        """Return (field, value) when ``line`` labels a known field."""
        m = LabeledLineParser._label_match(line)
        if not m:
            return None
        field = _FIELD_ALIASES.get(m.group("label").lower())
        if field is None:
            return None
        return field, m.group("value").strip()

    def parse(self) -> SpecDraft:
        draft = SpecDraft()
        i = 0
        while i < len(self.lines):
            hit = self.match_label(self.lines[i])
            if hit is None:
                i += 1
                continue

            field, value = hit
            if field == "interface_signature":
                signature, i = self._read_signature(value, i)
                if draft.interface_signature is None and signature:
                    draft.interface_signature = signature
            elif field == "test_sequences":
                block, i = self._read_block(value, i)
                if draft.test_sequences is None:
                    draft.test_sequences = block
            elif field in _INT_FIELDS:
                if getattr(draft, field) is None:
                    setattr(draft, field, _coerce_int(_unquote(value)))
                i += 1
            else:
                text = _unquote(value)
                if getattr(draft, field) is None and text:
                    setattr(draft, field, text)
                i += 1
        return draft

    def _read_signature(self, value: str, i: int) -> tuple[str | None, int]:
        """Read the text between triple quotes, which may span several lines."""
        start = value.find(_TRIPLE)
        if start < 0:
            return (_unquote(value) or None), i + 1

        rest = value[start + len(_TRIPLE) :]
        end = rest.find(_TRIPLE)
        if end >= 0:
            return (rest[:end].strip() or None), i + 1

        parts = [rest]
        j = i + 1
        while j < len(self.lines):
            line = self.lines[j]
            end = line.find(_TRIPLE)
            if end >= 0:
                parts.append(line[:end])
                return ("\n".join(parts).strip() or None), j + 1
            parts.append(line)
            j += 1

        # Unterminated delimiter: nothing trustworthy to return.
        return None, i + 1

    def _read_block(self, value: str, i: int) -> tuple[list[str], int]:
        block: list[str] = []
        if value:
            block.append(value)
        j = i + 1
        while j < len(self.lines):
            if self.is_label_line(self.lines[j]):
                break
            block.append(self.lines[j])
            j += 1
        return [ln.strip() for ln in block if ln.strip()], j


def parse_response(raw_text: str) -> SpecDraft:
    """Decode a specification draft from raw model output."""
    draft = decode_structured(raw_text or "")
    if draft is not None:
        logger.debug("parse: structured decode succeeded")
        return draft
    logger.debug("parse: no structured object; using labeled-line fallback")
    return LabeledLineParser(raw_text or "").parse()


__all__ = ["LabeledLineParser", "decode_structured", "parse_response", "strip_markers"]
