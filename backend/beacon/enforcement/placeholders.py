from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import secrets

from beacon.db import Store
from beacon.enforcement.models import (
    BLOCKING_PLACEHOLDER_TYPES,
    PLACEHOLDER_TYPES,
    Placeholder,
    PlaceholderSummary,
    PlaceholderType,
    Span,
    stable_id,
)


logger = logging.getLogger("beacon.enforcement.placeholders")

MARKER_PREFIX = "[[PLACEHOLDER:"
MARKER_SUFFIX = "]]"
MARKER_ID_PATTERN = re.compile(r"[a-z0-9_]+")

SOURCE_HINTS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("budget", "financial", "revenue", "expense"), ("AUDITED_FINANCIALS", "FORM_990")),
    (("outcome", "impact", "result"), ("IMPACT_REPORT", "EVALUATION_REPORT")),
    (("staff", "team"), ("STAFF_BIOS",)),
    (("program", "service"), ("PROGRAM_DESCRIPTION",)),
    (("organization", "history", "mission"), ("ORG_OVERVIEW", "ANNUAL_REPORT")),
)


@dataclass(frozen=True)
class DetectedPlaceholder:
    type: PlaceholderType
    description: str
    marker_id: str
    start: int
    end: int

    @property
    def blocking(self) -> bool:
        return self.type in BLOCKING_PLACEHOLDER_TYPES


def _read_marker(text: str, start: int) -> tuple[DetectedPlaceholder | None, int]:
    """Lex one candidate marker at ``start``.

    Returns the placeholder (or None when malformed) and the offset where
    scanning resumes.
    """
    body_start = start + len(MARKER_PREFIX)
    close = text.find(MARKER_SUFFIX, body_start)
    if close < 0:
        # Nothing after this point can terminate a marker.
        return None, len(text)

    nested = text.find(MARKER_PREFIX, body_start, close)
    if nested >= 0:
        return None, nested

    body = text[body_start:close]
    type_name, separator, rest = body.partition(":")
    if not separator or type_name not in PLACEHOLDER_TYPES:
        return None, body_start

    description, separator, marker_id = rest.rpartition(":")
    if not separator or not description.strip() or not MARKER_ID_PATTERN.fullmatch(marker_id):
        return None, body_start

    end = close + len(MARKER_SUFFIX)
    placeholder = DetectedPlaceholder(
        type=type_name,  # type: ignore[arg-type]
        description=description,
        marker_id=marker_id,
        start=start,
        end=end,
    )
    return placeholder, end


def detect_placeholders(text: str) -> list[DetectedPlaceholder]:
    found: list[DetectedPlaceholder] = []
    if not text:
        return found

    cursor = 0
    while cursor < len(text):
        start = text.find(MARKER_PREFIX, cursor)
        if start < 0:
            break
        placeholder, cursor = _read_marker(text, start)
        if placeholder is not None:
            found.append(placeholder)
    return found


def has_placeholders(text: str) -> bool:
    return bool(detect_placeholders(text))


def count_blocking_placeholders(text: str) -> int:
    return sum(1 for placeholder in detect_placeholders(text) if placeholder.blocking)


def mask_placeholders(text: str) -> str:
    """Blank out every marker with spaces so offsets into ``text`` stay valid."""
    masked = text
    for placeholder in reversed(detect_placeholders(text)):
        masked = masked[: placeholder.start] + " " * (placeholder.end - placeholder.start) + masked[placeholder.end :]
    return masked


def create_placeholder(placeholder_type: str, description: str, placeholder_id: str | None = None) -> str:
    if placeholder_type not in PLACEHOLDER_TYPES:
        raise ValueError(f"Unknown placeholder type: {placeholder_type}")
    if not description or not description.strip():
        raise ValueError("Placeholder description must not be empty.")
    if MARKER_SUFFIX in description or MARKER_PREFIX in description:
        raise ValueError("Placeholder description must not contain marker delimiters.")

    if placeholder_id is None:
        placeholder_id = secrets.token_hex(6)
    elif not MARKER_ID_PATTERN.fullmatch(placeholder_id):
        raise ValueError("Placeholder id must match [a-z0-9_]+.")

    marker = f"{MARKER_PREFIX}{placeholder_type}:{description}:{placeholder_id}{MARKER_SUFFIX}"
    parsed = detect_placeholders(marker)
    if (
        len(parsed) != 1
        or parsed[0].start != 0
        or parsed[0].end != len(marker)
        or parsed[0].description != description
        or parsed[0].marker_id != placeholder_id
    ):
        raise ValueError("Placeholder arguments do not produce a well-formed marker.")
    return marker


def suggest_sources(placeholder_type: str, description: str) -> list[str]:
    lowered = description.lower()
    suggestions: list[str] = []
    for keywords, sources in SOURCE_HINTS:
        if any(keyword in lowered for keyword in keywords):
            for source in sources:
                if source not in suggestions:
                    suggestions.append(source)
    if suggestions:
        return suggestions
    if placeholder_type == "MISSING_DATA":
        return ["ANNUAL_REPORT", "ORG_OVERVIEW"]
    return ["PROPOSAL", "PROGRAM_DESCRIPTION"]


def summarize_placeholders(proposal_id: str, placeholders: list[Placeholder]) -> PlaceholderSummary:
    summary = PlaceholderSummary(proposal_id=proposal_id, placeholders=placeholders)
    for placeholder in placeholders:
        summary.total += 1
        summary.by_type[placeholder.type] = summary.by_type.get(placeholder.type, 0) + 1
        if placeholder.blocking:
            summary.blocking += 1
    return summary


def scan_section(section_id: str, content: str) -> list[Placeholder]:
    return [
        Placeholder(
            id=stable_id("placeholder", section_id, detected.marker_id, detected.start),
            type=detected.type,
            description=detected.description,
            position=Span(start=detected.start, end=detected.end),
            section_id=section_id,
            marker_id=detected.marker_id,
            suggested_sources=suggest_sources(detected.type, detected.description),
        )
        for detected in detect_placeholders(content)
    ]


class PlaceholderDetector:
    def __init__(self, store: Store) -> None:
        self._store = store

    def scan_and_persist_placeholders(self, proposal_id: str) -> PlaceholderSummary:
        placeholders: list[Placeholder] = []
        for section in self._store.list_sections(proposal_id):
            placeholders.extend(scan_section(str(section["id"]), str(section.get("content") or "")))

        self._store.replace_placeholders(proposal_id, placeholders)
        summary = summarize_placeholders(proposal_id, placeholders)
        logger.info(
            "placeholder_scan_completed",
            extra={
                "event": "placeholder_scan_completed",
                "proposal_id": proposal_id,
                "total": summary.total,
                "blocking": summary.blocking,
            },
        )
        return summary

    def get_placeholder_summary(self, proposal_id: str) -> PlaceholderSummary:
        return summarize_placeholders(proposal_id, self._store.list_placeholders(proposal_id))
