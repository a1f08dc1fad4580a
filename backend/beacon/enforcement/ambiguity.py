from __future__ import annotations

import logging
import re

from beacon.db import Store
from beacon.enforcement.errors import NotFound, ValidationError
from beacon.enforcement.models import (
    PENDING_PROPOSAL_ID,
    Ambiguity,
    AmbiguitySummary,
    stable_id,
)
from beacon.observability import sanitize_for_logging


logger = logging.getLogger("beacon.enforcement.ambiguity")

CONTRADICTORY_TERMS: tuple[tuple[str, str], ...] = (
    ("brief", "comprehensive"),
    ("concise", "thorough"),
    ("short", "detailed"),
    ("summary", "comprehensive overview"),
)
CONTRADICTION_RESOLUTIONS = [
    "Prioritize being comprehensive while maintaining clarity",
    "Focus on key points with supporting detail",
    "Contact funder for clarification",
]

VAGUE_PATTERNS = (
    re.compile(r"\b(adequate|appropriate|sufficient)\s+(budget|staffing|resources)", re.IGNORECASE),
    re.compile(r"\b(reasonable|modest)\s+(amount|funding|request)", re.IGNORECASE),
    re.compile(r"\bas\s+needed\b", re.IGNORECASE),
)
VAGUE_RESOLUTIONS = [
    "Use industry standards or funder's typical awards as reference",
    "Be specific and justify your approach",
    "Contact funder for clarification",
]

PAGE_LIMIT_PATTERN = re.compile(r"(\d+)\s*(?:page|pg)s?\s*(?:maximum|max|limit)?", re.IGNORECASE)
WORD_LIMIT_PATTERN = re.compile(r"(\d+)\s*words?\s*(?:maximum|max|limit)?", re.IGNORECASE)
MIN_WORDS_PER_PAGE = 200
MAX_WORDS_PER_PAGE = 600
LIMIT_RESOLUTIONS = [
    "Prioritize word limit as it's more precise",
    "Assume standard formatting (250-300 words per page)",
    "Contact funder to confirm which limit takes precedence",
]


def _term_pattern(term: str) -> re.Pattern[str]:
    words = [re.escape(word) for word in term.split()]
    return re.compile(r"\b" + r"\s+".join(words) + r"\b", re.IGNORECASE)


def sentence_context(text: str, start: int, end: int) -> str:
    """Return the sentence of ``text`` that contains ``text[start:end]``."""
    sentence_start = text.rfind(".", 0, start) + 1
    sentence_end = text.find(".", end)
    if sentence_end < 0:
        sentence_end = len(text)
    else:
        sentence_end += 1
    return text[sentence_start:sentence_end].strip()


def _contradictions(text: str) -> list[tuple[str, list[str]]]:
    found: list[tuple[str, list[str]]] = []
    for terms in CONTRADICTORY_TERMS:
        matches = [(term, _term_pattern(term).search(text)) for term in terms]
        present = [(term, match) for term, match in matches if match is not None]
        if len(present) < 2:
            continue
        description = "Potentially contradictory requirements: " + " and ".join(f'"{term}"' for term, _ in present)
        contexts = [sentence_context(text, match.start(), match.end()) for _, match in present]
        found.append((description, contexts))
    return found


def _vague_requirements(text: str) -> list[tuple[str, str]]:
    found: list[tuple[str, str]] = []
    for pattern in VAGUE_PATTERNS:
        for match in pattern.finditer(text):
            description = f'Vague requirement: "{match.group(0)}" - no specific criteria provided'
            found.append((description, sentence_context(text, match.start(), match.end())))
    return found


def _limit_conflict(text: str) -> tuple[str, list[str]] | None:
    page_match = PAGE_LIMIT_PATTERN.search(text)
    word_match = WORD_LIMIT_PATTERN.search(text)
    if page_match is None or word_match is None:
        return None

    pages = int(page_match.group(1))
    words = int(word_match.group(1))
    if pages <= 0 or words <= 0:
        return None

    words_per_page = words / pages
    if MIN_WORDS_PER_PAGE <= words_per_page <= MAX_WORDS_PER_PAGE:
        return None
    description = f"Page limit ({pages}) and word limit ({words}) may be inconsistent"
    return description, [page_match.group(0).strip(), word_match.group(0).strip()]


def detect_ambiguities(source_text: str, proposal_id: str = PENDING_PROPOSAL_ID) -> list[Ambiguity]:
    if not source_text or not source_text.strip():
        return []

    drafts: list[dict[str, object]] = []
    for description, contexts in _contradictions(source_text):
        drafts.append(
            {
                "type": "CONTRADICTORY",
                "description": description,
                "source_texts": contexts,
                "suggested_resolutions": list(CONTRADICTION_RESOLUTIONS),
                "requires_user_input": True,
            }
        )
    for description, context in _vague_requirements(source_text):
        drafts.append(
            {
                "type": "VAGUE",
                "description": description,
                "source_texts": [context],
                "suggested_resolutions": list(VAGUE_RESOLUTIONS),
                "requires_user_input": False,
            }
        )
    conflict = _limit_conflict(source_text)
    if conflict is not None:
        description, source_texts = conflict
        drafts.append(
            {
                "type": "SCOPE_UNCLEAR",
                "description": description,
                "source_texts": source_texts,
                "suggested_resolutions": list(LIMIT_RESOLUTIONS),
                "requires_user_input": True,
            }
        )

    return [
        Ambiguity(
            id=stable_id("ambiguity", proposal_id, index, draft["type"], draft["description"]),
            proposal_id=proposal_id,
            **draft,
        )
        for index, draft in enumerate(drafts)
    ]


def detect_pending_ambiguities(source_text: str) -> list[Ambiguity]:
    """Parse-time detection; a failure degrades to no ambiguities."""
    try:
        return detect_ambiguities(source_text, PENDING_PROPOSAL_ID)
    except Exception as exc:
        logger.warning(
            "ambiguity_detection_degraded",
            extra={
                "event": "ambiguity_detection_degraded",
                "error": str(exc),
            },
        )
        return []


def summarize_ambiguities(proposal_id: str, ambiguities: list[Ambiguity]) -> AmbiguitySummary:
    return AmbiguitySummary(
        proposal_id=proposal_id,
        total=len(ambiguities),
        unresolved=sum(1 for item in ambiguities if not item.resolved),
        requires_input=sum(1 for item in ambiguities if item.blocking),
        ambiguities=ambiguities,
    )


def carry_resolutions(detected: list[Ambiguity], resolved: list[Ambiguity]) -> list[Ambiguity]:
    """Reapply earlier resolutions to re-detected ambiguities with the same fingerprint."""
    resolved_by_fingerprint: dict[str, list[Ambiguity]] = {}
    for previous in resolved:
        resolved_by_fingerprint.setdefault(previous.fingerprint, []).append(previous)

    merged: list[Ambiguity] = []
    for ambiguity in detected:
        matches = resolved_by_fingerprint.get(ambiguity.fingerprint)
        if matches:
            previous = matches.pop(0)
            ambiguity = ambiguity.model_copy(
                update={
                    "resolved": True,
                    "resolution": previous.resolution,
                    "resolved_by": previous.resolved_by,
                    "resolved_at": previous.resolved_at,
                }
            )
        merged.append(ambiguity)
    return merged


class AmbiguityDetector:
    def __init__(self, store: Store) -> None:
        self._store = store

    def analyze_and_persist(self, proposal_id: str, source_text: str) -> AmbiguitySummary:
        detected = detect_ambiguities(source_text, proposal_id)
        merged = self._store.replace_ambiguities(proposal_id, detected, merge_resolved=carry_resolutions)
        summary = summarize_ambiguities(proposal_id, merged)
        logger.info(
            "ambiguity_detection_completed",
            extra={
                "event": "ambiguity_detection_completed",
                "proposal_id": proposal_id,
                "total": summary.total,
                "requires_input": summary.requires_input,
                "resolutions_carried": sum(1 for item in merged if item.resolved),
            },
        )
        return summary

    def resolve_ambiguity(self, proposal_id: str, ambiguity_id: str, resolution: str, user_id: str) -> None:
        if not resolution or not resolution.strip():
            raise ValidationError("Resolution text is required.")
        if not self._store.resolve_ambiguity(proposal_id, ambiguity_id, resolution.strip(), user_id):
            raise NotFound("Ambiguity not found.")
        logger.info(
            "ambiguity_resolved",
            extra={
                "event": "ambiguity_resolved",
                "proposal_id": proposal_id,
                "ambiguity_id": ambiguity_id,
                "resolution": sanitize_for_logging(resolution, key="resolution"),
            },
        )

    def get_ambiguity_summary(self, proposal_id: str) -> AmbiguitySummary:
        return summarize_ambiguities(proposal_id, self._store.list_ambiguities(proposal_id))
