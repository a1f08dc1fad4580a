from __future__ import annotations

import logging
import re

from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.errors import CheckExecutionError, NotFound
from beacon.enforcement.models import (
    Citation,
    CitationFlag,
    CitationStatus,
    CitationSummary,
    EvidenceChunk,
    Span,
    percentage,
    stable_id,
)
from beacon.enforcement.placeholders import detect_placeholders
from beacon.retrieval import (
    EvidenceRetrievalError,
    EvidenceRetriever,
    content_tokens,
    cosine_similarity,
    embed_text,
    trigrams,
)


logger = logging.getLogger("beacon.enforcement.citations")

SENTENCE_BREAK_PATTERN = re.compile(r"(?<=[.!?])\s+|\n[ \t]*\n\s*")

CONTAINMENT_WEIGHT = 0.6
PHRASE_WEIGHT = 0.2
EMBEDDING_WEIGHT = 0.2


def segment_spans(text: str) -> list[tuple[int, int]]:
    """Split ``text`` into sentence spans as offsets into the original string."""
    spans: list[tuple[int, int]] = []
    if not text:
        return spans

    def emit(start: int, end: int) -> None:
        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        if end > start:
            spans.append((start, end))

    cursor = 0
    for match in SENTENCE_BREAK_PATTERN.finditer(text):
        emit(cursor, match.start())
        cursor = match.end()
    emit(cursor, len(text))
    return spans


def score_chunk(span_text: str, chunk_text: str, embedding_dim: int) -> float:
    span_tokens = content_tokens(span_text)
    chunk_tokens = content_tokens(chunk_text)
    if not span_tokens or not chunk_tokens:
        return 0.0

    span_vocabulary = set(span_tokens)
    containment = len(span_vocabulary & set(chunk_tokens)) / len(span_vocabulary)

    span_phrases = trigrams(span_tokens)
    phrase_overlap = 0.0
    if span_phrases:
        phrase_overlap = len(span_phrases & trigrams(chunk_tokens)) / len(span_phrases)

    similarity = max(0.0, cosine_similarity(embed_text(span_text, embedding_dim), embed_text(chunk_text, embedding_dim)))
    score = CONTAINMENT_WEIGHT * containment + PHRASE_WEIGHT * phrase_overlap + EMBEDDING_WEIGHT * similarity
    return round(min(1.0, max(0.0, score)), 4)


def classify_span(
    confidence: float,
    attached: bool,
    grounded_threshold: float,
    has_placeholder: bool,
) -> tuple[CitationStatus, list[CitationFlag]]:
    flags: list[CitationFlag] = []
    if not attached:
        status: CitationStatus = "UNGROUNDED"
        flags.append("NO_SOURCE")
    elif confidence >= grounded_threshold:
        status = "GROUNDED"
    else:
        status = "PARTIAL"
        flags.append("LOW_CONFIDENCE")
    if has_placeholder:
        flags.append("CONTAINS_PLACEHOLDER")
    return status, flags


def map_citations(
    section_id: str,
    generated_text: str,
    chunks: list[EvidenceChunk],
    *,
    threshold: float,
    max_chunks: int,
    embedding_dim: int,
    grounded_threshold: float | None = None,
) -> list[Citation]:
    if grounded_threshold is None:
        grounded_threshold = settings.citation_grounded_threshold
    markers = detect_placeholders(generated_text)

    citations: list[Citation] = []
    for start, end in segment_spans(generated_text):
        span_text = generated_text[start:end]
        scored = [(score_chunk(span_text, chunk.text, embedding_dim), chunk.id) for chunk in chunks]
        attached = sorted(
            ((score, chunk_id) for score, chunk_id in scored if score >= threshold),
            key=lambda item: (-item[0], item[1]),
        )[:max_chunks]
        confidence = attached[0][0] if attached else 0.0
        status, flags = classify_span(
            confidence,
            bool(attached),
            grounded_threshold,
            any(marker.start < end and start < marker.end for marker in markers),
        )
        citations.append(
            Citation(
                id=stable_id("citation", section_id, start, end),
                section_id=section_id,
                span_start=start,
                span_end=end,
                evidence_chunk_ids=[chunk_id for _, chunk_id in attached],
                confidence=confidence,
                status=status,
                flags=flags,
            )
        )
    return citations


def summarize_citations(section_id: str, citations: list[Citation]) -> CitationSummary:
    summary = CitationSummary(section_id=section_id, total=len(citations))
    for citation in citations:
        if citation.status == "GROUNDED":
            summary.grounded += 1
        elif citation.status == "PARTIAL":
            summary.partial += 1
        else:
            summary.ungrounded += 1
            summary.gaps.append(Span(start=citation.span_start, end=citation.span_end))
    if summary.total:
        summary.coverage_score = percentage(2 * summary.grounded + summary.partial, 2 * summary.total)
    return summary


class CitationMapper:
    def __init__(self, store: Store, retriever: EvidenceRetriever) -> None:
        self._store = store
        self._retriever = retriever

    def map_and_persist(
        self,
        section_id: str,
        generated_text: str,
        retrieved_chunks: list[EvidenceChunk] | None,
        organization_id: str,
    ) -> list[Citation]:
        section = self._store.get_section(section_id)
        if section is None:
            raise NotFound("Section not found.")

        chunks = list(retrieved_chunks or [])
        if not chunks:
            query = f"{section['name']}\n{generated_text}"
            try:
                chunks = self._retriever.retrieve(organization_id, query, settings.retrieval_top_k_default)
            except EvidenceRetrievalError as exc:
                raise CheckExecutionError("citation_mapping", str(exc)) from exc

        citations = map_citations(
            section_id,
            generated_text,
            chunks,
            threshold=settings.citation_confidence_threshold,
            max_chunks=settings.max_supporting_chunks,
            embedding_dim=settings.embedding_dim,
            grounded_threshold=settings.citation_grounded_threshold,
        )
        self._store.replace_section_citations(section_id, citations)
        logger.info(
            "citation_mapping_completed",
            extra={
                "event": "citation_mapping_completed",
                "section_id": section_id,
                "spans": len(citations),
                "grounded": sum(1 for citation in citations if citation.status == "GROUNDED"),
                "gaps": sum(1 for citation in citations if citation.is_gap),
                "candidate_chunks": len(chunks),
            },
        )
        return citations

    def get_section_citations(self, section_id: str) -> list[Citation]:
        return self._store.list_citations(section_id=section_id)
