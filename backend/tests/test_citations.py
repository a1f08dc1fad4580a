import pytest

from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.citations import (
    CitationMapper,
    classify_span,
    map_citations,
    score_chunk,
    segment_spans,
    summarize_citations,
)
from beacon.enforcement.errors import CheckExecutionError, NotFound
from beacon.enforcement.models import Citation, EvidenceChunk, Span
from beacon.enforcement.placeholders import create_placeholder
from beacon.retrieval import EvidenceRetrievalError, EvidenceRetriever, embed_text


EVIDENCE_TEXT = "The food bank served 500 families across the county in 2023."


def _chunk(chunk_id: str, text: str) -> EvidenceChunk:
    return EvidenceChunk(id=chunk_id, organization_id="org-1", text=text)


def test_segment_spans_index_the_original_text() -> None:
    text = "First sentence here.  Second one!\n\nThird paragraph? Yes"

    spans = segment_spans(text)

    assert [text[start:end] for start, end in spans] == [
        "First sentence here.",
        "Second one!",
        "Third paragraph?",
        "Yes",
    ]
    assert segment_spans("") == []


def test_identical_text_scores_one_and_unrelated_text_scores_low() -> None:
    assert score_chunk(EVIDENCE_TEXT, EVIDENCE_TEXT, 128) == 1.0
    assert score_chunk(EVIDENCE_TEXT, "Volunteers planted trees along the river trail.", 128) < 0.5


def test_map_citations_records_gaps_and_orders_supporting_chunks() -> None:
    text = f"{EVIDENCE_TEXT} Our mural project brightened downtown walls."
    chunks = [
        _chunk("chunk-b", EVIDENCE_TEXT),
        _chunk("chunk-a", EVIDENCE_TEXT),
        _chunk("chunk-c", "Volunteers planted trees along the river trail."),
    ]

    citations = map_citations("section-1", text, chunks, threshold=0.5, max_chunks=3, embedding_dim=128)

    assert len(citations) == 2
    supported, gap = citations
    assert supported.evidence_chunk_ids == ["chunk-a", "chunk-b"]
    assert supported.confidence == 1.0
    assert text[supported.span_start : supported.span_end] == EVIDENCE_TEXT
    assert gap.is_gap
    assert gap.confidence == 0.0


def test_map_citations_caps_supporting_chunks_and_is_deterministic() -> None:
    chunks = [_chunk(f"chunk-{index}", EVIDENCE_TEXT) for index in range(5)]

    first = map_citations("section-1", EVIDENCE_TEXT, chunks, threshold=0.5, max_chunks=2, embedding_dim=64)
    second = map_citations("section-1", EVIDENCE_TEXT, list(reversed(chunks)), threshold=0.5, max_chunks=2, embedding_dim=64)

    assert first == second
    assert first[0].evidence_chunk_ids == ["chunk-0", "chunk-1"]


def test_mapper_retrieves_organization_chunks_when_none_supplied(store: Store) -> None:
    proposal = store.create_proposal("org-1", "Proposal")
    section = store.create_section(str(proposal["id"]), "Impact", EVIDENCE_TEXT)
    store.create_evidence_chunks(
        "org-1",
        "annual-report.txt",
        [{"text": EVIDENCE_TEXT, "embedding": embed_text(EVIDENCE_TEXT, settings.embedding_dim)}],
    )
    store.create_evidence_chunks(
        "org-2",
        "other.txt",
        [{"text": EVIDENCE_TEXT, "embedding": embed_text(EVIDENCE_TEXT, settings.embedding_dim)}],
    )
    retriever = EvidenceRetriever(store, embedding_dim=settings.embedding_dim, top_k=5)
    mapper = CitationMapper(store, retriever)

    citations = mapper.map_and_persist(str(section["id"]), EVIDENCE_TEXT, None, "org-1")

    assert len(citations) == 1
    org_chunk_ids = {str(chunk["id"]) for chunk in store.list_evidence_chunks("org-1")}
    assert set(citations[0].evidence_chunk_ids) == org_chunk_ids
    assert mapper.get_section_citations(str(section["id"])) == citations


def test_mapper_replaces_previous_citations(store: Store) -> None:
    proposal = store.create_proposal("org-1", "Proposal")
    section = store.create_section(str(proposal["id"]), "Impact", "One. Two. Three.")
    retriever = EvidenceRetriever(store, embedding_dim=settings.embedding_dim, top_k=5)
    mapper = CitationMapper(store, retriever)

    mapper.map_and_persist(str(section["id"]), "One. Two. Three.", [_chunk("c", "unrelated")], "org-1")
    mapper.map_and_persist(str(section["id"]), "Only one.", [_chunk("c", "unrelated")], "org-1")

    stored = mapper.get_section_citations(str(section["id"]))
    assert len(stored) == 1
    assert stored[0].is_gap


def test_mapper_reports_retrieval_failures(store: Store) -> None:
    proposal = store.create_proposal("org-1", "Proposal")
    section = store.create_section(str(proposal["id"]), "Impact", EVIDENCE_TEXT)

    class BrokenRetriever:
        def retrieve(self, organization_id: str, query: str, top_k: int | None = None):
            raise EvidenceRetrievalError("index offline")

    mapper = CitationMapper(store, BrokenRetriever())  # type: ignore[arg-type]

    with pytest.raises(CheckExecutionError) as raised:
        mapper.map_and_persist(str(section["id"]), EVIDENCE_TEXT, None, "org-1")
    assert raised.value.check == "citation_mapping"

    with pytest.raises(NotFound):
        mapper.map_and_persist("missing-section", EVIDENCE_TEXT, [_chunk("c", EVIDENCE_TEXT)], "org-1")


def test_retriever_skips_chunks_with_other_dimensions(store: Store) -> None:
    store.create_evidence_chunks("org-1", "a.txt", [{"text": EVIDENCE_TEXT, "embedding": embed_text(EVIDENCE_TEXT, 64)}])
    store.create_evidence_chunks("org-1", "b.txt", [{"text": EVIDENCE_TEXT, "embedding": embed_text(EVIDENCE_TEXT, 128)}])

    results = EvidenceRetriever(store, embedding_dim=128, top_k=5).retrieve("org-1", "food bank families")

    assert [chunk.document_name for chunk in results] == ["b.txt"]


def test_span_status_follows_confidence_bands() -> None:
    assert classify_span(0.9, True, 0.7, False) == ("GROUNDED", [])
    assert classify_span(0.7, True, 0.7, False) == ("GROUNDED", [])
    assert classify_span(0.6, True, 0.7, False) == ("PARTIAL", ["LOW_CONFIDENCE"])
    assert classify_span(0.0, False, 0.7, True) == ("UNGROUNDED", ["NO_SOURCE", "CONTAINS_PLACEHOLDER"])


def test_map_citations_flags_spans_holding_placeholders() -> None:
    marker = create_placeholder("MISSING_DATA", "Annual budget", "budget")
    text = f"{EVIDENCE_TEXT} Budget: {marker}. Our mural project brightened downtown walls."

    citations = map_citations(
        "section-1",
        text,
        [_chunk("chunk-a", EVIDENCE_TEXT)],
        threshold=0.5,
        max_chunks=3,
        embedding_dim=128,
        grounded_threshold=0.7,
    )

    assert [(citation.status, citation.flags) for citation in citations] == [
        ("GROUNDED", []),
        ("UNGROUNDED", ["NO_SOURCE", "CONTAINS_PLACEHOLDER"]),
        ("UNGROUNDED", ["NO_SOURCE"]),
    ]


def test_citation_summary_gives_half_credit_to_partial_spans() -> None:
    def citation(start: int, status: str) -> Citation:
        chunk_ids = [] if status == "UNGROUNDED" else ["chunk-a"]
        return Citation(
            id=f"citation-{start}",
            section_id="section-1",
            span_start=start,
            span_end=start + 5,
            evidence_chunk_ids=chunk_ids,
            status=status,  # type: ignore[arg-type]
        )

    summary = summarize_citations(
        "section-1", [citation(0, "GROUNDED"), citation(10, "PARTIAL"), citation(20, "UNGROUNDED")]
    )

    assert (summary.total, summary.grounded, summary.partial, summary.ungrounded) == (3, 1, 1, 1)
    assert summary.coverage_score == 50
    assert summary.gaps == [Span(start=20, end=25)]
    assert summarize_citations("section-1", []).coverage_score == 0


def test_mapper_persists_status_and_flags(store: Store) -> None:
    proposal = store.create_proposal("org-1", "Proposal")
    text = f"{EVIDENCE_TEXT} Our mural project brightened downtown walls."
    section = store.create_section(str(proposal["id"]), "Impact", text)
    mapper = CitationMapper(store, EvidenceRetriever(store, embedding_dim=settings.embedding_dim, top_k=5))

    mapped = mapper.map_and_persist(str(section["id"]), text, [_chunk("chunk-a", EVIDENCE_TEXT)], "org-1")

    stored = mapper.get_section_citations(str(section["id"]))
    assert stored == mapped
    assert [(citation.status, citation.flags) for citation in stored] == [
        ("GROUNDED", []),
        ("UNGROUNDED", ["NO_SOURCE"]),
    ]
