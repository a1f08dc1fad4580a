from __future__ import annotations

from fastapi import APIRouter, Depends

from beacon.api.contracts import (
    AmbiguityDetectRequest,
    AmbiguityResolveRequest,
    ChecklistCreateRequest,
    ChecklistMapRequest,
    EvidenceCreateRequest,
    ProposalCreateRequest,
    SectionUpsertRequest,
)
from beacon.api.services.runtime import build_retriever, get_store, require_proposal, require_section
from beacon.auth import CallerContext, require_caller
from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.ambiguity import AmbiguityDetector, detect_pending_ambiguities
from beacon.enforcement.citations import CitationMapper, summarize_citations
from beacon.enforcement.claims import ClaimVerifier
from beacon.enforcement.compliance import ComplianceChecker
from beacon.enforcement.coverage import CoverageScorer
from beacon.enforcement.errors import NotFound, ValidationError
from beacon.enforcement.models import (
    Ambiguity,
    AmbiguitySummary,
    ComplianceResult,
    CoverageScore,
    PlaceholderSummary,
    VerificationSummary,
)
from beacon.enforcement.placeholders import PlaceholderDetector
from beacon.retrieval import embed_text


router = APIRouter(prefix="/api")


@router.post("/proposals")
def create_proposal_endpoint(
    payload: ProposalCreateRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    name = payload.name.strip()
    if not name:
        raise ValidationError("Proposal name is required.")
    return store.create_proposal(caller.organization_id, name, payload.requirements_text)


@router.get("/proposals/{proposal_id}")
def get_proposal_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    proposal = require_proposal(store, proposal_id, caller.organization_id)
    return {**proposal, "sections": store.list_sections(proposal_id)}


@router.put("/proposals/{proposal_id}/sections")
def upsert_section_endpoint(
    proposal_id: str,
    payload: SectionUpsertRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    require_proposal(store, proposal_id, caller.organization_id)
    if payload.section_id:
        require_section(store, proposal_id, payload.section_id)
        updated = store.update_section(
            payload.section_id,
            content=payload.content,
            word_limit=payload.word_limit,
            is_required=payload.is_required,
        )
        if updated is None:
            raise NotFound("Section not found.")
        return updated

    name = payload.name.strip()
    if not name:
        raise ValidationError("Section name is required.")
    return store.create_section(
        proposal_id,
        name,
        payload.content,
        word_limit=payload.word_limit,
        is_required=True if payload.is_required is None else payload.is_required,
    )


@router.post("/evidence")
def create_evidence_endpoint(
    payload: EvidenceCreateRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    chunks = [
        {"text": chunk.text.strip(), "embedding": embed_text(chunk.text, settings.embedding_dim)}
        for chunk in payload.chunks
        if chunk.text.strip()
    ]
    if not chunks:
        raise ValidationError("At least one non-empty evidence chunk is required.")
    created = store.create_evidence_chunks(caller.organization_id, payload.document_name.strip(), chunks)
    return {"document_name": payload.document_name.strip(), "chunks": created}


@router.post("/proposals/{proposal_id}/checklist")
def create_checklist_endpoint(
    proposal_id: str,
    payload: ChecklistCreateRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    require_proposal(store, proposal_id, caller.organization_id)
    items = ComplianceChecker(store).create_checklist_items(
        proposal_id,
        [item.model_dump() for item in payload.items],
    )
    return {"proposal_id": proposal_id, "items": items}


@router.post("/proposals/{proposal_id}/checklist/auto-map")
def auto_map_checklist_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    require_proposal(store, proposal_id, caller.organization_id)
    mapped = ComplianceChecker(store).auto_map_sections(proposal_id)
    return {"proposal_id": proposal_id, "mappings": mapped}


@router.post("/proposals/{proposal_id}/checklist/map")
def map_checklist_endpoint(
    proposal_id: str,
    payload: ChecklistMapRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    require_proposal(store, proposal_id, caller.organization_id)
    require_section(store, proposal_id, payload.section_id)
    ComplianceChecker(store).map_section_to_checklist_item(payload.checklist_item_id, payload.section_id)
    return {"success": True}


@router.get("/proposals/{proposal_id}/compliance", response_model=ComplianceResult)
def compliance_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> ComplianceResult:
    require_proposal(store, proposal_id, caller.organization_id)
    return ComplianceChecker(store).check_compliance(proposal_id)


@router.get("/proposals/{proposal_id}/coverage", response_model=CoverageScore)
def coverage_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> CoverageScore:
    require_proposal(store, proposal_id, caller.organization_id)
    return CoverageScorer(ComplianceChecker(store)).compute_proposal_coverage(proposal_id)


@router.post("/requirements/ambiguities")
def detect_ambiguities_endpoint(
    payload: AmbiguityDetectRequest,
    caller: CallerContext = Depends(require_caller),
) -> dict[str, list[Ambiguity]]:
    return {"ambiguities": detect_pending_ambiguities(payload.source_text)}


@router.post("/proposals/{proposal_id}/ambiguities/analyze", response_model=AmbiguitySummary)
def analyze_ambiguities_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> AmbiguitySummary:
    proposal = require_proposal(store, proposal_id, caller.organization_id)
    requirements_text = str(proposal.get("requirements_text") or "")
    if not requirements_text.strip():
        raise ValidationError("Proposal has no requirements text to analyze.")
    return AmbiguityDetector(store).analyze_and_persist(proposal_id, requirements_text)


@router.get("/proposals/{proposal_id}/ambiguities", response_model=AmbiguitySummary)
def list_ambiguities_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> AmbiguitySummary:
    require_proposal(store, proposal_id, caller.organization_id)
    return AmbiguityDetector(store).get_ambiguity_summary(proposal_id)


@router.post("/proposals/{proposal_id}/ambiguities/{ambiguity_id}/resolve")
def resolve_ambiguity_endpoint(
    proposal_id: str,
    ambiguity_id: str,
    payload: AmbiguityResolveRequest,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, bool]:
    require_proposal(store, proposal_id, caller.organization_id)
    AmbiguityDetector(store).resolve_ambiguity(proposal_id, ambiguity_id, payload.resolution, caller.user_id)
    return {"success": True}


@router.get("/proposals/{proposal_id}/placeholders", response_model=PlaceholderSummary)
def placeholders_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> PlaceholderSummary:
    require_proposal(store, proposal_id, caller.organization_id)
    return PlaceholderDetector(store).scan_and_persist_placeholders(proposal_id)


@router.get("/proposals/{proposal_id}/claims", response_model=VerificationSummary)
def claims_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> VerificationSummary:
    require_proposal(store, proposal_id, caller.organization_id)
    return ClaimVerifier(store).get_verification_summary(proposal_id)


@router.post("/proposals/{proposal_id}/claims/verify", response_model=VerificationSummary)
def verify_claims_endpoint(
    proposal_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> VerificationSummary:
    require_proposal(store, proposal_id, caller.organization_id)
    return ClaimVerifier(store).extract_and_verify_proposal(proposal_id, caller.organization_id)


@router.get("/proposals/{proposal_id}/sections/{section_id}/citations")
def section_citations_endpoint(
    proposal_id: str,
    section_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    require_proposal(store, proposal_id, caller.organization_id)
    require_section(store, proposal_id, section_id)
    citations = CitationMapper(store, build_retriever(store)).get_section_citations(section_id)
    return {
        "section_id": section_id,
        "citations": [citation.model_dump() for citation in citations],
        "summary": summarize_citations(section_id, citations).model_dump(),
    }


@router.post("/proposals/{proposal_id}/sections/{section_id}/citations")
def map_section_citations_endpoint(
    proposal_id: str,
    section_id: str,
    caller: CallerContext = Depends(require_caller),
    store: Store = Depends(get_store),
) -> dict[str, object]:
    require_proposal(store, proposal_id, caller.organization_id)
    section = require_section(store, proposal_id, section_id)
    citations = CitationMapper(store, build_retriever(store)).map_and_persist(
        section_id,
        str(section.get("content") or ""),
        None,
        caller.organization_id,
    )
    return {
        "section_id": section_id,
        "citations": [citation.model_dump() for citation in citations],
        "summary": summarize_citations(section_id, citations).model_dump(),
    }
