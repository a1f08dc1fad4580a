from __future__ import annotations

from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.errors import NotFound
from beacon.enforcement.gate import ExportGatekeeper
from beacon.retrieval import EvidenceRetriever


def get_store() -> Store:
    # Built per request so a changed DATABASE_URL takes effect without a restart.
    return Store(settings.database_url, timeout_seconds=settings.database_timeout_seconds)


def build_retriever(store: Store) -> EvidenceRetriever:
    return EvidenceRetriever(
        store,
        embedding_dim=settings.embedding_dim,
        top_k=settings.retrieval_top_k_default,
    )


def build_gatekeeper(store: Store) -> ExportGatekeeper:
    return ExportGatekeeper.build(
        store,
        build_retriever(store),
        recompute_timeout_seconds=settings.gate_recompute_timeout_seconds,
    )


def require_proposal(store: Store, proposal_id: str, organization_id: str) -> dict[str, object]:
    proposal = store.get_proposal(proposal_id)
    # Proposals owned by another organization are indistinguishable from missing ones.
    if proposal is None or proposal["organization_id"] != organization_id:
        raise NotFound("Proposal not found.")
    return proposal


def require_section(store: Store, proposal_id: str, section_id: str) -> dict[str, object]:
    section = store.get_section(section_id)
    if section is None or section["proposal_id"] != proposal_id:
        raise NotFound("Section not found.")
    return section
