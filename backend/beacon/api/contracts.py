from typing import Literal

from pydantic import BaseModel, Field


class ProposalCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=160)
    requirements_text: str | None = Field(default=None, max_length=200_000)


class SectionUpsertRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=160)
    content: str = Field(default="", max_length=200_000)
    word_limit: int | None = Field(default=None, ge=1)
    is_required: bool | None = None
    section_id: str | None = Field(default=None, min_length=1)


class EvidenceChunkInput(BaseModel):
    text: str = Field(..., min_length=1, max_length=20_000)


class EvidenceCreateRequest(BaseModel):
    document_name: str = Field(..., min_length=1, max_length=255)
    chunks: list[EvidenceChunkInput] = Field(..., min_length=1, max_length=500)


class ChecklistItemInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=4000)
    is_required: bool = True
    word_limit: int | None = Field(default=None, ge=1)


class ChecklistCreateRequest(BaseModel):
    items: list[ChecklistItemInput] = Field(..., min_length=1, max_length=200)


class ChecklistMapRequest(BaseModel):
    checklist_item_id: str = Field(..., min_length=1)
    section_id: str = Field(..., min_length=1)


class AmbiguityDetectRequest(BaseModel):
    source_text: str = Field(..., min_length=1, max_length=200_000)


class AmbiguityResolveRequest(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=4000)


class ExportGateRequest(BaseModel):
    proposal_id: str = Field(..., min_length=1)
    export_format: Literal["DOCX", "PDF", "CLIPBOARD"]


class AttestationRequest(BaseModel):
    audit_record_id: str = Field(..., min_length=1)
    attestation_text: str = Field(..., min_length=1, max_length=4000)
