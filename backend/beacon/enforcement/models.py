from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import hashlib
from typing import Literal

from pydantic import BaseModel, Field


PlaceholderType = Literal["MISSING_DATA", "USER_INPUT_REQUIRED", "VERIFICATION_NEEDED"]
AmbiguityType = Literal["CONTRADICTORY", "VAGUE", "IMPLICIT", "SCOPE_UNCLEAR"]
ClaimType = Literal["PERCENTAGE", "CURRENCY", "NUMBER", "DATE", "ORGANIZATION"]
ClaimRiskLevel = Literal["HIGH", "MEDIUM", "LOW"]
VerificationStatus = Literal["VERIFIED", "UNVERIFIED", "CONTRADICTED"]
MappingType = Literal["AUTO", "MANUAL"]
CitationStatus = Literal["GROUNDED", "PARTIAL", "UNGROUNDED"]
CitationFlag = Literal["NO_SOURCE", "LOW_CONFIDENCE", "CONTAINS_PLACEHOLDER"]
GateDecision = Literal["ALLOW", "WARN", "BLOCK"]
ReasonSeverity = Literal["BLOCK", "WARN"]
ExportFormat = Literal["DOCX", "PDF", "CLIPBOARD"]

PLACEHOLDER_TYPES: tuple[PlaceholderType, ...] = ("MISSING_DATA", "USER_INPUT_REQUIRED", "VERIFICATION_NEEDED")
BLOCKING_PLACEHOLDER_TYPES: frozenset[str] = frozenset({"MISSING_DATA", "USER_INPUT_REQUIRED"})
PENDING_PROPOSAL_ID = "pending"


def stable_id(*parts: object) -> str:
    digest = hashlib.sha256("\x1f".join(str(part) for part in parts).encode("utf-8")).hexdigest()
    return digest[:32]


def percentage(numerator: int, denominator: int) -> int:
    """Integer percentage, rounding halves up (2 of 3 is 67, 1 of 8 is 13)."""
    ratio = Decimal(numerator) * 100 / Decimal(denominator)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Span(BaseModel):
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)


class Placeholder(BaseModel):
    id: str = Field(..., min_length=1)
    type: PlaceholderType
    description: str = Field(..., min_length=1)
    position: Span
    section_id: str
    marker_id: str = Field(..., min_length=1)
    suggested_sources: list[str] = Field(default_factory=list)

    @property
    def blocking(self) -> bool:
        return self.type in BLOCKING_PLACEHOLDER_TYPES


class PlaceholderSummary(BaseModel):
    proposal_id: str
    total: int = 0
    blocking: int = 0
    by_type: dict[str, int] = Field(default_factory=lambda: {name: 0 for name in PLACEHOLDER_TYPES})
    placeholders: list[Placeholder] = Field(default_factory=list)


class Ambiguity(BaseModel):
    id: str = Field(..., min_length=1)
    proposal_id: str
    type: AmbiguityType
    description: str = Field(..., min_length=1)
    source_texts: list[str] = Field(default_factory=list)
    suggested_resolutions: list[str] = Field(default_factory=list)
    requires_user_input: bool = False
    resolved: bool = False
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: str | None = None

    @property
    def fingerprint(self) -> str:
        return f"{self.type}:{' '.join(self.description.lower().split())}"

    @property
    def blocking(self) -> bool:
        return self.requires_user_input and not self.resolved


class AmbiguitySummary(BaseModel):
    proposal_id: str
    total: int = 0
    unresolved: int = 0
    requires_input: int = 0
    ambiguities: list[Ambiguity] = Field(default_factory=list)


class EvidenceChunk(BaseModel):
    id: str = Field(..., min_length=1)
    organization_id: str
    document_name: str = ""
    text: str
    score: float = 0.0


class Citation(BaseModel):
    id: str = Field(..., min_length=1)
    section_id: str
    span_start: int = Field(..., ge=0)
    span_end: int = Field(..., ge=0)
    evidence_chunk_ids: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    status: CitationStatus = "UNGROUNDED"
    flags: list[CitationFlag] = Field(default_factory=list)

    @property
    def is_gap(self) -> bool:
        return not self.evidence_chunk_ids

    def overlaps(self, start: int, end: int) -> bool:
        return self.span_start < end and start < self.span_end


class CitationSummary(BaseModel):
    section_id: str
    total: int = 0
    grounded: int = 0
    partial: int = 0
    ungrounded: int = 0
    # Half credit for partially grounded spans.
    coverage_score: int = Field(default=0, ge=0, le=100)
    gaps: list[Span] = Field(default_factory=list)


class Claim(BaseModel):
    id: str = Field(..., min_length=1)
    section_id: str
    text: str = Field(..., min_length=1)
    claim_type: ClaimType
    risk_level: ClaimRiskLevel
    span_start: int = Field(..., ge=0)
    span_end: int = Field(..., ge=0)
    verification_status: VerificationStatus = "UNVERIFIED"
    supporting_citation_ids: list[str] = Field(default_factory=list)
    evidence_chunk_ids: list[str] = Field(default_factory=list)
    verification_score: float = Field(default=0.0, ge=0.0, le=1.0)


class VerificationSummary(BaseModel):
    proposal_id: str
    total: int = 0
    verified: int = 0
    unverified: int = 0
    contradicted: int = 0
    high_risk_unverified: int = 0
    verification_rate: int = 0
    claims: list[Claim] = Field(default_factory=list)


class ComplianceItem(BaseModel):
    id: str = Field(..., min_length=1)
    checklist_item_id: str
    checklist_item_name: str = ""
    is_required: bool = True
    section_id: str | None = None
    satisfied: bool = False
    notes: str = ""


class LimitViolation(BaseModel):
    section_id: str
    section_name: str
    limit_type: Literal["WORD"] = "WORD"
    limit: int = Field(..., ge=1)
    actual: int = Field(..., ge=0)
    overage_percent: int = Field(..., ge=0)


class ComplianceResult(BaseModel):
    proposal_id: str
    items: list[ComplianceItem] = Field(default_factory=list)
    unmet_count: int = 0
    empty_sections: list[str] = Field(default_factory=list)
    limit_violations: list[LimitViolation] = Field(default_factory=list)
    compliance_score: int = Field(default=100, ge=0, le=100)

    def blocking_limit_violations(self, block_percent: float) -> list[LimitViolation]:
        return [violation for violation in self.limit_violations if violation.overage_percent > block_percent]

    def warning_limit_violations(self, block_percent: float) -> list[LimitViolation]:
        return [violation for violation in self.limit_violations if 0 < violation.overage_percent <= block_percent]


class SectionCoverage(BaseModel):
    section_id: str
    pct: int = Field(..., ge=0, le=100)
    total_items: int = 0
    satisfied_items: int = 0


class CoverageScore(BaseModel):
    proposal_id: str
    overall_pct: int = Field(..., ge=0, le=100)
    total_items: int = 0
    satisfied_items: int = 0
    per_section_pct: list[SectionCoverage] = Field(default_factory=list)


class GateReason(BaseModel):
    code: str = Field(..., min_length=1)
    severity: ReasonSeverity
    message: str = Field(..., min_length=1)
    affected_items: list[str] = Field(default_factory=list)


class GateResult(BaseModel):
    decision: GateDecision
    reasons: list[GateReason] = Field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.decision != "BLOCK"


class AuditRecord(BaseModel):
    id: str = Field(..., min_length=1)
    proposal_id: str
    organization_id: str
    user_id: str
    export_format: ExportFormat
    decision: GateDecision
    reasons: list[GateReason] = Field(default_factory=list)
    snapshot: dict[str, object] = Field(default_factory=dict)
    created_at: str
    attestation_text: str | None = None
    attested_at: str | None = None


class EnforcementData(BaseModel):
    placeholders: PlaceholderSummary | None = None
    ambiguities: AmbiguitySummary | None = None
    claims: VerificationSummary | None = None
    compliance: ComplianceResult | None = None
    coverage: CoverageScore | None = None


class GateEvaluation(BaseModel):
    gate_result: GateResult
    audit_record: AuditRecord
    enforcement: EnforcementData
