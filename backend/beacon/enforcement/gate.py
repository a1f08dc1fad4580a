from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Any, Callable
from uuid import uuid4

from beacon.config import settings
from beacon.db import WRITE_CANCELLED, Store
from beacon.enforcement.ambiguity import AmbiguityDetector
from beacon.enforcement.citations import CitationMapper
from beacon.enforcement.claims import ClaimVerifier
from beacon.enforcement.compliance import ComplianceChecker
from beacon.enforcement.coverage import CoverageScorer
from beacon.enforcement.errors import NotFound, Unauthorized, ValidationError
from beacon.enforcement.models import (
    AuditRecord,
    EnforcementData,
    GateEvaluation,
    GateReason,
    GateResult,
)
from beacon.enforcement.placeholders import PlaceholderDetector
from beacon.observability import sanitize_for_logging
from beacon.retrieval import EvidenceRetriever


logger = logging.getLogger("beacon.enforcement.gate")

EXPORT_FORMATS = ("DOCX", "PDF", "CLIPBOARD")


@dataclass(frozen=True)
class CheckFailure:
    check: str
    message: str


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def decide(enforcement: EnforcementData, failures: list[CheckFailure]) -> GateResult:
    """Combine the current enforcement state into a decision.

    BLOCK conditions outrank WARN conditions; every condition that holds is
    listed as a reason.
    """
    blocks: list[GateReason] = []
    warnings: list[GateReason] = []

    placeholders = enforcement.placeholders
    if placeholders is not None and placeholders.blocking > 0:
        blocking = [item for item in placeholders.placeholders if item.blocking]
        blocks.append(
            GateReason(
                code="UNRESOLVED_PLACEHOLDER",
                severity="BLOCK",
                message=f"{len(blocking)} placeholder(s) require resolution before export",
                affected_items=[item.description for item in blocking],
            )
        )

    ambiguities = enforcement.ambiguities
    if ambiguities is not None and ambiguities.requires_input > 0:
        open_items = [item for item in ambiguities.ambiguities if item.blocking]
        blocks.append(
            GateReason(
                code="UNRESOLVED_AMBIGUITY",
                severity="BLOCK",
                message=f"{len(open_items)} requirement ambiguity(ies) require resolution before export",
                affected_items=[item.description for item in open_items],
            )
        )

    claims = enforcement.claims
    if claims is not None and claims.contradicted > 0:
        contradicted = [claim for claim in claims.claims if claim.verification_status == "CONTRADICTED"]
        blocks.append(
            GateReason(
                code="CONTRADICTED_CLAIM",
                severity="BLOCK",
                message=f"{len(contradicted)} claim(s) conflict with the mapped evidence",
                affected_items=[claim.text for claim in contradicted],
            )
        )

    for failure in failures:
        blocks.append(
            GateReason(
                code="CHECK_FAILED",
                severity="BLOCK",
                message=f"The {failure.check} check did not complete ({failure.message}); export is blocked until it succeeds",
                affected_items=[failure.check],
            )
        )

    if claims is not None and claims.unverified > 0:
        unverified = [claim for claim in claims.claims if claim.verification_status == "UNVERIFIED"]
        warnings.append(
            GateReason(
                code="UNVERIFIED_CLAIM",
                severity="WARN",
                message=(
                    f"{len(unverified)} claim(s) could not be verified against the evidence "
                    f"({claims.high_risk_unverified} high-risk)"
                ),
                affected_items=[claim.text for claim in unverified],
            )
        )

    compliance = enforcement.compliance
    if compliance is not None and compliance.unmet_count > 0:
        details = [f"{compliance.unmet_count} checklist item(s) are not satisfied"]
        if compliance.empty_sections:
            details.append(f"{len(compliance.empty_sections)} required section(s) lack content")
        if compliance.limit_violations:
            severe = compliance.blocking_limit_violations(settings.word_limit_block_percent)
            details.append(
                f"{len(compliance.limit_violations)} section(s) exceed their word limit "
                f"({len(severe)} by more than {settings.word_limit_block_percent:g}%)"
            )
        warnings.append(
            GateReason(
                code="COMPLIANCE_UNMET",
                severity="WARN",
                message=f"{'; '.join(details)}; compliance score {compliance.compliance_score}",
                affected_items=[item.checklist_item_name for item in compliance.items if not item.satisfied],
            )
        )

    coverage = enforcement.coverage
    if coverage is not None and coverage.overall_pct < 100:
        warnings.append(
            GateReason(
                code="COVERAGE_INCOMPLETE",
                severity="WARN",
                message=f"Checklist coverage is {coverage.overall_pct}% ({coverage.satisfied_items} of {coverage.total_items} items)",
                affected_items=[section.section_id for section in coverage.per_section_pct if section.pct < 100],
            )
        )

    if blocks:
        return GateResult(decision="BLOCK", reasons=blocks + warnings)
    if warnings:
        return GateResult(decision="WARN", reasons=warnings)
    return GateResult(decision="ALLOW", reasons=[])


def build_snapshot(enforcement: EnforcementData, failures: list[CheckFailure]) -> dict[str, object]:
    placeholders = enforcement.placeholders
    ambiguities = enforcement.ambiguities
    claims = enforcement.claims
    compliance = enforcement.compliance
    coverage = enforcement.coverage
    return {
        "blocking_placeholders": placeholders.blocking if placeholders else None,
        "advisory_placeholders": placeholders.by_type.get("VERIFICATION_NEEDED", 0) if placeholders else None,
        "unresolved_ambiguities": ambiguities.requires_input if ambiguities else None,
        "claims_total": claims.total if claims else None,
        "claims_unverified": claims.unverified if claims else None,
        "claims_contradicted": claims.contradicted if claims else None,
        "verification_rate": claims.verification_rate if claims else None,
        "unmet_count": compliance.unmet_count if compliance else None,
        "compliance_score": compliance.compliance_score if compliance else None,
        "empty_sections": len(compliance.empty_sections) if compliance else None,
        "limit_violations": len(compliance.limit_violations) if compliance else None,
        "coverage_pct": coverage.overall_pct if coverage else None,
        "coverage_total_items": coverage.total_items if coverage else None,
        "failed_checks": [failure.check for failure in failures],
    }


class _CheckRun:
    """Results and failures of the checks scheduled for one evaluation."""

    def __init__(self, proposal_id: str) -> None:
        self.proposal_id = proposal_id
        self.expected: list[str] = []
        self.results: dict[str, Any] = {}
        self.failures: dict[str, CheckFailure] = {}
        # Worker threads outlive cancellation; once set, their writes roll back.
        self.cancelled = threading.Event()

    def expect(self, check: str) -> None:
        if check not in self.expected:
            self.expected.append(check)

    async def run(self, check: str, func: Callable[..., Any], *args: Any) -> Any:
        self.expect(check)
        token = WRITE_CANCELLED.set(self.cancelled)
        try:
            result = await asyncio.to_thread(func, *args)
        except Exception as exc:
            self.fail(check, str(exc) or exc.__class__.__name__)
            return None
        finally:
            WRITE_CANCELLED.reset(token)
        self.results[check] = result
        return result

    def fail(self, check: str, message: str) -> None:
        if check in self.failures:
            return
        self.failures[check] = CheckFailure(check=check, message=message)
        logger.warning(
            "export_gate_check_failed",
            extra={
                "event": "export_gate_check_failed",
                "proposal_id": self.proposal_id,
                "check": check,
                "error": sanitize_for_logging(message),
            },
        )

    def mark_unfinished(self, message: str) -> None:
        for check in self.expected:
            if check not in self.results:
                self.fail(check, message)

    def ordered_failures(self) -> list[CheckFailure]:
        return [self.failures[check] for check in self.expected if check in self.failures]


class ExportGatekeeper:
    def __init__(
        self,
        store: Store,
        *,
        placeholders: PlaceholderDetector,
        ambiguities: AmbiguityDetector,
        citations: CitationMapper,
        claims: ClaimVerifier,
        compliance: ComplianceChecker,
        coverage: CoverageScorer,
        recompute_timeout_seconds: float,
    ) -> None:
        self._store = store
        self._placeholders = placeholders
        self._ambiguities = ambiguities
        self._citations = citations
        self._claims = claims
        self._compliance = compliance
        self._coverage = coverage
        self._recompute_timeout_seconds = recompute_timeout_seconds

    @classmethod
    def build(cls, store: Store, retriever: EvidenceRetriever, *, recompute_timeout_seconds: float) -> ExportGatekeeper:
        compliance = ComplianceChecker(store)
        return cls(
            store,
            placeholders=PlaceholderDetector(store),
            ambiguities=AmbiguityDetector(store),
            citations=CitationMapper(store, retriever),
            claims=ClaimVerifier(store),
            compliance=compliance,
            coverage=CoverageScorer(compliance),
            recompute_timeout_seconds=recompute_timeout_seconds,
        )

    async def _recompute(self, run: _CheckRun, proposal: dict[str, object], organization_id: str) -> None:
        proposal_id = str(proposal["id"])
        sections = await run.run("sections", self._store.list_sections, proposal_id)
        if sections is None:
            return

        writers = [run.run("placeholders", self._placeholders.scan_and_persist_placeholders, proposal_id)]
        requirements_text = str(proposal.get("requirements_text") or "")
        if requirements_text.strip():
            writers.append(
                run.run("ambiguities", self._ambiguities.analyze_and_persist, proposal_id, requirements_text)
            )
        for section in sections:
            content = str(section.get("content") or "")
            if not content.strip():
                continue
            writers.append(
                run.run(
                    f"citations:{section['id']}",
                    self._citations.map_and_persist,
                    str(section["id"]),
                    content,
                    None,
                    organization_id,
                )
            )
        await asyncio.gather(*writers)

        # Claims read the citations written above.
        await run.run("claims", self._claims.extract_and_verify_proposal, proposal_id, organization_id)

    async def _gather_enforcement(self, proposal: dict[str, object], organization_id: str) -> tuple[EnforcementData, list[CheckFailure]]:
        proposal_id = str(proposal["id"])
        run = _CheckRun(proposal_id)
        for check in ("sections", "placeholders", "claims", "compliance", "coverage"):
            run.expect(check)

        tasks = [
            asyncio.create_task(self._recompute(run, proposal, organization_id)),
            asyncio.create_task(run.run("compliance", self._compliance.check_compliance, proposal_id)),
            asyncio.create_task(run.run("coverage", self._coverage.compute_proposal_coverage, proposal_id)),
        ]
        _, pending = await asyncio.wait(tasks, timeout=self._recompute_timeout_seconds)
        if pending:
            run.cancelled.set()
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            run.mark_unfinished(f"timed out after {self._recompute_timeout_seconds:g}s")
        else:
            run.mark_unfinished("skipped after an earlier failure")

        enforcement = EnforcementData(
            compliance=run.results.get("compliance"),
            coverage=run.results.get("coverage"),
        )
        # The decision reads state persisted by the recompute, after every writer has joined.
        reads = await asyncio.gather(
            run.run("placeholders_read", self._placeholders.get_placeholder_summary, proposal_id),
            run.run("ambiguities_read", self._ambiguities.get_ambiguity_summary, proposal_id),
            run.run("claims_read", self._claims.get_verification_summary, proposal_id),
        )
        enforcement.placeholders, enforcement.ambiguities, enforcement.claims = reads
        return enforcement, run.ordered_failures()

    async def _load_owned_proposal(self, proposal_id: str, organization_id: str) -> dict[str, object]:
        proposal = await asyncio.to_thread(self._store.get_proposal, proposal_id)
        if proposal is None or proposal["organization_id"] != organization_id:
            raise NotFound("Proposal not found.")
        return proposal

    async def evaluate(
        self,
        proposal_id: str,
        user_id: str,
        organization_id: str,
        export_format: str,
    ) -> GateEvaluation:
        if not user_id or not organization_id:
            raise Unauthorized("Authentication with an organization is required.")
        if not proposal_id:
            raise ValidationError("proposal_id is required.")
        if export_format not in EXPORT_FORMATS:
            raise ValidationError("export_format must be one of: DOCX, PDF, CLIPBOARD.")

        proposal = await self._load_owned_proposal(proposal_id, organization_id)
        enforcement, failures = await self._gather_enforcement(proposal, organization_id)
        gate_result = decide(enforcement, failures)

        record = AuditRecord(
            id=str(uuid4()),
            proposal_id=proposal_id,
            organization_id=organization_id,
            user_id=user_id,
            export_format=export_format,  # type: ignore[arg-type]
            decision=gate_result.decision,
            reasons=gate_result.reasons,
            snapshot=build_snapshot(enforcement, failures),
            created_at=_utc_now_iso(),
        )
        await asyncio.to_thread(self._store.create_audit_record, record)

        logger.info(
            "export_gate_evaluated",
            extra={
                "event": "export_gate_evaluated",
                "proposal_id": proposal_id,
                "audit_record_id": record.id,
                "export_format": export_format,
                "decision": gate_result.decision,
                "reason_codes": [reason.code for reason in gate_result.reasons],
                "failed_checks": [failure.check for failure in failures],
            },
        )
        return GateEvaluation(gate_result=gate_result, audit_record=record, enforcement=enforcement)

    async def record_attestation(self, audit_record_id: str, attestation_text: str, organization_id: str) -> None:
        if not organization_id:
            raise Unauthorized("Authentication with an organization is required.")
        if not audit_record_id or not audit_record_id.strip():
            raise ValidationError("audit_record_id is required.")
        if not attestation_text or not attestation_text.strip():
            raise ValidationError("attestation_text is required.")

        attested = await asyncio.to_thread(
            self._store.attest_audit_record,
            audit_record_id,
            organization_id,
            attestation_text.strip(),
        )
        if not attested:
            raise ValidationError("Audit record cannot be attested: it does not exist, was not a WARN decision, or is already attested.")

        logger.info(
            "export_attestation_recorded",
            extra={
                "event": "export_attestation_recorded",
                "audit_record_id": audit_record_id,
                "attestation_text": sanitize_for_logging(attestation_text, key="attestation_text"),
            },
        )

    async def list_audit_records(self, proposal_id: str, organization_id: str) -> list[AuditRecord]:
        await self._load_owned_proposal(proposal_id, organization_id)
        return await asyncio.to_thread(self._store.list_audit_records, proposal_id)
