import asyncio
import sqlite3
import time

import pytest

from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.ambiguity import AmbiguityDetector
from beacon.enforcement.citations import CitationMapper
from beacon.enforcement.claims import ClaimVerifier
from beacon.enforcement.compliance import ComplianceChecker
from beacon.enforcement.coverage import CoverageScorer
from beacon.enforcement.errors import NotFound, Unauthorized, ValidationError
from beacon.enforcement.gate import CheckFailure, ExportGatekeeper, decide
from beacon.enforcement.models import EnforcementData, PlaceholderSummary
from beacon.enforcement.placeholders import PlaceholderDetector, create_placeholder
from beacon.retrieval import EvidenceRetriever, embed_text


EVIDENCE_TEXT = "The food bank served 500 families across the county in 2023."
PLAIN_CONTENT = "Our after school program offers tutoring and mentoring to local students every weekday."


def _gatekeeper(store: Store, *, timeout: float = 10.0, **overrides) -> ExportGatekeeper:
    retriever = EvidenceRetriever(store, embedding_dim=settings.embedding_dim, top_k=5)
    compliance = ComplianceChecker(store)
    components = {
        "placeholders": PlaceholderDetector(store),
        "ambiguities": AmbiguityDetector(store),
        "citations": CitationMapper(store, retriever),
        "claims": ClaimVerifier(store),
        "compliance": compliance,
        "coverage": CoverageScorer(compliance),
    }
    components.update(overrides)
    return ExportGatekeeper(store, recompute_timeout_seconds=timeout, **components)


def _proposal(store: Store, *sections: str, requirements_text: str | None = None) -> str:
    proposal_id = str(store.create_proposal("org-1", "Proposal", requirements_text)["id"])
    for index, content in enumerate(sections):
        store.create_section(proposal_id, f"Section {index}", content)
    return proposal_id


def _evaluate(gatekeeper: ExportGatekeeper, proposal_id: str, export_format: str = "DOCX"):
    return asyncio.run(gatekeeper.evaluate(proposal_id, "user-1", "org-1", export_format))


def test_clean_proposal_is_allowed_and_audited(store: Store) -> None:
    proposal_id = _proposal(store, PLAIN_CONTENT)
    gatekeeper = _gatekeeper(store)

    evaluation = _evaluate(gatekeeper, proposal_id)

    assert evaluation.gate_result.decision == "ALLOW"
    assert evaluation.gate_result.reasons == []
    assert evaluation.enforcement.coverage is not None
    assert evaluation.enforcement.coverage.overall_pct == 100
    stored = store.get_audit_record(evaluation.audit_record.id)
    assert stored is not None
    assert stored.decision == "ALLOW"
    assert stored.snapshot["blocking_placeholders"] == 0
    assert stored.snapshot["failed_checks"] == []


def test_blocking_placeholder_blocks_export(store: Store) -> None:
    marker = create_placeholder("MISSING_DATA", "Annual operating budget", "budget")
    proposal_id = _proposal(store, f"{PLAIN_CONTENT} Budget: {marker}")

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    assert evaluation.gate_result.decision == "BLOCK"
    assert [reason.code for reason in evaluation.gate_result.reasons] == ["UNRESOLVED_PLACEHOLDER"]
    assert evaluation.gate_result.reasons[0].affected_items == ["Annual operating budget"]


def test_verification_needed_placeholder_does_not_change_decision(store: Store) -> None:
    marker = create_placeholder("VERIFICATION_NEEDED", "Confirm program start", "start")
    proposal_id = _proposal(store, f"{PLAIN_CONTENT} {marker}")

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    assert evaluation.gate_result.decision == "ALLOW"
    assert evaluation.enforcement.placeholders is not None
    assert evaluation.enforcement.placeholders.total == 1


def test_unverified_claim_warns(store: Store) -> None:
    proposal_id = _proposal(store, "The pantry served 500 families last winter.")

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    assert evaluation.gate_result.decision == "WARN"
    assert [reason.code for reason in evaluation.gate_result.reasons] == ["UNVERIFIED_CLAIM"]
    assert evaluation.gate_result.allowed is True


def test_block_outranks_warn_and_every_condition_is_listed(store: Store) -> None:
    marker = create_placeholder("USER_INPUT_REQUIRED", "Board chair name", "chair")
    proposal_id = _proposal(store, f"The pantry served 500 families last winter. {marker}")
    ComplianceChecker(store).create_checklist_items(proposal_id, [{"name": "Letters of Support"}])

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    codes = [reason.code for reason in evaluation.gate_result.reasons]
    assert evaluation.gate_result.decision == "BLOCK"
    assert codes == ["UNRESOLVED_PLACEHOLDER", "UNVERIFIED_CLAIM", "COMPLIANCE_UNMET", "COVERAGE_INCOMPLETE"]
    severities = [reason.severity for reason in evaluation.gate_result.reasons]
    assert severities == ["BLOCK", "WARN", "WARN", "WARN"]


def test_contradicted_claim_blocks(store: Store) -> None:
    store.create_evidence_chunks(
        "org-1",
        "annual-report.txt",
        [{"text": EVIDENCE_TEXT, "embedding": embed_text(EVIDENCE_TEXT, settings.embedding_dim)}],
    )
    proposal_id = _proposal(store, "The food bank served 900 families across the county in 2023.")

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    assert evaluation.gate_result.decision == "BLOCK"
    assert [reason.code for reason in evaluation.gate_result.reasons] == ["CONTRADICTED_CLAIM"]
    assert evaluation.gate_result.reasons[0].affected_items == ["900 families"]


def test_unresolved_ambiguity_blocks_until_resolved(store: Store) -> None:
    requirements = "Submit a brief narrative. Provide a comprehensive history."
    proposal_id = _proposal(store, PLAIN_CONTENT, requirements_text=requirements)
    gatekeeper = _gatekeeper(store)

    blocked = _evaluate(gatekeeper, proposal_id)
    assert blocked.gate_result.decision == "BLOCK"
    assert [reason.code for reason in blocked.gate_result.reasons] == ["UNRESOLVED_AMBIGUITY"]

    ambiguity = blocked.enforcement.ambiguities.ambiguities[0]
    AmbiguityDetector(store).resolve_ambiguity(proposal_id, ambiguity.id, "Brief main text, history in appendix.", "user-1")

    assert _evaluate(gatekeeper, proposal_id).gate_result.decision == "ALLOW"


def test_failing_check_fails_closed(store: Store, caplog) -> None:
    class BrokenClaimVerifier(ClaimVerifier):
        def extract_and_verify_proposal(self, proposal_id: str, organization_id: str):
            raise RuntimeError("verifier crashed")

    proposal_id = _proposal(store, PLAIN_CONTENT)
    gatekeeper = _gatekeeper(store, claims=BrokenClaimVerifier(store))

    with caplog.at_level("WARNING", logger="beacon.enforcement.gate"):
        evaluation = _evaluate(gatekeeper, proposal_id)

    assert evaluation.gate_result.decision == "BLOCK"
    failed = [reason for reason in evaluation.gate_result.reasons if reason.code == "CHECK_FAILED"]
    assert [reason.affected_items for reason in failed] == [["claims"]]
    assert evaluation.audit_record.snapshot["failed_checks"] == ["claims"]
    assert any(getattr(record, "event", None) == "export_gate_check_failed" for record in caplog.records)


def test_recompute_timeout_is_recorded_as_failure(store: Store) -> None:
    class SlowPlaceholderDetector(PlaceholderDetector):
        def scan_and_persist_placeholders(self, proposal_id: str):
            time.sleep(0.5)
            return super().scan_and_persist_placeholders(proposal_id)

    proposal_id = _proposal(store, PLAIN_CONTENT)
    gatekeeper = _gatekeeper(store, timeout=0.05, placeholders=SlowPlaceholderDetector(store))

    evaluation = _evaluate(gatekeeper, proposal_id)

    assert evaluation.gate_result.decision == "BLOCK"
    failed = {reason.affected_items[0] for reason in evaluation.gate_result.reasons if reason.code == "CHECK_FAILED"}
    assert "placeholders" in failed
    assert any("timed out" in reason.message for reason in evaluation.gate_result.reasons)


def test_caller_and_ownership_checks_run_before_any_work(store: Store) -> None:
    proposal_id = _proposal(store, PLAIN_CONTENT)
    gatekeeper = _gatekeeper(store)

    with pytest.raises(Unauthorized):
        asyncio.run(gatekeeper.evaluate(proposal_id, "", "org-1", "DOCX"))
    with pytest.raises(Unauthorized):
        asyncio.run(gatekeeper.evaluate(proposal_id, "user-1", "", "DOCX"))
    with pytest.raises(NotFound):
        asyncio.run(gatekeeper.evaluate(proposal_id, "user-2", "org-2", "DOCX"))
    with pytest.raises(NotFound):
        asyncio.run(gatekeeper.evaluate("missing", "user-1", "org-1", "DOCX"))
    with pytest.raises(ValidationError):
        asyncio.run(gatekeeper.evaluate(proposal_id, "user-1", "org-1", "RTF"))

    assert store.list_audit_records(proposal_id) == []
    assert store.list_placeholders(proposal_id) == []


def test_attestation_applies_once_to_warn_records(store: Store) -> None:
    proposal_id = _proposal(store, "The pantry served 500 families last winter.")
    gatekeeper = _gatekeeper(store)
    record_id = _evaluate(gatekeeper, proposal_id).audit_record.id

    with pytest.raises(ValidationError):
        asyncio.run(gatekeeper.record_attestation(record_id, "   ", "org-1"))
    with pytest.raises(ValidationError):
        asyncio.run(gatekeeper.record_attestation(record_id, "Reviewed by director.", "org-2"))

    asyncio.run(gatekeeper.record_attestation(record_id, "Reviewed by director.", "org-1"))
    stored = store.get_audit_record(record_id)
    assert stored is not None
    assert stored.attestation_text == "Reviewed by director."
    assert stored.attested_at is not None

    with pytest.raises(ValidationError):
        asyncio.run(gatekeeper.record_attestation(record_id, "Second attempt.", "org-1"))


def test_allow_and_block_records_cannot_be_attested(store: Store) -> None:
    gatekeeper = _gatekeeper(store)
    allowed = _evaluate(gatekeeper, _proposal(store, PLAIN_CONTENT)).audit_record.id
    marker = create_placeholder("MISSING_DATA", "Budget", "budget")
    blocked = _evaluate(gatekeeper, _proposal(store, marker)).audit_record.id

    for record_id in (allowed, blocked):
        with pytest.raises(ValidationError):
            asyncio.run(gatekeeper.record_attestation(record_id, "Override.", "org-1"))


def test_audit_records_are_immutable_and_listed_newest_first(store: Store) -> None:
    proposal_id = _proposal(store, PLAIN_CONTENT)
    gatekeeper = _gatekeeper(store)
    first = _evaluate(gatekeeper, proposal_id, "DOCX").audit_record.id
    second = _evaluate(gatekeeper, proposal_id, "PDF").audit_record.id

    records = asyncio.run(gatekeeper.list_audit_records(proposal_id, "org-1"))
    assert [record.id for record in records] == [second, first]
    with pytest.raises(NotFound):
        asyncio.run(gatekeeper.list_audit_records(proposal_id, "org-2"))

    with store.connect() as conn:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE export_audit_records SET decision = 'BLOCK' WHERE id = ?", (first,))
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM export_audit_records WHERE id = ?", (first,))


def test_decide_reports_failures_even_without_data() -> None:
    result = decide(
        EnforcementData(placeholders=PlaceholderSummary(proposal_id="p")),
        [CheckFailure(check="compliance", message="database locked")],
    )

    assert result.decision == "BLOCK"
    assert [reason.code for reason in result.reasons] == ["CHECK_FAILED"]
    assert result.reasons[0].affected_items == ["compliance"]


def test_advisory_placeholder_text_is_not_verified_as_a_claim(store: Store) -> None:
    marker = create_placeholder("VERIFICATION_NEEDED", "Confirm 2023 enrollment", "enrollment")
    proposal_id = _proposal(store, f"{PLAIN_CONTENT} {marker}")

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    assert evaluation.gate_result.decision == "ALLOW"
    assert evaluation.enforcement.claims is not None
    assert evaluation.enforcement.claims.total == 0


def test_unseparated_amount_is_not_contradicted_by_grouped_evidence(store: Store) -> None:
    evidence = "The board approved a $25,000 grant for refrigeration."
    store.create_evidence_chunks(
        "org-1",
        "board-minutes.txt",
        [{"text": evidence, "embedding": embed_text(evidence, settings.embedding_dim)}],
    )
    proposal_id = _proposal(store, "The board approved a $25000 grant for refrigeration.")

    evaluation = _evaluate(_gatekeeper(store), proposal_id)

    assert evaluation.gate_result.decision != "BLOCK"
    assert evaluation.enforcement.claims is not None
    assert [claim.text for claim in evaluation.enforcement.claims.claims] == ["$25000"]
    assert evaluation.enforcement.claims.contradicted == 0


def test_warned_proposal_is_allowed_once_claims_and_checklist_are_satisfied(store: Store) -> None:
    proposal_id = str(store.create_proposal("org-1", "Proposal")["id"])
    section = store.create_section(proposal_id, "Statement of Need", EVIDENCE_TEXT)
    checker = ComplianceChecker(store)
    item = checker.create_checklist_items(proposal_id, [{"name": "Community Need"}])[0]
    gatekeeper = _gatekeeper(store)

    warned = _evaluate(gatekeeper, proposal_id)
    assert warned.gate_result.decision == "WARN"
    assert [reason.code for reason in warned.gate_result.reasons] == [
        "UNVERIFIED_CLAIM",
        "COMPLIANCE_UNMET",
        "COVERAGE_INCOMPLETE",
    ]

    store.create_evidence_chunks(
        "org-1",
        "annual-report.txt",
        [{"text": EVIDENCE_TEXT, "embedding": embed_text(EVIDENCE_TEXT, settings.embedding_dim)}],
    )
    checker.map_section_to_checklist_item(str(item["id"]), str(section["id"]))

    allowed = _evaluate(gatekeeper, proposal_id)
    assert allowed.gate_result.decision == "ALLOW"
    assert allowed.gate_result.reasons == []
    claims = allowed.enforcement.claims
    assert claims is not None
    assert claims.total == claims.verified == 2
    assert allowed.enforcement.coverage is not None
    assert (allowed.enforcement.coverage.overall_pct, allowed.enforcement.coverage.total_items) == (100, 1)


def test_timed_out_writer_cannot_commit_after_the_decision(store: Store) -> None:
    class LateWritingPlaceholderDetector(PlaceholderDetector):
        def scan_and_persist_placeholders(self, proposal_id: str):
            time.sleep(0.3)
            return super().scan_and_persist_placeholders(proposal_id)

    marker = create_placeholder("MISSING_DATA", "Annual budget", "budget")
    proposal_id = _proposal(store, f"{PLAIN_CONTENT} {marker}")
    gatekeeper = _gatekeeper(store, timeout=0.05, placeholders=LateWritingPlaceholderDetector(store))

    evaluation = _evaluate(gatekeeper, proposal_id)

    assert evaluation.gate_result.decision == "BLOCK"
    assert evaluation.audit_record.snapshot["blocking_placeholders"] == 0
    # asyncio.run joins the worker thread before returning; its write was rolled back.
    assert store.list_placeholders(proposal_id) == []
    assert PlaceholderDetector(store).scan_and_persist_placeholders(proposal_id).blocking == 1


def test_compliance_reason_reports_section_limits_without_changing_the_rule(store: Store) -> None:
    checked_id = str(store.create_proposal("org-1", "Checked")["id"])
    store.create_section(checked_id, "Evaluation Plan", PLAIN_CONTENT, word_limit=5)
    ComplianceChecker(store).create_checklist_items(checked_id, [{"name": "Letters of Support"}])
    unchecked_id = str(store.create_proposal("org-1", "Unchecked")["id"])
    store.create_section(unchecked_id, "Evaluation Plan", PLAIN_CONTENT, word_limit=5)
    gatekeeper = _gatekeeper(store)

    checked = _evaluate(gatekeeper, checked_id)
    unchecked = _evaluate(gatekeeper, unchecked_id)

    assert checked.gate_result.decision == "WARN"
    reason = checked.gate_result.reasons[0]
    assert reason.code == "COMPLIANCE_UNMET"
    assert reason.message == (
        "1 checklist item(s) are not satisfied; "
        "1 section(s) exceed their word limit (1 by more than 10%); compliance score 50"
    )
    assert checked.audit_record.snapshot["compliance_score"] == 50
    assert checked.audit_record.snapshot["limit_violations"] == 1
    assert checked.audit_record.snapshot["empty_sections"] == 0

    assert unchecked.gate_result.decision == "ALLOW"
    assert unchecked.audit_record.snapshot["limit_violations"] == 1
