import pytest

from beacon.db import Store
from beacon.enforcement.compliance import ComplianceChecker, best_name_similarity, compliance_score, plain_text
from beacon.enforcement.coverage import CoverageScorer, score_coverage
from beacon.enforcement.errors import NotFound, ValidationError
from beacon.enforcement.models import ComplianceItem, ComplianceResult, LimitViolation, percentage


LONG_CONTENT = (
    "Our organization has delivered tutoring and mentoring to local students for many years, "
    "with steady growth in participation."
)


def _seed(store: Store) -> tuple[str, dict[str, str], ComplianceChecker]:
    proposal_id = str(store.create_proposal("org-1", "Proposal")["id"])
    sections = {
        "need": str(store.create_section(proposal_id, "Statement of Need", LONG_CONTENT)["id"]),
        "summary": str(store.create_section(proposal_id, "Executive Summary", "Too short.")["id"]),
        "evaluation": str(store.create_section(proposal_id, "Evaluation Plan", LONG_CONTENT, word_limit=5)["id"]),
    }
    return proposal_id, sections, ComplianceChecker(store)


def test_percentage_rounds_half_up() -> None:
    assert percentage(2, 3) == 67
    assert percentage(1, 8) == 13
    assert percentage(1, 200) == 1
    assert percentage(0, 5) == 0


def test_plain_text_strips_markup() -> None:
    assert plain_text("<p>Hello <b>world</b></p>") == "Hello world"


def test_section_aliases_raise_name_similarity() -> None:
    assert best_name_similarity("Need Statement", "Statement of Need") > 0.3
    assert best_name_similarity("Budget Justification", "Budget Narrative") > 0.3
    assert best_name_similarity("Timeline", "Organizational Background") == 0.0


def test_auto_map_and_check_compliance(store: Store) -> None:
    proposal_id, sections, checker = _seed(store)
    items = checker.create_checklist_items(
        proposal_id,
        [
            {"name": "Need Statement"},
            {"name": "Executive Summary"},
            {"name": "Evaluation"},
            {"name": "Letters of Support"},
        ],
    )

    mapped = checker.auto_map_sections(proposal_id)
    mapped_by_item = {entry["checklist_item_id"]: entry["section_id"] for entry in mapped}
    assert mapped_by_item[items[0]["id"]] == sections["need"]
    assert mapped_by_item[items[1]["id"]] == sections["summary"]
    assert mapped_by_item[items[2]["id"]] == sections["evaluation"]
    assert items[3]["id"] not in mapped_by_item

    result = checker.check_compliance(proposal_id)
    satisfied = {item.checklist_item_name: item.satisfied for item in result.items}
    assert satisfied == {
        "Need Statement": True,
        "Executive Summary": False,
        "Evaluation": False,
        "Letters of Support": False,
    }
    assert result.unmet_count == 3
    notes = {item.checklist_item_name: item.notes for item in result.items}
    assert "word limit" in notes["Evaluation"]
    unmapped = [item for item in result.items if item.checklist_item_name == "Letters of Support"][0]
    assert unmapped.section_id is None


def test_manual_mapping_overrides_auto_mapping(store: Store) -> None:
    proposal_id, sections, checker = _seed(store)
    item = checker.create_checklist_items(proposal_id, [{"name": "Executive Summary"}])[0]
    checker.auto_map_sections(proposal_id)

    checker.map_section_to_checklist_item(str(item["id"]), sections["need"])
    checker.auto_map_sections(proposal_id)

    mappings = store.list_checklist_mappings(proposal_id)
    assert [(mapping["section_id"], mapping["mapping_type"]) for mapping in mappings] == [(sections["need"], "MANUAL")]
    assert checker.check_compliance(proposal_id).unmet_count == 0


def test_manual_mapping_rejects_unknown_or_foreign_targets(store: Store) -> None:
    proposal_id, sections, checker = _seed(store)
    item = checker.create_checklist_items(proposal_id, [{"name": "Need"}])[0]
    other_proposal = str(store.create_proposal("org-1", "Other")["id"])
    foreign_section = str(store.create_section(other_proposal, "Need", LONG_CONTENT)["id"])

    with pytest.raises(NotFound):
        checker.map_section_to_checklist_item("missing", sections["need"])
    with pytest.raises(NotFound):
        checker.map_section_to_checklist_item(str(item["id"]), foreign_section)


def test_create_checklist_items_validates_input(store: Store) -> None:
    proposal_id, _, checker = _seed(store)

    with pytest.raises(ValidationError):
        checker.create_checklist_items(proposal_id, [])
    with pytest.raises(ValidationError):
        checker.create_checklist_items(proposal_id, [{"name": "  "}])


def test_coverage_scores_overall_and_per_section(store: Store) -> None:
    proposal_id, sections, checker = _seed(store)
    items = checker.create_checklist_items(
        proposal_id,
        [{"name": "Need Statement"}, {"name": "Community Need"}, {"name": "Executive Summary"}],
    )
    checker.map_section_to_checklist_item(str(items[0]["id"]), sections["need"])
    checker.map_section_to_checklist_item(str(items[1]["id"]), sections["need"])
    checker.map_section_to_checklist_item(str(items[2]["id"]), sections["summary"])

    coverage = CoverageScorer(checker).compute_proposal_coverage(proposal_id)

    assert coverage.overall_pct == 67
    assert (coverage.total_items, coverage.satisfied_items) == (3, 2)
    per_section = {entry.section_id: entry.pct for entry in coverage.per_section_pct}
    assert per_section == {sections["need"]: 100, sections["summary"]: 0}


def test_empty_checklist_is_fully_covered(store: Store) -> None:
    proposal_id, _, checker = _seed(store)

    coverage = CoverageScorer(checker).compute_proposal_coverage(proposal_id)

    assert coverage.overall_pct == 100
    assert coverage.total_items == 0
    assert coverage.per_section_pct == []
    assert checker.check_compliance(proposal_id).unmet_count == 0


def test_score_coverage_is_pure_arithmetic() -> None:
    items = [
        ComplianceItem(id=str(index), checklist_item_id=f"item-{index}", satisfied=index < 1)
        for index in range(8)
    ]

    coverage = score_coverage("proposal-1", items, {"section-1": ["item-0", "item-1"]})

    assert coverage.overall_pct == 13
    assert coverage.per_section_pct[0].pct == 50


def test_compliance_reports_empty_sections_and_word_limit_overage(store: Store) -> None:
    proposal_id, sections, checker = _seed(store)
    store.create_section(proposal_id, "Appendix", "", is_required=False)
    checker.create_checklist_items(proposal_id, [{"name": "Letters of Support", "is_required": False}])

    result = checker.check_compliance(proposal_id)

    assert result.empty_sections == ["Executive Summary"]
    assert [(v.section_id, v.limit, v.actual, v.overage_percent) for v in result.limit_violations] == [
        (sections["evaluation"], 5, 18, 260)
    ]
    assert result.blocking_limit_violations(10) == result.limit_violations
    assert result.warning_limit_violations(10) == []
    # Required sections: 2 of 3 filled in. Word limits: 3 of 4 sections within.
    assert result.compliance_score == 71
    assert result.items[0].is_required is False


def test_limit_violation_severity_follows_the_block_percent() -> None:
    minor = LimitViolation(section_id="s-1", section_name="Budget", limit=100, actual=108, overage_percent=8)
    major = LimitViolation(section_id="s-2", section_name="Timeline", limit=100, actual=125, overage_percent=25)
    result = ComplianceResult(proposal_id="p-1", limit_violations=[minor, major])

    assert result.warning_limit_violations(10) == [minor]
    assert result.blocking_limit_violations(10) == [major]
    assert compliance_score([], [], []) == 100
