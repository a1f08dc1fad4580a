from __future__ import annotations

from beacon.enforcement.compliance import ComplianceChecker
from beacon.enforcement.models import ComplianceItem, CoverageScore, SectionCoverage, percentage


def score_coverage(
    proposal_id: str,
    items: list[ComplianceItem],
    items_by_section: dict[str, list[str]],
) -> CoverageScore:
    total = len(items)
    satisfied = sum(1 for item in items if item.satisfied)
    satisfied_ids = {item.checklist_item_id for item in items if item.satisfied}

    per_section: list[SectionCoverage] = []
    for section_id, item_ids in items_by_section.items():
        if not item_ids:
            continue
        section_satisfied = sum(1 for item_id in item_ids if item_id in satisfied_ids)
        per_section.append(
            SectionCoverage(
                section_id=section_id,
                pct=percentage(section_satisfied, len(item_ids)),
                total_items=len(item_ids),
                satisfied_items=section_satisfied,
            )
        )

    # An empty checklist counts as fully covered; total_items=0 tells callers it was vacuous.
    overall = percentage(satisfied, total) if total else 100
    return CoverageScore(
        proposal_id=proposal_id,
        overall_pct=overall,
        total_items=total,
        satisfied_items=satisfied,
        per_section_pct=per_section,
    )


class CoverageScorer:
    def __init__(self, checker: ComplianceChecker) -> None:
        self._checker = checker

    def compute_proposal_coverage(self, proposal_id: str) -> CoverageScore:
        items, items_by_section = self._checker.evaluate(proposal_id)
        return score_coverage(proposal_id, items, items_by_section)
