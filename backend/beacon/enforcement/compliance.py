from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import logging
import re

from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.errors import NotFound, ValidationError
from beacon.enforcement.models import ComplianceItem, ComplianceResult, LimitViolation, percentage, stable_id


logger = logging.getLogger("beacon.enforcement.compliance")

MARKUP_PATTERN = re.compile(r"<[^>]*>")
NAME_WORD_PATTERN = re.compile(r"[a-z0-9]+")

SECTION_ALIASES: dict[str, tuple[str, ...]] = {
    "executive summary": ("summary", "overview", "abstract"),
    "statement of need": ("need statement", "problem statement", "needs assessment", "community need"),
    "project description": ("project narrative", "methodology", "approach", "methods", "program description"),
    "goals and objectives": ("goals", "objectives", "outcomes", "expected outcomes"),
    "evaluation plan": ("evaluation", "assessment", "measurement", "metrics"),
    "organizational background": (
        "organization background",
        "org background",
        "about us",
        "organizational capacity",
    ),
    "budget narrative": ("budget justification", "budget explanation", "budget description"),
    "sustainability plan": ("sustainability", "future funding", "continuation plan"),
    "timeline": ("project timeline", "schedule", "work plan", "implementation timeline"),
}


def plain_text(content: str) -> str:
    return MARKUP_PATTERN.sub("", content).strip()


def count_words(text: str) -> int:
    return len(text.split())


def name_similarity(first: str, second: str) -> float:
    words_first = {word for word in NAME_WORD_PATTERN.findall(first.lower()) if len(word) > 2}
    words_second = {word for word in NAME_WORD_PATTERN.findall(second.lower()) if len(word) > 2}
    if not words_first or not words_second:
        return 0.0
    return len(words_first & words_second) / len(words_first | words_second)


def expanded_names(name: str) -> list[str]:
    normalized = name.lower()
    names = [normalized]
    for canonical, aliases in SECTION_ALIASES.items():
        if canonical in normalized or any(alias in normalized for alias in aliases):
            names.append(canonical)
            names.extend(aliases)
    return names


def best_name_similarity(item_name: str, section_name: str) -> float:
    item_names = expanded_names(item_name)
    section_names = expanded_names(section_name)
    return max(name_similarity(left, right) for left in item_names for right in section_names)


def evaluate_section(
    section: dict[str, object],
    item: dict[str, object],
    *,
    min_content_length: int,
) -> tuple[bool, str]:
    text = plain_text(str(section.get("content") or ""))
    if len(text) < min_content_length:
        return False, f"Section '{section['name']}' has fewer than {min_content_length} characters of content."

    word_limit = item.get("word_limit") or section.get("word_limit")
    if word_limit:
        words = count_words(text)
        if words > int(word_limit):
            return False, f"Section '{section['name']}' exceeds the word limit ({words} of {word_limit} words)."
    return True, f"Satisfied by section '{section['name']}'."


def evaluate_checklist(
    proposal_id: str,
    checklist: list[dict[str, object]],
    sections: list[dict[str, object]],
    mappings: list[dict[str, object]],
    *,
    min_content_length: int,
) -> list[ComplianceItem]:
    sections_by_id = {str(section["id"]): section for section in sections}
    mappings_by_item: dict[str, list[dict[str, object]]] = {}
    for mapping in mappings:
        mappings_by_item.setdefault(str(mapping["checklist_item_id"]), []).append(mapping)

    items: list[ComplianceItem] = []
    for item in checklist:
        item_id = str(item["id"])
        ordered = sorted(
            mappings_by_item.get(item_id, []),
            key=lambda mapping: (mapping["mapping_type"] != "MANUAL", -float(mapping["confidence"])),
        )
        mapped_sections = [
            sections_by_id[str(mapping["section_id"])]
            for mapping in ordered
            if str(mapping["section_id"]) in sections_by_id
        ]

        compliance_item = ComplianceItem(
            id=stable_id("compliance", proposal_id, item_id),
            checklist_item_id=item_id,
            checklist_item_name=str(item["name"]),
            is_required=bool(item.get("is_required", True)),
            section_id=None,
            satisfied=False,
            notes="No section is mapped to this checklist item.",
        )
        for section in mapped_sections:
            satisfied, notes = evaluate_section(section, item, min_content_length=min_content_length)
            if compliance_item.section_id is None or satisfied:
                compliance_item.section_id = str(section["id"])
                compliance_item.notes = notes
                compliance_item.satisfied = satisfied
            if satisfied:
                break
        items.append(compliance_item)
    return items


def find_empty_sections(sections: list[dict[str, object]], *, min_content_length: int) -> list[str]:
    return [
        str(section["name"])
        for section in sections
        if section.get("is_required", True) and len(plain_text(str(section.get("content") or ""))) < min_content_length
    ]


def find_limit_violations(sections: list[dict[str, object]]) -> list[LimitViolation]:
    violations: list[LimitViolation] = []
    for section in sections:
        word_limit = section.get("word_limit")
        if not word_limit:
            continue
        limit = int(word_limit)
        words = count_words(plain_text(str(section.get("content") or "")))
        if words > limit:
            violations.append(
                LimitViolation(
                    section_id=str(section["id"]),
                    section_name=str(section["name"]),
                    limit=limit,
                    actual=words,
                    overage_percent=percentage(words - limit, limit),
                )
            )
    return violations


def compliance_score(
    sections: list[dict[str, object]],
    empty_sections: list[str],
    limit_violations: list[LimitViolation],
) -> int:
    """Half the score for filled-in required sections, half for sections within their limits."""
    required = sum(1 for section in sections if section.get("is_required", True))
    completed = Decimal(50) if required == 0 else Decimal((required - len(empty_sections)) * 50) / required
    within = Decimal(50) if not sections else Decimal((len(sections) - len(limit_violations)) * 50) / len(sections)
    return int((completed + within).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ComplianceChecker:
    def __init__(self, store: Store) -> None:
        self._store = store

    def create_checklist_items(self, proposal_id: str, items: list[dict[str, object]]) -> list[dict[str, object]]:
        if not items:
            raise ValidationError("At least one checklist item is required.")
        for item in items:
            if not str(item.get("name") or "").strip():
                raise ValidationError("Checklist item name is required.")
            word_limit = item.get("word_limit")
            if word_limit is not None and int(word_limit) < 1:
                raise ValidationError("Checklist item word_limit must be positive.")
        return self._store.create_checklist_items(proposal_id, items)

    def auto_map_sections(self, proposal_id: str) -> list[dict[str, object]]:
        checklist = self._store.list_checklist_items(proposal_id)
        sections = self._store.list_sections(proposal_id)
        manual_items = {
            str(mapping["checklist_item_id"])
            for mapping in self._store.list_checklist_mappings(proposal_id)
            if mapping["mapping_type"] == "MANUAL"
        }

        results: list[dict[str, object]] = []
        for item in checklist:
            item_id = str(item["id"])
            if item_id in manual_items:
                continue

            best_section_id: str | None = None
            best_confidence = 0.0
            for section in sections:
                confidence = best_name_similarity(str(item["name"]), str(section["name"]))
                if confidence > settings.checklist_auto_map_min_confidence and confidence > best_confidence:
                    best_section_id = str(section["id"])
                    best_confidence = confidence
            if best_section_id is None:
                continue

            self._store.add_auto_mapping(item_id, best_section_id, round(best_confidence, 4))
            results.append(
                {
                    "checklist_item_id": item_id,
                    "section_id": best_section_id,
                    "mapping_type": "AUTO",
                    "confidence": round(best_confidence, 4),
                }
            )

        logger.info(
            "checklist_auto_map_completed",
            extra={
                "event": "checklist_auto_map_completed",
                "proposal_id": proposal_id,
                "items": len(checklist),
                "mapped": len(results),
                "manual_skipped": len(manual_items),
            },
        )
        return results

    def map_section_to_checklist_item(self, checklist_item_id: str, section_id: str) -> None:
        item = self._store.get_checklist_item(checklist_item_id)
        if item is None:
            raise NotFound("Checklist item not found.")
        section = self._store.get_section(section_id)
        if section is None or section["proposal_id"] != item["proposal_id"]:
            raise NotFound("Section not found.")
        self._store.set_manual_mapping(checklist_item_id, section_id)
    def evaluate(self, proposal_id: str) -> tuple[list[ComplianceItem], dict[str, list[str]]]:
        """Evaluate every checklist item without persisting.

        Also returns, per section id, the checklist item ids mapped to it.
        """
        items, items_by_section, _ = self._evaluate(proposal_id)
        return items, items_by_section

    def _evaluate(
        self, proposal_id: str
    ) -> tuple[list[ComplianceItem], dict[str, list[str]], list[dict[str, object]]]:
        checklist = self._store.list_checklist_items(proposal_id)
        sections = self._store.list_sections(proposal_id)
        mappings = self._store.list_checklist_mappings(proposal_id)
        items = evaluate_checklist(
            proposal_id,
            checklist,
            sections,
            mappings,
            min_content_length=settings.min_section_content_length,
        )

        known_sections = {str(section["id"]) for section in sections}
        items_by_section: dict[str, list[str]] = {}
        for mapping in mappings:
            section_id = str(mapping["section_id"])
            if section_id not in known_sections:
                continue
            assigned = items_by_section.setdefault(section_id, [])
            if str(mapping["checklist_item_id"]) not in assigned:
                assigned.append(str(mapping["checklist_item_id"]))
        return items, items_by_section, sections

    def check_compliance(self, proposal_id: str) -> ComplianceResult:
        items, _, sections = self._evaluate(proposal_id)
        empty_sections = find_empty_sections(sections, min_content_length=settings.min_section_content_length)
        limit_violations = find_limit_violations(sections)
        self._store.replace_compliance_items(proposal_id, items)
        result = ComplianceResult(
            proposal_id=proposal_id,
            items=items,
            unmet_count=sum(1 for item in items if not item.satisfied),
            empty_sections=empty_sections,
            limit_violations=limit_violations,
            compliance_score=compliance_score(sections, empty_sections, limit_violations),
        )
        logger.info(
            "compliance_check_completed",
            extra={
                "event": "compliance_check_completed",
                "proposal_id": proposal_id,
                "items": len(items),
                "unmet_count": result.unmet_count,
                "empty_sections": len(empty_sections),
                "limit_violations": len(limit_violations),
                "compliance_score": result.compliance_score,
            },
        )
        return result
