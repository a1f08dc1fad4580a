from __future__ import annotations

from dataclasses import dataclass
import logging
import re

from beacon.config import settings
from beacon.db import Store
from beacon.enforcement.models import (
    Citation,
    Claim,
    ClaimRiskLevel,
    ClaimType,
    VerificationStatus,
    VerificationSummary,
    percentage,
    stable_id,
)
from beacon.enforcement.placeholders import mask_placeholders


logger = logging.getLogger("beacon.enforcement.claims")

RISK_LEVELS: dict[str, ClaimRiskLevel] = {
    "PERCENTAGE": "HIGH",
    "CURRENCY": "HIGH",
    "ORGANIZATION": "HIGH",
    "NUMBER": "MEDIUM",
    "DATE": "MEDIUM",
}

QUANTITY_NOUNS = (
    "families|people|individuals|children|youth|seniors|clients|participants|students|members|staff|"
    "employees|volunteers|partners|organizations|communities|counties|cities|states|locations|sites|"
    "programs|projects|years"
)
MONTHS = "January|February|March|April|May|June|July|August|September|October|November|December"
# Comma-grouped thousands or a plain digit run.
AMOUNT = r"(?:\d{1,3}(?:,\d{3})+|\d+)"

PERCENTAGE_PATTERN = re.compile(r"\b(\d+(?:\.\d+)?)\s*%")
CURRENCY_PATTERN = re.compile(
    rf"\$\s*({AMOUNT}(?:\.\d{{1,2}})?)(?!,?\d)(?:\s*(million|billion|thousand)\b|(?<=\d)([MBK])\b)?",
    re.IGNORECASE,
)
QUANTITY_PATTERN = re.compile(rf"\b({AMOUNT})(?!,?\d)\s+({QUANTITY_NOUNS})\b", re.IGNORECASE)
DATE_PATTERN = re.compile(
    rf"\b(?:since\s+)?(?:19|20)\d{{2}}\b|\b(?:{MONTHS})\s+\d{{1,2}}\b(?:,?\s+\d{{4}})?",
    re.IGNORECASE,
)
ENTITY_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+\b")
WORD_PATTERN = re.compile(r"\S+")

CLAIM_PATTERNS: tuple[tuple[ClaimType, re.Pattern[str]], ...] = (
    ("PERCENTAGE", PERCENTAGE_PATTERN),
    ("CURRENCY", CURRENCY_PATTERN),
    ("NUMBER", QUANTITY_PATTERN),
    ("DATE", DATE_PATTERN),
    ("ORGANIZATION", ENTITY_PATTERN),
)

# Capitalized sentence openers that are not part of a proper name.
ENTITY_LEADING_WORDS = {
    "A",
    "An",
    "And",
    "At",
    "By",
    "For",
    "From",
    "In",
    "Our",
    "Since",
    "The",
    "This",
    "Through",
    "We",
    "With",
}
MONTH_NAMES = set(MONTHS.split("|"))

CURRENCY_MULTIPLIERS = {
    "thousand": 1_000.0,
    "k": 1_000.0,
    "million": 1_000_000.0,
    "m": 1_000_000.0,
    "billion": 1_000_000_000.0,
    "b": 1_000_000_000.0,
}
NUMBER_PATTERN = re.compile(r"\d[\d,]*(?:\.\d+)?")
SINCE_YEAR_PATTERN = re.compile(r"\bsince\s+((?:19|20)\d{2})\b", re.IGNORECASE)
MONTH_DATE_PATTERN = re.compile(rf"\b({MONTHS})\s+(\d{{1,2}})\b(?:,?\s+(\d{{4}}))?", re.IGNORECASE)

DIRECT_MATCH_BONUS = 0.3
NUMERIC_MATCH_BONUS = 0.2
ENTITY_MATCH_BONUS = 0.1
MIN_EVIDENCE_CONFIDENCE = 0.3


@dataclass(frozen=True)
class ExtractedClaim:
    claim_type: ClaimType
    text: str
    start: int
    end: int


def _trim_entity(match: re.Match[str]) -> tuple[str, int] | None:
    words = list(WORD_PATTERN.finditer(match.group(0)))
    while words and (words[0].group(0) in ENTITY_LEADING_WORDS or words[0].group(0) in MONTH_NAMES):
        words.pop(0)
    if len(words) < 2:
        return None
    return match.group(0)[words[0].start() :], match.start() + words[0].start()


def extract_claims(text: str) -> list[ExtractedClaim]:
    candidates: list[ExtractedClaim] = []
    for claim_type, pattern in CLAIM_PATTERNS:
        for match in pattern.finditer(text):
            value, start = match.group(0), match.start()
            if claim_type == "ORGANIZATION":
                trimmed = _trim_entity(match)
                if trimmed is None:
                    continue
                value, start = trimmed
            candidates.append(ExtractedClaim(claim_type, value, start, start + len(value)))

    # Overlaps keep the earliest, then the longest, extraction.
    candidates.sort(key=lambda claim: (claim.start, -(claim.end - claim.start)))
    kept: list[ExtractedClaim] = []
    for candidate in candidates:
        if kept and candidate.start < kept[-1].end:
            continue
        kept.append(candidate)
    return kept


def parse_amount(value: str) -> float | None:
    match = NUMBER_PATTERN.search(value)
    if match is None:
        return None
    try:
        amount = float(match.group(0).replace(",", ""))
    except ValueError:
        return None
    suffix = value[match.end() :].strip().lower()
    for word, multiplier in CURRENCY_MULTIPLIERS.items():
        if suffix == word or suffix.startswith(word + " ") or (len(word) > 1 and suffix.startswith(word)):
            return amount * multiplier
    return amount


def _within_tolerance(expected: float, observed: float, tolerance: float) -> bool:
    if expected == 0:
        return observed == 0
    return abs(observed - expected) / abs(expected) <= tolerance


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def _same_unit_values(claim: ExtractedClaim, chunk_text: str) -> list[str]:
    """Values in ``chunk_text`` that state the same kind of quantity as ``claim``."""
    if claim.claim_type == "PERCENTAGE":
        return [match.group(0) for match in PERCENTAGE_PATTERN.finditer(chunk_text)]
    if claim.claim_type == "CURRENCY":
        return [match.group(0) for match in CURRENCY_PATTERN.finditer(chunk_text)]
    if claim.claim_type == "NUMBER":
        noun_match = QUANTITY_PATTERN.fullmatch(claim.text)
        if noun_match is None:
            return []
        noun = noun_match.group(2).lower()
        return [
            match.group(0)
            for match in QUANTITY_PATTERN.finditer(chunk_text)
            if match.group(2).lower() == noun
        ]
    return []


def _date_contradicts(claim: ExtractedClaim, chunk_text: str) -> bool:
    since = SINCE_YEAR_PATTERN.search(claim.text)
    if since is not None:
        years = [match.group(1) for match in SINCE_YEAR_PATTERN.finditer(chunk_text)]
        return bool(years) and since.group(1) not in years

    month_date = MONTH_DATE_PATTERN.fullmatch(claim.text)
    if month_date is not None:
        month = month_date.group(1).lower()
        same_month = [match for match in MONTH_DATE_PATTERN.finditer(chunk_text) if match.group(1).lower() == month]
        if not same_month:
            return False
        return not any(
            match.group(2) == month_date.group(2)
            and (month_date.group(3) is None or match.group(3) in (None, month_date.group(3)))
            for match in same_month
        )
    return False


def contradicts(claim: ExtractedClaim, chunk_text: str, tolerance: float) -> bool:
    if claim.claim_type == "DATE":
        return _date_contradicts(claim, chunk_text)
    if claim.claim_type == "ORGANIZATION":
        return False

    expected = parse_amount(claim.text)
    if expected is None:
        return False
    observed = [parse_amount(value) for value in _same_unit_values(claim, chunk_text)]
    observed = [value for value in observed if value is not None]
    if not observed:
        return False
    return not any(_within_tolerance(expected, value, tolerance) for value in observed)


def evidence_confidence(claim: ExtractedClaim, chunk_text: str, citation_confidence: float, tolerance: float) -> float:
    chunk_normalized = _normalize(chunk_text)
    if _normalize(claim.text) in chunk_normalized:
        return min(1.0, citation_confidence + DIRECT_MATCH_BONUS)

    if claim.claim_type in ("PERCENTAGE", "CURRENCY", "NUMBER"):
        expected = parse_amount(claim.text)
        if expected is not None:
            for value in _same_unit_values(claim, chunk_text) or NUMBER_PATTERN.findall(chunk_text):
                observed = parse_amount(value)
                if observed is not None and _within_tolerance(expected, observed, tolerance):
                    return min(1.0, citation_confidence + NUMERIC_MATCH_BONUS)

    if claim.claim_type == "ORGANIZATION":
        words = claim.text.lower().split()
        matched = [word for word in words if len(word) > 2 and word in chunk_normalized]
        if len(matched) * 2 >= len(words):
            return min(1.0, citation_confidence + ENTITY_MATCH_BONUS)

    return citation_confidence * 0.5


def verify_claim(
    section_id: str,
    claim: ExtractedClaim,
    citations: list[Citation],
    chunk_texts: dict[str, str],
    *,
    threshold: float,
    tolerance: float,
    max_chunks: int,
) -> Claim:
    overlapping = [
        citation for citation in citations if not citation.is_gap and citation.overlaps(claim.start, claim.end)
    ]

    best = 0.0
    supporting: list[tuple[float, str]] = []
    contradicting: list[str] = []
    for citation in overlapping:
        for chunk_id in citation.evidence_chunk_ids:
            chunk_text = chunk_texts.get(chunk_id)
            if chunk_text is None:
                continue
            if contradicts(claim, chunk_text, tolerance):
                if chunk_id not in contradicting:
                    contradicting.append(chunk_id)
                continue
            confidence = evidence_confidence(claim, chunk_text, citation.confidence, tolerance)
            best = max(best, confidence)
            if confidence >= MIN_EVIDENCE_CONFIDENCE:
                supporting.append((confidence, chunk_id))

    status: VerificationStatus
    if contradicting:
        status = "CONTRADICTED"
        evidence_ids = contradicting[:max_chunks]
    else:
        status = "VERIFIED" if best >= threshold else "UNVERIFIED"
        evidence_ids = []
        for _, chunk_id in sorted(supporting, key=lambda item: (-item[0], item[1])):
            if chunk_id not in evidence_ids:
                evidence_ids.append(chunk_id)
        evidence_ids = evidence_ids[:max_chunks]

    return Claim(
        id=stable_id("claim", section_id, claim.start, claim.end, claim.claim_type),
        section_id=section_id,
        text=claim.text,
        claim_type=claim.claim_type,
        risk_level=RISK_LEVELS[claim.claim_type],
        span_start=claim.start,
        span_end=claim.end,
        verification_status=status,
        supporting_citation_ids=[citation.id for citation in overlapping],
        evidence_chunk_ids=evidence_ids,
        verification_score=round(best, 4),
    )


def summarize_claims(proposal_id: str, claims: list[Claim]) -> VerificationSummary:
    verified = sum(1 for claim in claims if claim.verification_status == "VERIFIED")
    return VerificationSummary(
        proposal_id=proposal_id,
        total=len(claims),
        verified=verified,
        unverified=sum(1 for claim in claims if claim.verification_status == "UNVERIFIED"),
        contradicted=sum(1 for claim in claims if claim.verification_status == "CONTRADICTED"),
        high_risk_unverified=sum(
            1 for claim in claims if claim.risk_level == "HIGH" and claim.verification_status == "UNVERIFIED"
        ),
        verification_rate=percentage(verified, len(claims)) if claims else 0,
        claims=claims,
    )


class ClaimVerifier:
    def __init__(self, store: Store) -> None:
        self._store = store

    def extract_and_verify_proposal(self, proposal_id: str, organization_id: str) -> VerificationSummary:
        citations_by_section: dict[str, list[Citation]] = {}
        for citation in self._store.list_citations(proposal_id=proposal_id):
            citations_by_section.setdefault(citation.section_id, []).append(citation)
        chunk_texts = {
            str(chunk["id"]): str(chunk["text"]) for chunk in self._store.list_evidence_chunks(organization_id)
        }

        claims: list[Claim] = []
        for section in self._store.list_sections(proposal_id):
            section_id = str(section["id"])
            section_citations = citations_by_section.get(section_id, [])
            # Marker text is not a claim; masking keeps span offsets aligned with citations.
            content = mask_placeholders(str(section.get("content") or ""))
            for extracted in extract_claims(content):
                claims.append(
                    verify_claim(
                        section_id,
                        extracted,
                        section_citations,
                        chunk_texts,
                        threshold=settings.claim_verify_threshold,
                        tolerance=settings.claim_numeric_tolerance,
                        max_chunks=settings.max_supporting_chunks,
                    )
                )

        self._store.replace_claims(proposal_id, claims)
        summary = summarize_claims(proposal_id, claims)
        logger.info(
            "claim_verification_completed",
            extra={
                "event": "claim_verification_completed",
                "proposal_id": proposal_id,
                "total": summary.total,
                "verified": summary.verified,
                "unverified": summary.unverified,
                "contradicted": summary.contradicted,
            },
        )
        return summary

    def get_verification_summary(self, proposal_id: str) -> VerificationSummary:
        return summarize_claims(proposal_id, self._store.list_claims(proposal_id))
