from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
from pathlib import Path
import threading
from typing import Callable, Iterable, Iterator
from uuid import uuid4

from beacon.enforcement.models import (
    Ambiguity,
    AuditRecord,
    Citation,
    Claim,
    ComplianceItem,
    GateReason,
    Placeholder,
    Span,
)


SCHEMA = """
CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    name TEXT NOT NULL,
    requirements_text TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_proposals_organization ON proposals(organization_id, created_at DESC);

CREATE TABLE IF NOT EXISTS sections (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    word_limit INTEGER,
    is_required INTEGER NOT NULL DEFAULT 1,
    position INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_sections_proposal ON sections(proposal_id, position ASC);

CREATE TABLE IF NOT EXISTS evidence_chunks (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    document_name TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    embedding_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_evidence_organization ON evidence_chunks(organization_id, document_name, chunk_index);

CREATE TABLE IF NOT EXISTS checklist_items (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    is_required INTEGER NOT NULL DEFAULT 1,
    word_limit INTEGER,
    position INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_checklist_items_proposal ON checklist_items(proposal_id, position ASC);

CREATE TABLE IF NOT EXISTS checklist_mappings (
    checklist_item_id TEXT NOT NULL,
    section_id TEXT NOT NULL,
    mapping_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY(checklist_item_id, section_id),
    FOREIGN KEY(checklist_item_id) REFERENCES checklist_items(id),
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE TABLE IF NOT EXISTS placeholders (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    section_id TEXT NOT NULL,
    marker_id TEXT NOT NULL,
    placeholder_type TEXT NOT NULL,
    description TEXT NOT NULL,
    position_start INTEGER NOT NULL,
    position_end INTEGER NOT NULL,
    suggested_sources_json TEXT NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_placeholders_proposal ON placeholders(proposal_id, section_id, position_start);

CREATE TABLE IF NOT EXISTS ambiguities (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    ambiguity_type TEXT NOT NULL,
    description TEXT NOT NULL,
    source_texts_json TEXT NOT NULL,
    suggested_resolutions_json TEXT NOT NULL,
    requires_user_input INTEGER NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolution TEXT,
    resolved_by TEXT,
    resolved_at TEXT,
    position INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ambiguities_proposal ON ambiguities(proposal_id, position ASC);

CREATE TABLE IF NOT EXISTS citations (
    id TEXT PRIMARY KEY,
    section_id TEXT NOT NULL,
    span_start INTEGER NOT NULL,
    span_end INTEGER NOT NULL,
    evidence_chunk_ids_json TEXT NOT NULL,
    confidence REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'UNGROUNDED',
    flags_json TEXT NOT NULL DEFAULT '[]',
    FOREIGN KEY(section_id) REFERENCES sections(id)
);

CREATE INDEX IF NOT EXISTS idx_citations_section ON citations(section_id, span_start ASC);

CREATE TABLE IF NOT EXISTS claims (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    section_id TEXT NOT NULL,
    claim_text TEXT NOT NULL,
    claim_type TEXT NOT NULL,
    risk_level TEXT NOT NULL,
    span_start INTEGER NOT NULL,
    span_end INTEGER NOT NULL,
    verification_status TEXT NOT NULL,
    supporting_citation_ids_json TEXT NOT NULL,
    evidence_chunk_ids_json TEXT NOT NULL,
    verification_score REAL NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_claims_proposal ON claims(proposal_id, section_id, span_start);

CREATE TABLE IF NOT EXISTS compliance_items (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    checklist_item_id TEXT NOT NULL,
    checklist_item_name TEXT NOT NULL,
    section_id TEXT,
    satisfied INTEGER NOT NULL,
    notes TEXT NOT NULL,
    checked_at TEXT NOT NULL,
    FOREIGN KEY(proposal_id) REFERENCES proposals(id)
);

CREATE INDEX IF NOT EXISTS idx_compliance_items_proposal ON compliance_items(proposal_id);

CREATE TABLE IF NOT EXISTS export_audit_records (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    export_format TEXT NOT NULL,
    decision TEXT NOT NULL,
    reasons_json TEXT NOT NULL,
    snapshot_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    attestation_text TEXT,
    attested_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_export_audit_proposal ON export_audit_records(proposal_id, created_at DESC);

CREATE TRIGGER IF NOT EXISTS trg_export_audit_no_delete
BEFORE DELETE ON export_audit_records
BEGIN
    SELECT RAISE(ABORT, 'export audit records are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_export_audit_attest_once
BEFORE UPDATE ON export_audit_records
WHEN OLD.attestation_text IS NOT NULL
    OR NEW.id IS NOT OLD.id
    OR NEW.proposal_id IS NOT OLD.proposal_id
    OR NEW.organization_id IS NOT OLD.organization_id
    OR NEW.user_id IS NOT OLD.user_id
    OR NEW.export_format IS NOT OLD.export_format
    OR NEW.decision IS NOT OLD.decision
    OR NEW.reasons_json IS NOT OLD.reasons_json
    OR NEW.snapshot_json IS NOT OLD.snapshot_json
    OR NEW.created_at IS NOT OLD.created_at
BEGIN
    SELECT RAISE(ABORT, 'export audit records are immutable');
END;
"""


AMBIGUITY_COLUMNS = (
    "id, proposal_id, ambiguity_type, description, source_texts_json, suggested_resolutions_json, "
    "requires_user_input, resolved, resolution, resolved_by, resolved_at"
)

# Set while a recompute check runs; once the event is set that check may no longer commit.
WRITE_CANCELLED: ContextVar[threading.Event | None] = ContextVar("write_cancelled", default=None)


class WriteCancelled(RuntimeError):
    pass


def _database_path(database_url: str) -> Path:
    prefix = "sqlite:///"
    if not database_url.startswith(prefix):
        raise RuntimeError("Only sqlite:/// DATABASE_URL is supported.")
    return Path(database_url[len(prefix) :])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: object) -> str:
    return json.dumps(value, ensure_ascii=True)


class Store:
    """SQLite persistence for proposals and every enforcement artifact.

    Each call opens its own connection and commits on exit, so worker threads
    can share one ``Store``. Replace operations delete and insert inside a
    single transaction.
    """

    def __init__(self, database_url: str, *, timeout_seconds: float = 10.0) -> None:
        self._path = _database_path(database_url)
        self._timeout_seconds = timeout_seconds

    @property
    def path(self) -> Path:
        return self._path

    def init_schema(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            cancelled = WRITE_CANCELLED.get()
            if conn.in_transaction and cancelled is not None and cancelled.is_set():
                conn.rollback()
                raise WriteCancelled("The check was cancelled before its changes were committed.")
            conn.commit()
        finally:
            conn.close()

    def ping(self) -> bool:
        with self.connect() as conn:
            row = conn.execute("SELECT 1").fetchone()
        return row is not None

    # Proposals and sections

    def create_proposal(self, organization_id: str, name: str, requirements_text: str | None = None) -> dict[str, object]:
        now = _utc_now_iso()
        proposal = {
            "id": str(uuid4()),
            "organization_id": organization_id,
            "name": name,
            "requirements_text": requirements_text,
            "created_at": now,
            "updated_at": now,
        }
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO proposals (id, organization_id, name, requirements_text, created_at, updated_at)
                VALUES (:id, :organization_id, :name, :requirements_text, :created_at, :updated_at)
                """,
                proposal,
            )
        return proposal

    def get_proposal(self, proposal_id: str) -> dict[str, object] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, organization_id, name, requirements_text, created_at, updated_at
                FROM proposals
                WHERE id = ?
                """,
                (proposal_id,),
            ).fetchone()
        if row is None:
            return None
        return dict(row)

    def list_sections(self, proposal_id: str) -> list[dict[str, object]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, proposal_id, name, content, word_limit, is_required, position, created_at, updated_at
                FROM sections
                WHERE proposal_id = ?
                ORDER BY position ASC, created_at ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [self._section_row(row) for row in rows]

    def get_section(self, section_id: str) -> dict[str, object] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, proposal_id, name, content, word_limit, is_required, position, created_at, updated_at
                FROM sections
                WHERE id = ?
                """,
                (section_id,),
            ).fetchone()
        if row is None:
            return None
        return self._section_row(row)

    def create_section(
        self,
        proposal_id: str,
        name: str,
        content: str,
        *,
        word_limit: int | None = None,
        is_required: bool = True,
    ) -> dict[str, object]:
        now = _utc_now_iso()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 AS next_position FROM sections WHERE proposal_id = ?",
                (proposal_id,),
            ).fetchone()
            section = {
                "id": str(uuid4()),
                "proposal_id": proposal_id,
                "name": name,
                "content": content,
                "word_limit": word_limit,
                "is_required": 1 if is_required else 0,
                "position": int(row["next_position"]),
                "created_at": now,
                "updated_at": now,
            }
            conn.execute(
                """
                INSERT INTO sections (id, proposal_id, name, content, word_limit, is_required, position, created_at, updated_at)
                VALUES (:id, :proposal_id, :name, :content, :word_limit, :is_required, :position, :created_at, :updated_at)
                """,
                section,
            )
        section["is_required"] = is_required
        return section

    def update_section(
        self,
        section_id: str,
        *,
        content: str,
        word_limit: int | None = None,
        is_required: bool | None = None,
    ) -> dict[str, object] | None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE sections
                SET content = ?,
                    word_limit = COALESCE(?, word_limit),
                    is_required = COALESCE(?, is_required),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    content,
                    word_limit,
                    None if is_required is None else int(is_required),
                    _utc_now_iso(),
                    section_id,
                ),
            )
        return self.get_section(section_id)

    @staticmethod
    def _section_row(row: sqlite3.Row) -> dict[str, object]:
        section = dict(row)
        section["is_required"] = bool(section["is_required"])
        return section

    # Evidence chunks

    def create_evidence_chunks(
        self,
        organization_id: str,
        document_name: str,
        chunks: list[dict[str, object]],
    ) -> list[dict[str, object]]:
        now = _utc_now_iso()
        rows: list[dict[str, object]] = []
        for index, chunk in enumerate(chunks):
            rows.append(
                {
                    "id": str(uuid4()),
                    "organization_id": organization_id,
                    "document_name": document_name,
                    "chunk_index": index,
                    "text": str(chunk["text"]),
                    "embedding_json": _dumps(chunk.get("embedding") or []),
                    "created_at": now,
                }
            )
        if not rows:
            return []
        with self.connect() as conn:
            conn.executemany(
                """
                INSERT INTO evidence_chunks (id, organization_id, document_name, chunk_index, text, embedding_json, created_at)
                VALUES (:id, :organization_id, :document_name, :chunk_index, :text, :embedding_json, :created_at)
                """,
                rows,
            )
        return [{key: value for key, value in row.items() if key != "embedding_json"} for row in rows]

    def list_evidence_chunks(self, organization_id: str) -> list[dict[str, object]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, organization_id, document_name, chunk_index, text, embedding_json, created_at
                FROM evidence_chunks
                WHERE organization_id = ?
                ORDER BY document_name ASC, chunk_index ASC, id ASC
                """,
                (organization_id,),
            ).fetchall()
        parsed: list[dict[str, object]] = []
        for row in rows:
            item = dict(row)
            item["embedding"] = json.loads(item.pop("embedding_json"))
            parsed.append(item)
        return parsed

    # Checklist

    def create_checklist_items(self, proposal_id: str, items: list[dict[str, object]]) -> list[dict[str, object]]:
        now = _utc_now_iso()
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 AS next_position FROM checklist_items WHERE proposal_id = ?",
                (proposal_id,),
            ).fetchone()
            start = int(row["next_position"])
            created: list[dict[str, object]] = []
            for offset, item in enumerate(items):
                created.append(
                    {
                        "id": str(uuid4()),
                        "proposal_id": proposal_id,
                        "name": str(item["name"]),
                        "description": str(item.get("description") or ""),
                        "is_required": 1 if item.get("is_required", True) else 0,
                        "word_limit": item.get("word_limit"),
                        "position": start + offset,
                        "created_at": now,
                    }
                )
            conn.executemany(
                """
                INSERT INTO checklist_items (id, proposal_id, name, description, is_required, word_limit, position, created_at)
                VALUES (:id, :proposal_id, :name, :description, :is_required, :word_limit, :position, :created_at)
                """,
                created,
            )
        for item in created:
            item["is_required"] = bool(item["is_required"])
        return created

    def list_checklist_items(self, proposal_id: str) -> list[dict[str, object]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, proposal_id, name, description, is_required, word_limit, position, created_at
                FROM checklist_items
                WHERE proposal_id = ?
                ORDER BY position ASC
                """,
                (proposal_id,),
            ).fetchall()
        items = [dict(row) for row in rows]
        for item in items:
            item["is_required"] = bool(item["is_required"])
        return items

    def get_checklist_item(self, checklist_item_id: str) -> dict[str, object] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, proposal_id, name, description, is_required, word_limit, position, created_at
                FROM checklist_items
                WHERE id = ?
                """,
                (checklist_item_id,),
            ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["is_required"] = bool(item["is_required"])
        return item

    def list_checklist_mappings(self, proposal_id: str) -> list[dict[str, object]]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT m.checklist_item_id, m.section_id, m.mapping_type, m.confidence, m.created_at
                FROM checklist_mappings m
                JOIN checklist_items i ON i.id = m.checklist_item_id
                WHERE i.proposal_id = ?
                ORDER BY i.position ASC, m.confidence DESC, m.section_id ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def add_auto_mapping(self, checklist_item_id: str, section_id: str, confidence: float) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO checklist_mappings (checklist_item_id, section_id, mapping_type, confidence, created_at)
                VALUES (?, ?, 'AUTO', ?, ?)
                """,
                (checklist_item_id, section_id, confidence, _utc_now_iso()),
            )
        return cursor.rowcount == 1

    def set_manual_mapping(self, checklist_item_id: str, section_id: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "DELETE FROM checklist_mappings WHERE checklist_item_id = ? AND mapping_type = 'AUTO'",
                (checklist_item_id,),
            )
            conn.execute(
                """
                INSERT INTO checklist_mappings (checklist_item_id, section_id, mapping_type, confidence, created_at)
                VALUES (?, ?, 'MANUAL', 1.0, ?)
                ON CONFLICT(checklist_item_id, section_id)
                DO UPDATE SET mapping_type = 'MANUAL', confidence = 1.0
                """,
                (checklist_item_id, section_id, _utc_now_iso()),
            )

    # Placeholders

    def replace_placeholders(self, proposal_id: str, placeholders: Iterable[Placeholder]) -> None:
        rows = [
            {
                "id": placeholder.id,
                "proposal_id": proposal_id,
                "section_id": placeholder.section_id,
                "marker_id": placeholder.marker_id,
                "placeholder_type": placeholder.type,
                "description": placeholder.description,
                "position_start": placeholder.position.start,
                "position_end": placeholder.position.end,
                "suggested_sources_json": _dumps(placeholder.suggested_sources),
            }
            for placeholder in placeholders
        ]
        with self.connect() as conn:
            conn.execute("DELETE FROM placeholders WHERE proposal_id = ?", (proposal_id,))
            conn.executemany(
                """
                INSERT INTO placeholders (
                    id, proposal_id, section_id, marker_id, placeholder_type, description,
                    position_start, position_end, suggested_sources_json
                )
                VALUES (
                    :id, :proposal_id, :section_id, :marker_id, :placeholder_type, :description,
                    :position_start, :position_end, :suggested_sources_json
                )
                """,
                rows,
            )

    def list_placeholders(self, proposal_id: str) -> list[Placeholder]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.section_id, p.marker_id, p.placeholder_type, p.description,
                       p.position_start, p.position_end, p.suggested_sources_json
                FROM placeholders p
                LEFT JOIN sections s ON s.id = p.section_id
                WHERE p.proposal_id = ?
                ORDER BY s.position ASC, p.position_start ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [
            Placeholder(
                id=row["id"],
                type=row["placeholder_type"],
                description=row["description"],
                position=Span(start=row["position_start"], end=row["position_end"]),
                section_id=row["section_id"],
                marker_id=row["marker_id"],
                suggested_sources=json.loads(row["suggested_sources_json"]),
            )
            for row in rows
        ]

    # Ambiguities

    def replace_ambiguities(
        self,
        proposal_id: str,
        ambiguities: Iterable[Ambiguity],
        *,
        merge_resolved: Callable[[list[Ambiguity], list[Ambiguity]], list[Ambiguity]] | None = None,
    ) -> list[Ambiguity]:
        """Replace the proposal's ambiguities and return what was stored.

        ``merge_resolved`` receives the new items and the currently resolved
        rows, read inside the replacing transaction so a resolution committed
        concurrently is not lost.
        """
        replacement = list(ambiguities)
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            if merge_resolved is not None:
                resolved = conn.execute(
                    f"""
                    SELECT {AMBIGUITY_COLUMNS}
                    FROM ambiguities
                    WHERE proposal_id = ? AND resolved = 1
                    ORDER BY position ASC
                    """,
                    (proposal_id,),
                ).fetchall()
                replacement = merge_resolved(replacement, [self._ambiguity_row(row) for row in resolved])
            conn.execute("DELETE FROM ambiguities WHERE proposal_id = ?", (proposal_id,))
            conn.executemany(
                """
                INSERT INTO ambiguities (
                    id, proposal_id, ambiguity_type, description, source_texts_json, suggested_resolutions_json,
                    requires_user_input, resolved, resolution, resolved_by, resolved_at, position
                )
                VALUES (
                    :id, :proposal_id, :ambiguity_type, :description, :source_texts_json, :suggested_resolutions_json,
                    :requires_user_input, :resolved, :resolution, :resolved_by, :resolved_at, :position
                )
                """,
                [
                    {
                        "id": ambiguity.id,
                        "proposal_id": proposal_id,
                        "ambiguity_type": ambiguity.type,
                        "description": ambiguity.description,
                        "source_texts_json": _dumps(ambiguity.source_texts),
                        "suggested_resolutions_json": _dumps(ambiguity.suggested_resolutions),
                        "requires_user_input": int(ambiguity.requires_user_input),
                        "resolved": int(ambiguity.resolved),
                        "resolution": ambiguity.resolution,
                        "resolved_by": ambiguity.resolved_by,
                        "resolved_at": ambiguity.resolved_at,
                        "position": position,
                    }
                    for position, ambiguity in enumerate(replacement)
                ],
            )
        return replacement

    def list_ambiguities(self, proposal_id: str) -> list[Ambiguity]:
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {AMBIGUITY_COLUMNS}
                FROM ambiguities
                WHERE proposal_id = ?
                ORDER BY position ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [self._ambiguity_row(row) for row in rows]

    @staticmethod
    def _ambiguity_row(row: sqlite3.Row) -> Ambiguity:
        return Ambiguity(
            id=row["id"],
            proposal_id=row["proposal_id"],
            type=row["ambiguity_type"],
            description=row["description"],
            source_texts=json.loads(row["source_texts_json"]),
            suggested_resolutions=json.loads(row["suggested_resolutions_json"]),
            requires_user_input=bool(row["requires_user_input"]),
            resolved=bool(row["resolved"]),
            resolution=row["resolution"],
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
        )

    def resolve_ambiguity(self, proposal_id: str, ambiguity_id: str, resolution: str, user_id: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE ambiguities
                SET resolved = 1, resolution = ?, resolved_by = ?, resolved_at = ?
                WHERE id = ? AND proposal_id = ?
                """,
                (resolution, user_id, _utc_now_iso(), ambiguity_id, proposal_id),
            )
        return cursor.rowcount == 1

    # Citations

    def replace_section_citations(self, section_id: str, citations: Iterable[Citation]) -> None:
        rows = [
            {
                "id": citation.id,
                "section_id": section_id,
                "span_start": citation.span_start,
                "span_end": citation.span_end,
                "evidence_chunk_ids_json": _dumps(citation.evidence_chunk_ids),
                "confidence": citation.confidence,
                "status": citation.status,
                "flags_json": _dumps(citation.flags),
            }
            for citation in citations
        ]
        with self.connect() as conn:
            conn.execute("DELETE FROM citations WHERE section_id = ?", (section_id,))
            conn.executemany(
                """
                INSERT INTO citations (
                    id, section_id, span_start, span_end, evidence_chunk_ids_json, confidence, status, flags_json
                )
                VALUES (
                    :id, :section_id, :span_start, :span_end, :evidence_chunk_ids_json, :confidence, :status, :flags_json
                )
                """,
                rows,
            )

    def list_citations(self, *, proposal_id: str | None = None, section_id: str | None = None) -> list[Citation]:
        query = """
                SELECT c.id, c.section_id, c.span_start, c.span_end, c.evidence_chunk_ids_json, c.confidence, c.status, c.flags_json
                FROM citations c
                JOIN sections s ON s.id = c.section_id
                WHERE 1 = 1
        """
        params: list[object] = []
        if proposal_id is not None:
            query += " AND s.proposal_id = ?"
            params.append(proposal_id)
        if section_id is not None:
            query += " AND c.section_id = ?"
            params.append(section_id)
        query += " ORDER BY s.position ASC, c.span_start ASC"
        with self.connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            Citation(
                id=row["id"],
                section_id=row["section_id"],
                span_start=row["span_start"],
                span_end=row["span_end"],
                evidence_chunk_ids=json.loads(row["evidence_chunk_ids_json"]),
                confidence=row["confidence"],
                status=row["status"],
                flags=json.loads(row["flags_json"]),
            )
            for row in rows
        ]

    # Claims

    def replace_claims(self, proposal_id: str, claims: Iterable[Claim]) -> None:
        rows = [
            {
                "id": claim.id,
                "proposal_id": proposal_id,
                "section_id": claim.section_id,
                "claim_text": claim.text,
                "claim_type": claim.claim_type,
                "risk_level": claim.risk_level,
                "span_start": claim.span_start,
                "span_end": claim.span_end,
                "verification_status": claim.verification_status,
                "supporting_citation_ids_json": _dumps(claim.supporting_citation_ids),
                "evidence_chunk_ids_json": _dumps(claim.evidence_chunk_ids),
                "verification_score": claim.verification_score,
            }
            for claim in claims
        ]
        with self.connect() as conn:
            conn.execute("DELETE FROM claims WHERE proposal_id = ?", (proposal_id,))
            conn.executemany(
                """
                INSERT INTO claims (
                    id, proposal_id, section_id, claim_text, claim_type, risk_level, span_start, span_end,
                    verification_status, supporting_citation_ids_json, evidence_chunk_ids_json, verification_score
                )
                VALUES (
                    :id, :proposal_id, :section_id, :claim_text, :claim_type, :risk_level, :span_start, :span_end,
                    :verification_status, :supporting_citation_ids_json, :evidence_chunk_ids_json, :verification_score
                )
                """,
                rows,
            )

    def list_claims(self, proposal_id: str) -> list[Claim]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.section_id, c.claim_text, c.claim_type, c.risk_level, c.span_start, c.span_end,
                       c.verification_status, c.supporting_citation_ids_json, c.evidence_chunk_ids_json,
                       c.verification_score
                FROM claims c
                LEFT JOIN sections s ON s.id = c.section_id
                WHERE c.proposal_id = ?
                ORDER BY s.position ASC, c.span_start ASC
                """,
                (proposal_id,),
            ).fetchall()
        return [
            Claim(
                id=row["id"],
                section_id=row["section_id"],
                text=row["claim_text"],
                claim_type=row["claim_type"],
                risk_level=row["risk_level"],
                span_start=row["span_start"],
                span_end=row["span_end"],
                verification_status=row["verification_status"],
                supporting_citation_ids=json.loads(row["supporting_citation_ids_json"]),
                evidence_chunk_ids=json.loads(row["evidence_chunk_ids_json"]),
                verification_score=row["verification_score"],
            )
            for row in rows
        ]

    # Compliance

    def replace_compliance_items(self, proposal_id: str, items: Iterable[ComplianceItem]) -> None:
        now = _utc_now_iso()
        rows = [
            {
                "id": item.id,
                "proposal_id": proposal_id,
                "checklist_item_id": item.checklist_item_id,
                "checklist_item_name": item.checklist_item_name,
                "section_id": item.section_id,
                "satisfied": int(item.satisfied),
                "notes": item.notes,
                "checked_at": now,
            }
            for item in items
        ]
        with self.connect() as conn:
            conn.execute("DELETE FROM compliance_items WHERE proposal_id = ?", (proposal_id,))
            conn.executemany(
                """
                INSERT INTO compliance_items (
                    id, proposal_id, checklist_item_id, checklist_item_name, section_id, satisfied, notes, checked_at
                )
                VALUES (
                    :id, :proposal_id, :checklist_item_id, :checklist_item_name, :section_id, :satisfied, :notes, :checked_at
                )
                """,
                rows,
            )

    # Export audit records

    def create_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO export_audit_records (
                    id, proposal_id, organization_id, user_id, export_format, decision,
                    reasons_json, snapshot_json, created_at, attestation_text, attested_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)
                """,
                (
                    record.id,
                    record.proposal_id,
                    record.organization_id,
                    record.user_id,
                    record.export_format,
                    record.decision,
                    _dumps([reason.model_dump() for reason in record.reasons]),
                    json.dumps(record.snapshot, ensure_ascii=True, sort_keys=True),
                    record.created_at,
                ),
            )
        return record

    def get_audit_record(self, record_id: str) -> AuditRecord | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, proposal_id, organization_id, user_id, export_format, decision,
                       reasons_json, snapshot_json, created_at, attestation_text, attested_at
                FROM export_audit_records
                WHERE id = ?
                """,
                (record_id,),
            ).fetchone()
        if row is None:
            return None
        return self._audit_row(row)

    def list_audit_records(self, proposal_id: str) -> list[AuditRecord]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT id, proposal_id, organization_id, user_id, export_format, decision,
                       reasons_json, snapshot_json, created_at, attestation_text, attested_at
                FROM export_audit_records
                WHERE proposal_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (proposal_id,),
            ).fetchall()
        return [self._audit_row(row) for row in rows]

    def attest_audit_record(self, record_id: str, organization_id: str, attestation_text: str) -> bool:
        """Attach attestation text to an unattested WARN record in one statement."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE export_audit_records
                SET attestation_text = ?, attested_at = ?
                WHERE id = ?
                    AND organization_id = ?
                    AND decision = 'WARN'
                    AND attestation_text IS NULL
                """,
                (attestation_text, _utc_now_iso(), record_id, organization_id),
            )
        return cursor.rowcount == 1

    @staticmethod
    def _audit_row(row: sqlite3.Row) -> AuditRecord:
        return AuditRecord(
            id=row["id"],
            proposal_id=row["proposal_id"],
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            export_format=row["export_format"],
            decision=row["decision"],
            reasons=[GateReason.model_validate(item) for item in json.loads(row["reasons_json"])],
            snapshot=json.loads(row["snapshot_json"]),
            created_at=row["created_at"],
            attestation_text=row["attestation_text"],
            attested_at=row["attested_at"],
        )
