from __future__ import annotations

import hashlib
import logging
import math
import re
from typing import Protocol

from beacon.enforcement.models import EvidenceChunk


logger = logging.getLogger("beacon.retrieval")

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
STOPWORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "for",
    "from",
    "in",
    "is",
    "it",
    "of",
    "on",
    "or",
    "our",
    "that",
    "the",
    "this",
    "to",
    "was",
    "we",
    "with",
}


class EvidenceRetrievalError(RuntimeError):
    """Raised when evidence chunks cannot be loaded or ranked."""


class ChunkSource(Protocol):
    def list_evidence_chunks(self, organization_id: str) -> list[dict[str, object]]: ...


def tokenize(text: str) -> list[str]:
    return TOKEN_PATTERN.findall(text.lower())


def content_tokens(text: str) -> list[str]:
    return [token for token in tokenize(text) if token not in STOPWORDS]


def trigrams(tokens: list[str]) -> set[tuple[str, str, str]]:
    return {(tokens[i], tokens[i + 1], tokens[i + 2]) for i in range(len(tokens) - 2)}


def embed_text(text: str, dim: int) -> list[float]:
    vec = [0.0] * dim
    tokens = tokenize(text)
    if not tokens:
        return vec

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % dim
        sign = 1.0 if digest[4] % 2 == 0 else -1.0
        vec[index] += sign

    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0:
        return vec
    return [v / norm for v in vec]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Vector dimensions do not match")
    return float(sum(x * y for x, y in zip(a, b)))


class EvidenceRetriever:
    """Ranks an organization's stored evidence chunks against a query text."""

    def __init__(self, source: ChunkSource, *, embedding_dim: int, top_k: int) -> None:
        if embedding_dim < 8:
            raise ValueError("embedding_dim must be >= 8")
        self._source = source
        self._embedding_dim = embedding_dim
        self._top_k = top_k

    def retrieve(self, organization_id: str, query: str, top_k: int | None = None) -> list[EvidenceChunk]:
        limit = self._top_k if top_k is None else top_k
        if limit < 1 or not query.strip():
            return []

        try:
            chunks = self._source.list_evidence_chunks(organization_id)
        except Exception as exc:
            raise EvidenceRetrievalError(f"Evidence chunks could not be loaded: {exc}") from exc

        query_embedding = embed_text(query, self._embedding_dim)
        scored: list[EvidenceChunk] = []
        skipped_chunks = 0
        for chunk in chunks:
            embedding = chunk.get("embedding")
            if not isinstance(embedding, list) or len(embedding) != self._embedding_dim:
                skipped_chunks += 1
                continue
            scored.append(
                EvidenceChunk(
                    id=str(chunk["id"]),
                    organization_id=str(chunk["organization_id"]),
                    document_name=str(chunk.get("document_name") or ""),
                    text=str(chunk["text"]),
                    score=cosine_similarity(query_embedding, embedding),
                )
            )
        if skipped_chunks > 0:
            logger.warning(
                "embedding_dim_chunks_skipped",
                extra={
                    "event": "embedding_dim_chunks_skipped",
                    "organization_id": organization_id,
                    "target_dim": self._embedding_dim,
                    "skipped_chunks": skipped_chunks,
                    "total_chunks": len(chunks),
                },
            )
        scored.sort(key=lambda item: (-item.score, item.id))
        return scored[:limit]
