from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text

from ragsync.services.handlers.base import IndexDocument

SWEEP_STAMP_COLUMNS = {"referential": "orphan_checked_at", "null_customer": "scope_checked_at"}


@dataclass(frozen=True)
class ChunkRow:
    chunk_index: int
    chunk_count: int
    chunk_text: str
    chunk_hash: str
    token_estimate: int
    embedding: list[float] | None


def to_vector_literal(embedding: list[float] | None) -> str | None:
    if embedding is None:
        return None
    return "[" + ",".join(f"{float(x):.8f}" for x in embedding) + "]"


def parse_vector_literal(value: Any) -> list[float] | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [float(x) for x in value]
    if hasattr(value, "tolist"):
        return [float(x) for x in value.tolist()]
    stripped = str(value).strip().strip("[]")
    return [float(x) for x in stripped.split(",")] if stripped else []


class RagSourceRepository:
    def __init__(self, db: Any):
        self.db = db

    def get_by_key(self, source_type: str, source_id: str) -> dict[str, Any] | None:
        row = self.db.execute(
            text(
                """
                SELECT s.id::text AS id, s.content_hash, s.customer_id,
                       (SELECT count(*) FROM rag_chunks c WHERE c.source_id = s.id) AS chunk_count
                FROM rag_sources s
                WHERE s.source_type = :source_type AND s.source_id = :source_id
                """
            ),
            {"source_type": source_type, "source_id": source_id},
        ).mappings().first()
        return dict(row) if row else None

    def upsert_source(self, document: IndexDocument, *, content_hash: str, reindexed: bool) -> str:
        row = self.db.execute(
            text(
                """
                INSERT INTO rag_sources (
                    id, source_type, source_id, customer_id, ticket_id, thread_id, sensitivity, owner_user_id, title,
                    source_uri, content_text, content_hash, metadata, source_created_at, source_updated_at,
                    indexed_at, reindexed_at, created_at, updated_at
                ) VALUES (
                    CAST(:id AS uuid), :source_type, :source_id, :customer_id, :ticket_id, :thread_id,
                    CAST(:sensitivity AS rag_sensitivity), :owner_user_id, :title, :source_uri, :content_text,
                    :content_hash, CAST(:metadata AS jsonb), :source_created_at, :source_updated_at, now(),
                    CASE WHEN :reindexed THEN now() ELSE NULL END, now(), now()
                )
                ON CONFLICT (source_type, source_id)
                DO UPDATE SET
                    -- a changed customer link puts the row back at the front of the scope sweep
                    scope_checked_at = CASE
                        WHEN rag_sources.customer_id IS DISTINCT FROM EXCLUDED.customer_id THEN NULL
                        ELSE rag_sources.scope_checked_at
                    END,
                    customer_id = EXCLUDED.customer_id,
                    ticket_id = EXCLUDED.ticket_id,
                    thread_id = EXCLUDED.thread_id,
                    sensitivity = EXCLUDED.sensitivity,
                    owner_user_id = EXCLUDED.owner_user_id,
                    title = EXCLUDED.title,
                    source_uri = EXCLUDED.source_uri,
                    content_text = EXCLUDED.content_text,
                    content_hash = EXCLUDED.content_hash,
                    metadata = EXCLUDED.metadata,
                    source_created_at = EXCLUDED.source_created_at,
                    source_updated_at = EXCLUDED.source_updated_at,
                    indexed_at = now(),
                    reindexed_at = CASE WHEN :reindexed THEN now() ELSE rag_sources.reindexed_at END,
                    updated_at = now()
                RETURNING id::text AS id
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "source_type": document.source_type,
                "source_id": document.source_id,
                "customer_id": document.customer_id,
                "ticket_id": document.ticket_id,
                "thread_id": document.thread_id,
                "sensitivity": document.sensitivity,
                "owner_user_id": str(document.owner_user_id) if document.owner_user_id is not None else None,
                "title": (document.title or "")[:512] or None,
                "source_uri": document.source_uri,
                "content_text": document.content_text,
                "content_hash": content_hash,
                "metadata": json.dumps(document.metadata, default=str),
                "source_created_at": document.source_created_at,
                "source_updated_at": document.source_updated_at,
                "reindexed": reindexed,
            },
        ).mappings().first()
        return str(row["id"])

    def replace_chunks(self, rag_source_id: str, chunks: list[ChunkRow]) -> int:
        self.db.execute(
            text("DELETE FROM rag_chunks WHERE source_id = CAST(:rag_source_id AS uuid)"),
            {"rag_source_id": rag_source_id},
        )
        if not chunks:
            return 0
        self.db.execute(
            text(
                """
                INSERT INTO rag_chunks (
                    id, source_id, chunk_index, chunk_count, chunk_text, chunk_hash, token_estimate,
                    embedding, embedded_at, created_at
                ) VALUES (
                    CAST(:id AS uuid), CAST(:rag_source_id AS uuid), :chunk_index, :chunk_count, :chunk_text,
                    :chunk_hash, :token_estimate, CAST(:embedding AS vector),
                    CASE WHEN :embedded THEN now() ELSE NULL END, now()
                )
                """
            ),
            [
                {
                    "id": str(uuid.uuid4()),
                    "rag_source_id": rag_source_id,
                    "chunk_index": chunk.chunk_index,
                    "chunk_count": chunk.chunk_count,
                    "chunk_text": chunk.chunk_text,
                    "chunk_hash": chunk.chunk_hash,
                    "token_estimate": chunk.token_estimate,
                    "embedding": to_vector_literal(chunk.embedding),
                    "embedded": chunk.embedding is not None,
                }
                for chunk in chunks
            ],
        )
        return len(chunks)

    def delete_source(self, source_type: str, source_id: str) -> int:
        result = self.db.execute(
            text("DELETE FROM rag_sources WHERE source_type = :source_type AND source_id = :source_id"),
            {"source_type": source_type, "source_id": source_id},
        )
        return int(getattr(result, "rowcount", 0) or 0)

    def existing_embeddings(self, chunk_hashes: list[str]) -> dict[str, list[float]]:
        if not chunk_hashes:
            return {}
        rows = self.db.execute(
            text(
                """
                SELECT DISTINCT ON (chunk_hash) chunk_hash, embedding::text AS embedding
                FROM rag_chunks
                WHERE chunk_hash = ANY(:chunk_hashes) AND embedding IS NOT NULL
                ORDER BY chunk_hash, embedded_at DESC NULLS LAST
                """
            ),
            {"chunk_hashes": list(dict.fromkeys(chunk_hashes))},
        ).mappings().all()
        return {row["chunk_hash"]: parse_vector_literal(row["embedding"]) for row in rows}

    def count_null_embeddings(self) -> int:
        row = self.db.execute(text("SELECT count(*) AS total FROM rag_chunks WHERE embedding IS NULL")).mappings().first()
        return int(row["total"]) if row else 0

    def sample_null_embeddings(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = self.db.execute(
            text(
                """
                SELECT c.id::text AS chunk_id, s.source_type, s.source_id, c.chunk_index, c.created_at
                FROM rag_chunks c
                JOIN rag_sources s ON s.id = c.source_id
                WHERE c.embedding IS NULL
                ORDER BY c.created_at DESC
                LIMIT :limit_n
                """
            ),
            {"limit_n": limit},
        ).mappings().all()
        return [dict(row) for row in rows]

    def candidates_for_sweep(self, source_type: str, limit: int, *, sweep: str = "referential") -> list[str]:
        """Source ids of one type, least recently checked by ``sweep`` first; each sweep has its own stamp."""
        column = SWEEP_STAMP_COLUMNS[sweep]
        customer_filter = "AND customer_id IS NULL" if sweep == "null_customer" else ""
        rows = self.db.execute(
            text(
                f"""
                SELECT source_id
                FROM rag_sources
                WHERE source_type = :source_type {customer_filter}
                ORDER BY {column} ASC NULLS FIRST, id ASC
                LIMIT :limit_n
                """
            ),
            {"source_type": source_type, "limit_n": limit},
        ).mappings().all()
        return [str(row["source_id"]) for row in rows]

    def stamp_checked(self, source_type: str, source_ids: list[str], *, sweep: str = "referential") -> None:
        if not source_ids:
            return
        column = SWEEP_STAMP_COLUMNS[sweep]
        self.db.execute(
            text(
                f"""
                UPDATE rag_sources
                SET {column} = now()
                WHERE source_type = :source_type AND source_id = ANY(:source_ids)
                """
            ),
            {"source_type": source_type, "source_ids": source_ids},
        )

    def delete_sources(self, rag_source_ids: list[str]) -> int:
        if not rag_source_ids:
            return 0
        result = self.db.execute(
            text("DELETE FROM rag_sources WHERE id = ANY(CAST(:ids AS uuid[]))"),
            {"ids": rag_source_ids},
        )
        return int(getattr(result, "rowcount", 0) or 0)
