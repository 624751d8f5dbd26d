"""create rag index, job queue and sync cursor tables

Revision ID: 0001_create_rag_tables
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_create_rag_tables"
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIM = 1536


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # declaration order is the merge rank: GREATEST() upgrades index -> reindex -> delete
    job_operation = postgresql.ENUM("index", "reindex", "delete", name="rag_job_operation")
    job_status = postgresql.ENUM("pending", "processing", "completed", "failed", name="rag_job_status")

    op.create_table(
        "rag_sources",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("source_type", sa.String(64), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("customer_id", sa.BigInteger(), nullable=True),
        sa.Column("title", sa.String(512), nullable=True),
        sa.Column("source_uri", sa.String(1024), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("source_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("indexed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reindexed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("orphan_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("source_type", "source_id", name="uq_rag_sources_type_id"),
    )
    op.create_index("ix_rag_sources_customer_id", "rag_sources", ["customer_id"])
    op.create_index("ix_rag_sources_type_orphan_checked", "rag_sources", ["source_type", "orphan_checked_at"])

    op.execute(
        f"""
        CREATE TABLE rag_chunks (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            source_id uuid NOT NULL REFERENCES rag_sources(id) ON DELETE CASCADE,
            chunk_index integer NOT NULL,
            chunk_count integer NOT NULL,
            chunk_text text NOT NULL,
            chunk_hash varchar(64) NOT NULL,
            token_estimate integer NOT NULL,
            embedding vector({EMBEDDING_DIM}) NULL,
            embedded_at timestamptz NULL,
            created_at timestamptz NOT NULL DEFAULT now(),
            CONSTRAINT uq_rag_chunks_source_index UNIQUE (source_id, chunk_index)
        )
        """
    )
    op.create_index("ix_rag_chunks_source_id", "rag_chunks", ["source_id"])
    op.create_index("ix_rag_chunks_chunk_hash", "rag_chunks", ["chunk_hash"])
    op.execute(
        "CREATE INDEX ix_rag_chunks_embedding_hnsw ON rag_chunks USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table(
        "rag_ingestion_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("source_type", sa.String(64), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("operation", job_operation, nullable=False),
        sa.Column("status", job_status, nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_source_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("result_chunk_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_rag_ingestion_jobs_pending_source",
        "rag_ingestion_jobs",
        ["source_type", "source_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "ix_rag_ingestion_jobs_status_priority",
        "rag_ingestion_jobs",
        ["status", "priority", "created_at"],
    )

    op.create_table(
        "rag_sync_cursors",
        sa.Column("source_type", sa.String(64), primary_key=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cursor_value", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("items_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("rag_sync_cursors")
    op.drop_index("ix_rag_ingestion_jobs_status_priority", table_name="rag_ingestion_jobs")
    op.drop_index("uq_rag_ingestion_jobs_pending_source", table_name="rag_ingestion_jobs")
    op.drop_table("rag_ingestion_jobs")
    op.execute("DROP TABLE IF EXISTS rag_chunks")
    op.drop_index("ix_rag_sources_type_orphan_checked", table_name="rag_sources")
    op.drop_index("ix_rag_sources_customer_id", table_name="rag_sources")
    op.drop_table("rag_sources")
    op.execute("DROP TYPE IF EXISTS rag_job_status")
    op.execute("DROP TYPE IF EXISTS rag_job_operation")
