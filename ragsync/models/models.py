import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ragsync.core.config import settings
from ragsync.db.session import Base


JOB_OPERATION = ("index", "reindex", "delete")
JOB_STATUS = ("pending", "processing", "completed", "failed")
SENSITIVITY = ("public", "internal")


class RagSources(Base):
    __tablename__ = "rag_sources"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_rag_sources_type_id"),
        Index("ix_rag_sources_type_orphan_checked", "source_type", "orphan_checked_at"),
        Index(
            "ix_rag_sources_type_scope_checked",
            "source_type",
            "scope_checked_at",
            postgresql_where=text("customer_id IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_type: Mapped[str] = mapped_column(String(64))
    source_id: Mapped[str] = mapped_column(String(255))
    customer_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    ticket_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    sensitivity: Mapped[str] = mapped_column(
        Enum(*SENSITIVITY, name="rag_sensitivity"), default="internal", server_default="internal"
    )
    owner_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    source_uri: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    content_text: Mapped[str] = mapped_column(Text)
    content_hash: Mapped[str] = mapped_column(String(64))
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONB, default=dict, server_default=text("'{}'::jsonb"))
    source_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reindexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    orphan_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    chunks: Mapped[list["RagChunks"]] = relationship(back_populates="source", cascade="all, delete-orphan", passive_deletes=True)


class RagChunks(Base):
    __tablename__ = "rag_chunks"
    __table_args__ = (UniqueConstraint("source_id", "chunk_index", name="uq_rag_chunks_source_index"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("rag_sources.id", ondelete="CASCADE"), index=True)
    chunk_index: Mapped[int] = mapped_column(Integer)
    chunk_count: Mapped[int] = mapped_column(Integer)
    chunk_text: Mapped[str] = mapped_column(Text)
    chunk_hash: Mapped[str] = mapped_column(String(64), index=True)
    token_estimate: Mapped[int] = mapped_column(Integer)
    embedding = mapped_column(Vector(settings.EMBEDDING_DIM), nullable=True)
    embedded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    source: Mapped[RagSources] = relationship(back_populates="chunks")


class RagIngestionJobs(Base):
    __tablename__ = "rag_ingestion_jobs"
    __table_args__ = (
        Index(
            "uq_rag_ingestion_jobs_pending_source",
            "source_type",
            "source_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_rag_ingestion_jobs_status_priority", "status", "priority", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_type: Mapped[str] = mapped_column(String(64))
    source_id: Mapped[str] = mapped_column(String(255))
    operation: Mapped[str] = mapped_column(Enum(*JOB_OPERATION, name="rag_job_operation"))
    status: Mapped[str] = mapped_column(Enum(*JOB_STATUS, name="rag_job_status"), default="pending")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_source_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    result_chunk_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RagSyncCursors(Base):
    __tablename__ = "rag_sync_cursors"

    source_type: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cursor_value: Mapped[dict] = mapped_column(JSONB, default=dict, server_default=text("'{}'::jsonb"))
    items_synced: Mapped[int] = mapped_column(Integer, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
