"""add ingest-time scoping columns and a separate scope sweep stamp to rag_sources

Revision ID: 0002_rag_source_scoping
Revises: 0001_create_rag_tables
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0002_rag_source_scoping"
down_revision = "0001_create_rag_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    sensitivity = postgresql.ENUM("public", "internal", name="rag_sensitivity")
    sensitivity.create(op.get_bind(), checkfirst=True)

    op.add_column(
        "rag_sources",
        sa.Column(
            "sensitivity",
            postgresql.ENUM("public", "internal", name="rag_sensitivity", create_type=False),
            nullable=False,
            server_default="internal",
        ),
    )
    op.add_column("rag_sources", sa.Column("ticket_id", sa.BigInteger(), nullable=True))
    op.add_column("rag_sources", sa.Column("thread_id", sa.String(255), nullable=True))
    op.add_column("rag_sources", sa.Column("owner_user_id", sa.String(255), nullable=True))
    op.add_column("rag_sources", sa.Column("scope_checked_at", sa.DateTime(timezone=True), nullable=True))

    op.create_index("ix_rag_sources_ticket_id", "rag_sources", ["ticket_id"])
    op.create_index("ix_rag_sources_thread_id", "rag_sources", ["thread_id"])
    op.create_index(
        "ix_rag_sources_type_scope_checked",
        "rag_sources",
        ["source_type", "scope_checked_at"],
        postgresql_where=sa.text("customer_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_rag_sources_type_scope_checked", table_name="rag_sources")
    op.drop_index("ix_rag_sources_thread_id", table_name="rag_sources")
    op.drop_index("ix_rag_sources_ticket_id", table_name="rag_sources")
    op.drop_column("rag_sources", "scope_checked_at")
    op.drop_column("rag_sources", "owner_user_id")
    op.drop_column("rag_sources", "thread_id")
    op.drop_column("rag_sources", "ticket_id")
    op.drop_column("rag_sources", "sensitivity")
    postgresql.ENUM(name="rag_sensitivity").drop(op.get_bind(), checkfirst=True)
