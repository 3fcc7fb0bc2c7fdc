"""Create documents table

Revision ID: 0a1c5e7d9b20
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0a1c5e7d9b20"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """One row per stored document, keyed by (collection, id).

    ``data`` is JSONB on PostgreSQL so the feed's ``timestamp`` ordering and
    ``isDeleted`` / ``groupId`` filters can use JSON path expressions.
    """
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(255), nullable=False),
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column(
            "data",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("collection", "id"),
    )
    op.create_index("ix_documents_collection", "documents", ["collection"])


def downgrade() -> None:
    op.drop_index("ix_documents_collection", table_name="documents")
    op.drop_table("documents")
