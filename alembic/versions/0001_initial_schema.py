"""Initial PairGate schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the documents table backing every store collection."""
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(length=64), primary_key=True),
        sa.Column("doc_id", sa.String(length=255), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("data", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_documents_collection_updated",
        "documents",
        ["collection", "updated_at"],
    )
    op.create_index(
        "idx_documents_data_gin",
        "documents",
        ["data"],
        postgresql_using="gin",
    )


def downgrade() -> None:
    """Drop the documents table."""
    op.drop_index("idx_documents_data_gin", table_name="documents")
    op.drop_index("idx_documents_collection_updated", table_name="documents")
    op.drop_table("documents")
