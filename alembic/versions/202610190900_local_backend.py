"""local development backend: accounts and documents

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "local_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("uid", sa.String(length=40), nullable=False, unique=True),
        sa.Column("email", sa.String(length=254), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "documents",
        sa.Column("id", sa.String(length=40), primary_key=True),
        sa.Column("collection", sa.String(length=100), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
    )
    op.create_index("ix_documents_collection", "documents", ["collection"])


def downgrade():
    op.drop_index("ix_documents_collection", table_name="documents")
    op.drop_table("documents")
    op.drop_table("local_accounts")
