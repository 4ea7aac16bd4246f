"""create source and chunk tables

Revision ID: 20261005_0002
Revises: 20261005_0001
Create Date: 2026-10-05 10:05:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261005_0002"
down_revision: Union[str, Sequence[str], None] = "20261005_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("media_type", sa.String(length=128), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("content_text", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "media",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("media_type", sa.String(length=128), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "source_language", sa.String(length=16), nullable=False, server_default="auto"
        ),
        sa.Column("transcription", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "media_translations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "media_id",
            sa.Integer(),
            sa.ForeignKey("media.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("target_language", sa.String(length=32), nullable=False),
        sa.Column("translation", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_media_translations_media_id", "media_translations", ["media_id"])
    op.create_table(
        "websites",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "website_pages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "website_id",
            sa.Integer(),
            sa.ForeignKey("websites.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_website_pages_website_id", "website_pages", ["website_id"])
    op.create_table(
        "chunks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_kind", sa.String(length=16), nullable=False),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=True),
        sa.Column("embedding", sa.LargeBinary(), nullable=False),
        sa.Column("embedding_dim", sa.Integer(), nullable=False),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint(
            "source_kind", "source_id", "chunk_index", name="uq_chunks_source_index"
        ),
    )
    op.create_index("ix_chunks_source", "chunks", ["source_kind", "source_id"])


def downgrade() -> None:
    op.drop_index("ix_chunks_source", table_name="chunks")
    op.drop_table("chunks")
    op.drop_index("ix_website_pages_website_id", table_name="website_pages")
    op.drop_table("website_pages")
    op.drop_table("websites")
    op.drop_index("ix_media_translations_media_id", table_name="media_translations")
    op.drop_table("media_translations")
    op.drop_table("media")
    op.drop_table("documents")
