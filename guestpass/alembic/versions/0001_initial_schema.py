"""Registrations and capability tokens."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "registrations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("stay", sa.String(length=16), nullable=False),
        sa.Column("adults_count", sa.Integer(), nullable=False),
        sa.Column("children_count", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_registrations_email", "registrations", ["email"])

    op.create_table(
        "registration_tokens",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("registration_id", sa.String(length=36), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["registration_id"],
            ["registrations.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_registration_tokens_token_hash",
        "registration_tokens",
        ["token_hash"],
        unique=True,
    )
    op.create_index(
        "ix_registration_tokens_registration_id",
        "registration_tokens",
        ["registration_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_registration_tokens_registration_id", table_name="registration_tokens"
    )
    op.drop_index("ix_registration_tokens_token_hash", table_name="registration_tokens")
    op.drop_table("registration_tokens")
    op.drop_index("ix_registrations_email", table_name="registrations")
    op.drop_table("registrations")
