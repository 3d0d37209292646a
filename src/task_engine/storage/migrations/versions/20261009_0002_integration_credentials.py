"""Add envelope-encrypted integration credentials."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261009_0002"
down_revision = "20261002_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "integration_credentials",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "target_id",
            "owner_id",
            name="uq_integration_credentials_target_owner",
        ),
    )
    op.create_index(
        "ix_integration_credentials_target_id",
        "integration_credentials",
        ["target_id"],
    )
    op.create_index(
        "ix_integration_credentials_owner_id",
        "integration_credentials",
        ["owner_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_integration_credentials_owner_id", table_name="integration_credentials")
    op.drop_index("ix_integration_credentials_target_id", table_name="integration_credentials")
    op.drop_table("integration_credentials")
