"""create recovery_settings table

Revision ID: 5e6f7a8b9c0d
Revises: 4d5e6f7a8b9c
Create Date: 2026-10-19 09:20:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "5e6f7a8b9c0d"
down_revision = "4d5e6f7a8b9c"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recovery_settings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("company_id", sa.String(length=255), nullable=False),
        sa.Column("enable_push", sa.Boolean(), nullable=False),
        sa.Column("enable_dm", sa.Boolean(), nullable=False),
        sa.Column("incentive_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reminder_offsets_days", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_recovery_settings_company_id"), "recovery_settings", ["company_id"], unique=True
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_recovery_settings_company_id"), table_name="recovery_settings")
    op.drop_table("recovery_settings")
