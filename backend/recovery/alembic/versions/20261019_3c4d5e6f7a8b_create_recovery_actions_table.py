"""create recovery_actions table

Revision ID: 3c4d5e6f7a8b
Revises: 2b3c4d5e6f7a
Create Date: 2026-10-19 09:10:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "3c4d5e6f7a8b"
down_revision = "2b3c4d5e6f7a"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recovery_actions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("case_id", sa.String(length=36), nullable=False),
        sa.Column("action_type", sa.String(length=30), nullable=False),
        sa.Column("channel", sa.String(length=10), nullable=False),
        sa.Column("timeline_step", sa.Integer(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["case_id"], ["recovery_cases.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("case_id", "timeline_step", name="uq_recovery_actions_case_step"),
    )
    op.create_index(
        "ix_recovery_actions_case_id_scheduled_at",
        "recovery_actions",
        ["case_id", "scheduled_at"],
        unique=False,
    )
    op.create_index("ix_recovery_actions_outcome", "recovery_actions", ["outcome"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_recovery_actions_outcome", table_name="recovery_actions")
    op.drop_index("ix_recovery_actions_case_id_scheduled_at", table_name="recovery_actions")
    op.drop_table("recovery_actions")
