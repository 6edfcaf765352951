"""create recovery_cases table

Revision ID: 2b3c4d5e6f7a
Revises: 1a2b3c4d5e6f
Create Date: 2026-10-19 09:05:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "2b3c4d5e6f7a"
down_revision = "1a2b3c4d5e6f"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recovery_cases",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("company_id", sa.String(length=255), nullable=False),
        sa.Column("membership_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("first_failure_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("incentive_days_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recovered_amount_cents", sa.Integer(), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("closed_reason", sa.Text(), nullable=True),
        sa.Column("last_event_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_recovery_cases_membership_id"), "recovery_cases", ["membership_id"], unique=False
    )
    # One open case per membership
    op.create_index(
        "uq_recovery_cases_open_membership",
        "recovery_cases",
        ["membership_id"],
        unique=True,
        sqlite_where=sa.text("status = 'open'"),
        postgresql_where=sa.text("status = 'open'"),
    )
    op.create_index(
        "ix_recovery_cases_company_status", "recovery_cases", ["company_id", "status"], unique=False
    )
    op.create_index(
        "ix_recovery_cases_status_first_failure_at",
        "recovery_cases",
        ["status", "first_failure_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_recovery_cases_status_first_failure_at", table_name="recovery_cases")
    op.drop_index("ix_recovery_cases_company_status", table_name="recovery_cases")
    op.drop_index("uq_recovery_cases_open_membership", table_name="recovery_cases")
    op.drop_index(op.f("ix_recovery_cases_membership_id"), table_name="recovery_cases")
    op.drop_table("recovery_cases")
