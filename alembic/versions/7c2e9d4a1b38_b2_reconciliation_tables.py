"""b2_reconciliation_tables

Revision ID: 7c2e9d4a1b38
Revises: 3a1f0c2b7d10
Create Date: 2026-09-09 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "7c2e9d4a1b38"
down_revision: str | None = "3a1f0c2b7d10"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

RECON_STATUSES = "('queued','running','succeeded','failed','partial','cancelled')"


def upgrade() -> None:
    op.create_table(
        "reconciliation_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("provider", sa.String(16), nullable=True),
        sa.Column("date_from", sa.Date(), nullable=False),
        sa.Column("date_to", sa.Date(), nullable=False),
        sa.Column(
            "params",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "job_type IN ('provider_settlements','entitlements_audit')",
            name="ck_reconciliation_jobs_type",
        ),
        sa.CheckConstraint(f"status IN {RECON_STATUSES}", name="ck_reconciliation_jobs_status"),
        sa.CheckConstraint("date_from <= date_to", name="ck_reconciliation_jobs_window"),
        sa.CheckConstraint(
            "attempts >= 0",
            name="ck_reconciliation_jobs_attempts_non_negative",
        ),
    )
    op.create_index(
        "idx_reconciliation_jobs_status_scheduled",
        "reconciliation_jobs",
        ["status", "scheduled_for"],
    )
    op.create_index(
        "idx_reconciliation_jobs_window",
        "reconciliation_jobs",
        ["date_from", "date_to"],
    )

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column(
            "stats",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.CheckConstraint(f"status IN {RECON_STATUSES}", name="ck_reconciliation_runs_status"),
        sa.ForeignKeyConstraint(["job_id"], ["reconciliation_jobs.id"]),
    )
    op.create_index("idx_reconciliation_runs_job", "reconciliation_runs", ["job_id"])
    op.create_index("idx_reconciliation_runs_status", "reconciliation_runs", ["status"])

    op.create_table(
        "reconciliation_findings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("journal_entry_id", sa.BigInteger(), nullable=True),
        sa.Column("diff_type", sa.String(32), nullable=False),
        sa.Column("provider", sa.String(16), nullable=True),
        sa.Column("provider_event_id", sa.String(128), nullable=True),
        sa.Column("subscription_ref", sa.String(128), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("entitlement_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("expected_amount_minor", sa.BigInteger(), nullable=True),
        sa.Column("actual_amount_minor", sa.BigInteger(), nullable=True),
        sa.Column("expected_currency", sa.String(3), nullable=True),
        sa.Column("actual_currency", sa.String(3), nullable=True),
        sa.Column("expected_status", sa.String(32), nullable=True),
        sa.Column("actual_status", sa.String(32), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("suggested_action", sa.String(16), nullable=False),
        sa.Column("auto_healable", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resolved_by", sa.String(64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "diff_type IN ('missing_internal_event','missing_provider_event','amount_mismatch',"
            "'currency_mismatch','status_mismatch','missing_entitlement','extra_entitlement',"
            "'unprocessable_event')",
            name="ck_reconciliation_findings_diff_type",
        ),
        sa.CheckConstraint(
            "suggested_action IN ('grant','revoke','investigate')",
            name="ck_reconciliation_findings_suggested_action",
        ),
        sa.ForeignKeyConstraint(["job_id"], ["reconciliation_jobs.id"]),
        sa.ForeignKeyConstraint(["run_id"], ["reconciliation_runs.id"]),
        sa.ForeignKeyConstraint(["journal_entry_id"], ["provider_events.id"]),
    )
    op.create_index(
        "idx_reconciliation_findings_open",
        "reconciliation_findings",
        ["created_at"],
        postgresql_where=sa.text("NOT resolved"),
    )
    op.create_index("idx_reconciliation_findings_job", "reconciliation_findings", ["job_id"])
    op.create_index("idx_reconciliation_findings_run", "reconciliation_findings", ["run_id"])
    op.create_index(
        "idx_reconciliation_findings_event",
        "reconciliation_findings",
        ["provider", "provider_event_id"],
    )
    op.create_index("idx_reconciliation_findings_user", "reconciliation_findings", ["user_id"])


def downgrade() -> None:
    op.drop_index("idx_reconciliation_findings_user", table_name="reconciliation_findings")
    op.drop_index("idx_reconciliation_findings_event", table_name="reconciliation_findings")
    op.drop_index("idx_reconciliation_findings_run", table_name="reconciliation_findings")
    op.drop_index("idx_reconciliation_findings_job", table_name="reconciliation_findings")
    op.drop_index("idx_reconciliation_findings_open", table_name="reconciliation_findings")
    op.drop_table("reconciliation_findings")

    op.drop_index("idx_reconciliation_runs_status", table_name="reconciliation_runs")
    op.drop_index("idx_reconciliation_runs_job", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")

    op.drop_index("idx_reconciliation_jobs_window", table_name="reconciliation_jobs")
    op.drop_index("idx_reconciliation_jobs_status_scheduled", table_name="reconciliation_jobs")
    op.drop_table("reconciliation_jobs")
